from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from symptrack_agent_core.models import INTENT_ASSESSMENT, WorkflowResult
from symptrack_agent_core.notifications import (
    AssessmentAnalyzingStatus,
    AssessmentCompleteStatus,
    AssessmentCreatedStatus,
    AssessmentGeneratingStatus,
    StatusNotifier,
)
from symptrack_memory.entity_store import EntityStore
from symptrack_memory.models import (
    PHASE_ASSESSING,
    PHASE_RECOMMENDING,
    RECOMMENDED_ACTIONS,
    Assessment,
    ConversationContext,
    Episode,
    EpisodeLink,
)
from symptrack_memory.retrieval import SemanticRetrieval
from symptrack_memory.time_utils import parse_iso, utc_now

from .providers import ProviderError, TextGenerator, extract_json_object

logger = logging.getLogger(__name__)

RECOMMENDING_CONFIDENCE = 0.8
DEFAULT_HYPOTHESIS = "General health concern"
DEFAULT_LLM_CONFIDENCE = 0.7
DEFAULT_LLM_ACTION = "see-gp"
ACTION_URGENCY = ("self-care", "see-gp", "urgent-care", "emergency")
RELATED_MESSAGE_LIMIT = 3

_STAGE_SCORE = {"mentioned": 0.0, "explored": 0.5, "characterized": 1.0, "linked": 1.0}

_RED_FLAG_SYMPTOMS = {"chest pain", "shortness of breath"}
_EMERGENCY_PATTERNS = [
    re.compile(r"chest pain.*breath", re.IGNORECASE),
    re.compile(r"\bstroke\b", re.IGNORECASE),
    re.compile(r"severe bleeding", re.IGNORECASE),
    re.compile(r"anaphylaxis", re.IGNORECASE),
    re.compile(r"\b(?:fainted|passed out|unconscious)\b", re.IGNORECASE),
    re.compile(r"suicid|self[- ]?harm", re.IGNORECASE),
]

# Most specific combinations first; the first rule whose symptoms are all active wins.
_CONDITION_RULES = [
    ({"fever", "cough", "muscle aches"}, "Influenza-like illness", ["COVID-19", "Viral respiratory infection", "Bronchitis"]),
    ({"nausea", "vomiting", "diarrhea"}, "Gastroenteritis", ["Food poisoning", "Viral stomach infection"]),
    ({"sore throat", "fever"}, "Pharyngitis", ["Viral pharyngitis", "Streptococcal pharyngitis", "Tonsillitis"]),
    ({"fever", "cough"}, "Viral respiratory infection", ["Influenza", "COVID-19", "Bronchitis"]),
    ({"runny nose", "congestion"}, "Common cold", ["Allergic rhinitis", "Sinusitis"]),
    ({"headache", "nausea"}, "Migraine", ["Tension-type headache", "Dehydration"]),
    ({"nausea", "vomiting"}, "Gastroenteritis", ["Food poisoning", "Migraine"]),
    ({"migraine"}, "Migraine", ["Tension-type headache", "Cluster headache"]),
    ({"headache"}, "Tension-type headache", ["Migraine", "Dehydration", "Eye strain"]),
]

_ACTION_TEXT = {
    "self-care": "rest, fluids and over-the-counter relief should be enough for now; check back if anything changes",
    "see-gp": "book an appointment with your GP in the next few days",
    "urgent-care": "get seen at an urgent care clinic today",
    "emergency": "call emergency services or go to the nearest emergency department now",
}

_SYSTEM_PROMPT = (
    "You are a cautious clinical reasoning assistant. Given the patient's tracked symptom episodes, "
    "negative findings and related history, respond with one JSON object and nothing else: "
    '{"hypothesis":str,"confidence":number 0-1,"differentials":[str],"reasoning":str,'
    '"recommendedAction":"self-care"|"see-gp"|"urgent-care"|"emergency"}.'
)


@dataclass
class AssessmentDraft:
    hypothesis: str
    confidence: float
    reasoning: str
    recommended_action: str
    differentials: list[str] = field(default_factory=list)
    matched_symptoms: set[str] = field(default_factory=set)


def clamp_confidence(value: Any, default: float = DEFAULT_LLM_CONFIDENCE) -> float:
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return default
    if numeric != numeric:
        return default
    return min(1.0, max(0.0, numeric))


def more_urgent(left: str, right: str) -> str:
    return max(left, right, key=ACTION_URGENCY.index)


def match_condition(names: set[str]) -> tuple[str, list[str], set[str]]:
    for symptoms, hypothesis, differentials in _CONDITION_RULES:
        if symptoms <= names:
            return hypothesis, list(differentials), set(symptoms)
    return DEFAULT_HYPOTHESIS, [], set()


def rule_confidence(episodes: list[Episode], matched: bool, negative_count: int, related_count: int) -> float:
    if not episodes:
        return 0.0
    coverage = sum(_STAGE_SCORE.get(episode.stage, 0.0) for episode in episodes) / len(episodes)
    confidence = 0.3 + 0.25 * coverage
    if matched:
        confidence += 0.25
    confidence += 0.05 * min(negative_count, 2)
    if related_count:
        confidence += 0.05
    return round(min(1.0, max(0.0, confidence)), 2)


def rule_action(message: str, episodes: list[Episode]) -> str:
    names = {episode.normalized_name for episode in episodes}
    if names & _RED_FLAG_SYMPTOMS or any(pattern.search(message or "") for pattern in _EMERGENCY_PATTERNS):
        return "emergency"
    severities = [episode.severity for episode in episodes if episode.severity is not None]
    worst = max(severities) if severities else 0
    if worst >= 9:
        return "urgent-care"
    week_ago = utc_now() - timedelta(days=7)
    long_running = any((parse_iso(episode.started_at) or utc_now()) <= week_ago for episode in episodes)
    if worst >= 7 or long_running:
        return "see-gp"
    return "self-care"


def episode_links(episodes: list[Episode], matched: set[str]) -> list[EpisodeLink]:
    """Weight each episode by how much it contributes, normalized so the weights sum to 1."""
    relevance: list[tuple[Episode, float]] = []
    for episode in episodes:
        score = 1.0 + episode.filled_field_count()
        if episode.normalized_name in matched:
            score += 2.0
        relevance.append((episode, score))
    total = sum(score for _, score in relevance)
    links: list[EpisodeLink] = []
    for episode, score in relevance:
        reasoning = f"{episode.symptom_name}: stage {episode.stage}, {episode.filled_field_count()} of 6 details recorded"
        if episode.normalized_name in matched:
            reasoning += ", consistent with the leading hypothesis"
        links.append(EpisodeLink(episode_id=episode.id, weight=round(score / total, 4), reasoning=reasoning))
    return links


class AssessmentWorkflow:
    name = "assessment"

    def __init__(
        self,
        *,
        store: EntityStore,
        retrieval: SemanticRetrieval | None = None,
        generator: TextGenerator | None = None,
    ) -> None:
        self.store = store
        self.retrieval = retrieval
        self.generator = generator

    def run(self, message: str, context: ConversationContext, notifier: StatusNotifier) -> WorkflowResult:
        result = WorkflowResult(intent=INTENT_ASSESSMENT, response_text="")
        notifier.emit(AssessmentGeneratingStatus(message="Generating an assessment"))
        episodes = list(context.active_episodes)
        if not episodes:
            result.response_text = (
                "I don't have any active symptoms recorded for you yet, so there is nothing to assess. "
                "Describe what you're experiencing and I'll start tracking it."
            )
            result.state = {"phase": context.phase, "assessment_skipped": True}
            return result
        if not context.conversation_id:
            raise ValueError("An assessment needs a conversation.")

        related = self._related_history(message, context, episodes)
        notifier.emit(
            AssessmentAnalyzingStatus(
                message="Analyzing your symptoms",
                episode_count=len(episodes),
                related_message_count=len(related),
            )
        )
        draft = self._draft(message, context, episodes, related)
        links = episode_links(episodes, draft.matched_symptoms)
        negative_ids = [finding.id for finding in context.negative_findings]

        assessment = self._persist(context, draft, links, negative_ids)
        notifier.emit(
            AssessmentCreatedStatus(
                message="Assessment created",
                assessment_id=assessment.id,
                hypothesis=assessment.hypothesis,
                confidence=assessment.confidence,
            )
        )

        for episode in episodes:
            if episode.stage != "linked":
                self.store.set_episode_stage(context.user_id, episode.id, "linked")
                episode.stage = "linked"
                result.mark_updated(episode.id, episode.symptom_name)

        completed = self.store.complete_assessment(context.user_id, assessment.id) or assessment
        notifier.emit(
            AssessmentCompleteStatus(
                message="Assessment complete",
                assessment_id=completed.id,
                recommended_action=completed.recommended_action,
            )
        )

        context.current_assessment = completed
        context.phase = PHASE_RECOMMENDING if completed.confidence >= RECOMMENDING_CONFIDENCE else PHASE_ASSESSING
        context.pending_questions = []
        result.assessment_id = completed.id
        result.assessment_confidence = completed.confidence
        result.state = {
            "phase": context.phase,
            "hypothesis": completed.hypothesis,
            "recommended_action": completed.recommended_action,
            "related_message_ids": [item.id for item in related],
        }
        result.response_text = self._reply(message, context, completed, episodes)
        return result

    def _related_history(self, message: str, context: ConversationContext, episodes: list[Episode]) -> list:
        if self.retrieval is None:
            return []
        query = " ".join([message, *[episode.symptom_name for episode in episodes]])
        return self.retrieval.search(
            context.user_id,
            query,
            exclude_conversation_id=context.conversation_id,
            limit=RELATED_MESSAGE_LIMIT,
        )

    def _draft(self, message: str, context: ConversationContext, episodes: list[Episode], related: list) -> AssessmentDraft:
        names = {episode.normalized_name for episode in episodes}
        hypothesis, differentials, matched = match_condition(names)
        action = rule_action(message, episodes)
        draft = AssessmentDraft(
            hypothesis=hypothesis,
            confidence=rule_confidence(episodes, bool(matched), len(context.negative_findings), len(related)),
            reasoning=self._rule_reasoning(episodes, context, hypothesis, matched),
            recommended_action=action,
            differentials=differentials,
            matched_symptoms=matched,
        )
        if self.generator is None:
            return draft

        snapshot = context.snapshot()
        snapshot["related_history"] = [item.content[:300] for item in related]
        try:
            raw = self.generator.generate(_SYSTEM_PROMPT, message, snapshot)
        except ProviderError as exc:
            logger.warning("assessment drafting via text generator failed, using rules: %s", exc)
            return draft
        payload = extract_json_object(raw)
        if payload is None:
            logger.info("text generator returned no assessment JSON, using rules")
            return draft

        llm_action = str(payload.get("recommendedAction") or DEFAULT_LLM_ACTION).strip().lower()
        if llm_action not in RECOMMENDED_ACTIONS:
            llm_action = DEFAULT_LLM_ACTION
        differentials_raw = payload.get("differentials")
        return AssessmentDraft(
            hypothesis=str(payload.get("hypothesis") or DEFAULT_HYPOTHESIS).strip()[:200],
            confidence=clamp_confidence(payload.get("confidence")),
            reasoning=str(payload.get("reasoning") or draft.reasoning).strip()[:2000],
            # Rules can only raise the urgency the model proposes.
            recommended_action=more_urgent(llm_action, action),
            differentials=[str(item)[:120] for item in differentials_raw][:5]
            if isinstance(differentials_raw, list)
            else draft.differentials,
            matched_symptoms=matched,
        )

    @staticmethod
    def _rule_reasoning(
        episodes: list[Episode],
        context: ConversationContext,
        hypothesis: str,
        matched: set[str],
    ) -> str:
        described = ", ".join(
            f"{episode.symptom_name} (severity {episode.severity})" if episode.severity else episode.symptom_name
            for episode in episodes
        )
        reasoning = f"Active symptoms: {described}."
        if matched:
            reasoning += f" The combination of {', '.join(sorted(matched))} is typical of {hypothesis.lower()}."
        if context.negative_findings:
            denied = ", ".join(sorted({finding.symptom_name for finding in context.negative_findings}))
            reasoning += f" Reported absent: {denied}."
        return reasoning

    def _persist(
        self,
        context: ConversationContext,
        draft: AssessmentDraft,
        links: list[EpisodeLink],
        negative_ids: list[int],
    ) -> Assessment:
        existing = context.current_assessment
        if existing is None:
            return self.store.create_assessment(
                context.user_id,
                context.conversation_id,
                hypothesis=draft.hypothesis,
                confidence=draft.confidence,
                reasoning=draft.reasoning,
                recommended_action=draft.recommended_action,
                differentials=draft.differentials,
                linked_episodes=links,
                negative_finding_ids=negative_ids,
            )
        existing.hypothesis = draft.hypothesis
        existing.confidence = draft.confidence
        existing.reasoning = draft.reasoning
        existing.recommended_action = draft.recommended_action
        existing.differentials = draft.differentials
        existing.linked_episodes = links
        existing.negative_finding_ids = negative_ids
        existing.status = "draft"
        logger.info("revising assessment id=%s user=%s", existing.id, context.user_id)
        return self.store.update_assessment(context.user_id, existing)

    def _reply(self, message: str, context: ConversationContext, assessment: Assessment, episodes: list[Episode]) -> str:
        names = ", ".join(episode.symptom_name for episode in episodes)
        parts = [
            f"Based on your {names}, the most likely explanation is {assessment.hypothesis.lower()} "
            f"(confidence {round(assessment.confidence * 100)}%)."
        ]
        if assessment.differentials:
            parts.append(f"Other possibilities include {', '.join(assessment.differentials)}.")
        parts.append(f"Recommended next step: {_ACTION_TEXT[assessment.recommended_action]}.")
        parts.append("This is not a diagnosis; a clinician can confirm what is going on.")
        fallback = " ".join(parts)
        if self.generator is None:
            return fallback
        snapshot = context.snapshot()
        snapshot["assessment"] = {
            "hypothesis": assessment.hypothesis,
            "confidence": assessment.confidence,
            "differentials": assessment.differentials,
            "recommended_action": assessment.recommended_action,
        }
        try:
            return self.generator.generate(
                "Explain this assessment to the patient in plain language, in under 120 words. "
                "Include the recommended action and say clearly that it is not a diagnosis.",
                message,
                snapshot,
            )
        except ProviderError as exc:
            logger.warning("assessment reply generation failed, using template: %s", exc)
            return fallback
