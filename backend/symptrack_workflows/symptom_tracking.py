from __future__ import annotations

import logging

from symptrack_agent_core.models import INTENT_SYMPTOM_TRACKING, WorkflowResult
from symptrack_agent_core.notifications import (
    GeneralStatus,
    StatusNotifier,
    SymptomAddedStatus,
    SymptomGatheringStatus,
    SymptomResolvedStatus,
    SymptomUpdatedStatus,
)
from symptrack_memory.entity_store import EntityStore
from symptrack_memory.episode_linker import EpisodeLinker
from symptrack_memory.models import ConversationContext, Episode, normalize_symptom_name

from .extraction import FindingExtractor
from .providers import ProviderError, TextGenerator

logger = logging.getLogger(__name__)

ASSESSMENT_SUGGESTION_THRESHOLD = 3
MAX_PENDING_QUESTIONS = 3

_FOLLOW_UP_QUESTIONS = {
    "severity": "On a scale of 1 to 10, how bad is your {name}?",
    "location": "Where exactly do you feel the {name}?",
    "frequency": "Is the {name} constant, or does it come and go?",
    "pattern": "Is the {name} worse at any particular time of day?",
    "triggers": "Does anything seem to bring on or worsen the {name}?",
    "relievers": "Has anything helped ease the {name}?",
}

_SYSTEM_PROMPT = (
    "You are a warm, concise health-tracking assistant. The patient is describing symptoms. "
    "Acknowledge what was recorded, ask at most two of the pending follow-up questions, "
    "and never state a diagnosis. If an assessment is suggested, offer it in one sentence."
)


def follow_up_questions(episode: Episode) -> list[str]:
    return [
        _FOLLOW_UP_QUESTIONS[field_name].format(name=episode.symptom_name)
        for field_name in episode.missing_fields()
        if field_name in _FOLLOW_UP_QUESTIONS
    ]


class SymptomTrackingWorkflow:
    name = "symptom-tracking"

    def __init__(
        self,
        *,
        store: EntityStore,
        linker: EpisodeLinker,
        extractor: FindingExtractor,
        generator: TextGenerator | None = None,
    ) -> None:
        self.store = store
        self.linker = linker
        self.extractor = extractor
        self.generator = generator

    def run(self, message: str, context: ConversationContext, notifier: StatusNotifier) -> WorkflowResult:
        notifier.emit(SymptomGatheringStatus(message="Reviewing the symptoms you described"))
        findings = self.extractor.extract(message, context)
        if findings.is_empty():
            notifier.emit(GeneralStatus(message="No symptom changes found in this message"))
        result = WorkflowResult(intent=INTENT_SYMPTOM_TRACKING, response_text="")
        touched: list[Episode] = []

        for name in findings.resolved:
            episode = self.linker.resolve(name, context)
            if episode is None:
                continue
            result.mark_resolved(episode.id, episode.symptom_name)
            notifier.emit(
                SymptomResolvedStatus(
                    message=f"Marked {episode.symptom_name} as resolved",
                    episode_id=episode.id,
                    symptom_name=episode.symptom_name,
                )
            )

        for mention in findings.mentions:
            link = self.linker.link_or_create(mention.name, mention.details, context)
            episode = link.episode
            touched.append(episode)
            if link.action == "created":
                result.mark_created(episode.id, episode.symptom_name)
                notifier.emit(
                    SymptomAddedStatus(
                        message=f"Started tracking {episode.symptom_name}",
                        episode_id=episode.id,
                        symptom_name=episode.symptom_name,
                    )
                )
            else:
                result.mark_updated(episode.id, episode.symptom_name)
                notifier.emit(
                    SymptomUpdatedStatus(
                        message=f"Updated {episode.symptom_name}",
                        episode_id=episode.id,
                        symptom_name=episode.symptom_name,
                        stage=episode.stage,
                    )
                )

        denied: list[str] = []
        already_denied = {normalize_symptom_name(item.symptom_name) for item in context.negative_findings}
        for name in findings.denied:
            if name in context.recent_episode_by_symptom:
                # Still tracked as active; a denial here is ambiguous, so keep the episode.
                continue
            if name in already_denied:
                continue
            already_denied.add(name)
            finding = self.store.record_negative_finding(context.user_id, name)
            context.negative_findings.insert(0, finding)
            denied.append(finding.symptom_name)

        questions: list[str] = []
        for episode in touched:
            questions.extend(follow_up_questions(episode))
        context.pending_questions = questions[:MAX_PENDING_QUESTIONS]

        suggest_assessment = (
            len(context.active_episodes) >= ASSESSMENT_SUGGESTION_THRESHOLD and context.current_assessment is None
        )
        result.state = {
            "phase": context.phase,
            "pending_questions": list(context.pending_questions),
            "assessment_suggested": suggest_assessment,
            "negative_findings_recorded": denied,
        }
        result.response_text = self._reply(message, context, result, touched, denied, suggest_assessment)
        return result

    def _reply(
        self,
        message: str,
        context: ConversationContext,
        result: WorkflowResult,
        touched: list[Episode],
        denied: list[str],
        suggest_assessment: bool,
    ) -> str:
        fallback = self._template_reply(context, result, touched, denied, suggest_assessment)
        if self.generator is None:
            return fallback
        snapshot = context.snapshot()
        snapshot["assessment_suggested"] = suggest_assessment
        snapshot["draft_reply"] = fallback
        try:
            return self.generator.generate(_SYSTEM_PROMPT, message, snapshot)
        except ProviderError as exc:
            logger.warning("reply generation failed, using template: %s", exc)
            return fallback

    @staticmethod
    def _template_reply(
        context: ConversationContext,
        result: WorkflowResult,
        touched: list[Episode],
        denied: list[str],
        suggest_assessment: bool,
    ) -> str:
        parts: list[str] = []
        created = [result.episode_names[item] for item in result.created_episode_ids]
        updated = [result.episode_names[item] for item in result.updated_episode_ids]
        resolved = [result.episode_names[item] for item in result.resolved_episode_ids]
        if created:
            parts.append(f"I've started tracking your {', '.join(created)}.")
        if updated:
            parts.append(f"I've updated the details for your {', '.join(updated)}.")
        if resolved:
            parts.append(f"Glad to hear your {', '.join(resolved)} has cleared up; I've marked it as resolved.")
        if denied:
            parts.append(f"Noted that you don't have {', '.join(denied)}.")
        if not parts:
            if context.active_episodes:
                names = ", ".join(episode.symptom_name for episode in context.active_episodes[:5])
                parts.append(f"I'm currently tracking: {names}. Tell me about any changes or new symptoms.")
            else:
                parts.append("Tell me about any symptoms you're experiencing and I'll keep track of them.")
        if context.pending_questions:
            parts.append(" ".join(context.pending_questions[:2]))
        if suggest_assessment:
            parts.append(
                f"You now have {len(context.active_episodes)} active symptoms. "
                "Ask me to generate an assessment whenever you'd like me to look at them together."
            )
        return " ".join(parts)
