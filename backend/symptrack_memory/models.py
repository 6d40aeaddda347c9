from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

EPISODE_STAGES = ("mentioned", "explored", "characterized", "linked")
EPISODE_STATUSES = {"active", "resolved", "chronic"}
FREQUENCIES = {"constant", "intermittent", "occasional"}
RECOMMENDED_ACTIONS = {"self-care", "see-gp", "urgent-care", "emergency"}
ASSESSMENT_STATUSES = {"draft", "completed"}

PHASE_GATHERING = "gathering"
PHASE_ASSESSING = "assessing"
PHASE_RECOMMENDING = "recommending"
PHASES = {PHASE_GATHERING, PHASE_ASSESSING, PHASE_RECOMMENDING}

# Fields that count towards an episode's characterization stage.
CHARACTERIZATION_FIELDS = ("severity", "location", "frequency", "triggers", "relievers", "pattern")


def normalize_symptom_name(name: str) -> str:
    return " ".join((name or "").split()).casefold()


def stage_rank(stage: str) -> int:
    return EPISODE_STAGES.index(stage)


@dataclass
class Symptom:
    id: int
    user_id: str
    name: str
    description: str | None
    created_at: str
    updated_at: str

    @property
    def normalized_name(self) -> str:
        return normalize_symptom_name(self.name)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class TimelineEntry:
    date: str
    severity: int | None = None
    notes: str | None = None


@dataclass
class Episode:
    id: int
    user_id: str
    symptom_id: int
    symptom_name: str
    stage: str
    status: str
    started_at: str
    created_at: str
    updated_at: str
    resolved_at: str | None = None
    severity: int | None = None
    location: str | None = None
    frequency: str | None = None
    pattern: str | None = None
    triggers: list[str] = field(default_factory=list)
    relievers: list[str] = field(default_factory=list)
    timeline: list[TimelineEntry] = field(default_factory=list)

    @property
    def normalized_name(self) -> str:
        return normalize_symptom_name(self.symptom_name)

    @property
    def recency_key(self) -> tuple[str, int]:
        return (self.started_at, self.id)

    def filled_field_count(self) -> int:
        count = 0
        for name in CHARACTERIZATION_FIELDS:
            value = getattr(self, name)
            if value:
                count += 1
        return count

    def missing_fields(self) -> list[str]:
        return [name for name in CHARACTERIZATION_FIELDS if not getattr(self, name)]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class NegativeFinding:
    id: int
    user_id: str
    symptom_name: str
    reported_at: str
    episode_id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class EpisodeLink:
    episode_id: int
    weight: float
    reasoning: str = ""


@dataclass
class Assessment:
    id: int
    user_id: str
    conversation_id: str
    hypothesis: str
    confidence: float
    reasoning: str
    recommended_action: str
    status: str
    created_at: str
    updated_at: str
    differentials: list[str] = field(default_factory=list)
    linked_episodes: list[EpisodeLink] = field(default_factory=list)
    negative_finding_ids: list[int] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Conversation:
    id: str
    user_id: str
    title: str
    created_at: str
    updated_at: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Message:
    id: str
    conversation_id: str
    user_id: str
    role: str
    content: str
    created_at: str
    status_json: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ConversationContext:
    """Request-scoped snapshot of a user's active medical state.

    Built by the hydrator at the start of a turn and passed explicitly to
    whatever needs it. Nothing holds on to it after the turn finishes.
    """

    user_id: str
    conversation_id: str | None = None
    active_symptoms: list[Symptom] = field(default_factory=list)
    active_episodes: list[Episode] = field(default_factory=list)
    negative_findings: list[NegativeFinding] = field(default_factory=list)
    current_assessment: Assessment | None = None
    phase: str = PHASE_GATHERING
    pending_questions: list[str] = field(default_factory=list)
    recent_episode_by_symptom: dict[str, Episode] = field(default_factory=dict)

    def remember_episode(self, episode: Episode, symptom: Symptom | None = None) -> None:
        """Track an active episode in the snapshot after it was linked or created."""
        self.active_episodes = [item for item in self.active_episodes if item.id != episode.id]
        self.active_episodes.insert(0, episode)
        key = episode.normalized_name
        current = self.recent_episode_by_symptom.get(key)
        if current is None or current.id == episode.id or episode.recency_key >= current.recency_key:
            self.recent_episode_by_symptom[key] = episode
        if symptom is not None and all(item.id != symptom.id for item in self.active_symptoms):
            self.active_symptoms.append(symptom)

    def forget_episode(self, episode: Episode) -> None:
        self.active_episodes = [item for item in self.active_episodes if item.id != episode.id]
        key = episode.normalized_name
        current = self.recent_episode_by_symptom.get(key)
        if current is not None and current.id == episode.id:
            replacement = [item for item in self.active_episodes if item.normalized_name == key]
            if replacement:
                self.recent_episode_by_symptom[key] = max(replacement, key=lambda item: item.recency_key)
            else:
                del self.recent_episode_by_symptom[key]

    def snapshot(self) -> dict[str, Any]:
        return {
            "phase": self.phase,
            "active_symptoms": [item.name for item in self.active_symptoms],
            "active_episodes": [
                {
                    "id": item.id,
                    "symptom": item.symptom_name,
                    "stage": item.stage,
                    "severity": item.severity,
                    "location": item.location,
                    "frequency": item.frequency,
                }
                for item in self.active_episodes
            ],
            "negative_findings": [item.symptom_name for item in self.negative_findings],
            "has_assessment": self.current_assessment is not None,
            "pending_questions": list(self.pending_questions),
        }


@dataclass
class SymptomDetails:
    """Characteristics of a symptom as reported in a single message."""

    severity: int | None = None
    location: str | None = None
    frequency: str | None = None
    pattern: str | None = None
    triggers: list[str] = field(default_factory=list)
    relievers: list[str] = field(default_factory=list)
    notes: str | None = None

    def is_empty(self) -> bool:
        return not any(
            (self.severity, self.location, self.frequency, self.pattern, self.triggers, self.relievers, self.notes)
        )
