from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

from pydantic import BaseModel

INTENT_SYMPTOM_TRACKING = "symptom_tracking"
INTENT_ASSESSMENT = "assessment"
INTENTS = {INTENT_SYMPTOM_TRACKING, INTENT_ASSESSMENT}


@dataclass
class WorkflowResult:
    intent: str
    response_text: str
    state: dict[str, Any] = field(default_factory=dict)
    created_episode_ids: list[int] = field(default_factory=list)
    updated_episode_ids: list[int] = field(default_factory=list)
    resolved_episode_ids: list[int] = field(default_factory=list)
    episode_names: dict[int, str] = field(default_factory=dict)
    assessment_id: int | None = None
    assessment_confidence: float | None = None

    def mark_updated(self, episode_id: int, name: str) -> None:
        self.episode_names[episode_id] = name
        if episode_id not in self.created_episode_ids and episode_id not in self.updated_episode_ids:
            self.updated_episode_ids.append(episode_id)

    def mark_created(self, episode_id: int, name: str) -> None:
        self.episode_names[episode_id] = name
        if episode_id not in self.created_episode_ids:
            self.created_episode_ids.append(episode_id)

    def mark_resolved(self, episode_id: int, name: str) -> None:
        self.episode_names[episode_id] = name
        if episode_id in self.updated_episode_ids:
            self.updated_episode_ids.remove(episode_id)
        if episode_id not in self.resolved_episode_ids:
            self.resolved_episode_ids.append(episode_id)


class EntityChange(BaseModel):
    id: int
    entity_type: Literal["episode", "assessment"]
    action: Literal["created", "updated", "removed"]
    name: str | None = None
    confidence: float | None = None
