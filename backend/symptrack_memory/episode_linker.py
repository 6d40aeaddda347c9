from __future__ import annotations

import logging
from dataclasses import dataclass

from .entity_store import EntityStore
from .models import (
    EPISODE_STAGES,
    ConversationContext,
    Episode,
    SymptomDetails,
    TimelineEntry,
    normalize_symptom_name,
    stage_rank,
)
from .time_utils import to_iso, utc_now

logger = logging.getLogger(__name__)


@dataclass
class LinkResult:
    episode: Episode
    action: str
    symptom_created: bool = False


def stage_for_field_count(filled: int) -> str:
    if filled >= 3:
        return "characterized"
    if filled >= 1:
        return "explored"
    return "mentioned"


def advance_stage(current: str, filled: int) -> str:
    """Return the stage implied by the filled field count, never moving backwards."""
    target = stage_for_field_count(filled)
    return EPISODE_STAGES[max(stage_rank(current), stage_rank(target))]


def merge_details(episode: Episode, details: SymptomDetails) -> None:
    if details.severity is not None:
        episode.severity = details.severity
    if details.location:
        episode.location = details.location
    if details.frequency:
        episode.frequency = details.frequency
    if details.pattern:
        episode.pattern = details.pattern
    for trigger in details.triggers:
        if trigger.casefold() not in {item.casefold() for item in episode.triggers}:
            episode.triggers.append(trigger)
    for reliever in details.relievers:
        if reliever.casefold() not in {item.casefold() for item in episode.relievers}:
            episode.relievers.append(reliever)


class EpisodeLinker:
    """Attach a newly mentioned symptom to its active episode, or open a new one."""

    def __init__(self, store: EntityStore) -> None:
        self._store = store

    def link_or_create(
        self,
        symptom_name: str,
        details: SymptomDetails | None,
        context: ConversationContext,
    ) -> LinkResult:
        details = details or SymptomDetails()
        key = normalize_symptom_name(symptom_name)
        existing = context.recent_episode_by_symptom.get(key)

        if existing is not None and existing.status == "active":
            merge_details(existing, details)
            existing.timeline.append(
                TimelineEntry(date=to_iso(utc_now()), severity=details.severity, notes=details.notes)
            )
            existing.stage = advance_stage(existing.stage, existing.filled_field_count())
            episode = self._store.save_episode(context.user_id, existing)
            context.remember_episode(episode)
            logger.info(
                "linked mention to episode user=%s id=%s stage=%s",
                context.user_id,
                episode.id,
                episode.stage,
            )
            return LinkResult(episode=episode, action="updated")

        symptom, symptom_created = self._store.get_or_create_symptom(context.user_id, symptom_name)
        episode = self._store.create_episode(
            context.user_id,
            symptom,
            severity=details.severity,
            location=details.location,
            frequency=details.frequency,
            pattern=details.pattern,
            triggers=details.triggers,
            relievers=details.relievers,
            notes=details.notes,
        )
        context.remember_episode(episode, symptom)
        return LinkResult(episode=episode, action="created", symptom_created=symptom_created)

    def resolve(self, symptom_name: str, context: ConversationContext) -> Episode | None:
        existing = context.recent_episode_by_symptom.get(normalize_symptom_name(symptom_name))
        if existing is None or existing.status != "active":
            return None
        resolved = self._store.resolve_episode(context.user_id, existing.id)
        context.forget_episode(existing)
        return resolved
