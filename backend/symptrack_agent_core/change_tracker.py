from __future__ import annotations

from symptrack_memory.models import ConversationContext

from .models import EntityChange, WorkflowResult
from .notifications import StatusNotifier, StatusUpdateBase


class ChangeTracker:
    """Turns a workflow result into the explicit entity changes reported to the client."""

    def __init__(self, notifier: StatusNotifier) -> None:
        self._notifier = notifier

    def derive_changes(self, result: WorkflowResult, context: ConversationContext) -> list[EntityChange]:
        changes: list[EntityChange] = []
        for episode_id in result.created_episode_ids:
            changes.append(
                EntityChange(
                    id=episode_id,
                    entity_type="episode",
                    action="created",
                    name=result.episode_names.get(episode_id),
                )
            )
        for episode_id in result.updated_episode_ids:
            changes.append(
                EntityChange(
                    id=episode_id,
                    entity_type="episode",
                    action="updated",
                    name=result.episode_names.get(episode_id),
                )
            )
        # Resolved episodes leave working memory; the record itself is kept.
        for episode_id in result.resolved_episode_ids:
            changes.append(
                EntityChange(
                    id=episode_id,
                    entity_type="episode",
                    action="removed",
                    name=result.episode_names.get(episode_id),
                )
            )
        if result.assessment_id is not None:
            confidence = result.assessment_confidence
            assessment = context.current_assessment
            if confidence is None and assessment is not None and assessment.id == result.assessment_id:
                confidence = assessment.confidence
            changes.append(
                EntityChange(
                    id=result.assessment_id,
                    entity_type="assessment",
                    action="created",
                    name=assessment.hypothesis if assessment is not None else None,
                    confidence=confidence,
                )
            )
        return changes

    def collect_status_updates(self) -> list[StatusUpdateBase]:
        return self._notifier.updates
