from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime

from .entity_store import ACTIVE_EPISODE_WINDOW_DAYS, NEGATIVE_FINDING_WINDOW_DAYS, EntityStore
from .errors import HydrationError
from .models import (
    PHASE_ASSESSING,
    PHASE_GATHERING,
    ConversationContext,
    Episode,
)
from .time_utils import utc_now

logger = logging.getLogger(__name__)


def most_recent_by_symptom(episodes: list[Episode]) -> dict[str, Episode]:
    """Pick, per normalized symptom name, the episode with the greatest (started_at, id)."""
    recent: dict[str, Episode] = {}
    for episode in episodes:
        key = episode.normalized_name
        current = recent.get(key)
        if current is None or episode.recency_key > current.recency_key:
            recent[key] = episode
    return recent


class WorkingMemoryHydrator:
    def __init__(self, store: EntityStore, *, max_workers: int = 4) -> None:
        self._store = store
        self._max_workers = max_workers

    def hydrate(
        self,
        user_id: str,
        conversation_id: str | None = None,
        *,
        now: datetime | None = None,
    ) -> ConversationContext:
        """Load the user's active medical state into a fresh context.

        The four reads are independent, so they run concurrently and are
        joined before anything is assembled. A failure in any of them fails
        the whole hydration.
        """
        reference = now or utc_now()
        try:
            with ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="hydrate") as pool:
                episodes_future = pool.submit(
                    self._store.get_active_episodes,
                    user_id,
                    days=ACTIVE_EPISODE_WINDOW_DAYS,
                    now=reference,
                )
                symptoms_future = pool.submit(self._store.get_symptoms, user_id)
                findings_future = pool.submit(
                    self._store.get_negative_findings,
                    user_id,
                    days=NEGATIVE_FINDING_WINDOW_DAYS,
                    now=reference,
                )
                assessment_future = (
                    pool.submit(self._store.get_assessment_by_conversation, user_id, conversation_id)
                    if conversation_id
                    else None
                )
                episodes = episodes_future.result()
                symptoms = symptoms_future.result()
                negative_findings = findings_future.result()
                assessment = assessment_future.result() if assessment_future else None
        except Exception as exc:
            logger.exception("hydration failed user=%s conversation=%s", user_id, conversation_id)
            raise HydrationError(f"Failed to load working memory: {exc}") from exc

        symptoms_by_id = {symptom.id: symptom for symptom in symptoms}
        missing = sorted({episode.symptom_id for episode in episodes if episode.symptom_id not in symptoms_by_id})
        if missing:
            raise HydrationError(f"Active episodes reference missing symptoms: {missing}")

        referenced = {episode.symptom_id for episode in episodes}
        context = ConversationContext(
            user_id=user_id,
            conversation_id=conversation_id,
            active_symptoms=[symptom for symptom in symptoms if symptom.id in referenced],
            active_episodes=episodes,
            negative_findings=negative_findings,
            current_assessment=assessment,
            phase=PHASE_ASSESSING if assessment is not None else PHASE_GATHERING,
            recent_episode_by_symptom=most_recent_by_symptom(episodes),
        )
        logger.debug(
            "hydrated user=%s episodes=%d symptoms=%d negative_findings=%d assessment=%s",
            user_id,
            len(context.active_episodes),
            len(context.active_symptoms),
            len(context.negative_findings),
            assessment.id if assessment else None,
        )
        return context

    def flush(self, context: ConversationContext) -> None:
        # Every store write commits on its own, so there is nothing buffered here.
        logger.debug(
            "flush user=%s conversation=%s phase=%s",
            context.user_id,
            context.conversation_id,
            context.phase,
        )
