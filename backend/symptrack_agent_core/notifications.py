from __future__ import annotations

import logging
from datetime import datetime
from typing import Annotated, Callable, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter

from symptrack_memory.time_utils import utc_now

logger = logging.getLogger(__name__)


class StatusUpdateBase(BaseModel):
    message: str = ""
    timestamp: datetime = Field(default_factory=utc_now)


class GeneralStatus(StatusUpdateBase):
    type: Literal["general"] = "general"


class ProcessingStatus(StatusUpdateBase):
    type: Literal["processing"] = "processing"


class CompletedStatus(StatusUpdateBase):
    type: Literal["completed"] = "completed"


class SymptomGatheringStatus(StatusUpdateBase):
    type: Literal["symptom-gathering"] = "symptom-gathering"


class SymptomAddedStatus(StatusUpdateBase):
    type: Literal["symptom-added"] = "symptom-added"
    episode_id: int
    symptom_name: str


class SymptomUpdatedStatus(StatusUpdateBase):
    type: Literal["symptom-updated"] = "symptom-updated"
    episode_id: int
    symptom_name: str
    stage: str


class SymptomResolvedStatus(StatusUpdateBase):
    type: Literal["symptom-resolved"] = "symptom-resolved"
    episode_id: int
    symptom_name: str


class AssessmentGeneratingStatus(StatusUpdateBase):
    type: Literal["assessment-generating"] = "assessment-generating"


class AssessmentAnalyzingStatus(StatusUpdateBase):
    type: Literal["assessment-analyzing"] = "assessment-analyzing"
    episode_count: int = 0
    related_message_count: int = 0


class AssessmentCreatedStatus(StatusUpdateBase):
    type: Literal["assessment-created"] = "assessment-created"
    assessment_id: int
    hypothesis: str
    confidence: float


class AssessmentCompleteStatus(StatusUpdateBase):
    type: Literal["assessment-complete"] = "assessment-complete"
    assessment_id: int
    recommended_action: str


StatusUpdate = Annotated[
    Union[
        GeneralStatus,
        ProcessingStatus,
        CompletedStatus,
        SymptomGatheringStatus,
        SymptomAddedStatus,
        SymptomUpdatedStatus,
        SymptomResolvedStatus,
        AssessmentGeneratingStatus,
        AssessmentAnalyzingStatus,
        AssessmentCreatedStatus,
        AssessmentCompleteStatus,
    ],
    Field(discriminator="type"),
]

status_update_adapter: TypeAdapter[StatusUpdate] = TypeAdapter(StatusUpdate)

StatusSink = Callable[[StatusUpdateBase], None]


class StatusNotifier:
    """Collects status updates for a turn and forwards each one to an optional client sink.

    Delivery is fire-and-forget: a failing sink is logged and never interrupts
    the workflow that emitted the update.
    """

    def __init__(self, sink: StatusSink | None = None) -> None:
        self._sink = sink
        self._updates: list[StatusUpdateBase] = []

    def emit(self, update: StatusUpdateBase) -> None:
        self._updates.append(update)
        if self._sink is None:
            return
        try:
            self._sink(update)
        except Exception:
            logger.warning("status sink failed for update type=%s", getattr(update, "type", "?"), exc_info=True)

    @property
    def updates(self) -> list[StatusUpdateBase]:
        return list(self._updates)
