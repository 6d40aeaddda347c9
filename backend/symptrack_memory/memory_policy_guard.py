from __future__ import annotations

import math

from .errors import SymptrackError
from .models import (
    ASSESSMENT_STATUSES,
    EPISODE_STAGES,
    EPISODE_STATUSES,
    FREQUENCIES,
    RECOMMENDED_ACTIONS,
    EpisodeLink,
)

MAX_SYMPTOM_NAME_LENGTH = 120


class MemoryPolicyError(SymptrackError):
    pass


class MemoryPolicyGuard:
    """Write-side invariant checks shared by every store."""

    def ensure_user_scope(self, requested_user_id: str, scoped_user_id: str) -> None:
        if requested_user_id != scoped_user_id:
            raise MemoryPolicyError("Cross-user access is blocked.")

    def ensure_symptom_name(self, name: str) -> str:
        cleaned = " ".join((name or "").split())
        if not cleaned or len(cleaned) > MAX_SYMPTOM_NAME_LENGTH:
            raise MemoryPolicyError(f"Symptom name must be between 1 and {MAX_SYMPTOM_NAME_LENGTH} characters.")
        return cleaned

    def ensure_confidence(self, confidence: float) -> float:
        if confidence is None or math.isnan(confidence) or not (0.0 <= confidence <= 1.0):
            raise MemoryPolicyError(f"Confidence must be within [0, 1], got {confidence!r}.")
        return float(confidence)

    def ensure_severity(self, severity: int | None) -> int | None:
        if severity is None:
            return None
        if isinstance(severity, bool) or int(severity) != severity or not (1 <= severity <= 10):
            raise MemoryPolicyError(f"Severity must be an integer within [1, 10], got {severity!r}.")
        return int(severity)

    def ensure_frequency(self, frequency: str | None) -> str | None:
        if frequency is None:
            return None
        if frequency not in FREQUENCIES:
            raise MemoryPolicyError(f"Unsupported frequency: {frequency}")
        return frequency

    def ensure_stage(self, stage: str) -> str:
        if stage not in EPISODE_STAGES:
            raise MemoryPolicyError(f"Unsupported episode stage: {stage}")
        return stage

    def ensure_status(self, status: str) -> str:
        if status not in EPISODE_STATUSES:
            raise MemoryPolicyError(f"Unsupported episode status: {status}")
        return status

    def ensure_recommended_action(self, action: str) -> str:
        if action not in RECOMMENDED_ACTIONS:
            raise MemoryPolicyError(f"Unsupported recommended action: {action}")
        return action

    def ensure_assessment_status(self, status: str) -> str:
        if status not in ASSESSMENT_STATUSES:
            raise MemoryPolicyError(f"Unsupported assessment status: {status}")
        return status

    def ensure_link_weights(self, links: list[EpisodeLink]) -> list[EpisodeLink]:
        seen: set[int] = set()
        for link in links:
            if link.episode_id in seen:
                raise MemoryPolicyError(f"Episode {link.episode_id} is linked more than once.")
            seen.add(link.episode_id)
            if math.isnan(link.weight) or not (0.0 <= link.weight <= 1.0):
                raise MemoryPolicyError(f"Link weight must be within [0, 1], got {link.weight!r}.")
        return links
