from __future__ import annotations

from .models import INTENT_ASSESSMENT, INTENT_SYMPTOM_TRACKING


class IntentClassifier:
    # Substring match, so "assess" also covers "assessment" and "reassess".
    _ASSESSMENT_KEYWORDS = (
        "assessment",
        "assess",
        "diagnosis",
        "evaluate",
        "evaluation",
        "generate assessment",
        "create assessment",
    )

    def classify(self, message: str) -> str:
        lowered = (message or "").lower()
        for keyword in self._ASSESSMENT_KEYWORDS:
            if keyword in lowered:
                return INTENT_ASSESSMENT
        return INTENT_SYMPTOM_TRACKING
