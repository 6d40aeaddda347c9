from __future__ import annotations


class SymptrackError(Exception):
    """Base class for every failure surfaced by the symptom tracking core."""


class HydrationError(SymptrackError):
    """Working memory could not be built from the entity store."""


class ConversationNotFoundError(SymptrackError):
    def __init__(self, conversation_id: str) -> None:
        super().__init__(f"Conversation not found: {conversation_id}")
        self.conversation_id = conversation_id


class DimensionMismatchError(SymptrackError):
    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(
            f"Embedding dimension mismatch: expected {expected} dimensions but the provider returned {actual}. "
            "Set SYMPTRACK_EMBEDDING_MODEL to a model that produces "
            f"{expected}-dimensional vectors (for example text-embedding-3-small), "
            "or clear stored embeddings and change SYMPTRACK_EMBEDDING_DIMENSION."
        )
        self.expected = expected
        self.actual = actual


class WorkflowExecutionError(SymptrackError):
    def __init__(self, intent: str, message: str) -> None:
        super().__init__(f"{intent} workflow failed: {message}")
        self.intent = intent
