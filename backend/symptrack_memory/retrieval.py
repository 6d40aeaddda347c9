from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

import numpy as np

from .conversation_store import ConversationStore
from .errors import DimensionMismatchError
from .models import Message
from .vector_store import VectorStore

logger = logging.getLogger(__name__)

DEFAULT_DIMENSION = 1536
DEFAULT_MIN_SIMILARITY = 0.7


class EmbeddingProvider(Protocol):
    def embed(self, text: str) -> list[float]:
        ...


@dataclass
class ScoredMessage:
    message: Message
    similarity: float


def cosine_similarity(left: np.ndarray, right: np.ndarray) -> float:
    left_norm = float(np.linalg.norm(left))
    right_norm = float(np.linalg.norm(right))
    if left_norm == 0.0 or right_norm == 0.0:
        return 0.0
    return float(np.dot(left, right) / (left_norm * right_norm))


class SemanticRetrieval:
    """Embeds messages and finds similar ones across a user's other conversations."""

    def __init__(
        self,
        provider: EmbeddingProvider,
        vectors: VectorStore,
        conversations: ConversationStore,
        *,
        dimension: int = DEFAULT_DIMENSION,
    ) -> None:
        self._provider = provider
        self._vectors = vectors
        self._conversations = conversations
        self.dimension = dimension

    def _validate(self, vector) -> np.ndarray:
        data = np.asarray(vector, dtype="float32").reshape(-1)
        if data.shape[0] != self.dimension:
            raise DimensionMismatchError(self.dimension, int(data.shape[0]))
        return data

    def embed(self, text: str) -> np.ndarray:
        return self._validate(self._provider.embed(text))

    def store(self, message_id: str, user_id: str, vector) -> None:
        self._vectors.upsert(message_id, user_id, self._validate(vector))

    def index_message(self, message: Message) -> None:
        if not message.content.strip():
            return
        self.store(message.id, message.user_id, self.embed(message.content))

    def search_scored(
        self,
        user_id: str,
        query_text: str,
        *,
        exclude_conversation_id: str | None = None,
        limit: int = 5,
        min_similarity: float = DEFAULT_MIN_SIMILARITY,
    ) -> list[ScoredMessage]:
        if limit <= 0 or not query_text.strip():
            return []
        query = self.embed(query_text)

        scored: list[tuple[float, str, int, str]] = []
        stale = 0
        for candidate in self._vectors.candidates(user_id, exclude_conversation_id):
            if candidate.dimension != self.dimension:
                stale += 1
                continue
            similarity = cosine_similarity(query, candidate.vector)
            if similarity >= min_similarity:
                scored.append((similarity, candidate.created_at, candidate.message_rowid, candidate.message_id))
        if stale:
            logger.warning(
                "skipped %d stored embeddings with a dimension other than %d for user=%s",
                stale,
                self.dimension,
                user_id,
            )

        # Highest similarity first, then newest, then latest inserted.
        scored.sort(key=lambda item: (item[0], item[1], item[2]), reverse=True)
        top = scored[:limit]
        messages = self._conversations.get_messages_by_ids(user_id, [message_id for _, _, _, message_id in top])
        return [
            ScoredMessage(message=messages[message_id], similarity=similarity)
            for similarity, _, _, message_id in top
            if message_id in messages
        ]

    def search(
        self,
        user_id: str,
        query_text: str,
        *,
        exclude_conversation_id: str | None = None,
        limit: int = 5,
        min_similarity: float = DEFAULT_MIN_SIMILARITY,
    ) -> list[Message]:
        return [
            item.message
            for item in self.search_scored(
                user_id,
                query_text,
                exclude_conversation_id=exclude_conversation_id,
                limit=limit,
                min_similarity=min_similarity,
            )
        ]

    def clear_all(self) -> int:
        return self._vectors.clear_all()
