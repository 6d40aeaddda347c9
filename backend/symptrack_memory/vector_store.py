from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np

from .database import SQLiteMemoryDB
from .time_utils import to_iso, utc_now

logger = logging.getLogger(__name__)


@dataclass
class StoredVector:
    message_id: str
    conversation_id: str
    created_at: str
    vector: np.ndarray
    message_rowid: int = 0

    @property
    def dimension(self) -> int:
        return int(self.vector.shape[0])


class VectorStore:
    """Message embeddings persisted as float32 blobs, one row per message."""

    def __init__(self, db: SQLiteMemoryDB) -> None:
        self._db = db

    def upsert(self, message_id: str, user_id: str, vector: np.ndarray) -> None:
        data = np.asarray(vector, dtype="float32")
        now = to_iso(utc_now())
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO message_embeddings (message_id, user_id, dimension, vector, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(message_id) DO UPDATE SET
                  user_id = excluded.user_id,
                  dimension = excluded.dimension,
                  vector = excluded.vector,
                  updated_at = excluded.updated_at
                """,
                (message_id, user_id, int(data.shape[0]), data.tobytes(), now, now),
            )

    def candidates(self, user_id: str, exclude_conversation_id: str | None = None) -> list[StoredVector]:
        sql = """
            SELECT me.message_id, me.vector, m.conversation_id, m.created_at, m.rowid AS message_rowid
            FROM message_embeddings me
            JOIN messages m ON m.id = me.message_id
            WHERE me.user_id = ? AND m.user_id = ?
        """
        params: list[str] = [user_id, user_id]
        if exclude_conversation_id:
            sql += " AND m.conversation_id != ?"
            params.append(exclude_conversation_id)
        with self._db.connection() as conn:
            rows = conn.execute(sql, tuple(params)).fetchall()
        return [
            StoredVector(
                message_id=row["message_id"],
                conversation_id=row["conversation_id"],
                created_at=row["created_at"],
                vector=np.frombuffer(row["vector"], dtype="float32"),
                message_rowid=row["message_rowid"],
            )
            for row in rows
        ]

    def count(self) -> int:
        with self._db.connection() as conn:
            row = conn.execute("SELECT COUNT(*) AS total FROM message_embeddings").fetchone()
        return int(row["total"])

    def clear_all(self) -> int:
        with self._db.connection() as conn:
            cursor = conn.execute("DELETE FROM message_embeddings")
            removed = cursor.rowcount
        logger.warning("cleared all message embeddings count=%s", removed)
        return removed
