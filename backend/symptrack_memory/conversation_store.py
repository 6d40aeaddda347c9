from __future__ import annotations

import logging
import sqlite3
import uuid

from .database import SQLiteMemoryDB
from .errors import ConversationNotFoundError
from .models import Conversation, Message
from .time_utils import to_iso, utc_now

logger = logging.getLogger(__name__)

TITLE_MAX_CHARS = 50


def conversation_title(first_message: str) -> str:
    text = " ".join((first_message or "").split())
    if not text:
        return "New conversation"
    if len(text) <= TITLE_MAX_CHARS:
        return text
    return text[:TITLE_MAX_CHARS] + "..."


def _row_to_conversation(row: sqlite3.Row) -> Conversation:
    return Conversation(
        id=row["id"],
        user_id=row["user_id"],
        title=row["title"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_message(row: sqlite3.Row) -> Message:
    return Message(
        id=row["id"],
        conversation_id=row["conversation_id"],
        user_id=row["user_id"],
        role=row["role"],
        content=row["content"],
        status_json=row["status_json"],
        created_at=row["created_at"],
    )


class ConversationStore:
    def __init__(self, db: SQLiteMemoryDB) -> None:
        self._db = db

    def get_conversation(self, user_id: str, conversation_id: str) -> Conversation | None:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM conversations WHERE id = ? AND user_id = ?",
                (conversation_id, user_id),
            ).fetchone()
        return _row_to_conversation(row) if row else None

    def get_or_create_conversation(
        self,
        user_id: str,
        conversation_id: str | None,
        first_message: str,
    ) -> tuple[Conversation, bool]:
        if conversation_id:
            existing = self.get_conversation(user_id, conversation_id)
            if existing is None:
                raise ConversationNotFoundError(conversation_id)
            return existing, False

        now = to_iso(utc_now())
        conversation = Conversation(
            id=uuid.uuid4().hex,
            user_id=user_id,
            title=conversation_title(first_message),
            created_at=now,
            updated_at=now,
        )
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO conversations (id, user_id, title, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (conversation.id, user_id, conversation.title, now, now),
            )
        logger.info("created conversation user=%s id=%s", user_id, conversation.id)
        return conversation, True

    def list_conversations(self, user_id: str, limit: int = 20) -> list[Conversation]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM conversations
                WHERE user_id = ?
                ORDER BY updated_at DESC
                LIMIT ?
                """,
                (user_id, max(1, limit)),
            ).fetchall()
        return [_row_to_conversation(row) for row in rows]

    def add_message(
        self,
        *,
        user_id: str,
        conversation_id: str,
        role: str,
        content: str,
        status_json: str | None = None,
    ) -> Message:
        if role not in {"user", "assistant"}:
            raise ValueError(f"Unsupported message role: {role}")
        now = to_iso(utc_now())
        message = Message(
            id=uuid.uuid4().hex,
            conversation_id=conversation_id,
            user_id=user_id,
            role=role,
            content=content,
            status_json=status_json,
            created_at=now,
        )
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO messages (id, conversation_id, user_id, role, content, status_json, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (message.id, conversation_id, user_id, role, content, status_json, now),
            )
            conn.execute(
                "UPDATE conversations SET updated_at = ? WHERE id = ? AND user_id = ?",
                (now, conversation_id, user_id),
            )
        return message

    def get_messages(self, user_id: str, conversation_id: str, limit: int = 200) -> list[Message]:
        if self.get_conversation(user_id, conversation_id) is None:
            raise ConversationNotFoundError(conversation_id)
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM messages
                WHERE conversation_id = ? AND user_id = ?
                ORDER BY created_at, rowid
                LIMIT ?
                """,
                (conversation_id, user_id, max(1, limit)),
            ).fetchall()
        return [_row_to_message(row) for row in rows]

    def get_messages_by_ids(self, user_id: str, message_ids: list[str]) -> dict[str, Message]:
        if not message_ids:
            return {}
        placeholders = ", ".join("?" for _ in message_ids)
        with self._db.connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM messages WHERE user_id = ? AND id IN ({placeholders})",
                (user_id, *message_ids),
            ).fetchall()
        return {row["id"]: _row_to_message(row) for row in rows}

    def update_title(self, user_id: str, conversation_id: str, title: str) -> Conversation:
        cleaned = " ".join((title or "").split())
        if not cleaned:
            raise ValueError("Conversation title must not be empty.")
        if len(cleaned) > TITLE_MAX_CHARS:
            cleaned = cleaned[:TITLE_MAX_CHARS] + "..."
        now = to_iso(utc_now())
        with self._db.connection() as conn:
            cursor = conn.execute(
                "UPDATE conversations SET title = ?, updated_at = ? WHERE id = ? AND user_id = ?",
                (cleaned, now, conversation_id, user_id),
            )
            if cursor.rowcount == 0:
                raise ConversationNotFoundError(conversation_id)
        logger.info("renamed conversation user=%s id=%s", user_id, conversation_id)
        conversation = self.get_conversation(user_id, conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)
        return conversation

    def delete_conversation(self, user_id: str, conversation_id: str) -> None:
        """Remove a conversation with its messages, their embeddings and its assessment."""
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT id FROM conversations WHERE id = ? AND user_id = ?",
                (conversation_id, user_id),
            ).fetchone()
            if row is None:
                raise ConversationNotFoundError(conversation_id)
            conn.execute(
                """
                DELETE FROM message_embeddings
                WHERE user_id = ?
                  AND message_id IN (SELECT id FROM messages WHERE conversation_id = ? AND user_id = ?)
                """,
                (user_id, conversation_id, user_id),
            )
            conn.execute(
                "DELETE FROM messages WHERE conversation_id = ? AND user_id = ?",
                (conversation_id, user_id),
            )
            conn.execute(
                """
                DELETE FROM assessment_episode_links
                WHERE assessment_id IN (SELECT id FROM assessments WHERE conversation_id = ? AND user_id = ?)
                """,
                (conversation_id, user_id),
            )
            conn.execute(
                "DELETE FROM assessments WHERE conversation_id = ? AND user_id = ?",
                (conversation_id, user_id),
            )
            conn.execute(
                "DELETE FROM conversations WHERE id = ? AND user_id = ?",
                (conversation_id, user_id),
            )
        logger.info("deleted conversation user=%s id=%s", user_id, conversation_id)
