from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator


class SQLiteMemoryDB:
    def __init__(self, db_path: str) -> None:
        self._path = Path(db_path).expanduser().resolve()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._init_schema()

    @property
    def path(self) -> str:
        return str(self._path)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._path), timeout=30.0, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._lock, self.connection() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS symptoms (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  user_id TEXT NOT NULL,
                  name TEXT NOT NULL,
                  name_key TEXT NOT NULL,
                  description TEXT,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL,
                  UNIQUE(user_id, name_key)
                );

                CREATE TABLE IF NOT EXISTS episodes (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  user_id TEXT NOT NULL,
                  symptom_id INTEGER NOT NULL REFERENCES symptoms(id),
                  stage TEXT NOT NULL DEFAULT 'mentioned',
                  status TEXT NOT NULL DEFAULT 'active',
                  started_at TEXT NOT NULL,
                  resolved_at TEXT,
                  severity INTEGER,
                  location TEXT,
                  frequency TEXT,
                  pattern TEXT,
                  triggers_json TEXT NOT NULL DEFAULT '[]',
                  relievers_json TEXT NOT NULL DEFAULT '[]',
                  timeline_json TEXT NOT NULL DEFAULT '[]',
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS negative_findings (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  user_id TEXT NOT NULL,
                  episode_id INTEGER REFERENCES episodes(id),
                  symptom_name TEXT NOT NULL,
                  reported_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS assessments (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  user_id TEXT NOT NULL,
                  conversation_id TEXT NOT NULL,
                  hypothesis TEXT NOT NULL,
                  confidence REAL NOT NULL,
                  differentials_json TEXT NOT NULL DEFAULT '[]',
                  reasoning TEXT NOT NULL DEFAULT '',
                  recommended_action TEXT NOT NULL,
                  negative_finding_ids_json TEXT NOT NULL DEFAULT '[]',
                  status TEXT NOT NULL DEFAULT 'draft',
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL,
                  UNIQUE(user_id, conversation_id)
                );

                CREATE TABLE IF NOT EXISTS assessment_episode_links (
                  assessment_id INTEGER NOT NULL REFERENCES assessments(id) ON DELETE CASCADE,
                  episode_id INTEGER NOT NULL REFERENCES episodes(id),
                  weight REAL NOT NULL,
                  reasoning TEXT NOT NULL DEFAULT '',
                  PRIMARY KEY (assessment_id, episode_id)
                );

                CREATE TABLE IF NOT EXISTS conversations (
                  id TEXT PRIMARY KEY,
                  user_id TEXT NOT NULL,
                  title TEXT NOT NULL,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS messages (
                  id TEXT PRIMARY KEY,
                  conversation_id TEXT NOT NULL REFERENCES conversations(id),
                  user_id TEXT NOT NULL,
                  role TEXT NOT NULL,
                  content TEXT NOT NULL,
                  status_json TEXT,
                  created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS message_embeddings (
                  message_id TEXT PRIMARY KEY REFERENCES messages(id),
                  user_id TEXT NOT NULL,
                  dimension INTEGER NOT NULL,
                  vector BLOB NOT NULL,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_episodes_user_status_started
                  ON episodes(user_id, status, started_at DESC);
                CREATE INDEX IF NOT EXISTS idx_negative_findings_user_reported
                  ON negative_findings(user_id, reported_at);
                CREATE INDEX IF NOT EXISTS idx_conversations_user_updated
                  ON conversations(user_id, updated_at DESC);
                CREATE INDEX IF NOT EXISTS idx_messages_conversation_created
                  ON messages(conversation_id, created_at);
                CREATE INDEX IF NOT EXISTS idx_message_embeddings_user
                  ON message_embeddings(user_id);
                """
            )
