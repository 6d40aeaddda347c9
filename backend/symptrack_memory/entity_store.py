from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timedelta
from typing import Any, Iterable

from .database import SQLiteMemoryDB
from .memory_policy_guard import MemoryPolicyGuard
from .models import (
    Assessment,
    Episode,
    EpisodeLink,
    NegativeFinding,
    Symptom,
    TimelineEntry,
    normalize_symptom_name,
)
from .time_utils import to_iso, utc_now

logger = logging.getLogger(__name__)

ACTIVE_EPISODE_WINDOW_DAYS = 14
NEGATIVE_FINDING_WINDOW_DAYS = 7

_EPISODE_COLUMNS = """
    e.id, e.user_id, e.symptom_id, s.name AS symptom_name, e.stage, e.status, e.started_at,
    e.resolved_at, e.severity, e.location, e.frequency, e.pattern, e.triggers_json,
    e.relievers_json, e.timeline_json, e.created_at, e.updated_at
"""


def _json_dumps(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


def _dedupe(values: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    result: list[str] = []
    for value in values:
        cleaned = " ".join(str(value).split())
        key = cleaned.casefold()
        if cleaned and key not in seen:
            seen.add(key)
            result.append(cleaned)
    return result


def _row_to_symptom(row: sqlite3.Row) -> Symptom:
    return Symptom(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        description=row["description"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_episode(row: sqlite3.Row) -> Episode:
    return Episode(
        id=row["id"],
        user_id=row["user_id"],
        symptom_id=row["symptom_id"],
        symptom_name=row["symptom_name"] or "",
        stage=row["stage"],
        status=row["status"],
        started_at=row["started_at"],
        resolved_at=row["resolved_at"],
        severity=row["severity"],
        location=row["location"],
        frequency=row["frequency"],
        pattern=row["pattern"],
        triggers=json.loads(row["triggers_json"]),
        relievers=json.loads(row["relievers_json"]),
        timeline=[TimelineEntry(**item) for item in json.loads(row["timeline_json"])],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_negative_finding(row: sqlite3.Row) -> NegativeFinding:
    return NegativeFinding(
        id=row["id"],
        user_id=row["user_id"],
        episode_id=row["episode_id"],
        symptom_name=row["symptom_name"],
        reported_at=row["reported_at"],
    )


class EntityStore:
    """Persistent symptoms, episodes, negative findings and assessments.

    Every write opens its own connection and commits on exit, so each call is
    one atomic unit. There is no transaction spanning several calls.
    """

    def __init__(self, db: SQLiteMemoryDB, guard: MemoryPolicyGuard | None = None) -> None:
        self._db = db
        self._guard = guard or MemoryPolicyGuard()

    # Symptoms

    def get_symptoms(self, user_id: str, symptom_ids: Iterable[int] | None = None) -> list[Symptom]:
        sql = "SELECT * FROM symptoms WHERE user_id = ?"
        params: list[Any] = [user_id]
        if symptom_ids is not None:
            ids = sorted(set(symptom_ids))
            if not ids:
                return []
            sql += f" AND id IN ({', '.join('?' for _ in ids)})"
            params.extend(ids)
        sql += " ORDER BY name_key"
        with self._db.connection() as conn:
            return [_row_to_symptom(row) for row in conn.execute(sql, tuple(params)).fetchall()]

    def get_symptom_by_name(self, user_id: str, name: str) -> Symptom | None:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM symptoms WHERE user_id = ? AND name_key = ?",
                (user_id, normalize_symptom_name(name)),
            ).fetchone()
        return _row_to_symptom(row) if row else None

    def get_or_create_symptom(
        self,
        user_id: str,
        name: str,
        description: str | None = None,
    ) -> tuple[Symptom, bool]:
        cleaned = self._guard.ensure_symptom_name(name)
        name_key = normalize_symptom_name(cleaned)
        now = to_iso(utc_now())
        with self._db.connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO symptoms (user_id, name, name_key, description, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id, name_key) DO NOTHING
                """,
                (user_id, cleaned, name_key, description, now, now),
            )
            created = cursor.rowcount == 1
            row = conn.execute(
                "SELECT * FROM symptoms WHERE user_id = ? AND name_key = ?",
                (user_id, name_key),
            ).fetchone()
        if created:
            logger.info("created symptom user=%s name=%s", user_id, cleaned)
        return _row_to_symptom(row), created

    # Episodes

    def get_active_episodes(
        self,
        user_id: str,
        *,
        days: int = ACTIVE_EPISODE_WINDOW_DAYS,
        now: datetime | None = None,
    ) -> list[Episode]:
        window_start = to_iso((now or utc_now()) - timedelta(days=days))
        with self._db.connection() as conn:
            rows = conn.execute(
                f"""
                SELECT {_EPISODE_COLUMNS}
                FROM episodes e
                LEFT JOIN symptoms s ON s.id = e.symptom_id
                WHERE e.user_id = ? AND e.status = 'active' AND e.started_at >= ?
                ORDER BY e.started_at DESC, e.id DESC
                """,
                (user_id, window_start),
            ).fetchall()
        return [_row_to_episode(row) for row in rows]

    def get_episode(self, user_id: str, episode_id: int) -> Episode | None:
        with self._db.connection() as conn:
            row = conn.execute(
                f"""
                SELECT {_EPISODE_COLUMNS}
                FROM episodes e
                LEFT JOIN symptoms s ON s.id = e.symptom_id
                WHERE e.user_id = ? AND e.id = ?
                """,
                (user_id, episode_id),
            ).fetchone()
        return _row_to_episode(row) if row else None

    def list_episodes(self, user_id: str, *, status: str | None = None, limit: int = 50) -> list[Episode]:
        sql = f"""
            SELECT {_EPISODE_COLUMNS}
            FROM episodes e
            LEFT JOIN symptoms s ON s.id = e.symptom_id
            WHERE e.user_id = ?
        """
        params: list[Any] = [user_id]
        if status:
            sql += " AND e.status = ?"
            params.append(self._guard.ensure_status(status))
        sql += " ORDER BY e.started_at DESC, e.id DESC LIMIT ?"
        params.append(max(1, limit))
        with self._db.connection() as conn:
            return [_row_to_episode(row) for row in conn.execute(sql, tuple(params)).fetchall()]

    def get_episodes_by_symptom(self, user_id: str, symptom_name: str, *, limit: int = 20) -> list[Episode]:
        with self._db.connection() as conn:
            rows = conn.execute(
                f"""
                SELECT {_EPISODE_COLUMNS}
                FROM episodes e
                JOIN symptoms s ON s.id = e.symptom_id
                WHERE e.user_id = ? AND s.name_key = ?
                ORDER BY e.started_at DESC, e.id DESC
                LIMIT ?
                """,
                (user_id, normalize_symptom_name(symptom_name), max(1, limit)),
            ).fetchall()
        return [_row_to_episode(row) for row in rows]

    def create_episode(
        self,
        user_id: str,
        symptom: Symptom,
        *,
        severity: int | None = None,
        location: str | None = None,
        frequency: str | None = None,
        pattern: str | None = None,
        triggers: Iterable[str] = (),
        relievers: Iterable[str] = (),
        notes: str | None = None,
        started_at: datetime | None = None,
    ) -> Episode:
        self._guard.ensure_user_scope(symptom.user_id, user_id)
        severity = self._guard.ensure_severity(severity)
        frequency = self._guard.ensure_frequency(frequency)
        now = to_iso(utc_now())
        started = to_iso(started_at) if started_at else now
        timeline: list[dict[str, Any]] = []
        if severity is not None or notes:
            timeline.append({"date": started, "severity": severity, "notes": notes})
        with self._db.connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO episodes (
                  user_id, symptom_id, stage, status, started_at, severity, location, frequency, pattern,
                  triggers_json, relievers_json, timeline_json, created_at, updated_at
                )
                VALUES (?, ?, 'mentioned', 'active', ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    symptom.id,
                    started,
                    severity,
                    location,
                    frequency,
                    pattern,
                    _json_dumps(_dedupe(triggers)),
                    _json_dumps(_dedupe(relievers)),
                    _json_dumps(timeline),
                    now,
                    now,
                ),
            )
            episode_id = cursor.lastrowid
        logger.info("created episode user=%s id=%s symptom=%s", user_id, episode_id, symptom.name)
        episode = self.get_episode(user_id, episode_id)
        if episode is None:
            raise KeyError(f"Episode not found after insert: {episode_id}")
        return episode

    def save_episode(self, user_id: str, episode: Episode) -> Episode:
        self._guard.ensure_user_scope(episode.user_id, user_id)
        self._guard.ensure_stage(episode.stage)
        self._guard.ensure_status(episode.status)
        self._guard.ensure_severity(episode.severity)
        self._guard.ensure_frequency(episode.frequency)
        now = to_iso(utc_now())
        with self._db.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE episodes SET
                  stage = ?, status = ?, resolved_at = ?, severity = ?, location = ?, frequency = ?,
                  pattern = ?, triggers_json = ?, relievers_json = ?, timeline_json = ?, updated_at = ?
                WHERE id = ? AND user_id = ?
                """,
                (
                    episode.stage,
                    episode.status,
                    episode.resolved_at,
                    episode.severity,
                    episode.location,
                    episode.frequency,
                    episode.pattern,
                    _json_dumps(_dedupe(episode.triggers)),
                    _json_dumps(_dedupe(episode.relievers)),
                    _json_dumps([entry.__dict__ for entry in episode.timeline]),
                    now,
                    episode.id,
                    user_id,
                ),
            )
            if cursor.rowcount != 1:
                raise KeyError(f"Episode not found: {episode.id}")
        episode.updated_at = now
        return episode

    def set_episode_stage(self, user_id: str, episode_id: int, stage: str) -> Episode | None:
        self._guard.ensure_stage(stage)
        with self._db.connection() as conn:
            conn.execute(
                "UPDATE episodes SET stage = ?, updated_at = ? WHERE id = ? AND user_id = ?",
                (stage, to_iso(utc_now()), episode_id, user_id),
            )
        return self.get_episode(user_id, episode_id)

    def resolve_episode(self, user_id: str, episode_id: int) -> Episode | None:
        now = to_iso(utc_now())
        with self._db.connection() as conn:
            conn.execute(
                """
                UPDATE episodes
                SET status = 'resolved', resolved_at = ?, updated_at = ?
                WHERE id = ? AND user_id = ? AND status != 'resolved'
                """,
                (now, now, episode_id, user_id),
            )
        episode = self.get_episode(user_id, episode_id)
        if episode is not None:
            logger.info("resolved episode user=%s id=%s", user_id, episode_id)
        return episode

    # Negative findings

    def record_negative_finding(
        self,
        user_id: str,
        symptom_name: str,
        *,
        episode_id: int | None = None,
        reported_at: datetime | None = None,
    ) -> NegativeFinding:
        cleaned = self._guard.ensure_symptom_name(symptom_name)
        reported = to_iso(reported_at or utc_now())
        with self._db.connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO negative_findings (user_id, episode_id, symptom_name, reported_at)
                VALUES (?, ?, ?, ?)
                """,
                (user_id, episode_id, cleaned, reported),
            )
            row = conn.execute("SELECT * FROM negative_findings WHERE id = ?", (cursor.lastrowid,)).fetchone()
        return _row_to_negative_finding(row)

    def get_negative_findings(
        self,
        user_id: str,
        *,
        days: int = NEGATIVE_FINDING_WINDOW_DAYS,
        now: datetime | None = None,
    ) -> list[NegativeFinding]:
        window_start = to_iso((now or utc_now()) - timedelta(days=days))
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM negative_findings
                WHERE user_id = ? AND reported_at >= ?
                ORDER BY reported_at DESC, id DESC
                """,
                (user_id, window_start),
            ).fetchall()
        return [_row_to_negative_finding(row) for row in rows]

    # Assessments

    def create_assessment(
        self,
        user_id: str,
        conversation_id: str,
        *,
        hypothesis: str,
        confidence: float,
        reasoning: str,
        recommended_action: str,
        differentials: list[str] | None = None,
        linked_episodes: list[EpisodeLink] | None = None,
        negative_finding_ids: list[int] | None = None,
    ) -> Assessment:
        confidence = self._guard.ensure_confidence(confidence)
        self._guard.ensure_recommended_action(recommended_action)
        links = self._guard.ensure_link_weights(list(linked_episodes or []))
        now = to_iso(utc_now())
        with self._db.connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO assessments (
                  user_id, conversation_id, hypothesis, confidence, differentials_json, reasoning,
                  recommended_action, negative_finding_ids_json, status, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, 'draft', ?, ?)
                """,
                (
                    user_id,
                    conversation_id,
                    hypothesis,
                    confidence,
                    _json_dumps(list(differentials or [])),
                    reasoning,
                    recommended_action,
                    _json_dumps(list(negative_finding_ids or [])),
                    now,
                    now,
                ),
            )
            assessment_id = cursor.lastrowid
            self._write_links(conn, assessment_id, links)
        logger.info("created assessment user=%s id=%s conversation=%s", user_id, assessment_id, conversation_id)
        assessment = self.get_assessment(user_id, assessment_id)
        if assessment is None:
            raise KeyError(f"Assessment not found after insert: {assessment_id}")
        return assessment

    def update_assessment(self, user_id: str, assessment: Assessment) -> Assessment:
        self._guard.ensure_user_scope(assessment.user_id, user_id)
        self._guard.ensure_confidence(assessment.confidence)
        self._guard.ensure_recommended_action(assessment.recommended_action)
        self._guard.ensure_assessment_status(assessment.status)
        links = self._guard.ensure_link_weights(list(assessment.linked_episodes))
        now = to_iso(utc_now())
        with self._db.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE assessments SET
                  hypothesis = ?, confidence = ?, differentials_json = ?, reasoning = ?,
                  recommended_action = ?, negative_finding_ids_json = ?, status = ?, updated_at = ?
                WHERE id = ? AND user_id = ?
                """,
                (
                    assessment.hypothesis,
                    assessment.confidence,
                    _json_dumps(list(assessment.differentials)),
                    assessment.reasoning,
                    assessment.recommended_action,
                    _json_dumps(list(assessment.negative_finding_ids)),
                    assessment.status,
                    now,
                    assessment.id,
                    user_id,
                ),
            )
            if cursor.rowcount != 1:
                raise KeyError(f"Assessment not found: {assessment.id}")
            conn.execute("DELETE FROM assessment_episode_links WHERE assessment_id = ?", (assessment.id,))
            self._write_links(conn, assessment.id, links)
        assessment.updated_at = now
        return assessment

    def complete_assessment(self, user_id: str, assessment_id: int) -> Assessment | None:
        with self._db.connection() as conn:
            conn.execute(
                "UPDATE assessments SET status = 'completed', updated_at = ? WHERE id = ? AND user_id = ?",
                (to_iso(utc_now()), assessment_id, user_id),
            )
        return self.get_assessment(user_id, assessment_id)

    def get_assessment(self, user_id: str, assessment_id: int) -> Assessment | None:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM assessments WHERE user_id = ? AND id = ?",
                (user_id, assessment_id),
            ).fetchone()
            return self._load_assessment(conn, row) if row else None

    def get_assessment_by_conversation(self, user_id: str, conversation_id: str) -> Assessment | None:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM assessments WHERE user_id = ? AND conversation_id = ?",
                (user_id, conversation_id),
            ).fetchone()
            return self._load_assessment(conn, row) if row else None

    def get_recent_assessments(self, user_id: str, limit: int = 10) -> list[Assessment]:
        with self._db.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM assessments WHERE user_id = ? ORDER BY updated_at DESC, id DESC LIMIT ?",
                (user_id, max(1, limit)),
            ).fetchall()
            return [self._load_assessment(conn, row) for row in rows]

    @staticmethod
    def _write_links(conn: sqlite3.Connection, assessment_id: int, links: list[EpisodeLink]) -> None:
        conn.executemany(
            """
            INSERT INTO assessment_episode_links (assessment_id, episode_id, weight, reasoning)
            VALUES (?, ?, ?, ?)
            """,
            [(assessment_id, link.episode_id, link.weight, link.reasoning) for link in links],
        )

    @staticmethod
    def _load_assessment(conn: sqlite3.Connection, row: sqlite3.Row) -> Assessment:
        links = [
            EpisodeLink(episode_id=link["episode_id"], weight=link["weight"], reasoning=link["reasoning"])
            for link in conn.execute(
                """
                SELECT episode_id, weight, reasoning
                FROM assessment_episode_links
                WHERE assessment_id = ?
                ORDER BY weight DESC, episode_id
                """,
                (row["id"],),
            ).fetchall()
        ]
        return Assessment(
            id=row["id"],
            user_id=row["user_id"],
            conversation_id=row["conversation_id"],
            hypothesis=row["hypothesis"],
            confidence=row["confidence"],
            differentials=json.loads(row["differentials_json"]),
            reasoning=row["reasoning"],
            recommended_action=row["recommended_action"],
            negative_finding_ids=json.loads(row["negative_finding_ids_json"]),
            linked_episodes=links,
            status=row["status"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
