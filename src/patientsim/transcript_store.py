"""SQLite persistence for session rows, transcript turns and analyses.

The live conversation never depends on this store: the session service logs
and swallows :class:`PersistenceError` so a failing disk only affects what a
later restore can reload.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from .conversation import PATIENT, THERAPIST, Turn, TurnPair
from .errors import PersistenceError
from .text_generators.base import Usage

_LOG = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionRecord:
    """Persisted metadata for one session."""

    id: str
    user_id: str
    persona_id: str
    status: str
    started_at: datetime
    ended_at: Optional[datetime] = None
    new_week: bool = False
    previous_session_id: Optional[str] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class SessionOverview:
    """One row of a user's session history."""

    record: SessionRecord
    message_count: int
    rating: Optional[float] = None


def _to_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class TranscriptStore:
    """Database interface for sessions and their turn pairs."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        Path(self.db_path).expanduser().parent.mkdir(parents=True, exist_ok=True)
        self._ensure_tables_exist()

    # ==================== Database Connection ====================

    @contextmanager
    def _get_connection(self, row_factory: bool = False) -> Iterator[sqlite3.Connection]:
        """Get a database connection that commits on success.

        Any ``sqlite3.Error`` is re-raised as :class:`PersistenceError`.
        """
        try:
            conn = sqlite3.connect(self.db_path)
        except sqlite3.Error as exc:
            raise PersistenceError(f"Cannot open transcript store {self.db_path}: {exc}") from exc
        try:
            if row_factory:
                conn.row_factory = sqlite3.Row
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise PersistenceError(f"Transcript store error: {exc}") from exc
        finally:
            conn.close()

    def _ensure_tables_exist(self) -> None:
        with self._get_connection() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS sessions (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    persona_id TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'active'
                        CHECK (status IN ('active', 'paused', 'ended', 'cancelled')),
                    started_at TEXT NOT NULL,
                    ended_at TEXT,
                    new_week INTEGER DEFAULT 0,
                    previous_session_id TEXT,
                    notes TEXT
                )
                """
            )
            # A row is written as soon as the therapist turn is appended; the
            # reply columns stay NULL until (and unless) the persona answers.
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS turn_pairs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_id TEXT NOT NULL,
                    prompt TEXT NOT NULL,
                    prompt_at TEXT NOT NULL,
                    reply TEXT,
                    reply_at TEXT,
                    model TEXT,
                    input_tokens INTEGER DEFAULT 0,
                    output_tokens INTEGER DEFAULT 0,
                    cache_creation_tokens INTEGER DEFAULT 0,
                    cache_read_tokens INTEGER DEFAULT 0,
                    response_time REAL DEFAULT 0
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_turn_pairs_session ON turn_pairs(session_id, id)"
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS session_analyses (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_id TEXT NOT NULL,
                    analysis_type TEXT NOT NULL
                        CHECK (analysis_type IN ('interim', 'final', 'supervisor')),
                    content TEXT NOT NULL,
                    rating REAL CHECK (rating IS NULL OR (rating >= 1 AND rating <= 10)),
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_session_analyses_session "
                "ON session_analyses(session_id, analysis_type)"
            )

    # ==================== Sessions ====================

    def record_session(self, record: SessionRecord) -> None:
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO sessions
                (id, user_id, persona_id, status, started_at, ended_at, new_week,
                 previous_session_id, notes)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    record.user_id,
                    record.persona_id,
                    record.status,
                    _to_iso(record.started_at),
                    _to_iso(record.ended_at) if record.ended_at else None,
                    int(record.new_week),
                    record.previous_session_id,
                    record.notes,
                ),
            )

    def update_status(
        self,
        session_id: str,
        status: str,
        ended_at: Optional[datetime] = None,
        notes: Optional[str] = None,
    ) -> None:
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                UPDATE sessions
                SET status = ?, ended_at = COALESCE(?, ended_at), notes = COALESCE(?, notes)
                WHERE id = ?
                """,
                (status, _to_iso(ended_at) if ended_at else None, notes, session_id),
            )
            if cursor.rowcount == 0:
                _LOG.warning("update_status: no session row for %s", session_id)

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> SessionRecord:
        return SessionRecord(
            id=row["id"],
            user_id=row["user_id"],
            persona_id=row["persona_id"],
            status=row["status"],
            started_at=_from_iso(row["started_at"]),
            ended_at=_from_iso(row["ended_at"]),
            new_week=bool(row["new_week"]),
            previous_session_id=row["previous_session_id"],
            notes=row["notes"],
        )

    def get_session(self, session_id: str) -> Optional[SessionRecord]:
        with self._get_connection(row_factory=True) as conn:
            row = conn.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)).fetchone()
        return self._row_to_record(row) if row is not None else None

    def session_history(self, user_id: str, limit: int = 10, offset: int = 0) -> list[SessionOverview]:
        """Return a user's sessions, newest first, with turn counts and latest rating."""
        with self._get_connection(row_factory=True) as conn:
            rows = conn.execute(
                """
                SELECT s.*,
                       (SELECT COUNT(*) FROM turn_pairs t WHERE t.session_id = s.id) AS prompts,
                       (SELECT COUNT(*) FROM turn_pairs t
                         WHERE t.session_id = s.id AND t.reply IS NOT NULL) AS replies,
                       (SELECT a.rating FROM session_analyses a
                         WHERE a.session_id = s.id AND a.analysis_type = 'supervisor'
                         ORDER BY a.id DESC LIMIT 1) AS rating
                FROM sessions s
                WHERE s.user_id = ?
                ORDER BY s.started_at DESC
                LIMIT ? OFFSET ?
                """,
                (user_id, limit, offset),
            ).fetchall()
        return [
            SessionOverview(
                record=self._row_to_record(row),
                message_count=row["prompts"] + row["replies"],
                rating=row["rating"],
            )
            for row in rows
        ]

    # ==================== Transcript ====================

    def append_prompt(self, session_id: str, turn: Turn) -> int:
        """Persist a therapist turn that is still waiting for a reply; return its row id."""
        if turn.role != THERAPIST:
            raise ValueError("append_prompt expects a therapist turn")
        with self._get_connection() as conn:
            cursor = conn.execute(
                "INSERT INTO turn_pairs (session_id, prompt, prompt_at) VALUES (?, ?, ?)",
                (session_id, turn.content, _to_iso(turn.created_at)),
            )
            row_id = cursor.lastrowid
        _LOG.debug("Persisted prompt %d for session %s", row_id, session_id)
        return row_id

    def complete_prompt(
        self,
        row_id: int,
        reply: Turn,
        usage: Optional[Usage] = None,
        model: Optional[str] = None,
        response_time: float = 0.0,
    ) -> None:
        """Attach the persona reply and its usage counters to a stored prompt."""
        usage = usage or Usage()
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                UPDATE turn_pairs
                SET reply = ?, reply_at = ?, model = ?, input_tokens = ?, output_tokens = ?,
                    cache_creation_tokens = ?, cache_read_tokens = ?, response_time = ?
                WHERE id = ?
                """,
                (
                    reply.content,
                    _to_iso(reply.created_at),
                    model,
                    usage.input_tokens,
                    usage.output_tokens,
                    usage.cache_creation_tokens,
                    usage.cache_read_tokens,
                    response_time,
                    row_id,
                ),
            )
            if cursor.rowcount == 0:
                raise PersistenceError(f"No stored prompt with id {row_id}")

    def append(
        self,
        session_id: str,
        pair: TurnPair,
        usage: Optional[Usage] = None,
        model: Optional[str] = None,
        response_time: float = 0.0,
    ) -> None:
        """Persist one complete therapist/patient exchange with its usage counters."""
        usage = usage or Usage()
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO turn_pairs
                (session_id, prompt, prompt_at, reply, reply_at, model, input_tokens,
                 output_tokens, cache_creation_tokens, cache_read_tokens, response_time)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    session_id,
                    pair.prompt.content,
                    _to_iso(pair.prompt.created_at),
                    pair.reply.content,
                    _to_iso(pair.reply.created_at),
                    model,
                    usage.input_tokens,
                    usage.output_tokens,
                    usage.cache_creation_tokens,
                    usage.cache_read_tokens,
                    response_time,
                ),
            )
        _LOG.debug("Persisted turn pair for session %s", session_id)

    def _load_rows(self, session_id: str) -> list[sqlite3.Row]:
        with self._get_connection(row_factory=True) as conn:
            return conn.execute(
                "SELECT * FROM turn_pairs WHERE session_id = ? ORDER BY id ASC",
                (session_id,),
            ).fetchall()

    def load_pairs(self, session_id: str) -> list[TurnPair]:
        """Return the answered exchanges of *session_id*."""
        return [
            TurnPair(
                prompt=Turn(THERAPIST, row["prompt"], _from_iso(row["prompt_at"])),
                reply=Turn(PATIENT, row["reply"], _from_iso(row["reply_at"])),
            )
            for row in self._load_rows(session_id)
            if row["reply"] is not None
        ]

    def load_all(self, session_id: str) -> list[Turn]:
        """Return every persisted turn of *session_id* in dialogue order.

        Unanswered prompts are included so a reload matches what the persona
        was sent.
        """
        turns: list[Turn] = []
        for row in self._load_rows(session_id):
            turns.append(Turn(THERAPIST, row["prompt"], _from_iso(row["prompt_at"])))
            if row["reply"] is not None:
                turns.append(Turn(PATIENT, row["reply"], _from_iso(row["reply_at"])))
        _LOG.info("Loaded %d turns for session %s", len(turns), session_id)
        return turns

    def usage_totals(self, session_id: Optional[str] = None) -> dict:
        """Aggregate token usage and cache efficiency over answered turns."""
        query = """
            SELECT COUNT(*) AS calls,
                   COALESCE(SUM(input_tokens), 0) AS input_tokens,
                   COALESCE(SUM(output_tokens), 0) AS output_tokens,
                   COALESCE(SUM(cache_creation_tokens), 0) AS cache_creation_tokens,
                   COALESCE(SUM(cache_read_tokens), 0) AS cache_read_tokens,
                   COALESCE(SUM(CASE WHEN cache_read_tokens > 0 THEN 1 ELSE 0 END), 0) AS cache_hits
            FROM turn_pairs
            WHERE reply IS NOT NULL
        """
        params: tuple = ()
        if session_id is not None:
            query += " AND session_id = ?"
            params = (session_id,)
        with self._get_connection(row_factory=True) as conn:
            row = conn.execute(query, params).fetchone()
        totals = dict(row)
        totals["cache_hit_rate"] = totals["cache_hits"] / totals["calls"] if totals["calls"] else 0.0
        return totals

    # ==================== Analyses ====================

    def save_analysis(
        self,
        session_id: str,
        analysis_type: str,
        content: dict,
        rating: Optional[float] = None,
    ) -> None:
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO session_analyses (session_id, analysis_type, content, rating, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    session_id,
                    analysis_type,
                    json.dumps(content, ensure_ascii=False),
                    rating,
                    _to_iso(datetime.now(timezone.utc)),
                ),
            )
        _LOG.info("Saved %s analysis for session %s (rating=%s)", analysis_type, session_id, rating)

    def latest_analysis(self, session_id: str, analysis_type: str = "supervisor") -> Optional[dict]:
        """Return the most recent stored analysis content, or None."""
        with self._get_connection(row_factory=True) as conn:
            row = conn.execute(
                """
                SELECT content FROM session_analyses
                WHERE session_id = ? AND analysis_type = ?
                ORDER BY id DESC LIMIT 1
                """,
                (session_id, analysis_type),
            ).fetchone()
        return json.loads(row["content"]) if row is not None else None
