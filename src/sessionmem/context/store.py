"""SQLite storage for sessions, observations and notes with FTS5 search."""

import json
import logging
import re
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from sessionmem.config import DB_PATH, ensure_dirs
from sessionmem.context.models import (
    Note,
    NoteSource,
    Observation,
    ObservationStatus,
    Session,
    SessionStatus,
    StatsSnapshot,
)
from sessionmem.errors import NotFoundError, StorageUnavailableError, ValidationError

logger = logging.getLogger(__name__)

MAX_QUERY_KEYWORDS = 5
MIN_KEYWORD_LENGTH = 4

SCHEMA = """
CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    project_path TEXT NOT NULL,
    user_prompt TEXT,
    summary TEXT,
    created_at TEXT NOT NULL,
    ended_at TEXT,
    status TEXT NOT NULL DEFAULT 'active',
    total_observations INTEGER NOT NULL DEFAULT 0,
    tokens_saved INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS observations (
    id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
    function_name TEXT NOT NULL,
    function_args TEXT,
    function_result TEXT,
    compressed_data TEXT,
    original_tokens INTEGER,
    compressed_tokens INTEGER,
    tokens_saved INTEGER,
    timestamp TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    observation_type TEXT
);

CREATE TABLE IF NOT EXISTS notes (
    id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
    user_prompt TEXT,
    ai_response TEXT,
    annotation TEXT,
    source TEXT NOT NULL DEFAULT 'manual',
    timestamp TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sessions_project ON sessions(project_path, created_at);
CREATE INDEX IF NOT EXISTS idx_observations_session ON observations(session_id, timestamp);
CREATE INDEX IF NOT EXISTS idx_notes_session ON notes(session_id, timestamp);

CREATE VIRTUAL TABLE IF NOT EXISTS sessions_fts USING fts5(
    id UNINDEXED,
    user_prompt,
    summary,
    content=sessions,
    content_rowid=rowid
);

CREATE VIRTUAL TABLE IF NOT EXISTS observations_fts USING fts5(
    id UNINDEXED,
    function_name,
    compressed_data,
    content=observations,
    content_rowid=rowid
);

CREATE VIRTUAL TABLE IF NOT EXISTS notes_fts USING fts5(
    id UNINDEXED,
    user_prompt,
    ai_response,
    annotation,
    content=notes,
    content_rowid=rowid
);

CREATE TRIGGER IF NOT EXISTS sessions_ai AFTER INSERT ON sessions BEGIN
    INSERT INTO sessions_fts(rowid, id, user_prompt, summary)
    VALUES (new.rowid, new.id, new.user_prompt, new.summary);
END;

CREATE TRIGGER IF NOT EXISTS sessions_ad AFTER DELETE ON sessions BEGIN
    INSERT INTO sessions_fts(sessions_fts, rowid, id, user_prompt, summary)
    VALUES ('delete', old.rowid, old.id, old.user_prompt, old.summary);
END;

CREATE TRIGGER IF NOT EXISTS sessions_au AFTER UPDATE ON sessions BEGIN
    INSERT INTO sessions_fts(sessions_fts, rowid, id, user_prompt, summary)
    VALUES ('delete', old.rowid, old.id, old.user_prompt, old.summary);
    INSERT INTO sessions_fts(rowid, id, user_prompt, summary)
    VALUES (new.rowid, new.id, new.user_prompt, new.summary);
END;

CREATE TRIGGER IF NOT EXISTS observations_ai AFTER INSERT ON observations BEGIN
    INSERT INTO observations_fts(rowid, id, function_name, compressed_data)
    VALUES (new.rowid, new.id, new.function_name, new.compressed_data);
END;

CREATE TRIGGER IF NOT EXISTS observations_ad AFTER DELETE ON observations BEGIN
    INSERT INTO observations_fts(observations_fts, rowid, id, function_name, compressed_data)
    VALUES ('delete', old.rowid, old.id, old.function_name, old.compressed_data);
END;

CREATE TRIGGER IF NOT EXISTS observations_au AFTER UPDATE ON observations BEGIN
    INSERT INTO observations_fts(observations_fts, rowid, id, function_name, compressed_data)
    VALUES ('delete', old.rowid, old.id, old.function_name, old.compressed_data);
    INSERT INTO observations_fts(rowid, id, function_name, compressed_data)
    VALUES (new.rowid, new.id, new.function_name, new.compressed_data);
END;

CREATE TRIGGER IF NOT EXISTS notes_ai AFTER INSERT ON notes BEGIN
    INSERT INTO notes_fts(rowid, id, user_prompt, ai_response, annotation)
    VALUES (new.rowid, new.id, new.user_prompt, new.ai_response, new.annotation);
END;

CREATE TRIGGER IF NOT EXISTS notes_ad AFTER DELETE ON notes BEGIN
    INSERT INTO notes_fts(notes_fts, rowid, id, user_prompt, ai_response, annotation)
    VALUES ('delete', old.rowid, old.id, old.user_prompt, old.ai_response, old.annotation);
END;
"""


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _ts(value: datetime | None) -> str | None:
    # Fixed-width timestamps keep ORDER BY on the text column chronological.
    return value.isoformat(timespec="microseconds") if value else None


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _encode(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value)


def build_search_query(text: str) -> str:
    """Reduce free text to an FTS5 ``OR`` query of at most five keywords.

    Tokens are lower-cased with punctuation stripped; anything of three
    characters or fewer is dropped. Returns an empty string when nothing usable
    is left.
    """
    cleaned = re.sub(r"[^\w\s]", "", (text or "").lower())
    keywords = [w for w in cleaned.split() if len(w) >= MIN_KEYWORD_LENGTH]
    return " OR ".join(keywords[:MAX_QUERY_KEYWORDS])


class MemoryStore:
    """SQLite-backed memory store.

    The connection is opened lazily on first use and shared by every component
    handed this store. Callers own its lifetime: use it as a context manager or
    call :meth:`close` at shutdown.
    """

    def __init__(self, db_path: Path | None = None):
        self.db_path = db_path or DB_PATH
        self._conn: sqlite3.Connection | None = None

    def __enter__(self) -> "MemoryStore":
        self._get_conn()
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            try:
                ensure_dirs(self.db_path)
                conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
                conn.row_factory = sqlite3.Row
                conn.execute("PRAGMA journal_mode = WAL")
                conn.execute("PRAGMA foreign_keys = ON")
                conn.executescript(SCHEMA)
            except (sqlite3.Error, OSError) as exc:
                raise StorageUnavailableError(
                    f"cannot open memory database at {self.db_path}: {exc}"
                ) from exc
            self._conn = conn
            logger.debug("opened memory database %s", self.db_path)
        return self._conn

    def open(self) -> "MemoryStore":
        """Open the database now so an unusable path fails at startup."""
        self._get_conn()
        return self

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None

    # ── Row mapping ──────────────────────────────────────────────

    def _row_to_session(self, row: sqlite3.Row) -> Session:
        return Session(
            id=row["id"],
            project_path=row["project_path"],
            user_prompt=row["user_prompt"],
            summary=row["summary"],
            created_at=_parse_ts(row["created_at"]),
            ended_at=_parse_ts(row["ended_at"]),
            status=SessionStatus(row["status"]),
            total_observations=row["total_observations"],
            tokens_saved=row["tokens_saved"],
        )

    def _row_to_observation(self, row: sqlite3.Row) -> Observation:
        return Observation(
            id=row["id"],
            session_id=row["session_id"],
            function_name=row["function_name"],
            function_args=row["function_args"],
            function_result=row["function_result"],
            compressed_data=row["compressed_data"],
            original_tokens=row["original_tokens"],
            compressed_tokens=row["compressed_tokens"],
            tokens_saved=row["tokens_saved"],
            timestamp=_parse_ts(row["timestamp"]),
            status=ObservationStatus(row["status"]),
            observation_type=row["observation_type"],
        )

    def _row_to_note(self, row: sqlite3.Row) -> Note:
        return Note(
            id=row["id"],
            session_id=row["session_id"],
            user_prompt=row["user_prompt"],
            ai_response=row["ai_response"],
            annotation=row["annotation"],
            source=NoteSource(row["source"]),
            timestamp=_parse_ts(row["timestamp"]),
        )

    def _require_session(self, conn: sqlite3.Connection, session_id: str) -> None:
        row = conn.execute("SELECT 1 FROM sessions WHERE id = ?", (session_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"session not found: {session_id}")

    # ── Sessions ─────────────────────────────────────────────────

    def create_session(self, project_path: str, user_prompt: str | None = None) -> Session:
        """Start a new active session for a project."""
        conn = self._get_conn()
        session = Session(project_path=project_path, user_prompt=user_prompt)
        conn.execute(
            """INSERT INTO sessions
            (id, project_path, user_prompt, summary, created_at, ended_at, status,
             total_observations, tokens_saved)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                session.id,
                session.project_path,
                session.user_prompt,
                session.summary,
                _ts(session.created_at),
                None,
                session.status.value,
                0,
                0,
            ),
        )
        conn.commit()
        logger.info("session started %s for %s", session.id, project_path)
        return session

    def end_session(
        self,
        session_id: str,
        summary: str | None = None,
        status: SessionStatus | str = SessionStatus.SUMMARIZED,
    ) -> bool:
        """Close a session, keeping any existing summary when none is given.

        Returns False when the id is unknown; repeated calls overwrite status,
        ended_at and (when supplied) summary.
        """
        try:
            status = SessionStatus(status)
        except ValueError as exc:
            raise ValidationError(f"invalid session status: {status}") from exc
        if status is SessionStatus.ACTIVE:
            raise ValidationError("a session cannot be ended as active")

        conn = self._get_conn()
        cursor = conn.execute(
            "UPDATE sessions SET summary = COALESCE(?, summary), status = ?, ended_at = ? WHERE id = ?",
            (summary, status.value, _ts(_now()), session_id),
        )
        conn.commit()
        return cursor.rowcount > 0

    def get_session(self, session_id: str) -> Session | None:
        """Get a session by ID."""
        conn = self._get_conn()
        row = conn.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)).fetchone()
        return self._row_to_session(row) if row else None

    def get_recent_sessions(self, project_path: str, limit: int = 5) -> list[Session]:
        """Ended sessions for a project, newest first."""
        conn = self._get_conn()
        rows = conn.execute(
            """SELECT * FROM sessions
            WHERE project_path = ? AND status != 'active'
            ORDER BY created_at DESC, rowid DESC LIMIT ?""",
            (project_path, limit),
        ).fetchall()
        return [self._row_to_session(r) for r in rows]

    def search_sessions(self, project_path: str, query: str, limit: int = 5) -> list[Session]:
        """Ranked full-text search over session prompts and summaries."""
        match = build_search_query(query)
        if not match:
            return []
        conn = self._get_conn()
        rows = conn.execute(
            """SELECT s.* FROM sessions s
            JOIN sessions_fts fts ON s.rowid = fts.rowid
            WHERE sessions_fts MATCH ? AND s.project_path = ?
            ORDER BY fts.rank LIMIT ?""",
            (match, project_path, limit),
        ).fetchall()
        return [self._row_to_session(r) for r in rows]

    def delete_session(self, session_id: str) -> bool:
        """Delete a session and, by cascade, its observations and notes."""
        conn = self._get_conn()
        cursor = conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
        conn.commit()
        return cursor.rowcount > 0

    # ── Observations ─────────────────────────────────────────────

    def save_observation(
        self,
        session_id: str,
        function_name: str,
        function_args: Any = None,
        observation_type: str | None = None,
    ) -> Observation:
        """Record a pending observation and bump the session counter atomically."""
        conn = self._get_conn()
        obs = Observation(
            session_id=session_id,
            function_name=function_name,
            function_args=_encode(function_args),
            observation_type=observation_type,
        )
        with conn:
            self._require_session(conn, session_id)
            conn.execute(
                """INSERT INTO observations
                (id, session_id, function_name, function_args, timestamp, status, observation_type)
                VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    obs.id,
                    obs.session_id,
                    obs.function_name,
                    obs.function_args,
                    _ts(obs.timestamp),
                    obs.status.value,
                    obs.observation_type,
                ),
            )
            conn.execute(
                "UPDATE sessions SET total_observations = total_observations + 1 WHERE id = ?",
                (session_id,),
            )
        return obs

    def update_observation_result(self, observation_id: str, result: Any) -> bool:
        """Attach a result and mark the observation captured."""
        conn = self._get_conn()
        cursor = conn.execute(
            """UPDATE observations
            SET function_result = ?,
                status = CASE WHEN status = 'pending' THEN 'captured' ELSE status END
            WHERE id = ?""",
            (_encode(result), observation_id),
        )
        conn.commit()
        return cursor.rowcount > 0

    def mark_observation_compressed(
        self,
        observation_id: str,
        compressed_data: str,
        original_tokens: int,
        compressed_tokens: int,
    ) -> bool:
        """Store the compressed form and roll the savings into the session.

        The session total moves by the difference against whatever this
        observation previously saved, so repeating the call changes nothing.
        """
        tokens_saved = max(original_tokens - compressed_tokens, 0)
        conn = self._get_conn()
        with conn:
            row = conn.execute(
                "SELECT session_id, tokens_saved FROM observations WHERE id = ?",
                (observation_id,),
            ).fetchone()
            if row is None:
                return False
            previous = row["tokens_saved"] or 0
            conn.execute(
                """UPDATE observations
                SET compressed_data = ?,
                    original_tokens = ?,
                    compressed_tokens = ?,
                    tokens_saved = ?,
                    status = 'compressed'
                WHERE id = ?""",
                (compressed_data, original_tokens, compressed_tokens, tokens_saved, observation_id),
            )
            conn.execute(
                "UPDATE sessions SET tokens_saved = tokens_saved + ? WHERE id = ?",
                (tokens_saved - previous, row["session_id"]),
            )
        logger.info(
            "observation %s compressed: original=%d compressed=%d saved=%d",
            observation_id,
            original_tokens,
            compressed_tokens,
            tokens_saved,
        )
        return True

    def mark_observation_failed(self, observation_id: str) -> bool:
        """Flag an observation whose compression failed. Compressed ones are left alone."""
        conn = self._get_conn()
        cursor = conn.execute(
            "UPDATE observations SET status = 'failed' WHERE id = ? AND status != 'compressed'",
            (observation_id,),
        )
        conn.commit()
        return cursor.rowcount > 0

    def get_observation(self, observation_id: str) -> Observation | None:
        conn = self._get_conn()
        row = conn.execute(
            "SELECT * FROM observations WHERE id = ?", (observation_id,)
        ).fetchone()
        return self._row_to_observation(row) if row else None

    def get_observations_for_session(self, session_id: str) -> list[Observation]:
        conn = self._get_conn()
        rows = conn.execute(
            "SELECT * FROM observations WHERE session_id = ? ORDER BY timestamp ASC, rowid ASC",
            (session_id,),
        ).fetchall()
        return [self._row_to_observation(r) for r in rows]

    # ── Notes ────────────────────────────────────────────────────

    def save_note(
        self,
        session_id: str,
        user_prompt: str | None = None,
        ai_response: str | None = None,
        annotation: str | None = None,
        source: NoteSource | str = NoteSource.MANUAL,
    ) -> Note:
        """Append a note to a session."""
        conn = self._get_conn()
        note = Note(
            session_id=session_id,
            user_prompt=user_prompt,
            ai_response=ai_response,
            annotation=annotation,
            source=NoteSource(source),
        )
        with conn:
            self._require_session(conn, session_id)
            conn.execute(
                """INSERT INTO notes
                (id, session_id, user_prompt, ai_response, annotation, source, timestamp)
                VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    note.id,
                    note.session_id,
                    note.user_prompt,
                    note.ai_response,
                    note.annotation,
                    note.source.value,
                    _ts(note.timestamp),
                ),
            )
        return note

    def get_note(self, note_id: str) -> Note | None:
        conn = self._get_conn()
        row = conn.execute("SELECT * FROM notes WHERE id = ?", (note_id,)).fetchone()
        return self._row_to_note(row) if row else None

    def get_notes_for_session(self, session_id: str) -> list[Note]:
        conn = self._get_conn()
        rows = conn.execute(
            "SELECT * FROM notes WHERE session_id = ? ORDER BY timestamp ASC, rowid ASC",
            (session_id,),
        ).fetchall()
        return [self._row_to_note(r) for r in rows]

    # ── Stats ────────────────────────────────────────────────────

    def get_stats(self, project_path: str | None = None) -> StatsSnapshot:
        """Aggregate session and compression numbers, optionally for one project."""
        conn = self._get_conn()
        where = "WHERE s.project_path = ?" if project_path else ""
        params: list = [project_path] if project_path else []

        totals = conn.execute(
            f"""SELECT COUNT(*) AS sessions,
                COALESCE(SUM(s.total_observations), 0) AS observations,
                COALESCE(SUM(s.tokens_saved), 0) AS saved
            FROM sessions s {where}""",
            params,
        ).fetchone()
        compressed = conn.execute(
            f"""SELECT COUNT(*) AS compressed,
                COALESCE(SUM(o.original_tokens), 0) AS original
            FROM observations o JOIN sessions s ON s.id = o.session_id
            {where + ' AND' if where else 'WHERE'} o.status = 'compressed'""",
            params,
        ).fetchone()

        original = compressed["original"]
        saved = totals["saved"]
        ratio = round(saved / original * 100, 2) if original else 0.0
        return StatsSnapshot(
            total_sessions=totals["sessions"],
            total_observations=totals["observations"],
            compressed_observations=compressed["compressed"],
            original_tokens=original,
            total_tokens_saved=saved,
            average_compression_ratio=ratio,
        )
