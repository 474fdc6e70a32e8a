"""SQLite database handle with schema migrations."""

from __future__ import annotations

import os
import sqlite3
import threading
from datetime import datetime, timezone
from types import TracebackType

_BASELINE = """
CREATE TABLE IF NOT EXISTS documents (
    document_id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    source_path TEXT NOT NULL,
    imported_at TEXT NOT NULL,
    outline_json TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS document_sections (
    document_id TEXT NOT NULL,
    section_index INTEGER NOT NULL,
    title TEXT NOT NULL,
    source_anchor TEXT,
    PRIMARY KEY (document_id, section_index)
);

CREATE TABLE IF NOT EXISTS document_chunks (
    document_id TEXT NOT NULL,
    section_index INTEGER NOT NULL,
    chunk_index INTEGER NOT NULL,
    anchor TEXT NOT NULL,
    text TEXT NOT NULL,
    char_start INTEGER NOT NULL,
    char_end INTEGER NOT NULL,
    PRIMARY KEY (document_id, section_index, chunk_index)
);

CREATE TABLE IF NOT EXISTS sessions (
    session_id TEXT PRIMARY KEY,
    document_id TEXT NOT NULL,
    state TEXT NOT NULL,
    playback_state TEXT NOT NULL,
    section_index INTEGER NOT NULL,
    chunk_index INTEGER NOT NULL,
    char_offset INTEGER NOT NULL,
    active_note_id TEXT,
    last_command TEXT,
    last_command_source TEXT,
    last_recognized_command TEXT,
    voice TEXT,
    tts_provider TEXT,
    command_stt_provider TEXT,
    playback_provider TEXT,
    command_listening_active INTEGER NOT NULL DEFAULT 0,
    command_language TEXT,
    audio_reference TEXT,
    playback_process_id INTEGER,
    runtime_process_id INTEGER,
    runtime_status TEXT,
    runtime_error TEXT,
    startup_cleanup_summary TEXT,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS notes (
    note_id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL,
    document_id TEXT NOT NULL,
    section_index INTEGER NOT NULL,
    chunk_index INTEGER NOT NULL,
    char_offset INTEGER NOT NULL,
    transcript TEXT NOT NULL,
    transcription_provider TEXT NOT NULL,
    language TEXT NOT NULL,
    raw_audio_path TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS drafts (
    draft_id TEXT PRIMARY KEY,
    document_id TEXT NOT NULL,
    section_index INTEGER NOT NULL,
    source_anchor TEXT NOT NULL,
    source_excerpt TEXT NOT NULL,
    note_transcripts_json TEXT NOT NULL,
    rewritten_text TEXT NOT NULL,
    provider_name TEXT NOT NULL,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_notes_document ON notes(document_id);
CREATE INDEX IF NOT EXISTS idx_drafts_document ON drafts(document_id);
"""

_ACTIVE_SESSION_FLAG = """
ALTER TABLE sessions ADD COLUMN is_active INTEGER NOT NULL DEFAULT 1;
CREATE INDEX IF NOT EXISTS idx_sessions_active ON sessions(is_active, updated_at);
"""

MIGRATIONS: tuple[tuple[str, str], ...] = (
    ("001_baseline", _BASELINE),
    ("002_active_session_flag", _ACTIVE_SESSION_FLAG),
)


class Database:
    """A SQLite connection with the reader schema applied.

    The connection runs in autocommit mode; callers that need atomic
    multi-statement writes issue ``BEGIN``/``COMMIT`` themselves while
    holding :attr:`lock`.
    """

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self.path = os.fspath(path)
        self.lock = threading.RLock()
        self._connection = sqlite3.connect(
            self.path, isolation_level=None, check_same_thread=False
        )
        self._connection.row_factory = sqlite3.Row
        try:
            self._initialize()
        except Exception:
            self._connection.close()
            raise

    @classmethod
    def open_in_memory(cls) -> "Database":
        """Open a fresh database that lives only in memory."""
        return cls(":memory:")

    @property
    def connection(self) -> sqlite3.Connection:
        return self._connection

    def applied_migrations(self) -> list[str]:
        """Return the identifiers of applied migrations, in order."""
        with self.lock:
            rows = self._connection.execute(
                "SELECT migration_id FROM schema_migrations ORDER BY migration_id"
            ).fetchall()
        return [row[0] for row in rows]

    def close(self) -> None:
        with self.lock:
            self._connection.close()

    def __enter__(self) -> "Database":
        return self

    def __exit__(
        self,
        *args: type[BaseException] | BaseException | TracebackType | None,
    ) -> None:
        self.close()

    def _initialize(self) -> None:
        with self.lock:
            conn = self._connection
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA busy_timeout = 5000")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_migrations (
                    migration_id TEXT PRIMARY KEY,
                    applied_at TEXT NOT NULL
                )
                """
            )
            applied = set(self.applied_migrations())
            for migration_id, sql in MIGRATIONS:
                if migration_id in applied:
                    continue
                conn.executescript(sql)
                conn.execute(
                    "INSERT INTO schema_migrations(migration_id, applied_at) VALUES(?, ?)",
                    (migration_id, datetime.now(timezone.utc).isoformat()),
                )