"""SQLite repositories for documents and reading sessions."""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path
from typing import Optional

from marginalia.database import Database
from marginalia.models import (
    Document,
    DocumentChunk,
    DocumentSection,
    PlaybackState,
    ReaderState,
    ReadingPosition,
    ReadingSession,
    SearchQuery,
    SearchResult,
    StorageError,
    from_rfc3339,
    to_rfc3339,
)

log = logging.getLogger(__name__)

_SESSION_COLUMNS = (
    "session_id",
    "document_id",
    "state",
    "playback_state",
    "section_index",
    "chunk_index",
    "char_offset",
    "active_note_id",
    "last_command",
    "last_command_source",
    "last_recognized_command",
    "voice",
    "tts_provider",
    "command_stt_provider",
    "playback_provider",
    "command_listening_active",
    "command_language",
    "audio_reference",
    "playback_process_id",
    "runtime_process_id",
    "runtime_status",
    "runtime_error",
    "startup_cleanup_summary",
    "is_active",
    "updated_at",
)

_SAVE_SESSION_SQL = "INSERT INTO sessions({columns}) VALUES({marks}) " \
    "ON CONFLICT(session_id) DO UPDATE SET {updates}".format(
        columns=", ".join(_SESSION_COLUMNS),
        marks=", ".join("?" for _ in _SESSION_COLUMNS),
        updates=", ".join(
            f"{column} = excluded.{column}" for column in _SESSION_COLUMNS[1:]
        ),
    )


class DocumentRepository:
    """Stores documents with their sections and chunks.

    ``connection`` is the shared :class:`~marginalia.database.Database`.
    """

    def __init__(self, connection: Database) -> None:
        self._db = connection

    def save_document(self, document: Document) -> None:
        """Insert or replace a document and its outline atomically."""
        outline_json = document.to_json()
        with self._db.lock:
            conn = self._db.connection
            try:
                conn.execute("BEGIN")
                conn.execute(
                    """
                    INSERT INTO documents(document_id, title, source_path, imported_at, outline_json)
                    VALUES(?, ?, ?, ?, ?)
                    ON CONFLICT(document_id) DO UPDATE SET
                        title = excluded.title,
                        source_path = excluded.source_path,
                        imported_at = excluded.imported_at,
                        outline_json = excluded.outline_json
                    """,
                    (
                        document.document_id,
                        document.title,
                        str(document.source_path),
                        to_rfc3339(document.imported_at),
                        outline_json,
                    ),
                )
                conn.execute(
                    "DELETE FROM document_chunks WHERE document_id = ?",
                    (document.document_id,),
                )
                conn.execute(
                    "DELETE FROM document_sections WHERE document_id = ?",
                    (document.document_id,),
                )
                for section in document.sections:
                    conn.execute(
                        """
                        INSERT INTO document_sections(document_id, section_index, title, source_anchor)
                        VALUES(?, ?, ?, ?)
                        """,
                        (
                            document.document_id,
                            section.index,
                            section.title,
                            section.source_anchor,
                        ),
                    )
                    conn.executemany(
                        """
                        INSERT INTO document_chunks(
                            document_id, section_index, chunk_index, anchor,
                            text, char_start, char_end
                        )
                        VALUES(?, ?, ?, ?, ?, ?, ?)
                        """,
                        [
                            (
                                document.document_id,
                                section.index,
                                chunk.index,
                                f"section:{section.index}/chunk:{chunk.index}",
                                chunk.text,
                                chunk.char_start,
                                chunk.char_end,
                            )
                            for chunk in section.chunks
                        ],
                    )
                conn.execute("COMMIT")
            except sqlite3.Error as exc:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise StorageError(str(exc)) from exc

    def get_document(self, document_id: str) -> Optional[Document]:
        """Load a document by id, or None if it is missing or unreadable."""
        with self._db.lock:
            conn = self._db.connection
            try:
                row = conn.execute(
                    """
                    SELECT document_id, title, source_path, imported_at
                    FROM documents WHERE document_id = ?
                    """,
                    (document_id,),
                ).fetchone()
                if row is None:
                    return None
                section_rows = conn.execute(
                    """
                    SELECT section_index, title, source_anchor
                    FROM document_sections
                    WHERE document_id = ?
                    ORDER BY section_index ASC
                    """,
                    (document_id,),
                ).fetchall()
                sections = []
                for section_row in section_rows:
                    chunk_rows = conn.execute(
                        """
                        SELECT chunk_index, text, char_start, char_end
                        FROM document_chunks
                        WHERE document_id = ? AND section_index = ?
                        ORDER BY chunk_index ASC
                        """,
                        (document_id, section_row["section_index"]),
                    ).fetchall()
                    sections.append(
                        DocumentSection(
                            index=section_row["section_index"],
                            title=section_row["title"],
                            chunks=[
                                DocumentChunk(
                                    index=chunk["chunk_index"],
                                    text=chunk["text"],
                                    char_start=chunk["char_start"],
                                    char_end=chunk["char_end"],
                                )
                                for chunk in chunk_rows
                            ],
                            source_anchor=section_row["source_anchor"],
                        )
                    )
            except sqlite3.Error as exc:
                log.warning("failed to load document %s: %s", document_id, exc)
                return None
        try:
            imported_at = from_rfc3339(row["imported_at"])
        except ValueError:
            return None
        return Document(
            document_id=row["document_id"],
            title=row["title"],
            source_path=Path(row["source_path"]),
            sections=sections,
            imported_at=imported_at,
        )

    def list_documents(self) -> list[Document]:
        """All documents, most recently imported first."""
        with self._db.lock:
            try:
                ids = [
                    row[0]
                    for row in self._db.connection.execute(
                        "SELECT document_id FROM documents ORDER BY imported_at DESC"
                    )
                ]
            except sqlite3.Error as exc:
                log.warning("failed to list documents: %s", exc)
                return []
        documents = (self.get_document(document_id) for document_id in ids)
        return [document for document in documents if document is not None]

    def search_documents(self, query: SearchQuery) -> list[SearchResult]:
        """Case-insensitive substring search over chunk text."""
        needle = f"%{query.normalized_text().lower()}%"
        if needle == "%%":
            return []
        sql = """
            SELECT d.document_id, c.text, c.anchor
            FROM document_chunks c
            JOIN documents d ON d.document_id = c.document_id
            WHERE LOWER(c.text) LIKE ?
        """
        params: list[object] = [needle]
        if query.document_id is not None:
            sql += " AND d.document_id = ?"
            params.append(query.document_id)
        sql += " ORDER BY d.imported_at DESC, c.section_index ASC, c.chunk_index ASC LIMIT ?"
        params.append(max(query.limit, 1))
        with self._db.lock:
            try:
                rows = self._db.connection.execute(sql, params).fetchall()
            except sqlite3.Error as exc:
                log.warning("failed to execute document search: %s", exc)
                return []
        return [
            SearchResult(
                entity_kind="document",
                entity_id=row[0],
                score=1.0,
                excerpt=row[1],
                anchor=row[2],
            )
            for row in rows
        ]


class SessionRepository:
    """Stores reading sessions; at most one is active at a time.

    ``connection`` is the shared :class:`~marginalia.database.Database`.
    """

    def __init__(self, connection: Database) -> None:
        self._db = connection

    def save_session(self, session: ReadingSession) -> None:
        """Upsert a session; an active one deactivates all others."""
        values = (
            session.session_id,
            session.document_id,
            session.state.value,
            session.playback_state.value,
            session.position.section_index,
            session.position.chunk_index,
            session.position.char_offset,
            session.active_note_id,
            session.last_command,
            session.last_command_source,
            session.last_recognized_command,
            session.voice,
            session.tts_provider,
            session.command_stt_provider,
            session.playback_provider,
            int(session.command_listening_active),
            session.command_language,
            session.audio_reference,
            session.playback_process_id,
            session.runtime_process_id,
            session.runtime_status,
            session.runtime_error,
            session.startup_cleanup_summary,
            int(session.is_active),
            to_rfc3339(session.updated_at),
        )
        with self._db.lock:
            conn = self._db.connection
            try:
                if session.is_active:
                    conn.execute(
                        "UPDATE sessions SET is_active = 0 "
                        "WHERE session_id != ? AND is_active = 1",
                        (session.session_id,),
                    )
                conn.execute(_SAVE_SESSION_SQL, values)
            except sqlite3.Error as exc:
                raise StorageError(str(exc)) from exc

    def get_active_session(self) -> Optional[ReadingSession]:
        """The most recently updated active session, if any."""
        with self._db.lock:
            try:
                row = self._db.connection.execute(
                    """
                    SELECT * FROM sessions
                    WHERE is_active = 1
                    ORDER BY updated_at DESC
                    LIMIT 1
                    """
                ).fetchone()
            except sqlite3.Error as exc:
                log.warning("failed to load active session: %s", exc)
                return None
        if row is None:
            return None
        try:
            updated_at = from_rfc3339(row["updated_at"])
        except ValueError:
            return None
        return ReadingSession(
            session_id=row["session_id"],
            document_id=row["document_id"],
            state=ReaderState.parse(row["state"]),
            playback_state=PlaybackState.parse(row["playback_state"]),
            position=ReadingPosition(
                section_index=row["section_index"],
                chunk_index=row["chunk_index"],
                char_offset=row["char_offset"],
            ),
            active_note_id=row["active_note_id"],
            last_command=row["last_command"],
            last_command_source=row["last_command_source"],
            last_recognized_command=row["last_recognized_command"],
            voice=row["voice"],
            tts_provider=row["tts_provider"],
            command_stt_provider=row["command_stt_provider"],
            playback_provider=row["playback_provider"],
            command_listening_active=row["command_listening_active"] != 0,
            command_language=row["command_language"],
            audio_reference=row["audio_reference"],
            playback_process_id=row["playback_process_id"],
            runtime_process_id=row["runtime_process_id"],
            runtime_status=row["runtime_status"],
            runtime_error=row["runtime_error"],
            startup_cleanup_summary=row["startup_cleanup_summary"],
            is_active=row["is_active"] != 0,
            updated_at=updated_at,
        )

    def deactivate_stale_sessions(self, max_inactive_hours: int) -> int:
        """Deactivate active sessions not updated within the given hours."""
        with self._db.lock:
            try:
                cursor = self._db.connection.execute(
                    """
                    UPDATE sessions
                    SET is_active = 0
                    WHERE is_active = 1
                      AND updated_at < datetime('now', ? || ' hours')
                    """,
                    (f"-{max_inactive_hours}",),
                )
            except sqlite3.Error as exc:
                log.warning("failed to deactivate stale sessions: %s", exc)
                return 0
        return cursor.rowcount