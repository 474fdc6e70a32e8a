"""SQLite repositories for voice notes and rewrite drafts."""

from __future__ import annotations

import json
import logging
import sqlite3
from pathlib import Path
from typing import Optional

from marginalia.database import Database
from marginalia.models import (
    ReadingPosition,
    RewriteDraft,
    RewriteStatus,
    SearchQuery,
    SearchResult,
    StorageError,
    VoiceNote,
    from_rfc3339,
    to_rfc3339,
)

log = logging.getLogger(__name__)

_SAVE_NOTE_SQL = """
    INSERT INTO notes(
        note_id, session_id, document_id, section_index, chunk_index,
        char_offset, transcript, transcription_provider, language,
        raw_audio_path, created_at
    )
    VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    ON CONFLICT(note_id) DO UPDATE SET
        session_id = excluded.session_id,
        document_id = excluded.document_id,
        section_index = excluded.section_index,
        chunk_index = excluded.chunk_index,
        char_offset = excluded.char_offset,
        transcript = excluded.transcript,
        transcription_provider = excluded.transcription_provider,
        language = excluded.language,
        raw_audio_path = excluded.raw_audio_path,
        created_at = excluded.created_at
"""

_SAVE_DRAFT_SQL = """
    INSERT INTO drafts(
        draft_id, document_id, section_index, source_anchor, source_excerpt,
        note_transcripts_json, rewritten_text, provider_name, status, created_at
    )
    VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    ON CONFLICT(draft_id) DO UPDATE SET
        document_id = excluded.document_id,
        section_index = excluded.section_index,
        source_anchor = excluded.source_anchor,
        source_excerpt = excluded.source_excerpt,
        note_transcripts_json = excluded.note_transcripts_json,
        rewritten_text = excluded.rewritten_text,
        provider_name = excluded.provider_name,
        status = excluded.status,
        created_at = excluded.created_at
"""


def _note_from_row(row: sqlite3.Row) -> Optional[VoiceNote]:
    try:
        created_at = from_rfc3339(row["created_at"])
    except ValueError:
        return None
    raw_audio_path = row["raw_audio_path"]
    return VoiceNote(
        note_id=row["note_id"],
        session_id=row["session_id"],
        document_id=row["document_id"],
        position=ReadingPosition(
            section_index=row["section_index"],
            chunk_index=row["chunk_index"],
            char_offset=row["char_offset"],
        ),
        transcript=row["transcript"],
        transcription_provider=row["transcription_provider"],
        language=row["language"],
        raw_audio_path=Path(raw_audio_path) if raw_audio_path is not None else None,
        created_at=created_at,
    )


def _draft_from_row(row: sqlite3.Row) -> Optional[RewriteDraft]:
    try:
        created_at = from_rfc3339(row["created_at"])
    except ValueError:
        return None
    try:
        transcripts = json.loads(row["note_transcripts_json"])
    except ValueError:
        transcripts = []
    if not isinstance(transcripts, list) or not all(
        isinstance(item, str) for item in transcripts
    ):
        transcripts = []
    return RewriteDraft(
        draft_id=row["draft_id"],
        document_id=row["document_id"],
        section_index=row["section_index"],
        source_anchor=row["source_anchor"],
        source_excerpt=row["source_excerpt"],
        note_transcripts=transcripts,
        rewritten_text=row["rewritten_text"],
        provider_name=row["provider_name"],
        status=RewriteStatus.parse(row["status"]),
        created_at=created_at,
    )


class NoteRepository:
    """Stores voice notes attached to reading positions.

    ``connection`` is the shared :class:`~marginalia.database.Database`.
    """

    def __init__(self, connection: Database) -> None:
        self._db = connection

    def save_note(self, note: VoiceNote) -> None:
        """Insert or replace a note."""
        values = (
            note.note_id,
            note.session_id,
            note.document_id,
            note.position.section_index,
            note.position.chunk_index,
            note.position.char_offset,
            note.transcript,
            note.transcription_provider,
            note.language,
            str(note.raw_audio_path) if note.raw_audio_path is not None else None,
            to_rfc3339(note.created_at),
        )
        with self._db.lock:
            try:
                self._db.connection.execute(_SAVE_NOTE_SQL, values)
            except sqlite3.Error as exc:
                raise StorageError(str(exc)) from exc

    def list_notes_for_document(self, document_id: str) -> list[VoiceNote]:
        """Notes of a document, oldest first."""
        with self._db.lock:
            try:
                rows = self._db.connection.execute(
                    "SELECT * FROM notes WHERE document_id = ? ORDER BY created_at ASC",
                    (document_id,),
                ).fetchall()
            except sqlite3.Error as exc:
                log.warning("failed to list notes for document %s: %s", document_id, exc)
                return []
        notes = (_note_from_row(row) for row in rows)
        return [note for note in notes if note is not None]

    def search_notes(self, query: SearchQuery) -> list[SearchResult]:
        """Case-insensitive substring search over note transcripts, newest first."""
        needle = f"%{query.normalized_text().lower()}%"
        if needle == "%%":
            return []
        sql = """
            SELECT note_id, section_index, chunk_index, transcript
            FROM notes
            WHERE LOWER(transcript) LIKE ?
        """
        params: list[object] = [needle]
        if query.document_id is not None:
            sql += " AND document_id = ?"
            params.append(query.document_id)
        sql += " ORDER BY created_at DESC LIMIT ?"
        params.append(max(query.limit, 1))
        with self._db.lock:
            try:
                rows = self._db.connection.execute(sql, params).fetchall()
            except sqlite3.Error as exc:
                log.warning("failed to execute note search: %s", exc)
                return []
        return [
            SearchResult(
                entity_kind="note",
                entity_id=row["note_id"],
                score=1.0,
                excerpt=row["transcript"],
                anchor=f"section:{row['section_index']}/chunk:{row['chunk_index']}",
            )
            for row in rows
        ]


class RewriteDraftRepository:
    """Stores rewrite drafts produced from notes.

    ``connection`` is the shared :class:`~marginalia.database.Database`.
    """

    def __init__(self, connection: Database) -> None:
        self._db = connection

    def save_draft(self, draft: RewriteDraft) -> None:
        """Insert or replace a draft."""
        values = (
            draft.draft_id,
            draft.document_id,
            draft.section_index,
            draft.source_anchor,
            draft.source_excerpt,
            json.dumps(list(draft.note_transcripts), ensure_ascii=False),
            draft.rewritten_text,
            draft.provider_name,
            draft.status.value,
            to_rfc3339(draft.created_at),
        )
        with self._db.lock:
            try:
                self._db.connection.execute(_SAVE_DRAFT_SQL, values)
            except sqlite3.Error as exc:
                raise StorageError(str(exc)) from exc

    def list_drafts_for_document(self, document_id: str) -> list[RewriteDraft]:
        """Drafts of a document, newest first."""
        with self._db.lock:
            try:
                rows = self._db.connection.execute(
                    "SELECT * FROM drafts WHERE document_id = ? ORDER BY created_at DESC",
                    (document_id,),
                ).fetchall()
            except sqlite3.Error as exc:
                log.warning("failed to list drafts for document %s: %s", document_id, exc)
                return []
        drafts = (_draft_from_row(row) for row in rows)
        return [draft for draft in drafts if draft is not None]