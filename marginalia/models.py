"""Domain records for documents, reading sessions, notes and their views."""

from __future__ import annotations

import enum
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_rfc3339(moment: datetime) -> str:
    """Format a timestamp as an RFC 3339 string in UTC."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat()


def from_rfc3339(text: str) -> datetime:
    """Parse an RFC 3339 timestamp into an aware UTC datetime."""
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    moment = datetime.fromisoformat(text)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


class StorageError(Exception):
    """Raised when persisting a record fails."""


class ReaderState(enum.Enum):
    IDLE = "idle"
    READING = "reading"
    PAUSED = "paused"
    LISTENING_FOR_COMMAND = "listening_for_command"
    RECORDING_NOTE = "recording_note"
    PROCESSING_REWRITE = "processing_rewrite"
    READING_REWRITE = "reading_rewrite"
    ERROR = "error"

    @classmethod
    def parse(cls, value: str) -> "ReaderState":
        """Parse a stored name; unknown names map to ``ERROR``."""
        try:
            return cls(value)
        except ValueError:
            return cls.ERROR


class PlaybackState(enum.Enum):
    STOPPED = "stopped"
    PLAYING = "playing"
    PAUSED = "paused"

    @classmethod
    def parse(cls, value: str) -> "PlaybackState":
        """Parse a stored name; unknown names map to ``STOPPED``."""
        try:
            return cls(value)
        except ValueError:
            return cls.STOPPED


class RewriteStatus(enum.Enum):
    REQUESTED = "requested"
    GENERATED = "generated"
    DISMISSED = "dismissed"

    @classmethod
    def parse(cls, value: str) -> "RewriteStatus":
        """Parse a stored name; unknown names map to ``REQUESTED``."""
        try:
            return cls(value)
        except ValueError:
            return cls.REQUESTED


def _anchor(section_index: int, chunk_index: int) -> str:
    return f"section:{section_index}/chunk:{chunk_index}"


@dataclass
class ReadingPosition:
    section_index: int = 0
    chunk_index: int = 0
    char_offset: int = 0

    def anchor(self) -> str:
        return _anchor(self.section_index, self.chunk_index)


@dataclass
class DocumentChunk:
    index: int
    text: str
    char_start: int
    char_end: int


@dataclass
class DocumentSection:
    index: int
    title: str
    chunks: list[DocumentChunk] = field(default_factory=list)
    source_anchor: Optional[str] = None

    def chunk_count(self) -> int:
        return len(self.chunks)


@dataclass
class Document:
    document_id: str
    title: str
    source_path: Path
    sections: list[DocumentSection] = field(default_factory=list)
    imported_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        self.source_path = Path(self.source_path)

    def chapter_count(self) -> int:
        return len(self.sections)

    def total_chunk_count(self) -> int:
        return sum(section.chunk_count() for section in self.sections)

    def get_chunk(self, section_index: int, chunk_index: int) -> Optional[DocumentChunk]:
        """Return the chunk at the given indices, or None if absent."""
        section = next((s for s in self.sections if s.index == section_index), None)
        if section is None:
            return None
        return next((c for c in section.chunks if c.index == chunk_index), None)

    def to_json(self) -> str:
        """Serialize the document outline as compact JSON."""
        outline = {
            "document_id": self.document_id,
            "title": self.title,
            "source_path": str(self.source_path),
            "imported_at": to_rfc3339(self.imported_at),
            "sections": [
                {
                    "index": section.index,
                    "title": section.title,
                    "source_anchor": section.source_anchor,
                    "chunks": [
                        {
                            "index": chunk.index,
                            "text": chunk.text,
                            "char_start": chunk.char_start,
                            "char_end": chunk.char_end,
                        }
                        for chunk in section.chunks
                    ],
                }
                for section in self.sections
            ],
        }
        return json.dumps(outline, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


@dataclass
class ReadingSession:
    session_id: str
    document_id: str
    state: ReaderState = ReaderState.IDLE
    playback_state: PlaybackState = PlaybackState.STOPPED
    position: ReadingPosition = field(default_factory=ReadingPosition)
    active_note_id: Optional[str] = None
    last_command: Optional[str] = None
    last_command_source: Optional[str] = None
    last_recognized_command: Optional[str] = None
    voice: Optional[str] = None
    tts_provider: Optional[str] = None
    command_stt_provider: Optional[str] = None
    playback_provider: Optional[str] = None
    command_listening_active: bool = False
    command_language: Optional[str] = None
    audio_reference: Optional[str] = None
    playback_process_id: Optional[int] = None
    runtime_process_id: Optional[int] = None
    runtime_status: Optional[str] = None
    runtime_error: Optional[str] = None
    startup_cleanup_summary: Optional[str] = None
    is_active: bool = True
    updated_at: datetime = field(default_factory=utc_now)

    def touch(self) -> None:
        """Mark the session as updated now."""
        now = utc_now()
        if now <= self.updated_at:
            now = self.updated_at.replace(microsecond=self.updated_at.microsecond) + (
                now - now
            )
            now = self.updated_at.__class__.fromtimestamp(
                self.updated_at.timestamp() + 1e-6, tz=timezone.utc
            )
        self.updated_at = now


@dataclass
class VoiceNote:
    note_id: str
    session_id: str
    document_id: str
    position: ReadingPosition
    transcript: str
    transcription_provider: str
    language: str
    raw_audio_path: Optional[Path] = None
    created_at: datetime = field(default_factory=utc_now)

    def anchor(self) -> str:
        return self.position.anchor()


@dataclass
class RewriteDraft:
    draft_id: str
    document_id: str
    section_index: int
    source_anchor: str
    source_excerpt: str
    note_transcripts: list[str]
    rewritten_text: str
    provider_name: str
    status: RewriteStatus = RewriteStatus.REQUESTED
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class SearchQuery:
    text: str
    document_id: Optional[str] = None
    limit: int = 20

    def normalized_text(self) -> str:
        """The query text trimmed with inner whitespace collapsed."""
        return " ".join(self.text.split())


@dataclass
class SearchResult:
    entity_kind: str
    entity_id: str
    score: float
    excerpt: str
    anchor: str

    def to_json(self) -> dict[str, Any]:
        return {
            "anchor": self.anchor,
            "entity_id": self.entity_id,
            "entity_kind": self.entity_kind,
            "excerpt": self.excerpt,
            "score": self.score,
        }


@dataclass
class DocumentChunkView:
    anchor: str
    char_end: int
    char_start: int
    index: int
    is_active: bool
    is_read: bool
    text: str


@dataclass
class DocumentSectionView:
    chunk_count: int
    chunks: list[DocumentChunkView]
    index: int
    source_anchor: Optional[str]
    title: str


@dataclass
class DocumentView:
    active_chunk_index: Optional[int]
    active_section_index: Optional[int]
    chapter_count: int
    chunk_count: int
    document_id: str
    sections: list[DocumentSectionView]
    source_path: str
    title: str

    def to_json(self) -> dict[str, Any]:
        return {
            "active_chunk_index": self.active_chunk_index,
            "active_section_index": self.active_section_index,
            "chapter_count": self.chapter_count,
            "chunk_count": self.chunk_count,
            "document_id": self.document_id,
            "sections": [
                {
                    "chunk_count": section.chunk_count,
                    "chunks": [
                        {
                            "anchor": chunk.anchor,
                            "char_end": chunk.char_end,
                            "char_start": chunk.char_start,
                            "index": chunk.index,
                            "is_active": chunk.is_active,
                            "is_read": chunk.is_read,
                            "text": chunk.text,
                        }
                        for chunk in section.chunks
                    ],
                    "index": section.index,
                    "source_anchor": section.source_anchor,
                    "title": section.title,
                }
                for section in self.sections
            ],
            "source_path": self.source_path,
            "title": self.title,
        }


@dataclass
class DocumentListItem:
    chapter_count: int
    chunk_count: int
    document_id: str
    title: str

    def to_json(self) -> dict[str, Any]:
        return {
            "chapter_count": self.chapter_count,
            "chunk_count": self.chunk_count,
            "document_id": self.document_id,
            "title": self.title,
        }


def build_document_view(
    document: Document, active_session: Optional[ReadingSession]
) -> DocumentView:
    """Project a document for display, marking the active and already read chunks."""
    on_document = (
        active_session is not None and active_session.document_id == document.document_id
    )
    active_section = active_session.position.section_index if on_document else None
    active_chunk = active_session.position.chunk_index if on_document else None

    def chunk_view(section: DocumentSection, chunk: DocumentChunk) -> DocumentChunkView:
        is_active = active_section == section.index and active_chunk == chunk.index
        if active_section is None:
            is_read = False
        else:
            is_read = section.index < active_section or (
                section.index == active_section
                and active_chunk is not None
                and chunk.index < active_chunk
            )
        return DocumentChunkView(
            anchor=_anchor(section.index, chunk.index),
            char_end=chunk.char_end,
            char_start=chunk.char_start,
            index=chunk.index,
            is_active=is_active,
            is_read=is_read,
            text=chunk.text,
        )

    return DocumentView(
        active_chunk_index=active_chunk,
        active_section_index=active_section,
        chapter_count=document.chapter_count(),
        chunk_count=document.total_chunk_count(),
        document_id=document.document_id,
        sections=[
            DocumentSectionView(
                chunk_count=section.chunk_count(),
                chunks=[chunk_view(section, chunk) for chunk in section.chunks],
                index=section.index,
                source_anchor=section.source_anchor,
                title=section.title,
            )
            for section in document.sections
        ],
        source_path=str(document.source_path),
        title=document.title,
    )


def list_document_items(documents: Iterable[Document]) -> list[DocumentListItem]:
    """Summarize documents for a listing."""
    return [
        DocumentListItem(
            chapter_count=document.chapter_count(),
            chunk_count=document.total_chunk_count(),
            document_id=document.document_id,
            title=document.title,
        )
        for document in documents
    ]