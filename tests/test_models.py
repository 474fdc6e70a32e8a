import json
from datetime import timezone
from pathlib import Path

from marginalia.models import (
    Document,
    DocumentChunk,
    DocumentSection,
    PlaybackState,
    ReaderState,
    ReadingPosition,
    ReadingSession,
    RewriteStatus,
    SearchQuery,
    VoiceNote,
    build_document_view,
    from_rfc3339,
    list_document_items,
    to_rfc3339,
)


def two_section_document():
    return Document(
        document_id="doc-1",
        title="Doc",
        source_path=Path("/tmp/doc.md"),
        sections=[
            DocumentSection(
                index=0,
                title="Intro",
                chunks=[
                    DocumentChunk(index=0, text="Alpha beta gamma", char_start=0, char_end=16),
                    DocumentChunk(index=1, text="Delta epsilon", char_start=17, char_end=30),
                ],
                source_anchor="section:0",
            ),
            DocumentSection(
                index=1,
                title="Chapter Two",
                chunks=[
                    DocumentChunk(
                        index=0, text="Second chapter content", char_start=31, char_end=53
                    )
                ],
                source_anchor="section:1",
            ),
        ],
    )


def test_enum_parsing_known_and_unknown():
    assert ReaderState.parse("listening_for_command") is ReaderState.LISTENING_FOR_COMMAND
    assert ReaderState.parse("bogus") is ReaderState.ERROR
    assert PlaybackState.parse("playing") is PlaybackState.PLAYING
    assert PlaybackState.parse("bogus") is PlaybackState.STOPPED
    assert RewriteStatus.parse("dismissed") is RewriteStatus.DISMISSED
    assert RewriteStatus.parse("bogus") is RewriteStatus.REQUESTED


def test_enum_values_round_trip():
    for state in ReaderState:
        assert ReaderState.parse(state.value) is state
    for state in PlaybackState:
        assert PlaybackState.parse(state.value) is state


def test_default_position_anchor():
    assert ReadingPosition().anchor() == "section:0/chunk:0"


def test_note_anchor_follows_position():
    position = ReadingPosition(section_index=1, chunk_index=2)
    note = VoiceNote(
        note_id="note-1",
        session_id="session-1",
        document_id="doc-1",
        position=position,
        transcript="Important passage",
        transcription_provider="manual",
        language="it",
    )
    assert note.anchor() == position.anchor()
    assert note.anchor() == "section:1/chunk:2"


def test_document_counts_and_get_chunk():
    document = two_section_document()
    assert document.chapter_count() == 2
    assert document.total_chunk_count() == 3
    assert document.get_chunk(1, 0).text == "Second chapter content"
    assert document.get_chunk(0, 5) is None
    assert document.get_chunk(7, 0) is None


def test_document_to_json_round_trip():
    document = two_section_document()
    outline = json.loads(document.to_json())
    assert outline["document_id"] == "doc-1"
    assert outline["source_path"] == "/tmp/doc.md"
    assert [s["title"] for s in outline["sections"]] == ["Intro", "Chapter Two"]
    assert outline["sections"][0]["chunks"][1]["text"] == "Delta epsilon"
    assert from_rfc3339(outline["imported_at"]) == document.imported_at


def test_timestamp_round_trip_is_utc():
    session = ReadingSession("session-1", "doc-1")
    parsed = from_rfc3339(to_rfc3339(session.updated_at))
    assert parsed == session.updated_at
    assert parsed.tzinfo == timezone.utc


def test_new_session_defaults_and_touch():
    session = ReadingSession("session-1", "doc-1")
    assert session.state is ReaderState.IDLE
    assert session.playback_state is PlaybackState.STOPPED
    assert session.is_active is True
    before = session.updated_at
    session.touch()
    assert session.updated_at > before


def test_search_query_normalizes_whitespace():
    assert SearchQuery(text="  alpha   beta ").normalized_text() == "alpha beta"
    assert SearchQuery(text="   ").normalized_text() == ""
    assert SearchQuery(text="x").limit == 20


def test_document_view_without_session():
    view = build_document_view(two_section_document(), None)
    assert view.active_section_index is None
    assert view.active_chunk_index is None
    assert view.chapter_count == 2
    assert view.chunk_count == 3
    chunks = [c for s in view.sections for c in s.chunks]
    assert not any(c.is_active or c.is_read for c in chunks)
    assert view.sections[0].chunks[0].anchor == "section:0/chunk:0"


def test_document_view_marks_active_and_read():
    session = ReadingSession("session-1", "doc-1")
    session.position = ReadingPosition(section_index=0, chunk_index=1)
    view = build_document_view(two_section_document(), session)
    first, second = view.sections[0].chunks
    assert first.is_read and not first.is_active
    assert second.is_active and not second.is_read
    later = view.sections[1].chunks[0]
    assert not later.is_read and not later.is_active


def test_document_view_ignores_session_of_other_document():
    session = ReadingSession("session-1", "doc-2")
    session.position = ReadingPosition(section_index=1, chunk_index=0)
    view = build_document_view(two_section_document(), session)
    assert view.active_section_index is None
    assert not any(c.is_read for s in view.sections for c in s.chunks)


def test_document_view_to_json_shape():
    payload = build_document_view(two_section_document(), None).to_json()
    assert payload["document_id"] == "doc-1"
    assert payload["source_path"] == "/tmp/doc.md"
    assert isinstance(payload["sections"], list)
    assert payload["sections"][1]["chunks"][0]["text"] == "Second chapter content"


def test_list_document_items():
    items = list_document_items([two_section_document()])
    assert len(items) == 1
    assert items[0].to_json() == {
        "chapter_count": 2,
        "chunk_count": 3,
        "document_id": "doc-1",
        "title": "Doc",
    }