# marginalia

Storage and speech-cache building blocks for a read-aloud application.
Documents split into sections and chunks, reading sessions, voice notes
and rewrite drafts are kept in SQLite; synthesized audio for each chunk is
cached so it is produced only once. The package uses only the standard
library.

## Installation

```
pip install .
```

To run the test suite:

```
pip install ".[test]"
pytest
```

## Modules

- `marginalia.database` — `Database(path)` opens an SQLite file (or
  `Database.open_in_memory()`), switches it to WAL journaling with a
  5-second busy timeout, and applies the schema migrations `001_baseline`
  and `002_active_session_flag` once each. `applied_migrations()` lists
  what has been applied. It is a context manager; `close()` closes it. The
  shared connection is at `.connection`, guarded by `.lock`.
- `marginalia.models` — the records: `Document`, `DocumentSection`,
  `DocumentChunk`, `ReadingPosition`, `ReadingSession`, `VoiceNote`,
  `RewriteDraft`, `SearchQuery`, `SearchResult`, and the enums
  `ReaderState`, `PlaybackState` and `RewriteStatus` (whose `parse()` maps
  an unknown name to `ERROR`, `STOPPED` and `REQUESTED` respectively).
  `build_document_view(document, active_session)` gives a `DocumentView`
  that marks the active chunk and the chunks already read;
  `list_document_items(documents)` gives `DocumentListItem` summaries.
  Both views have `to_json()` returning plain dictionaries.
- `marginalia.repositories` — `DocumentRepository` saves a document and
  its outline in one transaction, loads it back, lists documents newest
  import first, and searches chunk text case-insensitively.
  `SessionRepository` upserts sessions; saving an active session
  deactivates every other one. `get_active_session()` returns the most
  recently updated active session, and
  `deactivate_stale_sessions(hours)` deactivates those not updated within
  that many hours and returns how many it changed.
- `marginalia.notes` — `NoteRepository` saves notes, lists a document's
  notes oldest first, and searches transcripts newest first.
  `RewriteDraftRepository` saves drafts and lists a document's drafts
  newest first.
- `marginalia.providers` — `SpeechSynthesizer` (the default writes a
  silent WAV file per request; subclass it for real speech),
  `PlaybackEngine` (an in-memory playing/paused/stopped state machine;
  `complete()` marks audio as finished), and `TtsCache`, which keeps
  results in memory and, given a `cache_dir`, moves each file to a name
  derived from the SHA-256 of its cache key so audio survives restarts.

Saving a record that the database rejects raises
`marginalia.models.StorageError`; a synthesizer that cannot write audio
raises `marginalia.providers.SynthesisError`. Searches with an empty query
return no results, and their limit is never below 1.

## Example

```python
from marginalia.database import Database
from marginalia.models import (
    Document, DocumentChunk, DocumentSection, ReadingSession, SearchQuery,
    build_document_view,
)
from marginalia.providers import SpeechSynthesizer, SynthesisRequest, TtsCache
from marginalia.repositories import DocumentRepository, SessionRepository

document = Document(
    document_id="doc-1",
    title="Doc",
    source_path="/tmp/doc.md",
    sections=[
        DocumentSection(
            index=0,
            title="Intro",
            chunks=[DocumentChunk(index=0, text="Alpha beta gamma", char_start=0, char_end=16)],
        )
    ],
)

with Database.open_in_memory() as db:
    documents = DocumentRepository(db)
    sessions = SessionRepository(db)

    documents.save_document(document)
    sessions.save_session(ReadingSession("session-1", "doc-1"))

    hits = documents.search_documents(SearchQuery("beta"))
    view = build_document_view(documents.get_document("doc-1"), sessions.get_active_session())
    print(hits[0].anchor, view.to_json()["sections"][0]["chunks"][0]["is_active"])

cache = TtsCache("tts-cache")
result = cache.synthesize(
    SpeechSynthesizer(), "doc-1", 0, 0, SynthesisRequest("Alpha beta gamma", voice="narrator")
)
print(result.audio_reference)
```

## What this package does not do

- It does not import files: there is no reader for text, Markdown, PDF,
  EPUB or web pages, and no chunking of raw text. Documents must be built
  as `Document` records by the caller.
- It has no session controller tying the repositories, synthesizer and
  playback engine together (starting, pausing, navigating between chunks
  and chapters), no event delivery, and no query/command interface for a
  user interface.
- It produces no audible speech and plays no sound: the bundled
  synthesizer writes silent audio and the playback engine only tracks
  state.
- It has no command-line program.