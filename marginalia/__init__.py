"""SQLite storage for documents, reading sessions, notes and drafts, with a speech-synthesis cache."""

__version__ = "0.1.0"