"""Speech synthesis and playback providers, plus the synthesized-audio cache."""

from __future__ import annotations

import dataclasses
import hashlib
import logging
import os
import shutil
import tempfile
import wave
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

from marginalia.models import Document, PlaybackState, ReadingPosition

log = logging.getLogger(__name__)

StrPath = Union[str, "os.PathLike[str]"]

_EXCERPT_CHARS = 50
_CACHED_CONTENT_TYPE = "audio/flac"


class SynthesisError(Exception):
    """Raised when a synthesizer cannot produce audio for a request."""


@dataclass(frozen=True)
class SynthesisRequest:
    text: str
    voice: Optional[str] = None
    language: str = "it"


@dataclass
class SynthesisResult:
    provider_name: str
    voice: str
    content_type: str
    audio_reference: str
    byte_length: int
    text_excerpt: str
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class PlaybackResult:
    """State reported by a playback engine after an action or on snapshot."""

    state: PlaybackState
    last_action: str
    provider_name: Optional[str] = None
    audio_reference: Optional[str] = None
    process_id: Optional[int] = None


class SpeechSynthesizer:
    """Synthesizer that writes a silent WAV file for every request.

    Subclasses override :meth:`synthesize` and :meth:`provider_name` to
    produce real speech.
    """

    sample_rate = 24000

    def __init__(self, output_dir: Optional[StrPath] = None) -> None:
        self._output_dir = os.fspath(output_dir) if output_dir is not None else None

    def provider_name(self) -> str:
        return "silent"

    def synthesize(self, request: SynthesisRequest) -> SynthesisResult:
        """Write an empty mono 16-bit WAV and describe it."""
        try:
            if self._output_dir is not None:
                os.makedirs(self._output_dir, exist_ok=True)
            fd, path = tempfile.mkstemp(
                prefix="marginalia-tts-", suffix=".wav", dir=self._output_dir
            )
            with os.fdopen(fd, "wb") as handle, wave.open(handle, "wb") as writer:
                writer.setnchannels(1)
                writer.setsampwidth(2)
                writer.setframerate(self.sample_rate)
                writer.writeframes(b"")
            size = os.path.getsize(path)
        except OSError as exc:
            raise SynthesisError(str(exc)) from exc
        return SynthesisResult(
            provider_name=self.provider_name(),
            voice=request.voice or "",
            content_type="audio/wav",
            audio_reference=path,
            byte_length=size,
            text_excerpt=request.text[:_EXCERPT_CHARS],
            metadata={"language": request.language},
        )


class PlaybackEngine:
    """In-process playback state machine that plays nothing audible.

    It tracks the playing/paused/stopped state and the audio last handed
    to it; :meth:`complete` marks the current audio as finished naturally.
    """

    def __init__(self) -> None:
        self._state = PlaybackState.STOPPED
        self._last_action = "idle"
        self._audio_reference: Optional[str] = None
        self.document_id: Optional[str] = None
        self.position: Optional[ReadingPosition] = None

    def provider_name(self) -> str:
        return "in-memory-playback"

    def _result(self) -> PlaybackResult:
        return PlaybackResult(
            state=self._state,
            last_action=self._last_action,
            provider_name=self.provider_name(),
            audio_reference=self._audio_reference,
            process_id=None,
        )

    def start(
        self,
        document: Document,
        position: ReadingPosition,
        synthesis: Optional[SynthesisResult],
    ) -> PlaybackResult:
        """Begin playing the given synthesized audio at a document position."""
        self.document_id = document.document_id
        self.position = dataclasses.replace(position)
        self._audio_reference = synthesis.audio_reference if synthesis else None
        self._state = PlaybackState.PLAYING
        self._last_action = "started"
        return self._result()

    def pause(self) -> PlaybackResult:
        if self._state is PlaybackState.PLAYING:
            self._state = PlaybackState.PAUSED
            self._last_action = "paused"
        return self._result()

    def resume(self) -> PlaybackResult:
        if self._state is PlaybackState.PAUSED:
            self._state = PlaybackState.PLAYING
            self._last_action = "resumed"
        return self._result()

    def stop(self) -> PlaybackResult:
        self._state = PlaybackState.STOPPED
        self._last_action = "stopped"
        return self._result()

    def complete(self) -> PlaybackResult:
        """Record that the current audio played through to its end."""
        if self._state is not PlaybackState.STOPPED:
            self._state = PlaybackState.STOPPED
            self._last_action = "completed"
        return self._result()

    def snapshot(self) -> PlaybackResult:
        return self._result()


class TtsCache:
    """Cache of synthesized chunks, in memory and optionally on disk.

    With a ``cache_dir``, audio is moved to a file named by the SHA-256
    of the cache key so it survives process restarts.
    """

    def __init__(self, cache_dir: Optional[StrPath] = None) -> None:
        self.cache_dir = Path(cache_dir) if cache_dir is not None else None
        if self.cache_dir is not None:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
        self._entries: dict[str, SynthesisResult] = {}

    @staticmethod
    def cache_key(
        document_id: str, section_index: int, chunk_index: int, voice: Optional[str]
    ) -> str:
        return f"{document_id}:{section_index}:{chunk_index}:{voice or ''}"

    def stable_path(self, key: str) -> Optional[Path]:
        """The on-disk location for a key, or None without a cache directory."""
        if self.cache_dir is None:
            return None
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
        return self.cache_dir / f"{digest}.flac"

    def is_cached(self, key: str) -> bool:
        """Whether a key has an in-memory entry whose audio still exists."""
        entry = self._entries.get(key)
        return entry is not None and Path(entry.audio_reference).exists()

    def synthesize(
        self,
        synthesizer: SpeechSynthesizer,
        document_id: str,
        section_index: int,
        chunk_index: int,
        request: SynthesisRequest,
    ) -> SynthesisResult:
        """Return cached audio for the chunk, synthesizing it if needed."""
        voice = request.voice or ""
        key = self.cache_key(document_id, section_index, chunk_index, voice)

        if self.is_cached(key):
            return self._entries[key]

        stable = self.stable_path(key)
        if stable is not None and stable.exists():
            result = SynthesisResult(
                provider_name=synthesizer.provider_name(),
                voice=voice,
                content_type=_CACHED_CONTENT_TYPE,
                audio_reference=str(stable),
                byte_length=stable.stat().st_size,
                text_excerpt=request.text[:_EXCERPT_CHARS],
                metadata={},
            )
            self._entries[key] = result
            return result

        result = synthesizer.synthesize(request)

        if stable is not None:
            self._move_into_cache(result.audio_reference, stable)
            if stable.exists():
                result = dataclasses.replace(result, audio_reference=str(stable))

        self._entries[key] = result
        return result

    @staticmethod
    def _move_into_cache(source: str, target: Path) -> None:
        try:
            os.replace(source, target)
        except OSError as exc:
            try:
                shutil.copyfile(source, target)
            except OSError:
                log.warning("tts cache rename failed: %s", exc)
                return
            try:
                os.remove(source)
            except OSError:
                pass