import hashlib
import wave
from pathlib import Path

import pytest

from marginalia.models import Document, DocumentChunk, DocumentSection, PlaybackState, ReadingPosition
from marginalia.providers import (
    PlaybackEngine,
    PlaybackResult,
    SpeechSynthesizer,
    SynthesisError,
    SynthesisRequest,
    TtsCache,
)


class CountingSynthesizer(SpeechSynthesizer):
    def __init__(self, output_dir):
        super().__init__(output_dir)
        self.calls = 0

    def provider_name(self):
        return "counting"

    def synthesize(self, request):
        self.calls += 1
        return super().synthesize(request)


class FailingSynthesizer(SpeechSynthesizer):
    def synthesize(self, request):
        raise SynthesisError("engine down")


def _document():
    return Document(
        document_id="doc-1",
        title="Doc",
        source_path=Path("/tmp/doc.md"),
        sections=[
            DocumentSection(
                index=0,
                title="Intro",
                chunks=[DocumentChunk(index=0, text="Alpha beta gamma", char_start=0, char_end=16)],
            )
        ],
    )


def test_default_synthesizer_writes_readable_wav(tmp_path):
    synth = SpeechSynthesizer(tmp_path)
    result = synth.synthesize(SynthesisRequest(text="Alpha beta gamma", voice="narrator"))
    path = Path(result.audio_reference)
    assert path.parent == tmp_path
    assert result.byte_length == path.stat().st_size
    assert result.voice == "narrator"
    assert result.text_excerpt == "Alpha beta gamma"
    assert result.provider_name == synth.provider_name()
    with wave.open(str(path), "rb") as reader:
        assert reader.getframerate() == SpeechSynthesizer.sample_rate
        assert reader.getnframes() == 0


def test_cache_key_format():
    assert TtsCache.cache_key("doc-1", 2, 3, "narrator") == "doc-1:2:3:narrator"
    assert TtsCache.cache_key("doc-1", 0, 0, None) == "doc-1:0:0:"


def test_memory_cache_avoids_second_synthesis(tmp_path):
    synth = CountingSynthesizer(tmp_path)
    cache = TtsCache()
    request = SynthesisRequest(text="hello", voice="narrator")
    key = TtsCache.cache_key("doc-1", 0, 0, "narrator")
    assert not cache.is_cached(key)
    first = cache.synthesize(synth, "doc-1", 0, 0, request)
    second = cache.synthesize(synth, "doc-1", 0, 0, request)
    assert synth.calls == 1
    assert first == second
    assert cache.is_cached(key)


def test_memory_entry_with_missing_audio_is_resynthesized(tmp_path):
    synth = CountingSynthesizer(tmp_path)
    cache = TtsCache()
    request = SynthesisRequest(text="hello", voice="narrator")
    first = cache.synthesize(synth, "doc-1", 0, 0, request)
    Path(first.audio_reference).unlink()
    assert not cache.is_cached(TtsCache.cache_key("doc-1", 0, 0, "narrator"))
    second = cache.synthesize(synth, "doc-1", 0, 0, request)
    assert synth.calls == 2
    assert Path(second.audio_reference).exists()


def test_disk_cache_uses_hashed_filename(tmp_path):
    out = tmp_path / "out"
    cache_dir = tmp_path / "cache"
    synth = CountingSynthesizer(out)
    cache = TtsCache(cache_dir)
    result = cache.synthesize(synth, "doc-1", 1, 2, SynthesisRequest(text="hi", voice="v"))
    digest = hashlib.sha256(b"doc-1:1:2:v").hexdigest()
    expected = cache_dir / f"{digest}.flac"
    assert Path(result.audio_reference) == expected
    assert cache.stable_path("doc-1:1:2:v") == expected
    assert expected.exists()
    assert list(out.iterdir()) == []


def test_disk_cache_survives_new_cache_instance(tmp_path):
    cache_dir = tmp_path / "cache"
    synth = CountingSynthesizer(tmp_path / "out")
    TtsCache(cache_dir).synthesize(synth, "doc-1", 0, 0, SynthesisRequest(text="x", voice="v"))
    long_text = "w" * 80
    fresh = TtsCache(cache_dir)
    result = fresh.synthesize(synth, "doc-1", 0, 0, SynthesisRequest(text=long_text, voice="v"))
    assert synth.calls == 1
    assert result.content_type == "audio/flac"
    assert result.provider_name == "counting"
    assert result.byte_length == Path(result.audio_reference).stat().st_size
    assert result.text_excerpt == long_text[:50]
    assert result.metadata == {}


def test_different_voices_are_cached_separately(tmp_path):
    synth = CountingSynthesizer(tmp_path / "out")
    cache = TtsCache(tmp_path / "cache")
    a = cache.synthesize(synth, "doc-1", 0, 0, SynthesisRequest(text="x", voice="a"))
    b = cache.synthesize(synth, "doc-1", 0, 0, SynthesisRequest(text="x", voice="b"))
    assert synth.calls == 2
    assert a.audio_reference != b.audio_reference


def test_synthesis_error_propagates(tmp_path):
    cache = TtsCache(tmp_path)
    with pytest.raises(SynthesisError):
        cache.synthesize(FailingSynthesizer(), "doc-1", 0, 0, SynthesisRequest(text="x"))
    assert not cache.is_cached(TtsCache.cache_key("doc-1", 0, 0, None))


def test_playback_engine_transitions(tmp_path):
    engine = PlaybackEngine()
    synthesis = SpeechSynthesizer(tmp_path).synthesize(SynthesisRequest(text="x"))
    started = engine.start(_document(), ReadingPosition(), synthesis)
    assert started.state is PlaybackState.PLAYING
    assert started.audio_reference == synthesis.audio_reference
    assert started.provider_name == engine.provider_name()
    assert engine.pause().state is PlaybackState.PAUSED
    assert engine.resume().state is PlaybackState.PLAYING
    stopped = engine.stop()
    assert stopped.state is PlaybackState.STOPPED
    assert stopped.last_action != "completed"


def test_playback_engine_completion_is_visible_in_snapshot():
    engine = PlaybackEngine()
    engine.start(_document(), ReadingPosition(), None)
    engine.complete()
    snap = engine.snapshot()
    assert isinstance(snap, PlaybackResult)
    assert snap.state is PlaybackState.STOPPED
    assert snap.last_action == "completed"
    assert snap.audio_reference is None


def test_pause_without_playback_keeps_stopped():
    engine = PlaybackEngine()
    assert engine.pause().state is PlaybackState.STOPPED
    assert engine.resume().state is PlaybackState.STOPPED
    assert engine.complete().last_action != "completed"