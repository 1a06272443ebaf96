"""Shared fixtures for transcription pipeline tests."""

from collections.abc import Callable

import numpy as np
import pytest

from consult_scribe.transcription.engines.base import TranscriptionEngine
from consult_scribe.transcription.exceptions import EngineInitError, TranscriptionPipelineError
from consult_scribe.transcription.models import AudioChunk, TranscriptionSegment


class FakeEngine(TranscriptionEngine):
    """Scriptable engine: one segment per chunk from ``texts``, or a queued error."""

    def __init__(
        self,
        name: str = "fake",
        texts: list[str] | None = None,
        init_error: Exception | None = None,
        chunk_errors: list[TranscriptionPipelineError | None] | None = None,
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        self.name = name
        self.texts = list(texts or [])
        self.init_error = init_error
        self.chunk_errors = list(chunk_errors or [])
        self.chunks: list[AudioChunk] = []
        self.cleaned_up = False

    async def _initialize(self) -> None:
        if self.init_error is not None:
            raise self.init_error

    async def _transcribe_chunk(self, chunk: AudioChunk) -> list[TranscriptionSegment]:
        if self.chunk_errors:
            error = self.chunk_errors.pop(0)
            if error is not None:
                raise error
        self.chunks.append(chunk)
        text = self.texts.pop(0) if self.texts else ""
        return [
            TranscriptionSegment(
                text=text,
                start_time=chunk.offset,
                end_time=chunk.offset + chunk.duration,
                confidence=0.9,
                language=self.language,
                engine=self.name,
            )
        ]

    async def _cleanup(self) -> None:
        self.cleaned_up = True


@pytest.fixture
def fake_engine_cls() -> type[FakeEngine]:
    return FakeEngine


@pytest.fixture
def failing_init_error() -> EngineInitError:
    return EngineInitError("model download failed")


@pytest.fixture
def make_chunk() -> Callable[..., AudioChunk]:
    """Factory for 16 kHz chunks of silence or a sine tone."""

    def _make_chunk(
        seconds: float = 2.0,
        session_id: str = "session-1",
        chunk_number: int = 0,
        offset: float = 0.0,
        is_final: bool = False,
        sample_rate: int = 16000,
        frequency: float | None = None,
    ) -> AudioChunk:
        count = int(round(seconds * sample_rate))
        if frequency is None:
            samples = np.zeros(count, dtype=np.float32)
        else:
            t = np.arange(count) / sample_rate
            samples = (0.3 * np.sin(2 * np.pi * frequency * t)).astype(np.float32)
        return AudioChunk(
            samples=samples,
            sample_rate=sample_rate,
            chunk_number=chunk_number,
            session_id=session_id,
            timestamp=0.0,
            offset=offset,
            is_final=is_final,
        )

    return _make_chunk
