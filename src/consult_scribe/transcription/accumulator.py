"""Buffering of capture frames into resampled engine chunks."""

import time
from collections.abc import Callable
from typing import Any

import numpy as np

from .config import DEFAULT_SAMPLE_RATE, MIN_CHUNK_SECONDS
from .logging_utils import get_logger
from .models import AudioChunk, AudioFrame

logger = get_logger(__name__)


def resample_nearest(samples: np.ndarray, source_rate: int, target_rate: int) -> np.ndarray:
    """
    Resample by nearest-sample picking (``index = floor(i * ratio)``).

    No anti-alias filtering is applied.

    Args:
        samples: Input samples
        source_rate: Sample rate of the input in Hz
        target_rate: Desired sample rate in Hz

    Returns:
        Resampled float32 samples
    """
    if source_rate == target_rate:
        return np.asarray(samples, dtype=np.float32)

    ratio = source_rate / target_rate
    length = int(len(samples) / ratio)
    indices = np.floor(np.arange(length) * ratio).astype(np.int64)
    return np.asarray(samples, dtype=np.float32)[indices]


class AudioChunkAccumulator:
    """Collects frames until enough audio exists for one engine chunk."""

    def __init__(
        self,
        session_id: str,
        source_sample_rate: int,
        target_sample_rate: int = DEFAULT_SAMPLE_RATE,
        min_chunk_seconds: float = MIN_CHUNK_SECONDS,
        on_chunk: Callable[[AudioChunk], None] | None = None,
    ) -> None:
        """
        Initialize the accumulator.

        Args:
            session_id: Session the emitted chunks belong to
            source_sample_rate: Rate of incoming frames in Hz
            target_sample_rate: Rate of emitted chunks in Hz
            min_chunk_seconds: Buffered duration that triggers a chunk
            on_chunk: Optional callback receiving each emitted chunk
        """
        if source_sample_rate <= 0 or target_sample_rate <= 0:
            raise ValueError("Sample rate must be positive")
        if min_chunk_seconds <= 0:
            raise ValueError("Minimum chunk duration must be positive")

        self.session_id = session_id
        self.source_sample_rate = source_sample_rate
        self.target_sample_rate = target_sample_rate
        self.min_chunk_samples = int(round(min_chunk_seconds * target_sample_rate))
        self.on_chunk = on_chunk

        self._buffer: list[np.ndarray] = []
        self._buffered_samples = 0
        self._emitted_samples = 0
        self._next_chunk_number = 0
        self._denoised = False

    @property
    def buffered_seconds(self) -> float:
        return self._buffered_samples / self.target_sample_rate

    @property
    def chunks_emitted(self) -> int:
        return self._next_chunk_number

    def process_chunk(
        self, frame: AudioFrame, metadata: dict[str, Any] | None = None
    ) -> AudioChunk | None:
        """
        Add a capture frame, emitting a chunk once enough audio is buffered.

        Args:
            frame: Captured frame at the source rate
            metadata: Optional frame metadata (``denoised``)

        Returns:
            The emitted chunk, or None while still buffering
        """
        source_rate = frame.sample_rate or self.source_sample_rate
        resampled = resample_nearest(frame.samples, source_rate, self.target_sample_rate)
        if len(resampled) == 0:
            return None

        self._buffer.append(resampled)
        self._buffered_samples += len(resampled)
        if metadata:
            self._denoised = bool(metadata.get("denoised", self._denoised))

        if self._buffered_samples >= self.min_chunk_samples:
            return self._emit(is_final=False)
        return None

    def flush(self) -> AudioChunk | None:
        """Emit whatever is buffered, even below the minimum duration."""
        if self._buffered_samples == 0:
            return None
        return self._emit(is_final=True)

    def reset(self, session_id: str | None = None) -> None:
        """Drop buffered audio and restart chunk numbering."""
        if session_id is not None:
            self.session_id = session_id
        self._buffer.clear()
        self._buffered_samples = 0
        self._emitted_samples = 0
        self._next_chunk_number = 0
        self._denoised = False

    def _emit(self, is_final: bool) -> AudioChunk:
        samples = np.concatenate(self._buffer).astype(np.float32, copy=False)
        chunk = AudioChunk(
            samples=samples,
            sample_rate=self.target_sample_rate,
            chunk_number=self._next_chunk_number,
            session_id=self.session_id,
            timestamp=time.time(),
            offset=self._emitted_samples / self.target_sample_rate,
            is_final=is_final,
            denoised=self._denoised,
        )
        self._next_chunk_number += 1
        self._emitted_samples += len(samples)
        self._buffer.clear()
        self._buffered_samples = 0

        logger.trace(
            f"Chunk {chunk.chunk_number} emitted ({chunk.duration:.2f}s, final={is_final})"
        )
        if self.on_chunk is not None:
            self.on_chunk(chunk)
        return chunk
