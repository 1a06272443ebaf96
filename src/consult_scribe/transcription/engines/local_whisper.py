"""Local Whisper engine backed by faster-whisper."""

import asyncio
from functools import partial
from typing import Any

import numpy as np

from ..config import (
    CONFIDENCE_LOGPROB_MAX,
    CONFIDENCE_LOGPROB_MIN,
    DEFAULT_LANGUAGE,
    ENGINE_LOCAL_WHISPER,
    LOCAL_WHISPER_BEAM_SIZE,
    LOCAL_WHISPER_COMPUTE_TYPE,
    LOCAL_WHISPER_DEVICE,
    LOCAL_WHISPER_MODEL_FILES,
    LOCAL_WHISPER_MODEL_URL,
    MIN_CHUNK_SECONDS,
)
from ..exceptions import EngineInitError
from ..logging_utils import get_logger
from ..model_cache import ModelAssetCache
from ..models import AudioChunk, TranscriptionSegment
from .base import TranscriptionEngine, clamp_confidence, clean_transcript_text

logger = get_logger(__name__)

# Import faster_whisper at module level for proper mocking in tests
try:
    import faster_whisper  # type: ignore[import-untyped]
except ImportError:
    faster_whisper = None


def calculate_confidence(segments: list[Any]) -> float:
    """
    Convert faster-whisper avg_logprob to normalized confidence score (0.0-1.0).

    avg_logprob typically ranges from -2.0 (low confidence) to -0.1 (high
    confidence); segments are weighted by their duration.

    Args:
        segments: List of transcription segments from faster-whisper

    Returns:
        Confidence score between 0.0 and 1.0
    """
    if not segments:
        return 0.0

    total_duration = 0.0
    weighted_logprob = 0.0
    for segment in segments:
        duration = max(0.0, segment.end - segment.start)
        total_duration += duration
        weighted_logprob += segment.avg_logprob * duration

    if total_duration == 0:
        return 0.0

    avg_logprob = weighted_logprob / total_duration
    return clamp_confidence(
        (avg_logprob - CONFIDENCE_LOGPROB_MIN) / (CONFIDENCE_LOGPROB_MAX - CONFIDENCE_LOGPROB_MIN)
    )


class LocalWhisperEngine(TranscriptionEngine):
    """Runs a faster-whisper model in a thread-pool executor.

    Model files are downloaded on first use through ``ModelAssetCache`` and
    loaded from disk in later sessions. Each accepted chunk yields exactly one
    segment; silence produces a segment with empty text.
    """

    name = ENGINE_LOCAL_WHISPER

    def __init__(
        self,
        language: str = DEFAULT_LANGUAGE,
        model_url: str = LOCAL_WHISPER_MODEL_URL,
        model_files: tuple[str, ...] = LOCAL_WHISPER_MODEL_FILES,
        device: str = LOCAL_WHISPER_DEVICE,
        compute_type: str = LOCAL_WHISPER_COMPUTE_TYPE,
        beam_size: int = LOCAL_WHISPER_BEAM_SIZE,
        model_cache: ModelAssetCache | None = None,
        min_chunk_seconds: float = MIN_CHUNK_SECONDS,
    ) -> None:
        super().__init__(language=language, min_chunk_seconds=min_chunk_seconds)
        self.model_url = model_url
        self.model_files = model_files
        self.device = device
        self.compute_type = compute_type
        self.beam_size = beam_size
        self._model_cache = model_cache
        self._model: Any = None

    async def _initialize(self) -> None:
        if faster_whisper is None:
            raise EngineInitError("faster-whisper library not available")

        if self._model_cache is None:
            self._model_cache = ModelAssetCache()
        model_dir = await self._model_cache.fetch_model(self.model_url, self.model_files)

        logger.debug(f"Loading Whisper model from {model_dir} on {self.device} ({self.compute_type})")
        loop = asyncio.get_running_loop()
        try:
            self._model = await loop.run_in_executor(
                None,
                partial(
                    faster_whisper.WhisperModel,
                    str(model_dir),
                    device=self.device,
                    compute_type=self.compute_type,
                ),
            )
        except Exception as e:
            raise EngineInitError(f"Failed to load Whisper model: {e}") from e

    def _run_model(self, samples: np.ndarray, prompt: str | None) -> tuple[str, float]:
        segments, _ = self._model.transcribe(
            np.array(samples, dtype=np.float32),
            language=self.language,
            beam_size=self.beam_size,
            initial_prompt=prompt,
        )
        segments_list = list(segments)
        text = " ".join(segment.text.strip() for segment in segments_list)
        return text, calculate_confidence(segments_list)

    async def _transcribe_chunk(self, chunk: AudioChunk) -> list[TranscriptionSegment]:
        loop = asyncio.get_running_loop()
        text, confidence = await loop.run_in_executor(
            None, self._run_model, chunk.samples, self._build_prompt()
        )
        text = clean_transcript_text(text)
        logger.trace(f"Chunk {chunk.chunk_number}: '{text}' (confidence {confidence:.2f})")
        return [
            TranscriptionSegment(
                text=text,
                start_time=chunk.offset,
                end_time=chunk.offset + chunk.duration,
                confidence=confidence,
                language=self.language,
                engine=self.name,
            )
        ]

    async def _cleanup(self) -> None:
        self._model = None
        if self._model_cache is not None:
            await self._model_cache.close()

    def clear_model_cache(self) -> bool:
        cache = self._model_cache or ModelAssetCache()
        return cache.clear()

    def _extra_stats(self) -> dict[str, Any]:
        return {
            "model_url": self.model_url,
            "device": self.device,
            "compute_type": self.compute_type,
            "model_loaded": self._model is not None,
        }
