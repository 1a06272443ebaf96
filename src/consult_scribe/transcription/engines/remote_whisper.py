"""Remote Whisper engine calling an OpenAI-compatible transcription API."""

import io
import os
from typing import Any

import httpx
import numpy as np
import soundfile as sf

from ..config import (
    DEFAULT_LANGUAGE,
    ENGINE_REMOTE_API,
    MIN_CHUNK_SECONDS,
    REMOTE_API_ENDPOINT,
    REMOTE_API_KEY_ENV,
    REMOTE_CONFIDENCE,
    REMOTE_MAX_RETRIES,
    REMOTE_MODEL,
    REMOTE_RETRY_BASE_DELAY,
    REMOTE_TEMPERATURE,
    REMOTE_TIMEOUT,
)
from ..cost_optimizer import CostDecision, CostOptimizer
from ..exceptions import BudgetExceededError, EngineInitError, NetworkError
from ..logging_utils import get_logger
from ..models import AudioChunk, TranscriptionResult, TranscriptionSegment
from ..resilience import TimeoutBudget, call_with_timeout, retry_with_backoff
from .base import TranscriptionEngine, clean_transcript_text

logger = get_logger(__name__)


def encode_flac(samples: np.ndarray, sample_rate: int) -> bytes:
    """
    Compress float samples as a mono 16-bit FLAC file.

    Args:
        samples: Float32 samples in [-1, 1]
        sample_rate: Sample rate in Hz

    Returns:
        FLAC file bytes
    """
    pcm = (np.clip(samples, -1.0, 1.0) * 32767).astype(np.int16)
    buffer = io.BytesIO()
    with sf.SoundFile(
        buffer, mode="w", samplerate=sample_rate, channels=1, format="FLAC", subtype="PCM_16"
    ) as sound_file:
        sound_file.write(pcm)
    return buffer.getvalue()


class RemoteWhisperEngine(TranscriptionEngine):
    """Sends buffered audio to a hosted Whisper endpoint.

    Chunks are buffered until the ``CostOptimizer`` decides a request is
    worthwhile, then sent as one FLAC upload. Transient failures are retried
    with linear backoff; exhausted retries surface as a recoverable
    ``NetworkError`` and the buffered audio is kept for the next attempt.
    """

    name = ENGINE_REMOTE_API

    def __init__(
        self,
        language: str = DEFAULT_LANGUAGE,
        api_key: str | None = None,
        endpoint: str = REMOTE_API_ENDPOINT,
        model: str = REMOTE_MODEL,
        temperature: float = REMOTE_TEMPERATURE,
        timeout: float = REMOTE_TIMEOUT,
        max_retries: int = REMOTE_MAX_RETRIES,
        retry_base_delay: float = REMOTE_RETRY_BASE_DELAY,
        cost_optimizer: CostOptimizer | None = None,
        client: httpx.AsyncClient | None = None,
        min_chunk_seconds: float = MIN_CHUNK_SECONDS,
    ) -> None:
        super().__init__(language=language, min_chunk_seconds=min_chunk_seconds)
        self.api_key = api_key if api_key is not None else os.environ.get(REMOTE_API_KEY_ENV)
        self.endpoint = endpoint
        self.model = model
        self.temperature = temperature
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self.cost_optimizer = cost_optimizer

        self._client = client
        self._owns_client = client is None
        self._timeout_budget = TimeoutBudget()
        self._buffer: list[AudioChunk] = []

    @property
    def buffered_seconds(self) -> float:
        return sum(chunk.duration for chunk in self._buffer)

    async def _initialize(self) -> None:
        if not self.api_key:
            raise EngineInitError(f"Remote API key not configured (set {REMOTE_API_KEY_ENV})")
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=None)
            self._owns_client = True
        if self.cost_optimizer is None:
            self.cost_optimizer = CostOptimizer()
        logger.debug(f"Remote engine using {self.endpoint} ({self.model})")

    async def _on_session_start(self, audio_config: dict[str, Any]) -> None:
        self._buffer = []
        self._timeout_budget.reset()

    async def _transcribe_chunk(self, chunk: AudioChunk) -> list[TranscriptionSegment]:
        self._buffer.append(chunk)
        decision = self.cost_optimizer.evaluate(self.buffered_seconds, final=chunk.is_final)

        if decision is CostDecision.DEFER:
            logger.trace(f"Deferring remote call, {self.buffered_seconds:.1f}s buffered")
            return []
        if decision is CostDecision.SKIP:
            skipped = self.buffered_seconds
            self._buffer = []
            raise BudgetExceededError(f"Budget limit reached, skipped {skipped:.1f}s of audio")
        return await self._send_buffer()

    async def _finalize_session(self) -> list[TranscriptionSegment]:
        if not self._buffer:
            return []
        decision = self.cost_optimizer.evaluate(self.buffered_seconds, final=True)
        if decision is CostDecision.SKIP:
            skipped = self.buffered_seconds
            self._buffer = []
            raise BudgetExceededError(f"Budget limit reached, skipped {skipped:.1f}s of audio")
        return await self._send_buffer()

    async def _send_buffer(self) -> list[TranscriptionSegment]:
        chunks = list(self._buffer)
        sample_rate = chunks[0].sample_rate
        samples = np.concatenate([chunk.samples for chunk in chunks])
        duration = len(samples) / sample_rate
        start_time = chunks[0].offset
        end_time = chunks[-1].offset + chunks[-1].duration

        audio_data = encode_flac(samples, sample_rate)
        payload = await retry_with_backoff(
            lambda: self._request(audio_data),
            max_retries=self.max_retries,
            base_delay=self.retry_base_delay,
            operation="Remote transcription",
        )
        self._buffer = []
        self.cost_optimizer.record_call(duration)

        text = clean_transcript_text(payload.get("text", ""))
        logger.trace(f"Remote transcription of {duration:.1f}s: '{text}'")
        return [
            TranscriptionSegment(
                text=text,
                start_time=start_time,
                end_time=end_time,
                confidence=REMOTE_CONFIDENCE,
                language=self.language,
                engine=self.name,
            )
        ]

    async def _request(self, audio_data: bytes) -> dict[str, Any]:
        data = {
            "model": self.model,
            "language": self.language,
            "response_format": "json",
            "temperature": str(self.temperature),
        }
        prompt = self._build_prompt()
        if prompt:
            data["prompt"] = prompt

        async def post() -> httpx.Response:
            return await self._client.post(
                self.endpoint,
                headers={"Authorization": f"Bearer {self.api_key}"},
                data=data,
                files={"file": ("audio.flac", audio_data, "audio/flac")},
            )

        try:
            response = await call_with_timeout(
                post, self.timeout, self._timeout_budget, "Remote transcription request"
            )
        except httpx.TransportError as e:
            raise NetworkError(f"Remote transcription request failed: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise NetworkError(f"Remote API error {response.status_code}: {response.text[:200]}")
        if response.status_code >= 400:
            raise NetworkError(
                f"Remote API rejected request {response.status_code}: {response.text[:200]}",
                recoverable=False,
            )

        try:
            return response.json()
        except ValueError as e:
            raise NetworkError(f"Invalid response from remote API: {e}") from e

    def take_unsent_chunks(self) -> list[AudioChunk]:
        chunks, self._buffer = self._buffer, []
        return chunks

    def _build_result(self) -> TranscriptionResult:
        result = super()._build_result()
        result.total_cost = self.cost_optimizer.total_cost
        result.api_calls = self.cost_optimizer.api_calls
        return result

    def get_cost_stats(self) -> dict[str, Any]:
        return self.cost_optimizer.get_stats() if self.cost_optimizer else {}

    async def _cleanup(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
        self._buffer = []

    def _extra_stats(self) -> dict[str, Any]:
        stats = {"endpoint": self.endpoint, "model": self.model, "buffered_seconds": self.buffered_seconds}
        stats.update(self.get_cost_stats())
        return stats
