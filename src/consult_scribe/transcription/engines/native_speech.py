"""Native streaming speech engine with error classification and a circuit breaker."""

import time
from typing import Any

from ..config import (
    DEFAULT_LANGUAGE,
    ENGINE_NATIVE_SPEECH,
    MIN_CHUNK_SECONDS,
    NATIVE_CIRCUIT_BREAKER_TIMEOUT,
    NATIVE_CRITICAL_ERRORS,
    NATIVE_MAX_CONSECUTIVE_ERRORS,
    NATIVE_RECOVERABLE_ERRORS,
    NOMINAL_CONFIDENCE,
)
from ..exceptions import RecognizerError, TranscriptionPipelineError
from ..logging_utils import get_logger
from ..models import AudioChunk, TranscriptionSegment
from ..recognizer import RecognitionEvent, StreamingRecognizer, VadWhisperRecognizer
from .base import TranscriptionEngine, clamp_confidence, clean_transcript_text

logger = get_logger(__name__)


class NativeSpeechEngine(TranscriptionEngine):
    """Wraps a continuous recognizer.

    Interim hypotheses are only reported through ``on_transcription_update``
    with ``is_final=False``; final hypotheses become segments. Recognizer
    error codes are classified as recoverable or critical; unclassified codes
    count toward a circuit breaker which, once open, makes errors fatal until
    ``circuit_breaker_timeout`` has elapsed.
    """

    name = ENGINE_NATIVE_SPEECH

    def __init__(
        self,
        language: str = DEFAULT_LANGUAGE,
        recognizer: StreamingRecognizer | None = None,
        max_consecutive_errors: int = NATIVE_MAX_CONSECUTIVE_ERRORS,
        circuit_breaker_timeout: float = NATIVE_CIRCUIT_BREAKER_TIMEOUT,
        min_chunk_seconds: float = MIN_CHUNK_SECONDS,
    ) -> None:
        super().__init__(language=language, min_chunk_seconds=min_chunk_seconds)
        self.recognizer = recognizer
        self.max_consecutive_errors = max_consecutive_errors
        self.circuit_breaker_timeout = circuit_breaker_timeout

        self._consecutive_errors = 0
        self._circuit_opened_at: float | None = None
        self._stream_offset: float | None = None

    @property
    def circuit_open(self) -> bool:
        if self._circuit_opened_at is None:
            return False
        if time.monotonic() - self._circuit_opened_at >= self.circuit_breaker_timeout:
            logger.info("Circuit breaker timeout elapsed, closing circuit")
            self._reset_circuit()
            return False
        return True

    def _reset_circuit(self) -> None:
        self._circuit_opened_at = None
        self._consecutive_errors = 0

    def _open_circuit(self) -> None:
        self._circuit_opened_at = time.monotonic()
        logger.error(f"❌ Circuit breaker opened after {self._consecutive_errors} errors")

    async def _initialize(self) -> None:
        if self.recognizer is None:
            self.recognizer = VadWhisperRecognizer()
        await self.recognizer.open(self.language)

    async def _on_session_start(self, audio_config: dict[str, Any]) -> None:
        if self.circuit_open:
            raise TranscriptionPipelineError("Recognizer circuit breaker is open")
        self._stream_offset = None
        await self.recognizer.open(self.language)

    async def _transcribe_chunk(self, chunk: AudioChunk) -> list[TranscriptionSegment]:
        if self.circuit_open:
            raise TranscriptionPipelineError("Recognizer circuit breaker is open")

        if self._stream_offset is None:
            self._stream_offset = chunk.offset

        try:
            events = await self.recognizer.feed(chunk.samples, chunk.sample_rate)
        except RecognizerError as e:
            raise self.classify_error(e) from e

        return self._handle_events(events)

    async def _finalize_session(self) -> list[TranscriptionSegment]:
        try:
            events = await self.recognizer.finish()
        except RecognizerError as e:
            raise self.classify_error(e) from e
        return self._handle_events(events)

    def classify_error(self, error: RecognizerError) -> RecognizerError:
        """
        Turn a recognizer error code into a recoverable or fatal pipeline error.

        Args:
            error: Error reported by the recognizer

        Returns:
            Pipeline error with ``recoverable`` set
        """
        code = error.error_code
        if code in NATIVE_CRITICAL_ERRORS:
            self._open_circuit()
            return RecognizerError(code, f"Critical recognizer error: {code}", recoverable=False)
        if code in NATIVE_RECOVERABLE_ERRORS:
            logger.debug(f"Recoverable recognizer error: {code}")
            return RecognizerError(code, f"Recoverable recognizer error: {code}", recoverable=True)

        self._consecutive_errors += 1
        if self._consecutive_errors >= self.max_consecutive_errors:
            self._open_circuit()
            return RecognizerError(
                code, f"Recognizer failed {self._consecutive_errors} times in a row: {code}", recoverable=False
            )
        return RecognizerError(code, recoverable=True)

    def _handle_events(self, events: list[RecognitionEvent]) -> list[TranscriptionSegment]:
        offset = self._stream_offset or 0.0
        segments = []
        for event in events:
            if not event.is_final:
                self._emit_interim(event.text, event.confidence)
                continue

            self._consecutive_errors = 0
            text = clean_transcript_text(event.text)
            if not text:
                continue
            confidence = NOMINAL_CONFIDENCE if event.confidence is None else clamp_confidence(event.confidence)
            segments.append(
                TranscriptionSegment(
                    text=text,
                    start_time=offset + event.start_time,
                    end_time=offset + max(event.start_time, event.end_time),
                    confidence=confidence,
                    language=self.language,
                    engine=self.name,
                )
            )
        return segments

    async def _cleanup(self) -> None:
        if self.recognizer is not None:
            await self.recognizer.close()

    def _extra_stats(self) -> dict[str, Any]:
        return {
            "consecutive_errors": self._consecutive_errors,
            "circuit_open": self._circuit_opened_at is not None,
        }
