"""Abstract transcription engine with the session lifecycle every backend shares."""

import re
import time
from abc import ABC, abstractmethod
from typing import Any

from ..config import CHUNK_DURATION_TOLERANCE, DEFAULT_LANGUAGE, MIN_CHUNK_SECONDS
from ..exceptions import ChunkTooSmallError, TranscriptionPipelineError
from ..logging_utils import get_logger
from ..models import (
    AudioChunk,
    EngineCallbacks,
    EngineResult,
    MedicalContext,
    TranscriptionErrorEvent,
    TranscriptionResult,
    TranscriptionSegment,
    TranscriptionStartEvent,
    TranscriptionUpdateEvent,
    join_segment_text,
)

logger = get_logger(__name__)


def clean_transcript_text(text: str | None) -> str:
    """
    Post-process transcribed text for better formatting.

    Args:
        text: Raw transcribed text

    Returns:
        Text with collapsed whitespace and a capitalized first letter
    """
    if not text or not isinstance(text, str):
        return ""

    processed = re.sub(r"\s+", " ", text.strip())
    if processed and processed[0].islower():
        processed = processed[0].upper() + processed[1:]
    return processed


def clamp_confidence(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


class TranscriptionEngine(ABC):
    """Base class for speech-to-text backends.

    Subclasses implement ``_initialize`` and ``_transcribe_chunk`` and may
    override the session hooks. This class enforces the session contract:
    chunks below the minimum duration are rejected, ``on_complete`` fires
    exactly once per session and no update is delivered after it, and errors
    raised by a backend reach callers as ``on_error`` events and failed
    ``EngineResult``s rather than exceptions.
    """

    name = "engine"

    def __init__(
        self,
        language: str = DEFAULT_LANGUAGE,
        min_chunk_seconds: float = MIN_CHUNK_SECONDS,
    ) -> None:
        self.language = language
        self.min_chunk_seconds = min_chunk_seconds

        self._initialized = False
        self._transcribing = False
        self._accepting_updates = False
        self._session_id: str | None = None
        self._session_started_at = 0.0
        self._callbacks = EngineCallbacks()
        self._segments: list[TranscriptionSegment] = []
        self._medical_context: MedicalContext | None = None

        self._chunks_processed = 0
        self._chunks_rejected = 0
        self._audio_seconds = 0.0
        self._errors = 0

    @property
    def is_transcribing(self) -> bool:
        return self._transcribing

    @property
    def session_id(self) -> str | None:
        return self._session_id

    async def initialize(self) -> EngineResult:
        """Prepare the backend; failures are reported, not raised."""
        if self._initialized:
            return EngineResult(success=True, message=f"{self.name} already initialized", engine=self.name)

        logger.debug(f"Initializing {self.name} engine")
        try:
            await self._initialize()
        except TranscriptionPipelineError as e:
            logger.error(f"❌ {self.name} initialization failed: {e}")
            return EngineResult(
                success=False, message=str(e), error=e.code, engine=self.name, exception=e
            )
        except Exception as e:
            logger.error(f"❌ {self.name} initialization failed: {e}")
            return EngineResult(
                success=False, message=str(e), error="ENGINE_INIT_FAILED", engine=self.name, exception=e
            )

        self._initialized = True
        logger.info(f"✅ {self.name} engine ready")
        return EngineResult(success=True, message=f"{self.name} ready", engine=self.name)

    async def is_ready(self) -> bool:
        return self._initialized

    async def start_transcription(
        self,
        audio_config: dict[str, Any] | None = None,
        callbacks: EngineCallbacks | None = None,
        session_id: str | None = None,
    ) -> EngineResult:
        """
        Open a transcription session.

        Args:
            audio_config: Optional audio settings (``language`` overrides the engine language)
            callbacks: Session callbacks
            session_id: Identifier that incoming chunks must carry

        Returns:
            EngineResult describing the outcome
        """
        if not self._initialized:
            return EngineResult(
                success=False, message="Engine not initialized", error="NOT_INITIALIZED", engine=self.name
            )
        if self._transcribing:
            return EngineResult(
                success=False, message="Transcription already active", error="ALREADY_ACTIVE", engine=self.name
            )

        audio_config = audio_config or {}
        if audio_config.get("language"):
            self.language = audio_config["language"]

        self._callbacks = callbacks or EngineCallbacks()
        self._session_id = session_id
        self._session_started_at = time.time()
        self._segments = []
        self._chunks_processed = 0
        self._chunks_rejected = 0
        self._audio_seconds = 0.0
        self._errors = 0

        try:
            await self._on_session_start(audio_config)
        except TranscriptionPipelineError as e:
            self._emit_error(e)
            return EngineResult(success=False, message=str(e), error=e.code, engine=self.name, exception=e)

        self._transcribing = True
        self._accepting_updates = True
        self._invoke(
            "on_start",
            TranscriptionStartEvent(session_id=session_id or "", engine=self.name, timestamp=time.time()),
        )
        logger.debug(f"🎙️ {self.name} session started")
        return EngineResult(success=True, message="Transcription started", engine=self.name)

    async def process_audio_chunk(self, chunk: AudioChunk) -> EngineResult:
        """
        Transcribe one chunk of the active session.

        Args:
            chunk: Resampled audio chunk

        Returns:
            EngineResult whose ``data`` holds the segments produced
        """
        if not self._transcribing:
            return EngineResult(
                success=False, message="No active transcription", error="NOT_TRANSCRIBING", engine=self.name
            )
        if self._session_id is not None and chunk.session_id != self._session_id:
            return EngineResult(
                success=False, message="Chunk belongs to another session", error="SESSION_MISMATCH", engine=self.name
            )

        if not chunk.is_final and chunk.duration < self.min_chunk_seconds - CHUNK_DURATION_TOLERANCE:
            error = ChunkTooSmallError(
                f"Chunk {chunk.chunk_number} is {chunk.duration:.2f}s, "
                f"minimum is {self.min_chunk_seconds:.2f}s"
            )
            self._chunks_rejected += 1
            self._emit_error(error)
            return EngineResult(success=False, message=str(error), error=error.code, engine=self.name, exception=error)

        if len(chunk.samples) == 0:
            return EngineResult(success=True, data=[], engine=self.name)

        logger.trace(f"{self.name} processing chunk {chunk.chunk_number} ({chunk.duration:.2f}s)")
        try:
            segments = await self._transcribe_chunk(chunk)
        except TranscriptionPipelineError as e:
            self._emit_error(e)
            return EngineResult(success=False, message=str(e), error=e.code, engine=self.name, exception=e)
        except Exception as e:
            logger.error(f"❌ {self.name} failed on chunk {chunk.chunk_number}: {e}")
            error = TranscriptionPipelineError(f"Chunk processing failed: {e}", recoverable=True)
            self._emit_error(error)
            return EngineResult(success=False, message=str(error), error=error.code, engine=self.name, exception=error)

        self._chunks_processed += 1
        self._audio_seconds += chunk.duration

        if not self._transcribing or chunk.session_id != self._session_id:
            logger.trace(f"Discarding result of chunk {chunk.chunk_number}, session ended")
            return EngineResult(success=False, message="Session ended", error="NOT_TRANSCRIBING", engine=self.name)

        accepted = [s for s in segments if self._append_segment(s)]
        return EngineResult(success=True, data=accepted, engine=self.name)

    async def stop_transcription(self) -> EngineResult:
        """
        Close the session, flushing buffered audio, and fire ``on_complete`` once.

        Returns:
            EngineResult whose ``data`` is the TranscriptionResult
        """
        if not self._transcribing:
            return EngineResult(
                success=False, message="No active transcription", error="NOT_TRANSCRIBING", engine=self.name
            )

        self._transcribing = False
        try:
            for segment in await self._finalize_session():
                self._append_segment(segment)
        except TranscriptionPipelineError as e:
            self._emit_error(e)
        except Exception as e:
            logger.error(f"❌ {self.name} failed to finalize session: {e}")
            self._emit_error(TranscriptionPipelineError(f"Finalization failed: {e}", recoverable=True))

        result = self._build_result()
        self._accepting_updates = False
        self._invoke("on_complete", result)
        logger.debug(f"{self.name} session complete: {len(result.segments)} segments")
        return EngineResult(success=True, data=result, message="Transcription stopped", engine=self.name)

    def set_medical_context(self, context: MedicalContext | None) -> None:
        self._medical_context = context

    def get_segments(self) -> list[TranscriptionSegment]:
        """Snapshot of the segments of the current or last session."""
        return list(self._segments)

    def take_unsent_chunks(self) -> list[AudioChunk]:
        """Hand over accepted chunks that were never transcribed and forget them."""
        return []

    @property
    def full_text(self) -> str:
        return join_segment_text(self._segments)

    def get_engine_stats(self) -> dict[str, Any]:
        stats = {
            "engine": self.name,
            "initialized": self._initialized,
            "transcribing": self._transcribing,
            "language": self.language,
            "segments": len(self._segments),
            "chunks_processed": self._chunks_processed,
            "chunks_rejected": self._chunks_rejected,
            "audio_seconds": self._audio_seconds,
            "errors": self._errors,
        }
        stats.update(self._extra_stats())
        return stats

    async def cleanup(self) -> None:
        """Stop any session and release backend resources."""
        if self._transcribing:
            await self.stop_transcription()
        try:
            await self._cleanup()
        except Exception as e:
            logger.error(f"❌ {self.name} cleanup failed: {e}")
        self._initialized = False

    def _append_segment(self, segment: TranscriptionSegment) -> bool:
        if not self._accepting_updates:
            return False
        self._segments.append(segment)
        self._invoke(
            "on_transcription_update",
            TranscriptionUpdateEvent(
                text=segment.text,
                full_text=self.full_text,
                engine=self.name,
                is_final=True,
                segment=segment,
                confidence=segment.confidence,
            ),
        )
        return True

    def _emit_interim(self, text: str, confidence: float | None = None) -> None:
        if not self._accepting_updates or not text:
            return
        pending = clean_transcript_text(text)
        full_text = f"{self.full_text} {pending}".strip()
        self._invoke(
            "on_transcription_update",
            TranscriptionUpdateEvent(
                text=pending, full_text=full_text, engine=self.name, is_final=False, confidence=confidence
            ),
        )

    def _emit_error(self, error: TranscriptionPipelineError) -> None:
        self._errors += 1
        level = logger.warning if error.recoverable else logger.error
        level(f"{self.name} error [{error.code}]: {error}")
        self._invoke(
            "on_error",
            TranscriptionErrorEvent(
                error=str(error), code=error.code, recoverable=error.recoverable, engine=self.name
            ),
        )

    def _invoke(self, name: str, event: Any) -> None:
        callback = getattr(self._callbacks, name)
        if callback is None:
            return
        try:
            callback(event)
        except Exception as e:
            logger.error(f"❌ Error in {name} callback: {e}")

    def _build_result(self) -> TranscriptionResult:
        segments = list(self._segments)
        voiced = [s for s in segments if s.text]
        confidence = sum(s.confidence for s in voiced) / len(voiced) if voiced else 0.0
        return TranscriptionResult(
            session_id=self._session_id or "",
            text=join_segment_text(segments),
            segments=segments,
            language=self.language,
            engine=self.name,
            confidence=confidence,
            duration=self._audio_seconds,
            processing_time=time.time() - self._session_started_at,
        )

    def _build_prompt(self) -> str | None:
        if self._medical_context is None:
            return None
        return self._medical_context.build_prompt()

    @abstractmethod
    async def _initialize(self) -> None:
        """Load models or open connections; raise EngineInitError on failure."""

    @abstractmethod
    async def _transcribe_chunk(self, chunk: AudioChunk) -> list[TranscriptionSegment]:
        """Return the segments produced by one chunk."""

    async def _on_session_start(self, audio_config: dict[str, Any]) -> None:
        pass

    async def _finalize_session(self) -> list[TranscriptionSegment]:
        return []

    async def _cleanup(self) -> None:
        pass

    def _extra_stats(self) -> dict[str, Any]:
        return {}
