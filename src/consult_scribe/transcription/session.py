"""Session controller: wires capture, chunking, engines, diarization and merging together."""

import asyncio
from collections.abc import Callable
from typing import Any
from uuid import uuid4

import pyperclip

from .accumulator import AudioChunkAccumulator
from .audio_capture import AudioCaptureSource, DenoisingAudioCapture, RawAudioCapture
from .audit_client import AuditClient
from .config import (
    AUTO_STOP_LEVEL_THRESHOLD,
    AUTO_STOP_SILENCE_SECONDS,
    DEFAULT_LANGUAGE,
)
from .diarization import DiarizationService
from .engines.base import TranscriptionEngine
from .exceptions import AuditError, DiarizationError, MicrophonePermissionError
from .logging_utils import get_logger
from .merger import TranscriptMerger
from .models import (
    AudioChunk,
    AudioFrame,
    DiarizationResult,
    EngineCallbacks,
    EngineSwitchEvent,
    ErrorBag,
    MergedTranscript,
    TranscriptionErrorEvent,
    TranscriptionMode,
    TranscriptionResult,
    TranscriptionStatus,
    TranscriptionUpdateEvent,
)
from .orchestrator import EngineOrchestrator
from .resilience import TimeoutBudget

logger = get_logger(__name__)

S = TranscriptionStatus


class SessionController:
    """User-facing controller for one consultation recording at a time.

    Errors from every layer are recorded in ``errors`` rather than raised, so
    callers only ever see return values and state.
    """

    def __init__(
        self,
        orchestrator: EngineOrchestrator | None = None,
        capture: AudioCaptureSource | None = None,
        fallback_capture: AudioCaptureSource | None = None,
        live_engine: TranscriptionEngine | None = None,
        diarization_service: DiarizationService | None = None,
        merger: TranscriptMerger | None = None,
        audit_client: AuditClient | None = None,
        enable_diarization: bool = True,
        mode: TranscriptionMode = TranscriptionMode.MANUAL,
        language: str = DEFAULT_LANGUAGE,
        on_update: Callable[[TranscriptionUpdateEvent], None] | None = None,
        on_engine_switch: Callable[[EngineSwitchEvent], None] | None = None,
        on_complete: Callable[[MergedTranscript], None] | None = None,
    ) -> None:
        """
        Initialize the controller.

        Args:
            orchestrator: Engine orchestrator (a default priority list is used if None)
            capture: Preferred capture source (denoising by default)
            fallback_capture: Used when the preferred source fails for a reason
                other than a denied microphone (raw capture by default)
            live_engine: Optional secondary engine run alongside the orchestrator;
                its text fills gaps in the final transcript
            diarization_service: Speaker diarization of the session audio
            merger: Transcript merger
            audit_client: Optional remote audit of the merged transcript
            enable_diarization: Whether to diarize after each session
            mode: Manual or automatic (silence-triggered) stop
            language: Transcription language
            on_update: Called with every transcription update
            on_engine_switch: Called when the orchestrator changes engine
            on_complete: Called with the merged transcript of each finished session
        """
        self.orchestrator = orchestrator or EngineOrchestrator(language=language)
        if self.orchestrator.on_engine_switch is None:
            self.orchestrator.on_engine_switch = self._on_engine_switch
        self.capture = capture or DenoisingAudioCapture()
        self.fallback_capture = fallback_capture if fallback_capture is not None else RawAudioCapture()
        self.live_engine = live_engine
        self.diarization_service = diarization_service or DiarizationService()
        self.merger = merger or TranscriptMerger()
        self.audit_client = audit_client
        self.enable_diarization = enable_diarization
        self.mode = mode
        self.language = language

        self.on_update = on_update
        self.on_engine_switch = on_engine_switch
        self.on_complete = on_complete

        self.errors = ErrorBag()
        self.transcript = ""
        self.interim_text = ""
        self.live_text = ""
        self.merged: MergedTranscript | None = None
        self.diarization: DiarizationResult | None = None
        self.engine_switches: list[EngineSwitchEvent] = []

        self._active_capture: AudioCaptureSource | None = None
        self._accumulator: AudioChunkAccumulator | None = None
        self._pending_chunks: list[AudioChunk] = []
        self._timeout_budget = TimeoutBudget()

        self._live_queue: asyncio.Queue[AudioChunk] | None = None
        self._live_worker: asyncio.Task | None = None

        self._quiet_since: float | None = None
        self._auto_stop_task: asyncio.Task | None = None

    @property
    def status(self) -> TranscriptionStatus:
        return self.orchestrator.status

    @property
    def is_recording(self) -> bool:
        return self.orchestrator.status is S.RECORDING

    # Recording lifecycle

    async def on_start_recording(self) -> bool:
        """
        Start capturing and transcribing a new session.

        Returns:
            True if recording started; False if a session is already active or
            startup failed (see ``errors``)
        """
        status = self.orchestrator.status
        if status in (S.INITIALIZING, S.RECORDING, S.PROCESSING):
            logger.debug(f"Start ignored, session is {status.value}")
            return False
        if status is S.ERROR:
            self.errors.general_error = "Reset required after a failed session"
            return False

        self._clear_session_state()
        session_id = uuid4().hex

        capture = self._start_capture()
        if capture is None:
            return False

        self._accumulator = AudioChunkAccumulator(
            session_id=session_id,
            source_sample_rate=capture.sample_rate,
            on_chunk=self._on_chunk,
        )
        capture.add_frame_listener(self._on_frame)

        # the orchestrator is INITIALIZING from here until it returns
        result = await self.orchestrator.start_transcription(
            callbacks=EngineCallbacks(
                on_transcription_update=self._on_transcription_update,
                on_error=self._on_engine_error,
            ),
            audio_config={"language": self.language},
            session_id=session_id,
            before_recording=lambda: self._start_live_engine(session_id),
        )
        if not result.success:
            self.errors.whisper_error = result.message
            self._stop_capture()
            self._accumulator = None
            self._pending_chunks.clear()
            logger.error(f"❌ Failed to start transcription: {result.message}")
            return False

        pending, self._pending_chunks = self._pending_chunks, []
        for chunk in pending:
            self._dispatch(chunk)

        logger.info(f"🎙️ Recording started ({self.mode.value} mode, {capture.name} capture)")
        return True

    async def on_stop_recording(self) -> MergedTranscript | None:
        """
        Stop the session and build the final transcript.

        Also collects a session that already failed while recording, so the
        microphone is released and the text captured so far is kept.

        Returns:
            The merged transcript, or None if nothing was recording
        """
        status = self.orchestrator.status
        if self._accumulator is None or status not in (S.RECORDING, S.ERROR):
            logger.debug("Stop ignored, not recording")
            return None
        failed_while_recording = status is S.ERROR

        self._stop_capture()
        tail = self._accumulator.flush()
        if tail is not None:
            logger.trace(f"Flushed final chunk ({tail.duration:.2f}s)")
        self._accumulator = None

        if failed_while_recording:
            await self._stop_live_engine()
            failed = True
            partial = self.orchestrator.get_partial_result()
            self.errors.whisper_error = self.errors.whisper_error or "Session failed"
        else:
            # PROCESSING is entered before the first await, the live engine stops in post-processing
            result = await self.orchestrator.stop_transcription(post_processor=self._finalize_transcript)
            await self._stop_live_engine()
            failed = not result.success
            partial = result.data
            if failed:
                self.errors.whisper_error = result.message

        if failed:
            self.merged = self.merger.merge(partial.segments if partial else [], None, self.live_text)
            self.transcript = self.merged.merged_transcript
            logger.warning("⚠️ Session ended with errors, keeping partial transcript")

        self._auto_stop_task = None
        if self.on_complete and self.merged is not None:
            try:
                self.on_complete(self.merged)
            except Exception as e:
                logger.error(f"❌ Error in completion callback: {e}")
        return self.merged

    async def on_toggle_recording(self) -> bool:
        """
        Start or stop recording depending on the current state.

        A toggle while the orchestrator is INITIALIZING or PROCESSING is
        ignored; both the start and the stop path reach one of those states
        before their first await.

        Returns:
            False if the toggle was ignored because another toggle is in flight
        """
        status = self.orchestrator.status
        if status in (S.INITIALIZING, S.PROCESSING):
            logger.debug(f"Toggle ignored, session is {status.value}")
            return False
        if status is S.RECORDING or (status is S.ERROR and self._accumulator is not None):
            await self.on_stop_recording()
        else:
            await self.on_start_recording()
        return True

    async def on_reset(self) -> bool:
        """
        Discard the current session and return to idle.

        Returns:
            False if a start or stop is still in flight
        """
        status = self.orchestrator.status
        if status in (S.INITIALIZING, S.PROCESSING):
            logger.debug(f"Reset ignored, session is {status.value}")
            return False

        self._stop_capture()
        # dropping the accumulator makes a concurrent stop a no-op
        self._clear_session_state()
        if self._active_capture is not None:
            self._active_capture.clear_session_audio()
        await self._stop_live_engine()
        if not await self.orchestrator.reset():
            return False
        logger.debug("Session reset")
        return True

    def on_copy(self) -> str:
        """
        Copy the current transcript to the system clipboard.

        Returns:
            The text that was copied (also when no clipboard is available)
        """
        text = self.merged.format_dialogue() if self.merged else self.transcript
        try:
            pyperclip.copy(text)
            logger.debug(f"📋 Copied {len(text)} characters to clipboard")
        except pyperclip.PyperclipException as e:
            logger.warning(f"⚠️ Clipboard unavailable: {e}")
        return text

    def on_toggle_mode(self) -> TranscriptionMode:
        if self.mode is TranscriptionMode.MANUAL:
            self.mode = TranscriptionMode.AUTOMATIC
        else:
            self.mode = TranscriptionMode.MANUAL
        self._quiet_since = None
        logger.info(f"🔁 Transcription mode: {self.mode.value}")
        return self.mode

    def get_state(self) -> dict[str, Any]:
        capture = self._active_capture
        return {
            "status": self.orchestrator.status.value,
            "mode": self.mode.value,
            "is_recording": self.is_recording,
            "audio_level": capture.audio_level if capture else 0.0,
            "recording_time": capture.recording_time if capture else 0.0,
            "permission_state": (capture or self.capture).permission_state.value,
            "engine": self.orchestrator.active_engine_name,
            "transcript": self.transcript,
            "interim_text": self.interim_text,
            "live_text": self.live_text,
            "speakers": [turn.to_dict() for turn in self.merged.speakers] if self.merged else [],
            "errors": self.errors.as_dict(),
        }

    async def close(self) -> None:
        """Stop any recording and release engines and network clients."""
        if self.orchestrator.status is S.RECORDING:
            await self.on_stop_recording()
        self._stop_capture()
        await self._stop_live_engine()
        await self.orchestrator.cleanup()
        if self.live_engine is not None:
            await self.live_engine.cleanup()
        if self.audit_client is not None:
            await self.audit_client.close()

    # Capture

    def _start_capture(self) -> AudioCaptureSource | None:
        if self.capture.start():
            self._active_capture = self.capture
            return self.capture

        error = self.capture.error
        if isinstance(error, MicrophonePermissionError) or self.fallback_capture is None:
            self.errors.general_error = str(error) if error else "Audio capture failed"
            logger.error(f"❌ Audio capture unavailable: {self.errors.general_error}")
            return None

        logger.warning(f"⚠️ {self.capture.name} capture failed ({error}), falling back to {self.fallback_capture.name}")
        if self.fallback_capture.start():
            self._active_capture = self.fallback_capture
            return self.fallback_capture

        fallback_error = self.fallback_capture.error
        self.errors.general_error = str(fallback_error) if fallback_error else "Audio capture failed"
        logger.error(f"❌ Audio capture unavailable: {self.errors.general_error}")
        return None

    def _stop_capture(self) -> None:
        capture = self._active_capture
        if capture is None:
            return
        capture.stop()
        capture.remove_frame_listener(self._on_frame)

    def _on_frame(self, frame: AudioFrame) -> None:
        if self._accumulator is None:
            return
        capture = self._active_capture
        self._accumulator.process_chunk(frame, {"denoised": isinstance(capture, DenoisingAudioCapture)})

        if self.mode is TranscriptionMode.AUTOMATIC:
            self._check_auto_stop(frame, capture.audio_level if capture else 0.0)

    def _check_auto_stop(self, frame: AudioFrame, level: float) -> None:
        if level >= AUTO_STOP_LEVEL_THRESHOLD:
            self._quiet_since = None
            return
        if self._quiet_since is None:
            self._quiet_since = frame.timestamp
            return
        quiet_for = frame.timestamp + frame.duration - self._quiet_since
        if (
            quiet_for >= AUTO_STOP_SILENCE_SECONDS
            and self._auto_stop_task is None
            and self.orchestrator.status is S.RECORDING
        ):
            logger.info(f"🤫 {quiet_for:.1f}s of silence, stopping automatically")
            self._auto_stop_task = asyncio.create_task(self.on_stop_recording())

    def _on_chunk(self, chunk: AudioChunk) -> None:
        status = self.orchestrator.status
        if status is S.RECORDING:
            self._dispatch(chunk)
        elif status is S.INITIALIZING:
            self._pending_chunks.append(chunk)
        else:
            logger.trace(f"Dropping chunk {chunk.chunk_number}, session is {status.value}")

    def _dispatch(self, chunk: AudioChunk) -> None:
        self.orchestrator.submit_chunk(chunk)
        if self._live_queue is not None:
            self._live_queue.put_nowait(chunk)

    # Live engine

    async def _start_live_engine(self, session_id: str) -> None:
        engine = self.live_engine
        if engine is None:
            return
        if not await engine.is_ready():
            result = await engine.initialize()
            if not result.success:
                self.errors.web_speech_error = result.message
                logger.warning(f"⚠️ Live recognizer unavailable: {result.message}")
                return

        result = await engine.start_transcription(
            {"language": self.language},
            EngineCallbacks(
                on_transcription_update=self._on_live_update,
                on_error=self._on_live_error,
            ),
            session_id=session_id,
        )
        if not result.success:
            self.errors.web_speech_error = result.message
            return

        self._live_queue = asyncio.Queue()
        self._live_worker = asyncio.create_task(self._run_live_worker())

    async def _run_live_worker(self) -> None:
        while True:
            chunk = await self._live_queue.get()
            try:
                await self.live_engine.process_audio_chunk(chunk)
            except Exception as e:
                logger.error(f"❌ Live recognizer failed on chunk {chunk.chunk_number}: {e}")
            finally:
                self._live_queue.task_done()

    async def _stop_live_engine(self) -> None:
        worker, queue = self._live_worker, self._live_queue
        self._live_worker = None
        self._live_queue = None
        if worker is None:
            return

        try:
            await asyncio.wait_for(queue.join(), timeout=self.orchestrator.drain_timeout)
        except asyncio.TimeoutError:
            logger.warning("⚠️ Live recognizer did not catch up before stop")
        worker.cancel()
        try:
            await worker
        except asyncio.CancelledError:
            logger.trace("Live recognizer worker cancelled")

        result = await self.live_engine.stop_transcription()
        if result.success and result.data is not None:
            self.live_text = result.data.text

    def _on_live_update(self, event: TranscriptionUpdateEvent) -> None:
        if event.is_final:
            self.live_text = event.full_text

    def _on_live_error(self, event: TranscriptionErrorEvent) -> None:
        self.errors.web_speech_error = event.error

    # Orchestrator callbacks

    def _on_transcription_update(self, event: TranscriptionUpdateEvent) -> None:
        if event.is_final:
            self.transcript = event.full_text
            self.interim_text = ""
        else:
            self.interim_text = event.text
        if self.on_update:
            try:
                self.on_update(event)
            except Exception as e:
                logger.error(f"❌ Error in update callback: {e}")

    def _on_engine_error(self, event: TranscriptionErrorEvent) -> None:
        if event.fatal:
            self.errors.whisper_error = event.error
        else:
            logger.debug(f"Recoverable engine error [{event.code}]: {event.error}")

    def _on_engine_switch(self, event: EngineSwitchEvent) -> None:
        self.engine_switches.append(event)
        if self.on_engine_switch:
            try:
                self.on_engine_switch(event)
            except Exception as e:
                logger.error(f"❌ Error in engine switch callback: {e}")

    # Post-processing

    async def _finalize_transcript(self, result: TranscriptionResult) -> None:
        await self._stop_live_engine()
        capture = self._active_capture
        self.diarization = None

        if self.enable_diarization and capture is not None:
            try:
                self.diarization = await self.diarization_service.diarize_audio(
                    capture.get_complete_audio(),
                    capture.sample_rate,
                    self._timeout_budget,
                    offset=capture.session_audio_offset,
                )
            except DiarizationError as e:
                self.errors.diarization_error = str(e)
                logger.warning(f"⚠️ Diarization unavailable: {e}")

        merged = self.merger.merge(result.segments, self.diarization, self.live_text)
        self.merged = merged
        self.transcript = merged.merged_transcript

        if self.audit_client is not None and self.audit_client.enabled:
            try:
                audited = await self.audit_client.audit(
                    transcript=merged.merged_transcript,
                    web_speech=self.live_text or None,
                    diarization=self.diarization,
                    partial_transcripts=[s.text for s in result.segments if s.text],
                    confidence=result.confidence,
                    language=result.language,
                    timeout_budget=self._timeout_budget,
                )
            except AuditError as e:
                self.errors.llm_error = str(e)
                logger.warning(f"⚠️ Audit failed, keeping local transcript: {e}")
            else:
                self.merged = audited
                self.transcript = audited.merged_transcript

        if capture is not None:
            capture.clear_session_audio()

    def _clear_session_state(self) -> None:
        self.errors.clear()
        self.transcript = ""
        self.interim_text = ""
        self.live_text = ""
        self.merged = None
        self.diarization = None
        self._pending_chunks = []
        self._accumulator = None
        self._quiet_since = None
        self._auto_stop_task = None
        self._timeout_budget = TimeoutBudget()
