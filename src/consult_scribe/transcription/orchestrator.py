"""Engine orchestration: session state machine, chunk queue and engine fallback."""

import asyncio
import time
from collections.abc import Awaitable, Callable, Sequence
from typing import Any
from uuid import uuid4

from .config import (
    DEFAULT_LANGUAGE,
    ORCHESTRATOR_DRAIN_TIMEOUT,
    ORCHESTRATOR_MAX_CONSECUTIVE_ERRORS,
)
from .engines.base import TranscriptionEngine
from .engines.factory import EngineFactory, build_engine_factories
from .exceptions import (
    ChunkTooSmallError,
    EngineInitError,
    InvalidStateTransitionError,
    NetworkError,
    TranscriptionPipelineError,
    TranscriptionTimeoutError,
)
from .logging_utils import get_logger
from .models import (
    AudioChunk,
    EngineCallbacks,
    EngineResult,
    EngineSwitchEvent,
    MedicalContext,
    TranscriptionErrorEvent,
    TranscriptionResult,
    TranscriptionSession,
    TranscriptionStartEvent,
    TranscriptionStatus,
    TranscriptionUpdateEvent,
)

logger = get_logger(__name__)

S = TranscriptionStatus

TRANSITIONS: dict[TranscriptionStatus, set[TranscriptionStatus]] = {
    S.IDLE: {S.INITIALIZING, S.ERROR},
    S.INITIALIZING: {S.RECORDING, S.ERROR},
    S.RECORDING: {S.PROCESSING, S.ERROR},
    S.PROCESSING: {S.COMPLETED, S.ERROR},
    S.COMPLETED: {S.IDLE, S.INITIALIZING},
    S.ERROR: {S.IDLE},
}

PostProcessor = Callable[[TranscriptionResult], Awaitable[Any]]


class EngineOrchestrator:
    """Runs one transcription session at a time over a prioritized list of engines.

    Chunks submitted while recording are processed in order by a single
    worker task. When an engine fails to initialize, or fails fatally while
    recording, the next engine in priority order takes over; segments already
    produced stay in the session.
    """

    def __init__(
        self,
        engine_factories: Sequence[tuple[str, EngineFactory]] | None = None,
        language: str = DEFAULT_LANGUAGE,
        on_engine_switch: Callable[[EngineSwitchEvent], None] | None = None,
        on_status_change: Callable[[TranscriptionStatus, TranscriptionStatus], None] | None = None,
        max_consecutive_errors: int = ORCHESTRATOR_MAX_CONSECUTIVE_ERRORS,
        drain_timeout: float = ORCHESTRATOR_DRAIN_TIMEOUT,
    ) -> None:
        """
        Initialize the orchestrator.

        Args:
            engine_factories: ``(name, factory)`` pairs in fallback order
            language: Transcription language passed to engines on start
            on_engine_switch: Called whenever another engine takes over
            on_status_change: Called with ``(old, new)`` on every transition
            max_consecutive_errors: Recoverable network errors tolerated before switching
            drain_timeout: Seconds to wait for queued chunks when stopping
        """
        self._factories = list(engine_factories) if engine_factories is not None else build_engine_factories()
        if not self._factories:
            raise ValueError("At least one engine factory is required")

        self.language = language
        self.on_engine_switch = on_engine_switch
        self.on_status_change = on_status_change
        self.max_consecutive_errors = max_consecutive_errors
        self.drain_timeout = drain_timeout

        self._engines: dict[str, TranscriptionEngine] = {}
        self._engine_index: int | None = None
        self._status = TranscriptionStatus.IDLE
        self._medical_context: MedicalContext | None = None

        self.session: TranscriptionSession | None = None
        self._callbacks = EngineCallbacks()
        self._audio_config: dict[str, Any] = {}
        self._queue: asyncio.Queue[AudioChunk] | None = None
        self._worker: asyncio.Task | None = None
        self._consecutive_errors = 0
        self._unacknowledged: list[AudioChunk] = []
        self._start_emitted = False
        self._engine_results: list[TranscriptionResult] = []
        self.last_result: TranscriptionResult | None = None

    @property
    def status(self) -> TranscriptionStatus:
        return self._status

    @property
    def engine_priority(self) -> list[str]:
        return [name for name, _ in self._factories]

    @property
    def active_engine(self) -> TranscriptionEngine | None:
        if self._engine_index is None:
            return None
        return self._engines.get(self._factories[self._engine_index][0])

    @property
    def active_engine_name(self) -> str | None:
        engine = self.active_engine
        return engine.name if engine else None

    def _transition(self, new_status: TranscriptionStatus) -> None:
        if new_status not in TRANSITIONS[self._status]:
            raise InvalidStateTransitionError(
                f"Cannot transition from {self._status.value} to {new_status.value}"
            )
        old_status = self._status
        self._status = new_status
        if self.session is not None:
            self.session.status = new_status
        logger.debug(f"Status {old_status.value} → {new_status.value}")
        if self.on_status_change is not None:
            try:
                self.on_status_change(old_status, new_status)
            except Exception as e:
                logger.error(f"❌ Error in status change callback: {e}")

    def _get_engine(self, index: int) -> TranscriptionEngine:
        name, factory = self._factories[index]
        if name not in self._engines:
            engine = factory()
            engine.set_medical_context(self._medical_context)
            self._engines[name] = engine
        return self._engines[name]

    def _notify_switch(self, previous: str | None, new: str, reason: str) -> None:
        logger.warning(f"⚠️ Switching engine {previous} → {new}: {reason}")
        if self.on_engine_switch is None:
            return
        try:
            self.on_engine_switch(EngineSwitchEvent(previous_engine=previous, new_engine=new, reason=reason))
        except Exception as e:
            logger.error(f"❌ Error in engine switch callback: {e}")

    def _invoke(self, name: str, event: Any) -> None:
        callback = getattr(self._callbacks, name)
        if callback is None:
            return
        try:
            callback(event)
        except Exception as e:
            logger.error(f"❌ Error in {name} callback: {e}")

    async def initialize(self, start_index: int = 0) -> EngineResult:
        """
        Initialize the first engine, from ``start_index`` on, that succeeds.

        Args:
            start_index: Position in the priority list to start from

        Returns:
            EngineResult naming the engine that is now active
        """
        failures = []
        for index in range(start_index, len(self._factories)):
            name = self._factories[index][0]
            try:
                engine = self._get_engine(index)
            except Exception as e:
                logger.error(f"❌ Failed to create engine {name}: {e}")
                result = EngineResult(success=False, message=str(e), error="ENGINE_INIT_FAILED", engine=name)
            else:
                result = await engine.initialize()

            if result.success:
                self._engine_index = index
                return EngineResult(success=True, message=result.message, engine=name)

            reason = result.message or result.error or "unknown error"
            failures.append(f"{name}: {reason}")
            if index + 1 < len(self._factories):
                self._notify_switch(name, self._factories[index + 1][0], f"Initialization failed: {reason}")

        self._engine_index = None
        error = EngineInitError(f"No transcription engine could be initialized ({'; '.join(failures)})")
        logger.error(f"❌ {error}")
        return EngineResult(success=False, message=str(error), error=error.code, exception=error)

    async def start_transcription(
        self,
        callbacks: EngineCallbacks | None = None,
        audio_config: dict[str, Any] | None = None,
        session_id: str | None = None,
        before_recording: Callable[[], Awaitable[Any]] | None = None,
    ) -> EngineResult:
        """
        Open a new session on the active engine, initializing engines as needed.

        Args:
            callbacks: Session callbacks (``on_complete`` fires once, after stop)
            audio_config: Passed through to the engine
            session_id: Identifier for the session (generated when omitted)
            before_recording: Awaited once the engine has started, while the
                session is still INITIALIZING

        Returns:
            EngineResult whose ``data`` is the new TranscriptionSession
        """
        if self._status in (S.INITIALIZING, S.RECORDING, S.PROCESSING):
            logger.warning(f"Start ignored, session is {self._status.value}")
            return EngineResult(success=False, message=f"Session is {self._status.value}", error="SESSION_ACTIVE")
        if self._status is S.ERROR:
            return EngineResult(success=False, message="Reset required after a fatal error", error="RESET_REQUIRED")

        self._transition(S.INITIALIZING)
        self.session = TranscriptionSession(
            id=session_id or uuid4().hex, status=S.INITIALIZING, start_time=time.time()
        )
        self._callbacks = callbacks or EngineCallbacks()
        self._audio_config = {"language": self.language, **(audio_config or {})}
        self._consecutive_errors = 0
        self._unacknowledged = []
        self._start_emitted = False
        self._engine_results = []
        self.last_result = None

        engine = self.active_engine
        if engine is None or not await engine.is_ready():
            result = await self.initialize(self._engine_index or 0)
            if not result.success:
                await self._fail(result.exception)
                return result

        started = await self._start_active_engine()
        if not started.success and not await self._switch_engine(f"Start failed: {started.message}"):
            return EngineResult(success=False, message="No engine could start", error="ENGINE_START_FAILED")

        if before_recording is not None:
            try:
                await before_recording()
            except Exception as e:
                logger.error(f"❌ Pre-recording hook failed: {e}")

        self._queue = asyncio.Queue()
        self._worker = asyncio.create_task(self._run_worker())
        self._transition(S.RECORDING)
        logger.info(f"🎙️ Recording with {self.active_engine_name}")
        return EngineResult(success=True, data=self.session, message="Recording started", engine=self.active_engine_name)

    async def _start_active_engine(self) -> EngineResult:
        engine = self.active_engine
        result = await engine.start_transcription(
            self._audio_config, self._engine_callbacks(), session_id=self.session.id
        )
        if result.success:
            self.session.engine = engine.name
        return result

    def _engine_callbacks(self) -> EngineCallbacks:
        return EngineCallbacks(
            on_start=self._on_engine_start,
            on_transcription_update=self._on_engine_update,
            on_complete=self._on_engine_complete,
            on_error=self._on_engine_error,
        )

    def _on_engine_start(self, event: TranscriptionStartEvent) -> None:
        if self._start_emitted:
            return
        self._start_emitted = True
        self._invoke("on_start", event)

    def _on_engine_update(self, event: TranscriptionUpdateEvent) -> None:
        if self.session is None or self._status not in (S.RECORDING, S.PROCESSING, S.INITIALIZING):
            return
        if event.is_final and event.segment is not None:
            self.session.append_segment(event.segment)
            full_text = self.session.full_text
        else:
            full_text = f"{self.session.full_text} {event.text}".strip()

        self._invoke(
            "on_transcription_update",
            TranscriptionUpdateEvent(
                text=event.text,
                full_text=full_text,
                engine=event.engine,
                is_final=event.is_final,
                segment=event.segment,
                confidence=event.confidence,
            ),
        )

    def _on_engine_complete(self, result: TranscriptionResult) -> None:
        self._engine_results.append(result)

    def _on_engine_error(self, event: TranscriptionErrorEvent) -> None:
        self._invoke("on_error", event)

    def submit_chunk(self, chunk: AudioChunk) -> bool:
        """
        Queue a chunk for the worker; only accepted while recording.

        Args:
            chunk: Chunk produced by the accumulator

        Returns:
            True if the chunk was queued
        """
        if self._status is not S.RECORDING or self._queue is None:
            return False
        if chunk.session_id != self.session.id:
            logger.trace(f"Ignoring chunk for session {chunk.session_id}")
            return False
        self._queue.put_nowait(chunk)
        return True

    async def _run_worker(self) -> None:
        while True:
            chunk = await self._queue.get()
            try:
                await self.process_chunk(chunk)
            except Exception as e:
                logger.error(f"❌ Unexpected error processing chunk {chunk.chunk_number}: {e}")
            finally:
                self._queue.task_done()

    async def process_chunk(self, chunk: AudioChunk) -> EngineResult:
        """
        Feed one chunk to the active engine, switching engines on fatal errors.

        Args:
            chunk: Chunk of the current session

        Returns:
            The engine's result for the chunk
        """
        engine = self.active_engine
        if self._status not in (S.RECORDING, S.PROCESSING) or engine is None:
            return EngineResult(success=False, message="Not recording", error="NOT_RECORDING")

        result = await engine.process_audio_chunk(chunk)
        if result.success:
            self._consecutive_errors = 0
            self._unacknowledged = []
            return result

        error = result.exception
        if not isinstance(error, TranscriptionPipelineError) or isinstance(error, ChunkTooSmallError):
            return result

        if not error.recoverable:
            if await self._switch_engine(f"Fatal error in {engine.name}: {error}"):
                return await self._replay_on_active_engine(chunk)
            return result

        if isinstance(error, (NetworkError, TranscriptionTimeoutError)):
            self._unacknowledged.append(chunk)
            self._consecutive_errors += 1
            if self._consecutive_errors >= self.max_consecutive_errors:
                self._consecutive_errors = 0
                if await self._switch_engine(
                    f"{engine.name} failed {self.max_consecutive_errors} times in a row: {error}"
                ):
                    return await self._replay_on_active_engine(chunk)
        return result

    async def _replay_on_active_engine(self, chunk: AudioChunk) -> EngineResult:
        """Feed every chunk the previous engine never transcribed, oldest first, to the new engine."""
        pending = {c.chunk_number: c for c in self._unacknowledged}
        pending[chunk.chunk_number] = chunk
        self._unacknowledged = []

        engine = self.active_engine
        if len(pending) > 1:
            logger.info(f"🔁 Replaying {len(pending)} chunks on {engine.name}")
        result = EngineResult(success=False, message="Nothing to replay", engine=engine.name)
        for number in sorted(pending):
            result = await engine.process_audio_chunk(pending[number])
        return result

    async def _switch_engine(self, reason: str) -> bool:
        old_engine = self.active_engine
        old_index = self._engine_index if self._engine_index is not None else -1
        if old_engine is not None:
            self._unacknowledged.extend(old_engine.take_unsent_chunks())
            if old_engine.is_transcribing:
                await old_engine.stop_transcription()
            await old_engine.cleanup()

        next_index = old_index + 1
        if next_index >= len(self._factories):
            await self._fail(EngineInitError(f"No fallback engine left: {reason}"))
            return False

        self._notify_switch(old_engine.name if old_engine else None, self._factories[next_index][0], reason)
        result = await self.initialize(next_index)
        if not result.success:
            await self._fail(result.exception)
            return False

        started = await self._start_active_engine()
        if not started.success:
            return await self._switch_engine(f"Start failed: {started.message}")
        return True

    async def _fail(self, error: Exception | None) -> None:
        if self._status is S.ERROR:
            return
        if not isinstance(error, TranscriptionPipelineError):
            error = TranscriptionPipelineError(str(error) if error else "Unknown failure")

        engine = self.active_engine
        self._transition(S.ERROR)
        if self.session is not None:
            self.session.end_time = time.time()
        if engine is not None and engine.is_transcribing:
            await engine.stop_transcription()

        logger.error(f"❌ Session failed: {error}")
        self._invoke(
            "on_error",
            TranscriptionErrorEvent(
                error=str(error), code=error.code, recoverable=False, engine=engine.name if engine else None
            ),
        )

    async def stop_transcription(self, post_processor: PostProcessor | None = None) -> EngineResult:
        """
        Finish the session: drain queued chunks, stop the engine, run post-processing.

        Args:
            post_processor: Awaited with the final result before the session completes

        Returns:
            EngineResult whose ``data`` is the final TranscriptionResult
        """
        if self._status is not S.RECORDING:
            return EngineResult(success=False, message="No active recording", error="NOT_RECORDING")

        self._transition(S.PROCESSING)
        await self._drain_queue()

        engine = self.active_engine
        if self._status is S.PROCESSING and engine is not None:
            await engine.stop_transcription()

        if self._status is S.ERROR:
            return EngineResult(
                success=False, data=self.get_partial_result(), message="Session failed", error="SESSION_FAILED"
            )

        result = self._build_result()
        if post_processor is not None:
            try:
                await post_processor(result)
            except Exception as e:
                logger.error(f"❌ Post-processing failed: {e}")

        self.session.end_time = time.time()
        self._transition(S.COMPLETED)
        self.last_result = result
        self._invoke("on_complete", result)
        logger.info(f"✅ Session complete: {len(result.segments)} segments, {result.duration:.1f}s of audio")
        return EngineResult(success=True, data=result, message="Transcription complete", engine=result.engine)

    async def _drain_queue(self) -> None:
        if self._queue is not None:
            try:
                await asyncio.wait_for(self._queue.join(), timeout=self.drain_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"⚠️ Queued chunks not processed within {self.drain_timeout:.0f}s, cancelling")
        await self._cancel_worker()

    async def _cancel_worker(self) -> None:
        worker, self._worker = self._worker, None
        self._queue = None
        if worker is None or worker.done():
            return
        worker.cancel()
        try:
            await worker
        except asyncio.CancelledError:
            logger.trace("Chunk worker cancelled")

    def _build_result(self) -> TranscriptionResult:
        segments = list(self.session.segments)
        voiced = [s for s in segments if s.text]
        costs = [r.total_cost for r in self._engine_results if r.total_cost is not None]
        calls = [r.api_calls for r in self._engine_results if r.api_calls is not None]
        return TranscriptionResult(
            session_id=self.session.id,
            text=self.session.full_text,
            segments=segments,
            language=self._audio_config.get("language", self.language),
            engine=self.session.engine or "",
            confidence=sum(s.confidence for s in voiced) / len(voiced) if voiced else 0.0,
            duration=sum(r.duration for r in self._engine_results),
            processing_time=time.time() - self.session.start_time,
            total_cost=max(costs) if costs else None,
            api_calls=sum(calls) if calls else None,
        )

    def get_partial_result(self) -> TranscriptionResult | None:
        """Result built from the segments captured so far, or None without a session."""
        if self.session is None:
            return None
        return self._build_result()

    async def reset(self) -> bool:
        """
        Return to IDLE, stopping an active recording first.

        Returns:
            False if a stop or start is still in flight
        """
        if self._status in (S.INITIALIZING, S.PROCESSING):
            logger.warning(f"Reset ignored while {self._status.value}")
            return False
        self._callbacks = EngineCallbacks()
        if self._status is S.RECORDING:
            await self.stop_transcription()

        if self._status is not S.IDLE:
            self._transition(S.IDLE)
        self.session = None
        self._consecutive_errors = 0
        self._unacknowledged = []
        self._engine_results = []
        # detaches the worker before yielding, so a session started meanwhile keeps its own
        await self._cancel_worker()
        return True

    def set_medical_context(self, context: MedicalContext | None) -> None:
        self._medical_context = context
        for engine in self._engines.values():
            engine.set_medical_context(context)

    def get_engine_stats(self) -> dict[str, Any]:
        return {
            "status": self._status.value,
            "active_engine": self.active_engine_name,
            "priority": self.engine_priority,
            "session_id": self.session.id if self.session else None,
            "segments": len(self.session.segments) if self.session else 0,
            "engines": {name: engine.get_engine_stats() for name, engine in self._engines.items()},
        }

    async def cleanup(self) -> None:
        """Stop everything and release every engine created so far."""
        if self._status is S.RECORDING:
            await self.stop_transcription()
        await self._cancel_worker()
        for engine in self._engines.values():
            await engine.cleanup()
        self._engines.clear()
        self._engine_index = None
        if self._status in (S.COMPLETED, S.ERROR):
            self._transition(S.IDLE)
