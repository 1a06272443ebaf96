"""Tests for EngineOrchestrator."""

import httpx
import pytest

from consult_scribe.transcription.cost_optimizer import CostOptimizer
from consult_scribe.transcription.engines.remote_whisper import RemoteWhisperEngine
from consult_scribe.transcription.exceptions import (
    InvalidStateTransitionError,
    NetworkError,
    TranscriptionPipelineError,
)
from consult_scribe.transcription.models import EngineCallbacks, TranscriptionStatus
from consult_scribe.transcription.orchestrator import EngineOrchestrator


class EngineSet:
    """Builds named fake engines lazily and remembers every instance."""

    def __init__(self, engine_cls, **specs) -> None:
        self.engine_cls = engine_cls
        self.specs = specs
        self.created: dict[str, list] = {name: [] for name in specs}

    def factories(self) -> list:
        return [(name, self._factory(name)) for name in self.specs]

    def _factory(self, name: str):
        def build():
            engine = self.engine_cls(name=name, **self.specs[name])
            self.created[name].append(engine)
            return engine

        return build

    def engine(self, name: str):
        return self.created[name][-1]


class Recorder:
    """Collects orchestrator callbacks."""

    def __init__(self) -> None:
        self.starts = []
        self.updates = []
        self.errors = []
        self.completed = []
        self.switches = []

    def callbacks(self) -> EngineCallbacks:
        return EngineCallbacks(
            on_start=self.starts.append,
            on_transcription_update=self.updates.append,
            on_complete=self.completed.append,
            on_error=self.errors.append,
        )


def make_orchestrator(engines: EngineSet, recorder: Recorder) -> EngineOrchestrator:
    return EngineOrchestrator(engine_factories=engines.factories(), on_engine_switch=recorder.switches.append)


@pytest.mark.unit
class TestEngineOrchestrator:
    """Test cases for EngineOrchestrator."""

    def test_requires_factories(self) -> None:
        """Test an empty engine list is rejected."""
        with pytest.raises(ValueError, match="At least one engine"):
            EngineOrchestrator(engine_factories=[])

    @pytest.mark.asyncio
    async def test_silent_session_completes(self, fake_engine_cls, make_chunk) -> None:
        """Test three silent chunks produce a completed session with one segment each."""
        engines = EngineSet(fake_engine_cls, **{"local-whisper": {}})
        recorder = Recorder()
        orchestrator = make_orchestrator(engines, recorder)

        started = await orchestrator.start_transcription(recorder.callbacks(), session_id="session-1")
        assert started.success is True
        assert orchestrator.status is TranscriptionStatus.RECORDING

        for number in range(3):
            assert orchestrator.submit_chunk(make_chunk(chunk_number=number, offset=2.0 * number)) is True
        stopped = await orchestrator.stop_transcription()

        assert stopped.success is True
        assert orchestrator.status is TranscriptionStatus.COMPLETED
        result = stopped.data
        assert len(result.segments) == 3
        assert [s.start_time for s in result.segments] == [0.0, 2.0, 4.0]
        assert result.text == ""
        assert result.engine == "local-whisper"
        assert result.duration == pytest.approx(6.0)
        assert len(recorder.starts) == 1
        assert recorder.completed == [result]

    @pytest.mark.asyncio
    async def test_transcript_text_follows_chunk_order(self, fake_engine_cls, make_chunk) -> None:
        """Test updates carry the running transcript."""
        engines = EngineSet(fake_engine_cls, **{"local-whisper": {"texts": ["Buenos días", "¿qué le pasa?"]}})
        recorder = Recorder()
        orchestrator = make_orchestrator(engines, recorder)
        await orchestrator.start_transcription(recorder.callbacks(), session_id="session-1")

        orchestrator.submit_chunk(make_chunk(chunk_number=0))
        orchestrator.submit_chunk(make_chunk(chunk_number=1, offset=2.0))
        result = (await orchestrator.stop_transcription()).data

        assert result.text == "Buenos días ¿qué le pasa?"
        assert recorder.updates[-1].full_text == result.text

    @pytest.mark.asyncio
    async def test_init_failure_falls_back(self, fake_engine_cls, failing_init_error) -> None:
        """Test a failed local engine hands over to the remote engine."""
        engines = EngineSet(
            fake_engine_cls,
            **{"local-whisper": {"init_error": failing_init_error}, "remote-api": {}},
        )
        recorder = Recorder()
        orchestrator = make_orchestrator(engines, recorder)

        started = await orchestrator.start_transcription(recorder.callbacks(), session_id="session-1")

        assert started.success is True
        assert started.engine == "remote-api"
        assert len(recorder.switches) == 1
        switch = recorder.switches[0]
        assert switch.previous_engine == "local-whisper"
        assert switch.new_engine == "remote-api"
        assert "model download failed" in switch.reason
        assert orchestrator.session.engine == "remote-api"

    @pytest.mark.asyncio
    async def test_all_engines_fail(self, fake_engine_cls, failing_init_error) -> None:
        """Test the session fails when no engine initializes."""
        engines = EngineSet(
            fake_engine_cls,
            **{"local-whisper": {"init_error": failing_init_error}, "remote-api": {"init_error": failing_init_error}},
        )
        recorder = Recorder()
        orchestrator = make_orchestrator(engines, recorder)

        started = await orchestrator.start_transcription(recorder.callbacks(), session_id="session-1")

        assert started.success is False
        assert orchestrator.status is TranscriptionStatus.ERROR
        assert recorder.errors[-1].recoverable is False
        assert recorder.completed == []

        retry = await orchestrator.start_transcription(recorder.callbacks())
        assert retry.error == "RESET_REQUIRED"

        assert await orchestrator.reset() is True
        assert orchestrator.status is TranscriptionStatus.IDLE

    @pytest.mark.asyncio
    async def test_start_while_recording_is_ignored(self, fake_engine_cls) -> None:
        """Test a second start does not open another session."""
        engines = EngineSet(fake_engine_cls, **{"local-whisper": {}})
        orchestrator = make_orchestrator(engines, Recorder())
        await orchestrator.start_transcription(session_id="session-1")

        second = await orchestrator.start_transcription(session_id="session-2")

        assert second.success is False
        assert second.error == "SESSION_ACTIVE"
        assert orchestrator.session.id == "session-1"

    @pytest.mark.asyncio
    async def test_before_recording_runs_while_initializing(self, fake_engine_cls) -> None:
        """Test the pre-recording hook sees INITIALIZING and its failure does not abort the start."""
        engines = EngineSet(fake_engine_cls, **{"local-whisper": {}})
        recorder = Recorder()
        orchestrator = make_orchestrator(engines, recorder)
        seen = []

        async def hook() -> None:
            seen.append(orchestrator.status)
            raise RuntimeError("live recognizer crashed")

        started = await orchestrator.start_transcription(recorder.callbacks(), before_recording=hook)

        assert seen == [TranscriptionStatus.INITIALIZING]
        assert started.success is True
        assert orchestrator.status is TranscriptionStatus.RECORDING

    @pytest.mark.asyncio
    async def test_double_stop(self, fake_engine_cls) -> None:
        """Test stopping twice only completes once."""
        engines = EngineSet(fake_engine_cls, **{"local-whisper": {}})
        recorder = Recorder()
        orchestrator = make_orchestrator(engines, recorder)
        await orchestrator.start_transcription(recorder.callbacks(), session_id="session-1")

        first = await orchestrator.stop_transcription()
        second = await orchestrator.stop_transcription()

        assert first.success is True
        assert second.success is False
        assert len(recorder.completed) == 1

    @pytest.mark.asyncio
    async def test_fatal_chunk_error_switches_and_reprocesses(self, fake_engine_cls, make_chunk) -> None:
        """Test a fatal engine error moves the same chunk to the next engine."""
        engines = EngineSet(
            fake_engine_cls,
            **{
                "local-whisper": {"texts": ["Hola"], "chunk_errors": [None, TranscriptionPipelineError("GPU lost")]},
                "remote-api": {"texts": ["¿Dónde le duele?"]},
            },
        )
        recorder = Recorder()
        orchestrator = make_orchestrator(engines, recorder)
        await orchestrator.start_transcription(recorder.callbacks(), session_id="session-1")

        orchestrator.submit_chunk(make_chunk(chunk_number=0))
        orchestrator.submit_chunk(make_chunk(chunk_number=1, offset=2.0))
        result = (await orchestrator.stop_transcription()).data

        assert [s.text for s in result.segments] == ["Hola", "¿Dónde le duele?"]
        assert [s.engine for s in result.segments] == ["local-whisper", "remote-api"]
        assert engines.engine("remote-api").chunks[0].chunk_number == 1
        assert engines.engine("local-whisper").cleaned_up is True
        assert recorder.switches[0].previous_engine == "local-whisper"
        assert result.duration == pytest.approx(4.0)

    @pytest.mark.asyncio
    async def test_repeated_network_errors_switch(self, fake_engine_cls, make_chunk) -> None:
        """Test consecutive recoverable network errors eventually switch engines."""
        engines = EngineSet(
            fake_engine_cls,
            **{
                "remote-api": {"chunk_errors": [NetworkError("503")] * 3},
                "native-speech": {"texts": ["Buenos días", "doctor", "Listo"]},
            },
        )
        recorder = Recorder()
        orchestrator = make_orchestrator(engines, recorder)
        await orchestrator.start_transcription(recorder.callbacks(), session_id="session-1")

        for number in range(3):
            orchestrator.submit_chunk(make_chunk(chunk_number=number, offset=2.0 * number))
        result = (await orchestrator.stop_transcription()).data

        assert len(recorder.switches) == 1
        assert recorder.switches[0].new_engine == "native-speech"
        assert [c.chunk_number for c in engines.engine("native-speech").chunks] == [0, 1, 2]
        assert [s.text for s in result.segments] == ["Buenos días", "doctor", "Listo"]
        assert all(e.recoverable for e in recorder.errors)

    @pytest.mark.asyncio
    async def test_remote_outage_replays_buffered_chunks(self, fake_engine_cls, make_chunk) -> None:
        """Test audio the remote engine never managed to send is transcribed by the next engine."""
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(503, text="unavailable")

        remote = RemoteWhisperEngine(
            api_key="test-key",
            endpoint="https://stt.example.com/v1/audio/transcriptions",
            client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
            max_retries=0,
            retry_base_delay=0,
        )
        backup = fake_engine_cls(name="native-speech", texts=["uno", "dos", "tres"])
        recorder = Recorder()
        orchestrator = EngineOrchestrator(
            engine_factories=[("remote-api", lambda: remote), ("native-speech", lambda: backup)],
            on_engine_switch=recorder.switches.append,
        )
        await orchestrator.start_transcription(recorder.callbacks(), session_id="session-1")

        for number in range(3):
            orchestrator.submit_chunk(make_chunk(chunk_number=number, offset=2.0 * number))
        result = (await orchestrator.stop_transcription()).data

        assert len(requests) == 3
        assert [c.chunk_number for c in backup.chunks] == [0, 1, 2]
        assert result.text == "uno dos tres"
        assert remote.buffered_seconds == 0.0

    @pytest.mark.asyncio
    async def test_deferred_chunks_follow_a_fatal_switch(self, fake_engine_cls, make_chunk) -> None:
        """Test chunks held back by the cost optimizer are not lost when the engine fails fatally."""
        optimizer = CostOptimizer(budget_limit=1.0)
        optimizer.total_cost = 0.85
        remote = RemoteWhisperEngine(
            api_key="test-key",
            endpoint="https://stt.example.com/v1/audio/transcriptions",
            client=httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(401))),
            cost_optimizer=optimizer,
            retry_base_delay=0,
        )
        backup = fake_engine_cls(name="native-speech", texts=["uno", "dos", "tres"])
        recorder = Recorder()
        orchestrator = EngineOrchestrator(
            engine_factories=[("remote-api", lambda: remote), ("native-speech", lambda: backup)],
            on_engine_switch=recorder.switches.append,
        )
        await orchestrator.start_transcription(recorder.callbacks(), session_id="session-1")

        orchestrator.submit_chunk(make_chunk(chunk_number=0))
        orchestrator.submit_chunk(make_chunk(chunk_number=1, offset=2.0))
        orchestrator.submit_chunk(make_chunk(chunk_number=2, offset=4.0, is_final=True))
        result = (await orchestrator.stop_transcription()).data

        assert recorder.switches[0].previous_engine == "remote-api"
        assert [c.chunk_number for c in backup.chunks] == [0, 1, 2]
        assert result.text == "uno dos tres"

    @pytest.mark.asyncio
    async def test_recovered_chunks_are_not_replayed(self, fake_engine_cls, make_chunk) -> None:
        """Test only chunks failed since the last success move to the next engine."""
        engines = EngineSet(
            fake_engine_cls,
            **{
                "remote-api": {
                    "texts": ["Hola"],
                    "chunk_errors": [NetworkError("503"), None, NetworkError("503"), TranscriptionPipelineError("401")],
                },
                "native-speech": {"texts": ["¿Qué tal?", "Bien"]},
            },
        )
        recorder = Recorder()
        orchestrator = make_orchestrator(engines, recorder)
        await orchestrator.start_transcription(recorder.callbacks(), session_id="session-1")

        for number in range(4):
            orchestrator.submit_chunk(make_chunk(chunk_number=number, offset=2.0 * number))
        await orchestrator.stop_transcription()

        assert [c.chunk_number for c in engines.engine("remote-api").chunks] == [1]
        assert [c.chunk_number for c in engines.engine("native-speech").chunks] == [2, 3]

    @pytest.mark.asyncio
    async def test_fatal_error_without_fallback_fails_session(self, fake_engine_cls, make_chunk) -> None:
        """Test the session fails when the last engine fails fatally."""
        engines = EngineSet(
            fake_engine_cls,
            **{"native-speech": {"texts": ["Hola"], "chunk_errors": [None, TranscriptionPipelineError("denied")]}},
        )
        recorder = Recorder()
        orchestrator = make_orchestrator(engines, recorder)
        await orchestrator.start_transcription(recorder.callbacks(), session_id="session-1")

        orchestrator.submit_chunk(make_chunk(chunk_number=0))
        orchestrator.submit_chunk(make_chunk(chunk_number=1, offset=2.0))
        stopped = await orchestrator.stop_transcription()

        assert stopped.success is False
        assert orchestrator.status is TranscriptionStatus.ERROR
        assert stopped.data.text == "Hola"
        assert recorder.completed == []

    @pytest.mark.asyncio
    async def test_short_chunk_is_rejected(self, fake_engine_cls, make_chunk) -> None:
        """Test a non-final chunk under the minimum yields no segment and no switch."""
        engines = EngineSet(fake_engine_cls, **{"local-whisper": {}, "remote-api": {}})
        recorder = Recorder()
        orchestrator = make_orchestrator(engines, recorder)
        await orchestrator.start_transcription(recorder.callbacks(), session_id="session-1")

        rejected = await orchestrator.process_chunk(make_chunk(seconds=1.0))
        accepted = await orchestrator.process_chunk(make_chunk(seconds=1.995, chunk_number=1))
        final = await orchestrator.process_chunk(make_chunk(seconds=0.5, chunk_number=2, is_final=True))

        assert rejected.success is False
        assert rejected.error == "CHUNK_TOO_SMALL"
        assert accepted.success is True
        assert final.success is True
        assert recorder.switches == []
        assert recorder.errors[0].code == "CHUNK_TOO_SMALL"
        assert len(orchestrator.session.segments) == 2

    @pytest.mark.asyncio
    async def test_submit_chunk_outside_session(self, fake_engine_cls, make_chunk) -> None:
        """Test chunks are refused when not recording or for another session."""
        engines = EngineSet(fake_engine_cls, **{"local-whisper": {}})
        orchestrator = make_orchestrator(engines, Recorder())

        assert orchestrator.submit_chunk(make_chunk()) is False

        await orchestrator.start_transcription(session_id="session-1")
        assert orchestrator.submit_chunk(make_chunk(session_id="other")) is False

    @pytest.mark.asyncio
    async def test_post_processor_runs_before_completion(self, fake_engine_cls) -> None:
        """Test the post-processor sees the result while the session is processing."""
        engines = EngineSet(fake_engine_cls, **{"local-whisper": {}})
        orchestrator = make_orchestrator(engines, Recorder())
        await orchestrator.start_transcription(session_id="session-1")
        seen = []

        async def post_process(result) -> None:
            seen.append((orchestrator.status, result.session_id))
            raise RuntimeError("diarization crashed")

        stopped = await orchestrator.stop_transcription(post_processor=post_process)

        assert seen == [(TranscriptionStatus.PROCESSING, "session-1")]
        assert stopped.success is True
        assert orchestrator.status is TranscriptionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_working_engine_is_kept_for_next_session(self, fake_engine_cls, failing_init_error) -> None:
        """Test a fallback engine stays active for later sessions."""
        engines = EngineSet(
            fake_engine_cls,
            **{"local-whisper": {"init_error": failing_init_error}, "remote-api": {}},
        )
        recorder = Recorder()
        orchestrator = make_orchestrator(engines, recorder)
        await orchestrator.start_transcription(session_id="session-1")
        await orchestrator.stop_transcription()

        again = await orchestrator.start_transcription(session_id="session-2")

        assert again.engine == "remote-api"
        assert len(recorder.switches) == 1
        assert len(engines.created["remote-api"]) == 1

    @pytest.mark.asyncio
    async def test_invalid_transition(self) -> None:
        """Test the state machine rejects transitions it does not allow."""
        orchestrator = EngineOrchestrator(engine_factories=[("fake", lambda: None)])

        with pytest.raises(InvalidStateTransitionError, match="idle to completed"):
            orchestrator._transition(TranscriptionStatus.COMPLETED)

    @pytest.mark.asyncio
    async def test_status_change_callback(self, fake_engine_cls) -> None:
        """Test every transition is reported in order."""
        engines = EngineSet(fake_engine_cls, **{"local-whisper": {}})
        changes = []
        orchestrator = EngineOrchestrator(
            engine_factories=engines.factories(), on_status_change=lambda old, new: changes.append(new)
        )

        await orchestrator.start_transcription(session_id="session-1")
        await orchestrator.stop_transcription()
        await orchestrator.reset()

        assert changes == [
            TranscriptionStatus.INITIALIZING,
            TranscriptionStatus.RECORDING,
            TranscriptionStatus.PROCESSING,
            TranscriptionStatus.COMPLETED,
            TranscriptionStatus.IDLE,
        ]

    @pytest.mark.asyncio
    async def test_cleanup_releases_engines(self, fake_engine_cls) -> None:
        """Test cleanup stops the session and releases every engine."""
        engines = EngineSet(fake_engine_cls, **{"local-whisper": {}})
        orchestrator = make_orchestrator(engines, Recorder())
        await orchestrator.start_transcription(session_id="session-1")

        await orchestrator.cleanup()

        assert engines.engine("local-whisper").cleaned_up is True
        assert orchestrator.status is TranscriptionStatus.IDLE
        assert orchestrator.active_engine is None
