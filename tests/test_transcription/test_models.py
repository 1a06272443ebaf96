"""Tests for transcription data models."""

import numpy as np
import pytest

from consult_scribe.transcription.exceptions import (
    ChunkTooSmallError,
    EngineInitError,
    MicrophonePermissionError,
    NetworkError,
    RecognizerError,
    TranscriptionPipelineError,
)
from consult_scribe.transcription.models import (
    AudioChunk,
    ErrorBag,
    MedicalContext,
    MergedTranscript,
    SpeakerTurn,
    TranscriptionErrorEvent,
    TranscriptionSegment,
    TranscriptionSession,
    TranscriptionStatus,
    join_segment_text,
)


def segment(text: str, start: float, end: float | None = None, confidence: float = 0.9) -> TranscriptionSegment:
    return TranscriptionSegment(
        text=text,
        start_time=start,
        end_time=start + 1.0 if end is None else end,
        confidence=confidence,
        language="es",
        engine="local-whisper",
    )


@pytest.mark.unit
class TestTranscriptionSegment:
    """Test cases for TranscriptionSegment."""

    def test_confidence_must_be_in_unit_interval(self) -> None:
        """Test out-of-range confidence is rejected."""
        with pytest.raises(ValueError, match="Confidence"):
            segment("hola", 0.0, confidence=1.2)
        with pytest.raises(ValueError, match="Confidence"):
            segment("hola", 0.0, confidence=-0.1)

    def test_end_must_not_precede_start(self) -> None:
        """Test inverted time ranges are rejected."""
        with pytest.raises(ValueError, match="end_time"):
            segment("hola", 2.0, end=1.0)

    def test_segments_get_unique_ids(self) -> None:
        """Test each segment receives its own identifier."""
        assert segment("a", 0.0).id != segment("b", 0.0).id

    def test_with_speaker_returns_labelled_copy(self) -> None:
        """Test with_speaker keeps the original unchanged."""
        original = segment("hola", 0.0)

        labelled = original.with_speaker("Doctor")

        assert labelled.speaker == "Doctor"
        assert labelled.text == "hola"
        assert labelled.id == original.id
        assert original.speaker is None


@pytest.mark.unit
class TestSessionText:
    """Test cases for full-text assembly."""

    def test_join_orders_by_start_time_and_skips_empty(self) -> None:
        """Test full text is space-joined in start-time order."""
        segments = [segment("segundo", 2.0), segment("  ", 1.5), segment("primero", 0.0)]

        assert join_segment_text(segments) == "primero segundo"

    def test_session_full_text(self) -> None:
        """Test session full_text follows appended segments."""
        session = TranscriptionSession(id="s", status=TranscriptionStatus.RECORDING, start_time=0.0)
        session.append_segment(segment("Buenos días", 0.0))
        session.append_segment(segment("doctor", 2.0))

        assert session.full_text == "Buenos días doctor"


@pytest.mark.unit
class TestAudioChunk:
    """Test cases for AudioChunk."""

    def test_duration(self) -> None:
        """Test duration is derived from sample count and rate."""
        chunk = AudioChunk(
            samples=np.zeros(24000, dtype=np.float32),
            sample_rate=16000,
            chunk_number=0,
            session_id="s",
            timestamp=0.0,
        )

        assert chunk.duration == pytest.approx(1.5)
        assert chunk.samples.flags.writeable is False


@pytest.mark.unit
class TestTranscriptModels:
    """Test cases for merged transcript helpers."""

    def test_merged_transcript_to_dict_uses_wire_keys(self) -> None:
        """Test serialization matches the audit service field names."""
        merged = MergedTranscript(
            merged_transcript="Hola",
            speakers=[SpeakerTurn(start=0.0, end=1.0, speaker="Doctor", text="Hola")],
            summary="Saludo",
        )

        data = merged.to_dict()

        assert data["mergedTranscript"] == "Hola"
        assert data["speakers"] == [{"start": 0.0, "end": 1.0, "speaker": "Doctor", "text": "Hola"}]
        assert data["summary"] == "Saludo"
        assert data["logs"] == []

    def test_format_dialogue(self) -> None:
        """Test dialogue rendering skips empty turns."""
        merged = MergedTranscript(
            merged_transcript="Hola. ¿Qué tal?",
            speakers=[
                SpeakerTurn(0.0, 1.0, "Doctor", "Hola."),
                SpeakerTurn(1.0, 2.0, "Unknown", ""),
                SpeakerTurn(2.0, 3.0, "Patient", "¿Qué tal?"),
            ],
        )

        assert merged.format_dialogue() == "Doctor: Hola.\nPatient: ¿Qué tal?"

    def test_format_dialogue_without_speakers(self) -> None:
        """Test dialogue falls back to the plain transcript."""
        assert MergedTranscript(merged_transcript="Hola").format_dialogue() == "Hola"

    def test_medical_context_prompt(self) -> None:
        """Test the prompt mentions specialty and terms."""
        prompt = MedicalContext(specialty="cardiología", terms=["disnea", "taquicardia"]).build_prompt()

        assert "cardiología" in prompt
        assert "disnea, taquicardia" in prompt

    def test_error_bag(self) -> None:
        """Test the error bag reports and clears errors."""
        errors = ErrorBag()
        assert errors.has_errors() is False

        errors.diarization_error = "too short"
        assert errors.has_errors() is True
        assert errors.as_dict()["diarization_error"] == "too short"

        errors.clear()
        assert errors.has_errors() is False

    def test_error_event_fatal(self) -> None:
        """Test fatal is the inverse of recoverable."""
        event = TranscriptionErrorEvent(error="boom", code="NETWORK_ERROR", recoverable=False)

        assert event.fatal is True


@pytest.mark.unit
class TestExceptions:
    """Test cases for the pipeline exception hierarchy."""

    def test_codes_and_recoverability(self) -> None:
        """Test each error carries its code and default recoverability."""
        assert ChunkTooSmallError("x").recoverable is True
        assert ChunkTooSmallError("x").code == "CHUNK_TOO_SMALL"
        assert EngineInitError("x").recoverable is False
        assert NetworkError("x").recoverable is True
        assert MicrophonePermissionError("x").code == "PERMISSION_DENIED"

    def test_recoverable_override(self) -> None:
        """Test recoverability can be overridden per instance."""
        assert NetworkError("x", recoverable=False).recoverable is False
        assert NetworkError("y").recoverable is True

    def test_all_errors_share_base_class(self) -> None:
        """Test every error derives from TranscriptionPipelineError."""
        error = RecognizerError("network", "offline", recoverable=True)

        assert isinstance(error, TranscriptionPipelineError)
        assert error.error_code == "network"
        assert error.recoverable is True
