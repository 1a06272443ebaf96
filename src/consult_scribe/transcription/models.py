"""Data models for the transcription pipeline."""

from collections.abc import Callable
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any
from uuid import uuid4

import numpy as np


class TranscriptionStatus(str, Enum):
    """Session status enumeration."""

    IDLE = "idle"
    INITIALIZING = "initializing"
    RECORDING = "recording"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


class PermissionState(str, Enum):
    """Microphone permission state."""

    PROMPT = "prompt"
    GRANTED = "granted"
    DENIED = "denied"


class TranscriptionMode(str, Enum):
    """How a recording is stopped."""

    MANUAL = "manual"
    AUTOMATIC = "automatic"


@dataclass
class AudioFrame:
    """Raw mono float32 samples delivered by a capture source."""

    samples: np.ndarray
    sample_rate: int
    timestamp: float

    @property
    def duration(self) -> float:
        return len(self.samples) / self.sample_rate if self.sample_rate else 0.0


@dataclass(frozen=True, eq=False)
class AudioChunk:
    """A resampled block of audio ready for engine consumption.

    ``offset`` is the chunk start in seconds from the beginning of the
    session; ``is_final`` marks the tail emitted by a flush.
    """

    samples: np.ndarray
    sample_rate: int
    chunk_number: int
    session_id: str
    timestamp: float
    offset: float = 0.0
    is_final: bool = False
    denoised: bool = False

    def __post_init__(self) -> None:
        self.samples.setflags(write=False)

    @property
    def duration(self) -> float:
        return len(self.samples) / self.sample_rate if self.sample_rate else 0.0


@dataclass(frozen=True)
class TranscriptionSegment:
    """One timestamped unit of transcribed text."""

    text: str
    start_time: float
    end_time: float
    confidence: float
    language: str
    engine: str
    speaker: str | None = None
    id: str = field(default_factory=lambda: uuid4().hex)

    def __post_init__(self) -> None:
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"Confidence must be within [0, 1], got {self.confidence}")
        if self.end_time < self.start_time:
            raise ValueError("Segment end_time must not precede start_time")

    def with_speaker(self, speaker: str) -> "TranscriptionSegment":
        """Return a copy of this segment labelled with a speaker."""
        return replace(self, speaker=speaker)


def join_segment_text(segments: list[TranscriptionSegment]) -> str:
    """Join segment texts in start-time order with single spaces, skipping empty segments."""
    ordered = sorted(segments, key=lambda s: s.start_time)
    return " ".join(s.text.strip() for s in ordered if s.text and s.text.strip())


@dataclass
class TranscriptionSession:
    """One recording-to-transcript lifecycle instance."""

    id: str
    status: TranscriptionStatus
    start_time: float
    engine: str | None = None
    end_time: float | None = None
    segments: list[TranscriptionSegment] = field(default_factory=list)

    @property
    def full_text(self) -> str:
        return join_segment_text(self.segments)

    def append_segment(self, segment: TranscriptionSegment) -> None:
        self.segments.append(segment)


@dataclass
class SpeakerTurn:
    """A diarized time range, optionally carrying the text spoken in it."""

    start: float
    end: float
    speaker: str
    text: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"start": self.start, "end": self.end, "speaker": self.speaker, "text": self.text}


@dataclass
class DiarizationResult:
    """Speaker turns produced from a full-session recording."""

    segments: list[SpeakerTurn]
    speaker_count: int
    processing_time: float = 0.0


@dataclass
class MergedTranscript:
    """Final transcript with speaker attribution."""

    merged_transcript: str
    speakers: list[SpeakerTurn] = field(default_factory=list)
    summary: str | None = None
    logs: list[str] = field(default_factory=list)
    source: str = "local"

    def to_dict(self) -> dict[str, Any]:
        return {
            "mergedTranscript": self.merged_transcript,
            "speakers": [turn.to_dict() for turn in self.speakers],
            "summary": self.summary,
            "logs": list(self.logs),
        }

    def format_dialogue(self) -> str:
        """Render the transcript as ``Speaker: text`` lines."""
        lines = [f"{turn.speaker}: {turn.text}" for turn in self.speakers if turn.text]
        return "\n".join(lines) if lines else self.merged_transcript


@dataclass
class MedicalContext:
    """Clinical hints passed to Whisper-based engines as a prompt."""

    specialty: str | None = None
    terms: list[str] = field(default_factory=list)

    def build_prompt(self) -> str:
        parts = ["Consulta médica entre doctor y paciente."]
        if self.specialty:
            parts.append(f"Especialidad: {self.specialty}.")
        if self.terms:
            parts.append(f"Términos: {', '.join(self.terms)}.")
        return " ".join(parts)


@dataclass
class EngineResult:
    """Uniform return value of engine and orchestrator operations."""

    success: bool
    data: Any = None
    message: str | None = None
    error: str | None = None
    engine: str | None = None
    exception: Exception | None = None


@dataclass
class TranscriptionResult:
    """Final result of a transcription session."""

    session_id: str
    text: str
    segments: list[TranscriptionSegment]
    language: str
    engine: str
    confidence: float
    duration: float
    processing_time: float
    total_cost: float | None = None
    api_calls: int | None = None


@dataclass
class TranscriptionStartEvent:
    session_id: str
    engine: str
    timestamp: float


@dataclass
class TranscriptionUpdateEvent:
    """Partial or final text from an engine."""

    text: str
    full_text: str
    engine: str
    is_final: bool = True
    segment: TranscriptionSegment | None = None
    confidence: float | None = None


@dataclass
class TranscriptionErrorEvent:
    """An error raised inside an engine, with its recoverability."""

    error: str
    code: str
    recoverable: bool
    engine: str | None = None

    @property
    def fatal(self) -> bool:
        return not self.recoverable


@dataclass
class EngineSwitchEvent:
    previous_engine: str | None
    new_engine: str
    reason: str


Callback = Callable[[Any], None]


@dataclass
class EngineCallbacks:
    """Callbacks an engine invokes during a session."""

    on_start: Callback | None = None
    on_transcription_update: Callback | None = None
    on_complete: Callback | None = None
    on_error: Callback | None = None


@dataclass
class ErrorBag:
    """Latest error message from each layer of the pipeline."""

    whisper_error: str | None = None
    web_speech_error: str | None = None
    llm_error: str | None = None
    diarization_error: str | None = None
    general_error: str | None = None

    def clear(self) -> None:
        self.whisper_error = None
        self.web_speech_error = None
        self.llm_error = None
        self.diarization_error = None
        self.general_error = None

    def has_errors(self) -> bool:
        return any(self.as_dict().values())

    def as_dict(self) -> dict[str, str | None]:
        return {
            "whisper_error": self.whisper_error,
            "web_speech_error": self.web_speech_error,
            "llm_error": self.llm_error,
            "diarization_error": self.diarization_error,
            "general_error": self.general_error,
        }
