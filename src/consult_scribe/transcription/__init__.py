"""Transcription pipeline for medical consultations."""

from .audio_capture import AudioCaptureSource, DenoisingAudioCapture, RawAudioCapture
from .audit_client import AuditClient
from .diarization import DiarizationService, merge_transcriptions, word_similarity
from .merger import TranscriptMerger
from .models import (
    AudioChunk,
    DiarizationResult,
    EngineSwitchEvent,
    ErrorBag,
    MergedTranscript,
    SpeakerTurn,
    TranscriptionMode,
    TranscriptionResult,
    TranscriptionSegment,
    TranscriptionStatus,
)
from .orchestrator import EngineOrchestrator
from .session import SessionController

__all__ = [
    "AudioCaptureSource",
    "AudioChunk",
    "AuditClient",
    "DenoisingAudioCapture",
    "DiarizationResult",
    "DiarizationService",
    "EngineOrchestrator",
    "EngineSwitchEvent",
    "ErrorBag",
    "MergedTranscript",
    "RawAudioCapture",
    "SessionController",
    "SpeakerTurn",
    "TranscriptMerger",
    "TranscriptionMode",
    "TranscriptionResult",
    "TranscriptionSegment",
    "TranscriptionStatus",
    "merge_transcriptions",
    "word_similarity",
]
