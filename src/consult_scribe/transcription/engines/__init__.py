"""Transcription engines."""

from .base import TranscriptionEngine
from .factory import build_engine_factories, create_engine, get_registered_engines, resolve_engine_id
from .local_whisper import LocalWhisperEngine
from .native_speech import NativeSpeechEngine
from .remote_whisper import RemoteWhisperEngine

__all__ = [
    "LocalWhisperEngine",
    "NativeSpeechEngine",
    "RemoteWhisperEngine",
    "TranscriptionEngine",
    "build_engine_factories",
    "create_engine",
    "get_registered_engines",
    "resolve_engine_id",
]
