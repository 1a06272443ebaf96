"""Continuous speech recognizers feeding the native speech engine."""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from functools import partial
from typing import Any

import numpy as np

from .cache_utils import get_recognizer_cache_dir
from .config import (
    DEFAULT_LANGUAGE,
    DEFAULT_SAMPLE_RATE,
    LOCAL_WHISPER_COMPUTE_TYPE,
    LOCAL_WHISPER_DEVICE,
    NATIVE_END_OF_UTTERANCE_SILENCE,
    NATIVE_INTERIM_INTERVAL,
    NATIVE_MAX_UTTERANCE_SECONDS,
    NATIVE_RECOGNIZER_MODEL,
)
from .exceptions import EngineInitError, RecognizerError
from .logging_utils import get_logger
from .vad import VoiceActivityDetector

logger = get_logger(__name__)

# Import faster_whisper at module level for proper mocking in tests
try:
    import faster_whisper  # type: ignore[import-untyped]
except ImportError:
    faster_whisper = None


@dataclass
class RecognitionEvent:
    """A hypothesis from a streaming recognizer.

    Times are seconds since the recognizer stream opened. ``confidence`` is
    None when the recognizer has no meaningful score.
    """

    text: str
    is_final: bool
    start_time: float
    end_time: float
    confidence: float | None = None


class StreamingRecognizer(ABC):
    """Continuous recognizer that turns a live audio stream into hypotheses."""

    @abstractmethod
    async def open(self, language: str) -> None:
        """Prepare the recognizer; raise EngineInitError if it cannot run."""

    @abstractmethod
    async def feed(self, samples: np.ndarray, sample_rate: int) -> list[RecognitionEvent]:
        """Consume audio and return any hypotheses it completed.

        Raises:
            RecognizerError: With a platform error code on failure
        """

    @abstractmethod
    async def finish(self) -> list[RecognitionEvent]:
        """End the current stream, returning the final hypotheses."""

    async def close(self) -> None:
        pass


class VadWhisperRecognizer(StreamingRecognizer):
    """Utterance-based recognizer: webrtcvad endpointing plus a small Whisper model.

    Speech frames are gathered into an utterance. While the utterance grows,
    an interim hypothesis is decoded every ``interim_interval`` seconds; when
    ``end_silence`` seconds of non-speech follow, the utterance is decoded
    once more and reported as final.
    """

    def __init__(
        self,
        model_size: str = NATIVE_RECOGNIZER_MODEL,
        device: str = LOCAL_WHISPER_DEVICE,
        compute_type: str = LOCAL_WHISPER_COMPUTE_TYPE,
        sample_rate: int = DEFAULT_SAMPLE_RATE,
        vad: VoiceActivityDetector | None = None,
        end_silence: float = NATIVE_END_OF_UTTERANCE_SILENCE,
        interim_interval: float = NATIVE_INTERIM_INTERVAL,
        max_utterance_seconds: float = NATIVE_MAX_UTTERANCE_SECONDS,
    ) -> None:
        self.model_size = model_size
        self.device = device
        self.compute_type = compute_type
        self.sample_rate = sample_rate
        self.end_silence = end_silence
        self.interim_interval = interim_interval
        self.max_utterance_seconds = max_utterance_seconds
        self.language = DEFAULT_LANGUAGE

        self._vad = vad
        self._model: Any = None
        self._reset_stream()

    def _reset_stream(self) -> None:
        self._pending = np.zeros(0, dtype=np.float32)
        self._utterance: list[np.ndarray] = []
        self._utterance_start = 0.0
        self._utterance_seconds = 0.0
        self._last_interim_at = 0.0
        self._silence_run = 0.0
        self._stream_time = 0.0

    async def open(self, language: str) -> None:
        self.language = language
        self._reset_stream()
        if self._vad is None:
            self._vad = VoiceActivityDetector(sample_rate=self.sample_rate)
        if self._model is not None:
            return
        if faster_whisper is None:
            raise EngineInitError("faster-whisper library not available")

        loop = asyncio.get_running_loop()
        try:
            self._model = await loop.run_in_executor(
                None,
                partial(
                    faster_whisper.WhisperModel,
                    self.model_size,
                    device=self.device,
                    compute_type=self.compute_type,
                    download_root=str(get_recognizer_cache_dir()),
                ),
            )
        except Exception as e:
            raise EngineInitError(f"Failed to load recognizer model '{self.model_size}': {e}") from e
        logger.debug(f"Streaming recognizer ready ({self.model_size})")

    async def feed(self, samples: np.ndarray, sample_rate: int) -> list[RecognitionEvent]:
        if self._model is None:
            raise RecognizerError("service-not-allowed", "Recognizer is not open")
        if sample_rate != self.sample_rate:
            raise RecognizerError("audio-capture", f"Expected {self.sample_rate}Hz audio, got {sample_rate}Hz")

        audio = np.concatenate([self._pending, np.asarray(samples, dtype=np.float32)])
        frame_size = self._vad.frame_size
        frame_seconds = self._vad.frame_seconds
        usable = len(audio) - len(audio) % frame_size
        self._pending = audio[usable:]

        events = []
        flags = self._vad.classify(audio[:usable])
        for index, speech in enumerate(flags):
            frame = audio[index * frame_size : (index + 1) * frame_size]
            frame_start = self._stream_time
            self._stream_time += frame_seconds

            if speech:
                if not self._utterance:
                    self._utterance_start = frame_start
                    self._last_interim_at = 0.0
                self._utterance.append(frame)
                self._utterance_seconds += frame_seconds
                self._silence_run = 0.0
            elif self._utterance:
                self._utterance.append(frame)
                self._utterance_seconds += frame_seconds
                self._silence_run += frame_seconds
                if self._silence_run >= self.end_silence:
                    events.append(await self._finalize_utterance())
                    continue

            if self._utterance and self._utterance_seconds >= self.max_utterance_seconds:
                events.append(await self._finalize_utterance())
            elif speech and self._utterance_seconds - self._last_interim_at >= self.interim_interval:
                self._last_interim_at = self._utterance_seconds
                text = await self._decode(np.concatenate(self._utterance))
                if text:
                    events.append(
                        RecognitionEvent(
                            text=text,
                            is_final=False,
                            start_time=self._utterance_start,
                            end_time=self._stream_time,
                        )
                    )

        return events

    async def finish(self) -> list[RecognitionEvent]:
        events = []
        if self._utterance:
            events.append(await self._finalize_utterance())
        self._reset_stream()
        return events

    async def _finalize_utterance(self) -> RecognitionEvent:
        audio = np.concatenate(self._utterance)
        start = self._utterance_start
        end = start + self._utterance_seconds - self._silence_run
        self._utterance = []
        self._utterance_seconds = 0.0
        self._silence_run = 0.0
        text = await self._decode(audio)
        return RecognitionEvent(text=text, is_final=True, start_time=start, end_time=max(start, end))

    async def _decode(self, audio: np.ndarray) -> str:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, self._run_model, audio)
        except Exception as e:
            raise RecognizerError("aborted", f"Decoding failed: {e}") from e

    def _run_model(self, audio: np.ndarray) -> str:
        segments, _ = self._model.transcribe(audio, language=self.language, beam_size=1)
        return " ".join(segment.text.strip() for segment in segments).strip()

    async def close(self) -> None:
        self._model = None
        self._reset_stream()
