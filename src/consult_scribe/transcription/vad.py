"""Voice activity detection used for utterance endpointing."""

import numpy as np
import webrtcvad

from .config import (
    DEFAULT_SAMPLE_RATE,
    VAD_AGGRESSIVENESS,
    VAD_FRAME_DURATION,
    VAD_SUPPORTED_FRAME_DURATIONS,
    VAD_SUPPORTED_SAMPLE_RATES,
)
from .logging_utils import get_logger

logger = get_logger(__name__)


def float_to_pcm16(samples: np.ndarray) -> bytes:
    """Convert float samples in [-1, 1] to little-endian 16-bit PCM."""
    clipped = np.clip(samples, -1.0, 1.0)
    return (clipped * 32767).astype("<i2").tobytes()


class VoiceActivityDetector:
    """Detects when speech is present in fixed-size audio frames."""

    def __init__(
        self,
        sample_rate: int | None = None,
        frame_duration: int | None = None,
        aggressiveness: int = VAD_AGGRESSIVENESS,
    ) -> None:
        """
        Initialize voice activity detector.

        Args:
            sample_rate: Audio sample rate in Hz
            frame_duration: Frame duration in milliseconds
            aggressiveness: webrtcvad mode, 0-3

        Raises:
            ValueError: If sample_rate or frame_duration is not supported by webrtcvad
        """
        self.sample_rate = sample_rate or DEFAULT_SAMPLE_RATE
        self.frame_duration = frame_duration or VAD_FRAME_DURATION

        if self.sample_rate not in VAD_SUPPORTED_SAMPLE_RATES:
            raise ValueError(
                f"Unsupported sample rate: {self.sample_rate}. "
                f"WebRTC VAD supports {VAD_SUPPORTED_SAMPLE_RATES} Hz"
            )
        if self.frame_duration not in VAD_SUPPORTED_FRAME_DURATIONS:
            raise ValueError(
                f"Unsupported frame duration: {self.frame_duration}. "
                f"WebRTC VAD supports {VAD_SUPPORTED_FRAME_DURATIONS} ms"
            )

        self.frame_size = int(self.sample_rate * self.frame_duration / 1000)
        self.vad = webrtcvad.Vad()
        self.vad.set_mode(aggressiveness)

        self._speech_detections = 0
        self._frames_processed = 0

        logger.debug(
            f"🔊 VAD initialized: sample_rate={self.sample_rate}Hz, "
            f"frame_duration={self.frame_duration}ms, aggressiveness={aggressiveness}"
        )

    @property
    def frame_seconds(self) -> float:
        return self.frame_duration / 1000

    def is_speech(self, frame: bytes) -> bool:
        """
        Detect if a 16-bit PCM frame contains speech.

        Args:
            frame: Exactly ``frame_size`` samples of 16-bit PCM

        Returns:
            True if speech detected, False otherwise
        """
        if len(frame) != self.frame_size * 2:
            logger.trace(f"VAD frame size mismatch: {len(frame)} bytes")
            return False

        self._frames_processed += 1
        try:
            speech = self.vad.is_speech(frame, self.sample_rate)
        except Exception as e:
            logger.error(f"❌ VAD error: {e}")
            return False

        if speech:
            self._speech_detections += 1
        return speech

    def classify(self, samples: np.ndarray) -> list[bool]:
        """
        Classify consecutive whole frames of float samples.

        Trailing samples that do not fill a frame are ignored.

        Args:
            samples: Float32 samples at ``sample_rate``

        Returns:
            One speech flag per frame
        """
        flags = []
        for start in range(0, len(samples) - self.frame_size + 1, self.frame_size):
            flags.append(self.is_speech(float_to_pcm16(samples[start : start + self.frame_size])))
        return flags

    def get_stats(self) -> dict[str, float]:
        ratio = self._speech_detections / self._frames_processed if self._frames_processed else 0.0
        return {
            "frames_processed": self._frames_processed,
            "speech_detections": self._speech_detections,
            "speech_ratio": ratio,
        }
