"""Spectral subtraction denoiser used by the primary capture path."""

import numpy as np
from scipy import signal

from .config import (
    DENOISER_ADAPTATION_RATE,
    DENOISER_AGGRESSIVENESS,
    DENOISER_FFT_SIZE,
)
from .logging_utils import get_logger

logger = get_logger(__name__)


class SpectralDenoiser:
    """Stationary-noise remover based on STFT spectral subtraction.

    A noise power profile is learned from audio known to contain no speech
    (the first frames of a recording) and subtracted from every subsequent
    frame with over-subtraction and a spectral floor.
    """

    def __init__(
        self,
        sample_rate: int,
        aggressiveness: float = DENOISER_AGGRESSIVENESS,
        fft_size: int = DENOISER_FFT_SIZE,
    ) -> None:
        """Initialize the denoiser.

        Args:
            sample_rate: Audio sample rate in Hz
            aggressiveness: Noise reduction aggressiveness (0.0 to 1.0)
            fft_size: Samples per STFT frame
        """
        if sample_rate <= 0:
            raise ValueError("Sample rate must be positive")

        self.sample_rate = sample_rate
        self.aggressiveness = max(0.0, min(1.0, aggressiveness))
        self.fft_size = fft_size
        self.hop_size = fft_size // 4
        self.adaptation_rate = DENOISER_ADAPTATION_RATE

        self.alpha = 2.0 + self.aggressiveness * 2.0  # Over-subtraction factor
        self.beta = 0.01 + self.aggressiveness * 0.04  # Spectral floor

        self.noise_profile: np.ndarray | None = None
        self.noise_profile_count = 0
        self.last_noise_reduction_db = 0.0

    @property
    def has_profile(self) -> bool:
        return self.noise_profile is not None

    def _stft(self, audio: np.ndarray) -> np.ndarray:
        _, _, spectrum = signal.stft(
            audio,
            fs=self.sample_rate,
            window="hann",
            nperseg=self.fft_size,
            noverlap=self.fft_size - self.hop_size,
        )
        return spectrum

    def update_noise_profile(self, audio: np.ndarray) -> None:
        """Fold a block of noise-only audio into the noise profile.

        Args:
            audio: Audio data containing background noise only
        """
        if len(audio) < self.fft_size:
            return

        power = np.mean(np.abs(self._stft(audio)) ** 2, axis=1)

        if self.noise_profile is None:
            self.noise_profile = power
            self.noise_profile_count = 1
        else:
            self.noise_profile = (
                1 - self.adaptation_rate
            ) * self.noise_profile + self.adaptation_rate * power
            self.noise_profile_count += 1

        logger.trace(f"Noise profile updated ({self.noise_profile_count} blocks)")

    def reduce_noise(self, audio: np.ndarray) -> np.ndarray:
        """Apply spectral subtraction to a block of audio.

        Args:
            audio: Input audio data as float32 array

        Returns:
            Noise-reduced audio of the same length and dtype
        """
        if self.noise_profile is None or len(audio) < self.fft_size:
            return audio

        spectrum = self._stft(audio)
        power = np.abs(spectrum) ** 2
        cleaned = power - self.alpha * self.noise_profile[:, np.newaxis]
        cleaned = np.maximum(cleaned, self.beta * power)
        gain = np.sqrt(cleaned / np.maximum(power, 1e-12))

        _, restored = signal.istft(
            spectrum * gain,
            fs=self.sample_rate,
            window="hann",
            nperseg=self.fft_size,
            noverlap=self.fft_size - self.hop_size,
        )
        restored = restored[: len(audio)]
        if len(restored) < len(audio):
            restored = np.pad(restored, (0, len(audio) - len(restored)))

        self._measure_reduction(audio, restored)
        return restored.astype(np.float32)

    def _measure_reduction(self, original: np.ndarray, processed: np.ndarray) -> None:
        original_power = float(np.mean(original.astype(np.float64) ** 2))
        processed_power = float(np.mean(processed.astype(np.float64) ** 2))
        if original_power > 0 and processed_power > 0:
            self.last_noise_reduction_db = 10 * np.log10(original_power / processed_power)
        else:
            self.last_noise_reduction_db = 0.0

    def reset(self) -> None:
        """Forget the learned noise profile."""
        self.noise_profile = None
        self.noise_profile_count = 0
        self.last_noise_reduction_db = 0.0
