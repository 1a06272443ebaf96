"""Microphone capture sources for the transcription pipeline."""

import asyncio
import queue
import time
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Callable
from pathlib import Path
from typing import Any

import numpy as np
import pyaudio

from .config import (
    DEFAULT_CAPTURE_SAMPLE_RATE,
    DEFAULT_FRAME_SIZE,
    DENOISER_PROFILE_FRAMES,
    MAX_SESSION_AUDIO_SECONDS,
)
from .denoiser import SpectralDenoiser
from .exceptions import (
    AudioCaptureError,
    DenoiserUnavailableError,
    MicrophonePermissionError,
    TranscriptionPipelineError,
)
from .logging_utils import get_logger
from .models import AudioFrame, PermissionState

logger = get_logger(__name__)

FrameListener = Callable[[AudioFrame], None]

AUDIO_LEVEL_LOG_INTERVAL = 5.0  # seconds between periodic level logs


def calculate_audio_level(samples: np.ndarray) -> float:
    """
    Calculate the audio level (RMS) of float samples.

    Args:
        samples: Float32 samples in [-1, 1]

    Returns:
        Audio level as a float between 0.0 and 1.0
    """
    if len(samples) == 0:
        return 0.0
    rms = float(np.sqrt(np.mean(np.square(samples, dtype=np.float64))))
    return min(rms, 1.0)


class AudioCaptureSource(ABC):
    """Microphone input driven by the PortAudio stream callback.

    Frames are copied on the PortAudio thread, queued, and delivered to frame
    listeners on the asyncio loop via ``call_soon_threadsafe``. The complete
    session waveform is retained (up to a cap) for diarization.
    """

    name = "capture"

    def __init__(
        self,
        sample_rate: int = DEFAULT_CAPTURE_SAMPLE_RATE,
        frame_size: int = DEFAULT_FRAME_SIZE,
        max_session_seconds: float = MAX_SESSION_AUDIO_SECONDS,
    ) -> None:
        """
        Initialize the capture source.

        Args:
            sample_rate: Capture sample rate in Hz
            frame_size: Samples delivered per stream callback
            max_session_seconds: Cap on retained session audio
        """
        if sample_rate <= 0:
            raise ValueError("Sample rate must be positive")
        if frame_size <= 0:
            raise ValueError("Frame size must be positive")

        self.sample_rate = sample_rate
        self.frame_size = frame_size
        self.max_session_samples = int(max_session_seconds * sample_rate)

        self.error: TranscriptionPipelineError | None = None
        self.permission_state = PermissionState.PROMPT

        self._capturing = False
        self._pyaudio: Any = None
        self._stream: Any = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._pending: queue.SimpleQueue[tuple[np.ndarray, float]] = queue.SimpleQueue()
        self._listeners: list[FrameListener] = []

        self._session_audio: deque[np.ndarray] = deque()
        self._session_samples = 0
        self._evicted_samples = 0

        self._audio_level = 0.0
        self._start_time: float | None = None
        self._stop_time: float | None = None

        self._frames_received = 0
        self._last_audio_level_log = 0.0

    @property
    def is_recording(self) -> bool:
        return self._capturing

    @property
    def audio_level(self) -> float:
        return self._audio_level

    @property
    def recording_time(self) -> float:
        if self._start_time is None:
            return 0.0
        end = self._stop_time if self._stop_time is not None else time.monotonic()
        return end - self._start_time

    def add_frame_listener(self, listener: FrameListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_frame_listener(self, listener: FrameListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def start(self) -> bool:
        """
        Open the microphone and begin emitting frames.

        Returns:
            True if capture started, False if it failed (see ``error``)
        """
        if self._capturing:
            logger.warning(f"{self.name} capture already running")
            return False

        self.error = None
        self.clear_session_audio()
        self._audio_level = 0.0
        self._frames_received = 0

        try:
            self._initialize()
            self._open_stream()
        except TranscriptionPipelineError as e:
            self.error = e
            self._release_stream()
            return False

        try:
            self._loop = asyncio.get_running_loop()
        except RuntimeError:
            self._loop = None

        self._capturing = True
        self.permission_state = PermissionState.GRANTED
        self._start_time = time.monotonic()
        self._stop_time = None
        self._last_audio_level_log = time.time()
        logger.debug(
            f"✅ {self.name} capture started "
            f"(sample_rate: {self.sample_rate}, frame_size: {self.frame_size})"
        )
        return True

    def _open_stream(self) -> None:
        self._pyaudio = pyaudio.PyAudio()
        self._log_audio_devices()

        try:
            device_info = self._pyaudio.get_default_input_device_info()
            logger.debug(f"🎤 Default input device found: {device_info.get('name', 'Unknown')}")
        except OSError as e:
            logger.error("❌ No default input device found")
            self.permission_state = PermissionState.DENIED
            raise MicrophonePermissionError("No microphone found") from e

        try:
            self._stream = self._pyaudio.open(
                format=pyaudio.paFloat32,
                channels=1,
                rate=self.sample_rate,
                input=True,
                frames_per_buffer=self.frame_size,
                stream_callback=self._on_stream_data,
            )
            self._stream.start_stream()
        except OSError as e:
            if "Permission denied" in str(e):
                logger.error("❌ Microphone permission denied")
                self.permission_state = PermissionState.DENIED
                raise MicrophonePermissionError("Microphone permission denied") from e
            logger.error(f"❌ Failed to open audio stream: {e}")
            raise AudioCaptureError(f"Failed to open audio stream: {e}") from e

    def _release_stream(self) -> None:
        if self._stream is not None:
            self._stream.stop_stream()
            self._stream.close()
            self._stream = None
        if self._pyaudio is not None:
            self._pyaudio.terminate()
            self._pyaudio = None

    def _on_stream_data(
        self, in_data: bytes, frame_count: int, time_info: Any, status_flags: int
    ) -> tuple[None, int]:
        # Runs on the PortAudio thread
        samples = np.frombuffer(in_data, dtype=np.float32).copy()
        self._pending.put((samples, time.time()))
        loop = self._loop
        if loop is not None and not loop.is_closed():
            loop.call_soon_threadsafe(self._drain_pending)
        return None, pyaudio.paContinue

    def _drain_pending(self) -> None:
        while self._capturing:
            try:
                samples, timestamp = self._pending.get_nowait()
            except queue.Empty:
                return
            self._handle_samples(samples, timestamp)

    def _handle_samples(self, samples: np.ndarray, timestamp: float) -> None:
        samples = self._process_samples(samples)
        frame = AudioFrame(samples=samples, sample_rate=self.sample_rate, timestamp=timestamp)

        self._frames_received += 1
        self._audio_level = calculate_audio_level(samples)
        self._append_session_audio(samples)

        if timestamp - self._last_audio_level_log >= AUDIO_LEVEL_LOG_INTERVAL:
            logger.trace(
                f"🔊 Frames: {self._frames_received}, level: {self._audio_level:.3f}"
            )
            self._last_audio_level_log = timestamp

        for listener in list(self._listeners):
            try:
                listener(frame)
            except Exception as e:
                logger.error(f"❌ Error in frame listener: {e}")

    def _append_session_audio(self, samples: np.ndarray) -> None:
        self._session_audio.append(samples)
        self._session_samples += len(samples)
        while self._session_samples > self.max_session_samples and self._session_audio:
            oldest = self._session_audio.popleft()
            self._session_samples -= len(oldest)
            self._evicted_samples += len(oldest)

    def stop(self) -> bool:
        """
        Stop capture, delivering frames still queued from the stream.

        Returns:
            True if capture was running, False otherwise
        """
        if not self._capturing:
            return False

        # Stopping the stream waits for the callback thread to finish
        self._release_stream()
        self._drain_pending()
        self._capturing = False
        self._stop_time = time.monotonic()
        self._loop = None
        logger.debug(f"{self.name} capture stopped after {self.recording_time:.1f}s")
        return True

    def get_complete_audio(self) -> np.ndarray:
        """Return the retained session waveform at the capture sample rate."""
        if not self._session_audio:
            return np.zeros(0, dtype=np.float32)
        return np.concatenate(list(self._session_audio)).astype(np.float32, copy=False)

    @property
    def session_audio_offset(self) -> float:
        """Seconds of session audio evicted before the retained waveform starts."""
        return self._evicted_samples / self.sample_rate

    def clear_session_audio(self) -> None:
        self._session_audio.clear()
        self._session_samples = 0
        self._evicted_samples = 0

    def _log_audio_devices(self) -> None:
        """Log available audio input devices for debugging."""
        try:
            device_count = self._pyaudio.get_device_count()
            logger.trace(f"🎤 Found {device_count} audio devices:")

            input_devices = 0
            for i in range(device_count):
                device_info = self._pyaudio.get_device_info_by_index(i)
                if device_info.get("maxInputChannels", 0) > 0:
                    input_devices += 1
                    logger.trace(
                        f"  [{i}] {device_info.get('name', f'Device {i}')} "
                        f"(in: {device_info.get('maxInputChannels')}, "
                        f"rate: {device_info.get('defaultSampleRate')})"
                    )

            if input_devices:
                logger.debug(f"✅ Found {input_devices} input devices available")
            else:
                logger.warning("⚠️ No input devices found")
        except Exception as e:
            logger.error(f"❌ Error listing audio devices: {e}")

    def get_debug_stats(self) -> dict[str, Any]:
        """
        Get debug statistics about audio capture.

        Returns:
            Dictionary with debug information
        """
        return {
            "source": self.name,
            "capturing": self._capturing,
            "sample_rate": self.sample_rate,
            "frame_size": self.frame_size,
            "frames_received": self._frames_received,
            "session_seconds": self._session_samples / self.sample_rate,
            "evicted_seconds": self._evicted_samples / self.sample_rate,
            "permission_state": self.permission_state.value,
            "stream_active": self._stream.is_active() if self._stream else False,
        }

    @abstractmethod
    def _initialize(self) -> None:
        """Prepare variant-specific processing before the stream opens."""

    @abstractmethod
    def _process_samples(self, samples: np.ndarray) -> np.ndarray:
        """Transform captured samples before they are emitted."""


class RawAudioCapture(AudioCaptureSource):
    """Capture source that emits samples unchanged."""

    name = "raw"

    def _initialize(self) -> None:
        pass

    def _process_samples(self, samples: np.ndarray) -> np.ndarray:
        return samples


class DenoisingAudioCapture(AudioCaptureSource):
    """Capture source that removes stationary background noise.

    The first frames of each recording are treated as room noise and used to
    learn the noise profile; they are emitted unprocessed.
    """

    name = "denoising"

    def __init__(
        self,
        sample_rate: int = DEFAULT_CAPTURE_SAMPLE_RATE,
        frame_size: int = DEFAULT_FRAME_SIZE,
        max_session_seconds: float = MAX_SESSION_AUDIO_SECONDS,
        denoiser: SpectralDenoiser | None = None,
        profile_frames: int = DENOISER_PROFILE_FRAMES,
        noise_profile_path: Path | None = None,
    ) -> None:
        super().__init__(sample_rate, frame_size, max_session_seconds)
        self.denoiser = denoiser
        self.profile_frames = profile_frames
        self.noise_profile_path = noise_profile_path
        self._profiled_frames = 0

    def _initialize(self) -> None:
        if self.denoiser is None:
            self.denoiser = SpectralDenoiser(self.sample_rate)
        else:
            self.denoiser.reset()
        self._profiled_frames = 0

        if self.frame_size < self.denoiser.fft_size:
            raise DenoiserUnavailableError(
                f"Frame size {self.frame_size} is smaller than denoiser FFT size "
                f"{self.denoiser.fft_size}"
            )

        if self.noise_profile_path is not None:
            try:
                self.denoiser.noise_profile = np.load(self.noise_profile_path)
            except (OSError, ValueError) as e:
                raise DenoiserUnavailableError(
                    f"Failed to load noise profile {self.noise_profile_path}: {e}"
                ) from e
            self._profiled_frames = self.profile_frames
            logger.debug(f"Loaded noise profile from {self.noise_profile_path}")

    def _process_samples(self, samples: np.ndarray) -> np.ndarray:
        if self._profiled_frames < self.profile_frames:
            self.denoiser.update_noise_profile(samples)
            self._profiled_frames += 1
            return samples

        try:
            return self.denoiser.reduce_noise(samples)
        except Exception as e:
            logger.warning(f"⚠️ Noise reduction failed, using unfiltered audio: {e}")
            return samples

    def get_debug_stats(self) -> dict[str, Any]:
        stats = super().get_debug_stats()
        stats["noise_reduction_db"] = self.denoiser.last_noise_reduction_db if self.denoiser else 0.0
        stats["noise_profile_ready"] = bool(self.denoiser and self.denoiser.has_profile)
        return stats
