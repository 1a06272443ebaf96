"""Tests for AudioChunkAccumulator and nearest-sample resampling."""

from unittest.mock import Mock

import numpy as np
import pytest

from consult_scribe.transcription.accumulator import AudioChunkAccumulator, resample_nearest
from consult_scribe.transcription.models import AudioFrame


def make_frame(samples: int, sample_rate: int = 48000, value: float = 0.1) -> AudioFrame:
    return AudioFrame(samples=np.full(samples, value, dtype=np.float32), sample_rate=sample_rate, timestamp=0.0)


@pytest.mark.unit
class TestResampleNearest:
    """Test cases for nearest-sample resampling."""

    def test_downsample_picks_floor_indices(self) -> None:
        """Test 48 kHz to 16 kHz keeps every third sample."""
        samples = np.arange(12, dtype=np.float32)

        result = resample_nearest(samples, 48000, 16000)

        np.testing.assert_array_equal(result, np.array([0, 3, 6, 9], dtype=np.float32))

    def test_same_rate_returns_input_values(self) -> None:
        """Test resampling to the same rate is a no-op."""
        samples = np.linspace(-1, 1, 10, dtype=np.float32)

        np.testing.assert_array_equal(resample_nearest(samples, 16000, 16000), samples)

    def test_upsample_repeats_samples(self) -> None:
        """Test 8 kHz to 16 kHz duplicates each sample."""
        samples = np.array([1, 2, 3], dtype=np.float32)

        result = resample_nearest(samples, 8000, 16000)

        np.testing.assert_array_equal(result, np.array([1, 1, 2, 2, 3, 3], dtype=np.float32))

    def test_empty_input(self) -> None:
        """Test empty input yields empty output."""
        assert len(resample_nearest(np.zeros(0, dtype=np.float32), 48000, 16000)) == 0


@pytest.mark.unit
class TestAudioChunkAccumulator:
    """Test cases for AudioChunkAccumulator."""

    def test_invalid_parameters(self) -> None:
        """Test invalid rates and durations are rejected."""
        with pytest.raises(ValueError, match="Sample rate must be positive"):
            AudioChunkAccumulator("s", source_sample_rate=0)
        with pytest.raises(ValueError, match="Minimum chunk duration must be positive"):
            AudioChunkAccumulator("s", source_sample_rate=48000, min_chunk_seconds=0)

    def test_buffers_until_minimum_duration(self) -> None:
        """Test no chunk is emitted before two seconds are buffered."""
        accumulator = AudioChunkAccumulator("session-1", source_sample_rate=48000)

        assert accumulator.process_chunk(make_frame(48000)) is None
        assert accumulator.buffered_seconds == pytest.approx(1.0)

        chunk = accumulator.process_chunk(make_frame(48000))

        assert chunk is not None
        assert chunk.duration == pytest.approx(2.0)
        assert chunk.sample_rate == 16000
        assert chunk.session_id == "session-1"
        assert chunk.is_final is False
        assert accumulator.buffered_seconds == 0.0

    def test_chunk_numbers_and_offsets_increase(self) -> None:
        """Test consecutive chunks are numbered and offset by their durations."""
        accumulator = AudioChunkAccumulator("session-1", source_sample_rate=16000)

        first = accumulator.process_chunk(make_frame(32000, sample_rate=16000))
        second = accumulator.process_chunk(make_frame(40000, sample_rate=16000))

        assert first.chunk_number == 0
        assert first.offset == 0.0
        assert second.chunk_number == 1
        assert second.offset == pytest.approx(2.0)
        assert second.duration == pytest.approx(2.5)
        assert accumulator.chunks_emitted == 2

    def test_flush_emits_final_partial_chunk(self) -> None:
        """Test flush emits the remaining audio marked as final."""
        accumulator = AudioChunkAccumulator("session-1", source_sample_rate=48000)
        accumulator.process_chunk(make_frame(24000))

        chunk = accumulator.flush()

        assert chunk.is_final is True
        assert chunk.duration == pytest.approx(0.5)
        assert accumulator.flush() is None

    def test_on_chunk_callback_and_denoised_metadata(self) -> None:
        """Test emitted chunks reach the callback with the denoised flag."""
        callback = Mock()
        accumulator = AudioChunkAccumulator("session-1", source_sample_rate=16000, on_chunk=callback)

        accumulator.process_chunk(make_frame(32000, sample_rate=16000), {"denoised": True})

        callback.assert_called_once()
        assert callback.call_args[0][0].denoised is True

    def test_emitted_samples_are_read_only(self) -> None:
        """Test chunk audio cannot be modified by consumers."""
        accumulator = AudioChunkAccumulator("session-1", source_sample_rate=16000)
        chunk = accumulator.process_chunk(make_frame(32000, sample_rate=16000))

        with pytest.raises(ValueError):
            chunk.samples[0] = 1.0

    def test_reset_restarts_numbering(self) -> None:
        """Test reset drops buffered audio and switches session."""
        accumulator = AudioChunkAccumulator("session-1", source_sample_rate=16000)
        accumulator.process_chunk(make_frame(40000, sample_rate=16000))
        accumulator.process_chunk(make_frame(1000, sample_rate=16000))

        accumulator.reset("session-2")
        chunk = accumulator.process_chunk(make_frame(32000, sample_rate=16000))

        assert chunk.chunk_number == 0
        assert chunk.offset == 0.0
        assert chunk.session_id == "session-2"
