"""Tests for speaker diarization and transcript reconciliation."""

import asyncio
import time
from unittest.mock import Mock, patch

import numpy as np
import pytest

from consult_scribe.transcription.diarization import (
    DiarizationService,
    levenshtein_distance,
    merge_transcriptions,
    word_similarity,
)
from consult_scribe.transcription.exceptions import DiarizationError
from consult_scribe.transcription.resilience import TimeoutBudget

SAMPLE_RATE = 16000


def tone(frequency: float, seconds: float, amplitude: float = 0.3) -> np.ndarray:
    t = np.arange(int(seconds * SAMPLE_RATE)) / SAMPLE_RATE
    return (amplitude * np.sin(2 * np.pi * frequency * t)).astype(np.float32)


def silence(seconds: float) -> np.ndarray:
    return np.zeros(int(seconds * SAMPLE_RATE), dtype=np.float32)


@pytest.mark.unit
class TestWordSimilarity:
    """Test cases for the word comparison helpers."""

    def test_levenshtein_distance(self) -> None:
        """Test classic edit distances."""
        assert levenshtein_distance("kitten", "sitting") == 3
        assert levenshtein_distance("", "abc") == 3
        assert levenshtein_distance("dolor", "dolor") == 0

    def test_similarity_is_case_insensitive(self) -> None:
        """Test case differences do not lower similarity."""
        assert word_similarity("Dolor", "dolor") == 1.0

    def test_similarity_bounds(self) -> None:
        """Test empty and disjoint words hit the ends of the range."""
        assert word_similarity("", "") == 1.0
        assert word_similarity("abc", "") == 0.0
        assert word_similarity("ibuprofen", "ibuprofem") == pytest.approx(8 / 9)


@pytest.mark.unit
class TestMergeTranscriptions:
    """Test cases for merge_transcriptions."""

    def test_empty_sides(self) -> None:
        """Test an empty transcript yields the other one, whitespace normalized."""
        assert merge_transcriptions("", "  hola   doctor ") == "hola doctor"
        assert merge_transcriptions("buenas  tardes", "") == "buenas tardes"
        assert merge_transcriptions("", "") == ""

    def test_gap_is_filled_from_secondary(self) -> None:
        """Test words missing from the primary transcript are added."""
        merged = merge_transcriptions("the patient has a headache", "the patient has a bad headache")

        assert merged == "the patient has a bad headache"

    def test_primary_spelling_wins(self) -> None:
        """Test conflicting words keep the primary version."""
        merged = merge_transcriptions("paracetamol twice daily", "paracetamole twice daily")

        assert merged == "paracetamol twice daily"

    def test_primary_words_are_never_dropped(self) -> None:
        """Test words only in the primary transcript survive."""
        merged = merge_transcriptions("Hola, doctor. Me duele mucho", "hola doctor me duele")

        assert merged == "Hola, doctor. Me duele mucho"

    def test_similar_overlap_extends_run(self) -> None:
        """Test surplus secondary words follow a run of similar words."""
        assert merge_transcriptions("take ibuprofen", "take ibuprofem daily") == "take ibuprofen daily"

    def test_dissimilar_overlap_is_not_extended(self) -> None:
        """Test surplus words after disagreeing words are not trusted."""
        assert merge_transcriptions("take aspirin", "take ibuprofen daily") == "take aspirin"


@pytest.mark.unit
class TestDiarizationService:
    """Test cases for DiarizationService."""

    @pytest.fixture
    def service(self) -> DiarizationService:
        return DiarizationService(sample_rate=SAMPLE_RATE)

    def test_invalid_windows(self) -> None:
        """Test non-positive window or hop lengths are rejected."""
        with pytest.raises(ValueError, match="must be positive"):
            DiarizationService(hop_seconds=0)

    @pytest.mark.asyncio
    async def test_empty_audio(self, service: DiarizationService) -> None:
        """Test empty audio is a recoverable diarization error."""
        with pytest.raises(DiarizationError, match="empty") as exc_info:
            await service.diarize_audio(np.zeros(0, dtype=np.float32))

        assert exc_info.value.recoverable is True

    @pytest.mark.asyncio
    async def test_short_audio(self, service: DiarizationService) -> None:
        """Test audio under the minimum length is rejected."""
        with pytest.raises(DiarizationError, match="too short"):
            await service.diarize_audio(tone(200, 0.5))

    @pytest.mark.asyncio
    async def test_silence_has_no_speakers(self, service: DiarizationService) -> None:
        """Test silent audio yields no turns."""
        result = await service.diarize_audio(silence(3.0))

        assert result.segments == []
        assert result.speaker_count == 0

    @pytest.mark.asyncio
    async def test_single_voice(self, service: DiarizationService) -> None:
        """Test one steady voice is one speaker covering the recording."""
        result = await service.diarize_audio(tone(300, 6.0))

        assert result.speaker_count == 1
        assert len(result.segments) == 1
        turn = result.segments[0]
        assert turn.speaker == "Doctor"
        assert turn.start == 0.0
        assert turn.end == pytest.approx(6.0)

    @pytest.mark.asyncio
    async def test_two_voices(self, service: DiarizationService) -> None:
        """Test two distinct voices become Doctor then Patient."""
        audio = np.concatenate([tone(200, 4.0), tone(2000, 4.0)])

        result = await service.diarize_audio(audio, sample_rate=SAMPLE_RATE)

        assert result.speaker_count == 2
        assert [turn.speaker for turn in result.segments] == ["Doctor", "Patient"]
        first, second = result.segments
        assert first.start == 0.0
        assert 3.0 <= first.end <= 5.0
        assert second.start == pytest.approx(first.end, abs=0.5)
        assert second.end == pytest.approx(8.0)
        assert result.processing_time >= 0.0

    @pytest.mark.asyncio
    async def test_alternating_voices_reuse_labels(self, service: DiarizationService) -> None:
        """Test a returning voice keeps its first label."""
        audio = np.concatenate([tone(200, 3.0), tone(2000, 3.0), tone(200, 3.0)])

        result = await service.diarize_audio(audio)

        assert [turn.speaker for turn in result.segments] == ["Doctor", "Patient", "Doctor"]
        assert result.speaker_count == 2

    @pytest.mark.asyncio
    async def test_silence_splits_turns(self, service: DiarizationService) -> None:
        """Test a pause ends a turn even for the same voice."""
        audio = np.concatenate([tone(300, 3.0), silence(2.0), tone(300, 3.0)])

        result = await service.diarize_audio(audio)

        assert len(result.segments) == 2
        assert {turn.speaker for turn in result.segments} == {"Doctor"}
        assert result.segments[0].end < result.segments[1].start

    @pytest.mark.asyncio
    async def test_single_speaker_limit(self) -> None:
        """Test max_speakers of one labels everything the same."""
        service = DiarizationService(sample_rate=SAMPLE_RATE, max_speakers=1)
        audio = np.concatenate([tone(200, 4.0), tone(2000, 4.0)])

        result = await service.diarize_audio(audio)

        assert result.speaker_count == 1
        assert [turn.speaker for turn in result.segments] == ["Doctor"]

    @pytest.mark.asyncio
    async def test_timeout_becomes_diarization_error(self, service: DiarizationService) -> None:
        """Test an exhausted timeout budget surfaces as a diarization error."""
        service.timeout = 0.0
        budget = TimeoutBudget(allowed=0)

        with pytest.raises(DiarizationError, match="timed out"):
            await service.diarize_audio(tone(300, 2.0), timeout_budget=budget)

    @pytest.mark.asyncio
    async def test_slow_diarization_is_not_resubmitted(self, service: DiarizationService) -> None:
        """Test a timed-out job is reported once and not started again in the executor."""
        service.timeout = 0.05
        budget = TimeoutBudget()
        slow = Mock(side_effect=lambda audio, rate: time.sleep(0.2))

        with patch.object(service, "_diarize_sync", slow):
            with pytest.raises(DiarizationError, match="timed out"):
                await service.diarize_audio(tone(300, 2.0), timeout_budget=budget)
            await asyncio.sleep(0.3)

        assert slow.call_count == 1
        assert budget.timeouts == 1

    @pytest.mark.asyncio
    async def test_unexpected_failure_becomes_diarization_error(self, service: DiarizationService) -> None:
        """Test any error raised while diarizing is reported as a diarization error."""
        with patch.object(service, "_diarize_sync", side_effect=IndexError("window out of range")):
            with pytest.raises(DiarizationError, match="window out of range"):
                await service.diarize_audio(tone(300, 2.0))

    @pytest.mark.asyncio
    async def test_offset_moves_turns_to_session_time(self, service: DiarizationService) -> None:
        """Test turns of a tail recording are reported at their session position."""
        audio = np.concatenate([silence(2.0), tone(300, 4.0)])

        plain = await service.diarize_audio(audio)
        shifted = await service.diarize_audio(audio, offset=1800.0)

        assert len(shifted.segments) == len(plain.segments) == 1
        assert shifted.segments[0].start == pytest.approx(plain.segments[0].start + 1800.0)
        assert shifted.segments[0].end == pytest.approx(plain.segments[0].end + 1800.0)
