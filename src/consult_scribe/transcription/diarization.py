"""Speaker diarization over the full-session waveform, plus transcript reconciliation."""

import asyncio
import time
from difflib import SequenceMatcher

import numpy as np
from scipy import signal

from .config import (
    DEFAULT_CAPTURE_SAMPLE_RATE,
    DIARIZATION_BANDS,
    DIARIZATION_CHANGE_THRESHOLD,
    DIARIZATION_FFT_SIZE,
    DIARIZATION_HOP_SECONDS,
    DIARIZATION_MAX_FREQUENCY,
    DIARIZATION_MAX_SPEAKERS,
    DIARIZATION_MIN_AUDIO_SECONDS,
    DIARIZATION_MIN_EMBEDDING_DISTANCE,
    DIARIZATION_MIN_FREQUENCY,
    DIARIZATION_MIN_SEGMENT_SECONDS,
    DIARIZATION_SILENCE_RMS,
    DIARIZATION_SPEAKER_LABELS,
    DIARIZATION_TIMEOUT,
    DIARIZATION_WINDOW_SECONDS,
    MERGE_WORD_SIMILARITY_THRESHOLD,
)
from .exceptions import DiarizationError
from .logging_utils import get_logger
from .models import DiarizationResult, SpeakerTurn
from .resilience import TimeoutBudget

logger = get_logger(__name__)


def levenshtein_distance(a: str, b: str) -> int:
    """Edit distance between two strings."""
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        current = [i]
        for j, char_b in enumerate(b, start=1):
            current.append(
                min(
                    previous[j] + 1,
                    current[j - 1] + 1,
                    previous[j - 1] + (char_a != char_b),
                )
            )
        previous = current
    return previous[-1]


def word_similarity(a: str, b: str) -> float:
    """Similarity in [0, 1] from case-insensitive edit distance."""
    a, b = a.lower(), b.lower()
    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    return 1.0 - levenshtein_distance(a, b) / longest


def _normalize_word(word: str) -> str:
    return word.lower().strip(".,;:!?¿¡\"'()")


def merge_transcriptions(
    primary: str,
    secondary: str,
    similarity_threshold: float = MERGE_WORD_SIMILARITY_THRESHOLD,
) -> str:
    """
    Reconcile two transcripts of the same audio, word by word.

    Every word of ``primary`` is kept. Words of ``secondary`` are only added
    where ``primary`` has a gap: a run of words with no counterpart in
    ``primary``. Within differing runs, words whose similarity reaches
    ``similarity_threshold`` count as the same word and the primary spelling
    wins.

    Args:
        primary: Preferred transcript (normally the engine transcript)
        secondary: Supplementary transcript (normally the live transcript)
        similarity_threshold: Minimum similarity for two words to match

    Returns:
        The merged transcript with single spaces between words
    """
    primary_words = primary.split()
    secondary_words = secondary.split()
    if not secondary_words:
        return " ".join(primary_words)
    if not primary_words:
        return " ".join(secondary_words)

    matcher = SequenceMatcher(
        None,
        [_normalize_word(w) for w in primary_words],
        [_normalize_word(w) for w in secondary_words],
        autojunk=False,
    )
    merged: list[str] = []
    for tag, i1, i2, j1, j2 in matcher.get_opcodes():
        if tag in ("equal", "delete"):
            merged.extend(primary_words[i1:i2])
        elif tag == "insert":
            merged.extend(secondary_words[j1:j2])
        else:
            merged.extend(
                _merge_replaced_run(primary_words[i1:i2], secondary_words[j1:j2], similarity_threshold)
            )
    return " ".join(merged)


def _merge_replaced_run(primary: list[str], secondary: list[str], threshold: float) -> list[str]:
    # Surplus secondary words are only a gap when the overlapping words agree
    if len(secondary) <= len(primary):
        return list(primary)
    overlap = zip(primary, secondary[: len(primary)])
    if all(word_similarity(p, s) >= threshold for p, s in overlap):
        return list(primary) + secondary[len(primary) :]
    return list(primary)


def _cosine_distance(a: np.ndarray, b: np.ndarray) -> float:
    norm_a = float(np.linalg.norm(a))
    norm_b = float(np.linalg.norm(b))
    if norm_a < 1e-9 or norm_b < 1e-9:
        return 0.0
    return 1.0 - float(np.dot(a, b) / (norm_a * norm_b))


class DiarizationService:
    """Assigns speaker labels to time ranges of a recording.

    The waveform is cut into overlapping windows; each voiced window gets a
    log band-energy embedding. A new turn starts when the cosine distance
    between consecutive voiced windows exceeds ``change_threshold`` (and
    they are at least ``min_embedding_distance`` apart) or when silence
    intervenes. Turns shorter than
    ``min_segment_seconds`` merge into a neighbour, and the remaining turns
    are clustered into at most ``max_speakers`` speakers.
    """

    def __init__(
        self,
        sample_rate: int = DEFAULT_CAPTURE_SAMPLE_RATE,
        window_seconds: float = DIARIZATION_WINDOW_SECONDS,
        hop_seconds: float = DIARIZATION_HOP_SECONDS,
        change_threshold: float = DIARIZATION_CHANGE_THRESHOLD,
        min_embedding_distance: float = DIARIZATION_MIN_EMBEDDING_DISTANCE,
        min_segment_seconds: float = DIARIZATION_MIN_SEGMENT_SECONDS,
        min_audio_seconds: float = DIARIZATION_MIN_AUDIO_SECONDS,
        silence_rms: float = DIARIZATION_SILENCE_RMS,
        max_speakers: int = DIARIZATION_MAX_SPEAKERS,
        speaker_labels: tuple[str, ...] = DIARIZATION_SPEAKER_LABELS,
        timeout: float = DIARIZATION_TIMEOUT,
    ) -> None:
        if hop_seconds <= 0 or window_seconds <= 0:
            raise ValueError("Window and hop durations must be positive")

        self.sample_rate = sample_rate
        self.window_seconds = window_seconds
        self.hop_seconds = hop_seconds
        self.change_threshold = change_threshold
        self.min_embedding_distance = min_embedding_distance
        self.min_segment_seconds = min_segment_seconds
        self.min_audio_seconds = min_audio_seconds
        self.silence_rms = silence_rms
        self.max_speakers = max_speakers
        self.speaker_labels = speaker_labels
        self.timeout = timeout

    async def diarize_audio(
        self,
        full_audio: np.ndarray,
        sample_rate: int | None = None,
        timeout_budget: TimeoutBudget | None = None,
        offset: float = 0.0,
    ) -> DiarizationResult:
        """
        Diarize a complete recording in an executor.

        The executor job is never resubmitted after a timeout; the timeout is
        charged to the budget and reported as a DiarizationError.

        Args:
            full_audio: Mono float samples of the whole session
            sample_rate: Rate of ``full_audio`` (defaults to the service rate)
            timeout_budget: Session timeout budget shared with other calls
            offset: Session time in seconds of the first sample of ``full_audio``,
                non-zero when the start of a long recording was evicted

        Returns:
            Speaker turns ordered by session time

        Raises:
            DiarizationError: If the audio is empty, too short, or diarization fails
        """
        audio = np.asarray(full_audio, dtype=np.float32).ravel()
        rate = sample_rate or self.sample_rate

        if audio.size == 0:
            raise DiarizationError("Cannot diarize empty audio")
        duration = audio.size / rate
        if duration < self.min_audio_seconds:
            raise DiarizationError(
                f"Audio too short for diarization ({duration:.2f}s < {self.min_audio_seconds:.2f}s)"
            )

        loop = asyncio.get_running_loop()
        started = time.time()
        try:
            result = await asyncio.wait_for(
                loop.run_in_executor(None, self._diarize_sync, audio, rate), timeout=self.timeout
            )
        except asyncio.TimeoutError as e:
            error = (timeout_budget or TimeoutBudget()).record("Diarization", self.timeout)
            logger.error(f"❌ {error}")
            raise DiarizationError(str(error)) from e
        except Exception as e:
            raise DiarizationError(f"Diarization failed: {e}") from e

        if offset:
            for turn in result.segments:
                turn.start = round(turn.start + offset, 3)
                turn.end = round(turn.end + offset, 3)
        result.processing_time = time.time() - started
        logger.info(
            f"🗣️ Diarization found {result.speaker_count} speakers in "
            f"{len(result.segments)} turns ({result.processing_time:.2f}s)"
        )
        return result

    def _diarize_sync(self, audio: np.ndarray, sample_rate: int) -> DiarizationResult:
        duration = audio.size / sample_rate
        starts, embeddings, voiced = self._window_embeddings(audio, sample_rate)
        if not voiced.any():
            logger.debug("No voiced windows found")
            return DiarizationResult(segments=[], speaker_count=0)

        turns = self._detect_turns(starts, embeddings, voiced, duration)
        turns = self._merge_short_turns(turns)

        centroids = np.array([embeddings[indices].mean(axis=0) for _, _, indices in turns])
        labels = self._cluster(centroids)

        names = self._label_names(labels)
        segments: list[SpeakerTurn] = []
        for (start, end, _), label in zip(turns, labels):
            speaker = names[label]
            if segments and segments[-1].speaker == speaker and abs(segments[-1].end - start) < 1e-6:
                segments[-1].end = end
            else:
                segments.append(SpeakerTurn(start=round(start, 3), end=round(end, 3), speaker=speaker))

        return DiarizationResult(segments=segments, speaker_count=len(set(labels)))

    def _window_embeddings(
        self, audio: np.ndarray, sample_rate: int
    ) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        window = max(1, int(self.window_seconds * sample_rate))
        hop = max(1, int(self.hop_seconds * sample_rate))
        nperseg = min(DIARIZATION_FFT_SIZE, window)

        max_freq = min(DIARIZATION_MAX_FREQUENCY, sample_rate / 2)
        edges = np.geomspace(DIARIZATION_MIN_FREQUENCY, max_freq, DIARIZATION_BANDS + 1)

        starts, features, voiced = [], [], []
        last_start = max(0, audio.size - window // 2)
        for start in range(0, last_start + 1, hop):
            frame = audio[start : start + window]
            if frame.size < min(window, audio.size) // 2:
                break
            rms = float(np.sqrt(np.mean(np.square(frame, dtype=np.float64))))

            freqs, _, spectrum = signal.stft(frame, fs=sample_rate, nperseg=min(nperseg, frame.size))
            power = np.mean(np.abs(spectrum) ** 2, axis=1)
            bands = np.array(
                [
                    power[(freqs >= low) & (freqs < high)].sum()
                    for low, high in zip(edges[:-1], edges[1:])
                ]
            )
            starts.append(start / sample_rate)
            features.append(np.log(bands + 1e-10))
            voiced.append(rms >= self.silence_rms)

        embeddings = np.array(features)
        voiced_mask = np.array(voiced, dtype=bool)
        if voiced_mask.any():
            embeddings = embeddings - embeddings[voiced_mask].mean(axis=0)
        return np.array(starts), embeddings, voiced_mask

    def _detect_turns(
        self, starts: np.ndarray, embeddings: np.ndarray, voiced: np.ndarray, duration: float
    ) -> list[tuple[float, float, list[int]]]:
        half_hop = self.hop_seconds / 2
        centers = starts + self.window_seconds / 2

        turns: list[tuple[float, float, list[int]]] = []
        current: list[int] = []

        def close_turn() -> None:
            if current:
                start = max(0.0, centers[current[0]] - half_hop)
                end = min(duration, centers[current[-1]] + half_hop)
                turns.append((start, max(start, end), list(current)))
                current.clear()

        for index in range(len(starts)):
            if not voiced[index]:
                close_turn()
                continue
            if current and self._distinct(embeddings[current[-1]], embeddings[index]):
                close_turn()
            current.append(index)
        close_turn()

        if turns:
            first_start, first_end, first_indices = turns[0]
            turns[0] = (0.0 if first_start <= half_hop else first_start, first_end, first_indices)
        return turns

    def _merge_short_turns(
        self, turns: list[tuple[float, float, list[int]]]
    ) -> list[tuple[float, float, list[int]]]:
        merged: list[tuple[float, float, list[int]]] = []
        for start, end, indices in turns:
            if merged and end - start < self.min_segment_seconds:
                prev_start, _, prev_indices = merged[-1]
                merged[-1] = (prev_start, end, prev_indices + indices)
            else:
                merged.append((start, end, indices))

        if len(merged) > 1 and merged[0][1] - merged[0][0] < self.min_segment_seconds:
            first_start, _, first_indices = merged.pop(0)
            _, next_end, next_indices = merged[0]
            merged[0] = (first_start, next_end, first_indices + next_indices)
        return merged

    def _cluster(self, centroids: np.ndarray) -> list[int]:
        count = len(centroids)
        if count == 1 or self.max_speakers == 1:
            return [0] * count

        norms = np.linalg.norm(centroids, axis=1, keepdims=True)
        points = centroids / np.maximum(norms, 1e-9)

        # Seed with the first turn and the turn farthest from it
        far = int(np.argmax([_cosine_distance(points[0], p) for p in points]))
        if not self._distinct(centroids[0], centroids[far]):
            return [0] * count

        seeds = [points[0], points[far]]
        labels = [0] * count
        for _ in range(20):
            new_labels = [
                int(np.argmin([_cosine_distance(seed, p) for seed in seeds])) for p in points
            ]
            if new_labels == labels:
                break
            labels = new_labels
            for k in range(len(seeds)):
                members = points[[i for i, label in enumerate(labels) if label == k]]
                if len(members):
                    seeds[k] = members.mean(axis=0)

        groups = [centroids[[i for i, label in enumerate(labels) if label == k]] for k in range(2)]
        if any(len(group) == 0 for group in groups):
            return [0] * count
        if not self._distinct(groups[0].mean(axis=0), groups[1].mean(axis=0)):
            return [0] * count
        return labels

    def _distinct(self, a: np.ndarray, b: np.ndarray) -> bool:
        return (
            _cosine_distance(a, b) > self.change_threshold
            and float(np.linalg.norm(a - b)) >= self.min_embedding_distance
        )

    def _label_names(self, labels: list[int]) -> dict[int, str]:
        # Speakers are named in order of first appearance
        names: dict[int, str] = {}
        for label in labels:
            if label not in names:
                position = len(names)
                names[label] = (
                    self.speaker_labels[position]
                    if position < len(self.speaker_labels)
                    else f"Speaker {position + 1}"
                )
        return names
