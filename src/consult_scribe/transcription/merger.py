"""Combines engine segments, diarization turns and live text into a final transcript."""

from .config import MERGE_WORD_SIMILARITY_THRESHOLD, UNKNOWN_SPEAKER
from .diarization import merge_transcriptions
from .logging_utils import get_logger
from .models import (
    DiarizationResult,
    MergedTranscript,
    SpeakerTurn,
    TranscriptionSegment,
    join_segment_text,
)

logger = get_logger(__name__)


def _overlap(segment: TranscriptionSegment, turn: SpeakerTurn) -> float:
    if segment.end_time <= segment.start_time:
        # Zero-length segments count as overlapping the turn containing them
        return 1e-9 if turn.start <= segment.start_time <= turn.end else 0.0
    return max(0.0, min(segment.end_time, turn.end) - max(segment.start_time, turn.start))


class TranscriptMerger:
    """Builds the speaker-attributed transcript for a finished session."""

    def __init__(self, similarity_threshold: float = MERGE_WORD_SIMILARITY_THRESHOLD) -> None:
        self.similarity_threshold = similarity_threshold

    def label_segments(
        self,
        segments: list[TranscriptionSegment],
        diarization: DiarizationResult | None,
    ) -> list[TranscriptionSegment]:
        """
        Give each segment the speaker of the turn it overlaps most.

        Args:
            segments: Engine segments
            diarization: Speaker turns, or None when diarization is unavailable

        Returns:
            New segments with ``speaker`` set; unmatched segments get ``Unknown``
        """
        turns = diarization.segments if diarization else []
        labeled = []
        for segment in segments:
            index = self._best_turn_index(segment, turns)
            labeled.append(segment.with_speaker(UNKNOWN_SPEAKER if index is None else turns[index].speaker))
        return labeled

    def merge(
        self,
        segments: list[TranscriptionSegment],
        diarization: DiarizationResult | None = None,
        live_text: str | None = None,
    ) -> MergedTranscript:
        """
        Merge engine output with diarization and the live transcript.

        Each diarization turn receives the text of the engine segments that
        overlap it most. Turns without any text are reported as ``Unknown``,
        and segments outside every turn become ``Unknown`` turns of their own.

        Args:
            segments: Engine segments of the session
            diarization: Speaker turns, or None if diarization failed or was skipped
            live_text: Text from the live recognizer, used to fill gaps

        Returns:
            The merged transcript
        """
        ordered = sorted(segments, key=lambda s: s.start_time)
        engine_text = join_segment_text(ordered)
        merged_text = merge_transcriptions(engine_text, live_text or "", self.similarity_threshold)

        turns = diarization.segments if diarization else []
        turn_texts: list[list[str]] = [[] for _ in turns]
        orphans: list[SpeakerTurn] = []

        for segment in ordered:
            if not segment.text:
                continue
            index = self._best_turn_index(segment, turns)
            if index is None:
                orphans.append(
                    SpeakerTurn(
                        start=segment.start_time,
                        end=segment.end_time,
                        speaker=UNKNOWN_SPEAKER,
                        text=segment.text,
                    )
                )
            else:
                turn_texts[index].append(segment.text)

        speakers = [
            SpeakerTurn(
                start=turn.start,
                end=turn.end,
                speaker=turn.speaker if texts else UNKNOWN_SPEAKER,
                text=" ".join(texts),
            )
            for turn, texts in zip(turns, turn_texts)
        ]
        speakers.extend(orphans)
        speakers.sort(key=lambda t: t.start)

        logger.debug(f"Merged {len(ordered)} segments into {len(speakers)} speaker turns")
        return MergedTranscript(merged_transcript=merged_text, speakers=speakers)

    @staticmethod
    def _best_turn_index(segment: TranscriptionSegment, turns: list[SpeakerTurn]) -> int | None:
        best_index = None
        best_overlap = 0.0
        for index, turn in enumerate(turns):
            overlap = _overlap(segment, turn)
            if overlap > best_overlap:
                best_index, best_overlap = index, overlap
        return best_index
