from __future__ import annotations

import logging
from collections import Counter
from typing import Optional, Sequence

from livescribe.core.config import SPEAKER_STATE_FROM_INTERIM
from livescribe.diarization.models import SegmentationBatch, SpeakerSegment, SpeakerTransition
from livescribe.transcription.models import RecognitionResult, RecognitionWord

logger = logging.getLogger("diarization_segmenter")


def mean_confidence(words: Sequence[RecognitionWord]) -> float:
    if not words:
        return 0.0
    return sum(float(word.confidence or 0.0) for word in words) / len(words)


def dominant_speaker(result: RecognitionResult) -> Optional[str]:
    counts = Counter(word.speaker_id for word in result.words if word.speaker_id is not None)
    if not counts:
        return None
    return counts.most_common(1)[0][0]


class DiarizationSegmenter:
    """
    Per-connection speaker attribution.

    ``last_speaker`` survives across results so a change of speaker exactly at a
    result boundary still yields a transition. Interim results move that pointer
    (when ``track_interim`` is on) but only final results produce segments.
    """

    def __init__(self, conversation_id: str = "", track_interim: bool = SPEAKER_STATE_FROM_INTERIM):
        self.conversation_id = conversation_id
        self.track_interim = bool(track_interim)
        self.last_speaker: Optional[str] = None
        self._segment_watermark: Optional[float] = None

    def reset(self) -> None:
        self.last_speaker = None
        self._segment_watermark = None

    def process(self, result: RecognitionResult) -> SegmentationBatch:
        if not result.is_final and not self.track_interim:
            return SegmentationBatch()

        transitions: list[SpeakerTransition] = []
        runs: list[tuple[str, list[RecognitionWord]]] = []

        for index, word in enumerate(result.words):
            speaker = word.speaker_id
            if speaker is None:
                # untagged words ride along with the open run
                if runs:
                    runs[-1][1].append(word)
                continue

            if speaker != self.last_speaker:
                transitions.append(
                    SpeakerTransition(
                        from_speaker=self.last_speaker,
                        to_speaker=speaker,
                        timestamp=float(word.start),
                        word_index=index,
                    )
                )
                self.last_speaker = speaker

            if not runs or runs[-1][0] != speaker:
                runs.append((speaker, [word]))
            else:
                runs[-1][1].append(word)

        segments: tuple[SpeakerSegment, ...] = ()
        if result.is_final:
            segments = tuple(self._close_segment(speaker, words) for speaker, words in runs)

        if transitions:
            logger.debug(
                "speaker transitions=%s final=%s | conversation_id=%s",
                len(transitions),
                result.is_final,
                self.conversation_id,
            )
        return SegmentationBatch(segments=segments, transitions=tuple(transitions))

    def _close_segment(self, speaker: str, words: list[RecognitionWord]) -> SpeakerSegment:
        start = float(words[0].start)
        if self._segment_watermark is not None and start < self._segment_watermark:
            start = self._segment_watermark
        end = max(start, max(float(word.end) for word in words))
        self._segment_watermark = end
        return SpeakerSegment(
            speaker_id=speaker,
            start=start,
            end=end,
            text=" ".join(word.display for word in words if word.display),
            words=tuple(words),
            confidence=mean_confidence(words),
        )
