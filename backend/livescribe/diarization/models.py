from dataclasses import dataclass, field
from typing import Optional

from livescribe.transcription.models import RecognitionWord


@dataclass(frozen=True)
class SpeakerSegment:
    """
    Contiguous run of words attributed to one speaker.
    Segments of one connection never overlap.
    """
    speaker_id: str
    start: float
    end: float
    text: str
    words: tuple[RecognitionWord, ...] = ()
    confidence: float = 0.0

    @property
    def word_count(self) -> int:
        return len(self.words)

    @property
    def duration(self) -> float:
        return self.end - self.start


@dataclass(frozen=True)
class SpeakerTransition:
    from_speaker: Optional[str]
    to_speaker: str
    timestamp: float
    word_index: int


@dataclass(frozen=True)
class SegmentationBatch:
    segments: tuple[SpeakerSegment, ...] = field(default_factory=tuple)
    transitions: tuple[SpeakerTransition, ...] = field(default_factory=tuple)

    @property
    def empty(self) -> bool:
        return not self.segments and not self.transitions
