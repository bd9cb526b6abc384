from livescribe.diarization.models import SegmentationBatch, SpeakerSegment, SpeakerTransition
from livescribe.diarization.segmenter import DiarizationSegmenter

__all__ = ["DiarizationSegmenter", "SegmentationBatch", "SpeakerSegment", "SpeakerTransition"]
