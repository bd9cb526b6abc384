from livescribe.transcription.adapter import StreamingTranscriptionAdapter
from livescribe.transcription.backoff import ReconnectPolicy
from livescribe.transcription.models import ConnectionState, EventKind, RecognitionEvent, RecognitionResult, RecognitionWord
from livescribe.transcription.providers import available_providers, build_provider

__all__ = [
    "ConnectionState",
    "EventKind",
    "ReconnectPolicy",
    "RecognitionEvent",
    "RecognitionResult",
    "RecognitionWord",
    "StreamingTranscriptionAdapter",
    "available_providers",
    "build_provider",
]
