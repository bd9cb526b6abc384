from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"
    STREAMING = "streaming"
    DEGRADED = "degraded"
    CLOSED = "closed"


class EventKind(str, Enum):
    OPEN = "open"
    RESULT = "result"
    UTTERANCE_END = "utterance_end"
    SPEECH_STARTED = "speech_started"
    METADATA = "metadata"
    ERROR = "error"
    CLOSED = "closed"
    TERMINAL_FAILURE = "terminal_failure"


@dataclass(frozen=True)
class RecognitionWord:
    word: str
    start: float = 0.0
    end: float = 0.0
    speaker_id: Optional[str] = None
    confidence: float = 0.0
    punctuated_word: Optional[str] = None

    @property
    def display(self) -> str:
        return self.punctuated_word or self.word


@dataclass(frozen=True)
class RecognitionResult:
    """
    One provider hypothesis, already normalized.
    Interim results may be revised; final ones never are.
    """
    text: str
    is_final: bool
    words: tuple[RecognitionWord, ...] = ()
    confidence: float = 0.0
    provider: str = "unknown"
    latency_ms: float = 0.0
    start: float = 0.0
    duration: float = 0.0
    received_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class RecognitionEvent:
    kind: EventKind
    provider: str = "unknown"
    result: Optional[RecognitionResult] = None
    error: Optional[str] = None
    payload: Optional[dict[str, Any]] = None

    @classmethod
    def of_result(cls, result: RecognitionResult) -> "RecognitionEvent":
        return cls(kind=EventKind.RESULT, provider=result.provider, result=result)
