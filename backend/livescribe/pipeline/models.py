from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from livescribe.corrections.models import AppliedCorrection


class ConversationStatus(str, Enum):
    ACTIVE = "active"
    FAILED = "failed"
    ENDED = "ended"


@dataclass(frozen=True)
class TranscriptFragment:
    conversation_id: str
    sequence_number: int
    text: str
    is_final: bool
    confidence: float = 0.0
    original_text: Optional[str] = None
    corrections: tuple[AppliedCorrection, ...] = ()
    speaker_id: Optional[str] = None
    provider: str = ""
    latency_ms: Optional[float] = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "transcript",
            "conversation_id": self.conversation_id,
            "sequence_number": self.sequence_number,
            "text": self.text,
            "original_text": self.original_text,
            "corrections": [item.to_dict() for item in self.corrections],
            "is_final": self.is_final,
            "confidence": self.confidence,
            "speaker_id": self.speaker_id,
            "provider": self.provider,
            "latency_ms": self.latency_ms,
            "timestamp": self.timestamp,
        }
