from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from typing import Any, Mapping, Optional


@dataclass(frozen=True)
class CorrectionOptions:
    category: str = "general"
    confidence_threshold: float = 0.8
    auto_apply: bool = True
    case_sensitive: bool = False
    whole_word_only: bool = True
    created_by_user_id: Optional[str] = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> "CorrectionOptions":
        """Accept both the snake_case and camelCase spellings used by clients."""
        data = dict(data or {})

        def pick(snake: str, camel: str, default: Any) -> Any:
            if snake in data and data[snake] is not None:
                return data[snake]
            if camel in data and data[camel] is not None:
                return data[camel]
            return default

        return cls(
            category=str(pick("category", "category", "general") or "general"),
            confidence_threshold=float(pick("confidence_threshold", "confidenceThreshold", 0.8)),
            auto_apply=bool(pick("auto_apply", "autoApply", True)),
            case_sensitive=bool(pick("case_sensitive", "caseSensitive", False)),
            whole_word_only=bool(pick("whole_word_only", "wholeWordOnly", True)),
            created_by_user_id=pick("created_by_user_id", "createdByUserId", None),
        )


@dataclass(frozen=True)
class CorrectionRule:
    id: int
    original_term: str
    corrected_term: str
    category: str = "general"
    confidence_threshold: float = 0.8
    auto_apply: bool = True
    case_sensitive: bool = False
    whole_word_only: bool = True
    usage_count: int = 0
    is_active: bool = True
    created_by_user_id: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    last_used: Optional[float] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class AppliedCorrection:
    id: int
    original: str
    corrected: str
    category: str
    count: int = 1

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class CorrectionResult:
    text: str
    applied: tuple[AppliedCorrection, ...] = ()
    changed: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "text": self.text,
            "corrections": [item.to_dict() for item in self.applied],
            "changed": self.changed,
        }


@dataclass(frozen=True)
class Suggestion:
    type: str
    original: str
    corrected: str
    confidence: float
    category: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
