from livescribe.corrections.engine import CorrectionEngine, CorrectionIndex
from livescribe.corrections.models import (
    AppliedCorrection,
    CorrectionOptions,
    CorrectionResult,
    CorrectionRule,
    Suggestion,
)
from livescribe.corrections.store import InMemoryCorrectionStore, SupabaseCorrectionStore, build_correction_store

__all__ = [
    "AppliedCorrection",
    "CorrectionEngine",
    "CorrectionIndex",
    "CorrectionOptions",
    "CorrectionResult",
    "CorrectionRule",
    "InMemoryCorrectionStore",
    "Suggestion",
    "SupabaseCorrectionStore",
    "build_correction_store",
]
