from typing import Any

from pydantic import BaseModel, Field


class CorrectionCreateRequest(BaseModel):
    original: str
    corrected: str
    options: dict[str, Any] | None = None


class ApplyCorrectionsRequest(BaseModel):
    text: str
    conversation_id: str | None = None


class AppliedCorrectionModel(BaseModel):
    id: int
    original: str
    corrected: str
    category: str
    count: int = 1


class ApplyCorrectionsResponse(BaseModel):
    text: str
    corrections: list[AppliedCorrectionModel] = Field(default_factory=list)
    changed: bool = False


class SuggestionModel(BaseModel):
    type: str
    original: str
    corrected: str
    confidence: float
    category: str


class AudioAcceptedResponse(BaseModel):
    conversation_id: str
    delivered: bool


class ConversationStatusResponse(BaseModel):
    conversation_id: str
    status: str
    last_sequence: int = 0
    buffered_bytes: int = 0
    adapter: dict[str, Any] | None = None
