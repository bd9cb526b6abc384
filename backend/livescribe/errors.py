from __future__ import annotations


class LivescribeError(RuntimeError):
    """Base class for pipeline failures surfaced to callers."""


class CorrectionError(LivescribeError):
    pass


class DuplicateRule(CorrectionError):
    def __init__(self, original: str, corrected: str):
        super().__init__(f"Correction already exists: {original!r} -> {corrected!r}")
        self.original = original
        self.corrected = corrected


class NotFound(CorrectionError):
    def __init__(self, correction_id: int):
        super().__init__(f"Correction not found: {correction_id}")
        self.correction_id = correction_id


class InvalidRule(CorrectionError):
    pass


class NoActiveConversation(LivescribeError):
    def __init__(self, conversation_id: str):
        super().__init__(f"No active conversation: {conversation_id or '<none>'}")
        self.conversation_id = conversation_id


class TranscriptionError(LivescribeError):
    def __init__(self, code: str, message: str, provider_name: str):
        super().__init__(message)
        self.code = code
        self.message = message
        self.provider_name = provider_name


class ProviderUnavailable(TranscriptionError):
    def __init__(self, provider_name: str, message: str = ""):
        super().__init__(
            "provider_unavailable",
            message or f"Transcription provider {provider_name!r} is not configured",
            provider_name,
        )
