from __future__ import annotations

import base64
import json
import urllib.parse
from abc import ABC, abstractmethod
from typing import Any, Optional, Union

from livescribe.core.config import (
    ASSEMBLYAI_API_KEY,
    AUDIO_TARGET_SAMPLE_RATE,
    DEEPGRAM_API_KEY,
    DEEPGRAM_DIARIZE,
    DEEPGRAM_LANGUAGE,
    DEEPGRAM_MODEL,
    TRANSCRIPTION_PROVIDER,
)
from livescribe.errors import ProviderUnavailable
from livescribe.transcription.models import EventKind, RecognitionEvent, RecognitionResult, RecognitionWord

WireMessage = Union[str, bytes]

# 20 ms of 16 kHz mono PCM16 silence.
SILENCE_FRAME = b"\x00" * 640


def _decode_json(raw: WireMessage) -> dict[str, Any]:
    if isinstance(raw, (bytes, bytearray)):
        raw = bytes(raw).decode("utf-8")
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError(f"expected JSON object, got {type(data).__name__}")
    return data


def _speaker(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


class ProviderProfile(ABC):
    """Wire contract for one streaming speech-recognition provider."""

    name: str = "unknown"

    @abstractmethod
    def url(self) -> str: ...

    @abstractmethod
    def headers(self) -> dict[str, str]: ...

    @abstractmethod
    def parse_message(self, raw: WireMessage) -> list[RecognitionEvent]:
        """Translate one provider message; raises ValueError when it cannot be parsed."""

    def opening_messages(self) -> list[WireMessage]:
        return []

    def encode_audio(self, frame: bytes) -> WireMessage:
        return bytes(frame)

    def keepalive_message(self) -> Optional[WireMessage]:
        return None

    def close_message(self) -> Optional[WireMessage]:
        return None


class DeepgramProfile(ProviderProfile):
    name = "deepgram"

    def __init__(
        self,
        api_key: str,
        model: str = DEEPGRAM_MODEL,
        language: str = DEEPGRAM_LANGUAGE,
        diarize: bool = DEEPGRAM_DIARIZE,
    ):
        self.api_key = api_key
        self.model = model
        self.language = language
        self.diarize = diarize

    def url(self) -> str:
        params = {
            "encoding": "linear16",
            "sample_rate": str(AUDIO_TARGET_SAMPLE_RATE),
            "channels": "1",
            "model": self.model,
            "language": self.language,
            "punctuate": "true",
            "smart_format": "true",
            "interim_results": "true",
            "utterance_end_ms": "1000",
            "vad_events": "true",
            "diarize": "true" if self.diarize else "false",
        }
        return "wss://api.deepgram.com/v1/listen?" + urllib.parse.urlencode(params)

    def headers(self) -> dict[str, str]:
        return {"Authorization": f"Token {self.api_key}"}

    def keepalive_message(self) -> Optional[WireMessage]:
        return json.dumps({"type": "KeepAlive"})

    def close_message(self) -> Optional[WireMessage]:
        return json.dumps({"type": "CloseStream"})

    def parse_message(self, raw: WireMessage) -> list[RecognitionEvent]:
        data = _decode_json(raw)
        message_type = str(data.get("type") or "")

        if message_type == "Results":
            result = self._parse_results(data)
            return [RecognitionEvent.of_result(result)] if result else []
        if message_type == "UtteranceEnd":
            return [RecognitionEvent(kind=EventKind.UTTERANCE_END, provider=self.name, payload=data)]
        if message_type == "SpeechStarted":
            return [RecognitionEvent(kind=EventKind.SPEECH_STARTED, provider=self.name, payload=data)]
        if message_type == "Metadata":
            return [RecognitionEvent(kind=EventKind.METADATA, provider=self.name, payload=data)]
        if message_type == "Error":
            description = str(data.get("description") or data.get("message") or "provider error")
            return [RecognitionEvent(kind=EventKind.ERROR, provider=self.name, error=description, payload=data)]
        return []

    def _parse_results(self, data: dict[str, Any]) -> Optional[RecognitionResult]:
        channel = data.get("channel") or {}
        if not isinstance(channel, dict):
            raise ValueError("malformed Results channel")
        alternatives = channel.get("alternatives") or []
        if not alternatives:
            return None
        alt = alternatives[0] or {}
        if not isinstance(alt, dict):
            raise ValueError("malformed Results alternative")
        text = str(alt.get("transcript") or "")
        if not text.strip():
            return None

        words = tuple(
            RecognitionWord(
                word=str(item.get("word") or ""),
                start=float(item.get("start") or 0.0),
                end=float(item.get("end") or 0.0),
                speaker_id=_speaker(item.get("speaker")),
                confidence=float(item.get("confidence") or 0.0),
                punctuated_word=item.get("punctuated_word"),
            )
            for item in (alt.get("words") or [])
            if isinstance(item, dict)
        )
        return RecognitionResult(
            text=text,
            is_final=bool(data.get("is_final", False)),
            words=words,
            confidence=float(alt.get("confidence") or 0.0),
            provider=self.name,
            start=float(data.get("start") or 0.0),
            duration=float(data.get("duration") or 0.0),
        )


class AssemblyAIProfile(ProviderProfile):
    name = "assemblyai"

    def __init__(self, api_key: str):
        self.api_key = api_key

    def url(self) -> str:
        return "wss://api.assemblyai.com/v2/realtime/ws?" + urllib.parse.urlencode(
            {"sample_rate": str(AUDIO_TARGET_SAMPLE_RATE)}
        )

    def headers(self) -> dict[str, str]:
        return {"Authorization": self.api_key}

    def encode_audio(self, frame: bytes) -> WireMessage:
        return json.dumps({"audio_data": base64.b64encode(bytes(frame)).decode("ascii")})

    def keepalive_message(self) -> Optional[WireMessage]:
        # no control message for idle sessions; a short silence frame keeps the socket warm
        return self.encode_audio(SILENCE_FRAME)

    def close_message(self) -> Optional[WireMessage]:
        return json.dumps({"terminate_session": True})

    def parse_message(self, raw: WireMessage) -> list[RecognitionEvent]:
        data = _decode_json(raw)
        if data.get("error"):
            return [RecognitionEvent(kind=EventKind.ERROR, provider=self.name, error=str(data["error"]), payload=data)]

        message_type = str(data.get("message_type") or "")
        if message_type in {"PartialTranscript", "FinalTranscript"}:
            text = str(data.get("text") or "")
            if not text.strip():
                return []
            is_final = message_type == "FinalTranscript"
            words = tuple(
                RecognitionWord(
                    word=str(item.get("text") or ""),
                    start=float(item.get("start") or 0.0) / 1000.0,
                    end=float(item.get("end") or 0.0) / 1000.0,
                    speaker_id=_speaker(item.get("speaker")),
                    confidence=float(item.get("confidence") or 0.0),
                )
                for item in (data.get("words") or [])
                if isinstance(item, dict)
            )
            default_confidence = 0.95 if is_final else 0.9
            return [
                RecognitionEvent.of_result(
                    RecognitionResult(
                        text=text,
                        is_final=is_final,
                        words=words,
                        confidence=float(data.get("confidence") or default_confidence),
                        provider=self.name,
                        start=float(data.get("audio_start") or 0.0) / 1000.0,
                    )
                )
            ]
        if message_type == "SessionBegins":
            return [RecognitionEvent(kind=EventKind.METADATA, provider=self.name, payload=data)]
        if message_type == "SessionTerminated":
            return [RecognitionEvent(kind=EventKind.CLOSED, provider=self.name, payload=data)]
        return []


_PROVIDER_KEYS = {
    "deepgram": ("Deepgram", "Real-time streaming transcription with Nova-2 model"),
    "assemblyai": ("AssemblyAI", "Real-time transcription with word timestamps"),
}


def _api_key_for(name: str) -> str:
    if name == "deepgram":
        return DEEPGRAM_API_KEY
    if name == "assemblyai":
        return ASSEMBLYAI_API_KEY
    return ""


def available_providers(active: str = TRANSCRIPTION_PROVIDER) -> list[dict[str, Any]]:
    return [
        {
            "id": provider_id,
            "name": label,
            "description": description,
            "active": provider_id == active,
        }
        for provider_id, (label, description) in _PROVIDER_KEYS.items()
        if _api_key_for(provider_id)
    ]


def build_provider(name: str | None = None, api_key: str | None = None) -> ProviderProfile:
    provider_name = str(name or TRANSCRIPTION_PROVIDER).strip().lower()
    key = api_key if api_key is not None else _api_key_for(provider_name)
    if provider_name not in _PROVIDER_KEYS:
        raise ProviderUnavailable(provider_name, f"Unknown transcription provider {provider_name!r}")
    if not key:
        raise ProviderUnavailable(provider_name)
    if provider_name == "assemblyai":
        return AssemblyAIProfile(api_key=key)
    return DeepgramProfile(api_key=key)
