import asyncio
import json
from typing import Any, Optional

from livescribe.transcription.models import ConnectionState, RecognitionEvent, RecognitionResult, RecognitionWord

_END = object()


async def wait_until(predicate, timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.001)


class FakeTransport:
    """Stands in for a websockets client connection."""

    def __init__(self, fail_send: bool = False):
        self.sent: list[Any] = []
        self.closed = False
        self.fail_send = fail_send
        self._incoming: asyncio.Queue = asyncio.Queue()

    async def send(self, message: Any) -> None:
        if self.fail_send:
            raise ConnectionError("send failed")
        self.sent.append(message)

    def feed(self, message: Any) -> None:
        self._incoming.put_nowait(message)

    def drop(self) -> None:
        self._incoming.put_nowait(_END)

    async def close(self) -> None:
        self.closed = True
        self._incoming.put_nowait(_END)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._incoming.get()
        if item is _END:
            raise StopAsyncIteration
        if isinstance(item, Exception):
            raise item
        return item


class FakeConnector:
    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.calls = 0
        self.transports: list[FakeTransport] = []

    async def __call__(self, url: str, headers: dict) -> FakeTransport:
        self.calls += 1
        outcome = self.outcomes.pop(0) if self.outcomes else ConnectionError("connection refused")
        if isinstance(outcome, Exception):
            raise outcome
        self.transports.append(outcome)
        return outcome


class RecordingSleep:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


class FakeClock:
    def __init__(self, now: float = 100.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeProvider:
    name = "fake"


class FakeAdapter:
    """Adapter double driven directly by the test through ``push``."""

    def __init__(self, conversation_id: str = ""):
        self.conversation_id = conversation_id
        self.provider = FakeProvider()
        self.state = ConnectionState.DISCONNECTED
        self.sent: list[bytes] = []
        self.accept_audio = True
        self.closed = 0
        self._events: asyncio.Queue = asyncio.Queue()

    async def start(self) -> None:
        self.state = ConnectionState.STREAMING

    def send_audio(self, frame: bytes) -> bool:
        if not self.accept_audio:
            return False
        self.sent.append(frame)
        return True

    def push(self, event: Optional[RecognitionEvent]) -> None:
        self._events.put_nowait(event)

    async def events(self):
        while True:
            event = await self._events.get()
            if event is None:
                return
            yield event

    async def close(self) -> None:
        self.closed += 1
        self.state = ConnectionState.CLOSED
        self._events.put_nowait(None)

    def metrics(self) -> dict:
        return {"provider": self.provider.name, "state": self.state.value}


def word(text: str, start: float, end: float, speaker: Optional[str] = None, confidence: float = 0.9) -> RecognitionWord:
    return RecognitionWord(word=text, start=start, end=end, speaker_id=speaker, confidence=confidence)


def result(text: str, is_final: bool = True, words=(), confidence: float = 0.9) -> RecognitionResult:
    return RecognitionResult(text=text, is_final=is_final, words=tuple(words), confidence=confidence, provider="fake")


def deepgram_results(text: str, is_final: bool = True, words=()) -> str:
    return json.dumps(
        {
            "type": "Results",
            "is_final": is_final,
            "start": 0.0,
            "duration": 1.0,
            "channel": {
                "alternatives": [
                    {
                        "transcript": text,
                        "confidence": 0.93,
                        "words": list(words),
                    }
                ]
            },
        }
    )
