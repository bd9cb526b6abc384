import asyncio
import json

import pytest

from fakes import FakeClock, FakeConnector, FakeTransport, RecordingSleep, deepgram_results, wait_until
from livescribe.core.config import AdapterSettings
from livescribe.system_metrics import get_metric
from livescribe.transcription.adapter import StreamingTranscriptionAdapter
from livescribe.transcription.models import ConnectionState, EventKind
from livescribe.transcription.providers import DeepgramProfile


def _settings(**overrides) -> AdapterSettings:
    values = {
        "reconnect_base_delay_sec": 1.0,
        "reconnect_max_delay_sec": 30.0,
        "max_reconnect_attempts": 3,
        "keepalive_interval_sec": 5.0,
        "provider_idle_timeout_sec": 10.0,
        "latency_warn_ms": 300.0,
        "send_queue_max_frames": 8,
    }
    values.update(overrides)
    return AdapterSettings(**values)


def _adapter(connector, sleep=None, clock=None, on_terminal_failure=None, **overrides) -> StreamingTranscriptionAdapter:
    kwargs = {}
    if clock is not None:
        kwargs["clock"] = clock
    return StreamingTranscriptionAdapter(
        DeepgramProfile(api_key="test"),
        conversation_id="conv-test",
        settings=_settings(**overrides),
        connect_fn=connector,
        sleep_fn=sleep or RecordingSleep(),
        on_terminal_failure=on_terminal_failure,
        **kwargs,
    )


async def _next_event(stream, timeout: float = 1.0):
    return await asyncio.wait_for(stream.__anext__(), timeout)


@pytest.mark.asyncio
async def test_start_streams_and_emits_open():
    transport = FakeTransport()
    adapter = _adapter(FakeConnector([transport]))

    await adapter.start()
    stream = adapter.events()

    assert adapter.state is ConnectionState.STREAMING
    assert (await _next_event(stream)).kind is EventKind.OPEN
    await adapter.close()


@pytest.mark.asyncio
async def test_unparseable_messages_are_skipped():
    transport = FakeTransport()
    adapter = _adapter(FakeConnector([transport]))
    await adapter.start()
    stream = adapter.events()
    await _next_event(stream)

    skipped_before = get_metric("provider_messages_skipped")
    transport.feed("{not json")
    transport.feed(deepgram_results("hello world", is_final=True))

    event = await _next_event(stream)
    assert event.kind is EventKind.RESULT
    assert event.result.text == "hello world"
    assert get_metric("provider_messages_skipped") == skipped_before + 1
    assert adapter.state is ConnectionState.STREAMING
    await adapter.close()


@pytest.mark.asyncio
async def test_malformed_results_structure_is_skipped_without_reconnect():
    transport = FakeTransport()
    connector = FakeConnector([transport])
    adapter = _adapter(connector)
    await adapter.start()
    stream = adapter.events()
    await _next_event(stream)

    transport.feed(json.dumps({"type": "Results", "channel": "garbage"}))
    transport.feed(json.dumps({"type": "Results", "channel": {"alternatives": [5]}}))
    transport.feed(json.dumps({"type": "Results", "channel": {"alternatives": [{"transcript": "ok", "words": "nope"}]}}))
    transport.feed(deepgram_results("still here", is_final=True))

    texts = []
    while "still here" not in texts:
        event = await _next_event(stream)
        assert event.kind is EventKind.RESULT
        texts.append(event.result.text)

    assert connector.calls == 1
    assert adapter.state is ConnectionState.STREAMING
    await adapter.close()


@pytest.mark.asyncio
async def test_send_audio_rejects_when_not_streaming():
    adapter = _adapter(FakeConnector([]))
    assert adapter.send_audio(b"\x00\x01") is False
    assert adapter.metrics()["frames_dropped"] == 1


@pytest.mark.asyncio
async def test_send_audio_drops_when_queue_full():
    transport = FakeTransport()
    adapter = _adapter(FakeConnector([transport]), send_queue_max_frames=1)
    await adapter.start()

    dropped_before = get_metric("audio_frames_dropped")
    assert adapter.send_audio(b"\x01\x01") is True
    assert adapter.send_audio(b"\x02\x02") is False
    assert get_metric("audio_frames_dropped") == dropped_before + 1

    await wait_until(lambda: b"\x01\x01" in transport.sent)
    assert b"\x02\x02" not in transport.sent
    await adapter.close()


@pytest.mark.asyncio
async def test_reconnects_after_unexpected_close():
    first = FakeTransport()
    second = FakeTransport()
    sleep = RecordingSleep()
    adapter = _adapter(FakeConnector([first, second]), sleep=sleep)
    await adapter.start()
    stream = adapter.events()
    await _next_event(stream)

    first.drop()

    reopened = await _next_event(stream)
    assert reopened.kind is EventKind.OPEN
    assert adapter.state is ConnectionState.STREAMING
    assert adapter.reconnect_attempts == 0
    assert sleep.delays == [1.0]

    second.feed(deepgram_results("after reconnect"))
    event = await _next_event(stream)
    assert event.result.text == "after reconnect"
    await adapter.close()


@pytest.mark.asyncio
async def test_provider_error_message_triggers_reconnect():
    first = FakeTransport()
    second = FakeTransport()
    adapter = _adapter(FakeConnector([first, second]))
    await adapter.start()
    stream = adapter.events()
    await _next_event(stream)

    first.feed(json.dumps({"type": "Error", "description": "net0001"}))

    error = await _next_event(stream)
    assert error.kind is EventKind.ERROR
    assert (await _next_event(stream)).kind is EventKind.OPEN
    assert first.closed is True
    await adapter.close()


@pytest.mark.asyncio
async def test_initial_connect_failure_enters_reconnect_loop():
    transport = FakeTransport()
    sleep = RecordingSleep()
    adapter = _adapter(FakeConnector([ConnectionError("refused"), transport]), sleep=sleep)

    await adapter.start()
    await wait_until(lambda: adapter.state is ConnectionState.STREAMING)

    assert sleep.delays == [1.0]
    await adapter.close()


@pytest.mark.asyncio
async def test_exhausted_retries_emit_exactly_one_terminal_failure():
    transport = FakeTransport()
    sleep = RecordingSleep()
    failures = []
    connector = FakeConnector([transport])
    terminal_before = get_metric("terminal_failures")

    adapter = _adapter(connector, sleep=sleep, on_terminal_failure=failures.append)
    await adapter.start()
    transport.drop()

    events = [event async for event in adapter.events()]
    kinds = [event.kind for event in events]

    assert kinds.count(EventKind.TERMINAL_FAILURE) == 1
    assert kinds[-1] is EventKind.TERMINAL_FAILURE
    assert len(failures) == 1
    assert sleep.delays == [1.0, 2.0, 4.0]
    assert connector.calls == 4
    assert adapter.state is ConnectionState.CLOSED
    assert get_metric("terminal_failures") == terminal_before + 1

    await adapter.close()
    assert len(failures) == 1
    assert adapter.send_audio(b"\x00\x00") is False


@pytest.mark.asyncio
async def test_async_terminal_failure_callback_is_awaited():
    calls = []

    async def on_failure(reason: str):
        calls.append(reason)

    adapter = _adapter(FakeConnector([]), on_terminal_failure=on_failure, max_reconnect_attempts=1)
    await adapter.start()
    await wait_until(lambda: adapter.state is ConnectionState.CLOSED)
    await wait_until(lambda: len(calls) == 1)
    assert "connection refused" in calls[0]


@pytest.mark.asyncio
async def test_close_is_idempotent_and_sends_close_message():
    transport = FakeTransport()
    adapter = _adapter(FakeConnector([transport]))
    await adapter.start()

    await adapter.close()
    await adapter.close()

    close_frames = [msg for msg in transport.sent if msg == json.dumps({"type": "CloseStream"})]
    assert len(close_frames) == 1
    assert transport.closed is True
    assert adapter.state is ConnectionState.CLOSED
    assert [event.kind for event in [e async for e in adapter.events()]] == [EventKind.OPEN]


@pytest.mark.asyncio
async def test_keepalive_sent_while_streaming():
    transport = FakeTransport()
    adapter = _adapter(FakeConnector([transport]), keepalive_interval_sec=0.01, provider_idle_timeout_sec=1.0)
    await adapter.start()

    keepalive = json.dumps({"type": "KeepAlive"})
    await wait_until(lambda: keepalive in transport.sent)
    assert adapter.state is ConnectionState.STREAMING
    await adapter.close()


@pytest.mark.asyncio
async def test_keepalive_failure_does_not_reconnect():
    transport = FakeTransport(fail_send=True)
    connector = FakeConnector([transport])
    adapter = _adapter(connector, keepalive_interval_sec=0.01, provider_idle_timeout_sec=1.0)
    await adapter.start()

    await asyncio.sleep(0.05)
    assert adapter.state is ConnectionState.STREAMING
    assert connector.calls == 1
    await adapter.close()


@pytest.mark.asyncio
async def test_latency_measured_from_first_send_after_previous_result():
    transport = FakeTransport()
    clock = FakeClock(now=10.0)
    adapter = _adapter(FakeConnector([transport]), clock=clock)
    await adapter.start()
    stream = adapter.events()
    await _next_event(stream)

    assert adapter.send_audio(b"\x01\x00") is True
    await wait_until(lambda: b"\x01\x00" in transport.sent)
    clock.now = 10.5
    assert adapter.send_audio(b"\x02\x00") is True
    await wait_until(lambda: b"\x02\x00" in transport.sent)
    clock.now = 10.75

    transport.feed(deepgram_results("slow result"))
    event = await _next_event(stream)

    assert event.result.latency_ms == pytest.approx(750.0)
    metrics = adapter.metrics()
    assert metrics["transcription_count"] == 1
    assert metrics["avg_latency_ms"] == pytest.approx(750.0)
    await adapter.close()
