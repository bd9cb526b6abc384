import asyncio
import dataclasses
import inspect
import logging
import time
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

import websockets

from livescribe.core.config import AdapterSettings
from livescribe.core.logger import log_event
from livescribe.system_metrics import increment_metric, observe_latency_ms
from livescribe.transcription.backoff import ReconnectPolicy
from livescribe.transcription.models import ConnectionState, EventKind, RecognitionEvent
from livescribe.transcription.providers import ProviderProfile

logging.basicConfig(
    format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
    level=logging.INFO,
)

logger = logging.getLogger("transcription_adapter")

ConnectFn = Callable[[str, dict], Awaitable[Any]]
SleepFn = Callable[[float], Awaitable[None]]
TerminalFailureFn = Callable[[str], Any]

_LIVE_STATES = {ConnectionState.OPEN, ConnectionState.STREAMING}


async def connect_websocket(url: str, headers: dict) -> Any:
    return await websockets.connect(url, additional_headers=headers, open_timeout=10, max_size=None)


class StreamingTranscriptionAdapter:
    """
    Owns one provider connection for one conversation.

    Provider messages are normalized into RecognitionEvents and exposed through
    ``events()``. Errors and unexpected closes move the adapter to DEGRADED and
    start the reconnect loop; running out of attempts emits a single
    TERMINAL_FAILURE and closes the adapter for good.
    """

    def __init__(
        self,
        provider: ProviderProfile,
        conversation_id: str = "",
        settings: Optional[AdapterSettings] = None,
        connect_fn: Optional[ConnectFn] = None,
        sleep_fn: SleepFn = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        on_terminal_failure: Optional[TerminalFailureFn] = None,
    ):
        self.provider = provider
        self.conversation_id = conversation_id
        self.settings = settings or AdapterSettings()
        self._connect_fn = connect_fn or connect_websocket
        self._sleep = sleep_fn
        self._clock = clock
        self._on_terminal_failure = on_terminal_failure

        self._policy = ReconnectPolicy(
            base_delay_sec=self.settings.reconnect_base_delay_sec,
            max_delay_sec=self.settings.reconnect_max_delay_sec,
            max_attempts=self.settings.max_reconnect_attempts,
        )
        self._state = ConnectionState.DISCONNECTED
        self._transport: Any = None
        self._events: asyncio.Queue = asyncio.Queue()
        self._send_queue: asyncio.Queue = asyncio.Queue(maxsize=self.settings.send_queue_max_frames)
        self._retry_frame: Optional[bytes] = None

        self._receiver_task: Optional[asyncio.Task] = None
        self._sender_task: Optional[asyncio.Task] = None
        self._keepalive_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None

        self._closing = False
        self._terminal_emitted = False
        self._send_started_at: Optional[float] = None

        self._latency_total_ms = 0.0
        self._result_count = 0
        self._frames_dropped = 0
        self._keepalives_sent = 0

    # -------------------------
    # STATE
    # -------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def reconnect_attempts(self) -> int:
        return self._policy.attempts

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        logger.debug("[%s] state %s -> %s | conversation_id=%s", self.provider.name, self._state.value, state.value, self.conversation_id)
        self._state = state

    def _emit(self, event: Optional[RecognitionEvent]) -> None:
        self._events.put_nowait(event)

    # -------------------------
    # LIFECYCLE
    # -------------------------

    async def start(self) -> None:
        if self._state is not ConnectionState.DISCONNECTED:
            return
        try:
            await self._open_connection()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("[%s] initial connect failed | conversation_id=%s err=%s", self.provider.name, self.conversation_id, exc)
            await self._close_transport_quietly()
            await self._enter_degraded(f"connect failed: {exc}")

    async def _open_connection(self) -> None:
        self._set_state(ConnectionState.CONNECTING)
        transport = await self._connect_fn(self.provider.url(), self.provider.headers())
        self._transport = transport
        self._set_state(ConnectionState.OPEN)

        for message in self.provider.opening_messages():
            await transport.send(message)

        self._keepalive_task = asyncio.create_task(self._keepalive_loop(transport))
        self._receiver_task = asyncio.create_task(self._receive_loop(transport))
        self._sender_task = asyncio.create_task(self._send_loop(transport))
        self._set_state(ConnectionState.STREAMING)
        self._policy.reset()

        self._emit(RecognitionEvent(kind=EventKind.OPEN, provider=self.provider.name))
        log_event("transcription_adapter", "connected", self.conversation_id, provider=self.provider.name)

    async def close(self) -> None:
        """Graceful shutdown. Safe to call multiple times."""
        already_closed = self._closing and self._state is ConnectionState.CLOSED
        self._closing = True
        if already_closed:
            return

        current = asyncio.current_task()
        if self._reconnect_task and self._reconnect_task is not current and not self._reconnect_task.done():
            self._reconnect_task.cancel()
            await asyncio.gather(self._reconnect_task, return_exceptions=True)

        transport = self._transport
        close_message = self.provider.close_message()
        if transport is not None and close_message is not None and self._state in _LIVE_STATES:
            try:
                await transport.send(close_message)
            except Exception as exc:
                logger.debug("[%s] close message not delivered: %s", self.provider.name, exc)

        await self._teardown_transport()
        self._drain_send_queue()
        self._set_state(ConnectionState.CLOSED)
        self._emit(None)
        log_event("transcription_adapter", "closed", self.conversation_id, provider=self.provider.name)

    async def _teardown_transport(self) -> None:
        current = asyncio.current_task()
        tasks = [
            task
            for task in (self._keepalive_task, self._sender_task, self._receiver_task)
            if task is not None and task is not current and not task.done()
        ]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._keepalive_task = None
        self._sender_task = None
        self._receiver_task = None
        await self._close_transport_quietly()

    async def _close_transport_quietly(self) -> None:
        transport = self._transport
        self._transport = None
        if transport is None:
            return
        try:
            await transport.close()
        except Exception as exc:
            logger.debug("[%s] transport close ignored: %s", self.provider.name, exc)

    def _drain_send_queue(self) -> None:
        self._retry_frame = None
        while True:
            try:
                self._send_queue.get_nowait()
            except asyncio.QueueEmpty:
                return

    # -------------------------
    # RECONNECT
    # -------------------------

    async def _enter_degraded(self, reason: str) -> None:
        if self._closing or self._state in {ConnectionState.CLOSED, ConnectionState.DEGRADED}:
            return
        self._set_state(ConnectionState.DEGRADED)
        log_event(
            "transcription_adapter",
            "degraded",
            self.conversation_id,
            level=logging.WARNING,
            provider=self.provider.name,
            reason=reason,
        )
        await self._teardown_transport()
        self._reconnect_task = asyncio.create_task(self._reconnect_loop(reason))

    async def _reconnect_loop(self, reason: str) -> None:
        last_error = reason
        while not self._closing:
            delay = self._policy.next_delay()
            if delay is None:
                await self._fail_terminal(last_error)
                return

            increment_metric("reconnect_attempts")
            logger.warning(
                "[%s] reconnecting in %.2fs (attempt %s/%s) | conversation_id=%s",
                self.provider.name,
                delay,
                self._policy.attempts,
                self._policy.max_attempts,
                self.conversation_id,
            )
            await self._sleep(delay)
            if self._closing:
                return

            try:
                await self._open_connection()
                log_event(
                    "transcription_adapter",
                    "reconnected",
                    self.conversation_id,
                    provider=self.provider.name,
                )
                return
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                last_error = f"reconnect failed: {exc}"
                logger.error("[%s] reconnect failed | conversation_id=%s err=%s", self.provider.name, self.conversation_id, exc)
                await self._teardown_transport()
                self._set_state(ConnectionState.DEGRADED)

    async def _fail_terminal(self, reason: str) -> None:
        if self._terminal_emitted:
            return
        self._terminal_emitted = True
        self._closing = True
        await self._teardown_transport()
        self._drain_send_queue()
        self._set_state(ConnectionState.CLOSED)

        increment_metric("terminal_failures")
        log_event(
            "transcription_adapter",
            "terminal_failure",
            self.conversation_id,
            level=logging.ERROR,
            provider=self.provider.name,
            attempts=self._policy.attempts,
            reason=reason,
        )
        self._emit(RecognitionEvent(kind=EventKind.TERMINAL_FAILURE, provider=self.provider.name, error=reason))
        self._emit(None)

        if self._on_terminal_failure is not None:
            try:
                outcome = self._on_terminal_failure(reason)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as exc:
                logger.error("[%s] terminal failure callback raised: %s", self.provider.name, exc)

    # -------------------------
    # SEND
    # -------------------------

    def send_audio(self, frame: bytes) -> bool:
        """
        Queue one frame for delivery without blocking.

        Returns False, and keeps nothing, when the adapter is not STREAMING or the
        outbound queue is full.
        """
        if not frame:
            return False
        if self._state is not ConnectionState.STREAMING:
            self._record_drop("not_streaming")
            return False
        try:
            self._send_queue.put_nowait(bytes(frame))
        except asyncio.QueueFull:
            self._record_drop("queue_full")
            return False
        return True

    def _record_drop(self, reason: str) -> None:
        self._frames_dropped += 1
        increment_metric("audio_frames_dropped")
        logger.debug("[%s] audio frame dropped reason=%s | conversation_id=%s", self.provider.name, reason, self.conversation_id)

    async def _send_loop(self, transport: Any) -> None:
        while True:
            if self._retry_frame is not None:
                frame, self._retry_frame = self._retry_frame, None
            else:
                frame = await self._send_queue.get()
            try:
                if self._send_started_at is None:
                    self._send_started_at = self._clock()
                await transport.send(self.provider.encode_audio(frame))
                increment_metric("audio_frames_sent")
            except asyncio.CancelledError:
                self._retry_frame = frame
                raise
            except Exception as exc:
                # the receive loop observes the broken transport and drives the reconnect
                self._retry_frame = frame
                logger.warning("[%s] audio send failed | conversation_id=%s err=%s", self.provider.name, self.conversation_id, exc)
                try:
                    await transport.close()
                except Exception:
                    logger.debug("[%s] transport already closed", self.provider.name)
                return

    async def _keepalive_loop(self, transport: Any) -> None:
        interval = self.settings.keepalive_interval_sec
        while True:
            await asyncio.sleep(interval)
            if transport is not self._transport:
                return
            if self._state not in _LIVE_STATES:
                continue
            message = self.provider.keepalive_message()
            if message is None:
                continue
            try:
                await transport.send(message)
                self._keepalives_sent += 1
                logger.debug("[%s] keepalive sent | conversation_id=%s", self.provider.name, self.conversation_id)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("[%s] keepalive send failed | conversation_id=%s err=%s", self.provider.name, self.conversation_id, exc)

    # -------------------------
    # RECEIVE
    # -------------------------

    async def _receive_loop(self, transport: Any) -> None:
        reason = "provider closed the stream"
        try:
            async for raw in transport:
                stop_reason = self._handle_message(raw)
                if stop_reason:
                    reason = stop_reason
                    break
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            reason = f"connection lost: {exc}"

        if self._closing or transport is not self._transport:
            return
        await self._enter_degraded(reason)

    def _handle_message(self, raw: Any) -> Optional[str]:
        try:
            events = self.provider.parse_message(raw)
        except Exception as exc:
            increment_metric("provider_messages_skipped")
            logger.warning("[%s] unparseable provider message skipped | conversation_id=%s err=%s", self.provider.name, self.conversation_id, exc)
            return None

        for event in events:
            if event.kind is EventKind.RESULT and event.result is not None:
                event = self._stamp_latency(event)
            self._emit(event)
            if event.kind is EventKind.ERROR:
                logger.error("[%s] provider error | conversation_id=%s err=%s", self.provider.name, self.conversation_id, event.error)
                return f"provider error: {event.error}"
            if event.kind is EventKind.CLOSED:
                return "provider terminated the session"
        return None

    def _stamp_latency(self, event: RecognitionEvent) -> RecognitionEvent:
        started_at = self._send_started_at
        self._send_started_at = None
        if started_at is None:
            return event

        latency_ms = max(0.0, (self._clock() - started_at) * 1000.0)
        self._latency_total_ms += latency_ms
        self._result_count += 1
        observe_latency_ms(latency_ms)
        if latency_ms > self.settings.latency_warn_ms:
            logger.warning(
                "[%s] latency %.0fms exceeded %.0fms | conversation_id=%s",
                self.provider.name,
                latency_ms,
                self.settings.latency_warn_ms,
                self.conversation_id,
            )
        result = dataclasses.replace(event.result, latency_ms=latency_ms)
        return dataclasses.replace(event, result=result)

    async def events(self) -> AsyncIterator[RecognitionEvent]:
        while True:
            event = await self._events.get()
            if event is None:
                return
            yield event

    def metrics(self) -> dict:
        return {
            "provider": self.provider.name,
            "state": self._state.value,
            "reconnect_attempts": self._policy.attempts,
            "transcription_count": self._result_count,
            "avg_latency_ms": round(self._latency_total_ms / self._result_count, 2) if self._result_count else 0.0,
            "frames_dropped": self._frames_dropped,
            "keepalives_sent": self._keepalives_sent,
        }
