from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Awaitable, Callable, Optional, Protocol

from livescribe.core.config import FRAGMENT_BUS_ENABLED, INSTANCE_ID, REDIS_URL

logger = logging.getLogger("fragment_bus")

FragmentHandler = Callable[[str, dict, str], Awaitable[None]]

SUBSCRIBER_QUEUE_SIZE = 256


class FragmentBus(Protocol):
    async def publish(self, conversation_id: str, payload: dict) -> None:
        ...

    async def listen(self, handler: Optional[FragmentHandler] = None) -> None:
        ...

    def subscribe(self, conversation_id: str) -> asyncio.Queue:
        ...

    def unsubscribe(self, conversation_id: str, queue: asyncio.Queue) -> None:
        ...


class LocalFragmentBus:
    """Fans fragments out to in-process subscriber queues."""

    def __init__(self, instance_id: str = INSTANCE_ID):
        self._instance_id = str(instance_id or "instance-unknown")
        self._subscribers: dict[str, list[asyncio.Queue]] = {}

    def subscribe(self, conversation_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=SUBSCRIBER_QUEUE_SIZE)
        self._subscribers.setdefault(conversation_id, []).append(queue)
        return queue

    def unsubscribe(self, conversation_id: str, queue: asyncio.Queue) -> None:
        queues = self._subscribers.get(conversation_id) or []
        if queue in queues:
            queues.remove(queue)
        if not queues:
            self._subscribers.pop(conversation_id, None)

    def subscriber_count(self, conversation_id: str) -> int:
        return len(self._subscribers.get(conversation_id) or [])

    async def publish(self, conversation_id: str, payload: dict) -> None:
        if not conversation_id:
            return
        for queue in list(self._subscribers.get(conversation_id) or []):
            try:
                queue.put_nowait(dict(payload or {}))
            except asyncio.QueueFull:
                logger.warning("subscriber queue full; dropping event | conversation_id=%s", conversation_id)

    async def listen(self, handler: Optional[FragmentHandler] = None) -> None:
        while True:
            await asyncio.sleep(3600)


class RedisFragmentBus:
    def __init__(self, redis_url: str, instance_id: str, local: LocalFragmentBus | None = None):
        try:
            import redis.asyncio as redis_async  # type: ignore
        except Exception as exc:
            raise RuntimeError("redis package not installed; install 'redis' to enable the fragment bus") from exc

        self._redis = redis_async.from_url(redis_url, decode_responses=True)
        self._instance_id = str(instance_id or "instance-unknown")
        self._pattern = "conversation:*:fragments"
        self._local = local or LocalFragmentBus(instance_id=self._instance_id)

    @staticmethod
    def _channel(conversation_id: str) -> str:
        return f"conversation:{conversation_id}:fragments"

    def subscribe(self, conversation_id: str) -> asyncio.Queue:
        return self._local.subscribe(conversation_id)

    def unsubscribe(self, conversation_id: str, queue: asyncio.Queue) -> None:
        self._local.unsubscribe(conversation_id, queue)

    async def publish(self, conversation_id: str, payload: dict) -> None:
        if not conversation_id:
            return
        await self._local.publish(conversation_id, payload)
        envelope = {
            "source_instance": self._instance_id,
            "published_at": time.time(),
            "payload": dict(payload or {}),
        }
        await self._redis.publish(self._channel(conversation_id), json.dumps(envelope, default=str))

    async def listen(self, handler: Optional[FragmentHandler] = None) -> None:
        pubsub = self._redis.pubsub()
        await pubsub.psubscribe(self._pattern)
        try:
            while True:
                message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                if not message:
                    continue
                if str(message.get("type") or "") not in {"message", "pmessage"}:
                    continue

                parts = str(message.get("channel") or "").split(":")
                if len(parts) < 3:
                    continue
                conversation_id = parts[1]

                try:
                    data = json.loads(str(message.get("data") or "{}"))
                except ValueError:
                    logger.warning("undecodable fragment envelope | conversation_id=%s", conversation_id)
                    continue

                source_instance = str(data.get("source_instance") or "")
                if source_instance == self._instance_id:
                    continue
                payload = data.get("payload") if isinstance(data.get("payload"), dict) else {}
                payload["__bus_published_at"] = float(data.get("published_at") or 0.0)
                await self._local.publish(conversation_id, payload)
                if handler is not None:
                    await handler(conversation_id, payload, source_instance)
        finally:
            await pubsub.close()


def build_fragment_bus(instance_id: str = INSTANCE_ID, enabled: bool | None = None) -> FragmentBus:
    if enabled is None:
        enabled = FRAGMENT_BUS_ENABLED
    if not enabled:
        return LocalFragmentBus(instance_id=instance_id)

    redis_url = str(REDIS_URL or "").strip()
    if not redis_url:
        raise RuntimeError("FRAGMENT_BUS_ENABLED=true requires REDIS_URL")

    return RedisFragmentBus(redis_url=redis_url, instance_id=instance_id)
