from __future__ import annotations

import time
from threading import Lock
from typing import Any

from livescribe.pipeline.models import ConversationStatus


class ConversationRegistry:
    """Thread-safe index of conversation pipelines keyed by conversation id."""

    def __init__(self):
        self._lock = Lock()
        self._conversations: dict[str, dict[str, Any]] = {}

    def register(self, conversation_id: str, pipeline) -> None:
        now_ts = time.time()
        with self._lock:
            self._conversations[conversation_id] = {
                "pipeline": pipeline,
                "status": ConversationStatus.ACTIVE,
                "created_at": now_ts,
                "updated_at": now_ts,
            }

    def touch(self, conversation_id: str) -> None:
        with self._lock:
            if conversation_id in self._conversations:
                self._conversations[conversation_id]["updated_at"] = time.time()

    def mark(self, conversation_id: str, status: ConversationStatus) -> None:
        with self._lock:
            if conversation_id in self._conversations:
                self._conversations[conversation_id]["status"] = status
                self._conversations[conversation_id]["updated_at"] = time.time()

    def get(self, conversation_id: str) -> dict[str, Any] | None:
        with self._lock:
            item = self._conversations.get(conversation_id)
            return dict(item) if item else None

    def active_pipeline(self, conversation_id: str):
        with self._lock:
            item = self._conversations.get(conversation_id)
            if not item or item["status"] != ConversationStatus.ACTIVE:
                return None
            return item["pipeline"]

    def active_ids(self) -> list[str]:
        with self._lock:
            return [
                conversation_id
                for conversation_id, item in self._conversations.items()
                if item["status"] == ConversationStatus.ACTIVE
            ]

    def ids(self) -> list[str]:
        with self._lock:
            return list(self._conversations)

    def remove(self, conversation_id: str) -> dict[str, Any] | None:
        with self._lock:
            return self._conversations.pop(conversation_id, None)

    def cleanup_inactive(self, ttl_sec: float) -> int:
        cutoff = time.time() - max(30.0, float(ttl_sec or 900.0))
        removed = 0
        with self._lock:
            for conversation_id, data in list(self._conversations.items()):
                if data["status"] == ConversationStatus.ACTIVE:
                    continue
                if float(data.get("updated_at") or 0.0) <= cutoff:
                    self._conversations.pop(conversation_id, None)
                    removed += 1
        return removed
