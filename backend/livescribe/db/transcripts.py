from __future__ import annotations

import asyncio
import logging
import threading
import time
from typing import Any, Protocol

from livescribe.core.config import TRANSCRIPT_STORE
from livescribe.diarization.models import SegmentationBatch
from livescribe.pipeline.models import TranscriptFragment

logger = logging.getLogger("livescribe.db.transcripts")


class TranscriptRepository(Protocol):
    async def max_sequence(self, conversation_id: str) -> int:
        ...

    async def save_fragment(self, fragment: TranscriptFragment) -> None:
        ...

    async def save_speaker_batch(self, conversation_id: str, batch: SegmentationBatch) -> None:
        ...

    async def record_terminal_failure(self, conversation_id: str, reason: str) -> None:
        ...


class InMemoryTranscriptRepository:
    def __init__(self):
        self._lock = threading.Lock()
        self._fragments: dict[str, list[TranscriptFragment]] = {}
        self._batches: dict[str, list[SegmentationBatch]] = {}
        self._failures: dict[str, list[dict[str, Any]]] = {}

    async def max_sequence(self, conversation_id: str) -> int:
        with self._lock:
            fragments = self._fragments.get(conversation_id) or []
            return max((item.sequence_number for item in fragments), default=0)

    async def save_fragment(self, fragment: TranscriptFragment) -> None:
        with self._lock:
            self._fragments.setdefault(fragment.conversation_id, []).append(fragment)

    async def save_speaker_batch(self, conversation_id: str, batch: SegmentationBatch) -> None:
        if batch.empty:
            return
        with self._lock:
            self._batches.setdefault(conversation_id, []).append(batch)

    async def record_terminal_failure(self, conversation_id: str, reason: str) -> None:
        with self._lock:
            self._failures.setdefault(conversation_id, []).append({"reason": reason, "failed_at": time.time()})

    def fragments(self, conversation_id: str) -> list[TranscriptFragment]:
        with self._lock:
            return list(self._fragments.get(conversation_id) or [])

    def speaker_batches(self, conversation_id: str) -> list[SegmentationBatch]:
        with self._lock:
            return list(self._batches.get(conversation_id) or [])

    def failures(self, conversation_id: str) -> list[dict[str, Any]]:
        with self._lock:
            return list(self._failures.get(conversation_id) or [])


class SupabaseTranscriptRepository:
    def __init__(self, client=None):
        if client is None:
            from livescribe.db.supabase import get_supabase_client

            client = get_supabase_client()
        self._client = client

    def _max_sequence(self, conversation_id: str) -> int:
        res = (
            self._client
            .table("transcripts")
            .select("sequence_number")
            .eq("conversation_id", conversation_id)
            .order("sequence_number", desc=True)
            .limit(1)
            .execute()
        )
        rows = getattr(res, "data", None) or []
        return int(rows[0].get("sequence_number") or 0) if rows else 0

    def _save_fragment(self, fragment: TranscriptFragment) -> None:
        self._client.table("transcripts").insert(
            {
                "conversation_id": fragment.conversation_id,
                "sequence_number": fragment.sequence_number,
                "content": fragment.text,
                "original_content": fragment.original_text,
                "corrections_applied": [item.to_dict() for item in fragment.corrections],
                "is_final": fragment.is_final,
                "confidence": fragment.confidence,
                "speaker_id": fragment.speaker_id,
            }
        ).execute()

    def _save_speaker_batch(self, conversation_id: str, batch: SegmentationBatch) -> None:
        if batch.segments:
            self._client.table("speaker_segments").insert(
                [
                    {
                        "conversation_id": conversation_id,
                        "speaker_id": segment.speaker_id,
                        "start_time": segment.start,
                        "end_time": segment.end,
                        "text": segment.text,
                        "word_count": segment.word_count,
                        "confidence": segment.confidence,
                    }
                    for segment in batch.segments
                ]
            ).execute()
        if batch.transitions:
            self._client.table("speaker_transitions").insert(
                [
                    {
                        "conversation_id": conversation_id,
                        "from_speaker": transition.from_speaker,
                        "to_speaker": transition.to_speaker,
                        "timestamp": transition.timestamp,
                        "word_index": transition.word_index,
                    }
                    for transition in batch.transitions
                ]
            ).execute()

    def _record_terminal_failure(self, conversation_id: str, reason: str) -> None:
        self._client.table("conversations").update(
            {"status": "failed", "failure_reason": reason}
        ).eq("id", conversation_id).execute()

    async def max_sequence(self, conversation_id: str) -> int:
        return await asyncio.to_thread(self._max_sequence, conversation_id)

    async def save_fragment(self, fragment: TranscriptFragment) -> None:
        await asyncio.to_thread(self._save_fragment, fragment)

    async def save_speaker_batch(self, conversation_id: str, batch: SegmentationBatch) -> None:
        if batch.empty:
            return
        await asyncio.to_thread(self._save_speaker_batch, conversation_id, batch)

    async def record_terminal_failure(self, conversation_id: str, reason: str) -> None:
        await asyncio.to_thread(self._record_terminal_failure, conversation_id, reason)


def build_transcript_repository(kind: str | None = None) -> TranscriptRepository:
    selected = str(kind or TRANSCRIPT_STORE or "memory").strip().lower()
    if selected == "memory":
        return InMemoryTranscriptRepository()
    if selected == "supabase":
        return SupabaseTranscriptRepository()
    raise RuntimeError(f"Unknown TRANSCRIPT_STORE '{selected}' (expected 'memory' or 'supabase')")
