from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional

from livescribe.audio.normalizer import AudioChunkBuffer, normalize
from livescribe.core.config import AUDIO_BUFFER_THRESHOLD_BYTES, AUDIO_TARGET_SAMPLE_RATE, AdapterSettings
from livescribe.core.logger import log_event
from livescribe.corrections.engine import CorrectionEngine
from livescribe.db.transcripts import TranscriptRepository
from livescribe.diarization.models import SegmentationBatch
from livescribe.diarization.segmenter import DiarizationSegmenter, dominant_speaker
from livescribe.errors import NoActiveConversation
from livescribe.pipeline.models import ConversationStatus, TranscriptFragment
from livescribe.session.fragment_bus import FragmentBus
from livescribe.session.registry import ConversationRegistry
from livescribe.system_metrics import decrement_metric, increment_metric
from livescribe.transcription.adapter import StreamingTranscriptionAdapter
from livescribe.transcription.models import EventKind, RecognitionEvent, RecognitionResult
from livescribe.transcription.providers import build_provider

logger = logging.getLogger("pipeline_coordinator")

AdapterFactory = Callable[[str], Any]


def default_adapter_factory(conversation_id: str) -> StreamingTranscriptionAdapter:
    return StreamingTranscriptionAdapter(
        build_provider(),
        conversation_id=conversation_id,
        settings=AdapterSettings(),
    )


def _speaker_batch_payload(conversation_id: str, batch: SegmentationBatch) -> dict:
    return {
        "type": "speakers",
        "conversation_id": conversation_id,
        "segments": [
            {
                "speaker_id": segment.speaker_id,
                "start": segment.start,
                "end": segment.end,
                "text": segment.text,
                "word_count": segment.word_count,
                "confidence": segment.confidence,
            }
            for segment in batch.segments
        ],
        "transitions": [
            {
                "from_speaker": transition.from_speaker,
                "to_speaker": transition.to_speaker,
                "timestamp": transition.timestamp,
                "word_index": transition.word_index,
            }
            for transition in batch.transitions
        ],
    }


class ConversationPipeline:
    """
    Audio in, fragments out, for one conversation.

    A single consumer task drains ``adapter.events()`` so fragments leave in
    sequence order. The sequence counter lives here, not in the adapter, and
    survives provider reconnects.
    """

    def __init__(
        self,
        conversation_id: str,
        adapter,
        engine: CorrectionEngine,
        repository: TranscriptRepository,
        bus: FragmentBus,
        buffer: Optional[AudioChunkBuffer] = None,
        segmenter: Optional[DiarizationSegmenter] = None,
        on_failed: Optional[Callable[[str, str], None]] = None,
    ):
        self.conversation_id = conversation_id
        self.adapter = adapter
        self.engine = engine
        self.repository = repository
        self.bus = bus
        self.buffer = buffer or AudioChunkBuffer(AUDIO_BUFFER_THRESHOLD_BYTES)
        self.segmenter = segmenter or DiarizationSegmenter(conversation_id=conversation_id)
        self.status = ConversationStatus.ACTIVE
        self._on_failed = on_failed

        self._next_sequence: Optional[int] = None
        self._emit_lock = asyncio.Lock()
        self._consumer_task: Optional[asyncio.Task] = None
        self._failure_reported = False

    @property
    def last_sequence(self) -> int:
        return (self._next_sequence or 1) - 1

    async def start(self) -> None:
        self._consumer_task = asyncio.create_task(self._consume())
        await self.adapter.start()

    def submit_audio(self, payload: bytes, sample_rate: int, channels: int) -> bool:
        """Normalize, coalesce and hand off. True only when a coalesced frame was accepted."""
        frame = self.buffer.buffer(normalize(payload, sample_rate, channels))
        if frame is None:
            return False
        return bool(self.adapter.send_audio(frame))

    async def _consume(self) -> None:
        async for event in self.adapter.events():
            try:
                await self._handle_event(event)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(
                    "event handling failed kind=%s | conversation_id=%s err=%s",
                    event.kind.value,
                    self.conversation_id,
                    exc,
                )

    async def _handle_event(self, event: RecognitionEvent) -> None:
        if event.kind is EventKind.RESULT and event.result is not None:
            await self.handle_result(event.result)
        elif event.kind is EventKind.TERMINAL_FAILURE:
            await self.handle_terminal_failure(event.error or "transcription provider unavailable")
        elif event.kind in {EventKind.UTTERANCE_END, EventKind.SPEECH_STARTED}:
            await self.bus.publish(
                self.conversation_id,
                {"type": event.kind.value, "conversation_id": self.conversation_id},
            )
        elif event.kind is EventKind.ERROR:
            logger.warning("provider error | conversation_id=%s err=%s", self.conversation_id, event.error)

    async def _peek_sequence(self) -> int:
        if self._next_sequence is None:
            self._next_sequence = int(await self.repository.max_sequence(self.conversation_id)) + 1
        return self._next_sequence

    async def _emit_speaker_batch(self, batch: SegmentationBatch) -> None:
        try:
            await self.repository.save_speaker_batch(self.conversation_id, batch)
        except Exception as exc:
            increment_metric("speaker_batch_write_failures")
            logger.warning("speaker batch not saved | conversation_id=%s err=%s", self.conversation_id, exc)
        else:
            increment_metric("speaker_segments_emitted", len(batch.segments))
            increment_metric("speaker_transitions_emitted", len(batch.transitions))
        try:
            await self.bus.publish(self.conversation_id, _speaker_batch_payload(self.conversation_id, batch))
        except Exception as exc:
            logger.warning("speaker batch not published | conversation_id=%s err=%s", self.conversation_id, exc)

    async def handle_result(self, result: RecognitionResult) -> Optional[TranscriptFragment]:
        async with self._emit_lock:
            batch = self.segmenter.process(result)
            if not batch.empty:
                await self._emit_speaker_batch(batch)

            correction = self.engine.apply_corrections(result.text, self.conversation_id)
            if not correction.text.strip():
                return None

            # the number is only consumed once the fragment is persisted
            fragment = TranscriptFragment(
                conversation_id=self.conversation_id,
                sequence_number=await self._peek_sequence(),
                text=correction.text,
                original_text=result.text if correction.changed else None,
                corrections=correction.applied,
                is_final=result.is_final,
                confidence=float(result.confidence or 0.0),
                speaker_id=dominant_speaker(result),
                provider=result.provider,
                latency_ms=result.latency_ms,
            )
            await self.repository.save_fragment(fragment)
            self._next_sequence = fragment.sequence_number + 1
            await self.bus.publish(self.conversation_id, fragment.to_dict())
            increment_metric("fragments_emitted")
            return fragment

    async def handle_terminal_failure(self, reason: str) -> None:
        if self._failure_reported:
            return
        self._failure_reported = True
        self.status = ConversationStatus.FAILED
        try:
            await self.repository.record_terminal_failure(self.conversation_id, reason)
        except Exception as exc:
            logger.warning("terminal failure not recorded | conversation_id=%s err=%s", self.conversation_id, exc)
        await self.bus.publish(
            self.conversation_id,
            {"type": "terminal_failure", "conversation_id": self.conversation_id, "reason": reason},
        )
        log_event("pipeline", "conversation_failed", self.conversation_id, level=logging.ERROR, reason=reason)
        if self._on_failed is not None:
            self._on_failed(self.conversation_id, reason)

    async def close(self) -> None:
        await self.adapter.close()
        if self._consumer_task is not None and self._consumer_task is not asyncio.current_task():
            await asyncio.gather(self._consumer_task, return_exceptions=True)
        dropped = self.buffer.discard()
        if dropped:
            logger.debug("discarded %s buffered bytes | conversation_id=%s", dropped, self.conversation_id)
        self.segmenter.reset()
        if self.status is ConversationStatus.ACTIVE:
            self.status = ConversationStatus.ENDED

    def snapshot(self) -> dict:
        return {
            "conversation_id": self.conversation_id,
            "status": self.status.value,
            "last_sequence": self.last_sequence,
            "buffered_bytes": self.buffer.pending_bytes,
            "adapter": self.adapter.metrics(),
        }


class PipelineCoordinator:
    def __init__(
        self,
        engine: CorrectionEngine,
        repository: TranscriptRepository,
        bus: FragmentBus,
        adapter_factory: Optional[AdapterFactory] = None,
        registry: Optional[ConversationRegistry] = None,
        buffer_threshold_bytes: int = AUDIO_BUFFER_THRESHOLD_BYTES,
    ):
        self.engine = engine
        self.repository = repository
        self.bus = bus
        self.registry = registry or ConversationRegistry()
        self._adapter_factory = adapter_factory or default_adapter_factory
        self._buffer_threshold_bytes = buffer_threshold_bytes

    async def start_conversation(self, conversation_id: str) -> ConversationPipeline:
        conversation_id = str(conversation_id or "").strip()
        if not conversation_id:
            raise ValueError("conversation_id is required")

        existing = self.registry.active_pipeline(conversation_id)
        if existing is not None:
            return existing

        stale = self.registry.get(conversation_id)
        if stale is not None:
            await self._teardown(stale["pipeline"])

        pipeline = ConversationPipeline(
            conversation_id=conversation_id,
            adapter=self._adapter_factory(conversation_id),
            engine=self.engine,
            repository=self.repository,
            bus=self.bus,
            buffer=AudioChunkBuffer(self._buffer_threshold_bytes),
            on_failed=self._mark_failed,
        )
        self.registry.register(conversation_id, pipeline)
        increment_metric("conversations_started")
        increment_metric("conversations_active")
        log_event("pipeline", "conversation_started", conversation_id, provider=pipeline.adapter.provider.name)
        await pipeline.start()
        return pipeline

    def _mark_failed(self, conversation_id: str, reason: str) -> None:
        item = self.registry.get(conversation_id)
        if item and item["status"] is ConversationStatus.ACTIVE:
            self.registry.mark(conversation_id, ConversationStatus.FAILED)
            decrement_metric("conversations_active")

    def submit_audio(
        self,
        conversation_id: str,
        payload: bytes,
        sample_rate: int = AUDIO_TARGET_SAMPLE_RATE,
        channels: int = 1,
    ) -> bool:
        pipeline = self.registry.active_pipeline(conversation_id)
        if pipeline is None:
            increment_metric("audio_frames_rejected")
            raise NoActiveConversation(conversation_id)
        increment_metric("audio_frames_received")
        self.registry.touch(conversation_id)
        return pipeline.submit_audio(payload, sample_rate, channels)

    async def handle_result(self, conversation_id: str, result: RecognitionResult) -> Optional[TranscriptFragment]:
        pipeline = self.registry.active_pipeline(conversation_id)
        if pipeline is None:
            raise NoActiveConversation(conversation_id)
        return await pipeline.handle_result(result)

    async def end_conversation(self, conversation_id: str) -> bool:
        item = self.registry.get(conversation_id)
        if item is None:
            return False
        if item["status"] is ConversationStatus.ACTIVE:
            decrement_metric("conversations_active")
        await self._teardown(item["pipeline"])
        log_event("pipeline", "conversation_ended", conversation_id, last_sequence=item["pipeline"].last_sequence)
        return True

    async def _teardown(self, pipeline: ConversationPipeline) -> None:
        self.registry.remove(pipeline.conversation_id)
        await pipeline.close()

    def status(self, conversation_id: str) -> Optional[dict]:
        item = self.registry.get(conversation_id)
        if item is None:
            return None
        return item["pipeline"].snapshot()

    async def shutdown(self) -> None:
        for conversation_id in self.registry.ids():
            await self.end_conversation(conversation_id)
        await self.engine.close()
