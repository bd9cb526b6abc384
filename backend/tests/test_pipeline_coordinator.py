import pytest
import pytest_asyncio

from fakes import FakeAdapter, result, wait_until, word
from livescribe.corrections.engine import CorrectionEngine
from livescribe.corrections.store import InMemoryCorrectionStore
from livescribe.db.transcripts import InMemoryTranscriptRepository
from livescribe.errors import NoActiveConversation
from livescribe.pipeline.coordinator import PipelineCoordinator
from livescribe.pipeline.models import ConversationStatus
from livescribe.session.fragment_bus import LocalFragmentBus
from livescribe.system_metrics import get_metric
from livescribe.transcription.models import EventKind, RecognitionEvent


class Harness:
    def __init__(self, threshold: int = 8, repository=None):
        self.adapters: dict[str, FakeAdapter] = {}
        self.repository = repository or InMemoryTranscriptRepository()
        self.bus = LocalFragmentBus(instance_id="test")
        self.engine = CorrectionEngine(InMemoryCorrectionStore(seed_defaults=True))
        self.coordinator = PipelineCoordinator(
            engine=self.engine,
            repository=self.repository,
            bus=self.bus,
            adapter_factory=self._factory,
            buffer_threshold_bytes=threshold,
        )

    def _factory(self, conversation_id: str) -> FakeAdapter:
        adapter = FakeAdapter(conversation_id)
        self.adapters[conversation_id] = adapter
        return adapter


@pytest_asyncio.fixture
async def harness():
    h = Harness()
    await h.engine.load()
    yield h
    await h.coordinator.shutdown()


@pytest.mark.asyncio
async def test_sequence_numbers_are_gap_free_across_reconnect(harness):
    await harness.coordinator.start_conversation("c1")
    adapter = harness.adapters["c1"]

    adapter.push(RecognitionEvent(kind=EventKind.OPEN, provider="fake"))
    adapter.push(RecognitionEvent.of_result(result("first", is_final=False)))
    adapter.push(RecognitionEvent.of_result(result("first part")))
    # provider dropped and came back
    adapter.push(RecognitionEvent(kind=EventKind.OPEN, provider="fake"))
    adapter.push(RecognitionEvent.of_result(result("second part")))

    await wait_until(lambda: len(harness.repository.fragments("c1")) == 3)
    fragments = harness.repository.fragments("c1")
    assert [f.sequence_number for f in fragments] == [1, 2, 3]
    assert [f.is_final for f in fragments] == [False, True, True]


@pytest.mark.asyncio
async def test_sequence_seeded_from_repository(harness):
    pipeline = await harness.coordinator.start_conversation("c2")
    await pipeline.handle_result(result("one"))
    await harness.coordinator.end_conversation("c2")

    restarted = await harness.coordinator.start_conversation("c2")
    fragment = await restarted.handle_result(result("two"))

    assert fragment.sequence_number == 2


@pytest.mark.asyncio
async def test_corrections_applied_to_fragment(harness):
    pipeline = await harness.coordinator.start_conversation("c3")

    fragment = await pipeline.handle_result(result("Clawd works at Antrhopic"))

    assert fragment.text == "Claude works at Anthropic"
    assert fragment.original_text == "Clawd works at Antrhopic"
    assert {item.corrected for item in fragment.corrections} == {"Claude", "Anthropic"}

    plain = await pipeline.handle_result(result("nothing to fix"))
    assert plain.original_text is None
    assert plain.corrections == ()


@pytest.mark.asyncio
async def test_empty_text_produces_no_fragment(harness):
    pipeline = await harness.coordinator.start_conversation("c4")

    assert await pipeline.handle_result(result("   ")) is None
    fragment = await pipeline.handle_result(result("hello"))

    assert fragment.sequence_number == 1
    assert len(harness.repository.fragments("c4")) == 1


@pytest.mark.asyncio
async def test_speaker_batches_saved_per_result(harness):
    pipeline = await harness.coordinator.start_conversation("c5")
    words = [word("hi", 0.0, 0.5, "0"), word("yo", 0.6, 1.0, "1")]

    fragment = await pipeline.handle_result(result("hi yo", words=words))

    batches = harness.repository.speaker_batches("c5")
    assert len(batches) == 1
    assert [s.speaker_id for s in batches[0].segments] == ["0", "1"]
    assert len(batches[0].transitions) == 2
    assert fragment.speaker_id in {"0", "1"}


@pytest.mark.asyncio
async def test_submit_audio_without_conversation_raises(harness):
    rejected_before = get_metric("audio_frames_rejected")

    with pytest.raises(NoActiveConversation):
        harness.coordinator.submit_audio("missing", b"\x00\x00")

    assert get_metric("audio_frames_rejected") == rejected_before + 1


@pytest.mark.asyncio
async def test_submit_audio_normalizes_and_coalesces(harness):
    await harness.coordinator.start_conversation("c6")
    adapter = harness.adapters["c6"]

    # stereo 16 kHz: 4 bytes in -> 2 bytes mono out
    assert harness.coordinator.submit_audio("c6", b"\x02\x00\x04\x00" * 3, sample_rate=16000, channels=2) is False
    assert harness.coordinator.submit_audio("c6", b"\x02\x00\x04\x00", sample_rate=16000, channels=2) is True

    assert adapter.sent == [b"\x03\x00" * 4]


@pytest.mark.asyncio
async def test_end_conversation_discards_partial_audio_and_unregisters(harness):
    pipeline = await harness.coordinator.start_conversation("c7")
    adapter = harness.adapters["c7"]
    harness.coordinator.submit_audio("c7", b"\x01\x00")
    assert pipeline.buffer.pending_bytes == 2

    assert await harness.coordinator.end_conversation("c7") is True

    assert adapter.closed == 1
    assert pipeline.buffer.pending_bytes == 0
    assert pipeline.segmenter.last_speaker is None
    assert harness.coordinator.status("c7") is None
    with pytest.raises(NoActiveConversation):
        harness.coordinator.submit_audio("c7", b"\x01\x00")
    assert await harness.coordinator.end_conversation("c7") is False


@pytest.mark.asyncio
async def test_terminal_failure_marks_conversation_failed_once(harness):
    await harness.coordinator.start_conversation("c8")
    adapter = harness.adapters["c8"]
    queue = harness.bus.subscribe("c8")

    adapter.push(RecognitionEvent(kind=EventKind.TERMINAL_FAILURE, provider="fake", error="gave up"))
    adapter.push(RecognitionEvent(kind=EventKind.TERMINAL_FAILURE, provider="fake", error="gave up"))

    await wait_until(lambda: harness.coordinator.registry.active_pipeline("c8") is None)
    await wait_until(lambda: len(harness.repository.failures("c8")) == 1)

    assert harness.coordinator.registry.get("c8")["status"] is ConversationStatus.FAILED
    assert harness.repository.failures("c8")[0]["reason"] == "gave up"
    event = await queue.get()
    assert event == {"type": "terminal_failure", "conversation_id": "c8", "reason": "gave up"}
    assert queue.empty()
    with pytest.raises(NoActiveConversation):
        harness.coordinator.submit_audio("c8", b"\x00\x00")


@pytest.mark.asyncio
async def test_fragments_broadcast_on_bus(harness):
    await harness.coordinator.start_conversation("c9")
    adapter = harness.adapters["c9"]
    queue = harness.bus.subscribe("c9")

    adapter.push(RecognitionEvent.of_result(result("hello bus")))
    payload = await queue.get()

    assert payload["type"] == "transcript"
    assert payload["sequence_number"] == 1
    assert payload["text"] == "hello bus"


@pytest.mark.asyncio
async def test_start_conversation_is_idempotent_while_active(harness):
    first = await harness.coordinator.start_conversation("c10")
    second = await harness.coordinator.start_conversation("c10")
    assert first is second
    with pytest.raises(ValueError):
        await harness.coordinator.start_conversation("  ")


class FlakyRepository(InMemoryTranscriptRepository):
    """Fails the first N fragment and speaker batch writes."""

    def __init__(self, fragment_failures: int = 0, batch_failures: int = 0):
        super().__init__()
        self.fragment_failures = fragment_failures
        self.batch_failures = batch_failures

    async def save_fragment(self, fragment):
        if self.fragment_failures > 0:
            self.fragment_failures -= 1
            raise ConnectionError("database unavailable")
        await super().save_fragment(fragment)

    async def save_speaker_batch(self, conversation_id, batch):
        if self.batch_failures > 0:
            self.batch_failures -= 1
            raise ConnectionError("database unavailable")
        await super().save_speaker_batch(conversation_id, batch)


@pytest.mark.asyncio
async def test_failed_fragment_write_does_not_consume_sequence_number():
    h = Harness(repository=FlakyRepository(fragment_failures=1))
    await h.engine.load()
    try:
        await h.coordinator.start_conversation("c11")
        adapter = h.adapters["c11"]
        queue = h.bus.subscribe("c11")

        for text in ("one", "two", "three"):
            adapter.push(RecognitionEvent.of_result(result(text)))

        await wait_until(lambda: len(h.repository.fragments("c11")) == 2)
        fragments = h.repository.fragments("c11")
        assert [f.sequence_number for f in fragments] == [1, 2]
        assert [f.text for f in fragments] == ["two", "three"]
        assert [(await queue.get())["sequence_number"] for _ in range(2)] == [1, 2]
        assert queue.empty()
    finally:
        await h.coordinator.shutdown()


@pytest.mark.asyncio
async def test_speaker_batch_failure_still_emits_fragment():
    h = Harness(repository=FlakyRepository(batch_failures=1))
    await h.engine.load()
    try:
        pipeline = await h.coordinator.start_conversation("c12")
        failures_before = get_metric("speaker_batch_write_failures")
        words = [word("hi", 0.0, 0.5, "0")]

        fragment = await pipeline.handle_result(result("hi", words=words))

        assert fragment is not None
        assert fragment.sequence_number == 1
        assert h.repository.fragments("c12") == [fragment]
        assert h.repository.speaker_batches("c12") == []
        assert get_metric("speaker_batch_write_failures") == failures_before + 1
    finally:
        await h.coordinator.shutdown()
