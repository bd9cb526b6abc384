import time

from livescribe.pipeline.models import ConversationStatus
from livescribe.session.registry import ConversationRegistry


def test_conversation_registry_register_mark_cleanup():
    registry = ConversationRegistry()
    pipeline = object()

    registry.register("c1", pipeline)
    item = registry.get("c1")
    assert item is not None
    assert item["status"] is ConversationStatus.ACTIVE
    assert registry.active_pipeline("c1") is pipeline
    assert registry.active_ids() == ["c1"]

    before_touch = float(item["updated_at"])
    time.sleep(0.01)
    registry.touch("c1")
    assert float(registry.get("c1")["updated_at"]) >= before_touch

    registry.mark("c1", ConversationStatus.FAILED)
    assert registry.active_pipeline("c1") is None
    assert registry.active_ids() == []
    assert registry.ids() == ["c1"]

    # ttl=0 clamps internally to >=30s; force an old timestamp for deterministic cleanup
    registry._conversations["c1"]["updated_at"] = time.time() - 3600
    assert registry.cleanup_inactive(ttl_sec=0) == 1
    assert registry.get("c1") is None


def test_cleanup_keeps_active_conversations():
    registry = ConversationRegistry()
    registry.register("c1", object())
    registry._conversations["c1"]["updated_at"] = time.time() - 3600

    assert registry.cleanup_inactive(ttl_sec=60) == 0
    assert registry.remove("c1") is not None
    assert registry.remove("c1") is None
