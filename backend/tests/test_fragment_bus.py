import pytest

from livescribe.session.fragment_bus import SUBSCRIBER_QUEUE_SIZE, LocalFragmentBus, build_fragment_bus


@pytest.mark.asyncio
async def test_local_bus_delivers_to_conversation_subscribers_only():
    bus = LocalFragmentBus(instance_id="test")
    first = bus.subscribe("c1")
    second = bus.subscribe("c1")
    other = bus.subscribe("c2")

    await bus.publish("c1", {"type": "transcript", "sequence_number": 1})

    assert (await first.get())["sequence_number"] == 1
    assert (await second.get())["sequence_number"] == 1
    assert other.empty()


@pytest.mark.asyncio
async def test_unsubscribe_stops_delivery():
    bus = LocalFragmentBus()
    queue = bus.subscribe("c1")
    bus.unsubscribe("c1", queue)

    await bus.publish("c1", {"type": "transcript"})

    assert queue.empty()
    assert bus.subscriber_count("c1") == 0


@pytest.mark.asyncio
async def test_full_subscriber_queue_drops_instead_of_blocking():
    bus = LocalFragmentBus()
    queue = bus.subscribe("c1")

    for i in range(SUBSCRIBER_QUEUE_SIZE + 5):
        await bus.publish("c1", {"n": i})

    assert queue.qsize() == SUBSCRIBER_QUEUE_SIZE


def test_build_fragment_bus_defaults_to_local():
    assert isinstance(build_fragment_bus("test", enabled=False), LocalFragmentBus)


def test_build_fragment_bus_requires_redis_url(monkeypatch):
    monkeypatch.setattr("livescribe.session.fragment_bus.REDIS_URL", "")
    with pytest.raises(RuntimeError):
        build_fragment_bus("test", enabled=True)
