"""Tests for event bus."""

import asyncio
import pytest

from pastr.daemon.bus import EventBus, Event


@pytest.mark.asyncio
async def test_event_emit_and_subscribe():
    """Test basic pub/sub functionality."""
    bus = EventBus()
    await bus.start()

    received_events = []

    async def handler(event: Event):
        received_events.append(event)

    bus.subscribe("settings.*", handler)

    await bus.emit(Event(
        type="settings.changed",
        data={"key": "capture_enabled"}
    ))

    await asyncio.sleep(0.1)

    assert len(received_events) == 1
    assert received_events[0].type == "settings.changed"
    assert received_events[0].data["key"] == "capture_enabled"

    await bus.stop()


@pytest.mark.asyncio
async def test_wildcard_subscription():
    """Test wildcard pattern matching."""
    bus = EventBus()
    await bus.start()

    all_events = []
    sync_events = []

    async def all_handler(event: Event):
        all_events.append(event)

    async def sync_handler(event: Event):
        sync_events.append(event)

    bus.subscribe("*", all_handler)
    bus.subscribe("sync.*", sync_handler)

    await bus.emit(Event(type="sync.completed", data={}))
    await bus.emit(Event(type="snippets.changed", data={}))
    await bus.emit(Event(type="sync.skipped", data={}))

    await asyncio.sleep(0.1)

    assert len(all_events) == 3
    assert len(sync_events) == 2

    await bus.stop()


@pytest.mark.asyncio
async def test_bound_method_subscriber_stays_alive():
    """Bound methods are held weakly but stay subscribed while their owner lives."""
    bus = EventBus()
    await bus.start()

    class Listener:
        def __init__(self):
            self.seen = []

        async def on_event(self, event: Event):
            self.seen.append(event.type)

    listener = Listener()
    bus.subscribe("notification.*", listener.on_event)

    await bus.emit(Event(type="notification.created", data={}))
    await asyncio.sleep(0.1)

    assert listener.seen == ["notification.created"]

    await bus.stop()


@pytest.mark.asyncio
async def test_event_queue_full():
    """Test behavior when event queue is full."""
    bus = EventBus(maxsize=2)

    await bus.emit(Event(type="test.1", data={}))
    await bus.emit(Event(type="test.2", data={}))

    # This should be dropped
    await bus.emit(Event(type="test.3", data={}))

    stats = bus.get_stats()
    assert stats["dropped"] == 1
    assert stats["emitted"] == 2


def test_pattern_matching():
    """Test pattern matching logic."""
    bus = EventBus()

    assert bus._matches_pattern("sync.completed", "sync.completed")
    assert not bus._matches_pattern("sync.completed", "sync.failed")

    assert bus._matches_pattern("settings.changed", "settings.*")
    assert not bus._matches_pattern("settings.changed", "sync.*")

    assert bus._matches_pattern("anything", "*")
