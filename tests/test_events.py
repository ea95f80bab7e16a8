from __future__ import annotations

import pytest

from debug_monitor.events import EventBus, EventType
from debug_monitor.models import Event


@pytest.mark.asyncio
async def test_handlers_run_in_subscription_order() -> None:
    bus = EventBus()
    seen: list[str] = []

    async def first(event: Event) -> None:
        seen.append("first")

    def second(event: Event) -> None:
        seen.append("second")

    bus.subscribe(EventType.ALERT_GENERATED, first)
    bus.subscribe(EventType.ALERT_GENERATED, second)
    bus.subscribe(EventType.MONITORING_STARTED, lambda e: seen.append("other"))

    await bus.emit(EventType.ALERT_GENERATED, {"severity": "high"})
    assert seen == ["first", "second"]


@pytest.mark.asyncio
async def test_failing_handler_does_not_block_others() -> None:
    bus = EventBus()
    seen: list[dict] = []

    def broken(event: Event) -> None:
        raise RuntimeError("boom")

    bus.subscribe("*", broken)
    bus.subscribe(EventType.MONITORING_ERROR, lambda e: seen.append(dict(e.data)))

    event = await bus.emit(EventType.MONITORING_ERROR, {"source": "test"}, source="unit")
    assert seen == [{"source": "test"}]
    assert event.source == "unit"
    assert bus.recent.latest() is event


@pytest.mark.asyncio
async def test_publish_nowait_delivers_after_drain() -> None:
    bus = EventBus()
    seen: list[str] = []

    async def handler(event: Event) -> None:
        seen.append(event.type)

    bus.subscribe(EventType.WORKFLOW_QUEUED, handler)
    bus.publish_nowait(Event(type=EventType.WORKFLOW_QUEUED.value))
    assert seen == []
    await bus.drain()
    assert seen == ["workflow_queued"]


def test_unsubscribe_and_listener_count() -> None:
    bus = EventBus()
    sub = bus.subscribe(EventType.ALERT_GENERATED, lambda e: None)
    bus.subscribe("*", lambda e: None)

    assert bus.listener_count(EventType.ALERT_GENERATED) == 2
    sub.cancel()
    assert bus.listener_count(EventType.ALERT_GENERATED) == 1
    assert bus.listener_count() == 1
