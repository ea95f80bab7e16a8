"""Typed in-process event stream."""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

import structlog

from .history import BoundedHistory
from .models import Event


logger = structlog.get_logger(__name__)

EventHandler = Callable[[Event], Awaitable[None] | None]

ALL_EVENTS = "*"


class EventType(str, Enum):
    MONITORING_STARTED = "monitoring_started"
    MONITORING_STOPPED = "monitoring_stopped"
    MONITORING_CHECK_COMPLETED = "monitoring_check_completed"
    MONITORING_CYCLE_FAILED = "monitoring_cycle_failed"
    MONITORING_ERROR = "monitoring_error"
    MONITORING_REPORT_GENERATED = "monitoring_report_generated"
    CONFIGURATION_UPDATED = "configuration_updated"
    DASHBOARD_UPDATED = "dashboard_updated"
    ALERT_GENERATED = "alert_generated"
    ALERTS_CLEARED = "alerts_cleared"
    WORKFLOW_QUEUED = "workflow_queued"
    WORKFLOW_STARTED = "workflow_started"
    WORKFLOW_STEP_COMPLETED = "workflow_step_completed"
    WORKFLOW_COMPLETED = "workflow_completed"
    WORKFLOW_FAILED = "workflow_failed"
    WORKFLOW_CANCELLED = "workflow_cancelled"
    WORKFLOW_SKIPPED = "workflow_skipped"


def _key(event_type: EventType | str) -> str:
    return event_type.value if isinstance(event_type, EventType) else str(event_type)


@dataclass
class Subscription:
    event_type: str
    handler: EventHandler
    bus: EventBus

    def cancel(self) -> None:
        self.bus.unsubscribe(self)


class EventBus:
    """
    Publish/subscribe hub for engine lifecycle events.

    Handlers run in subscription order. A failing handler is logged and the
    remaining handlers still receive the event.
    """

    def __init__(self, recent_events: int = 200):
        self._subscriptions: list[Subscription] = []
        self._pending: set[asyncio.Task] = set()
        self.recent: BoundedHistory[Event] = BoundedHistory(recent_events)

    def subscribe(self, event_type: EventType | str, handler: EventHandler) -> Subscription:
        sub = Subscription(event_type=_key(event_type), handler=handler, bus=self)
        self._subscriptions.append(sub)
        return sub

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def listener_count(self, event_type: EventType | str | None = None) -> int:
        if event_type is None:
            return len(self._subscriptions)
        key = _key(event_type)
        return sum(1 for s in self._subscriptions if s.event_type in (key, ALL_EVENTS))

    def _matching(self, event: Event) -> list[Subscription]:
        return [s for s in self._subscriptions if s.event_type in (event.type, ALL_EVENTS)]

    async def publish(self, event: Event) -> None:
        self.recent.append(event)
        for sub in self._matching(event):
            try:
                result = sub.handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error("Event handler failed", event_type=event.type, error=str(e))

    async def emit(
        self,
        event_type: EventType | str,
        data: dict[str, Any] | None = None,
        source: str | None = None,
    ) -> Event:
        event = Event(type=_key(event_type), data=data or {}, source=source)
        await self.publish(event)
        return event

    def publish_nowait(self, event: Event) -> None:
        """Deliver from synchronous code: scheduled on the running loop when there is one."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop is not None:
            task = loop.create_task(self.publish(event))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
            return

        self.recent.append(event)
        for sub in self._matching(event):
            try:
                result = sub.handler(event)
                if inspect.iscoroutine(result):
                    result.close()
                    logger.warning("Async event handler skipped outside event loop", event_type=event.type)
            except Exception as e:
                logger.error("Event handler failed", event_type=event.type, error=str(e))

    async def drain(self) -> None:
        """Wait for deliveries scheduled by ``publish_nowait``."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
