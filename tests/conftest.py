from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from debug_monitor.models import Notification


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += timedelta(milliseconds=ms)


class RecordingSink:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.received: list[Notification] = []

    async def send(self, notification: Notification) -> None:
        if self.fail:
            raise RuntimeError("sink unavailable")
        self.received.append(notification)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_sink():
    return RecordingSink
