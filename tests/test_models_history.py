from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from debug_monitor.history import BoundedHistory, MetricHistory
from debug_monitor.models import Alert, MetricSnapshot, Severity


def test_snapshot_is_a_private_copy() -> None:
    source = {"performance": {"memoryUsage": 120}, "contexts": {"bg": {"isHealthy": True}}}
    snap = MetricSnapshot(source)
    source["performance"]["memoryUsage"] = 999
    source["contexts"]["bg"]["isHealthy"] = False

    assert snap.get("performance.memoryUsage") == 120
    assert snap.get("contexts.bg.isHealthy") is True


def test_snapshot_path_resolution() -> None:
    snap = MetricSnapshot({
        "connection": {"errors": ["a", "b", "c", "d"], "latency": 40},
        "name": "popup",
    })
    assert snap.get("connection.errors.length") == 4
    assert snap.get("connection.errors.1") == "b"
    assert snap.get("connection.errors.9") is None
    assert snap.get("name.length") == 5
    assert snap.get("connection.missing.deeper") is None
    assert snap.get("connection.latency.value") is None


def test_snapshot_wildcard_resolution() -> None:
    snap = MetricSnapshot({
        "contexts": {
            "background": {"isHealthy": True, "errorCount": 1},
            "popup": {"isHealthy": False, "errorCount": 4},
            "content": {"errorCount": 2},
        }
    })
    branches = dict(snap.resolve("contexts.*.isHealthy"))
    assert branches == {"contexts.background.isHealthy": True, "contexts.popup.isHealthy": False}
    assert snap.resolve("nothing.*.here") == []


def test_bounded_history_evicts_oldest() -> None:
    history: BoundedHistory[int] = BoundedHistory(3)
    for i in range(1, 6):
        history.append(i)

    assert len(history) == 3
    assert list(history) == [3, 4, 5]
    assert history.latest() == 5
    assert history.recent(2) == [4, 5]
    assert history.recent(0) == []


def test_bounded_history_rejects_zero_capacity() -> None:
    with pytest.raises(ValueError):
        BoundedHistory(0)


def test_metric_history_window() -> None:
    t0 = datetime(2024, 1, 1, tzinfo=UTC)
    history = MetricHistory(10)
    for minute in range(5):
        history.append(MetricSnapshot({"v": minute}, timestamp=t0 + timedelta(minutes=minute)))

    window = history.window(t0 + timedelta(minutes=2), t0 + timedelta(minutes=3))
    assert [s.get("v") for s in window] == [2, 3]


def test_drop_before_uses_key() -> None:
    t0 = datetime(2024, 1, 1, tzinfo=UTC)
    history: BoundedHistory[Alert] = BoundedHistory(10)
    for minute in range(4):
        history.append(Alert(rule_id="r", severity=Severity.LOW, message="m",
                             timestamp=t0 + timedelta(minutes=minute)))

    removed = history.drop_before(t0 + timedelta(minutes=2), key=lambda a: a.timestamp)
    assert removed == 2
    assert len(history) == 2


def test_severity_ordering() -> None:
    assert Severity.CRITICAL.at_least(Severity.HIGH)
    assert Severity.HIGH.at_least("high")
    assert not Severity.MEDIUM.at_least(Severity.HIGH)


def test_alert_notification_carries_context() -> None:
    alert = Alert(
        rule_id="critical-memory-usage",
        rule_name="Critical Memory Usage",
        severity=Severity.CRITICAL,
        message="Memory high",
        context="performance",
        recovery_actions=("Restart extension",),
    )
    notification = alert.to_notification(prefix="[ESCALATED] ")
    assert notification.title == "[ESCALATED] Critical Memory Usage"
    assert notification.details["alert_id"] == alert.id
    assert "Restart extension" in notification.render_text()
