"""In-memory dashboard state fed by snapshots and dashboard notifications."""

from __future__ import annotations

from typing import Any

from .history import BoundedHistory
from .models import MetricSnapshot, Notification, utcnow


# metric name -> snapshot path
TRACKED_SERIES = {
    "failure_rate": "checks.failure_rate",
    "average_execution_time_ms": "checks.average_execution_time_ms",
    "memory_usage_mb": "performance.memoryUsage",
    "response_time_ms": "performance.responseTime",
    "health_score": "health.overallScore",
}


class Dashboard:
    def __init__(self, max_data_points: int = 200, max_notifications: int = 100):
        self.max_data_points = max_data_points
        self.series: dict[str, BoundedHistory[tuple[str, float]]] = {
            name: BoundedHistory(max_data_points) for name in TRACKED_SERIES
        }
        self.notifications: BoundedHistory[dict[str, Any]] = BoundedHistory(max_notifications)
        self.state: dict[str, Any] = {}
        self.refresh_count = 0

    def record_snapshot(self, snapshot: MetricSnapshot) -> None:
        ts = snapshot.timestamp.isoformat()
        for name, path in TRACKED_SERIES.items():
            value = snapshot.get(path)
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                self.series[name].append((ts, float(value)))

    def push_notification(self, notification: Notification) -> None:
        self.notifications.append(notification.to_dict())

    def refresh(self, status: dict[str, Any] | None = None) -> dict[str, Any]:
        self.refresh_count += 1
        self.state = {
            "updated_at": utcnow().isoformat(),
            "status": status or {},
            "series": {
                name: [{"timestamp": ts, "value": value} for ts, value in points]
                for name, points in self.series.items()
            },
            "notifications": self.notifications.recent(20),
        }
        return self.state

    def get_state(self) -> dict[str, Any]:
        return self.state or self.refresh()
