"""Core value types shared by the check runner, alert engine and workflows."""

from __future__ import annotations

import copy
import uuid
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    return datetime.now(UTC)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    def at_least(self, other: Severity | str) -> bool:
        return self.rank >= Severity(other).rank


_SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class CheckKind(str, Enum):
    REAL_TIME = "real_time"
    COMPREHENSIVE = "comprehensive"


@dataclass(frozen=True)
class CheckResult:
    """Outcome of a single scenario execution. Never mutated after creation."""

    scenario_name: str
    passed: bool
    execution_time_ms: float
    error: str | None = None
    metrics: Mapping[str, float] = field(default_factory=dict)
    category: str | None = None
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "scenario_name": self.scenario_name,
            "passed": self.passed,
            "execution_time_ms": self.execution_time_ms,
            "error": self.error,
            "metrics": dict(self.metrics),
            "category": self.category,
            "timestamp": self.timestamp.isoformat(),
        }


_MISSING = object()


def _step(node: Any, part: str) -> Any:
    if isinstance(node, Mapping):
        return node.get(part, _MISSING)
    if isinstance(node, Sequence) and not isinstance(node, (str, bytes)):
        if part == "length":
            return len(node)
        if part.lstrip("-").isdigit():
            idx = int(part)
            if -len(node) <= idx < len(node):
                return node[idx]
        return _MISSING
    if isinstance(node, str) and part == "length":
        return len(node)
    return _MISSING


def _children(node: Any) -> list[tuple[str, Any]]:
    if isinstance(node, Mapping):
        return [(str(k), v) for k, v in node.items()]
    if isinstance(node, Sequence) and not isinstance(node, (str, bytes)):
        return [(str(i), v) for i, v in enumerate(node)]
    return []


def resolve_path(data: Any, path: str) -> Any:
    """Resolve a dot path against nested mappings. Missing segments yield None."""
    node = data
    for part in path.split("."):
        node = _step(node, part)
        if node is _MISSING:
            return None
    return node


def resolve_pattern(data: Any, pattern: str) -> list[tuple[str, Any]]:
    """
    Resolve a dot path whose segments may be ``*``.

    Returns every ``(concrete_path, value)`` pair whose path exists. A
    pattern without wildcards yields at most one pair.
    """
    branches: list[tuple[str, Any]] = [("", data)]
    for part in pattern.split("."):
        expanded: list[tuple[str, Any]] = []
        for prefix, node in branches:
            if part == "*":
                for key, child in _children(node):
                    expanded.append((f"{prefix}.{key}" if prefix else key, child))
            else:
                child = _step(node, part)
                if child is not _MISSING:
                    expanded.append((f"{prefix}.{part}" if prefix else part, child))
        branches = expanded
        if not branches:
            break
    return branches


@dataclass(frozen=True)
class MetricSnapshot:
    """Point-in-time metric tree. ``data`` is a private deep copy."""

    data: Mapping[str, Any]
    timestamp: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        object.__setattr__(self, "data", copy.deepcopy(dict(self.data)))

    def get(self, path: str) -> Any:
        return resolve_path(self.data, path)

    def resolve(self, pattern: str) -> list[tuple[str, Any]]:
        return resolve_pattern(self.data, pattern)

    def to_dict(self) -> dict[str, Any]:
        return {"timestamp": self.timestamp.isoformat(), "data": copy.deepcopy(dict(self.data))}


@dataclass(frozen=True)
class Notification:
    """Payload handed to notification sinks."""

    severity: Severity
    message: str
    title: str | None = None
    context: str | None = None
    recovery_actions: tuple[str, ...] = ()
    details: Mapping[str, Any] = field(default_factory=dict)
    source: str = "alert_engine"
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "severity": self.severity.value,
            "title": self.title,
            "message": self.message,
            "context": self.context,
            "recovery_actions": list(self.recovery_actions),
            "details": dict(self.details),
            "source": self.source,
            "timestamp": self.timestamp.isoformat(),
        }

    def render_text(self) -> str:
        lines = [f"[{self.severity.value.upper()}] {self.title or self.message}"]
        if self.title:
            lines.append(self.message)
        if self.context:
            lines.append(f"Context: {self.context}")
        if self.recovery_actions:
            lines.append("Suggested actions:")
            lines.extend(f"- {action}" for action in self.recovery_actions)
        return "\n".join(lines)


@dataclass(frozen=True)
class Alert:
    """Immutable record of a rule firing (or an ad-hoc alert)."""

    rule_id: str | None
    severity: Severity
    message: str
    category: str = "custom"
    rule_name: str | None = None
    details: Mapping[str, Any] = field(default_factory=dict)
    context: str = "general"
    recovery_actions: tuple[str, ...] = ()
    auto_recovery: bool = False
    id: str = field(default_factory=lambda: new_id("alert"))
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "rule_id": self.rule_id,
            "rule_name": self.rule_name,
            "severity": self.severity.value,
            "category": self.category,
            "message": self.message,
            "details": copy.deepcopy(dict(self.details)),
            "context": self.context,
            "recovery_actions": list(self.recovery_actions),
            "auto_recovery": self.auto_recovery,
        }

    def to_notification(self, message: str | None = None, *, prefix: str = "") -> Notification:
        return Notification(
            severity=self.severity,
            title=f"{prefix}{self.rule_name or 'Alert'}",
            message=message or self.message,
            context=self.context,
            recovery_actions=self.recovery_actions,
            details={"alert_id": self.id, "rule_id": self.rule_id, **dict(self.details)},
        )


@dataclass(frozen=True)
class Event:
    type: str
    data: Mapping[str, Any] = field(default_factory=dict)
    source: str | None = None
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "timestamp": self.timestamp.isoformat(),
            "data": dict(self.data),
            "source": self.source,
        }
