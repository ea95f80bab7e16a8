"""Workflow definitions and per-execution runtime state."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Callable, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator

from ..alerts.conditions import Condition
from ..errors import WorkflowValidationError
from ..history import BoundedHistory
from ..models import CheckResult, Severity, new_id, utcnow


StepType = Literal["test", "analysis", "report", "notification", "recovery", "custom"]
NotificationEvent = Literal["start", "complete", "error", "step_complete"]

_HHMM = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


class WorkflowStep(BaseModel):
    id: str
    name: str = ""
    type: StepType
    config: dict[str, Any] = Field(default_factory=dict)
    dependencies: list[str] = Field(default_factory=list, description="Step ids that must complete first")
    timeout_ms: int = Field(default=60_000, gt=0)
    retries: int = Field(default=0, ge=0, description="Extra attempts after the first failure")
    retry_delay_ms: int = Field(default=0, ge=0)
    continue_on_failure: bool = False


class WorkflowSchedule(BaseModel):
    """``interval`` and ``once`` expressions are milliseconds, ``cron`` is a 5-field expression."""
    type: Literal["interval", "cron", "once"]
    expression: str
    timezone: Optional[str] = None

    @field_validator("expression", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> Any:
        return str(value) if isinstance(value, int) else value

    @model_validator(mode="after")
    def _check_expression(self) -> WorkflowSchedule:
        if self.type == "cron":
            if len(self.expression.split()) != 5:
                raise ValueError(f"Invalid cron expression: {self.expression}")
        else:
            try:
                ms = int(self.expression)
            except ValueError:
                raise ValueError(f"{self.type} schedule needs a millisecond value, got {self.expression!r}") from None
            if ms < 0 or (self.type == "interval" and ms == 0):
                raise ValueError(f"Invalid {self.type} schedule: {self.expression}")
        return self

    @property
    def milliseconds(self) -> int:
        return int(self.expression)


class ScheduleTrigger(BaseModel):
    type: Literal["schedule"] = "schedule"
    schedule: WorkflowSchedule


class EventTrigger(BaseModel):
    """Fires on generated alerts matching every non-empty filter."""
    type: Literal["event"] = "event"
    severities: list[Severity] = Field(default_factory=list)
    categories: list[str] = Field(default_factory=list)
    rule_ids: list[str] = Field(default_factory=list)

    def matches(self, alert: dict[str, Any]) -> bool:
        if self.severities and alert.get("severity") not in {s.value for s in self.severities}:
            return False
        if self.categories and alert.get("category") not in self.categories:
            return False
        if self.rule_ids and alert.get("rule_id") not in self.rule_ids:
            return False
        return True


class ConditionTrigger(BaseModel):
    type: Literal["condition"] = "condition"
    condition: Condition
    cooldown_ms: int = Field(default=300_000, ge=0, description="Minimum gap between enqueues")


class ManualTrigger(BaseModel):
    type: Literal["manual"] = "manual"


Trigger = Annotated[
    Union[ScheduleTrigger, EventTrigger, ConditionTrigger, ManualTrigger],
    Field(discriminator="type"),
]


class MetricGate(BaseModel):
    type: Literal["metric"] = "metric"
    condition: Condition
    required: bool = True


class AlertGate(BaseModel):
    """Passes when an alert of at least ``min_severity`` was raised within ``within_ms``."""
    type: Literal["alert"] = "alert"
    min_severity: Severity = Severity.HIGH
    rule_id: Optional[str] = None
    within_ms: int = Field(default=300_000, gt=0)
    required: bool = True


class TimeGate(BaseModel):
    """Passes inside a daily HH:MM window (UTC). The window may wrap midnight."""
    type: Literal["time"] = "time"
    start: str = "00:00"
    end: str = "23:59"
    weekdays: list[int] = Field(default_factory=list, description="0=Monday; empty means every day")
    required: bool = True

    @field_validator("start", "end")
    @classmethod
    def _hhmm(cls, value: str) -> str:
        if not _HHMM.match(value):
            raise ValueError(f"Expected HH:MM, got {value!r}")
        return value

    def allows(self, now: datetime) -> bool:
        if self.weekdays and now.weekday() not in self.weekdays:
            return False
        current = now.strftime("%H:%M")
        if self.start <= self.end:
            return self.start <= current <= self.end
        return current >= self.start or current <= self.end


class CustomGate(BaseModel):
    type: Literal["custom"] = "custom"
    handler: str
    config: dict[str, Any] = Field(default_factory=dict)
    required: bool = True


Gate = Annotated[
    Union[MetricGate, AlertGate, TimeGate, CustomGate],
    Field(discriminator="type"),
]


class WorkflowNotification(BaseModel):
    channel: str
    events: list[NotificationEvent] = Field(default_factory=lambda: ["complete", "error"])
    config: dict[str, Any] = Field(default_factory=dict)


def validate_steps(steps: list[WorkflowStep]) -> None:
    """
    Step ids must be unique and every dependency must name an earlier step.
    Requiring earlier declaration also rules out dependency cycles.
    """
    seen: set[str] = set()
    for step in steps:
        if step.id in seen:
            raise WorkflowValidationError(f"Duplicate step id '{step.id}'")
        for dep in step.dependencies:
            if dep == step.id:
                raise WorkflowValidationError(f"Step '{step.id}' depends on itself")
            if dep not in seen:
                raise WorkflowValidationError(
                    f"Step '{step.id}' depends on '{dep}', which is not declared before it"
                )
        seen.add(step.id)


class Workflow(BaseModel):
    id: str
    name: str
    description: str = ""
    enabled: bool = True
    triggers: list[Trigger] = Field(default_factory=list)
    steps: list[WorkflowStep] = Field(min_length=1)
    schedule: Optional[WorkflowSchedule] = None
    conditions: list[Gate] = Field(default_factory=list, description="Gates checked before any step runs")
    notifications: list[WorkflowNotification] = Field(default_factory=list)
    auto_execution: bool = True
    priority: Literal["low", "medium", "high", "critical"] = "medium"

    @model_validator(mode="after")
    def _check_steps(self) -> Workflow:
        validate_steps(self.steps)
        return self

    def schedules(self) -> list[WorkflowSchedule]:
        found = [t.schedule for t in self.triggers if isinstance(t, ScheduleTrigger)]
        if self.schedule is not None:
            found.insert(0, self.schedule)
        return found


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class StepExecution:
    step_id: str
    name: str
    status: StepStatus = StepStatus.PENDING
    start_time: datetime | None = None
    end_time: datetime | None = None
    result: Any = None
    error: str | None = None
    retry_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_id": self.step_id,
            "name": self.name,
            "status": self.status.value,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "result": self.result,
            "error": self.error,
            "retry_count": self.retry_count,
        }


@dataclass
class WorkflowExecution:
    workflow_id: str
    trigger: str
    steps: list[StepExecution]
    data: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: new_id("exec"))
    status: ExecutionStatus = ExecutionStatus.PENDING
    start_time: datetime = field(default_factory=utcnow)
    end_time: datetime | None = None
    results: dict[str, Any] = field(default_factory=dict)
    logs: BoundedHistory[dict[str, Any]] = field(default_factory=lambda: BoundedHistory(100))
    check_results: dict[str, list[CheckResult]] = field(default_factory=dict, repr=False)
    clock: Callable[[], datetime] = field(default=utcnow, repr=False, compare=False)

    def step(self, step_id: str) -> StepExecution:
        for step in self.steps:
            if step.step_id == step_id:
                return step
        raise KeyError(step_id)

    def collected_results(self) -> list[CheckResult]:
        """Scenario results from each test step's final attempt, in step order."""
        return [r for step in self.steps for r in self.check_results.get(step.step_id, [])]

    def log(self, level: str, message: str, step_id: str | None = None, **data: Any) -> None:
        self.logs.append({
            "timestamp": self.clock().isoformat(),
            "level": level,
            "message": message,
            "step_id": step_id,
            "data": data,
        })

    @property
    def metrics(self) -> dict[str, Any]:
        completed = sum(1 for s in self.steps if s.status == StepStatus.COMPLETED)
        total = len(self.steps)
        end = self.end_time or self.clock()
        return {
            "duration_ms": (end - self.start_time).total_seconds() * 1000,
            "steps_completed": completed,
            "steps_total": total,
            "success_rate": completed / total if total else 0.0,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "trigger": self.trigger,
            "status": self.status.value,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "steps": [s.to_dict() for s in self.steps],
            "results": self.results,
            "metrics": self.metrics,
            "logs": self.logs.recent(),
        }
