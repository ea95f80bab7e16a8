"""Built-in workflows."""

from __future__ import annotations

from ..alerts.conditions import ThresholdCondition
from ..models import Severity
from .models import (
    EventTrigger,
    ManualTrigger,
    MetricGate,
    ScheduleTrigger,
    Workflow,
    WorkflowNotification,
    WorkflowSchedule,
    WorkflowStep,
)


def critical_alert_response() -> Workflow:
    return Workflow(
        id="critical-alert-response",
        name="Critical Alert Response",
        description="Diagnose, attempt recovery and report when a critical alert fires",
        triggers=[EventTrigger(severities=[Severity.CRITICAL])],
        steps=[
            WorkflowStep(
                id="diagnosis",
                name="Diagnose critical issue",
                type="analysis",
                config={"analysis": "critical-issue"},
                timeout_ms=30_000,
            ),
            WorkflowStep(
                id="recovery",
                name="Attempt automatic recovery",
                type="recovery",
                config={"actions": ["restart-contexts", "clear-caches"]},
                dependencies=["diagnosis"],
                timeout_ms=60_000,
                continue_on_failure=True,
            ),
            WorkflowStep(
                id="incident-report",
                name="Generate incident report",
                type="report",
                config={"formats": ["json", "markdown"], "min_severity": "high"},
                dependencies=["diagnosis"],
                timeout_ms=30_000,
            ),
            WorkflowStep(
                id="notify",
                name="Notify on-call",
                type="notification",
                config={
                    "channels": ["console", "dashboard"],
                    "severity": "critical",
                    "message": "Critical alert handled by workflow {workflow_id} ({execution_id})",
                },
                dependencies=["incident-report"],
            ),
        ],
        notifications=[WorkflowNotification(channel="console", events=["start", "complete", "error"])],
        priority="critical",
    )


def performance_monitoring() -> Workflow:
    return Workflow(
        id="performance-monitoring",
        name="Performance Monitoring",
        description="Periodic performance analysis with trend detection",
        triggers=[ScheduleTrigger(schedule=WorkflowSchedule(type="cron", expression="*/15 * * * *"))],
        conditions=[
            MetricGate(condition=ThresholdCondition(metric="checks.total", operator=">", value=0)),
        ],
        steps=[
            WorkflowStep(
                id="performance-analysis",
                name="Analyse performance",
                type="analysis",
                config={
                    "analysis": "performance",
                    "thresholds": {"average_execution_time_ms": 30_000, "memory_usage_mb": 200, "failure_rate": 0.3},
                },
                continue_on_failure=True,
            ),
            WorkflowStep(
                id="trend-analysis",
                name="Analyse failure-rate trend",
                type="analysis",
                config={"analysis": "trend", "metric": "checks.failure_rate"},
                continue_on_failure=True,
            ),
            WorkflowStep(
                id="performance-report",
                name="Performance report",
                type="report",
                config={"formats": ["json"], "min_severity": "medium"},
                dependencies=["performance-analysis"],
                continue_on_failure=True,
            ),
        ],
        priority="low",
    )


def session_summary() -> Workflow:
    return Workflow(
        id="session-summary",
        name="Development Session Summary",
        description="Summarise the monitoring session on demand",
        triggers=[ManualTrigger()],
        steps=[
            WorkflowStep(
                id="session-analysis",
                name="Session analysis",
                type="analysis",
                config={"analysis": "session-summary"},
            ),
            WorkflowStep(
                id="recommendations",
                name="Recommendations",
                type="analysis",
                config={"analysis": "recommendations"},
                dependencies=["session-analysis"],
            ),
            WorkflowStep(
                id="summary-report",
                name="Summary report",
                type="report",
                config={"formats": ["json", "markdown"]},
                dependencies=["session-analysis"],
            ),
        ],
        priority="low",
    )


def default_workflows() -> list[Workflow]:
    return [critical_alert_response(), performance_monitoring(), session_summary()]
