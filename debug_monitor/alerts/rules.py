"""Alert rule, action and channel definitions plus the built-in rule set."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

from ..models import Severity
from .conditions import (
    CompositeCondition,
    Condition,
    PatternCondition,
    ThresholdCondition,
    TrendCondition,
)


RuleCategory = Literal["performance", "health", "error", "security", "custom"]
ActionType = Literal["notification", "recovery", "escalation", "custom", "workflow"]
ChannelType = Literal["console", "dashboard", "webhook", "email", "slack", "telegram", "file"]


class AlertAction(BaseModel):
    """Side effect run after a rule fires."""
    type: ActionType
    config: dict[str, Any] = Field(default_factory=dict, description="Action specific settings")
    enabled: bool = Field(default=True)
    delay_ms: int = Field(default=0, ge=0, description="Wait before running the action")


class AlertRule(BaseModel):
    """Declarative alert rule evaluated against every snapshot."""
    id: str
    name: str
    description: str = ""
    category: RuleCategory = "custom"
    severity: Severity = Severity.MEDIUM
    condition: Condition
    cooldown_period_ms: int = Field(default=300_000, ge=0, description="Minimum gap between firings")
    enabled: bool = True
    actions: list[AlertAction] = Field(default_factory=list)
    auto_recovery: bool = False
    recovery_actions: list[str] = Field(default_factory=list, description="Suggested human remediation steps")


class AlertChannel(BaseModel):
    """Named notification destination."""
    id: str
    name: str
    type: ChannelType
    config: dict[str, Any] = Field(default_factory=dict)
    enabled: bool = True


def _notify(*channels: str, template: str | None = None, immediate: bool = False) -> AlertAction:
    config: dict[str, Any] = {"channels": list(channels)}
    if template:
        config["template"] = template
    if immediate:
        config["immediate"] = True
    return AlertAction(type="notification", config=config)


def threshold_rules(
    failure_rate: float = 0.3,
    execution_time_ms: float = 30_000,
    memory_usage_mb: float = 200,
) -> list[AlertRule]:
    """Rules derived from the configured alert thresholds."""
    return [
        AlertRule(
            id="critical-failure-rate",
            name="High Scenario Failure Rate",
            description=f"More than {failure_rate:.0%} of scenarios failed in a cycle",
            category="error",
            severity=Severity.HIGH,
            condition=ThresholdCondition(metric="checks.failure_rate", operator=">", value=failure_rate),
            cooldown_period_ms=300_000,
            actions=[_notify("console", "dashboard", template="high-failure-rate")],
            recovery_actions=[
                "Inspect the failing scenarios in the latest report",
                "Check recent deployments for regressions",
            ],
        ),
        AlertRule(
            id="slow-execution",
            name="Slow Scenario Execution",
            description=f"Average scenario time exceeds {execution_time_ms:.0f}ms",
            category="performance",
            severity=Severity.MEDIUM,
            condition=ThresholdCondition(
                metric="checks.average_execution_time_ms", operator=">", value=execution_time_ms
            ),
            cooldown_period_ms=600_000,
            actions=[_notify("console", "dashboard", template="slow-response")],
            recovery_actions=["Profile the slowest scenarios", "Check host load"],
        ),
        AlertRule(
            id="high-memory-usage",
            name="High Memory Usage",
            description=f"Memory usage exceeds {memory_usage_mb:.0f}MB",
            category="performance",
            severity=Severity.HIGH,
            condition=ThresholdCondition(metric="performance.memoryUsage", operator=">", value=memory_usage_mb),
            cooldown_period_ms=300_000,
            actions=[_notify("console", "dashboard", template="critical-memory")],
            recovery_actions=["Look for leaking listeners or caches", "Restart the affected contexts"],
        ),
    ]


def instrumented_rules() -> list[AlertRule]:
    """Rules over the live-instrumented metric tree (contexts, performance, health, connection)."""
    return [
        AlertRule(
            id="critical-memory-usage",
            name="Critical Memory Usage",
            description="Memory usage above 150MB",
            category="performance",
            severity=Severity.CRITICAL,
            condition=ThresholdCondition(metric="performance.memoryUsage", operator=">", value=150),
            cooldown_period_ms=300_000,
            actions=[
                _notify("console", "dashboard", template="critical-memory", immediate=True),
                AlertAction(type="recovery", config={"script": "memory-cleanup"}, enabled=False),
            ],
            auto_recovery=True,
            recovery_actions=[
                "Check for memory leaks in extension contexts",
                "Restart extension if memory continues to grow",
                "Review recent code changes for memory-intensive operations",
            ],
        ),
        AlertRule(
            id="extension-context-failure",
            name="Extension Context Failure",
            description="An extension context reports unhealthy",
            category="health",
            severity=Severity.HIGH,
            condition=PatternCondition(metric="contexts.*.isHealthy", operator="==", value=False),
            cooldown_period_ms=180_000,
            actions=[
                _notify("console", "dashboard", template="context-failure"),
                AlertAction(type="recovery", config={"script": "context-restart"}, enabled=False),
            ],
            auto_recovery=True,
            recovery_actions=[
                "Check extension context logs for errors",
                "Verify context communication channels",
                "Restart affected extension context",
            ],
        ),
        AlertRule(
            id="high-error-rate",
            name="High Error Rate",
            description="More than 5 context errors within 5 minutes",
            category="error",
            severity=Severity.HIGH,
            condition=TrendCondition(
                metric="contexts.*.errorCount",
                operator=">",
                value=5,
                time_window_ms=300_000,
                aggregation="sum",
            ),
            cooldown_period_ms=600_000,
            actions=[_notify("console", "dashboard", template="high-error-rate")],
            recovery_actions=[
                "Review error logs for patterns",
                "Check for recent configuration changes",
                "Verify external dependencies",
            ],
        ),
        AlertRule(
            id="slow-response-time",
            name="Slow Response Time",
            description="Average response time above 3 seconds",
            category="performance",
            severity=Severity.MEDIUM,
            condition=TrendCondition(
                metric="performance.responseTime",
                operator=">",
                value=3000,
                time_window_ms=180_000,
                aggregation="avg",
            ),
            cooldown_period_ms=600_000,
            actions=[_notify("console", "dashboard", template="slow-response")],
            recovery_actions=[
                "Check for performance bottlenecks",
                "Review recent changes affecting performance",
                "Monitor resource usage",
            ],
        ),
        AlertRule(
            id="connection-instability",
            name="Connection Instability",
            description="Connection latency or error count elevated",
            category="health",
            severity=Severity.HIGH,
            condition=CompositeCondition(
                logical_operator="OR",
                conditions=[
                    ThresholdCondition(metric="connection.latency", operator=">", value=5000),
                    ThresholdCondition(metric="connection.errors.length", operator=">", value=3),
                ],
            ),
            cooldown_period_ms=300_000,
            actions=[_notify("console", "dashboard", template="connection-instability")],
            recovery_actions=[
                "Check server status",
                "Verify network connectivity",
                "Restart the connection if needed",
            ],
        ),
        AlertRule(
            id="overall-health-degradation",
            name="Overall Health Degradation",
            description="Average health score below 0.6 over 10 minutes",
            category="health",
            severity=Severity.MEDIUM,
            condition=TrendCondition(
                metric="health.overallScore",
                operator="<",
                value=0.6,
                time_window_ms=600_000,
                aggregation="avg",
            ),
            cooldown_period_ms=1_800_000,
            actions=[_notify("console", "dashboard", template="health-degradation")],
            recovery_actions=[
                "Run comprehensive health check",
                "Review all system components",
                "Check for resource constraints",
            ],
        ),
    ]


def scenario_rules() -> list[AlertRule]:
    return [
        AlertRule(
            id="scenario-failure",
            name="Scenario Failure",
            description="At least one scenario failed",
            category="error",
            severity=Severity.MEDIUM,
            condition=PatternCondition(metric="scenarios.*.passed", operator="==", value=False),
            cooldown_period_ms=300_000,
            actions=[_notify("console", "dashboard", template="scenario-failure")],
            recovery_actions=["Re-run the failing scenario in isolation", "Inspect the scenario error output"],
        ),
    ]


def default_rules(
    failure_rate: float = 0.3,
    execution_time_ms: float = 30_000,
    memory_usage_mb: float = 200,
) -> list[AlertRule]:
    return (
        threshold_rules(failure_rate, execution_time_ms, memory_usage_mb)
        + instrumented_rules()
        + scenario_rules()
    )


def default_channels() -> list[AlertChannel]:
    return [
        AlertChannel(id="console", name="Console", type="console"),
        AlertChannel(id="dashboard", name="Dashboard", type="dashboard"),
    ]
