"""Dispatch of workflow steps by type."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog

from ..errors import StepExecutionError
from ..handlers import HandlerRegistry
from ..history import MetricHistory
from ..models import CheckResult, Notification, Severity
from ..notifications.dispatcher import NotificationDispatcher
from ..reporting.report_generator import ReportGenerator, ReportOptions
from .models import WorkflowExecution, WorkflowStep

if TYPE_CHECKING:
    from ..alerts.engine import AlertEngine
    from ..checks.executor import ScenarioExecutor


logger = structlog.get_logger(__name__)

TREND_CHANGE_THRESHOLD = 0.1


def calculate_trend(values: list[float]) -> str:
    """Compare the mean of the newer half of ``values`` against the older half."""
    if len(values) < 2:
        return "insufficient-data"
    mid = len(values) // 2
    older = values[:mid]
    newer = values[mid:]
    old_avg = sum(older) / len(older)
    new_avg = sum(newer) / len(newer)
    if old_avg == 0:
        if new_avg == 0:
            return "stable"
        return "increasing" if new_avg > 0 else "decreasing"
    change = (new_avg - old_avg) / abs(old_avg)
    if change > TREND_CHANGE_THRESHOLD:
        return "increasing"
    if change < -TREND_CHANGE_THRESHOLD:
        return "decreasing"
    return "stable"


def threshold_violations(metrics: dict[str, Any], thresholds: dict[str, float]) -> list[dict[str, Any]]:
    violations = []
    for name, limit in thresholds.items():
        value = metrics.get(name)
        if isinstance(value, (int, float)) and not isinstance(value, bool) and value > limit:
            violations.append({"metric": name, "value": value, "threshold": limit})
    return violations


class StepRunner:
    """Runs a single workflow step. Failures raise ``StepExecutionError``."""

    def __init__(
        self,
        executor: ScenarioExecutor | None = None,
        report_generator: ReportGenerator | None = None,
        dispatcher: NotificationDispatcher | None = None,
        history: MetricHistory | None = None,
        alert_engine: AlertEngine | None = None,
        handlers: HandlerRegistry | None = None,
    ):
        self.executor = executor
        self.report_generator = report_generator
        self.dispatcher = dispatcher or NotificationDispatcher()
        self.history = history
        self.alert_engine = alert_engine
        self.handlers = handlers or HandlerRegistry()

    async def run(self, step: WorkflowStep, execution: WorkflowExecution, data: dict[str, Any]) -> Any:
        handler = getattr(self, f"_run_{step.type}", None)
        if handler is None:
            raise StepExecutionError(f"Unsupported step type: {step.type}")
        return await handler(step, execution, data)

    async def _run_test(self, step: WorkflowStep, execution: WorkflowExecution, data: dict[str, Any]) -> Any:
        if self.executor is None:
            raise StepExecutionError("No scenario executor configured")
        cfg = step.config
        scenarios = list(cfg.get("scenarios", []))
        categories = list(cfg.get("categories", []))
        if not scenarios and not categories:
            raise StepExecutionError("Test step names no scenarios or categories")

        timeout_ms = int(cfg.get("timeout_ms", step.timeout_ms))
        results: list[CheckResult] = []
        for name in scenarios:
            results.append(await self.executor.execute(name, timeout_ms))
        for category in categories:
            results.extend(await self.executor.execute_by_category(category))
        # a retried step keeps only its latest attempt
        execution.check_results[step.id] = results

        failed = [r for r in results if not r.passed]
        summary = {
            "total": len(results),
            "passed": len(results) - len(failed),
            "failed": len(failed),
            "failures": [{"scenario": r.scenario_name, "error": r.error} for r in failed],
        }
        if failed and not cfg.get("allow_failures", False):
            raise StepExecutionError(f"{len(failed)} of {len(results)} scenarios failed")
        return summary

    async def _run_analysis(self, step: WorkflowStep, execution: WorkflowExecution, data: dict[str, Any]) -> Any:
        analysis = step.config.get("analysis", "")
        latest = self.history.latest() if self.history is not None else None

        if analysis == "critical-issue":
            alert = data.get("alert") or {}
            if not alert and self.alert_engine is not None:
                recent = self.alert_engine.get_alerts_by_severity(Severity.CRITICAL)
                alert = recent[-1].to_dict() if recent else {}
            return {
                "issue": alert.get("message", "No critical alert in context"),
                "severity": alert.get("severity"),
                "context": alert.get("context"),
                "rule_id": alert.get("rule_id"),
                "suggested_actions": alert.get("recovery_actions", []),
            }

        if analysis == "performance":
            metrics: dict[str, Any] = {}
            if latest is not None:
                metrics = {
                    "failure_rate": latest.get("checks.failure_rate"),
                    "average_execution_time_ms": latest.get("checks.average_execution_time_ms"),
                    "memory_usage_mb": latest.get("performance.memoryUsage"),
                    "response_time_ms": latest.get("performance.responseTime"),
                }
            return {
                "metrics": metrics,
                "violations": threshold_violations(metrics, step.config.get("thresholds", {})),
            }

        if analysis == "trend":
            metric = step.config.get("metric", "checks.failure_rate")
            values = []
            if self.history is not None:
                for snap in self.history:
                    value = snap.get(metric)
                    if isinstance(value, (int, float)) and not isinstance(value, bool):
                        values.append(float(value))
            return {"metric": metric, "samples": len(values), "trend": calculate_trend(values)}

        if analysis == "session-summary":
            summary: dict[str, Any] = {"snapshots": len(self.history) if self.history is not None else 0}
            if self.alert_engine is not None:
                stats = self.alert_engine.get_statistics()
                summary["alerts"] = {
                    "total": stats["total_alerts"],
                    "by_severity": stats["by_severity"],
                    "top_rules": stats["top_alert_rules"][:3],
                }
            if latest is not None:
                summary["latest_checks"] = latest.get("checks")
            return summary

        if analysis == "recommendations":
            recommendations: list[str] = []
            if latest is not None:
                for name, scenario in (latest.get("scenarios") or {}).items():
                    if not scenario.get("passed", True):
                        recommendations.append(f"Investigate failing scenario '{name}'")
            if self.alert_engine is not None:
                for alert in self.alert_engine.get_recent_alerts(20):
                    for action in alert.recovery_actions:
                        if action not in recommendations:
                            recommendations.append(action)
            return {"recommendations": recommendations}

        logger.warning("Unknown analysis type", analysis=analysis, step_id=step.id)
        return {"analysis": analysis, "status": "unsupported"}

    async def _run_report(self, step: WorkflowStep, execution: WorkflowExecution, data: dict[str, Any]) -> Any:
        if self.report_generator is None:
            raise StepExecutionError("No report generator configured")
        cfg = step.config
        alerts = self.alert_engine.get_recent_alerts(int(cfg.get("alert_limit", 50))) if self.alert_engine else []
        options = ReportOptions(
            formats=tuple(cfg.get("formats", ["json"])),
            min_severity=Severity(cfg.get("min_severity", "low")),
            include_recommendations=bool(cfg.get("include_recommendations", True)),
        )
        summary = await self.report_generator.generate(
            cfg.get("session_id", execution.id), execution.collected_results(), alerts, options
        )
        return summary.to_dict()

    async def _run_notification(self, step: WorkflowStep, execution: WorkflowExecution, data: dict[str, Any]) -> Any:
        cfg = step.config
        channels = list(cfg.get("channels", ["console"]))
        message = str(cfg.get("message", "Workflow {workflow_id} reached step {step_id}")).format(
            workflow_id=execution.workflow_id,
            execution_id=execution.id,
            step_id=step.id,
        )
        notification = Notification(
            severity=Severity(cfg.get("severity", "low")),
            title=cfg.get("title", step.name or step.id),
            message=message,
            context=execution.workflow_id,
            details={"execution_id": execution.id},
            source="workflow",
        )
        delivered = await self.dispatcher.dispatch(notification, channels)
        if delivered == 0 and cfg.get("require_delivery", False):
            raise StepExecutionError(f"Notification was not delivered to any of {channels}")
        return {"delivered": delivered, "channels": channels}

    async def _run_recovery(self, step: WorkflowStep, execution: WorkflowExecution, data: dict[str, Any]) -> Any:
        outcomes = []
        for action in step.config.get("actions", []):
            try:
                result = await self.handlers.call(action, data)
                outcomes.append({"action": action, "success": result is not False, "result": result})
            except Exception as e:
                logger.error("Recovery action failed", action=action, step_id=step.id, error=str(e))
                outcomes.append({"action": action, "success": False, "error": str(e)})

        successful = sum(1 for o in outcomes if o["success"])
        if step.config.get("require_success", False) and successful < len(outcomes):
            raise StepExecutionError(f"{len(outcomes) - successful} recovery actions failed")
        return {"actions": outcomes, "successful": successful}

    async def _run_custom(self, step: WorkflowStep, execution: WorkflowExecution, data: dict[str, Any]) -> Any:
        name = step.config.get("handler", step.id)
        if not self.handlers.has(name):
            raise StepExecutionError(f"No handler registered for custom step '{name}'")
        return await self.handlers.call(name, step, execution, data)
