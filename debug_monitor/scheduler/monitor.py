"""Top-level driver: wires every component and owns the monitoring timers."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

import httpx
import structlog

from ..alerts.engine import AlertEngine
from ..alerts.rules import AlertChannel
from ..checks.executor import ScenarioExecutor, SnapshotCollector
from ..checks.runner import CheckRunner
from ..config import MonitoringConfig, NotificationSettings
from ..dashboard import Dashboard
from ..events import EventBus, EventType
from ..handlers import HandlerRegistry
from ..history import BoundedHistory, MetricHistory
from ..models import Alert, CheckKind, CheckResult, Severity, utcnow
from ..notifications.dispatcher import NotificationDispatcher
from ..notifications.sinks import NotificationSink
from ..reporting.report_generator import FileReportGenerator, ReportGenerator, ReportOptions, ReportSummary
from ..workflows.orchestrator import WorkflowOrchestrator
from ..workflows.steps import StepRunner
from .job_scheduler import JobScheduler


logger = structlog.get_logger(__name__)

REAL_TIME_JOB_ID = "real-time-check"
COMPREHENSIVE_JOB_ID = "comprehensive-check"
DASHBOARD_JOB_ID = "dashboard-refresh"

_TIMER_FIELDS = ("interval_ms", "real_time_checks", "real_time_interval_ms", "dashboard")


def channels_from_settings(settings: NotificationSettings) -> list[AlertChannel]:
    """External channels configured in the notification settings."""
    channels = []
    if settings.webhook:
        channels.append(AlertChannel(id="webhook", name="Webhook", type="webhook", config={"url": settings.webhook}))
    if settings.slack_webhook:
        channels.append(AlertChannel(id="slack", name="Slack", type="slack", config={"url": settings.slack_webhook}))
    if settings.email:
        channels.append(AlertChannel(
            id="email",
            name="Email",
            type="email",
            config={
                "recipients": list(settings.email),
                "smtp_host": settings.smtp_host,
                "smtp_port": settings.smtp_port,
                "sender": settings.smtp_sender,
            },
        ))
    if settings.telegram_bot_token and settings.telegram_chat_id:
        channels.append(AlertChannel(
            id="telegram",
            name="Telegram",
            type="telegram",
            config={"bot_token": settings.telegram_bot_token, "chat_id": settings.telegram_chat_id},
        ))
    if settings.alerts_file:
        channels.append(AlertChannel(id="file", name="Alert log", type="file", config={"path": settings.alerts_file}))
    return channels


class MonitorScheduler:
    """
    Owns the real-time, comprehensive and dashboard timers and the pipeline
    each tick runs: check cycle, alert evaluation, dashboard update, workflow
    condition triggers and reporting.

    Every component is constructed here and handed its collaborators
    explicitly; nothing is shared through module-level state.
    """

    def __init__(
        self,
        config: MonitoringConfig,
        executor: ScenarioExecutor,
        report_generator: ReportGenerator | None = None,
        collector: SnapshotCollector | None = None,
        sinks: dict[str, NotificationSink] | None = None,
        handlers: HandlerRegistry | None = None,
        clock: Callable[[], datetime] = utcnow,
        job_scheduler: JobScheduler | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.config = config
        self.clock = clock
        self.bus = EventBus()
        self.history = MetricHistory(config.history.metric_history_size)
        self.dashboard = Dashboard(config.dashboard.max_data_points)
        self.dispatcher = NotificationDispatcher()
        self.handlers = handlers or HandlerRegistry()
        self.job_scheduler = job_scheduler or JobScheduler()
        self.report_generator = report_generator or FileReportGenerator(config.reports_directory)

        self.check_runner = CheckRunner(executor, self.history, config, collector, self.bus, clock)
        external = channels_from_settings(config.notifications)
        self.alert_engine = AlertEngine(
            self.history,
            self.dispatcher,
            bus=self.bus,
            handlers=self.handlers,
            clock=clock,
            alert_history_size=config.history.alert_history_size,
            rules=config.rules,
            channels=external,
            include_defaults=config.include_default_rules,
            thresholds=config.alert_thresholds.model_dump(),
            dashboard=self.dashboard,
            http_client=http_client,
        )
        for channel in external:
            self.alert_engine.route_severity(channel.id, config.notifications.external_min_severity)
        if not config.notifications.console:
            self.alert_engine.set_channel_enabled("console", False)
        # injected sinks replace the ones built for configured channels
        for channel_id, sink in (sinks or {}).items():
            self.dispatcher.register(channel_id, sink)

        self.step_runner = StepRunner(
            executor=executor,
            report_generator=self.report_generator,
            dispatcher=self.dispatcher,
            history=self.history,
            alert_engine=self.alert_engine,
            handlers=self.handlers,
        )
        self.orchestrator = WorkflowOrchestrator(
            self.step_runner,
            dispatcher=self.dispatcher,
            bus=self.bus,
            history=self.history,
            alert_engine=self.alert_engine,
            handlers=self.handlers,
            job_scheduler=self.job_scheduler,
            clock=clock,
            execution_history_size=config.workflows.execution_history_size,
            queue_poll_interval_ms=config.workflows.queue_poll_interval_ms,
            workflows=list(config.workflow_definitions),
            include_defaults=config.include_default_workflows,
        )
        self.alert_engine.workflow_enqueuer = self.orchestrator.enqueue

        self.running = False
        self.started_at: datetime | None = None
        self.last_check: dict[str, Any] | None = None
        self.reports: BoundedHistory[ReportSummary] = BoundedHistory(config.history.report_history_size)
        self.reports_generated = 0
        self._cycle_alerted_at: datetime | None = None
        self._timer_jobs: list[str] = []

    @property
    def session_id(self) -> str:
        started = self.started_at or self.clock()
        return f"monitoring_{started.strftime('%Y%m%d_%H%M%S')}"

    # Lifecycle

    async def start(self) -> None:
        if self.running:
            logger.warning("Monitoring already running")
            return
        if not self.config.enabled:
            logger.info("Monitoring disabled by configuration")
            return

        self.running = True
        self.started_at = self.clock()
        await self.job_scheduler.start()

        await self.run_check(CheckKind.COMPREHENSIVE)
        self._schedule_timers()
        if self.config.workflows.enabled:
            await self.orchestrator.start()

        logger.info("Monitoring started",
                    interval_ms=self.config.interval_ms,
                    real_time=self.config.real_time_checks,
                    scenarios=len(self.config.scenarios))
        await self.bus.emit(EventType.MONITORING_STARTED, {
            "session_id": self.session_id,
            "interval_ms": self.config.interval_ms,
            "real_time_interval_ms": self.config.real_time_interval_ms if self.config.real_time_checks else None,
        }, source="monitor")

    async def stop(self) -> None:
        if not self.running:
            return
        self.running = False

        self._unschedule_timers()
        await self.orchestrator.stop()
        await self.alert_engine.cancel_actions()
        await self.job_scheduler.stop()

        uptime_ms = self.uptime_ms()
        logger.info("Monitoring stopped", uptime_ms=round(uptime_ms))
        await self.bus.emit(EventType.MONITORING_STOPPED, {"uptime_ms": uptime_ms}, source="monitor")

    def _schedule_timers(self) -> None:
        cfg = self.config
        if cfg.real_time_checks:
            self.job_scheduler.add_interval_job(
                REAL_TIME_JOB_ID, self.run_check,
                interval_ms=cfg.real_time_interval_ms,
                args=(CheckKind.REAL_TIME,),
                description="Real-time check",
            )
            self._timer_jobs.append(REAL_TIME_JOB_ID)
        self.job_scheduler.add_interval_job(
            COMPREHENSIVE_JOB_ID, self.run_check,
            interval_ms=cfg.interval_ms,
            args=(CheckKind.COMPREHENSIVE,),
            description="Comprehensive check",
        )
        self._timer_jobs.append(COMPREHENSIVE_JOB_ID)
        if cfg.dashboard.enabled:
            self.job_scheduler.add_interval_job(
                DASHBOARD_JOB_ID, self.refresh_dashboard,
                interval_ms=cfg.dashboard.refresh_interval_ms,
                description="Dashboard refresh",
            )
            self._timer_jobs.append(DASHBOARD_JOB_ID)

    def _unschedule_timers(self) -> None:
        for job_id in self._timer_jobs:
            self.job_scheduler.remove_job(job_id)
        self._timer_jobs = []

    # Timer callbacks

    async def run_check(self, kind: CheckKind = CheckKind.COMPREHENSIVE) -> dict[str, Any] | None:
        """One tick of the monitoring pipeline. Errors are reported, never raised."""
        try:
            cycle = await self.check_runner.run(kind)
            alerts: list[Alert] = []
            if cycle.failed and self._cycle_alert_due():
                self._cycle_alerted_at = self.clock()
                alerts.append(await self.alert_engine.add_alert(
                    Severity.CRITICAL,
                    "Monitoring check failed completely",
                    category="error",
                    rule_id="monitoring-cycle-failure",
                    rule_name="Monitoring Cycle Failure",
                    details={"kind": kind.value, "error": cycle.error},
                    context="monitoring",
                    recovery_actions=[
                        "Verify the scenario executor is reachable",
                        "Check the monitored system is running",
                    ],
                ))
            elif not cycle.failed:
                self._cycle_alerted_at = None
            alerts.extend(await self.alert_engine.process_snapshot(cycle.snapshot))
            self.dashboard.record_snapshot(cycle.snapshot)
            if self.config.workflows.enabled:
                await self.orchestrator.evaluate_condition_triggers(cycle.snapshot)

            report = None
            if kind == CheckKind.COMPREHENSIVE and any(a.severity.at_least(Severity.HIGH) for a in alerts):
                report = await self.generate_report(cycle.results, alerts)

            summary = {
                "kind": kind.value,
                "timestamp": cycle.started_at.isoformat(),
                "duration_ms": cycle.duration_ms,
                "scenarios_executed": len(cycle.results),
                "passed_scenarios": cycle.passed,
                "alerts_generated": len(alerts),
                "cycle_failed": cycle.failed,
                "report_id": report.report_id if report else None,
            }
            self.last_check = summary
            await self.bus.emit(EventType.MONITORING_CHECK_COMPLETED, summary, source="monitor")
            return summary
        except Exception as e:
            await self._handle_error(f"{kind.value} check", e)
            return None

    def _cycle_alert_due(self) -> bool:
        if self._cycle_alerted_at is None:
            return True
        cooldown = timedelta(milliseconds=self.config.cycle_failure_cooldown_ms)
        if self.clock() - self._cycle_alerted_at >= cooldown:
            return True
        logger.info("Cycle failure alert suppressed by cooldown", since=self._cycle_alerted_at.isoformat())
        return False

    async def refresh_dashboard(self) -> dict[str, Any] | None:
        try:
            state = self.dashboard.refresh(self.get_status())
            await self.bus.emit(EventType.DASHBOARD_UPDATED, {"updated_at": state["updated_at"]}, source="monitor")
            return state
        except Exception as e:
            await self._handle_error("dashboard refresh", e)
            return None

    async def generate_report(self, results: list[CheckResult], alerts: list[Alert]) -> ReportSummary | None:
        options = ReportOptions(
            formats=tuple(self.config.report_formats),
            min_severity=Severity.MEDIUM,
        )
        try:
            summary = await self.report_generator.generate(self.session_id, results, alerts, options)
        except Exception as e:
            logger.error("Report generation failed", error=str(e))
            await self.bus.emit(EventType.MONITORING_ERROR, {"source": "report", "error": str(e)}, source="monitor")
            return None
        self.reports.append(summary)
        self.reports_generated += 1
        await self.bus.emit(EventType.MONITORING_REPORT_GENERATED, summary.to_dict(), source="monitor")
        return summary

    async def _handle_error(self, source: str, error: Exception) -> None:
        logger.error("Monitoring callback failed", source=source, error=str(error))
        await self.bus.emit(EventType.MONITORING_ERROR, {"source": source, "error": str(error)}, source="monitor")
        try:
            await self.alert_engine.add_alert(
                Severity.HIGH,
                f"Monitoring error in {source}: {error}",
                category="error",
                rule_id="monitoring-error",
                rule_name="Monitoring Error",
                context="monitoring",
                recovery_actions=[
                    "Check monitoring logs",
                    "Verify scenario executor connectivity",
                    "Restart monitoring if errors persist",
                ],
            )
        except Exception as e:
            logger.error("Could not raise monitoring error alert", error=str(e))

    # Configuration

    async def update_configuration(self, **changes: Any) -> MonitoringConfig:
        unknown = sorted(set(changes) - set(MonitoringConfig.model_fields))
        if unknown:
            raise ValueError(f"Unknown configuration fields: {unknown}")

        data = self.config.model_dump()
        for key, value in changes.items():
            if isinstance(value, dict) and isinstance(data.get(key), dict):
                data[key] = {**data[key], **value}
            else:
                data[key] = value
        updated = MonitoringConfig.model_validate(data)

        previous = self.config
        self.config = updated
        self.check_runner.config = updated
        timers_changed = any(getattr(previous, f) != getattr(updated, f) for f in _TIMER_FIELDS)
        if self.running and timers_changed:
            self._unschedule_timers()
            self._schedule_timers()
            logger.info("Monitoring timers rescheduled")

        await self.bus.emit(EventType.CONFIGURATION_UPDATED, {"changes": sorted(changes)}, source="monitor")
        return updated

    # Queries

    def uptime_ms(self) -> float:
        if self.started_at is None:
            return 0.0
        return (self.clock() - self.started_at).total_seconds() * 1000

    def get_status(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "enabled": self.config.enabled,
            "session_id": self.session_id if self.started_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "uptime_ms": self.uptime_ms() if self.running else 0.0,
            "last_check": self.last_check,
            "history_size": len(self.history),
            "active_alerts": len(self.alert_engine.active_alerts),
            "scheduler": self.job_scheduler.get_scheduler_status(),
            "jobs": self.job_scheduler.list_jobs(),
            "workflows": self.orchestrator.get_status(),
        }

    def get_statistics(self) -> dict[str, Any]:
        return {
            "uptime_ms": self.uptime_ms(),
            "checks": self.check_runner.get_statistics(),
            "alerts": self.alert_engine.get_statistics(),
            "workflows": self.orchestrator.get_statistics(),
            "notifications": {
                "delivered": self.dispatcher.delivered,
                "failed": self.dispatcher.failed,
            },
            "reports_generated": self.reports_generated,
        }

    def export_configuration(self) -> dict[str, Any]:
        return {
            "alerts": self.alert_engine.export_configuration(),
            "workflows": self.orchestrator.export_configuration(),
        }

    def export_monitoring_data(self) -> dict[str, Any]:
        return {
            "exported_at": self.clock().isoformat(),
            "config": self.config.model_dump(mode="json"),
            "status": self.get_status(),
            "statistics": self.get_statistics(),
            "alerts": [a.to_dict() for a in self.alert_engine.get_alert_history()],
            "history": [s.to_dict() for s in self.history],
            "checks": [c.to_dict() for c in self.check_runner.cycles],
            "executions": [e.to_dict() for e in self.orchestrator.get_execution_history()],
            "reports": [r.to_dict() for r in self.reports],
        }
