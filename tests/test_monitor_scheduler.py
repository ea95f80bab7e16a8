from __future__ import annotations

import json
from pathlib import Path

import pytest

from debug_monitor.checks import CallableScenarioExecutor
from debug_monitor.config import MonitoringConfig, NotificationSettings
from debug_monitor.events import EventType
from debug_monitor.models import CheckKind, CheckResult, Severity
from debug_monitor.scheduler import MonitorScheduler, channels_from_settings
from debug_monitor.scheduler.monitor import COMPREHENSIVE_JOB_ID, DASHBOARD_JOB_ID, REAL_TIME_JOB_ID


def _executor() -> CallableScenarioExecutor:
    executor = CallableScenarioExecutor()
    executor.register("login", lambda: {"memoryUsage": 80.0})

    def checkout():
        raise AssertionError("total mismatch")

    executor.register("checkout", checkout)
    return executor


def _config(tmp_path: Path, **overrides) -> MonitoringConfig:
    data = {
        "scenarios": ["login", "checkout"],
        "reports_directory": str(tmp_path / "reports"),
        "include_default_workflows": False,
    }
    data.update(overrides)
    return MonitoringConfig(**data)


def _events(monitor: MonitorScheduler, event_type: EventType) -> list[dict]:
    seen: list[dict] = []
    monitor.bus.subscribe(event_type, lambda e: seen.append(dict(e.data)))
    return seen


@pytest.mark.asyncio
async def test_comprehensive_check_evaluates_alerts_and_reports(tmp_path, clock, make_sink) -> None:
    sink = make_sink()
    monitor = MonitorScheduler(_config(tmp_path), _executor(), sinks={"console": sink}, clock=clock)
    completed = _events(monitor, EventType.MONITORING_CHECK_COMPLETED)

    summary = await monitor.run_check(CheckKind.COMPREHENSIVE)
    await monitor.alert_engine.flush_actions()

    assert summary["scenarios_executed"] == 2
    assert summary["passed_scenarios"] == 1
    assert summary["cycle_failed"] is False
    rule_ids = {a.rule_id for a in monitor.alert_engine.get_alert_history()}
    assert {"critical-failure-rate", "scenario-failure"} <= rule_ids
    # a high alert on a comprehensive cycle produces a report
    assert summary["report_id"] is not None
    assert Path(monitor.reports.latest().paths["json"]).exists()
    assert completed == [summary]
    assert monitor.last_check == summary
    assert sink.received
    assert len(monitor.dashboard.series["failure_rate"]) == 1


@pytest.mark.asyncio
async def test_real_time_check_never_reports(tmp_path, clock) -> None:
    monitor = MonitorScheduler(_config(tmp_path, real_time_scenarios=["checkout"]), _executor(), clock=clock)

    summary = await monitor.run_check(CheckKind.REAL_TIME)

    assert summary["scenarios_executed"] == 1
    assert summary["report_id"] is None
    assert len(monitor.reports) == 0


class _UnreachableCollector:
    async def collect(self):
        raise ConnectionError("executor unreachable")


def _unreachable(tmp_path: Path, clock, **overrides) -> MonitorScheduler:
    config = _config(tmp_path, scenarios=["login"], **overrides)
    return MonitorScheduler(config, _executor(), collector=_UnreachableCollector(), clock=clock)


@pytest.mark.asyncio
async def test_cycle_failure_raises_critical_alert(tmp_path, clock) -> None:
    monitor = _unreachable(tmp_path, clock)

    summary = await monitor.run_check(CheckKind.COMPREHENSIVE)

    assert summary["cycle_failed"] is True
    alerts = monitor.alert_engine.get_alerts_by_severity(Severity.CRITICAL)
    assert [a.rule_id for a in alerts] == ["monitoring-cycle-failure"]
    assert alerts[0].message == "Monitoring check failed completely"
    assert "executor unreachable" in alerts[0].details["error"]


@pytest.mark.asyncio
async def test_cycle_failure_alert_has_a_cooldown(tmp_path, clock) -> None:
    monitor = _unreachable(tmp_path, clock, cycle_failure_cooldown_ms=60_000)

    def cycle_alerts() -> int:
        return sum(1 for a in monitor.alert_engine.get_alert_history() if a.rule_id == "monitoring-cycle-failure")

    await monitor.run_check(CheckKind.REAL_TIME)
    clock.advance(5_000)
    await monitor.run_check(CheckKind.REAL_TIME)
    assert cycle_alerts() == 1

    clock.advance(55_000)
    await monitor.run_check(CheckKind.REAL_TIME)
    assert cycle_alerts() == 2

    # a healthy cycle re-arms the alert
    monitor.check_runner.collector = None
    clock.advance(1_000)
    assert (await monitor.run_check(CheckKind.REAL_TIME))["cycle_failed"] is False
    monitor.check_runner.collector = _UnreachableCollector()
    clock.advance(1_000)
    await monitor.run_check(CheckKind.REAL_TIME)
    assert cycle_alerts() == 3


@pytest.mark.asyncio
async def test_failed_category_is_reported_alongside_scenarios(tmp_path, clock) -> None:
    class Executor(CallableScenarioExecutor):
        async def execute_by_category(self, category: str) -> list[CheckResult]:
            raise ConnectionError("ui runner offline")

    executor = Executor()
    executor.register("login", lambda: {"memoryUsage": 80.0})
    monitor = MonitorScheduler(_config(tmp_path, scenarios=["login"], scenario_categories=["ui"]),
                               executor, clock=clock)

    summary = await monitor.run_check(CheckKind.COMPREHENSIVE)

    assert summary["cycle_failed"] is False
    assert summary["scenarios_executed"] == 2
    assert summary["passed_scenarios"] == 1


@pytest.mark.asyncio
async def test_report_summaries_are_bounded(tmp_path, clock) -> None:
    monitor = MonitorScheduler(_config(tmp_path, history={"report_history_size": 2}), _executor(), clock=clock)

    for _ in range(3):
        # past every rule cooldown so each cycle raises a high alert
        clock.advance(300_000)
        await monitor.run_check(CheckKind.COMPREHENSIVE)

    assert monitor.reports_generated == 3
    assert len(monitor.reports) == 2
    assert monitor.get_statistics()["reports_generated"] == 3
    assert len(monitor.export_monitoring_data()["reports"]) == 2


@pytest.mark.asyncio
async def test_pipeline_errors_are_reported_not_raised(tmp_path, clock) -> None:
    monitor = MonitorScheduler(_config(tmp_path), _executor(), clock=clock)
    errors = _events(monitor, EventType.MONITORING_ERROR)

    async def broken(snapshot):
        raise RuntimeError("evaluation exploded")

    monitor.alert_engine.process_snapshot = broken

    assert await monitor.run_check() is None
    assert errors[0]["source"] == "comprehensive check"
    assert [a.rule_id for a in monitor.alert_engine.get_active_alerts()] == ["monitoring-error"]


@pytest.mark.asyncio
async def test_start_and_stop_manage_timers(tmp_path, clock) -> None:
    monitor = MonitorScheduler(_config(tmp_path), _executor(), clock=clock)
    started = _events(monitor, EventType.MONITORING_STARTED)
    stopped = _events(monitor, EventType.MONITORING_STOPPED)

    await monitor.start()
    try:
        await monitor.start()
        assert monitor.running
        assert started == [{"session_id": "monitoring_20240101_120000",
                            "interval_ms": 60_000, "real_time_interval_ms": 5_000}]
        job_ids = {j["job_id"] for j in monitor.job_scheduler.list_jobs()}
        assert {REAL_TIME_JOB_ID, COMPREHENSIVE_JOB_ID, DASHBOARD_JOB_ID} <= job_ids
        # the initial comprehensive check runs on start
        assert monitor.last_check["kind"] == "comprehensive"

        clock.advance(1_500)
        assert monitor.get_status()["uptime_ms"] == 1_500
    finally:
        await monitor.stop()
    await monitor.stop()

    assert not monitor.running
    assert stopped == [{"uptime_ms": 1_500}]
    assert monitor.job_scheduler.list_jobs() == []


@pytest.mark.asyncio
async def test_disabled_monitor_does_not_start(tmp_path, clock) -> None:
    monitor = MonitorScheduler(_config(tmp_path, enabled=False), _executor(), clock=clock)
    await monitor.start()
    assert not monitor.running
    assert monitor.last_check is None


@pytest.mark.asyncio
async def test_update_configuration(tmp_path, clock) -> None:
    monitor = MonitorScheduler(_config(tmp_path), _executor(), clock=clock)
    updates = _events(monitor, EventType.CONFIGURATION_UPDATED)

    with pytest.raises(ValueError):
        await monitor.update_configuration(polling_rate=3)
    assert updates == []

    await monitor.start()
    try:
        updated = await monitor.update_configuration(interval_ms=120_000, dashboard={"enabled": False})
        assert updated.interval_ms == 120_000
        assert monitor.check_runner.config is updated
        assert monitor.job_scheduler.jobs[COMPREHENSIVE_JOB_ID].interval_ms == 120_000
        assert monitor.job_scheduler.get_job_status(DASHBOARD_JOB_ID) is None
        assert updates == [{"changes": ["dashboard", "interval_ms"]}]
    finally:
        await monitor.stop()


@pytest.mark.asyncio
async def test_external_channels_only_receive_high_alerts(tmp_path, clock) -> None:
    alerts_file = tmp_path / "alerts.jsonl"
    config = _config(tmp_path, notifications={"alerts_file": str(alerts_file)})
    monitor = MonitorScheduler(config, _executor(), clock=clock)

    await monitor.run_check()
    await monitor.alert_engine.flush_actions()

    lines = [json.loads(line) for line in alerts_file.read_text().splitlines()]
    assert lines
    assert {line["severity"] for line in lines} <= {"high", "critical"}


@pytest.mark.asyncio
async def test_export_monitoring_data(tmp_path, clock) -> None:
    monitor = MonitorScheduler(_config(tmp_path), _executor(), clock=clock)
    await monitor.run_check()

    data = monitor.export_monitoring_data()

    assert data["exported_at"] == clock().isoformat()
    assert data["config"]["scenarios"] == ["login", "checkout"]
    assert len(data["checks"]) == 1
    assert len(data["history"]) == 1
    assert data["statistics"]["reports_generated"] == 1
    assert {"alerts", "workflows"} == set(monitor.export_configuration())


def test_channels_from_settings() -> None:
    settings = NotificationSettings(
        webhook="https://hooks.example.test/a",
        telegram_bot_token="123:abc",
        alerts_file="alerts.jsonl",
        email=["ops@example.test"],
    )
    channels = channels_from_settings(settings)
    # telegram needs a chat id too
    assert [c.id for c in channels] == ["webhook", "email", "file"]
    assert channels[1].config["recipients"] == ["ops@example.test"]
