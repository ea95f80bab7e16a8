from __future__ import annotations

import asyncio

import pytest

from debug_monitor.checks import CallableScenarioExecutor, CheckRunner, build_snapshot_data
from debug_monitor.config import MonitoringConfig
from debug_monitor.errors import ScenarioFailure
from debug_monitor.events import EventBus, EventType
from debug_monitor.history import MetricHistory
from debug_monitor.models import CheckKind, CheckResult


def _executor() -> CallableScenarioExecutor:
    executor = CallableScenarioExecutor()
    executor.register("login", lambda: {"memoryUsage": 120.0})
    executor.register("popup", lambda: {"memoryUsage": 180.0})

    def broken():
        raise RuntimeError("selector not found")

    executor.register("checkout", broken)
    return executor


@pytest.mark.asyncio
async def test_failing_scenario_does_not_stop_the_batch(clock) -> None:
    config = MonitoringConfig(scenarios=["login", "checkout", "popup"])
    history = MetricHistory(10)
    runner = CheckRunner(_executor(), history, config, clock=clock)

    cycle = await runner.run(CheckKind.COMPREHENSIVE)

    assert [r.scenario_name for r in cycle.results] == ["login", "checkout", "popup"]
    assert [r.passed for r in cycle.results] == [True, False, True]
    assert "selector not found" in cycle.results[1].error
    assert not cycle.failed

    snapshot = history.latest()
    assert snapshot is cycle.snapshot
    assert snapshot.get("checks.failed") == 1
    assert snapshot.get("checks.failure_rate") == pytest.approx(1 / 3)
    assert snapshot.get("scenarios.checkout.passed") is False
    assert snapshot.get("performance.memoryUsage") == 180.0


@pytest.mark.asyncio
async def test_real_time_pass_runs_first_scenario_by_default(clock) -> None:
    config = MonitoringConfig(scenarios=["login", "checkout"])
    runner = CheckRunner(_executor(), MetricHistory(10), config, clock=clock)

    results = await runner.run_cycle(CheckKind.REAL_TIME)
    assert [r.scenario_name for r in results] == ["login"]


@pytest.mark.asyncio
async def test_scenario_timeout_becomes_failed_result(clock) -> None:
    executor = CallableScenarioExecutor()

    async def hangs():
        await asyncio.sleep(5)

    executor.register("slow", hangs)
    config = MonitoringConfig(scenarios=["slow"], check_timeout_ms=50)
    runner = CheckRunner(executor, MetricHistory(10), config, clock=clock)

    cycle = await runner.run()
    assert cycle.results[0].passed is False
    assert "Timed out" in cycle.results[0].error


class _ExplodingExecutor:
    async def execute(self, name: str, timeout_ms: int) -> CheckResult:
        return CheckResult(scenario_name=name, passed=True, execution_time_ms=1.0)

    async def execute_by_category(self, category: str) -> list[CheckResult]:
        raise ConnectionError("executor unreachable")


class _UnreachableCollector:
    async def collect(self):
        raise ConnectionError("collector unreachable")


@pytest.mark.asyncio
async def test_failed_category_keeps_other_results(clock) -> None:
    config = MonitoringConfig(scenarios=["ok1", "ok2"], scenario_categories=["ui"])
    runner = CheckRunner(_ExplodingExecutor(), MetricHistory(10), config, clock=clock)

    cycle = await runner.run(CheckKind.COMPREHENSIVE)

    assert not cycle.failed
    assert [(r.scenario_name, r.passed) for r in cycle.results] == [
        ("ok1", True),
        ("ok2", True),
        ("category:ui", False),
    ]
    assert "executor unreachable" in cycle.results[2].error
    assert cycle.snapshot.get("checks.failed") == 1


@pytest.mark.asyncio
async def test_cycle_failure_yields_single_synthetic_result(clock) -> None:
    config = MonitoringConfig(scenarios=["login"])
    bus = EventBus()
    failures = []
    bus.subscribe(EventType.MONITORING_CYCLE_FAILED, lambda e: failures.append(dict(e.data)))
    history = MetricHistory(10)
    runner = CheckRunner(_ExplodingExecutor(), history, config, collector=_UnreachableCollector(),
                         bus=bus, clock=clock)

    cycle = await runner.run(CheckKind.COMPREHENSIVE)

    assert cycle.failed
    assert len(cycle.results) == 1
    assert cycle.results[0].scenario_name == "cycle:comprehensive"
    assert "collector unreachable" in cycle.results[0].error
    assert history.latest().get("checks.cycle_failed") is True
    assert failures == [{"kind": "comprehensive", "error": cycle.error}]
    assert runner.get_statistics()["failed_cycles"] == 1


@pytest.mark.asyncio
async def test_collector_data_is_merged(clock) -> None:
    class Collector:
        async def collect(self):
            return {"connection": {"latency": 40, "errors": []}, "performance": {"memoryUsage": 90}}

    config = MonitoringConfig(scenarios=["popup"])
    runner = CheckRunner(_executor(), MetricHistory(10), config, collector=Collector(), clock=clock)

    cycle = await runner.run()
    assert cycle.snapshot.get("connection.latency") == 40
    # collected memory wins over scenario metrics
    assert cycle.snapshot.get("performance.memoryUsage") == 90


def test_snapshot_data_for_empty_cycle() -> None:
    data = build_snapshot_data(CheckKind.REAL_TIME, [])
    assert data["checks"]["total"] == 0
    assert data["checks"]["failure_rate"] == 0.0
    assert data["scenarios"] == {}
    assert "performance" not in data


@pytest.mark.asyncio
async def test_scenario_failure_keeps_its_message(clock) -> None:
    executor = CallableScenarioExecutor()

    def empty_cart():
        raise ScenarioFailure("cart total was 0")

    executor.register("cart", empty_cart)
    runner = CheckRunner(executor, MetricHistory(10), MonitoringConfig(scenarios=["cart"]), clock=clock)

    cycle = await runner.run()
    assert cycle.results[0].error == "cart total was 0"
    assert not cycle.failed
