"""Scenario execution and per-cycle metric snapshots."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import structlog

from ..config import MonitoringConfig
from ..errors import CycleFailure, ScenarioFailure
from ..events import EventBus, EventType
from ..history import BoundedHistory, MetricHistory
from ..models import CheckKind, CheckResult, MetricSnapshot, utcnow
from .executor import ScenarioExecutor, SnapshotCollector


logger = structlog.get_logger(__name__)

REAL_TIME_BUDGET_MS = 1000


@dataclass
class CheckCycle:
    kind: CheckKind
    started_at: datetime
    duration_ms: float
    results: list[CheckResult]
    snapshot: MetricSnapshot
    failed: bool = False
    error: str | None = None

    @property
    def passed(self) -> int:
        return sum(1 for r in self.results if r.passed)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "started_at": self.started_at.isoformat(),
            "duration_ms": self.duration_ms,
            "failed": self.failed,
            "error": self.error,
            "results": [r.to_dict() for r in self.results],
        }


def _number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def build_snapshot_data(
    kind: CheckKind,
    results: list[CheckResult],
    collected: Mapping[str, Any] | None = None,
    *,
    cycle_failed: bool = False,
    cycle_error: str | None = None,
) -> dict[str, Any]:
    """Merge collector data with metrics derived from the cycle's results."""
    data: dict[str, Any] = dict(collected or {})
    total = len(results)
    passed = sum(1 for r in results if r.passed)
    times = [r.execution_time_ms for r in results]

    data["checks"] = {
        "kind": kind.value,
        "total": total,
        "passed": passed,
        "failed": total - passed,
        "failure_rate": (total - passed) / total if total else 0.0,
        "average_execution_time_ms": sum(times) / total if total else 0.0,
        "max_execution_time_ms": max(times) if times else 0.0,
        "cycle_failed": cycle_failed,
        "cycle_error": cycle_error,
    }
    data["scenarios"] = {
        r.scenario_name: {
            **dict(r.metrics),
            "passed": r.passed,
            "execution_time_ms": r.execution_time_ms,
            "error": r.error,
            "category": r.category,
        }
        for r in results
    }

    performance = dict(data.get("performance") or {})
    if "memoryUsage" not in performance:
        memory = [r.metrics["memoryUsage"] for r in results if _number(r.metrics.get("memoryUsage"))]
        if memory:
            performance["memoryUsage"] = max(memory)
    if performance:
        data["performance"] = performance
    return data


class CheckRunner:
    """
    Runs scenario batches and records one snapshot per cycle.

    A failing or timing-out scenario becomes a failed result and the batch
    continues. If the cycle as a whole cannot complete, a single synthesized
    failed result is returned and the snapshot is flagged ``cycle_failed``.
    """

    def __init__(
        self,
        executor: ScenarioExecutor,
        history: MetricHistory,
        config: MonitoringConfig | None = None,
        collector: SnapshotCollector | None = None,
        bus: EventBus | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.executor = executor
        self.history = history
        self.config = config or MonitoringConfig()
        self.collector = collector
        self.bus = bus
        self.clock = clock
        self.cycles: BoundedHistory[CheckCycle] = BoundedHistory(self.config.history.check_history_size)

        self.cycles_by_kind = {kind.value: 0 for kind in CheckKind}
        self.failed_cycles = 0
        self.scenarios_executed = 0
        self.scenarios_passed = 0
        self.total_duration_ms = 0.0

    @property
    def latest_snapshot(self) -> MetricSnapshot | None:
        return self.history.latest()

    def scenarios_for(self, kind: CheckKind) -> list[str]:
        if kind == CheckKind.REAL_TIME:
            return self.config.effective_real_time_scenarios()
        return list(self.config.scenarios)

    async def _run_scenario(self, name: str) -> CheckResult:
        timeout_ms = self.config.check_timeout_ms
        start = time.perf_counter()
        try:
            return await asyncio.wait_for(self.executor.execute(name, timeout_ms), timeout=timeout_ms / 1000)
        except asyncio.TimeoutError:
            error = f"Timed out after {timeout_ms}ms"
        except ScenarioFailure as e:
            error = str(e)
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
        logger.warning("Scenario failed", scenario=name, error=error)
        return CheckResult(
            scenario_name=name,
            passed=False,
            execution_time_ms=(time.perf_counter() - start) * 1000,
            error=error,
        )

    async def _run_category(self, category: str) -> list[CheckResult]:
        start = time.perf_counter()
        try:
            return list(await self.executor.execute_by_category(category))
        except Exception as e:
            error = f"Category '{category}' could not run: {type(e).__name__}: {e}"
        logger.warning("Scenario category failed", category=category, error=error)
        return [CheckResult(
            scenario_name=f"category:{category}",
            passed=False,
            execution_time_ms=(time.perf_counter() - start) * 1000,
            error=error,
            category=category,
        )]

    async def _execute(self, kind: CheckKind) -> tuple[list[CheckResult], dict[str, Any]]:
        results: list[CheckResult] = []
        for name in self.scenarios_for(kind):
            results.append(await self._run_scenario(name))
        if kind == CheckKind.COMPREHENSIVE:
            for category in self.config.scenario_categories:
                results.extend(await self._run_category(category))

        collected: dict[str, Any] = {}
        if self.collector is not None:
            try:
                collected = dict(await self.collector.collect())
            except Exception as e:
                raise CycleFailure(f"Snapshot collector failed: {e}") from e
        return results, collected

    async def run(self, kind: CheckKind = CheckKind.COMPREHENSIVE) -> CheckCycle:
        started_at = self.clock()
        t0 = time.perf_counter()
        error: str | None = None
        collected: dict[str, Any] = {}

        try:
            if self.config.cycle_timeout_ms:
                results, collected = await asyncio.wait_for(
                    self._execute(kind), timeout=self.config.cycle_timeout_ms / 1000
                )
            else:
                results, collected = await self._execute(kind)
        except asyncio.TimeoutError:
            error = f"Cycle timed out after {self.config.cycle_timeout_ms}ms"
        except CycleFailure as e:
            error = str(e)
        except Exception as e:
            error = f"{type(e).__name__}: {e}"

        duration_ms = (time.perf_counter() - t0) * 1000
        if error is not None:
            logger.error("Check cycle failed", kind=kind.value, error=error)
            results = [
                CheckResult(
                    scenario_name=f"cycle:{kind.value}",
                    passed=False,
                    execution_time_ms=duration_ms,
                    error=error,
                )
            ]

        snapshot = MetricSnapshot(
            data=build_snapshot_data(kind, results, collected, cycle_failed=error is not None, cycle_error=error),
            timestamp=self.clock(),
        )
        self.history.append(snapshot)

        cycle = CheckCycle(
            kind=kind,
            started_at=started_at,
            duration_ms=duration_ms,
            results=results,
            snapshot=snapshot,
            failed=error is not None,
            error=error,
        )
        self.cycles.append(cycle)
        self.cycles_by_kind[kind.value] += 1
        self.total_duration_ms += duration_ms
        if cycle.failed:
            self.failed_cycles += 1
        else:
            self.scenarios_executed += len(results)
            self.scenarios_passed += cycle.passed

        if kind == CheckKind.REAL_TIME and duration_ms > REAL_TIME_BUDGET_MS:
            logger.warning("Real-time check exceeded budget", duration_ms=round(duration_ms, 1))

        if cycle.failed and self.bus is not None:
            await self.bus.emit(
                EventType.MONITORING_CYCLE_FAILED,
                {"kind": kind.value, "error": error},
                source="check_runner",
            )
        return cycle

    async def run_cycle(self, kind: CheckKind = CheckKind.COMPREHENSIVE) -> list[CheckResult]:
        return (await self.run(kind)).results

    def get_statistics(self) -> dict[str, Any]:
        total_cycles = sum(self.cycles_by_kind.values())
        return {
            "total_cycles": total_cycles,
            "cycles_by_kind": dict(self.cycles_by_kind),
            "failed_cycles": self.failed_cycles,
            "scenarios_executed": self.scenarios_executed,
            "scenarios_passed": self.scenarios_passed,
            "pass_rate": self.scenarios_passed / self.scenarios_executed if self.scenarios_executed else 0.0,
            "average_cycle_duration_ms": self.total_duration_ms / total_cycles if total_cycles else 0.0,
        }
