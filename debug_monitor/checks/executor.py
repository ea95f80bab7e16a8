"""Collaborator protocols for running scenarios and collecting live metrics."""

from __future__ import annotations

import asyncio
import inspect
import time
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, Protocol, runtime_checkable

from ..errors import ScenarioFailure
from ..models import CheckResult


@runtime_checkable
class ScenarioExecutor(Protocol):
    async def execute(self, name: str, timeout_ms: int) -> CheckResult: ...

    async def execute_by_category(self, category: str) -> list[CheckResult]: ...


@runtime_checkable
class SnapshotCollector(Protocol):
    async def collect(self) -> Mapping[str, Any]: ...


ScenarioFunc = Callable[[], Awaitable[Any] | Any]


class CallableScenarioExecutor:
    """
    Executor backed by plain callables.

    A scenario passes when its callable returns without raising. A mapping
    return value is recorded as the scenario's metrics.
    """

    def __init__(self):
        self.scenarios: dict[str, ScenarioFunc] = {}
        self.categories: dict[str, str] = {}

    def register(self, name: str, func: ScenarioFunc, category: str | None = None) -> None:
        self.scenarios[name] = func
        if category:
            self.categories[name] = category

    async def execute(self, name: str, timeout_ms: int) -> CheckResult:
        func = self.scenarios.get(name)
        if func is None:
            return CheckResult(scenario_name=name, passed=False, execution_time_ms=0.0,
                               error=f"Unknown scenario '{name}'")
        start = time.perf_counter()
        try:
            outcome = func()
            if inspect.isawaitable(outcome):
                outcome = await asyncio.wait_for(outcome, timeout=timeout_ms / 1000)
        except asyncio.TimeoutError:
            error = f"Timed out after {timeout_ms}ms"
        except ScenarioFailure as e:
            error = str(e)
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
        else:
            error = None
        if error is not None:
            return CheckResult(
                scenario_name=name,
                passed=False,
                execution_time_ms=(time.perf_counter() - start) * 1000,
                error=error,
                category=self.categories.get(name),
            )
        metrics = dict(outcome) if isinstance(outcome, Mapping) else {}
        return CheckResult(
            scenario_name=name,
            passed=True,
            execution_time_ms=(time.perf_counter() - start) * 1000,
            metrics=metrics,
            category=self.categories.get(name),
        )

    async def execute_by_category(self, category: str) -> list[CheckResult]:
        names = [n for n, c in self.categories.items() if c == category]
        return [await self.execute(name, 30_000) for name in names]
