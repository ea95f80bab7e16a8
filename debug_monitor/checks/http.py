"""Scenario executor that probes HTTP endpoints."""

from __future__ import annotations

import time
from collections.abc import Mapping

import httpx
import structlog

from ..config import HttpTarget
from ..models import CheckResult


logger = structlog.get_logger(__name__)


class HttpScenarioExecutor:
    """Runs each scenario as a single HTTP request against its configured target."""

    def __init__(self, targets: Mapping[str, HttpTarget], client: httpx.AsyncClient):
        self.targets = dict(targets)
        self.client = client

    def _failed(self, name: str, target: HttpTarget | None, start: float, error: str, metrics=None) -> CheckResult:
        return CheckResult(
            scenario_name=name,
            passed=False,
            execution_time_ms=(time.perf_counter() - start) * 1000,
            error=error,
            metrics=metrics or {},
            category=target.category if target else None,
        )

    async def execute(self, name: str, timeout_ms: int) -> CheckResult:
        start = time.perf_counter()
        target = self.targets.get(name)
        if target is None:
            return self._failed(name, None, start, f"No HTTP target configured for '{name}'")

        try:
            response = await self.client.request(target.method, target.url, timeout=timeout_ms / 1000)
        except httpx.HTTPError as e:
            logger.warning("HTTP scenario request failed", scenario=name, url=target.url, error=str(e))
            return self._failed(name, target, start, f"{type(e).__name__}: {e}")

        elapsed_ms = (time.perf_counter() - start) * 1000
        metrics = {"status_code": response.status_code, "latency_ms": elapsed_ms}

        if target.expected_status:
            status_ok = response.status_code in target.expected_status
        else:
            status_ok = response.status_code < 400
        if not status_ok:
            return self._failed(name, target, start, f"Unexpected status {response.status_code}", metrics)
        if target.contains and target.contains not in response.text:
            return self._failed(name, target, start, f"Response does not contain {target.contains!r}", metrics)

        return CheckResult(
            scenario_name=name,
            passed=True,
            execution_time_ms=elapsed_ms,
            metrics=metrics,
            category=target.category,
        )

    async def execute_by_category(self, category: str) -> list[CheckResult]:
        names = [name for name, target in self.targets.items() if target.category == category]
        return [await self.execute(name, 30_000) for name in names]
