from __future__ import annotations

import httpx
import pytest

from debug_monitor.checks import HttpScenarioExecutor
from debug_monitor.config import HttpTarget


def _handler(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/health":
        return httpx.Response(200, text="ok")
    if request.url.path == "/status":
        return httpx.Response(200, text="degraded")
    if request.url.path == "/timeout":
        raise httpx.ConnectTimeout("connect timed out", request=request)
    return httpx.Response(503, text="unavailable")


TARGETS = {
    "health": HttpTarget(url="http://svc.test/health", category="smoke"),
    "status": HttpTarget(url="http://svc.test/status", contains="healthy", category="smoke"),
    "down": HttpTarget(url="http://svc.test/down", expected_status=[503]),
    "broken": HttpTarget(url="http://svc.test/broken"),
    "timeout": HttpTarget(url="http://svc.test/timeout"),
}


def _client() -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(_handler))


@pytest.mark.asyncio
async def test_status_and_body_checks() -> None:
    async with _client() as client:
        executor = HttpScenarioExecutor(TARGETS, client)

        health = await executor.execute("health", 1_000)
        assert health.passed
        assert health.metrics["status_code"] == 200
        assert health.metrics["latency_ms"] >= 0

        status = await executor.execute("status", 1_000)
        assert not status.passed
        assert status.error == "Response does not contain 'healthy'"

        # an expected 503 counts as a pass
        assert (await executor.execute("down", 1_000)).passed

        broken = await executor.execute("broken", 1_000)
        assert not broken.passed
        assert broken.error == "Unexpected status 503"
        assert broken.metrics["status_code"] == 503


@pytest.mark.asyncio
async def test_transport_errors_and_unknown_scenarios() -> None:
    async with _client() as client:
        executor = HttpScenarioExecutor(TARGETS, client)

        timeout = await executor.execute("timeout", 1_000)
        assert not timeout.passed
        assert timeout.error.startswith("ConnectTimeout")
        assert timeout.metrics == {}

        unknown = await executor.execute("missing", 1_000)
        assert not unknown.passed
        assert "No HTTP target configured" in unknown.error


@pytest.mark.asyncio
async def test_execute_by_category() -> None:
    async with _client() as client:
        results = await HttpScenarioExecutor(TARGETS, client).execute_by_category("smoke")

    assert [r.scenario_name for r in results] == ["health", "status"]
    assert all(r.category == "smoke" for r in results)
