"""Main entry point for the debug monitor service."""

import asyncio
import json
import logging
import sys
from typing import Optional

import httpx
import structlog
import uvicorn
from fastapi import BackgroundTasks, FastAPI
from fastapi.responses import JSONResponse

from debug_monitor.checks import HttpScenarioExecutor
from debug_monitor.config import MonitoringConfig, get_config
from debug_monitor.errors import WorkflowNotFoundError
from debug_monitor.models import CheckKind, Severity
from debug_monitor.scheduler import MonitorScheduler


def configure_logging(config: MonitoringConfig) -> None:
    """Configure structured logging once per process."""
    renderer = (
        structlog.processors.JSONRenderer()
        if config.log_format == "json"
        else structlog.dev.ConsoleRenderer()
    )
    level = getattr(logging, config.log_level.upper(), logging.INFO)
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="ISO"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


logger = structlog.get_logger(__name__)


def build_monitor(config: MonitoringConfig, http_client: httpx.AsyncClient) -> MonitorScheduler:
    """Monitor probing the configured HTTP targets."""
    executor = HttpScenarioExecutor(config.http_targets, http_client)
    return MonitorScheduler(config, executor, http_client=http_client)


def create_app(monitor: Optional[MonitorScheduler] = None, config: Optional[MonitoringConfig] = None) -> FastAPI:
    """
    Build the HTTP API. When ``monitor`` is given it is used as-is and the
    caller owns its HTTP client; otherwise one is built from ``config``.
    """
    app = FastAPI(title="Debug Monitor", version="0.1.0")
    app.state.monitor = monitor
    app.state.http_client = None

    @app.on_event("startup")
    async def startup_event():
        """Start monitoring on startup."""
        if app.state.monitor is None:
            cfg = config or get_config()
            app.state.http_client = httpx.AsyncClient(headers={"User-Agent": "debug-monitor"})
            app.state.monitor = build_monitor(cfg, app.state.http_client)
        await app.state.monitor.start()
        logger.info("Debug monitor service started")

    @app.on_event("shutdown")
    async def shutdown_event():
        """Cleanup on shutdown."""
        if app.state.monitor is not None:
            await app.state.monitor.stop()
        if app.state.http_client is not None:
            await app.state.http_client.aclose()
        logger.info("Debug monitor service stopped")

    def current() -> Optional[MonitorScheduler]:
        return app.state.monitor

    def not_ready() -> JSONResponse:
        return JSONResponse(content={"error": "System not initialized"}, status_code=503)

    @app.get("/")
    async def root():
        """Health check endpoint."""
        monitor = current()
        return {"status": "healthy", "service": "debug-monitor", "running": bool(monitor and monitor.running)}

    @app.get("/status")
    async def get_status():
        monitor = current()
        if not monitor:
            return not_ready()
        return monitor.get_status()

    @app.get("/statistics")
    async def get_statistics():
        monitor = current()
        if not monitor:
            return not_ready()
        return monitor.get_statistics()

    @app.post("/checks/{kind}")
    async def run_check(kind: CheckKind):
        """Run one check cycle now and return its summary."""
        monitor = current()
        if not monitor:
            return not_ready()
        summary = await monitor.run_check(kind)
        if summary is None:
            return JSONResponse(content={"error": "Check failed, see logs"}, status_code=500)
        return summary

    @app.get("/alerts")
    async def get_alerts(limit: int = 50, severity: Optional[Severity] = None, category: Optional[str] = None):
        monitor = current()
        if not monitor:
            return not_ready()
        engine = monitor.alert_engine
        if severity is not None:
            alerts = engine.get_alerts_by_severity(severity)
        elif category is not None:
            alerts = engine.get_alerts_by_category(category)
        else:
            alerts = engine.get_recent_alerts(limit)
        return {"alerts": [a.to_dict() for a in alerts[:limit]]}

    @app.get("/alerts/active")
    async def get_active_alerts():
        monitor = current()
        if not monitor:
            return not_ready()
        return {"alerts": [a.to_dict() for a in monitor.alert_engine.get_active_alerts()]}

    @app.post("/alerts/{alert_id}/resolve")
    async def resolve_alert(alert_id: str):
        monitor = current()
        if not monitor:
            return not_ready()
        if not monitor.alert_engine.resolve_alert(alert_id):
            return JSONResponse(content={"error": "Alert not found"}, status_code=404)
        return {"alert_id": alert_id, "resolved": True}

    @app.get("/rules")
    async def get_rules():
        monitor = current()
        if not monitor:
            return not_ready()
        return {"rules": [r.model_dump(mode="json") for r in monitor.alert_engine.get_rules()]}

    @app.post("/rules/{rule_id}/enable")
    async def enable_rule(rule_id: str):
        return _set_rule_enabled(rule_id, True)

    @app.post("/rules/{rule_id}/disable")
    async def disable_rule(rule_id: str):
        return _set_rule_enabled(rule_id, False)

    def _set_rule_enabled(rule_id: str, enabled: bool):
        monitor = current()
        if not monitor:
            return not_ready()
        rule = monitor.alert_engine.update_rule(rule_id, enabled=enabled)
        if rule is None:
            return JSONResponse(content={"error": "Rule not found"}, status_code=404)
        return {"rule_id": rule_id, "enabled": rule.enabled}

    @app.get("/workflows")
    async def get_workflows():
        monitor = current()
        if not monitor:
            return not_ready()
        return {"workflows": [w.model_dump(mode="json") for w in monitor.orchestrator.get_workflows()]}

    @app.post("/workflows/{workflow_id}/run")
    async def run_workflow(workflow_id: str, background_tasks: BackgroundTasks):
        """Queue a workflow and drain the queue in the background."""
        monitor = current()
        if not monitor:
            return not_ready()
        if monitor.orchestrator.get_workflow(workflow_id) is None:
            return JSONResponse(content={"error": "Workflow not found"}, status_code=404)
        if not monitor.orchestrator.enqueue(workflow_id, "manual"):
            return JSONResponse(content={"error": "Workflow is disabled"}, status_code=409)
        background_tasks.add_task(monitor.orchestrator.drain_queue)
        return {"workflow_id": workflow_id, "status": "queued"}

    @app.get("/executions")
    async def get_executions(limit: int = 20):
        monitor = current()
        if not monitor:
            return not_ready()
        executions = monitor.orchestrator.get_execution_history(limit)
        return {"executions": [e.to_dict() for e in executions]}

    @app.get("/executions/{execution_id}")
    async def get_execution(execution_id: str):
        monitor = current()
        if not monitor:
            return not_ready()
        execution = monitor.orchestrator.get_execution(execution_id)
        if execution is None:
            return JSONResponse(content={"error": "Execution not found"}, status_code=404)
        return execution.to_dict()

    @app.get("/dashboard")
    async def get_dashboard():
        monitor = current()
        if not monitor:
            return not_ready()
        return monitor.dashboard.get_state()

    @app.get("/export")
    async def export_data():
        monitor = current()
        if not monitor:
            return not_ready()
        return monitor.export_monitoring_data()

    @app.get("/export/configuration")
    async def export_configuration():
        monitor = current()
        if not monitor:
            return not_ready()
        return monitor.export_configuration()

    return app


app = create_app()


async def run_cli_command(command: str, *args):
    """Run the monitor once from the command line."""
    config = get_config()
    configure_logging(config)
    logger.info("Running CLI command", command=command, args=args)

    async with httpx.AsyncClient(headers={"User-Agent": "debug-monitor"}) as http_client:
        monitor = build_monitor(config, http_client)
        try:
            if command == "check":
                kind = CheckKind(args[0]) if args else CheckKind.COMPREHENSIVE
                summary = await monitor.run_check(kind)
                await monitor.alert_engine.flush_actions()
                print(json.dumps(summary, indent=2, default=str))

            elif command == "workflow":
                if not args:
                    print("Usage: workflow <workflow_id>")
                    return
                try:
                    execution = await monitor.orchestrator.execute_workflow_manually(args[0])
                except WorkflowNotFoundError as e:
                    print(str(e))
                    return
                if execution is None:
                    print("Workflow gates not met, nothing executed")
                else:
                    print(json.dumps(execution.to_dict(), indent=2, default=str))

            elif command == "export":
                print(json.dumps(monitor.export_configuration(), indent=2, default=str))

            else:
                print(f"Unknown command: {command}")
                print("Available commands: check [real_time|comprehensive], workflow <id>, export")
        finally:
            await monitor.stop()


def main():
    """Main entry point with argument handling."""
    if len(sys.argv) < 2:
        # No arguments - start web server
        config = get_config()
        configure_logging(config)
        logger.info("Starting debug monitor web server")
        uvicorn.run(
            "main:app",
            host="0.0.0.0",
            port=8000,
            reload=False,
            log_level=config.log_level.lower(),
        )
    else:
        # CLI mode
        command = sys.argv[1]
        args = sys.argv[2:]
        asyncio.run(run_cli_command(command, *args))


if __name__ == "__main__":
    main()
