"""Configuration management for the debug monitor."""

from __future__ import annotations

import os
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field

from .alerts.rules import AlertRule
from .models import Severity
from .workflows.models import Workflow


class HttpTarget(BaseModel):
    """Endpoint probed by the HTTP scenario executor."""
    url: str = Field(description="URL requested by the scenario")
    method: str = Field(default="GET", description="HTTP method")
    expected_status: list[int] = Field(default_factory=list, description="Accepted status codes; empty means any < 400")
    category: Optional[str] = Field(default=None, description="Category used by execute_by_category")
    contains: Optional[str] = Field(default=None, description="Text the response body must contain")


class AlertThresholds(BaseModel):
    """Thresholds turned into the default threshold rules."""
    failure_rate: float = Field(default=0.3, ge=0, le=1, description="Failed / total scenarios per cycle")
    execution_time_ms: float = Field(default=30_000, gt=0, description="Average scenario execution time")
    memory_usage_mb: float = Field(default=200, gt=0, description="Memory usage of the monitored process")


class NotificationSettings(BaseModel):
    """Where alert notifications are delivered."""
    console: bool = Field(default=True, description="Log notifications to the console")
    email: list[str] = Field(default_factory=list, description="Email recipients")
    smtp_host: str = Field(default="localhost", description="SMTP relay host")
    smtp_port: int = Field(default=25, description="SMTP relay port")
    smtp_sender: str = Field(default="debug-monitor@localhost", description="From address")
    webhook: Optional[str] = Field(default=None, description="Generic webhook URL")
    slack_webhook: Optional[str] = Field(default=None, description="Slack incoming webhook URL")
    telegram_bot_token: Optional[str] = Field(default=None, description="Telegram bot token")
    telegram_chat_id: Optional[str] = Field(default=None, description="Telegram chat id")
    alerts_file: Optional[str] = Field(default=None, description="Append alerts as JSON lines to this file")
    external_min_severity: Severity = Field(default=Severity.HIGH, description="Lowest severity sent to webhook, slack, email and telegram")


class DashboardSettings(BaseModel):
    enabled: bool = Field(default=True, description="Enable the dashboard refresh timer")
    refresh_interval_ms: int = Field(default=5_000, gt=0, description="Dashboard refresh cadence")
    max_data_points: int = Field(default=200, gt=0, description="Data points kept per series")


class WorkflowSettings(BaseModel):
    enabled: bool = Field(default=True, description="Run workflow triggers and the queue")
    queue_poll_interval_ms: int = Field(default=5_000, gt=0, description="Queue drain cadence")
    execution_history_size: int = Field(default=100, gt=0, description="Executions kept in history")


class HistorySettings(BaseModel):
    metric_history_size: int = Field(default=100, gt=0, description="Snapshots kept for trend rules")
    alert_history_size: int = Field(default=1000, gt=0, description="Alerts kept in history")
    check_history_size: int = Field(default=100, gt=0, description="Check cycles kept in history")
    report_history_size: int = Field(default=50, gt=0, description="Report summaries kept in memory")


class MonitoringConfig(BaseModel):
    """Main configuration for the debug monitor."""

    # Environment settings
    environment: str = Field(default="development", description="Environment being monitored")
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="console", description="console or json")

    # Check cadence
    enabled: bool = Field(default=True, description="Master switch for monitoring")
    interval_ms: int = Field(default=60_000, gt=0, description="Comprehensive check interval")
    real_time_checks: bool = Field(default=True, description="Run the lightweight real-time pass")
    real_time_interval_ms: int = Field(default=5_000, gt=0, description="Real-time check interval")
    check_timeout_ms: int = Field(default=30_000, gt=0, description="Per-scenario timeout")
    cycle_timeout_ms: Optional[int] = Field(default=None, description="Whole-cycle timeout")
    cycle_failure_cooldown_ms: int = Field(
        default=300_000, ge=0, description="Minimum gap between cycle failure alerts"
    )

    # Scenarios
    scenarios: list[str] = Field(default_factory=list, description="Scenarios run by comprehensive checks")
    real_time_scenarios: list[str] = Field(default_factory=list, description="Scenarios run by real-time checks")
    scenario_categories: list[str] = Field(default_factory=list, description="Categories run by comprehensive checks")
    http_targets: dict[str, HttpTarget] = Field(default_factory=dict, description="Scenario name to HTTP endpoint, used by the service entry point")

    alert_thresholds: AlertThresholds = Field(default_factory=AlertThresholds)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)
    dashboard: DashboardSettings = Field(default_factory=DashboardSettings)
    workflows: WorkflowSettings = Field(default_factory=WorkflowSettings)
    history: HistorySettings = Field(default_factory=HistorySettings)

    # Output settings
    reports_directory: str = Field(default="reports", description="Directory for generated reports")
    report_formats: list[str] = Field(default_factory=lambda: ["json", "markdown"], description="Report formats")

    # Extra definitions appended to the built-in ones
    include_default_rules: bool = Field(default=True, description="Register the built-in alert rules")
    include_default_workflows: bool = Field(default=True, description="Register the built-in workflows")
    rules: list[AlertRule] = Field(default_factory=list, description="Additional alert rules")
    workflow_definitions: list[Workflow] = Field(default_factory=list, description="Additional workflows")

    def effective_real_time_scenarios(self) -> list[str]:
        if self.real_time_scenarios:
            return list(self.real_time_scenarios)
        return self.scenarios[:1]


def load_config(config_path: Optional[str] = None) -> MonitoringConfig:
    """Load configuration from file or environment variables."""
    if config_path is None:
        config_path = os.getenv("MONITORING_CONFIG", "config/monitoring.yaml")

    config_data: dict[str, Any] = {}

    # Load from file if exists
    if os.path.exists(config_path):
        with open(config_path, 'r') as f:
            config_data = yaml.safe_load(f) or {}

    # Override with environment variables
    env_overrides = {
        "environment": os.getenv("MONITORING_ENV"),
        "log_level": os.getenv("LOG_LEVEL"),
        "log_format": os.getenv("LOG_FORMAT"),
        "interval_ms": os.getenv("MONITORING_INTERVAL_MS"),
        "enabled": os.getenv("MONITORING_ENABLED"),
    }

    for key, value in env_overrides.items():
        if value is not None:
            if key in ["interval_ms"]:
                value = int(value)
            elif key in ["enabled"]:
                value = value.lower() in ("true", "1", "yes")
            config_data[key] = value

    webhook = os.getenv("MONITORING_WEBHOOK_URL")
    if webhook:
        config_data.setdefault("notifications", {})["webhook"] = webhook

    return MonitoringConfig(**config_data)


def get_config() -> MonitoringConfig:
    """Load the configuration from the default location."""
    return load_config()
