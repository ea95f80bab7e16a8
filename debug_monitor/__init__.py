"""Continuous debug monitoring: scheduled checks, rule-based alerts and workflows."""

from .config import MonitoringConfig, get_config, load_config
from .models import Alert, CheckKind, CheckResult, MetricSnapshot, Severity
from .scheduler import MonitorScheduler

__version__ = "0.1.0"

__all__ = [
    "Alert",
    "CheckKind",
    "CheckResult",
    "MetricSnapshot",
    "MonitorScheduler",
    "MonitoringConfig",
    "Severity",
    "get_config",
    "load_config",
]
