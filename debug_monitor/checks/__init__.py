from .executor import CallableScenarioExecutor, ScenarioExecutor, SnapshotCollector
from .http import HttpScenarioExecutor
from .runner import CheckCycle, CheckRunner, build_snapshot_data

__all__ = [
    "CallableScenarioExecutor",
    "CheckCycle",
    "CheckRunner",
    "HttpScenarioExecutor",
    "ScenarioExecutor",
    "SnapshotCollector",
    "build_snapshot_data",
]
