"""Exception types raised inside the monitoring engine."""

from __future__ import annotations


class MonitoringError(Exception):
    """Base class for every engine error."""


class ScenarioFailure(MonitoringError):
    """Raised by scenario code when its check does not hold; recorded as a failed result."""

    def __init__(self, message: str, scenario_name: str | None = None):
        super().__init__(message)
        self.scenario_name = scenario_name


class CycleFailure(MonitoringError):
    """A whole check cycle could not complete."""


class RuleEvaluationError(MonitoringError):
    """A rule condition could not be evaluated."""


class ActionExecutionError(MonitoringError):
    """An alert action failed."""


class StepExecutionError(MonitoringError):
    """A workflow step failed."""


class StepTimeoutError(StepExecutionError):
    """A workflow step exceeded its timeout."""


class WorkflowAbort(MonitoringError):
    """A required workflow gate evaluated to false."""


class WorkflowValidationError(MonitoringError, ValueError):
    """A workflow definition is invalid and was rejected at registration."""


class WorkflowNotFoundError(MonitoringError, KeyError):
    """No workflow is registered under the given id."""


class HandlerNotFoundError(MonitoringError, KeyError):
    """No handler is registered under the given name."""
