from .models import (
    AlertGate,
    ConditionTrigger,
    CustomGate,
    EventTrigger,
    ExecutionStatus,
    ManualTrigger,
    MetricGate,
    ScheduleTrigger,
    StepExecution,
    StepStatus,
    TimeGate,
    Workflow,
    WorkflowExecution,
    WorkflowNotification,
    WorkflowSchedule,
    WorkflowStep,
)
from .orchestrator import WorkflowOrchestrator
from .steps import StepRunner, calculate_trend

__all__ = [
    "AlertGate",
    "ConditionTrigger",
    "CustomGate",
    "EventTrigger",
    "ExecutionStatus",
    "ManualTrigger",
    "MetricGate",
    "ScheduleTrigger",
    "StepExecution",
    "StepRunner",
    "StepStatus",
    "TimeGate",
    "Workflow",
    "WorkflowExecution",
    "WorkflowNotification",
    "WorkflowOrchestrator",
    "WorkflowSchedule",
    "WorkflowStep",
    "calculate_trend",
]
