from .conditions import (
    CompositeCondition,
    Condition,
    ConditionEvaluator,
    PatternCondition,
    ThresholdCondition,
    TrendCondition,
    compare,
    parse_condition,
)
from .rules import AlertAction, AlertChannel, AlertRule, default_channels, default_rules
from .engine import AlertEngine, determine_context, render_template

__all__ = [
    "AlertAction",
    "AlertChannel",
    "AlertEngine",
    "AlertRule",
    "CompositeCondition",
    "Condition",
    "ConditionEvaluator",
    "PatternCondition",
    "ThresholdCondition",
    "TrendCondition",
    "compare",
    "default_channels",
    "default_rules",
    "determine_context",
    "parse_condition",
    "render_template",
]
