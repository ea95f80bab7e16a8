from __future__ import annotations

import pytest

from debug_monitor.alerts.conditions import (
    CompositeCondition,
    ConditionEvaluator,
    PatternCondition,
    ThresholdCondition,
    TrendCondition,
    compare,
    describe,
    parse_condition,
)
from debug_monitor.errors import RuleEvaluationError
from debug_monitor.history import MetricHistory
from debug_monitor.models import MetricSnapshot


CONNECTION_INSTABILITY = CompositeCondition(
    logical_operator="or",
    conditions=[
        ThresholdCondition(metric="connection.latency", operator=">", value=5000),
        ThresholdCondition(metric="connection.errors.length", operator=">", value=3),
    ],
)


@pytest.mark.parametrize(
    ("actual", "operator", "expected", "result"),
    [
        (5, ">", 3, True),
        (3, ">=", 3, True),
        (2, "<", 1, False),
        ("abc", ">", 1, False),
        (True, ">", 0, False),
        (None, "==", None, False),
        ("error: timeout", "contains", "timeout", True),
        (["a", "b"], "contains", "b", True),
        ("v1.2.3", "matches", r"^v\d+\.", True),
        (False, "==", False, True),
        (1, "!=", 2, True),
    ],
)
def test_compare(actual, operator: str, expected, result: bool) -> None:
    assert compare(actual, operator, expected) is result


def test_invalid_regex_raises() -> None:
    with pytest.raises(RuleEvaluationError):
        compare("text", "matches", "([")


def test_single_equals_is_normalised() -> None:
    cond = parse_condition({"type": "threshold", "metric": "a", "operator": "=", "value": 1})
    assert cond.operator == "=="


def test_missing_metric_never_triggers(clock) -> None:
    evaluator = ConditionEvaluator(MetricHistory(10), clock)
    snap = MetricSnapshot({"performance": {}})
    assert not evaluator.evaluate(ThresholdCondition(metric="performance.memoryUsage", operator="<", value=10), snap)
    assert not evaluator.evaluate(ThresholdCondition(metric="performance.memoryUsage", operator="!=", value=10), snap)


def test_pattern_matches_any_branch(clock) -> None:
    evaluator = ConditionEvaluator(MetricHistory(10), clock)
    cond = PatternCondition(metric="contexts.*.isHealthy", operator="==", value=False)
    healthy = MetricSnapshot({"contexts": {"a": {"isHealthy": True}, "b": {"isHealthy": True}}})
    unhealthy = MetricSnapshot({"contexts": {"a": {"isHealthy": True}, "b": {"isHealthy": False}}})

    assert not evaluator.evaluate(cond, healthy)
    assert evaluator.evaluate(cond, unhealthy)
    assert evaluator.matched_path(cond, unhealthy) == "contexts.b.isHealthy"


def test_composite_or_on_latency_or_error_count(clock) -> None:
    evaluator = ConditionEvaluator(MetricHistory(10), clock)
    calm = MetricSnapshot({"connection": {"latency": 100, "errors": ["x"]}})
    slow = MetricSnapshot({"connection": {"latency": 6000, "errors": []}})
    noisy = MetricSnapshot({"connection": {"latency": 100, "errors": ["1", "2", "3", "4"]}})

    assert CONNECTION_INSTABILITY.logical_operator == "OR"
    assert not evaluator.evaluate(CONNECTION_INSTABILITY, calm)
    assert evaluator.evaluate(CONNECTION_INSTABILITY, slow)
    assert evaluator.evaluate(CONNECTION_INSTABILITY, noisy)
    assert evaluator.matched_path(CONNECTION_INSTABILITY, noisy) == "connection.errors.length"


def test_empty_composite_is_false(clock) -> None:
    evaluator = ConditionEvaluator(MetricHistory(10), clock)
    assert not evaluator.evaluate(CompositeCondition(conditions=[]), MetricSnapshot({}))


def test_trend_with_empty_window_is_false(clock) -> None:
    history = MetricHistory(10)
    evaluator = ConditionEvaluator(history, clock)
    cond = TrendCondition(metric="health.overallScore", operator="<", value=0.6, time_window_ms=600_000)
    snap = MetricSnapshot({"health": {"overallScore": 0.1}}, timestamp=clock())

    assert not evaluator.evaluate(cond, snap)


def test_trend_sums_wildcard_values_inside_window(clock) -> None:
    history = MetricHistory(10)
    evaluator = ConditionEvaluator(history, clock)
    cond = TrendCondition(
        metric="contexts.*.errorCount", operator=">", value=5, time_window_ms=300_000, aggregation="sum"
    )

    history.append(MetricSnapshot({"contexts": {"a": {"errorCount": 10}}}, timestamp=clock()))
    clock.advance(400_000)
    history.append(MetricSnapshot({"contexts": {"a": {"errorCount": 2}, "b": {"errorCount": 2}}}, timestamp=clock()))
    assert evaluator.trend_value(cond) == 4
    assert not evaluator.evaluate(cond, history.latest())

    clock.advance(1_000)
    history.append(MetricSnapshot({"contexts": {"a": {"errorCount": 3}}}, timestamp=clock()))
    assert evaluator.trend_value(cond) == 7
    assert evaluator.evaluate(cond, history.latest())


def test_describe_composite() -> None:
    text = describe(CONNECTION_INSTABILITY)
    assert text == "(connection.latency > 5000 OR connection.errors.length > 3)"
