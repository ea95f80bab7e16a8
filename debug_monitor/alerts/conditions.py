"""Condition AST for alert rules and workflow gates, and its evaluator."""

from __future__ import annotations

import re
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, BeforeValidator, Field, TypeAdapter, field_validator

from ..errors import RuleEvaluationError
from ..history import MetricHistory
from ..models import MetricSnapshot, utcnow


Operator = Literal[">", "<", ">=", "<=", "==", "!=", "contains", "matches"]
Aggregation = Literal["avg", "max", "min", "sum", "count"]


def _normalize_operator(value: Any) -> Any:
    if value == "=":
        return "=="
    return value


OperatorField = Annotated[Operator, BeforeValidator(_normalize_operator)]


class ThresholdCondition(BaseModel):
    type: Literal["threshold"] = "threshold"
    metric: str
    operator: OperatorField
    value: Any


class TrendCondition(BaseModel):
    type: Literal["trend"] = "trend"
    metric: str
    operator: OperatorField
    value: Any
    time_window_ms: int = Field(gt=0, description="Look-back window for aggregation")
    aggregation: Aggregation = "avg"


class PatternCondition(BaseModel):
    type: Literal["pattern"] = "pattern"
    metric: str = Field(description="Dot path; '*' segments match every key at that level")
    operator: OperatorField
    value: Any


class CompositeCondition(BaseModel):
    type: Literal["composite"] = "composite"
    conditions: list[Condition] = Field(default_factory=list)
    logical_operator: Literal["AND", "OR"] = "AND"

    @field_validator("logical_operator", mode="before")
    @classmethod
    def _upper(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value


Condition = Annotated[
    Union[ThresholdCondition, TrendCondition, PatternCondition, CompositeCondition],
    Field(discriminator="type"),
]

CompositeCondition.model_rebuild()

_condition_adapter: TypeAdapter = TypeAdapter(Condition)


def parse_condition(data: Mapping[str, Any] | BaseModel) -> Condition:
    if isinstance(data, BaseModel):
        return data  # type: ignore[return-value]
    return _condition_adapter.validate_python(dict(data))


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def compare(actual: Any, operator: str, expected: Any) -> bool:
    """
    Apply a comparison operator. A missing (None) actual value is always false,
    and numeric operators on non-numeric values are false.
    """
    if actual is None:
        return False

    if operator == "==":
        return actual == expected
    if operator == "!=":
        return actual != expected
    if operator == "contains":
        if isinstance(actual, str):
            return str(expected) in actual
        if isinstance(actual, (list, tuple, set, frozenset, Mapping)):
            return expected in actual
        return False
    if operator == "matches":
        try:
            return re.search(str(expected), str(actual)) is not None
        except re.error as e:
            raise RuleEvaluationError(f"Invalid pattern '{expected}': {e}") from e

    if not (_is_number(actual) and _is_number(expected)):
        return False
    if operator == ">":
        return actual > expected
    if operator == "<":
        return actual < expected
    if operator == ">=":
        return actual >= expected
    if operator == "<=":
        return actual <= expected
    raise RuleEvaluationError(f"Unknown operator '{operator}'")


def aggregate(values: list[float], aggregation: str) -> float | None:
    if not values:
        return None
    if aggregation == "avg":
        return sum(values) / len(values)
    if aggregation == "max":
        return max(values)
    if aggregation == "min":
        return min(values)
    if aggregation == "sum":
        return sum(values)
    if aggregation == "count":
        return float(len(values))
    raise RuleEvaluationError(f"Unknown aggregation '{aggregation}'")


class ConditionEvaluator:
    """Evaluates condition trees against the current snapshot and the metric history."""

    def __init__(self, history: MetricHistory, clock: Callable[[], datetime] = utcnow):
        self.history = history
        self.clock = clock

    def evaluate(self, condition: Condition, snapshot: MetricSnapshot) -> bool:
        if isinstance(condition, ThresholdCondition):
            return compare(snapshot.get(condition.metric), condition.operator, condition.value)

        if isinstance(condition, TrendCondition):
            value = self.trend_value(condition)
            return compare(value, condition.operator, condition.value)

        if isinstance(condition, PatternCondition):
            return any(
                compare(value, condition.operator, condition.value)
                for _, value in snapshot.resolve(condition.metric)
            )

        if isinstance(condition, CompositeCondition):
            if not condition.conditions:
                return False
            if condition.logical_operator == "OR":
                return any(self.evaluate(c, snapshot) for c in condition.conditions)
            return all(self.evaluate(c, snapshot) for c in condition.conditions)

        raise RuleEvaluationError(f"Unsupported condition type: {type(condition).__name__}")

    def window_values(self, condition: TrendCondition) -> list[float]:
        now = self.clock()
        start = now - timedelta(milliseconds=condition.time_window_ms)
        values: list[float] = []
        for snap in self.history.window(start, now):
            for _, value in snap.resolve(condition.metric):
                if condition.aggregation == "count":
                    if value is not None:
                        values.append(1.0)
                elif _is_number(value):
                    values.append(float(value))
        return values

    def trend_value(self, condition: TrendCondition) -> float | None:
        return aggregate(self.window_values(condition), condition.aggregation)

    def triggered_value(self, condition: Condition, snapshot: MetricSnapshot) -> Any:
        """The observed value that made a condition true, for alert details."""
        if isinstance(condition, ThresholdCondition):
            return snapshot.get(condition.metric)
        if isinstance(condition, TrendCondition):
            return self.trend_value(condition)
        if isinstance(condition, PatternCondition):
            for path, value in snapshot.resolve(condition.metric):
                if compare(value, condition.operator, condition.value):
                    return {"path": path, "value": value}
            return None
        if isinstance(condition, CompositeCondition):
            return [
                self.triggered_value(c, snapshot)
                for c in condition.conditions
                if self.evaluate(c, snapshot)
            ]
        return None

    def matched_path(self, condition: Condition, snapshot: MetricSnapshot) -> str | None:
        """Concrete metric path of the first sub-condition that holds."""
        if isinstance(condition, PatternCondition):
            for path, value in snapshot.resolve(condition.metric):
                if compare(value, condition.operator, condition.value):
                    return path
            return None
        if isinstance(condition, CompositeCondition):
            for sub in condition.conditions:
                if self.evaluate(sub, snapshot):
                    return self.matched_path(sub, snapshot)
            return None
        return condition.metric


def describe(condition: Condition) -> str:
    if isinstance(condition, TrendCondition):
        return (
            f"{condition.aggregation}({condition.metric}) over {condition.time_window_ms}ms "
            f"{condition.operator} {condition.value!r}"
        )
    if isinstance(condition, CompositeCondition):
        joiner = f" {condition.logical_operator} "
        return "(" + joiner.join(describe(c) for c in condition.conditions) + ")"
    return f"{condition.metric} {condition.operator} {condition.value!r}"
