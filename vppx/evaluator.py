from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable

from pydantic import BaseModel

from .models import Condition, ContextSnapshot


SNAPSHOT_ROOTS: tuple[str, ...] = ("timestamp", "market", "resource", "extras")
# Bare field names ("price") are looked up under these sections, in order.
SHORTHAND_SECTIONS: tuple[str, ...] = ("market", "resource", "extras")
DATETIME_PARTS: frozenset[str] = frozenset({"year", "month", "day", "hour", "minute", "weekday"})
ORDERED_OPERATORS: frozenset[str] = frozenset(
    {"greater_than", "less_than", "greater_equal", "less_equal"}
)

STATE_TRUE = "TRUE"
STATE_FALSE = "FALSE"
STATE_UNRESOLVED = "UNRESOLVED"


@dataclass(frozen=True)
class FieldResolution:
    resolved: bool
    value: Any = None
    path: str = ""


@dataclass(frozen=True)
class ConditionEvaluationResult:
    state: str
    observed_value: Any
    reason: str

    @property
    def passed(self) -> bool:
        return self.state == STATE_TRUE


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _step(current: Any, segment: str) -> FieldResolution:
    if isinstance(current, BaseModel):
        if segment in type(current).model_fields:
            return FieldResolution(True, getattr(current, segment))
        return FieldResolution(False)
    if isinstance(current, dict):
        if segment in current:
            return FieldResolution(True, current[segment])
        return FieldResolution(False)
    if isinstance(current, datetime) and segment in DATETIME_PARTS:
        if segment == "weekday":
            return FieldResolution(True, current.weekday())
        return FieldResolution(True, getattr(current, segment))
    return FieldResolution(False)


def _walk(snapshot: ContextSnapshot, segments: list[str]) -> FieldResolution:
    current: Any = snapshot
    for segment in segments:
        step = _step(current, segment)
        if not step.resolved:
            return step
        current = step.value
    if current is None:
        return FieldResolution(False)
    return FieldResolution(True, current)


def resolve_field(snapshot: ContextSnapshot, path: str) -> FieldResolution:
    """Resolve a dotted path such as ``market.price`` against a snapshot.

    ``None`` leaves count as unresolved. A path whose first segment is not a
    snapshot section is retried under ``market``, ``resource`` and ``extras``.
    """
    segments = [segment for segment in path.split(".") if segment]
    if not segments:
        return FieldResolution(False, path=path)
    if segments[0] in SNAPSHOT_ROOTS:
        result = _walk(snapshot, segments)
        return FieldResolution(result.resolved, result.value, path)
    for section in SHORTHAND_SECTIONS:
        result = _walk(snapshot, [section, *segments])
        if result.resolved:
            return FieldResolution(True, result.value, f"{section}.{path}")
    return FieldResolution(False, path=path)


def _ordered_pair(observed: Any, expected: Any) -> bool:
    if _is_number(observed) and _is_number(expected):
        return True
    return isinstance(observed, str) and isinstance(expected, str)


def _compare(operator: str, observed: Any, expected: Any) -> tuple[bool, str]:
    if operator == "equals":
        return observed == expected, "evaluated"
    if operator == "not_equals":
        return observed != expected, "evaluated"
    if operator in ORDERED_OPERATORS:
        if not _ordered_pair(observed, expected):
            return False, "incomparable_values"
        if operator == "greater_than":
            return observed > expected, "evaluated"
        if operator == "less_than":
            return observed < expected, "evaluated"
        if operator == "greater_equal":
            return observed >= expected, "evaluated"
        return observed <= expected, "evaluated"
    if operator == "contains":
        if expected is None:
            return False, "missing_operand"
        return str(expected) in str(observed), "evaluated"
    if operator == "in":
        if not isinstance(expected, (list, tuple)):
            return False, "invalid_operand"
        return observed in expected, "evaluated"
    if operator == "between":
        if not isinstance(expected, (list, tuple)) or len(expected) != 2:
            return False, "invalid_operand"
        low, high = expected
        if not (_is_number(observed) and _is_number(low) and _is_number(high)):
            return False, "incomparable_values"
        return low <= observed <= high, "evaluated"
    return False, f"unsupported_operator:{operator}"


def evaluate_condition(condition: Condition, snapshot: ContextSnapshot) -> ConditionEvaluationResult:
    resolution = resolve_field(snapshot, condition.field)
    if not resolution.resolved:
        # Missing data fails every operator except not_equals against a concrete value.
        passed = condition.operator == "not_equals" and condition.value is not None
        return ConditionEvaluationResult(
            state=STATE_TRUE if passed else STATE_UNRESOLVED,
            observed_value=None,
            reason=f"unresolved_field:{condition.field}",
        )
    passed, reason = _compare(condition.operator, resolution.value, condition.value)
    return ConditionEvaluationResult(
        state=STATE_TRUE if passed else STATE_FALSE,
        observed_value=resolution.value,
        reason=reason,
    )


def evaluate_conditions(conditions: Iterable[Condition], snapshot: ContextSnapshot) -> bool:
    """AND over all conditions; an empty list is vacuously true."""
    for condition in conditions:
        if not evaluate_condition(condition, snapshot).passed:
            return False
    return True


def explain_conditions(
    conditions: Iterable[Condition], snapshot: ContextSnapshot
) -> list[ConditionEvaluationResult]:
    return [evaluate_condition(condition, snapshot) for condition in conditions]
