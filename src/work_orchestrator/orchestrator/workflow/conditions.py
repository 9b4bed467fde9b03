"""Trigger condition predicates.

A trigger's `conditions` map is parsed into a closed set of condition kinds and
evaluated by `evaluate_condition`. Every condition must hold for the trigger to
match.

Unknown kinds are parsed into `UnsupportedCondition` and pass (fail-open),
with a warning logged on each evaluation.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from .state_machine import WORK_ORDER

logger = logging.getLogger(__name__)

DEDUPLICATION_WINDOW_KEY = "deduplication_window_minutes"

# Budget fields tried in order, entity-specific first.
_BUDGET_FIELDS: dict[str, tuple[str, ...]] = {
    WORK_ORDER: ("budget_cost",),
}
_GENERIC_BUDGET_FIELDS: tuple[str, ...] = ("budget", "budget_cost")


@dataclass(frozen=True, slots=True)
class BudgetGreaterThan:
    threshold: float


@dataclass(frozen=True, slots=True)
class BudgetLessThan:
    threshold: float


@dataclass(frozen=True, slots=True)
class HasTags:
    tags: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class FieldEquals:
    expected: tuple[tuple[str, Any], ...]


@dataclass(frozen=True, slots=True)
class UnsupportedCondition:
    name: str
    value: Any


Condition = BudgetGreaterThan | BudgetLessThan | HasTags | FieldEquals | UnsupportedCondition


def parse_condition(name: str, value: Any) -> Condition:
    if name == "budget_greater_than":
        return BudgetGreaterThan(threshold=float(value))
    if name == "budget_less_than":
        return BudgetLessThan(threshold=float(value))
    if name == "has_tags":
        tags = [value] if isinstance(value, str) else list(value or [])
        return HasTags(tags=tuple(str(t) for t in tags))
    if name == "entity_field_equals":
        if not isinstance(value, Mapping):
            raise ValueError("entity_field_equals expects a mapping of field -> value")
        return FieldEquals(expected=tuple(value.items()))
    return UnsupportedCondition(name=name, value=value)


def parse_conditions(conditions: Mapping[str, Any]) -> list[Condition]:
    """Parse every predicate entry, skipping reserved configuration keys."""

    return [
        parse_condition(name, value)
        for name, value in conditions.items()
        if name != DEDUPLICATION_WINDOW_KEY
    ]


def resolve_budget(subject: Mapping[str, Any], entity_type: str) -> float:
    fields = _BUDGET_FIELDS.get(entity_type, ()) + _GENERIC_BUDGET_FIELDS
    for name in fields:
        raw = subject.get(name)
        if raw is None:
            continue
        try:
            return float(raw)
        except (TypeError, ValueError):
            continue
    return 0.0


def evaluate_condition(condition: Condition, subject: Mapping[str, Any], *, entity_type: str) -> bool:
    if isinstance(condition, BudgetGreaterThan):
        return resolve_budget(subject, entity_type) > condition.threshold
    if isinstance(condition, BudgetLessThan):
        return resolve_budget(subject, entity_type) < condition.threshold
    if isinstance(condition, HasTags):
        present = {str(t) for t in subject.get("tags") or []}
        return set(condition.tags) <= present
    if isinstance(condition, FieldEquals):
        return all(subject.get(field) == expected for field, expected in condition.expected)
    if isinstance(condition, UnsupportedCondition):
        logger.warning(
            "Unsupported trigger condition treated as passing",
            extra={"condition": condition.name},
        )
        return True
    raise TypeError(f"Unhandled condition type: {type(condition).__name__}")


def conditions_hold(conditions: Mapping[str, Any], subject: Mapping[str, Any], *, entity_type: str) -> bool:
    return all(
        evaluate_condition(condition, subject, entity_type=entity_type)
        for condition in parse_conditions(conditions)
    )


def deduplication_window_minutes(conditions: Mapping[str, Any]) -> float | None:
    raw = conditions.get(DEDUPLICATION_WINDOW_KEY)
    if raw is None:
        return None
    try:
        return float(raw)
    except (TypeError, ValueError):
        return None
