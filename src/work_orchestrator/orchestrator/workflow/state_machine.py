"""Explicit state machines.

Two tables live here:
- per-subject-type status rules consulted by the transition ledger
- the chain execution lifecycle (pending -> running -> completed | failed,
  with running <-> paused)

Illegal moves fail loudly.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum

from .errors import (
    NOT_ALLOWED,
    TERMINAL_STATUS,
    UNKNOWN_SUBJECT_TYPE,
    IllegalExecutionTransition,
    InvalidTransition,
)

TASK = "task"
WORK_ORDER = "work_order"


TASK_TRANSITIONS: dict[str, set[str]] = {
    "todo": {"in_progress", "cancelled"},
    "in_progress": {"in_review", "done", "blocked", "cancelled"},
    "in_review": {"approved", "revision_requested", "cancelled"},
    "approved": {"done", "revision_requested", "cancelled"},
    "done": set(),
    "blocked": {"in_progress", "cancelled"},
    # Left immediately by the ledger's auto-transition.
    "revision_requested": set(),
    "cancelled": set(),
}

WORK_ORDER_TRANSITIONS: dict[str, set[str]] = {
    "draft": {"active", "cancelled"},
    "active": {"in_review", "delivered", "blocked", "cancelled"},
    "in_review": {"approved", "revision_requested", "cancelled"},
    "approved": {"delivered", "revision_requested", "cancelled"},
    "delivered": set(),
    "blocked": {"active", "cancelled"},
    "revision_requested": set(),
    "cancelled": set(),
}

# Human checkpoints: agents may never perform these.
AGENT_RESTRICTED_TRANSITIONS: dict[str, set[tuple[str, str]]] = {
    TASK: {("in_review", "approved"), ("approved", "done")},
    WORK_ORDER: {("in_review", "approved"), ("approved", "delivered")},
}

# Where a subject lands right after entering revision_requested.
REVISION_RETURN_STATUS: dict[str, str] = {
    TASK: "in_progress",
    WORK_ORDER: "active",
}

# Starting a timer may reopen a task from these statuses.
TIMER_REOPEN_FROM: frozenset[str] = frozenset({"done", "in_review", "approved"})


@dataclass(frozen=True, slots=True)
class TransitionRuleSet:
    """Legal `(from, to)` pairs for one subject type.

    Every status must appear as a key; terminal statuses map to an empty set.
    """

    subject_type: str
    rules: Mapping[str, frozenset[str]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        targets = {to for allowed in self.rules.values() for to in allowed}
        missing = sorted(targets - set(self.rules))
        if missing:
            raise ValueError(
                f"Rule set for {self.subject_type!r} reaches statuses without rules: {missing}"
            )

    @classmethod
    def from_mapping(cls, subject_type: str, rules: Mapping[str, Iterable[str]]) -> TransitionRuleSet:
        return cls(
            subject_type=subject_type,
            rules={status: frozenset(allowed) for status, allowed in rules.items()},
        )

    @property
    def statuses(self) -> list[str]:
        return list(self.rules)

    def allowed_from(self, status: str) -> frozenset[str]:
        return self.rules.get(status, frozenset())

    def is_terminal(self, status: str) -> bool:
        return not self.allowed_from(status)

    def check(self, from_status: str, to_status: str) -> None:
        if from_status not in self.rules:
            raise InvalidTransition(NOT_ALLOWED, from_status, to_status)
        if self.is_terminal(from_status):
            raise InvalidTransition(TERMINAL_STATUS, from_status, to_status)
        if to_status not in self.rules[from_status]:
            raise InvalidTransition(NOT_ALLOWED, from_status, to_status)


class TransitionRuleRegistry:
    """Rule sets keyed by subject type name.

    Read-mostly reference data. Registering a set replaces the previous one for
    that type (tenant customisation).
    """

    def __init__(self, rule_sets: Iterable[TransitionRuleSet] = ()) -> None:
        self._rule_sets: dict[str, TransitionRuleSet] = {}
        for rule_set in rule_sets:
            self.register(rule_set)

    @classmethod
    def default(cls) -> TransitionRuleRegistry:
        return cls(
            [
                TransitionRuleSet.from_mapping(TASK, TASK_TRANSITIONS),
                TransitionRuleSet.from_mapping(WORK_ORDER, WORK_ORDER_TRANSITIONS),
            ]
        )

    def register(self, rule_set: TransitionRuleSet) -> None:
        self._rule_sets[rule_set.subject_type] = rule_set

    def get(self, subject_type: str) -> TransitionRuleSet | None:
        return self._rule_sets.get(subject_type)

    def require(self, subject_type: str, *, from_status: str, to_status: str) -> TransitionRuleSet:
        rule_set = self._rule_sets.get(subject_type)
        if rule_set is None:
            raise InvalidTransition(UNKNOWN_SUBJECT_TYPE, from_status, to_status)
        return rule_set

    def subject_types(self) -> list[str]:
        return sorted(self._rule_sets)


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED)


EXECUTION_TRANSITIONS: dict[ExecutionStatus, set[ExecutionStatus]] = {
    ExecutionStatus.PENDING: {
        ExecutionStatus.RUNNING,
        ExecutionStatus.PAUSED,
        ExecutionStatus.COMPLETED,
        ExecutionStatus.FAILED,
    },
    ExecutionStatus.RUNNING: {
        ExecutionStatus.PAUSED,
        ExecutionStatus.COMPLETED,
        ExecutionStatus.FAILED,
    },
    ExecutionStatus.PAUSED: {ExecutionStatus.RUNNING, ExecutionStatus.FAILED},
    ExecutionStatus.COMPLETED: set(),
    ExecutionStatus.FAILED: set(),
}


def check_execution_transition(current: ExecutionStatus, to: ExecutionStatus) -> None:
    if current == to and not current.is_terminal:
        return
    allowed = EXECUTION_TRANSITIONS.get(current, set())
    if to not in allowed:
        raise IllegalExecutionTransition(f"Illegal transition: {current.value} -> {to.value}")


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
