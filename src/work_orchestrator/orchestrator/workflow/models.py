"""Persisted records for subjects, transitions and chain executions."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from .chains import ChainDefinition
from .state_machine import ExecutionStatus, StepStatus

Clock = Callable[[], datetime]

ActorKind = Literal["user", "agent", "system"]


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


class SubjectRef(BaseModel):
    """Identifies a transitionable entity (Task, WorkOrder, ...)."""

    model_config = ConfigDict(frozen=True)

    type: str
    id: str

    def __str__(self) -> str:
        return f"{self.type}:{self.id}"


class Actor(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str | None = None
    kind: ActorKind = "user"
    name: str | None = None

    @classmethod
    def system(cls) -> Actor:
        return cls(id=None, kind="system", name="system")


class SubjectRecord(BaseModel):
    """Local stand-in for an entity owned by the wider platform."""

    type: str
    id: str
    status: str
    attributes: dict[str, Any] = Field(default_factory=dict)
    tags: list[str] = Field(default_factory=list)

    @property
    def ref(self) -> SubjectRef:
        return SubjectRef(type=self.type, id=self.id)

    def snapshot(self) -> dict[str, Any]:
        """Flat view used by trigger conditions and as initial chain context."""

        return {
            **self.attributes,
            "id": self.id,
            "type": self.type,
            "status": self.status,
            "tags": list(self.tags),
        }


class TransitionRecord(BaseModel):
    """Immutable fact written by the ledger for one successful status change."""

    model_config = ConfigDict(frozen=True)

    subject_type: str
    subject_id: str
    from_status: str
    to_status: str
    actor_id: str | None = None
    actor_kind: ActorKind = "user"
    comment: str | None = None
    occurred_at: datetime
    sequence: int = Field(ge=1, description="Per-subject ordinal, starting at 1")

    @property
    def subject(self) -> SubjectRef:
        return SubjectRef(type=self.subject_type, id=self.subject_id)


class ChainExecution(BaseModel):
    id: str
    chain_id: str
    chain_version: int
    chain: ChainDefinition = Field(description="Definition frozen at start")
    status: ExecutionStatus = ExecutionStatus.PENDING
    current_step_index: int = Field(default=0, ge=0)
    context: dict[str, Any] = Field(default_factory=dict)
    context_version: int = 0

    started_at: datetime
    paused_at: datetime | None = None
    resumed_at: datetime | None = None
    completed_at: datetime | None = None
    failed_at: datetime | None = None
    error_message: str | None = None
    pause_reason: str | None = None
    pause_gate_id: str | None = None

    trigger_subject: SubjectRef | None = None
    trigger_id: str | None = None
    rerun_of: str | None = None

    version: int = Field(default=0, description="Optimistic concurrency counter")

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class ChainExecutionStep(BaseModel):
    execution_id: str
    step_index: int = Field(ge=0)
    agent_ref: str
    status: StepStatus = StepStatus.PENDING
    started_at: datetime | None = None
    completed_at: datetime | None = None
    output_data: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    attempts: int = 0
    approval_requested: bool = False

    @property
    def duration(self) -> timedelta | None:
        if self.started_at is None or self.completed_at is None:
            return None
        return self.completed_at - self.started_at
