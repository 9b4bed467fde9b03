"""Pydantic models for the REST server."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from work_orchestrator.orchestrator.workflow.chains import StepSpec
from work_orchestrator.orchestrator.workflow.models import (
    ActorKind,
    ChainExecution,
    ChainExecutionStep,
    TransitionRecord,
)
from work_orchestrator.orchestrator.workflow.pause_gate import (
    ApprovableRef,
    GateState,
    WorkflowPauseGate,
)


class TransitionRequest(BaseModel):
    to_status: str = Field(min_length=1)
    comment: str | None = None
    actor_id: str | None = None
    actor_kind: ActorKind = "user"


class TransitionResponse(BaseModel):
    status: str
    status_transitions: list[TransitionRecord]


class TransitionError(BaseModel):
    message: str
    reason: str
    from_status: str | None
    to_status: str


class ApiExecutionStep(ChainExecutionStep):
    duration_seconds: float | None = None

    @classmethod
    def from_record(cls, record: ChainExecutionStep) -> ApiExecutionStep:
        duration = record.duration
        return cls(
            **record.model_dump(),
            duration_seconds=duration.total_seconds() if duration is not None else None,
        )


class ExecutionDetail(BaseModel):
    execution: ChainExecution
    steps: list[ApiExecutionStep]


class ResumeRequest(BaseModel):
    approver_id: str | None = None


class RejectRequest(BaseModel):
    approver_id: str | None = None
    reason: str = Field(min_length=1)


class PauseRequest(BaseModel):
    reason: str = Field(default="Paused by operator", min_length=1)


class CancelRequest(BaseModel):
    reason: str = Field(default="Cancelled by operator", min_length=1)


class ChainUpdate(BaseModel):
    """Partial edit of a chain; any change bumps its version."""

    name: str | None = None
    description: str | None = None
    steps: list[StepSpec] | None = None
    enabled: bool | None = None
    is_template: bool | None = None


class CloneRequest(BaseModel):
    name: str | None = None


class GateCreate(BaseModel):
    agent_id: str = Field(min_length=1)
    node: str = Field(min_length=1)
    reason: str = Field(min_length=1)
    state_data: dict[str, Any] = Field(default_factory=dict)
    approvable_ref: ApprovableRef | None = None


class GateDecision(BaseModel):
    approver_id: str | None = None
    reason: str | None = None


class ApiPauseGate(BaseModel):
    id: str
    agent_id: str
    current_node: str
    state: GateState
    state_data: dict[str, Any] = Field(default_factory=dict)
    paused_at: datetime | None = None
    resumed_at: datetime | None = None
    completed_at: datetime | None = None
    rejected_at: datetime | None = None
    pause_reason: str | None = None
    approval_required: bool = True
    approvable_ref: ApprovableRef | None = None

    @classmethod
    def from_gate(cls, gate: WorkflowPauseGate) -> ApiPauseGate:
        return cls(**gate.model_dump(), state=gate.state)
