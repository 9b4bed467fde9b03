"""Single-step approval gates.

A gate marks one agent invocation that is waiting for a human. Its state is
never stored; `gate_state` derives it from the timestamps so there is no flag
that can drift from them.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from .errors import GateStateError, NotFound

if TYPE_CHECKING:
    from work_orchestrator.state.stores import PauseGateStore

logger = logging.getLogger(__name__)


class GateState(str, Enum):
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    REJECTED = "rejected"


class ApprovableRef(BaseModel):
    """What the approval is about, e.g. `("chain_execution", "<id>")`."""

    type: str
    id: str


class WorkflowPauseGate(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    agent_id: str
    current_node: str
    state_data: dict[str, Any] = Field(default_factory=dict)
    paused_at: datetime | None = None
    resumed_at: datetime | None = None
    completed_at: datetime | None = None
    rejected_at: datetime | None = None
    pause_reason: str | None = None
    approval_required: bool = True
    approvable_ref: ApprovableRef | None = None

    @property
    def state(self) -> GateState:
        return gate_state(
            paused_at=self.paused_at,
            resumed_at=self.resumed_at,
            completed_at=self.completed_at,
            rejected_at=self.rejected_at,
        )


def gate_state(
    *,
    paused_at: datetime | None,
    resumed_at: datetime | None,
    completed_at: datetime | None,
    rejected_at: datetime | None = None,
) -> GateState:
    if rejected_at is not None:
        return GateState.REJECTED
    if completed_at is not None:
        return GateState.COMPLETED
    if paused_at is not None and resumed_at is None:
        return GateState.PAUSED
    return GateState.RUNNING


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


class PauseGateService:
    def __init__(self, store: PauseGateStore, *, clock: Callable[[], datetime] = _utc_now) -> None:
        self._store = store
        self._clock = clock

    def get(self, gate_id: str) -> WorkflowPauseGate:
        gate = self._store.get(gate_id)
        if gate is None:
            raise NotFound("Pause gate not found")
        return gate

    def open(
        self,
        *,
        agent_id: str,
        node: str,
        state_data: dict[str, Any] | None = None,
        reason: str,
        approvable_ref: ApprovableRef | None = None,
        approval_required: bool = True,
        gate_id: str | None = None,
    ) -> WorkflowPauseGate:
        gate = WorkflowPauseGate(
            id=gate_id or uuid.uuid4().hex,
            agent_id=agent_id,
            current_node=node,
            state_data=dict(state_data or {}),
            paused_at=self._clock(),
            pause_reason=reason,
            approval_required=approval_required,
            approvable_ref=approvable_ref,
        )
        self._store.upsert(gate)
        logger.info(
            "Pause gate opened",
            extra={"gate_id": gate.id, "agent_id": agent_id, "node": node, "reason": reason},
        )
        return gate

    def approve(self, gate_id: str, approver: str | None) -> WorkflowPauseGate:
        gate = self._require_state(gate_id, GateState.PAUSED)
        now = self._clock()
        state_data = {
            **gate.state_data,
            "approved": True,
            "approver_id": approver,
            "approved_at": now.isoformat(),
        }
        updated = gate.model_copy(update={"resumed_at": now, "state_data": state_data})
        self._store.upsert(updated)
        logger.info("Pause gate approved", extra={"gate_id": gate_id, "approver_id": approver})
        return updated

    def reject(self, gate_id: str, approver: str | None, reason: str) -> WorkflowPauseGate:
        gate = self._require_state(gate_id, GateState.PAUSED)
        now = self._clock()
        state_data = {
            **gate.state_data,
            "rejected": True,
            "rejected_by": approver,
            "rejection_reason": reason,
            "rejected_at": now.isoformat(),
        }
        updated = gate.model_copy(update={"rejected_at": now, "state_data": state_data})
        self._store.upsert(updated)
        logger.info(
            "Pause gate rejected",
            extra={"gate_id": gate_id, "approver_id": approver, "reason": reason},
        )
        return updated

    def pause(self, gate_id: str, reason: str) -> WorkflowPauseGate:
        """Re-pause a running gate at a later approval point."""

        gate = self._require_state(gate_id, GateState.RUNNING)
        updated = gate.model_copy(
            update={"paused_at": self._clock(), "resumed_at": None, "pause_reason": reason}
        )
        return self._store.upsert(updated)

    def complete(self, gate_id: str) -> WorkflowPauseGate:
        gate = self._require_state(gate_id, GateState.RUNNING)
        return self._store.upsert(gate.model_copy(update={"completed_at": self._clock()}))

    def all(self) -> list[WorkflowPauseGate]:
        return self._store.all()

    def pending(self) -> list[WorkflowPauseGate]:
        return [g for g in self._store.all() if g.state == GateState.PAUSED]

    def for_approvable(self, ref: ApprovableRef) -> list[WorkflowPauseGate]:
        return [g for g in self._store.all() if g.approvable_ref == ref]

    def _require_state(self, gate_id: str, expected: GateState) -> WorkflowPauseGate:
        gate = self.get(gate_id)
        if gate.state != expected:
            raise GateStateError(
                f"Pause gate {gate_id} is {gate.state.value}, expected {expected.value}"
            )
        return gate
