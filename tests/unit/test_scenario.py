"""End-to-end flows: a status change fires a trigger that runs an agent chain."""

from __future__ import annotations

import threading
import time

import pytest

from work_orchestrator.orchestrator.service import WorkOrchestrator
from work_orchestrator.orchestrator.workflow.chains import ChainDefinition, ContextFilter, StepSpec
from work_orchestrator.orchestrator.workflow.executor import StepResult
from work_orchestrator.orchestrator.workflow.models import Actor, SubjectRecord, SubjectRef
from work_orchestrator.orchestrator.workflow.pause_gate import GateState
from work_orchestrator.orchestrator.workflow.state_machine import ExecutionStatus
from work_orchestrator.orchestrator.workflow.triggers import Trigger

MANAGER = Actor(id="manager-1", kind="user", name="Dana")
WORK_ORDER = SubjectRef(type="work_order", id="wo-1")


@pytest.fixture
def intake(orchestrator: WorkOrchestrator, executor) -> ChainDefinition:
    executor.responses["dispatcher"] = StepResult.success(
        {
            "routing_recommendation": {"team": "web", "confidence": 0.92},
            "project": {"id": "p-7", "name": "Website refresh"},
            "internal_notes": "Margin is thin; push for fixed price",
        }
    )
    chain = orchestrator.chains.upsert(
        ChainDefinition(
            name="Work order intake",
            steps=[
                StepSpec(agent_ref="dispatcher"),
                StepSpec(
                    agent_ref="pm-copilot",
                    context_filter=ContextFilter(
                        include=["work_order", "project", "routing_recommendation"]
                    ),
                ),
                StepSpec(
                    agent_ref="client-comms",
                    context_filter=ContextFilter(exclude=["internal_notes"]),
                ),
            ],
        )
    )
    orchestrator.triggers.upsert(
        Trigger(
            name="Intake on activation",
            entity_type="work_order",
            status_to="active",
            chain_id=chain.id,
            conditions={"deduplication_window_minutes": 60},
        )
    )
    orchestrator.register_subject(
        SubjectRecord(
            type="work_order",
            id="wo-1",
            status="draft",
            attributes={"title": "Website refresh", "budget_cost": 4200},
        )
    )
    return chain


def test_activation_runs_intake_chain_once_per_window(orchestrator, executor, clock, intake) -> None:
    orchestrator.transition(WORK_ORDER, MANAGER, "active")

    executions = orchestrator.executions.list()
    assert len(executions) == 1
    first = executions[0]
    assert first.status == ExecutionStatus.COMPLETED
    assert first.chain_id == intake.id
    assert first.trigger_subject == WORK_ORDER
    assert executor.agents_called == ["dispatcher", "pm-copilot", "client-comms"]

    dispatcher_context = executor.context_for("dispatcher")
    assert dispatcher_context["work_order"]["budget_cost"] == 4200
    assert dispatcher_context["work_order"]["status"] == "active"
    assert dispatcher_context["trigger"]["name"] == "Intake on activation"

    assert set(executor.context_for("pm-copilot")) == {
        "work_order",
        "project",
        "routing_recommendation",
    }
    comms_context = executor.context_for("client-comms")
    assert "internal_notes" not in comms_context
    assert comms_context["pm_copilot_done"] is True
    assert first.context["internal_notes"].startswith("Margin is thin")

    # Blocked and re-activated inside the window: no new run.
    clock.advance(minutes=5)
    orchestrator.transition(WORK_ORDER, MANAGER, "blocked")
    clock.advance(minutes=5)
    orchestrator.transition(WORK_ORDER, MANAGER, "active")
    assert len(orchestrator.executions.list()) == 1

    # Outside the window the trigger fires again.
    clock.advance(minutes=61)
    orchestrator.transition(WORK_ORDER, MANAGER, "blocked")
    orchestrator.transition(WORK_ORDER, MANAGER, "active")

    executions = orchestrator.executions.list()
    assert len(executions) == 2
    assert executions[1].status == ExecutionStatus.COMPLETED
    assert len(executor.calls) == 6
    history = orchestrator.ledger.history(WORK_ORDER)
    assert [r.to_status for r in history] == ["active", "blocked", "active", "blocked", "active"]


def test_client_message_waits_for_manager_approval(orchestrator, executor, intake) -> None:
    executor.responses["client-comms"] = StepResult.success(
        {"client_message": "Kick-off is Monday"},
        requires_approval=True,
        approval_reason="Client-facing message needs approval",
    )

    orchestrator.transition(WORK_ORDER, MANAGER, "active")

    [execution] = orchestrator.executions.list()
    assert execution.status == ExecutionStatus.PAUSED
    [gate] = orchestrator.gates.pending()
    assert gate.id == execution.pause_gate_id
    assert gate.agent_id == "client-comms"
    assert gate.pause_reason == "Client-facing message needs approval"

    approved = orchestrator.approve_gate(gate.id, "manager-1")

    assert approved.state == GateState.RUNNING
    assert approved.state_data["approver_id"] == "manager-1"
    finished = orchestrator.engine.get(execution.id)
    assert finished.status == ExecutionStatus.COMPLETED
    assert finished.context["client_message"] == "Kick-off is Monday"
    assert orchestrator.gates.pending() == []


def test_rejected_client_message_fails_the_run(orchestrator, executor, intake) -> None:
    executor.responses["client-comms"] = StepResult.success(
        {"client_message": "We are late again"}, requires_approval=True
    )
    orchestrator.transition(WORK_ORDER, MANAGER, "active")
    [gate] = orchestrator.gates.pending()

    rejected = orchestrator.reject_gate(gate.id, "manager-1", "Do not send this")

    assert rejected.state == GateState.REJECTED
    [execution] = orchestrator.executions.list()
    assert execution.status == ExecutionStatus.FAILED
    assert execution.error_message == "Approval rejected: Do not send this"


def test_revision_request_reactivates_and_refires(orchestrator, executor, clock, intake) -> None:
    orchestrator.transition(WORK_ORDER, MANAGER, "active")
    orchestrator.transition(WORK_ORDER, MANAGER, "in_review")
    clock.advance(hours=2)

    records = orchestrator.transition(
        WORK_ORDER, MANAGER, "revision_requested", comment="Scope grew"
    )

    assert [r.to_status for r in records] == ["revision_requested", "active"]
    assert orchestrator.subjects.get_status(WORK_ORDER) == "active"
    assert len(orchestrator.executions.list()) == 2


def test_unrelated_gate_is_approved_without_touching_executions(orchestrator) -> None:
    gate = orchestrator.gates.open(
        agent_id="client-comms", node="draft_update", reason="Standalone review"
    )

    approved = orchestrator.approve_gate(gate.id, "manager-1")

    assert approved.state == GateState.RUNNING
    assert orchestrator.executions.list() == []


def test_revision_trigger_sees_revision_snapshot(orchestrator, intake) -> None:
    orchestrator.triggers.upsert(
        Trigger(
            name="Re-plan on revision",
            entity_type="work_order",
            status_to="revision_requested",
            chain_id=intake.id,
            conditions={"entity_field_equals": {"status": "revision_requested"}},
        )
    )
    orchestrator.transition(WORK_ORDER, MANAGER, "active")
    orchestrator.transition(WORK_ORDER, MANAGER, "in_review")

    orchestrator.transition(WORK_ORDER, MANAGER, "revision_requested", comment="Scope grew")

    runs = [
        e
        for e in orchestrator.executions.list()
        if e.context["trigger"]["name"] == "Re-plan on revision"
    ]
    assert len(runs) == 1
    assert runs[0].context["work_order"]["status"] == "revision_requested"


def test_concurrent_transitions_reach_matcher_in_ledger_order(orchestrator, intake) -> None:
    seen: list[tuple[str | None, str | None]] = []
    first_published = threading.Event()
    second_started = threading.Event()

    def record(event) -> None:
        seen.append((event.from_status, event.to_status))
        if event.to_status == "active":
            first_published.set()
            second_started.wait(timeout=5)
            # Give the second thread time to reach the ledger.
            time.sleep(0.1)

    orchestrator.bus.subscribe(record)

    def block() -> None:
        first_published.wait(timeout=5)
        second_started.set()
        orchestrator.transition(WORK_ORDER, MANAGER, "blocked")

    activate = threading.Thread(target=orchestrator.transition, args=(WORK_ORDER, MANAGER, "active"))
    blocker = threading.Thread(target=block)
    activate.start()
    blocker.start()
    activate.join(timeout=10)
    blocker.join(timeout=10)

    history = orchestrator.ledger.history(WORK_ORDER)
    assert [(r.from_status, r.to_status) for r in history] == [("draft", "active"), ("active", "blocked")]
    assert seen == [("draft", "active"), ("active", "blocked")]
