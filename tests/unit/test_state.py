"""Unit tests for the JSON-file stores."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path

import pytest

from work_orchestrator.orchestrator.workflow.chains import ChainDefinition, StepSpec
from work_orchestrator.orchestrator.workflow.errors import ConcurrentModification, NotFound
from work_orchestrator.orchestrator.workflow.models import (
    ChainExecution,
    ChainExecutionStep,
    SubjectRecord,
    SubjectRef,
    TransitionRecord,
)
from work_orchestrator.orchestrator.workflow.state_machine import ExecutionStatus, StepStatus
from work_orchestrator.state.stores import (
    ExecutionStore,
    StepStore,
    SubjectStore,
    TransitionLog,
)

NOW = datetime(2025, 1, 6, 9, 0, tzinfo=UTC)


def _execution(execution_id: str = "exec-1") -> ChainExecution:
    chain = ChainDefinition(name="Intake", steps=[StepSpec(agent_ref="dispatcher")])
    return ChainExecution(
        id=execution_id,
        chain_id=chain.id,
        chain_version=chain.version,
        chain=chain,
        started_at=NOW,
    )


def test_subject_store_roundtrip(tmp_path: Path) -> None:
    path = tmp_path / "agent_state" / "subjects.json"
    store = SubjectStore(path)
    ref = SubjectRef(type="task", id="t-1")

    store.upsert(SubjectRecord(type="task", id="t-1", status="todo", attributes={"title": "Logo"}))
    store.set_status(ref, "in_progress")

    reloaded = SubjectStore(path)
    assert reloaded.get_status(ref) == "in_progress"
    assert reloaded.get_snapshot(ref) == {
        "title": "Logo",
        "id": "t-1",
        "type": "task",
        "status": "in_progress",
        "tags": [],
    }
    assert json.loads(path.read_text(encoding="utf-8"))[0]["status"] == "in_progress"


def test_missing_subject(tmp_path: Path) -> None:
    store = SubjectStore(tmp_path / "subjects.json")
    with pytest.raises(NotFound):
        store.get_status(SubjectRef(type="task", id="nope"))


def test_invalid_json_is_treated_as_empty(tmp_path: Path) -> None:
    path = tmp_path / "subjects.json"
    path.write_text("{not json", encoding="utf-8")
    assert SubjectStore(path).all() == []

    path.write_text('{"a": 1}', encoding="utf-8")
    assert SubjectStore(path).all() == []


def test_writes_leave_no_temp_files(tmp_path: Path) -> None:
    store = SubjectStore(tmp_path / "subjects.json")
    for i in range(3):
        store.upsert(SubjectRecord(type="task", id=f"t-{i}", status="todo"))
    assert sorted(p.name for p in tmp_path.iterdir()) == ["subjects.json"]


def test_transition_log_orders_by_sequence(tmp_path: Path) -> None:
    log = TransitionLog(tmp_path / "transitions.json")
    ref = SubjectRef(type="task", id="t-1")
    assert log.next_sequence(ref) == 1

    for sequence, (frm, to) in [(2, ("in_progress", "in_review")), (1, ("todo", "in_progress"))]:
        log.append(
            TransitionRecord(
                subject_type="task",
                subject_id="t-1",
                from_status=frm,
                to_status=to,
                occurred_at=NOW,
                sequence=sequence,
            )
        )

    assert [r.sequence for r in log.for_subject(ref)] == [1, 2]
    assert log.next_sequence(ref) == 3
    assert log.for_subject(SubjectRef(type="task", id="other")) == []


def test_compare_and_swap_bumps_version(tmp_path: Path) -> None:
    store = ExecutionStore(tmp_path / "executions.json")
    created = store.create(_execution())

    saved = store.compare_and_swap(created.model_copy(update={"status": ExecutionStatus.RUNNING}))

    assert saved.version == created.version + 1
    assert store.require(created.id).status == ExecutionStatus.RUNNING


def test_compare_and_swap_detects_stale_writes(tmp_path: Path) -> None:
    store = ExecutionStore(tmp_path / "executions.json")
    created = store.create(_execution())
    store.compare_and_swap(created.model_copy(update={"status": ExecutionStatus.PAUSED}))

    with pytest.raises(ConcurrentModification) as excinfo:
        store.compare_and_swap(created.model_copy(update={"status": ExecutionStatus.RUNNING}))

    assert excinfo.value.expected_version == 0
    assert excinfo.value.actual_version == 1
    assert store.require(created.id).status == ExecutionStatus.PAUSED


def test_create_rejects_duplicate_ids(tmp_path: Path) -> None:
    store = ExecutionStore(tmp_path / "executions.json")
    store.create(_execution())
    with pytest.raises(ValueError):
        store.create(_execution())


def test_list_filters_by_status(tmp_path: Path) -> None:
    store = ExecutionStore(tmp_path / "executions.json")
    first = store.create(_execution("a"))
    store.create(_execution("b"))
    store.compare_and_swap(first.model_copy(update={"status": ExecutionStatus.FAILED}))

    assert [e.id for e in store.list(status=ExecutionStatus.FAILED)] == ["a"]
    assert [e.id for e in store.list()] == ["a", "b"]


def test_step_store_is_keyed_by_execution_and_index(tmp_path: Path) -> None:
    store = StepStore(tmp_path / "execution_steps.json")
    store.upsert(ChainExecutionStep(execution_id="e", step_index=1, agent_ref="b"))
    store.upsert(ChainExecutionStep(execution_id="e", step_index=0, agent_ref="a"))
    store.upsert(
        ChainExecutionStep(
            execution_id="e",
            step_index=0,
            agent_ref="a",
            status=StepStatus.COMPLETED,
            started_at=NOW,
            completed_at=NOW.replace(minute=2),
        )
    )

    steps = store.for_execution("e")

    assert [s.step_index for s in steps] == [0, 1]
    assert steps[0].status == StepStatus.COMPLETED
    assert steps[0].duration is not None
    assert steps[0].duration.total_seconds() == 120
    assert steps[1].duration is None
