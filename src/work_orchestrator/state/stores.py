"""JSON-file backed stores for subjects, transitions, chains and executions.

Each store owns one JSON list file and serialises access with a lock. Writes go
through a temp file + `os.replace` so a crash never leaves a half-written file.

This is intentionally simple and local-first. If/when we need multi-process
writers, these should move to a real database.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from collections.abc import Callable, Iterable
from datetime import datetime
from pathlib import Path
from typing import Any, Generic, TypeVar

from pydantic import BaseModel

from work_orchestrator.orchestrator.workflow.chains import ChainDefinition
from work_orchestrator.orchestrator.workflow.errors import ConcurrentModification, NotFound
from work_orchestrator.orchestrator.workflow.models import (
    ChainExecution,
    ChainExecutionStep,
    SubjectRecord,
    SubjectRef,
    TransitionRecord,
)
from work_orchestrator.orchestrator.workflow.pause_gate import WorkflowPauseGate
from work_orchestrator.orchestrator.workflow.state_machine import ExecutionStatus
from work_orchestrator.orchestrator.workflow.triggers import Trigger

logger = logging.getLogger(__name__)

RecordT = TypeVar("RecordT", bound=BaseModel)


def _atomic_write_json(path: Path, payload: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(json.dumps(payload, indent=2, ensure_ascii=False) + "\n")
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class JsonListStore(Generic[RecordT]):
    """A list of pydantic records persisted as one JSON array."""

    model: type[RecordT]

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.RLock()

    def _load_unlocked(self) -> list[RecordT]:
        if not self.path.exists():
            return []
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning(
                "State file is not valid JSON; treating as empty",
                extra={"path": str(self.path)},
            )
            return []
        if not isinstance(raw, list):
            logger.warning(
                "State file has unexpected shape; treating as empty",
                extra={"path": str(self.path)},
            )
            return []
        return [self.model.model_validate(item) for item in raw]

    def _save_unlocked(self, records: Iterable[RecordT]) -> None:
        _atomic_write_json(self.path, [r.model_dump(mode="json") for r in records])

    def all(self) -> list[RecordT]:
        with self._lock:
            return self._load_unlocked()

    def _replace_where(
        self, record: RecordT, match: Callable[[RecordT], bool], *, append: bool = True
    ) -> RecordT:
        with self._lock:
            records = self._load_unlocked()
            for idx, existing in enumerate(records):
                if match(existing):
                    records[idx] = record
                    self._save_unlocked(records)
                    return record
            if not append:
                raise NotFound(f"{self.model.__name__} not found")
            records.append(record)
            self._save_unlocked(records)
            return record


class SubjectStore(JsonListStore[SubjectRecord]):
    """Local subject repository used by the ledger.

    Implements the `SubjectRepository` capability: get_status / set_status /
    get_snapshot keyed by `SubjectRef`.
    """

    model = SubjectRecord

    def get(self, ref: SubjectRef) -> SubjectRecord | None:
        for record in self.all():
            if record.type == ref.type and record.id == ref.id:
                return record
        return None

    def require(self, ref: SubjectRef) -> SubjectRecord:
        record = self.get(ref)
        if record is None:
            raise NotFound(f"Subject {ref} not found")
        return record

    def upsert(self, record: SubjectRecord) -> SubjectRecord:
        return self._replace_where(
            record, lambda r: r.type == record.type and r.id == record.id
        )

    def get_status(self, ref: SubjectRef) -> str:
        return self.require(ref).status

    def set_status(self, ref: SubjectRef, status: str) -> None:
        with self._lock:
            record = self.require(ref)
            self.upsert(record.model_copy(update={"status": status}))

    def get_snapshot(self, ref: SubjectRef) -> dict[str, Any]:
        return self.require(ref).snapshot()


class TransitionLog(JsonListStore[TransitionRecord]):
    """Append-only log of transition records."""

    model = TransitionRecord

    def append(self, record: TransitionRecord) -> TransitionRecord:
        with self._lock:
            records = self._load_unlocked()
            records.append(record)
            self._save_unlocked(records)
            return record

    def for_subject(self, ref: SubjectRef) -> list[TransitionRecord]:
        records = [
            r for r in self.all() if r.subject_type == ref.type and r.subject_id == ref.id
        ]
        records.sort(key=lambda r: r.sequence)
        return records

    def next_sequence(self, ref: SubjectRef) -> int:
        history = self.for_subject(ref)
        return history[-1].sequence + 1 if history else 1


class ChainStore(JsonListStore[ChainDefinition]):
    model = ChainDefinition

    def get(self, chain_id: str) -> ChainDefinition | None:
        for chain in self.all():
            if chain.id == chain_id:
                return chain
        return None

    def require(self, chain_id: str) -> ChainDefinition:
        chain = self.get(chain_id)
        if chain is None:
            raise NotFound("Chain not found")
        return chain

    def upsert(self, chain: ChainDefinition) -> ChainDefinition:
        return self._replace_where(chain, lambda c: c.id == chain.id)

    def delete(self, chain_id: str) -> None:
        with self._lock:
            self._save_unlocked([c for c in self._load_unlocked() if c.id != chain_id])


class TriggerStore(JsonListStore[Trigger]):
    """Triggers in definition order (the matcher's tie-break)."""

    model = Trigger

    def get(self, trigger_id: str) -> Trigger | None:
        for trigger in self.all():
            if trigger.id == trigger_id:
                return trigger
        return None

    def upsert(self, trigger: Trigger) -> Trigger:
        return self._replace_where(trigger, lambda t: t.id == trigger.id)

    def touch_last_triggered(self, trigger_id: str, when: datetime) -> Trigger:
        with self._lock:
            trigger = self.get(trigger_id)
            if trigger is None:
                raise NotFound("Trigger not found")
            return self.upsert(trigger.model_copy(update={"last_triggered_at": when}))


class ExecutionStore(JsonListStore[ChainExecution]):
    model = ChainExecution

    def get(self, execution_id: str) -> ChainExecution | None:
        for execution in self.all():
            if execution.id == execution_id:
                return execution
        return None

    def require(self, execution_id: str) -> ChainExecution:
        execution = self.get(execution_id)
        if execution is None:
            raise NotFound("Execution not found")
        return execution

    def list(self, *, status: ExecutionStatus | None = None) -> list[ChainExecution]:
        executions = self.all()
        if status is not None:
            executions = [e for e in executions if e.status == status]
        return executions

    def create(self, execution: ChainExecution) -> ChainExecution:
        with self._lock:
            records = self._load_unlocked()
            if any(e.id == execution.id for e in records):
                raise ValueError(f"Execution {execution.id} already exists")
            records.append(execution)
            self._save_unlocked(records)
            return execution

    def compare_and_swap(self, execution: ChainExecution) -> ChainExecution:
        """Persist `execution` if the stored version still equals its version.

        The stored copy gets `version + 1`, which is returned.
        """

        with self._lock:
            records = self._load_unlocked()
            for idx, existing in enumerate(records):
                if existing.id != execution.id:
                    continue
                if existing.version != execution.version:
                    raise ConcurrentModification(execution.id, execution.version, existing.version)
                updated = execution.model_copy(update={"version": execution.version + 1})
                records[idx] = updated
                self._save_unlocked(records)
                return updated
            raise NotFound("Execution not found")


class StepStore(JsonListStore[ChainExecutionStep]):
    """Step records keyed by `(execution_id, step_index)`."""

    model = ChainExecutionStep

    def get(self, execution_id: str, step_index: int) -> ChainExecutionStep | None:
        for step in self.all():
            if step.execution_id == execution_id and step.step_index == step_index:
                return step
        return None

    def upsert(self, step: ChainExecutionStep) -> ChainExecutionStep:
        return self._replace_where(
            step,
            lambda s: s.execution_id == step.execution_id and s.step_index == step.step_index,
        )

    def for_execution(self, execution_id: str) -> list[ChainExecutionStep]:
        steps = [s for s in self.all() if s.execution_id == execution_id]
        steps.sort(key=lambda s: s.step_index)
        return steps


class PauseGateStore(JsonListStore[WorkflowPauseGate]):
    model = WorkflowPauseGate

    def get(self, gate_id: str) -> WorkflowPauseGate | None:
        for gate in self.all():
            if gate.id == gate_id:
                return gate
        return None

    def upsert(self, gate: WorkflowPauseGate) -> WorkflowPauseGate:
        return self._replace_where(gate, lambda g: g.id == gate.id)
