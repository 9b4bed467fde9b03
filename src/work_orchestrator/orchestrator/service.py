"""Wiring for the ledger, trigger matching and the chain engine.

`WorkOrchestrator` is the one object the CLI and the REST server talk to. A
status change flows through it as:

    ledger.apply_with_events -> EventBus.publish -> TriggerMatcher.dispatch
        -> engine.create -> submit(execution_id) -> engine.run

`submit` decides where executions are driven. By default they run inline in
the caller's thread; the server hands them to an `ExecutionRunner`.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from work_orchestrator.orchestrator.config import OrchestratorSettings
from work_orchestrator.orchestrator.workflow.engine import CHAIN_EXECUTION, ChainExecutionEngine
from work_orchestrator.orchestrator.workflow.events import EventBus, TransitionOccurred
from work_orchestrator.orchestrator.workflow.executor import StepExecutor, TimeoutStepExecutor
from work_orchestrator.orchestrator.workflow.ledger import TransitionLedger
from work_orchestrator.orchestrator.workflow.models import (
    Actor,
    ChainExecution,
    SubjectRecord,
    SubjectRef,
    TransitionRecord,
    utc_now,
)
from work_orchestrator.orchestrator.workflow.pause_gate import PauseGateService, WorkflowPauseGate
from work_orchestrator.orchestrator.workflow.state_machine import ExecutionStatus, TransitionRuleRegistry
from work_orchestrator.orchestrator.workflow.triggers import Trigger, TriggerMatcher
from work_orchestrator.state.stores import (
    ChainStore,
    ExecutionStore,
    PauseGateStore,
    StepStore,
    SubjectStore,
    TransitionLog,
    TriggerStore,
)

logger = logging.getLogger(__name__)

Submit = Callable[[str], object]


class WorkOrchestrator:
    def __init__(
        self,
        settings: OrchestratorSettings,
        executor: StepExecutor,
        *,
        submit: Submit | None = None,
        rules: TransitionRuleRegistry | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.settings = settings

        self.subjects = SubjectStore(settings.subjects_file)
        self.transitions = TransitionLog(settings.transitions_file)
        self.chains = ChainStore(settings.chains_file)
        self.triggers = TriggerStore(settings.triggers_file)
        self.executions = ExecutionStore(settings.executions_file)
        self.steps = StepStore(settings.execution_steps_file)

        self.gates = PauseGateService(PauseGateStore(settings.pause_gates_file), clock=clock)
        self.ledger = TransitionLedger(
            rules=rules or TransitionRuleRegistry.default(),
            subjects=self.subjects,
            history=self.transitions,
            clock=clock,
        )
        self.bus = EventBus()
        self.matcher = TriggerMatcher(self.triggers, chains=self.chains, clock=clock)

        self._step_executor = TimeoutStepExecutor(
            executor,
            timeout_seconds=settings.step_timeout_seconds,
            max_workers=settings.worker_count * settings.parallel_step_limit,
        )
        self.engine = ChainExecutionEngine(
            executions=self.executions,
            steps=self.steps,
            gates=self.gates,
            executor=self._step_executor,
            clock=clock,
            parallel_limit=settings.parallel_step_limit,
            max_conflict_retries=settings.max_conflict_retries,
        )
        self._submit: Submit = submit or self.engine.run
        self._inline = submit is None

        self.bus.subscribe(self.dispatch)

    # ------------------------------------------------------------------
    # Subjects and transitions
    # ------------------------------------------------------------------

    def register_subject(self, record: SubjectRecord) -> SubjectRecord:
        return self.subjects.upsert(record)

    def transition(
        self,
        subject: SubjectRef,
        actor: Actor,
        to_status: str,
        comment: str | None = None,
    ) -> list[TransitionRecord]:
        """Record a status change and publish one event per written record.

        The ledger lock is held until every event has been handled, so the
        matcher sees one subject's transitions in the order they were recorded.
        """

        with self.ledger.lock:
            applied = self.ledger.apply_with_events(subject, actor, to_status, comment)
            for item in applied:
                self.bus.publish(item.event)
        return [item.record for item in applied]

    def reopen_for_timer(self, subject: SubjectRef, actor: Actor) -> TransitionRecord:
        with self.ledger.lock:
            applied = self.ledger.reopen_for_timer_with_event(subject, actor)
            self.bus.publish(applied.event)
        return applied.record

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def dispatch(self, event: TransitionOccurred) -> list[Trigger]:
        return self.matcher.dispatch(event, self._start_chain)

    def _start_chain(self, trigger: Trigger, event: TransitionOccurred) -> ChainExecution:
        chain = self.chains.require(trigger.chain_id)
        execution = self.engine.create(
            chain,
            SubjectRef(type=event.subject_type, id=event.subject_id),
            subject_snapshot=event.subject,
            trigger=trigger,
        )
        self._submit(execution.id)
        return execution

    # ------------------------------------------------------------------
    # Executions
    # ------------------------------------------------------------------

    def resume(self, execution_id: str, approver: str | None = None) -> ChainExecution:
        return self._continue(self.engine.resume(execution_id, approver))

    def rerun(self, execution_id: str) -> ChainExecution:
        execution = self.engine.rerun(execution_id, advance=False)
        self._submit(execution.id)
        return self.engine.get(execution.id)

    def recover(self) -> list[str]:
        """Hand every pending or running execution back to `submit`."""

        if self._inline:
            return [e.id for e in self.engine.recover()]
        ids = [
            e.id
            for status in (ExecutionStatus.RUNNING, ExecutionStatus.PENDING)
            for e in self.executions.list(status=status)
        ]
        for execution_id in ids:
            self._submit(execution_id)
        logger.info("Recovery submitted executions", extra={"count": len(ids)})
        return ids

    # ------------------------------------------------------------------
    # Pause gates
    # ------------------------------------------------------------------

    def approve_gate(self, gate_id: str, approver: str | None) -> WorkflowPauseGate:
        """Approve a gate; a gate on a chain execution also resumes the execution."""

        gate = self.gates.get(gate_id)
        ref = gate.approvable_ref
        if ref is not None and ref.type == CHAIN_EXECUTION and self._holds_execution(ref.id, gate_id):
            self.resume(ref.id, approver)
            return self.gates.get(gate_id)
        return self.gates.approve(gate_id, approver)

    def reject_gate(self, gate_id: str, approver: str | None, reason: str) -> WorkflowPauseGate:
        gate = self.gates.get(gate_id)
        ref = gate.approvable_ref
        if ref is not None and ref.type == CHAIN_EXECUTION and self._holds_execution(ref.id, gate_id):
            self.engine.reject(ref.id, approver, reason)
            return self.gates.get(gate_id)
        return self.gates.reject(gate_id, approver, reason)

    def close(self) -> None:
        self._step_executor.close()

    def _holds_execution(self, execution_id: str, gate_id: str) -> bool:
        execution = self.executions.get(execution_id)
        return execution is not None and execution.pause_gate_id == gate_id

    def _continue(self, execution: ChainExecution) -> ChainExecution:
        if execution.status in (ExecutionStatus.PENDING, ExecutionStatus.RUNNING):
            self._submit(execution.id)
            return self.engine.get(execution.id)
        return execution
