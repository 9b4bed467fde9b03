"""Chain execution engine.

Owns the lifecycle of a chain run:

    pending -> running -> completed | failed
               running <-> paused

`advance` moves an execution forward by one step (or one contiguous parallel
group). Every write to the execution record is a compare-and-swap on its
`version`, and the step executor is called without holding any store lock, so
an operator can pause or cancel while a step is outstanding. The in-flight
step then loses the race with `ConcurrentModification` and `run` retries.

Step records are committed before the execution's index moves past them. A
retry that finds a completed record for the current step reuses its output
instead of calling the executor again.
"""

from __future__ import annotations

import concurrent.futures
import logging
import uuid
from collections.abc import Callable
from datetime import datetime
from typing import TYPE_CHECKING, Any

from .chains import ChainDefinition, StepSpec, parallel_group
from .context import apply_transformers, filter_context, merge_context, unmet_conditions
from .errors import (
    ChainExecutionError,
    ConcurrentModification,
    ExecutionNotPaused,
    ExecutorFailure,
    IllegalExecutionTransition,
    PostconditionFailed,
    PreconditionFailed,
)
from .executor import StepExecutor, StepInputs, StepResult
from .locks import KeyedLocks
from .models import ChainExecution, ChainExecutionStep, SubjectRef, utc_now
from .pause_gate import ApprovableRef, GateState, PauseGateService
from .policy import decide_next_step
from .state_machine import ExecutionStatus, StepStatus, check_execution_transition

if TYPE_CHECKING:
    from work_orchestrator.state.stores import ExecutionStore, StepStore

    from .triggers import Trigger

logger = logging.getLogger(__name__)

CHAIN_EXECUTION = "chain_execution"
BEFORE_STEP = "before_step"
AFTER_STEP = "after_step"
MANUAL = "manual"


class ChainExecutionEngine:
    def __init__(
        self,
        *,
        executions: ExecutionStore,
        steps: StepStore,
        gates: PauseGateService,
        executor: StepExecutor,
        clock: Callable[[], datetime] = utc_now,
        parallel_limit: int = 4,
        max_conflict_retries: int = 3,
    ) -> None:
        self._executions = executions
        self._steps = steps
        self._gates = gates
        self._executor = executor
        self._clock = clock
        self._parallel_limit = max(1, parallel_limit)
        self._max_conflict_retries = max_conflict_retries
        self._locks = KeyedLocks()

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create(
        self,
        chain: ChainDefinition,
        subject: SubjectRef | None = None,
        *,
        subject_snapshot: dict[str, Any] | None = None,
        trigger: Trigger | None = None,
        initial_context: dict[str, Any] | None = None,
    ) -> ChainExecution:
        context: dict[str, Any] = {}
        if subject is not None:
            context[subject.type] = dict(subject_snapshot or {"id": subject.id, "type": subject.type})
        if trigger is not None:
            context["trigger"] = {
                "id": trigger.id,
                "name": trigger.name,
                "entity_type": trigger.entity_type,
                "status_from": trigger.status_from,
                "status_to": trigger.status_to,
            }
        context.update(initial_context or {})

        execution = ChainExecution(
            id=uuid.uuid4().hex,
            chain_id=chain.id,
            chain_version=chain.version,
            chain=chain.frozen_copy(),
            status=ExecutionStatus.PENDING,
            context=context,
            started_at=self._clock(),
            trigger_subject=subject,
            trigger_id=trigger.id if trigger is not None else None,
        )
        self._executions.create(execution)
        logger.info(
            "Chain execution created",
            extra={
                "execution_id": execution.id,
                "chain_id": chain.id,
                "chain_name": chain.name,
                "chain_version": chain.version,
                "subject": str(subject) if subject is not None else None,
            },
        )
        return execution

    def start(
        self,
        chain: ChainDefinition,
        subject: SubjectRef | None = None,
        *,
        subject_snapshot: dict[str, Any] | None = None,
        trigger: Trigger | None = None,
        initial_context: dict[str, Any] | None = None,
        advance: bool = True,
    ) -> ChainExecution:
        """Create a pending execution, then (by default) advance it once."""

        execution = self.create(
            chain,
            subject,
            subject_snapshot=subject_snapshot,
            trigger=trigger,
            initial_context=initial_context,
        )
        if not advance:
            return execution
        return self._advance_with_retry(execution.id)

    def rerun(self, execution_id: str, *, advance: bool = True) -> ChainExecution:
        """Operator retry: a fresh execution resuming where a failed one stopped."""

        failed = self._executions.require(execution_id)
        if failed.status != ExecutionStatus.FAILED:
            raise IllegalExecutionTransition(
                f"Only failed executions can be re-run (status is {failed.status.value})"
            )
        execution = ChainExecution(
            id=uuid.uuid4().hex,
            chain_id=failed.chain_id,
            chain_version=failed.chain_version,
            chain=failed.chain.frozen_copy(),
            status=ExecutionStatus.PENDING,
            current_step_index=failed.current_step_index,
            context=dict(failed.context),
            context_version=failed.context_version,
            started_at=self._clock(),
            trigger_subject=failed.trigger_subject,
            trigger_id=failed.trigger_id,
            rerun_of=failed.id,
        )
        self._executions.create(execution)
        # Completed work carries over; only the failed step (or group) runs again.
        for record in self._steps.for_execution(failed.id):
            if record.status == StepStatus.COMPLETED:
                self._steps.upsert(record.model_copy(update={"execution_id": execution.id}))
        logger.info(
            "Chain execution re-run",
            extra={
                "execution_id": execution.id,
                "rerun_of": failed.id,
                "step_index": execution.current_step_index,
            },
        )
        if not advance:
            return execution
        return self._advance_with_retry(execution.id)

    # ------------------------------------------------------------------
    # Driving
    # ------------------------------------------------------------------

    def advance(self, execution_id: str) -> ChainExecution:
        """Run the current step (or parallel group) and persist the outcome.

        A no-op on terminal or paused executions. Raises only
        `ConcurrentModification`; step failures are recorded on the execution.
        """

        with self._locks.hold(execution_id):
            return self._advance_locked(execution_id)

    def run(self, execution_id: str) -> ChainExecution:
        """Advance until the execution completes, fails or pauses."""

        while True:
            execution = self._advance_with_retry(execution_id)
            if execution.status not in (ExecutionStatus.PENDING, ExecutionStatus.RUNNING):
                return execution

    def _advance_with_retry(self, execution_id: str) -> ChainExecution:
        """`advance`, re-read and retried when the record changed underneath it.

        The retry sees whatever the concurrent writer left: a paused or
        cancelled execution comes back unchanged.
        """

        conflicts = 0
        while True:
            try:
                return self.advance(execution_id)
            except ConcurrentModification:
                conflicts += 1
                if conflicts > self._max_conflict_retries:
                    raise
                logger.info(
                    "Execution changed while advancing; retrying",
                    extra={"execution_id": execution_id, "attempt": conflicts},
                )

    def recover(self) -> list[ChainExecution]:
        """Re-drive executions left pending or running, e.g. after a crash.

        A step record still marked running is invoked again; executors are
        expected to tolerate that.
        """

        recovered: list[ChainExecution] = []
        for status in (ExecutionStatus.RUNNING, ExecutionStatus.PENDING):
            for execution in self._executions.list(status=status):
                logger.info(
                    "Recovering chain execution",
                    extra={"execution_id": execution.id, "step_index": execution.current_step_index},
                )
                recovered.append(self.run(execution.id))
        return recovered

    # ------------------------------------------------------------------
    # External control
    # ------------------------------------------------------------------

    def pause(self, execution_id: str, reason: str) -> ChainExecution:
        gate_id = uuid.uuid4().hex

        def mutate(execution: ChainExecution) -> dict[str, Any]:
            if execution.is_terminal:
                raise IllegalExecutionTransition(
                    f"Cannot pause a {execution.status.value} execution"
                )
            if execution.status == ExecutionStatus.PAUSED:
                return {}
            return {
                "status": ExecutionStatus.PAUSED,
                "paused_at": self._clock(),
                "pause_reason": reason,
                "pause_gate_id": gate_id,
            }

        execution = self._update_with_retry(execution_id, mutate)
        if execution.pause_gate_id == gate_id:
            self._open_gate(execution, gate_id, phase=MANUAL, reason=reason, approval_required=False)
            logger.info("Chain execution paused", extra={"execution_id": execution_id, "reason": reason})
        return execution

    def resume(self, execution_id: str, approver: str | None = None) -> ChainExecution:
        """Approve the open gate, mark running and advance once from the same index."""

        previous: dict[str, str | None] = {}

        def mutate(execution: ChainExecution) -> dict[str, Any]:
            if execution.status != ExecutionStatus.PAUSED:
                raise ExecutionNotPaused(
                    f"Execution {execution.id} is {execution.status.value}, not paused"
                )
            previous["gate_id"] = execution.pause_gate_id
            return {
                "status": ExecutionStatus.RUNNING,
                "resumed_at": self._clock(),
                "pause_gate_id": None,
                "pause_reason": None,
            }

        self._update_with_retry(execution_id, mutate)
        gate_id = previous.get("gate_id")
        if gate_id is not None and self._gates.get(gate_id).state == GateState.PAUSED:
            self._gates.approve(gate_id, approver)
        logger.info("Chain execution resumed", extra={"execution_id": execution_id, "approver_id": approver})
        return self._advance_with_retry(execution_id)

    def reject(self, execution_id: str, approver: str | None, reason: str) -> ChainExecution:
        previous: dict[str, str | None] = {}

        def mutate(execution: ChainExecution) -> dict[str, Any]:
            if execution.status != ExecutionStatus.PAUSED:
                raise ExecutionNotPaused(
                    f"Execution {execution.id} is {execution.status.value}, not paused"
                )
            previous["gate_id"] = execution.pause_gate_id
            return {
                "status": ExecutionStatus.FAILED,
                "failed_at": self._clock(),
                "error_message": f"Approval rejected: {reason}",
                "pause_gate_id": None,
            }

        execution = self._update_with_retry(execution_id, mutate)
        gate_id = previous.get("gate_id")
        if gate_id is not None and self._gates.get(gate_id).state == GateState.PAUSED:
            self._gates.reject(gate_id, approver, reason)
        logger.info(
            "Chain execution rejected",
            extra={"execution_id": execution_id, "approver_id": approver, "reason": reason},
        )
        return execution

    def cancel(self, execution_id: str, reason: str = "Cancelled by operator") -> ChainExecution:
        previous: dict[str, str | None] = {}

        def mutate(execution: ChainExecution) -> dict[str, Any]:
            if execution.is_terminal:
                raise IllegalExecutionTransition(
                    f"Cannot cancel a {execution.status.value} execution"
                )
            previous["gate_id"] = execution.pause_gate_id
            return {
                "status": ExecutionStatus.FAILED,
                "failed_at": self._clock(),
                "error_message": f"Cancelled: {reason}",
                "pause_gate_id": None,
            }

        execution = self._update_with_retry(execution_id, mutate)
        gate_id = previous.get("gate_id")
        if gate_id is not None and self._gates.get(gate_id).state == GateState.PAUSED:
            self._gates.reject(gate_id, None, reason)
        logger.info("Chain execution cancelled", extra={"execution_id": execution_id, "reason": reason})
        return execution

    def get(self, execution_id: str) -> ChainExecution:
        return self._executions.require(execution_id)

    def steps(self, execution_id: str) -> list[ChainExecutionStep]:
        return self._steps.for_execution(execution_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _advance_locked(self, execution_id: str) -> ChainExecution:
        execution = self._executions.require(execution_id)
        if execution.is_terminal or execution.status == ExecutionStatus.PAUSED:
            logger.debug(
                "Advance skipped",
                extra={"execution_id": execution_id, "status": execution.status.value},
            )
            return execution

        steps = execution.chain.steps
        index = execution.current_step_index
        if index >= len(steps):
            return self._save(
                execution, status=ExecutionStatus.COMPLETED, completed_at=self._clock()
            )

        if execution.status == ExecutionStatus.PENDING:
            execution = self._save(execution, status=ExecutionStatus.RUNNING)

        group = parallel_group(steps, index)

        if any(steps[i].requires_approval for i in group) and not self._approved_before(execution, index):
            step = steps[index]
            return self._pause_for_approval(
                execution,
                step_index=index,
                phase=BEFORE_STEP,
                reason=f"Step {index} ({step.agent_ref}) requires approval before it runs",
            )

        records = {s.step_index: s for s in self._steps.for_execution(execution.id)}
        completed = {i for i, s in records.items() if s.status == StepStatus.COMPLETED}

        for i in group:
            if i in completed:
                continue
            problems = unmet_conditions(
                steps[i].pre_conditions,
                context=execution.context,
                step_index=index,
                completed_steps=completed,
            )
            if problems:
                error = PreconditionFailed(
                    f"Pre-conditions for step {i} ({steps[i].agent_ref}) not met: "
                    + "; ".join(problems)
                )
                return self._fail(execution, error, step_index=i)

        pending = [i for i in group if i not in completed]
        for i in pending:
            self._begin_step(execution, i, records.get(i))

        results = self._run_group(execution, pending)

        failures = [(i, results[i]) for i in pending if i in results and not results[i].ok]
        if failures or len(results) < len(pending):
            return self._fail_group(execution, pending, results, failures)

        outputs: dict[int, dict[str, Any]] = {}
        approval_reasons: list[str] = []
        for i in group:
            step = steps[i]
            if i in completed:
                record = records[i]
                outputs[i] = dict(record.output_data)
                if record.approval_requested:
                    approval_reasons.append(f"Step {i} ({step.agent_ref}) requested approval")
                continue

            result = results[i]
            transformed = apply_transformers(
                result.output, step.output_transformers, agent_ref=step.agent_ref
            )
            problems = unmet_conditions(
                step.post_conditions,
                context=merge_context(execution.context, transformed),
                step_index=i,
                completed_steps=completed | set(group),
            )
            if problems:
                error = PostconditionFailed(
                    f"Post-conditions for step {i} ({step.agent_ref}) not met: " + "; ".join(problems)
                )
                return self._fail(execution, error, step_index=i)

            self._finish_step(execution, i, transformed, approval_requested=result.requires_approval)
            outputs[i] = transformed
            if result.requires_approval:
                approval_reasons.append(
                    result.approval_reason or f"Step {i} ({step.agent_ref}) requested approval"
                )

        context = merge_context(execution.context, *(outputs[i] for i in group))
        last = group[-1]
        next_step = decide_next_step(
            step=steps[last], context=context, last_index=last, total_steps=len(steps)
        )
        next_index = next_step.index if next_step.index is not None else len(steps)

        updates: dict[str, Any] = {
            "context": context,
            "context_version": execution.context_version + 1,
            "current_step_index": next_index,
        }

        if approval_reasons:
            logger.info(
                "Chain step completed; awaiting approval",
                extra={"execution_id": execution.id, "completed_step_index": last},
            )
            execution = self._save(execution, **updates)
            return self._pause_for_approval(
                execution, step_index=last, phase=AFTER_STEP, reason="; ".join(approval_reasons)
            )

        if next_step.index is None:
            updates.update(status=ExecutionStatus.COMPLETED, completed_at=self._clock())

        execution = self._save(execution, **updates)
        logger.info(
            "Chain step completed",
            extra={
                "execution_id": execution.id,
                "completed_step_index": last,
                "next_step_index": next_index,
                "branch": next_step.reason,
                "status": execution.status.value,
            },
        )
        if execution.status == ExecutionStatus.COMPLETED:
            logger.info(
                "Chain execution completed",
                extra={"execution_id": execution.id, "total_steps": len(steps)},
            )
        return execution

    def _run_group(self, execution: ChainExecution, indices: list[int]) -> dict[int, StepResult]:
        """Invoke the executor for each index.

        A single step runs inline. Parallel members run on a thread pool and the
        group fails fast: after the first failure no further results are
        collected.
        """

        steps = execution.chain.steps
        if len(indices) <= 1:
            return {i: self._invoke(execution, i, steps[i]) for i in indices}

        results: dict[int, StepResult] = {}
        pool = concurrent.futures.ThreadPoolExecutor(
            max_workers=min(self._parallel_limit, len(indices)),
            thread_name_prefix=f"chain-{execution.id[:8]}",
        )
        try:
            futures = {pool.submit(self._invoke, execution, i, steps[i]): i for i in indices}
            for future in concurrent.futures.as_completed(futures):
                index = futures[future]
                result = future.result()
                results[index] = result
                if not result.ok:
                    break
        finally:
            pool.shutdown(wait=False, cancel_futures=True)
        return results

    def _invoke(self, execution: ChainExecution, index: int, step: StepSpec) -> StepResult:
        inputs = StepInputs(
            execution_id=execution.id,
            step_index=index,
            context=filter_context(
                execution.context,
                include=step.context_filter.include,
                exclude=step.context_filter.exclude,
            ),
        )
        logger.info(
            "Chain step started",
            extra={"execution_id": execution.id, "step_index": index, "agent_ref": step.agent_ref},
        )
        try:
            result = self._executor.execute(step, inputs)
        except ChainExecutionError as e:
            return StepResult.failure(str(e))
        except Exception as e:
            logger.exception(
                "Step executor raised",
                extra={"execution_id": execution.id, "step_index": index, "agent_ref": step.agent_ref},
            )
            return StepResult.failure(f"{type(e).__name__}: {e}")
        if not isinstance(result, StepResult):
            return StepResult.failure(
                f"Step executor returned {type(result).__name__}, expected StepResult"
            )
        return result

    def _begin_step(
        self, execution: ChainExecution, index: int, existing: ChainExecutionStep | None
    ) -> ChainExecutionStep:
        step = execution.chain.steps[index]
        record = ChainExecutionStep(
            execution_id=execution.id,
            step_index=index,
            agent_ref=step.agent_ref,
            status=StepStatus.RUNNING,
            started_at=self._clock(),
            attempts=(existing.attempts if existing is not None else 0) + 1,
        )
        return self._steps.upsert(record)

    def _finish_step(
        self,
        execution: ChainExecution,
        index: int,
        output: dict[str, Any],
        *,
        approval_requested: bool = False,
    ) -> ChainExecutionStep:
        record = self._steps.get(execution.id, index)
        if record is None:
            raise IllegalExecutionTransition(
                f"Step {index} of execution {execution.id} was never started"
            )
        return self._steps.upsert(
            record.model_copy(
                update={
                    "status": StepStatus.COMPLETED,
                    "completed_at": self._clock(),
                    "output_data": output,
                    "approval_requested": approval_requested,
                    "error": None,
                }
            )
        )

    def _mark_step_failed(self, execution: ChainExecution, index: int, error: str) -> None:
        now = self._clock()
        record = self._steps.get(execution.id, index)
        if record is None:
            record = ChainExecutionStep(
                execution_id=execution.id,
                step_index=index,
                agent_ref=execution.chain.steps[index].agent_ref,
                started_at=now,
            )
        self._steps.upsert(
            record.model_copy(
                update={
                    "status": StepStatus.FAILED,
                    "completed_at": now,
                    "error": error,
                    "output_data": {**record.output_data, "error": error},
                }
            )
        )

    def _fail_group(
        self,
        execution: ChainExecution,
        pending: list[int],
        results: dict[int, StepResult],
        failures: list[tuple[int, StepResult]],
    ) -> ChainExecution:
        steps = execution.chain.steps
        if failures:
            failed_index, failed_result = failures[0]
        else:
            failed_index = next(i for i in pending if i not in results)
            failed_result = StepResult.failure("step did not report a result")

        for i in pending:
            result = results.get(i)
            if result is not None and result.ok:
                output = apply_transformers(
                    result.output, steps[i].output_transformers, agent_ref=steps[i].agent_ref
                )
                self._finish_step(execution, i, output, approval_requested=result.requires_approval)
            elif i != failed_index:
                self._mark_step_failed(
                    execution, i, result.error if result is not None else f"Cancelled: step {failed_index} failed"
                )

        error = ExecutorFailure(
            f"Step {failed_index} ({steps[failed_index].agent_ref}) failed: {failed_result.error}"
        )
        return self._fail(execution, error, step_index=failed_index)

    def _fail(self, execution: ChainExecution, error: Exception, *, step_index: int) -> ChainExecution:
        message = str(error)
        self._mark_step_failed(execution, step_index, message)
        failed = self._save(
            execution,
            status=ExecutionStatus.FAILED,
            failed_at=self._clock(),
            error_message=message,
        )
        logger.error(
            "Chain execution failed",
            extra={
                "execution_id": execution.id,
                "step_index": step_index,
                "error_type": type(error).__name__,
                "error": message,
            },
        )
        return failed

    def _pause_for_approval(
        self, execution: ChainExecution, *, step_index: int, phase: str, reason: str
    ) -> ChainExecution:
        gate_id = uuid.uuid4().hex
        paused = self._save(
            execution,
            status=ExecutionStatus.PAUSED,
            paused_at=self._clock(),
            pause_reason=reason,
            pause_gate_id=gate_id,
        )
        self._open_gate(paused, gate_id, phase=phase, reason=reason, step_index=step_index)
        logger.info(
            "Chain execution paused for approval",
            extra={"execution_id": execution.id, "step_index": step_index, "phase": phase},
        )
        return paused

    def _open_gate(
        self,
        execution: ChainExecution,
        gate_id: str,
        *,
        phase: str,
        reason: str,
        step_index: int | None = None,
        approval_required: bool = True,
    ) -> None:
        index = execution.current_step_index if step_index is None else step_index
        steps = execution.chain.steps
        agent_ref = steps[index].agent_ref if index < len(steps) else "chain"
        self._gates.open(
            gate_id=gate_id,
            agent_id=agent_ref,
            node=f"step_{index}",
            state_data={"execution_id": execution.id, "step_index": index, "phase": phase},
            reason=reason,
            approvable_ref=ApprovableRef(type=CHAIN_EXECUTION, id=execution.id),
            approval_required=approval_required,
        )

    def _approved_before(self, execution: ChainExecution, index: int) -> bool:
        ref = ApprovableRef(type=CHAIN_EXECUTION, id=execution.id)
        for gate in self._gates.for_approvable(ref):
            data = gate.state_data
            if (
                data.get("phase") == BEFORE_STEP
                and data.get("step_index") == index
                and data.get("approved") is True
            ):
                return True
        return False

    def _save(self, execution: ChainExecution, **updates: Any) -> ChainExecution:
        status = updates.get("status")
        if status is not None:
            check_execution_transition(execution.status, status)
        return self._executions.compare_and_swap(execution.model_copy(update=updates))

    def _update_with_retry(
        self, execution_id: str, mutate: Callable[[ChainExecution], dict[str, Any]]
    ) -> ChainExecution:
        attempts = 0
        while True:
            execution = self._executions.require(execution_id)
            updates = mutate(execution)
            if not updates:
                return execution
            try:
                return self._save(execution, **updates)
            except ConcurrentModification:
                attempts += 1
                if attempts > self._max_conflict_retries:
                    raise
