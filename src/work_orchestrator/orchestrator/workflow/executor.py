from __future__ import annotations

import concurrent.futures
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from .chains import StepSpec
from .errors import StepTimeout

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class StepInputs:
    """Fully materialised inputs for one agent step.

    `context` is the filtered slice of the chain context, never the whole map.
    """

    execution_id: str
    step_index: int
    context: dict[str, Any]


@dataclass(frozen=True, slots=True)
class StepResult:
    ok: bool
    output: dict[str, Any] = field(default_factory=dict)
    error: str = ""
    requires_approval: bool = False
    approval_reason: str = ""

    @classmethod
    def success(cls, output: dict[str, Any] | None = None, **kwargs: Any) -> StepResult:
        return cls(ok=True, output=dict(output or {}), **kwargs)

    @classmethod
    def failure(cls, error: str) -> StepResult:
        return cls(ok=False, error=error)


class StepExecutor(Protocol):
    """Performs the agent call for one step.

    Executors are passive: they do not decide workflow transitions. They must
    be safe to call again with the same inputs.
    """

    def execute(self, step: StepSpec, inputs: StepInputs) -> StepResult: ...


class TimeoutStepExecutor:
    """Bounded wait around another executor.

    An exceeded timeout raises `StepTimeout`, which the engine records like any
    executor failure. The abandoned call keeps running in its worker thread.
    """

    def __init__(self, inner: StepExecutor, *, timeout_seconds: float, max_workers: int = 4) -> None:
        self._inner = inner
        self._timeout = timeout_seconds
        self._pool = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="step-executor"
        )

    def execute(self, step: StepSpec, inputs: StepInputs) -> StepResult:
        if self._timeout <= 0:
            return self._inner.execute(step, inputs)
        future = self._pool.submit(self._inner.execute, step, inputs)
        try:
            return future.result(timeout=self._timeout)
        except concurrent.futures.TimeoutError as e:
            future.cancel()
            logger.warning(
                "Step executor timed out",
                extra={
                    "execution_id": inputs.execution_id,
                    "step_index": inputs.step_index,
                    "agent_ref": step.agent_ref,
                    "timeout_seconds": self._timeout,
                },
            )
            raise StepTimeout(
                f"Step {inputs.step_index} ({step.agent_ref}) timed out after {self._timeout:g}s"
            ) from e

    def close(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)
