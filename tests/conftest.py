"""Test configuration and fixtures."""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from work_orchestrator.orchestrator.config import OrchestratorSettings
from work_orchestrator.orchestrator.service import WorkOrchestrator
from work_orchestrator.orchestrator.workflow.chains import StepSpec
from work_orchestrator.orchestrator.workflow.executor import StepInputs, StepResult

Response = StepResult | Callable[[StepInputs], StepResult]


class FrozenClock:
    """Deterministic clock; tests move time with `advance`."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 1, 6, 9, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now += timedelta(**delta)


class ScriptedExecutor:
    """Step executor driven by per-agent responses.

    Agents without a scripted response succeed with `{"<agent>_done": True}`.
    Every call is recorded with the (filtered) context it received.
    """

    def __init__(self) -> None:
        self.responses: dict[str, Response] = {}
        self.calls: list[tuple[str, int, dict[str, Any]]] = []
        self._lock = threading.Lock()

    def execute(self, step: StepSpec, inputs: StepInputs) -> StepResult:
        with self._lock:
            self.calls.append((step.agent_ref, inputs.step_index, dict(inputs.context)))
        response = self.responses.get(step.agent_ref)
        if response is None:
            return StepResult.success({f"{step.agent_ref.replace('-', '_')}_done": True})
        if isinstance(response, StepResult):
            return response
        return response(inputs)

    @property
    def agents_called(self) -> list[str]:
        return [agent for agent, _, _ in self.calls]

    def context_for(self, agent_ref: str) -> dict[str, Any]:
        for agent, _, context in self.calls:
            if agent == agent_ref:
                return context
        raise AssertionError(f"{agent_ref} was never called")


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def executor() -> ScriptedExecutor:
    return ScriptedExecutor()


@pytest.fixture
def settings(tmp_path: Path) -> OrchestratorSettings:
    return OrchestratorSettings(
        _env_file=None,
        ORCHESTRATOR_STATE_PATH=str(tmp_path / "agent_state"),
        ORCHESTRATOR_STEP_TIMEOUT_SECONDS=0,
        LOG_LEVEL="DEBUG",
    )


@pytest.fixture
def orchestrator(
    settings: OrchestratorSettings, executor: ScriptedExecutor, clock: FrozenClock
) -> Iterator[WorkOrchestrator]:
    """Orchestrator that drives executions inline in the calling thread."""

    orch = WorkOrchestrator(settings, executor, clock=clock)
    yield orch
    orch.close()
