"""LLM-backed step executor.

Each agent step becomes one chat completion: a system prompt naming the
agent's job, and the filtered chain context as JSON. The model must answer
with a single JSON object, which becomes the step output.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Mapping
from typing import Any

from work_orchestrator.llm.provider import LLMProvider
from work_orchestrator.orchestrator.workflow.chains import StepSpec
from work_orchestrator.orchestrator.workflow.errors import ExecutorFailure
from work_orchestrator.orchestrator.workflow.executor import StepInputs, StepResult

logger = logging.getLogger(__name__)

AGENT_INSTRUCTIONS: dict[str, str] = {
    "dispatcher": (
        "You route incoming work orders. Read the work order and decide which project "
        "and team should take it. Reply with keys: routing_recommendation "
        "(object with team, confidence 0-1, rationale), project (object with id and name "
        "if one fits, otherwise null) and internal_notes (string, never shown to clients)."
    ),
    "pm-copilot": (
        "You are a project manager's assistant. Given the work order, its project and the "
        "routing recommendation, draft a delivery plan. Reply with keys: plan (list of "
        "short task titles), estimated_hours (number) and risks (list of strings)."
    ),
    "client-comms": (
        "You write client-facing updates. Using the context, draft a short, friendly "
        "acknowledgement for the client. Reply with keys: subject and body. Set "
        "requires_approval to true so a human reviews the message before it is sent."
    ),
}

_GENERIC_INSTRUCTIONS = (
    "You are the '{agent_ref}' agent in an automated work-management chain. "
    "Use the context to do your part of the job."
)

_REPLY_FORMAT = (
    "Answer with exactly one JSON object and nothing else. Add \"requires_approval\": true "
    "(and optionally \"approval_reason\") when a human must sign off before the chain continues."
)

_FENCE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


def parse_reply(text: str) -> dict[str, Any]:
    """Decode the model reply; tolerates a surrounding markdown code fence."""

    stripped = text.strip()
    fenced = _FENCE.match(stripped)
    if fenced:
        stripped = fenced.group(1)
    try:
        data = json.loads(stripped)
    except json.JSONDecodeError as e:
        raise ValueError(f"Agent reply is not valid JSON: {e.msg}") from e
    if not isinstance(data, dict):
        raise ValueError("Agent reply must be a JSON object")
    return data


class LLMStepExecutor:
    """Runs agent steps through an :class:`LLMProvider`."""

    def __init__(
        self,
        provider: LLMProvider,
        *,
        instructions: Mapping[str, str] | None = None,
        max_tokens: int | None = None,
    ) -> None:
        self._provider = provider
        self._instructions = dict(AGENT_INSTRUCTIONS if instructions is None else instructions)
        self._max_tokens = max_tokens

    def messages_for(self, step: StepSpec, inputs: StepInputs) -> list[dict[str, str]]:
        instructions = self._instructions.get(
            step.agent_ref, _GENERIC_INSTRUCTIONS.format(agent_ref=step.agent_ref)
        )
        return [
            {"role": "system", "content": f"{instructions}\n\n{_REPLY_FORMAT}"},
            {
                "role": "user",
                "content": json.dumps(inputs.context, ensure_ascii=False, default=str, sort_keys=True),
            },
        ]

    def execute(self, step: StepSpec, inputs: StepInputs) -> StepResult:
        try:
            reply = self._provider.chat(self.messages_for(step, inputs), max_tokens=self._max_tokens)
        except Exception as e:
            raise ExecutorFailure(f"LLM call for {step.agent_ref} failed: {e}") from e

        try:
            output = parse_reply(reply)
        except ValueError as e:
            logger.warning(
                "Unusable agent reply",
                extra={
                    "execution_id": inputs.execution_id,
                    "step_index": inputs.step_index,
                    "agent_ref": step.agent_ref,
                },
            )
            return StepResult.failure(str(e))

        requires_approval = bool(output.pop("requires_approval", False))
        approval_reason = str(output.pop("approval_reason", "") or "")
        return StepResult.success(
            output, requires_approval=requires_approval, approval_reason=approval_reason
        )
