from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from .chains import StepSpec
from .context import evaluate_expression

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class NextStep:
    """Where the execution goes after a step (or parallel group) completes.

    `index` is None when the chain should finish now.
    """

    index: int | None
    reason: str = "sequential"


def decide_next_step(
    *,
    step: StepSpec,
    context: Mapping[str, Any],
    last_index: int,
    total_steps: int,
) -> NextStep:
    """Policy: (completed step, context) -> next step.

    Small, explicit and deterministic. It must NOT call LLMs.

    The first matching branch rule wins. `goto` may only move forward so the
    step index never decreases; a backwards target is ignored.
    """

    default_next = last_index + 1
    if default_next >= total_steps:
        return NextStep(index=None, reason="end_of_chain")

    for rule in step.next_step_conditions:
        if rule.condition is not None and not evaluate_expression(rule.condition, context):
            continue
        if rule.action == "terminate":
            return NextStep(index=None, reason="terminate")
        if rule.action == "skip":
            target = default_next + 1
            if target >= total_steps:
                return NextStep(index=None, reason="skip")
            return NextStep(index=target, reason="skip")
        target = rule.target_step if rule.target_step is not None else default_next
        if target <= last_index:
            logger.warning(
                "Ignoring backwards branch",
                extra={"from_step": last_index, "target_step": target},
            )
            return NextStep(index=default_next)
        return NextStep(index=target, reason="goto")

    return NextStep(index=default_next)
