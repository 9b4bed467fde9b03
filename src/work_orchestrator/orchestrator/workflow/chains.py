"""Chain definitions: ordered agent steps owned by a tenant."""

from __future__ import annotations

import uuid
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from .context import OUTPUT_TRANSFORMERS

ExecutionMode = Literal["sequential", "parallel"]
BranchAction = Literal["goto", "skip", "terminate"]


class ContextFilter(BaseModel):
    """Include acts as an allow-list when non-empty; exclude always wins."""

    include: list[str] = Field(default_factory=list)
    exclude: list[str] = Field(default_factory=list)


class BranchRule(BaseModel):
    """Conditional routing evaluated after a step completes.

    `condition` uses the form `<dotted.path> <op> <value>` against the chain
    context, e.g. `routing_recommendation.confidence >= 0.8`. A rule without a
    condition always applies.
    """

    condition: str | None = None
    action: BranchAction = "goto"
    target_step: int | None = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _goto_needs_target(self) -> BranchRule:
        if self.action == "goto" and self.target_step is None:
            raise ValueError("goto branch rules require target_step")
        return self


class StepSpec(BaseModel):
    agent_ref: str = Field(min_length=1)
    execution_mode: ExecutionMode = "sequential"
    pre_conditions: dict[str, Any] = Field(default_factory=dict)
    context_filter: ContextFilter = Field(default_factory=ContextFilter)
    post_conditions: dict[str, Any] = Field(default_factory=dict)
    output_transformers: list[str] = Field(default_factory=list)
    requires_approval: bool = Field(
        default=False,
        description="Pause for human approval before this step runs",
    )
    next_step_conditions: list[BranchRule] = Field(default_factory=list)

    @field_validator("output_transformers")
    @classmethod
    def _known_transformers(cls, value: list[str]) -> list[str]:
        unknown = [name for name in value if name not in OUTPUT_TRANSFORMERS]
        if unknown:
            raise ValueError(f"Unknown output transformers: {unknown}")
        return value


class ChainDefinition(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    name: str
    description: str = ""
    steps: list[StepSpec] = Field(default_factory=list)
    enabled: bool = True
    is_template: bool = False
    version: int = Field(default=1, ge=1)

    @model_validator(mode="after")
    def _branch_targets_in_range(self) -> ChainDefinition:
        for index, step in enumerate(self.steps):
            for rule in step.next_step_conditions:
                if rule.target_step is not None and rule.target_step >= len(self.steps):
                    raise ValueError(
                        f"Step {index} branches to step {rule.target_step}, "
                        f"but the chain has {len(self.steps)} steps"
                    )
        return self

    def frozen_copy(self) -> ChainDefinition:
        """Deep copy taken when an execution starts."""

        return self.model_copy(deep=True)

    def revised(self, **updates: Any) -> ChainDefinition:
        """Return an edited definition with a bumped version."""

        merged = {**self.model_dump(), **updates, "id": self.id, "version": self.version + 1}
        return ChainDefinition.model_validate(merged)

    def clone(self, *, name: str | None = None) -> ChainDefinition:
        """Instantiate a tenant-owned chain from this definition (usually a template)."""

        return ChainDefinition(
            name=name or self.name,
            description=self.description,
            steps=[step.model_copy(deep=True) for step in self.steps],
            enabled=True,
            is_template=False,
        )


def parallel_group(steps: list[StepSpec], start: int) -> range:
    """Indices of the contiguous group beginning at `start`.

    A sequential step is a group of one.
    """

    if steps[start].execution_mode != "parallel":
        return range(start, start + 1)
    end = start
    while end + 1 < len(steps) and steps[end + 1].execution_mode == "parallel":
        end += 1
    return range(start, end + 1)
