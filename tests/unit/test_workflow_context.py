"""Unit tests for chain definitions, context helpers and the branching policy."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from work_orchestrator.orchestrator.workflow.chains import (
    BranchRule,
    ChainDefinition,
    StepSpec,
    parallel_group,
)
from work_orchestrator.orchestrator.workflow.context import (
    apply_transformers,
    evaluate_expression,
    filter_context,
    lookup_path,
    merge_context,
    unmet_conditions,
)
from work_orchestrator.orchestrator.workflow.policy import decide_next_step

CONTEXT = {
    "work_order": {"id": "wo-1", "budget_cost": 4200},
    "project": {"name": "Web"},
    "internal_notes": "thin margin",
}


def test_filter_context_include_is_an_allow_list() -> None:
    assert filter_context(CONTEXT, include=["project", "missing"]) == {"project": {"name": "Web"}}


def test_filter_context_exclude_wins_over_include() -> None:
    filtered = filter_context(CONTEXT, include=["project", "internal_notes"], exclude=["internal_notes"])
    assert filtered == {"project": {"name": "Web"}}


def test_filter_context_defaults_to_everything() -> None:
    assert filter_context(CONTEXT) == CONTEXT
    assert "internal_notes" not in filter_context(CONTEXT, exclude=["internal_notes"])


def test_filter_context_does_not_mutate_input() -> None:
    original = dict(CONTEXT)
    filter_context(CONTEXT, exclude=["project"])
    assert CONTEXT == original


def test_merge_context_later_outputs_override() -> None:
    merged = merge_context({"a": 1, "b": 1}, {"b": 2}, {"b": 3, "c": 3})
    assert merged == {"a": 1, "b": 3, "c": 3}


def test_output_transformers() -> None:
    output = {"route": {"team": "web", "score": {"value": 0.9}}, "note": None}

    assert apply_transformers(output, ["flatten"], agent_ref="dispatcher") == {
        "route_team": "web",
        "route_score_value": 0.9,
        "note": None,
    }
    assert apply_transformers(output, ["drop_nulls"], agent_ref="dispatcher") == {
        "route": {"team": "web", "score": {"value": 0.9}}
    }
    assert apply_transformers({"plan": []}, ["namespace_by_agent"], agent_ref="pm-copilot") == {
        "pm_copilot": {"plan": []}
    }


def test_unmet_conditions() -> None:
    assert unmet_conditions(
        {"previous_step_completed": True, "context_has": ["project"]},
        context=CONTEXT,
        step_index=1,
        completed_steps={0},
    ) == []

    problems = unmet_conditions(
        {
            "previous_step_completed": True,
            "context_has": "routing_recommendation",
            "context_equals": {"internal_notes": "fat margin"},
            "weather": "sunny",
        },
        context=CONTEXT,
        step_index=2,
        completed_steps={0},
    )
    assert len(problems) == 4
    assert "unsupported condition 'weather'" in problems


def test_first_step_has_no_previous_step() -> None:
    assert unmet_conditions(
        {"previous_step_completed": True}, context={}, step_index=0, completed_steps=()
    ) == []


def test_lookup_path() -> None:
    data = {"a": {"b": [{"c": 1}]}}
    assert lookup_path(data, "a.b.0.c") == 1
    assert lookup_path(data, "a.x") is None
    assert lookup_path(data, "a.b.5") is None


@pytest.mark.parametrize(
    ("expression", "expected"),
    [
        ("work_order.budget_cost >= 4200", True),
        ("work_order.budget_cost > 5000", False),
        ("work_order.id == wo-1", True),
        ("work_order.id != 'wo-1'", False),
        ("internal_notes contains margin", True),
        ("internal_notes not_contains margin", False),
        ("missing.path == 1", False),
        ("no operator here", False),
    ],
)
def test_evaluate_expression(expression: str, expected: bool) -> None:
    assert evaluate_expression(expression, CONTEXT) is expected


# -- chain definitions ------------------------------------------------------


def test_goto_rules_need_a_target() -> None:
    with pytest.raises(ValidationError):
        BranchRule(action="goto")


def test_branch_targets_must_exist() -> None:
    with pytest.raises(ValidationError):
        ChainDefinition(
            name="bad",
            steps=[
                StepSpec(
                    agent_ref="a",
                    next_step_conditions=[BranchRule(action="goto", target_step=3)],
                )
            ],
        )


def test_unknown_output_transformer_is_rejected() -> None:
    with pytest.raises(ValidationError):
        StepSpec(agent_ref="a", output_transformers=["uppercase"])


def test_revised_bumps_version_and_keeps_id() -> None:
    chain = ChainDefinition(name="Intake", steps=[StepSpec(agent_ref="a")])

    revised = chain.revised(name="Intake v2")

    assert revised.id == chain.id
    assert revised.version == 2
    assert revised.name == "Intake v2"
    assert chain.version == 1


def test_clone_creates_independent_chain() -> None:
    template = ChainDefinition(name="Template", steps=[StepSpec(agent_ref="a")], is_template=True)

    clone = template.clone(name="Mine")

    assert clone.id != template.id
    assert clone.is_template is False
    assert clone.version == 1
    clone.steps[0].agent_ref = "changed"
    assert template.steps[0].agent_ref == "a"


def test_parallel_group() -> None:
    steps = [
        StepSpec(agent_ref="a"),
        StepSpec(agent_ref="b", execution_mode="parallel"),
        StepSpec(agent_ref="c", execution_mode="parallel"),
        StepSpec(agent_ref="d"),
    ]
    assert list(parallel_group(steps, 0)) == [0]
    assert list(parallel_group(steps, 1)) == [1, 2]
    assert list(parallel_group(steps, 3)) == [3]


# -- branching policy -------------------------------------------------------


def _step(*rules: BranchRule) -> StepSpec:
    return StepSpec(agent_ref="a", next_step_conditions=list(rules))


def test_default_is_next_step() -> None:
    decision = decide_next_step(step=_step(), context={}, last_index=0, total_steps=3)
    assert decision.index == 1


def test_last_step_ends_chain() -> None:
    decision = decide_next_step(step=_step(), context={}, last_index=2, total_steps=3)
    assert decision.index is None
    assert decision.reason == "end_of_chain"


def test_first_matching_rule_wins() -> None:
    step = _step(
        BranchRule(condition="score < 0.5", action="terminate"),
        BranchRule(condition="score >= 0.5", action="goto", target_step=3),
        BranchRule(action="skip"),
    )

    assert decide_next_step(step=step, context={"score": 0.2}, last_index=0, total_steps=4).index is None
    assert decide_next_step(step=step, context={"score": 0.9}, last_index=0, total_steps=4).index == 3
    assert decide_next_step(step=step, context={}, last_index=0, total_steps=4).index == 2


def test_skip_past_the_end_finishes() -> None:
    decision = decide_next_step(
        step=_step(BranchRule(action="skip")), context={}, last_index=1, total_steps=3
    )
    assert decision.index is None


def test_backwards_goto_is_ignored() -> None:
    decision = decide_next_step(
        step=_step(BranchRule(action="goto", target_step=0)), context={}, last_index=1, total_steps=4
    )
    assert decision.index == 2
