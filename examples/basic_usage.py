#!/usr/bin/env python3
"""Programmatic work order intake example.

This demonstrates using the orchestrator components directly:

* load settings from `.env`
* define a three-agent intake chain and a trigger on `work_order -> active`
* activate a work order, which runs the chain through the LLM executor
* persist everything under `agent_state/`

Needs `ORCHESTRATOR_LLM_OPENAI_API_KEY` (the agents are real LLM calls).
"""

from __future__ import annotations

import argparse
from typing import Sequence

from work_orchestrator.llm import LLMFactory, LLMStepExecutor
from work_orchestrator.orchestrator.config import LLMConfig, OrchestratorSettings
from work_orchestrator.orchestrator.logging import configure_logging
from work_orchestrator.orchestrator.service import WorkOrchestrator
from work_orchestrator.orchestrator.workflow.chains import ChainDefinition, ContextFilter, StepSpec
from work_orchestrator.orchestrator.workflow.errors import InvalidTransition
from work_orchestrator.orchestrator.workflow.models import Actor, SubjectRecord, SubjectRef
from work_orchestrator.orchestrator.workflow.triggers import Trigger


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Activate a work order and run the intake chain.")
    parser.add_argument("--id", default="wo-demo", help="Work order id")
    parser.add_argument("--title", required=True, help="Work order title")
    parser.add_argument("--budget", type=float, default=0.0, help="Budget cost")
    parser.add_argument(
        "--tags",
        default="",
        help='Comma-separated tags, e.g. "priority,retainer" (optional)',
    )
    return parser.parse_args(argv)


def _intake_chain() -> ChainDefinition:
    return ChainDefinition(
        name="Work order intake",
        description="Route the order, draft a plan, acknowledge the client",
        steps=[
            StepSpec(agent_ref="dispatcher"),
            StepSpec(
                agent_ref="pm-copilot",
                context_filter=ContextFilter(include=["work_order", "project", "routing_recommendation"]),
            ),
            StepSpec(
                agent_ref="client-comms",
                context_filter=ContextFilter(exclude=["internal_notes"]),
            ),
        ],
    )


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)

    tags = [tag.strip() for tag in args.tags.split(",") if tag.strip()]

    settings = OrchestratorSettings()
    configure_logging(settings.log_level)

    llm = LLMConfig()
    orchestrator = WorkOrchestrator(
        settings, LLMStepExecutor(LLMFactory.create(llm), max_tokens=llm.max_tokens)
    )

    try:
        chain = orchestrator.chains.upsert(_intake_chain())
        orchestrator.triggers.upsert(
            Trigger(
                name="Intake on activation",
                entity_type="work_order",
                status_to="active",
                chain_id=chain.id,
                conditions={"deduplication_window_minutes": 60},
            )
        )
        orchestrator.register_subject(
            SubjectRecord(
                type="work_order",
                id=args.id,
                status="draft",
                attributes={"title": args.title, "budget_cost": args.budget},
                tags=tags,
            )
        )

        try:
            orchestrator.transition(
                SubjectRef(type="work_order", id=args.id), Actor(id="example", kind="user"), "active"
            )
        except InvalidTransition as exc:
            print(str(exc))
            return 0

        for execution in orchestrator.executions.list():
            if execution.chain_id != chain.id:
                continue
            print(f"Execution {execution.id}: {execution.status.value}")
            if execution.pause_reason:
                print(f"  waiting for approval: {execution.pause_reason}")
            if execution.error_message:
                print(f"  error: {execution.error_message}")
    finally:
        orchestrator.close()

    print(f"Persisted to: {settings.state_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
