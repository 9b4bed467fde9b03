"""CLI entrypoint for the work orchestrator.

Operates on the same local JSON state the REST server uses, so it doubles as an
operator tool: move a subject through its statuses, inspect executions, resume
paused ones and recover after a crash.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys

from pydantic import ValidationError

from work_orchestrator import __version__
from work_orchestrator.llm.executor import LLMStepExecutor
from work_orchestrator.llm.factory import LLMFactory
from work_orchestrator.orchestrator.config import LLMConfig, OrchestratorSettings
from work_orchestrator.orchestrator.logging import configure_logging
from work_orchestrator.orchestrator.service import WorkOrchestrator
from work_orchestrator.orchestrator.workflow.errors import (
    ExecutionNotPaused,
    GateStateError,
    IllegalExecutionTransition,
    InvalidTransition,
    NotFound,
)
from work_orchestrator.orchestrator.workflow.models import Actor, SubjectRef
from work_orchestrator.orchestrator.workflow.state_machine import ExecutionStatus
from work_orchestrator.state.stores import ExecutionStore, StepStore

logger = logging.getLogger(__name__)

_DOMAIN_ERRORS = (
    InvalidTransition,
    NotFound,
    ExecutionNotPaused,
    GateStateError,
    IllegalExecutionTransition,
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="work-orchestrator",
        description="Status transitions and agent chain executions over local JSON state",
    )
    parser.add_argument(
        "--version", action="version", version=f"work-chain-orchestrator {__version__}"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    transition = subparsers.add_parser(
        "transition",
        help="Move a subject to a new status (fires matching chain triggers)",
    )
    transition.add_argument("--type", dest="subject_type", required=True, help="e.g. task, work_order")
    transition.add_argument("--id", dest="subject_id", required=True, help="Subject id")
    transition.add_argument("--to", dest="to_status", required=True, help="Target status")
    transition.add_argument("--comment", default=None, help="Required for revision_requested")
    transition.add_argument("--actor-id", default=None, help="Who performs the transition")
    transition.add_argument(
        "--actor-kind",
        choices=["user", "agent", "system"],
        default="user",
        help="Agents cannot perform approval transitions",
    )

    executions = subparsers.add_parser("executions", help="List chain executions")
    executions.add_argument(
        "--status",
        choices=[s.value for s in ExecutionStatus],
        default=None,
        help="Only show executions in this status",
    )

    show = subparsers.add_parser("show-execution", help="Print an execution and its steps as JSON")
    show.add_argument("execution_id")

    resume = subparsers.add_parser("resume", help="Approve and resume a paused execution")
    resume.add_argument("execution_id")
    resume.add_argument("--approver", default=None, help="Approver id recorded on the pause gate")

    subparsers.add_parser(
        "recover",
        help="Re-drive executions left pending or running by a previous process",
    )

    serve = subparsers.add_parser("serve", help="Run the REST API with uvicorn")
    serve.add_argument("--host", default=None, help="Defaults to ORCHESTRATOR_HOST")
    serve.add_argument("--port", type=int, default=None, help="Defaults to ORCHESTRATOR_PORT")

    return parser


def _build_orchestrator(settings: OrchestratorSettings) -> WorkOrchestrator:
    config = LLMConfig()
    executor = LLMStepExecutor(LLMFactory.create(config), max_tokens=config.max_tokens)
    return WorkOrchestrator(settings, executor)


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = OrchestratorSettings()
    except ValidationError as e:
        # Logging isn't configured yet; keep it simple and actionable.
        print("Configuration error (check your .env):", file=sys.stderr)
        print(e, file=sys.stderr)
        return 2

    configure_logging(settings.log_level)

    try:
        if args.command == "executions":
            store = ExecutionStore(settings.executions_file)
            status = ExecutionStatus(args.status) if args.status else None
            for execution in store.list(status=status):
                print(
                    f"{execution.id}  {execution.status.value:<9}  "
                    f"step {execution.current_step_index}/{len(execution.chain.steps)}  "
                    f"{execution.chain.name}"
                )
            return 0

        if args.command == "show-execution":
            execution = ExecutionStore(settings.executions_file).require(args.execution_id)
            steps = StepStore(settings.execution_steps_file).for_execution(execution.id)
            payload = {
                "execution": execution.model_dump(mode="json"),
                "steps": [s.model_dump(mode="json") for s in steps],
            }
            print(json.dumps(payload, indent=2, ensure_ascii=False))
            return 0

        if args.command == "serve":
            import uvicorn

            from work_orchestrator.server.app import create_app
            from work_orchestrator.server.config import ServerSettings

            server_settings = ServerSettings()
            app = create_app(settings=server_settings, orchestrator_settings=settings)
            uvicorn.run(
                app,
                host=args.host or server_settings.host,
                port=args.port or server_settings.port,
                log_config=None,
            )
            return 0

        try:
            orchestrator = _build_orchestrator(settings)
        except (ValidationError, ValueError) as e:
            print(f"Configuration error: {e}", file=sys.stderr)
            return 2

        try:
            if args.command == "transition":
                ref = SubjectRef(type=args.subject_type, id=args.subject_id)
                actor = Actor(id=args.actor_id, kind=args.actor_kind)
                records = orchestrator.transition(ref, actor, args.to_status, args.comment)
                for record in records:
                    print(f"{ref}: {record.from_status} -> {record.to_status} (#{record.sequence})")
                return 0

            if args.command == "resume":
                execution = orchestrator.resume(args.execution_id, args.approver)
                print(f"{execution.id}: {execution.status.value}")
                return 0

            if args.command == "recover":
                recovered = orchestrator.recover()
                print(f"Recovered {len(recovered)} execution(s)")
                return 0
        finally:
            orchestrator.close()

        logger.error("Unknown command", extra={"command": args.command})
        return 2

    except _DOMAIN_ERRORS as e:
        logger.warning(str(e), extra={"command": args.command, "error_type": type(e).__name__})
        print(str(e), file=sys.stderr)
        return 3

    except Exception:
        logger.exception("Command failed")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
