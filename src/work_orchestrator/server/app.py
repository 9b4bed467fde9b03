"""FastAPI app factory.

Endpoints are intentionally thin wrappers over :class:`WorkOrchestrator`.
Domain errors map to HTTP statuses in one place (`_install_error_handlers`).
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from work_orchestrator import __version__
from work_orchestrator.llm.executor import LLMStepExecutor
from work_orchestrator.llm.factory import LLMFactory
from work_orchestrator.orchestrator.config import LLMConfig, OrchestratorSettings
from work_orchestrator.orchestrator.service import WorkOrchestrator
from work_orchestrator.orchestrator.workflow.chains import ChainDefinition
from work_orchestrator.orchestrator.workflow.errors import (
    ConcurrentModification,
    ExecutionNotPaused,
    GateStateError,
    IllegalExecutionTransition,
    InvalidTransition,
    NotFound,
)
from work_orchestrator.orchestrator.workflow.executor import StepExecutor
from work_orchestrator.orchestrator.workflow.models import (
    Actor,
    ChainExecution,
    SubjectRecord,
    SubjectRef,
    TransitionRecord,
)
from work_orchestrator.orchestrator.workflow.state_machine import ExecutionStatus
from work_orchestrator.orchestrator.workflow.triggers import Trigger
from work_orchestrator.server.config import ServerSettings
from work_orchestrator.server.models import (
    ApiExecutionStep,
    ApiPauseGate,
    CancelRequest,
    ChainUpdate,
    CloneRequest,
    ExecutionDetail,
    GateCreate,
    GateDecision,
    PauseRequest,
    RejectRequest,
    ResumeRequest,
    TransitionError,
    TransitionRequest,
    TransitionResponse,
)
from work_orchestrator.server.runner import ExecutionRunner

logger = logging.getLogger(__name__)

_CONFLICT_ERRORS = (
    ExecutionNotPaused,
    GateStateError,
    IllegalExecutionTransition,
    ConcurrentModification,
)


def _default_executor() -> StepExecutor:
    config = LLMConfig()
    return LLMStepExecutor(LLMFactory.create(config), max_tokens=config.max_tokens)


def create_app(
    *,
    settings: ServerSettings | None = None,
    orchestrator_settings: OrchestratorSettings | None = None,
    executor: StepExecutor | None = None,
) -> FastAPI:
    settings = settings or ServerSettings()
    orchestrator_settings = orchestrator_settings or OrchestratorSettings()

    runner = ExecutionRunner(
        lambda execution_id: orchestrator.engine.run(execution_id),
        workers=orchestrator_settings.worker_count,
    )
    orchestrator = WorkOrchestrator(
        orchestrator_settings,
        executor or _default_executor(),
        submit=runner.submit,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if settings.recover_on_startup:
            recovered = orchestrator.recover()
            if recovered:
                logger.info("Recovered chain executions", extra={"count": len(recovered)})
        yield
        runner.shutdown(wait=False)
        orchestrator.close()

    app = FastAPI(
        title="Work Orchestrator",
        version=__version__,
        description="Status transitions, chain triggers and agent chain executions.",
        openapi_url="/api/openapi.json",
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.orchestrator = orchestrator
    app.state.runner = runner

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.parsed_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    _install_error_handlers(app)

    @app.get("/api/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    # -- subjects ---------------------------------------------------------

    @app.post("/api/subjects", response_model=SubjectRecord, status_code=201)
    def register_subject(record: SubjectRecord) -> SubjectRecord:
        return orchestrator.register_subject(record)

    @app.get("/api/subjects/{subject_type}/{subject_id}", response_model=SubjectRecord)
    def get_subject(subject_type: str, subject_id: str) -> SubjectRecord:
        return orchestrator.subjects.require(SubjectRef(type=subject_type, id=subject_id))

    @app.post(
        "/api/subjects/{subject_type}/{subject_id}/transition",
        response_model=TransitionResponse,
        responses={422: {"model": TransitionError}},
    )
    def transition_subject(
        subject_type: str, subject_id: str, req: TransitionRequest
    ) -> TransitionResponse:
        ref = SubjectRef(type=subject_type, id=subject_id)
        orchestrator.subjects.require(ref)
        actor = Actor(id=req.actor_id, kind=req.actor_kind)
        records = orchestrator.transition(ref, actor, req.to_status, req.comment)
        return TransitionResponse(
            status=records[-1].to_status,
            status_transitions=orchestrator.ledger.history(ref),
        )

    @app.get(
        "/api/subjects/{subject_type}/{subject_id}/transitions",
        response_model=list[TransitionRecord],
    )
    def list_transitions(subject_type: str, subject_id: str) -> list[TransitionRecord]:
        ref = SubjectRef(type=subject_type, id=subject_id)
        orchestrator.subjects.require(ref)
        return orchestrator.ledger.history(ref)

    # -- executions -------------------------------------------------------

    @app.get("/api/executions", response_model=list[ChainExecution])
    def list_executions(status: ExecutionStatus | None = None) -> list[ChainExecution]:
        return orchestrator.executions.list(status=status)

    @app.get("/api/executions/{execution_id}", response_model=ExecutionDetail)
    def get_execution(execution_id: str) -> ExecutionDetail:
        execution = orchestrator.engine.get(execution_id)
        steps = orchestrator.engine.steps(execution_id)
        return ExecutionDetail(
            execution=execution,
            steps=[ApiExecutionStep.from_record(s) for s in steps],
        )

    @app.post("/api/executions/{execution_id}/resume", response_model=ChainExecution)
    def resume_execution(execution_id: str, req: ResumeRequest | None = None) -> ChainExecution:
        approver = req.approver_id if req is not None else None
        return orchestrator.resume(execution_id, approver)

    @app.post("/api/executions/{execution_id}/reject", response_model=ChainExecution)
    def reject_execution(execution_id: str, req: RejectRequest) -> ChainExecution:
        return orchestrator.engine.reject(execution_id, req.approver_id, req.reason)

    @app.post("/api/executions/{execution_id}/pause", response_model=ChainExecution)
    def pause_execution(execution_id: str, req: PauseRequest | None = None) -> ChainExecution:
        return orchestrator.engine.pause(execution_id, (req or PauseRequest()).reason)

    @app.post("/api/executions/{execution_id}/cancel", response_model=ChainExecution)
    def cancel_execution(execution_id: str, req: CancelRequest | None = None) -> ChainExecution:
        return orchestrator.engine.cancel(execution_id, (req or CancelRequest()).reason)

    @app.post(
        "/api/executions/{execution_id}/rerun", response_model=ChainExecution, status_code=201
    )
    def rerun_execution(execution_id: str) -> ChainExecution:
        return orchestrator.rerun(execution_id)

    # -- chains -----------------------------------------------------------

    @app.get("/api/chains", response_model=list[ChainDefinition])
    def list_chains(templates: bool | None = None) -> list[ChainDefinition]:
        chains = orchestrator.chains.all()
        if templates is not None:
            chains = [c for c in chains if c.is_template == templates]
        return chains

    @app.post("/api/chains", response_model=ChainDefinition, status_code=201)
    def create_chain(chain: ChainDefinition) -> ChainDefinition:
        return orchestrator.chains.upsert(chain)

    @app.put("/api/chains/{chain_id}", response_model=ChainDefinition)
    def update_chain(chain_id: str, req: ChainUpdate) -> ChainDefinition:
        chain = orchestrator.chains.require(chain_id)
        updates = req.model_dump(exclude_unset=True)
        revised = chain.revised(**updates)
        logger.info(
            "Chain revised",
            extra={"chain_id": chain_id, "version": revised.version, "fields": sorted(updates)},
        )
        return orchestrator.chains.upsert(revised)

    @app.post("/api/chains/{chain_id}/clone", response_model=ChainDefinition, status_code=201)
    def clone_chain(chain_id: str, req: CloneRequest | None = None) -> ChainDefinition:
        source = orchestrator.chains.require(chain_id)
        return orchestrator.chains.upsert(source.clone(name=req.name if req is not None else None))

    # -- triggers ---------------------------------------------------------

    @app.get("/api/triggers", response_model=list[Trigger])
    def list_triggers() -> list[Trigger]:
        return orchestrator.triggers.all()

    @app.post("/api/triggers", response_model=Trigger, status_code=201)
    def create_trigger(trigger: Trigger) -> Trigger:
        orchestrator.chains.require(trigger.chain_id)
        return orchestrator.triggers.upsert(trigger)

    @app.put("/api/triggers/{trigger_id}", response_model=Trigger)
    def update_trigger(trigger_id: str, trigger: Trigger) -> Trigger:
        existing = orchestrator.triggers.get(trigger_id)
        if existing is None:
            raise NotFound("Trigger not found")
        orchestrator.chains.require(trigger.chain_id)
        updated = trigger.model_copy(
            update={"id": trigger_id, "last_triggered_at": existing.last_triggered_at}
        )
        return orchestrator.triggers.upsert(updated)

    # -- pause gates ------------------------------------------------------

    @app.get("/api/pause-gates", response_model=list[ApiPauseGate])
    def list_gates(pending: bool = False) -> list[ApiPauseGate]:
        gates = orchestrator.gates.pending() if pending else orchestrator.gates.all()
        return [ApiPauseGate.from_gate(g) for g in gates]

    @app.post("/api/pause-gates", response_model=ApiPauseGate, status_code=201)
    def open_gate(req: GateCreate) -> ApiPauseGate:
        gate = orchestrator.gates.open(
            agent_id=req.agent_id,
            node=req.node,
            state_data=req.state_data,
            reason=req.reason,
            approvable_ref=req.approvable_ref,
        )
        return ApiPauseGate.from_gate(gate)

    @app.post("/api/pause-gates/{gate_id}/approve", response_model=ApiPauseGate)
    def approve_gate(gate_id: str, req: GateDecision | None = None) -> ApiPauseGate:
        approver = req.approver_id if req is not None else None
        return ApiPauseGate.from_gate(orchestrator.approve_gate(gate_id, approver))

    @app.post("/api/pause-gates/{gate_id}/reject", response_model=ApiPauseGate)
    def reject_gate(gate_id: str, req: GateDecision | None = None) -> ApiPauseGate:
        approver = req.approver_id if req is not None else None
        reason = (req.reason if req is not None else None) or "Rejected"
        return ApiPauseGate.from_gate(orchestrator.reject_gate(gate_id, approver, reason))

    return app


def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(InvalidTransition)
    async def invalid_transition(request: Request, exc: InvalidTransition) -> JSONResponse:
        body = TransitionError(
            message=str(exc),
            reason=exc.reason,
            from_status=exc.from_status,
            to_status=exc.to_status,
        )
        return JSONResponse(status_code=422, content=body.model_dump())

    @app.exception_handler(NotFound)
    async def not_found(request: Request, exc: NotFound) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": exc.message})

    async def conflict(request: Request, exc: Exception) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    for error in _CONFLICT_ERRORS:
        app.add_exception_handler(error, conflict)
