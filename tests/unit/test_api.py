"""REST API tests using FastAPI's TestClient."""

from __future__ import annotations

from collections.abc import Iterator

import pytest
from fastapi.testclient import TestClient

from work_orchestrator.orchestrator.workflow.chains import ChainDefinition, StepSpec
from work_orchestrator.orchestrator.workflow.executor import StepResult
from work_orchestrator.server.app import create_app
from work_orchestrator.server.config import ServerSettings


@pytest.fixture
def client(settings, executor) -> Iterator[TestClient]:
    app = create_app(
        settings=ServerSettings(_env_file=None),
        orchestrator_settings=settings,
        executor=executor,
    )
    with TestClient(app) as client:
        yield client


def _wait(client: TestClient) -> None:
    assert client.app.state.runner.join(timeout=5)


def _register_work_order(client: TestClient, status: str = "draft") -> None:
    resp = client.post(
        "/api/subjects",
        json={"type": "work_order", "id": "wo-1", "status": status, "attributes": {"budget_cost": 4200}},
    )
    assert resp.status_code == 201


def _create_chain(client: TestClient, *steps: dict) -> dict:
    resp = client.post("/api/chains", json={"name": "Intake", "steps": list(steps)})
    assert resp.status_code == 201
    return resp.json()


def test_health(client: TestClient) -> None:
    resp = client.get("/api/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_transition_returns_new_status_and_history(client: TestClient) -> None:
    _register_work_order(client)

    resp = client.post(
        "/api/subjects/work_order/wo-1/transition",
        json={"to_status": "active", "actor_id": "manager-1"},
    )

    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "active"
    assert [(t["from_status"], t["to_status"]) for t in body["status_transitions"]] == [
        ("draft", "active")
    ]
    assert client.get("/api/subjects/work_order/wo-1").json()["status"] == "active"
    assert len(client.get("/api/subjects/work_order/wo-1/transitions").json()) == 1


def test_invalid_transition_is_422_with_reason(client: TestClient) -> None:
    _register_work_order(client)

    resp = client.post("/api/subjects/work_order/wo-1/transition", json={"to_status": "delivered"})

    assert resp.status_code == 422
    body = resp.json()
    assert body["reason"] == "not_allowed"
    assert body["from_status"] == "draft"
    assert body["to_status"] == "delivered"


def test_agent_cannot_approve_via_api(client: TestClient) -> None:
    _register_work_order(client, status="in_review")

    resp = client.post(
        "/api/subjects/work_order/wo-1/transition",
        json={"to_status": "approved", "actor_id": "pm-copilot", "actor_kind": "agent"},
    )

    assert resp.status_code == 422
    assert resp.json()["reason"] == "agent_restricted"


def test_unknown_subject_is_404(client: TestClient) -> None:
    resp = client.post("/api/subjects/work_order/nope/transition", json={"to_status": "active"})
    assert resp.status_code == 404
    assert "detail" in resp.json()


def test_chain_update_bumps_version_and_clone(client: TestClient) -> None:
    chain = _create_chain(client, {"agent_ref": "dispatcher"})
    assert chain["version"] == 1

    updated = client.put(f"/api/chains/{chain['id']}", json={"name": "Intake v2"}).json()
    assert updated["id"] == chain["id"]
    assert updated["version"] == 2
    assert updated["name"] == "Intake v2"
    assert updated["steps"][0]["agent_ref"] == "dispatcher"

    clone = client.post(f"/api/chains/{chain['id']}/clone", json={"name": "Copy"})
    assert clone.status_code == 201
    assert clone.json()["id"] != chain["id"]
    assert clone.json()["version"] == 1
    assert len(client.get("/api/chains").json()) == 2


def test_invalid_chain_is_rejected(client: TestClient) -> None:
    resp = client.post(
        "/api/chains",
        json={
            "name": "Bad",
            "steps": [{"agent_ref": "a", "next_step_conditions": [{"action": "goto", "target_step": 4}]}],
        },
    )
    assert resp.status_code == 422


def test_trigger_for_missing_chain_is_404(client: TestClient) -> None:
    resp = client.post("/api/triggers", json={"entity_type": "work_order", "chain_id": "missing"})
    assert resp.status_code == 404


def test_transition_fires_trigger_and_execution_is_visible(client: TestClient, executor) -> None:
    chain = _create_chain(client, {"agent_ref": "dispatcher"}, {"agent_ref": "pm-copilot"})
    trigger = client.post(
        "/api/triggers",
        json={"name": "Intake", "entity_type": "work_order", "status_to": "active", "chain_id": chain["id"]},
    )
    assert trigger.status_code == 201
    _register_work_order(client)

    client.post("/api/subjects/work_order/wo-1/transition", json={"to_status": "active"})
    _wait(client)

    executions = client.get("/api/executions", params={"status": "completed"}).json()
    assert len(executions) == 1
    assert executions[0]["chain_id"] == chain["id"]

    detail = client.get(f"/api/executions/{executions[0]['id']}").json()
    assert detail["execution"]["status"] == "completed"
    assert [s["agent_ref"] for s in detail["steps"]] == ["dispatcher", "pm-copilot"]
    assert all(s["duration_seconds"] is not None for s in detail["steps"])
    assert executor.agents_called == ["dispatcher", "pm-copilot"]

    stored = client.get("/api/triggers").json()[0]
    assert stored["last_triggered_at"] is not None


def test_unknown_execution_is_404(client: TestClient) -> None:
    assert client.get("/api/executions/nope").status_code == 404


def test_gate_approval_resumes_execution(client: TestClient, executor) -> None:
    executor.responses["client-comms"] = StepResult.success(
        {"client_message": "Kick-off Monday"}, requires_approval=True
    )
    orchestrator = client.app.state.orchestrator
    chain = orchestrator.chains.upsert(
        ChainDefinition(
            name="Comms",
            steps=[StepSpec(agent_ref="client-comms"), StepSpec(agent_ref="pm-copilot")],
        )
    )
    execution = orchestrator.engine.create(chain)
    orchestrator.engine.run(execution.id)

    pending = client.get("/api/pause-gates", params={"pending": "true"}).json()
    assert len(pending) == 1
    assert pending[0]["state"] == "paused"

    resp = client.post(f"/api/pause-gates/{pending[0]['id']}/approve", json={"approver_id": "manager-1"})
    _wait(client)

    assert resp.status_code == 200
    assert resp.json()["state_data"]["approver_id"] == "manager-1"
    detail = client.get(f"/api/executions/{execution.id}").json()
    assert detail["execution"]["status"] == "completed"
    assert executor.agents_called == ["client-comms", "pm-copilot"]

    again = client.post(f"/api/pause-gates/{pending[0]['id']}/approve", json={})
    assert again.status_code == 409


def test_resume_of_completed_execution_is_409(client: TestClient) -> None:
    orchestrator = client.app.state.orchestrator
    chain = orchestrator.chains.upsert(ChainDefinition(name="One", steps=[StepSpec(agent_ref="a")]))
    execution = orchestrator.engine.start(chain)

    resp = client.post(f"/api/executions/{execution.id}/resume", json={})

    assert resp.status_code == 409


def test_pause_and_cancel(client: TestClient) -> None:
    orchestrator = client.app.state.orchestrator
    chain = orchestrator.chains.upsert(ChainDefinition(name="One", steps=[StepSpec(agent_ref="a")]))
    execution = orchestrator.engine.create(chain)

    paused = client.post(f"/api/executions/{execution.id}/pause", json={"reason": "Hold"})
    assert paused.status_code == 200
    assert paused.json()["status"] == "paused"

    cancelled = client.post(f"/api/executions/{execution.id}/cancel", json={})
    assert cancelled.json()["status"] == "failed"
    assert cancelled.json()["error_message"] == "Cancelled: Cancelled by operator"

    assert client.post(f"/api/executions/{execution.id}/cancel", json={}).status_code == 409
