"""HTTP API tests using FastAPI's TestClient with overridden dependencies."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from docflow.api.main import app
from docflow.api.routes import get_scheduler, get_sweeper
from docflow.database.session import get_db
from docflow.engine.cleanup import CleanupSweeper
from docflow.engine.scheduler import StepScheduler
from docflow.schemas import QueueName


@pytest.fixture
def client(session_maker, queue, settings):
    async def override_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_scheduler] = lambda: StepScheduler(
        queue, session_maker=session_maker, settings=settings
    )
    app.dependency_overrides[get_sweeper] = lambda: CleanupSweeper(session_maker, settings)
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def create_agent(client, name, **fields):
    response = client.post("/api/agents", json={"name": name, "display_name": name.title(), **fields})
    assert response.status_code == 201, response.text
    return response.json()["id"]


def connect(client, source_id, target_id, **fields):
    return client.post(
        "/api/agents/connections",
        json={"source_agent_id": source_id, "target_agent_id": target_id, **fields},
    )


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


class TestAgents:
    def test_create_list_and_get(self, client):
        agent_id = create_agent(client, "grammar", system_prompt="Fix grammar.", order=2)
        create_agent(client, "structure", order=1)

        listed = client.get("/api/agents").json()
        assert [a["name"] for a in listed] == ["structure", "grammar"]

        detail = client.get(f"/api/agents/{agent_id}").json()
        assert detail["display_name"] == "Grammar"
        assert detail["is_active"] is True

    def test_duplicate_name(self, client):
        create_agent(client, "grammar")
        response = client.post("/api/agents", json={"name": "grammar", "display_name": "Again"})
        assert response.status_code == 409
        assert response.json()["error"] == "conflict"

    def test_update(self, client):
        agent_id = create_agent(client, "grammar")
        response = client.patch(f"/api/agents/{agent_id}", json={"is_active": False, "order": 5})
        assert response.status_code == 200
        assert response.json()["is_active"] is False
        assert response.json()["order"] == 5
        assert client.get("/api/agents", params={"active_only": True}).json() == []

    def test_unknown_agent(self, client):
        response = client.get("/api/agents/missing")
        assert response.status_code == 404
        assert response.json() == {"detail": "Agent missing not found", "error": "not_found"}

    def test_logs_start_empty(self, client):
        agent_id = create_agent(client, "grammar")
        response = client.get(f"/api/agents/{agent_id}/logs")
        assert response.status_code == 200
        assert response.json() == []


class TestConnections:
    def test_create_and_list(self, client):
        a, b = create_agent(client, "a"), create_agent(client, "b")
        response = connect(client, a, b)
        assert response.status_code == 201
        assert response.json()["source_agent_id"] == a

        listed = client.get("/api/agents/connections").json()
        assert [(c["source_agent_id"], c["target_agent_id"]) for c in listed] == [(a, b)]

    def test_self_loop(self, client):
        a = create_agent(client, "a")
        response = connect(client, a, a)
        assert response.status_code == 400

    def test_cycle(self, client):
        a, b, c = create_agent(client, "a"), create_agent(client, "b"), create_agent(client, "c")
        assert connect(client, a, b).status_code == 201
        assert connect(client, b, c).status_code == 201

        response = connect(client, c, a)
        assert response.status_code == 400
        assert response.json()["error"] == "cycle_detected"

    def test_duplicate(self, client):
        a, b = create_agent(client, "a"), create_agent(client, "b")
        connect(client, a, b)
        assert connect(client, a, b).status_code == 409

    def test_unknown_agent(self, client):
        a = create_agent(client, "a")
        assert connect(client, a, "missing").status_code == 404

    def test_reactivation_is_cycle_checked(self, client):
        a, b = create_agent(client, "a"), create_agent(client, "b")
        back = connect(client, b, a, is_active=False).json()["id"]
        assert connect(client, a, b).status_code == 201

        response = client.patch(f"/api/agents/connections/{back}", json={"is_active": True})
        assert response.status_code == 400
        assert response.json()["error"] == "cycle_detected"

    def test_delete(self, client):
        a, b = create_agent(client, "a"), create_agent(client, "b")
        connection_id = connect(client, a, b).json()["id"]

        assert client.delete(f"/api/agents/connections/{connection_id}").status_code == 200
        assert client.get(f"/api/agents/connections/{connection_id}").status_code == 404


class TestGraph:
    def test_levels_and_validity(self, client):
        a, b, c = create_agent(client, "a"), create_agent(client, "b"), create_agent(client, "c")
        connect(client, a, c)
        connect(client, b, c)
        create_agent(client, "off", is_active=False)

        graph = client.get("/api/agents/graph").json()

        assert graph["is_valid"] is True
        assert graph["validation_errors"] == []
        nodes = {n["name"]: n for n in graph["nodes"]}
        assert nodes["a"]["level"] == 0
        assert nodes["c"]["level"] == 1
        assert set(nodes["c"]["inputs"]) == {a, b}
        assert nodes["a"]["outputs"] == [c]
        assert nodes["off"]["inputs"] == [] and nodes["off"]["outputs"] == []
        assert len(graph["edges"]) == 2


class TestWorkflow:
    def test_execute_and_poll(self, client, seed, queue):
        seed.pipeline(["a", "b"], [("a", "b")])
        document_id = seed.document()

        response = client.post("/api/workflow/execute", json={"document_id": document_id})
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "RUNNING"
        execution_id = body["execution_id"]
        assert len(queue.pending_ids(QueueName.AGENT_EXECUTION)) == 1

        status = client.get(f"/api/workflow/status/{execution_id}").json()
        assert status["status"] == "RUNNING"
        assert status["progress"] == {"completed": 0, "total": 2, "percentage": 0}
        assert {s["agent_name"]: s["status"] for s in status["steps"]} == {
            "a": "RUNNING",
            "b": "WAITING_INPUTS",
        }

        detail = client.get(f"/api/workflow/{execution_id}").json()
        assert detail["document_id"] == document_id
        assert detail["summary"]["waiting_inputs"] == 1
        assert len(detail["steps"]) == 2

    def test_execute_conflict(self, client, seed):
        seed.pipeline(["a"])
        document_id = seed.document()
        assert client.post("/api/workflow/execute", json={"document_id": document_id}).status_code == 200

        response = client.post("/api/workflow/execute", json={"document_id": document_id})
        assert response.status_code == 409
        assert "execution_id" in response.json()["details"]

    def test_execute_unknown_document(self, client, seed):
        seed.pipeline(["a"])
        response = client.post("/api/workflow/execute", json={"document_id": "missing"})
        assert response.status_code == 404

    def test_execute_without_agents(self, client, seed):
        response = client.post("/api/workflow/execute", json={"document_id": seed.document()})
        assert response.status_code == 400
        assert response.json()["error"] == "no_active_agents"

    def test_list_with_filters(self, client, seed):
        seed.pipeline(["a"])
        first, second = seed.document(), seed.document(name="other.pdf")
        client.post("/api/workflow/execute", json={"document_id": first})
        client.post("/api/workflow/execute", json={"document_id": second})

        everything = client.get("/api/workflow/list").json()
        assert everything["pagination"]["total"] == 2
        assert everything["pagination"]["has_more"] is False

        page = client.get("/api/workflow/list", params={"limit": 1}).json()
        assert len(page["executions"]) == 1
        assert page["pagination"]["has_more"] is True

        filtered = client.get("/api/workflow/list", params={"document_id": first}).json()
        assert [e["document_id"] for e in filtered["executions"]] == [first]
        assert filtered["executions"][0]["summary"]["total"] == 1

        completed = client.get("/api/workflow/list", params={"status": "COMPLETED"}).json()
        assert completed["executions"] == []

    def test_cancel(self, client, seed, queue):
        seed.pipeline(["a"])
        execution_id = client.post("/api/workflow/execute", json={"document_id": seed.document()}).json()["execution_id"]

        response = client.delete(f"/api/workflow/{execution_id}")
        assert response.status_code == 200
        assert response.json() == {"cancelled": True, "warnings": []}
        assert queue.pending_ids(QueueName.AGENT_EXECUTION) == []
        assert client.get(f"/api/workflow/status/{execution_id}").json()["status"] == "CANCELLED"

        again = client.delete(f"/api/workflow/{execution_id}")
        assert again.status_code == 400
        assert again.json()["error"] == "run_finished"

    def test_unknown_execution(self, client):
        assert client.get("/api/workflow/missing").status_code == 404
        assert client.get("/api/workflow/status/missing").status_code == 404
        assert client.delete("/api/workflow/missing").status_code == 404

    def test_cleanup(self, client):
        response = client.post("/api/workflow/cleanup")
        assert response.status_code == 200
        assert response.json() == {
            "cleaned_workflows": 0,
            "cleaned_steps": 0,
            "message": "No stale workflows found",
        }
