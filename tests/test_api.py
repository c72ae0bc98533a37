"""HTTP API tests running the app lifespan through the test client."""
from __future__ import annotations

import time

import pytest
from fastapi.testclient import TestClient

from agent_runtime.agents.echo import EchoAgent
from agent_runtime.config import Config, parse_runtime_document
from agent_runtime import main
from agent_runtime.main import create_app
from agent_runtime.orchestration.orchestrator import Orchestrator

from support import MODULES


def build_orchestrator() -> Orchestrator:
    document = parse_runtime_document(
        {
            "agents": [{"id": "writer", "name": "Writer", "modules": {"echo": {"required": True}}}],
            "recoveryStrategies": [{"category": "validation", "strategy": "dead_letter"}],
        }
    )
    return Orchestrator(
        config=Config(heartbeat_interval=3600, command_timeout=5),
        document=document,
        agent_catalog={"echo": EchoAgent},
        module_catalog=MODULES,
    )


@pytest.fixture
def client():
    with TestClient(create_app(build_orchestrator)) as client:
        yield client


def test_health(client: TestClient) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["agents"] == {"writer": "running"}


def test_list_and_get_agents(client: TestClient) -> None:
    agents = client.get("/agents").json()
    assert [agent["agent_id"] for agent in agents] == ["writer"]

    agent = client.get("/agents/writer").json()
    assert agent["status"] == "running"
    assert agent["role"] == "echo"
    assert "echo" in agent["modules"]

    assert client.get("/agents/ghost").status_code == 404


def test_create_and_delete_agent(client: TestClient) -> None:
    created = client.post(
        "/agents",
        json={"id": "reviewer", "name": "Reviewer", "modules": {"echo": {"required": True}}, "heartbeatInterval": 3600},
    )
    assert created.status_code == 201
    assert created.json()["status"] == "running"

    duplicate = client.post("/agents", json={"id": "reviewer", "name": "Again"})
    assert duplicate.status_code == 400

    dotted = client.post("/agents", json={"id": "re.viewer", "name": "Dotted"})
    assert dotted.status_code == 422

    assert client.delete("/agents/reviewer").status_code == 204
    assert client.delete("/agents/reviewer").status_code == 404


def test_send_command_and_wait_for_reply(client: TestClient) -> None:
    response = client.post("/agents/writer/commands", json={"type": "ping", "payload": {"content": "hi"}})

    assert response.status_code == 202
    body = response.json()
    assert body["reply"]["success"] is True
    assert body["reply"]["result"] == {"pong": "writer", "content": "hi"}
    assert body["command_id"] == body["reply"]["id"]


def test_send_command_without_waiting(client: TestClient) -> None:
    response = client.post("/agents/writer/commands", json={"type": "echo", "wait": False})

    assert response.status_code == 202
    assert response.json()["reply"] is None
    assert response.json()["command_id"]


def test_command_to_unknown_agent_is_404(client: TestClient) -> None:
    response = client.post("/agents/ghost/commands", json={"type": "ping"})

    assert response.status_code == 404


def test_restart_agent(client: TestClient) -> None:
    response = client.post("/agents/writer/restart")

    assert response.status_code == 200
    assert response.json()["status"] == "running"
    assert client.post("/agents/ghost/restart").status_code == 404


def recorded_errors(client: TestClient, attempts: int = 50) -> list:
    """Failure events reach the error handler asynchronously."""
    for _ in range(attempts):
        errors = client.get("/errors").json()
        if errors:
            return errors
        time.sleep(0.01)
    return []


def test_errors_endpoints(client: TestClient) -> None:
    client.post("/agents/writer/commands", json={"type": "translate"})

    errors = recorded_errors(client)
    assert errors[0]["category"] == "unknown_command"
    stats = client.get("/errors/stats").json()
    assert stats["totalErrors"] >= 1

    error_id = errors[0]["id"]
    assert client.get(f"/errors/{error_id}").json()["id"] == error_id
    resolved = client.post(f"/errors/{error_id}/resolve", json={"resolution": "typo", "resolved_by": "ops"})
    assert resolved.status_code == 200
    assert resolved.json()["resolved"] is True
    assert client.get("/errors").json() == []
    assert len(client.get("/errors", params={"include_resolved": True}).json()) == 1

    assert client.get("/errors/missing").status_code == 404
    assert client.post("/errors/missing/resolve", json={}).status_code == 404


def test_dead_letter_endpoints(client: TestClient) -> None:
    assert client.get("/recovery/dead-letters").json() == []
    assert client.delete("/recovery/dead-letters/missing").status_code == 404
    assert client.post("/recovery/dead-letters/missing/requeue").status_code == 404
    assert client.get("/recovery/history/writer").json() == []


def test_serve_runs_uvicorn_on_configured_address(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = []
    monkeypatch.setattr(main.uvicorn, "run", lambda app, **options: calls.append((app, options)))

    main.serve(Config(api_host="0.0.0.0", api_port=9100, log_level="WARNING"))

    assert calls == [(main.app, {"host": "0.0.0.0", "port": 9100, "log_level": "warning"})]
