"""Tests for orchestrator lifecycle management."""
from __future__ import annotations

import asyncio

import pytest

from agent_runtime.agents.echo import EchoAgent
from agent_runtime.config import Config, parse_runtime_document
from agent_runtime.core.errors import ConfigurationError, NotFoundError
from agent_runtime.core.models import AgentConfig, AgentStatus, ModuleConfig
from agent_runtime.orchestration.orchestrator import Orchestrator

from support import MODULES


def make_orchestrator(**document) -> Orchestrator:
    return Orchestrator(
        config=Config(heartbeat_interval=3600, command_timeout=5),
        document=parse_runtime_document(document),
        agent_catalog={"echo": EchoAgent},
        module_catalog=MODULES,
    )


ECHO_AGENT = {
    "id": "writer",
    "name": "Writer",
    "role": "echo",
    "modules": {"echo": {"required": True}},
}


@pytest.mark.anyio
async def test_start_spawns_configured_agents_and_dispatches() -> None:
    orchestrator = make_orchestrator(agents=[ECHO_AGENT])
    await orchestrator.start()

    agent = orchestrator.get_agent("writer")
    assert agent is not None
    assert agent.status is AgentStatus.RUNNING
    assert agent.config.heartbeat_interval == 3600

    reply = await orchestrator.dispatch("writer", "ping", {"content": "hi"}, wait=True)
    assert reply["success"] is True
    assert reply["result"] == {"pong": "writer", "content": "hi"}

    command_id = await orchestrator.dispatch("writer", "echo", {"msg": "fire and forget"})
    assert isinstance(command_id, str)

    with pytest.raises(NotFoundError):
        await orchestrator.dispatch("ghost", "ping")

    report = await orchestrator.shutdown()
    assert report == {"agents": "ok", "recovery": "ok", "error_handler": "ok", "bus": "ok"}
    assert orchestrator.list_agents() == []


@pytest.mark.anyio
async def test_spawn_and_terminate_agent() -> None:
    orchestrator = make_orchestrator()
    await orchestrator.start()

    agent = await orchestrator.spawn_agent(
        AgentConfig(id="extra", name="extra", role="echo", modules={"echo": ModuleConfig(required=True)}, heartbeat_interval=3600)
    )
    assert agent.status is AgentStatus.RUNNING

    with pytest.raises(ConfigurationError):
        await orchestrator.spawn_agent(AgentConfig(id="extra", name="again", role="echo"))
    with pytest.raises(ConfigurationError):
        await orchestrator.spawn_agent(AgentConfig(id="other", name="other", role="translator"))

    assert await orchestrator.terminate_agent("extra") is True
    assert await orchestrator.terminate_agent("extra") is False
    assert orchestrator.get_agent("extra") is None
    await orchestrator.shutdown()


@pytest.mark.anyio
async def test_failing_agent_stays_registered_and_can_be_restarted() -> None:
    broken = {
        "id": "broken",
        "name": "Broken",
        "modules": {"renderer": {"required": True, "type": "boom"}},
    }
    orchestrator = make_orchestrator(agents=[ECHO_AGENT, broken])
    await orchestrator.start()
    await orchestrator.bus.join()

    agent = orchestrator.get_agent("broken")
    assert agent is not None
    assert agent.status is AgentStatus.ERROR
    assert orchestrator.get_agent("writer").status is AgentStatus.RUNNING

    health = orchestrator.health()
    assert health["status"] == "degraded"
    assert health["agents"] == {"writer": "running", "broken": "error"}

    dead = orchestrator.recovery.list_dead_letters("broken")
    assert dead[0].category == "module_init_failure"
    stats = await orchestrator.error_handler.get_error_statistics()
    assert stats["totalErrors"] >= 1

    with pytest.raises(RuntimeError):
        await orchestrator.restart_agent("broken")
    with pytest.raises(NotFoundError):
        await orchestrator.restart_agent("ghost")
    await orchestrator.shutdown()


@pytest.mark.anyio
async def test_restart_agent_brings_it_back_to_running() -> None:
    orchestrator = make_orchestrator(agents=[ECHO_AGENT])
    await orchestrator.start()

    agent = await orchestrator.restart_agent("writer")
    reply = await orchestrator.dispatch("writer", "echo", {"msg": "back"}, wait=True)

    assert agent.status is AgentStatus.RUNNING
    assert reply["result"] == {"msg": "back"}
    await orchestrator.shutdown()


@pytest.mark.anyio
async def test_health_reports_services() -> None:
    orchestrator = make_orchestrator(agents=[ECHO_AGENT])
    await orchestrator.start()

    health = orchestrator.health()

    assert health["status"] == "ok"
    assert health["environment"] == "development"
    assert health["bus"]["connected"] is True
    assert health["agents"] == {"writer": "running"}
    assert health["recovery"]["deadLetters"] == 0
    await orchestrator.shutdown()


@pytest.mark.anyio
async def test_run_shuts_down_when_signalled() -> None:
    orchestrator = make_orchestrator(agents=[ECHO_AGENT])
    stop = asyncio.Event()

    running = asyncio.create_task(orchestrator.run(stop, step_timeout=2))
    await asyncio.sleep(0.05)
    assert orchestrator.get_agent("writer") is not None
    stop.set()
    report = await asyncio.wait_for(running, 5)

    assert set(report.values()) == {"ok"}
    assert orchestrator.bus.is_connected is False
