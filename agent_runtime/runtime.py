"""Application runtime composition helpers."""
from __future__ import annotations

from functools import lru_cache

from agent_runtime.agents.echo import EchoAgent
from agent_runtime.config import RuntimeDocument, config, load_runtime_document
from agent_runtime.core.models import AgentConfig, ModuleConfig
from agent_runtime.modules.echo import EchoModule
from agent_runtime.orchestration.orchestrator import Orchestrator

AGENT_CATALOG = {
    "echo": EchoAgent,
}

MODULE_CATALOG = {
    "echo": EchoModule,
}


@lru_cache
def get_runtime_document() -> RuntimeDocument:
    return load_runtime_document(config.runtime_config_path)


@lru_cache
def get_orchestrator() -> Orchestrator:
    return Orchestrator(
        config=config,
        document=get_runtime_document(),
        agent_catalog=AGENT_CATALOG,
        module_catalog=MODULE_CATALOG,
    )


def default_agent_config(agent_id: str) -> AgentConfig:
    return AgentConfig(
        id=agent_id,
        name=agent_id,
        role="echo",
        modules={"echo": ModuleConfig(required=True)},
        heartbeat_interval=config.heartbeat_interval,
        command_timeout=config.command_timeout,
    )
