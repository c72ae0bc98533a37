"""CLI demonstration of orchestrator-managed agent lifecycle."""
from __future__ import annotations

import asyncio
from typing import NoReturn

from agent_runtime.config import Config, configure_logging
from agent_runtime.core.models import Event
from agent_runtime.orchestration.orchestrator import Orchestrator
from agent_runtime.runtime import AGENT_CATALOG, MODULE_CATALOG, default_agent_config


async def main() -> None:
    orchestrator = Orchestrator(
        config=Config(),
        agent_catalog=AGENT_CATALOG,
        module_catalog=MODULE_CATALOG,
    )
    await orchestrator.start()

    def show(event: Event) -> None:
        print(f"  event {event.routing_key}: {event.payload.get('status', '')}")

    await orchestrator.bus.subscribe("demo-echo.agent.*", show)
    agent = await orchestrator.spawn_agent(default_agent_config("demo-echo"))
    print(f"Spawned agent {agent.agent_id} in state {agent.status.value}")

    reply = await orchestrator.dispatch(agent.agent_id, "echo", {"msg": "Hello agent"}, wait=True, timeout=2)
    print(f"Received reply from {agent.agent_id}: {reply}")

    reply = await orchestrator.dispatch(agent.agent_id, "unknown", {}, wait=True, timeout=2)
    print(f"Unknown command reply: {reply}")

    await orchestrator.bus.join()
    report = await orchestrator.shutdown()
    print(f"Runtime shut down: {report}")


def run() -> NoReturn:
    configure_logging("WARNING")
    asyncio.run(main())


if __name__ == "__main__":
    run()
