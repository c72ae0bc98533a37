"""Helpers shared by the async test modules."""
from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, List, Optional

from agent_runtime.agents.base import Agent, AgentServices
from agent_runtime.core.message_bus import MessageBus
from agent_runtime.core.models import AgentConfig, Event, ModuleConfig
from agent_runtime.modules.base import Handler, Module
from agent_runtime.modules.echo import EchoModule


class EventRecorder:
    """Subscribes to every event and keeps them in publish order."""

    def __init__(self) -> None:
        self.events: List[Event] = []

    async def attach(self, bus: MessageBus, pattern: str = "#") -> "EventRecorder":
        await bus.subscribe(pattern, self.events.append)
        return self

    def of(self, event_type: str, source: Optional[str] = None) -> List[Dict[str, Any]]:
        return [
            event.payload
            for event in self.events
            if event.type == event_type and (source is None or event.source == source)
        ]

    def types(self, source: Optional[str] = None) -> List[str]:
        return [event.type for event in self.events if source is None or event.source == source]

    async def wait_for(
        self,
        event_type: str,
        count: int = 1,
        timeout: float = 2.0,
        where: Optional[Callable[[Dict[str, Any]], bool]] = None,
    ) -> List[Dict[str, Any]]:
        async def _poll() -> List[Dict[str, Any]]:
            while True:
                found = [payload for payload in self.of(event_type) if where is None or where(payload)]
                if len(found) >= count:
                    return found
                await asyncio.sleep(0.005)

        return await asyncio.wait_for(_poll(), timeout)


class FailingInitModule(Module):
    async def _initialize(self) -> None:
        raise RuntimeError("boom")


class FlakyModule(Module):
    """Task ``fetch`` times out ``fail_times`` times (all of them when negative)."""

    async def _initialize(self) -> None:
        self.calls: List[Dict[str, Any]] = []

    def tasks(self) -> Dict[str, Handler]:
        return {"fetch": self.fetch}

    async def fetch(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        self.calls.append(payload)
        fail_times = self.settings.get("fail_times", -1)
        if fail_times < 0 or len(self.calls) <= fail_times:
            raise TimeoutError("upstream timed out")
        return {"fetched": payload.get("url"), "calls": len(self.calls)}


class SlowModule(Module):
    async def _initialize(self) -> None:
        self.started = asyncio.Event()
        self.calls = 0

    def commands(self) -> Dict[str, Handler]:
        return {"slow": self.slow}

    async def slow(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        self.calls += 1
        self.started.set()
        await asyncio.sleep(payload.get("sleep", 5))
        return {"slept": True}


MODULES = {
    "echo": EchoModule,
    "boom": FailingInitModule,
    "flaky": FlakyModule,
    "slow": SlowModule,
}


async def connected_bus(**kwargs: Any) -> MessageBus:
    bus = MessageBus(**kwargs)
    await bus.connect()
    return bus


def agent_config(agent_id: str = "A", **modules: ModuleConfig) -> AgentConfig:
    return AgentConfig(
        id=agent_id,
        name=f"agent {agent_id}",
        modules=modules or {"M": ModuleConfig(required=True, type="echo")},
        heartbeat_interval=3600,
        command_timeout=5,
    )


def make_agent(bus: MessageBus, config: Optional[AgentConfig] = None, agent_cls: type = Agent) -> Agent:
    return agent_cls(config or agent_config(), AgentServices(bus=bus), MODULES)
