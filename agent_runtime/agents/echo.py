"""Simple agent implementation used in the proof-of-concept."""
from __future__ import annotations

from typing import Any, Dict

from agent_runtime.agents.base import Agent


class EchoAgent(Agent):
    """Agent that answers ``ping`` on top of whatever its modules provide."""

    def register_commands(self) -> None:
        self.register("ping", self.ping)
        self.register("status", self.report_status)

    async def ping(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return {"pong": self.agent_id, "content": payload.get("content")}

    async def report_status(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self.get_status()
