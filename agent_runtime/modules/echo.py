"""Simple module implementation used in the proof-of-concept."""
from __future__ import annotations

import asyncio
from typing import Any, Dict

from agent_runtime.core.errors import ValidationError
from agent_runtime.modules.base import Handler, Module


class EchoModule(Module):
    """Module that returns what it receives to demonstrate lifecycle control."""

    echoed = 0

    def validate_settings(self) -> None:
        delay = self.settings.get("delay", 0)
        if not isinstance(delay, (int, float)) or delay < 0:
            raise ValidationError("Echo delay must be a non-negative number", details={"fieldName": "delay"})

    async def _initialize(self) -> None:
        self.echoed = 0

    def commands(self) -> Dict[str, Handler]:
        return {"echo": self.echo}

    def tasks(self) -> Dict[str, Handler]:
        return {"echo-task": self.echo}

    def fallbacks(self) -> Dict[str, Handler]:
        return {"echo": self.echo}

    async def echo(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        delay = self.settings.get("delay", 0)
        if delay:
            await asyncio.sleep(delay)  # Simulate work
        self.echoed += 1
        self.log_activity("echo")
        return {key: value for key, value in payload.items() if key != "timeout"}

    def metrics(self) -> Dict[str, Any]:
        return {"echoed": self.echoed}
