"""Configuration management for the agent runtime."""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, field_validator
from pydantic.alias_generators import to_camel

from agent_runtime.core.errors import ConfigurationError
from agent_runtime.core.message_bus import BusConfig
from agent_runtime.core.models import (
    AgentConfig,
    ModuleConfig,
    RecoveryStrategy,
    StrategyEntry,
    SubscriptionConfig,
)
from agent_runtime.core.resilience import RetryPolicy

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass(frozen=True)
class Config:
    """Application configuration loaded from environment variables."""

    bus: BusConfig = field(default_factory=BusConfig)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    heartbeat_interval: float = 30.0
    command_timeout: float = 60.0
    runtime_config_path: Optional[str] = None
    log_level: str = "INFO"
    environment: str = "development"
    api_host: str = "127.0.0.1"
    api_port: int = 8000

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables."""
        try:
            bus = BusConfig(
                url=os.getenv("BUS_URL", "memory://"),
                reconnect=RetryPolicy(
                    attempts=int(os.getenv("BUS_RECONNECT_ATTEMPTS", "10")),
                    initial_delay=float(os.getenv("BUS_RECONNECT_INITIAL_DELAY", "100")),
                    factor=float(os.getenv("BUS_RECONNECT_FACTOR", "2")),
                    max_delay=float(os.getenv("BUS_RECONNECT_MAX_DELAY", "30000")),
                ),
                prefetch=int(os.getenv("BUS_PREFETCH", "1")),
                publish_timeout=float(os.getenv("BUS_PUBLISH_TIMEOUT", "10")),
            )
            retry = RetryPolicy(
                attempts=int(os.getenv("RETRY_ATTEMPTS", "3")),
                initial_delay=float(os.getenv("RETRY_INITIAL_DELAY", "1000")),
                factor=float(os.getenv("RETRY_FACTOR", "2")),
                max_delay=float(os.getenv("RETRY_MAX_DELAY", "30000")),
            )
            heartbeat_interval = float(os.getenv("DEFAULT_HEARTBEAT_INTERVAL", "30"))
            command_timeout = float(os.getenv("DEFAULT_COMMAND_TIMEOUT", "60"))
            api_port = int(os.getenv("API_PORT", "8000"))
        except ValueError as exc:
            raise ConfigurationError(f"Invalid numeric environment setting: {exc}") from exc

        return cls(
            bus=bus,
            retry=retry,
            heartbeat_interval=heartbeat_interval,
            command_timeout=command_timeout,
            runtime_config_path=os.getenv("RUNTIME_CONFIG_PATH") or None,
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            environment=os.getenv("ENVIRONMENT", "development"),
            api_host=os.getenv("API_HOST", "127.0.0.1"),
            api_port=api_port,
        )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


# ---------------------------------------------------------------------- runtime document


class _Document(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class ModuleSettings(_Document):
    enabled: bool = True
    required: bool = False
    settings: Dict[str, Any] = Field(default_factory=dict)
    type: Optional[str] = None


class SubscriptionSettings(_Document):
    event: str
    description: str = ""
    source: str = "*"


class AgentSettings(_Document):
    id: str
    name: str
    role: str = "echo"
    description: str = ""
    modules: Dict[str, ModuleSettings] = Field(default_factory=dict)
    heartbeat_interval: Optional[float] = Field(default=None, gt=0)
    command_timeout: Optional[float] = Field(default=None, gt=0)
    subscriptions: List[SubscriptionSettings] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("id")
    @classmethod
    def _routable_id(cls, value: str) -> str:
        if not value or "." in value or "*" in value or "#" in value:
            raise ValueError("agent id must be a single routing-key word")
        return value

    def to_config(self, defaults: Optional[Config] = None) -> AgentConfig:
        defaults = defaults or Config()
        return AgentConfig(
            id=self.id,
            name=self.name,
            role=self.role,
            description=self.description,
            modules={
                module_id: ModuleConfig(
                    enabled=module.enabled,
                    required=module.required,
                    settings=dict(module.settings),
                    type=module.type,
                )
                for module_id, module in self.modules.items()
            },
            heartbeat_interval=self.heartbeat_interval or defaults.heartbeat_interval,
            command_timeout=self.command_timeout or defaults.command_timeout,
            subscriptions=[
                SubscriptionConfig(event=sub.event, description=sub.description, source=sub.source)
                for sub in self.subscriptions
            ],
            metadata=dict(self.metadata),
        )


class StrategySettings(_Document):
    category: str
    strategy: RecoveryStrategy
    agent_id: Optional[str] = None
    module_id: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)


class RetryPolicySettings(_Document):
    attempts: int = Field(default=3, ge=1)
    initial_delay: float = Field(default=1000, ge=0)
    factor: float = Field(default=2, ge=1)
    max_delay: float = Field(default=30000, ge=0)
    jitter: float = Field(default=0, ge=0, le=1)


class ErrorHandlerSettings(_Document):
    check_interval: float = Field(default=60.0, gt=0)
    window_size: Optional[float] = Field(default=None, gt=0)
    error_threshold: int = Field(default=5, ge=1)
    pattern_cooldown: Optional[float] = Field(default=None, gt=0)


class RecoverySettings(_Document):
    max_retries: Optional[int] = Field(default=None, ge=0)
    max_recovery_attempts: int = Field(default=3, ge=1)
    history_size: int = Field(default=100, ge=1)
    heartbeat_timeout: float = Field(default=90.0, gt=0)
    recovery_timeout: float = Field(default=300.0, gt=0)


class RuntimeDocument(_Document):
    """Agents, strategies and tuning consumed by the orchestrator at startup."""

    agents: List[AgentSettings] = Field(default_factory=list)
    recovery_strategies: List[StrategySettings] = Field(default_factory=list)
    retry_policies: Dict[str, RetryPolicySettings] = Field(default_factory=dict)
    error_handler: ErrorHandlerSettings = Field(default_factory=ErrorHandlerSettings)
    recovery: RecoverySettings = Field(default_factory=RecoverySettings)

    def agent_configs(self, defaults: Optional[Config] = None) -> List[AgentConfig]:
        return [agent.to_config(defaults) for agent in self.agents]

    def strategy_entries(self) -> List[StrategyEntry]:
        return [
            StrategyEntry(
                category=item.category,
                strategy=item.strategy,
                agent_id=item.agent_id,
                module_id=item.module_id,
                config=dict(item.config),
            )
            for item in self.recovery_strategies
        ]

    def policies(self) -> Dict[str, RetryPolicy]:
        return {
            name: RetryPolicy(
                attempts=policy.attempts,
                initial_delay=policy.initial_delay,
                factor=policy.factor,
                max_delay=policy.max_delay,
                jitter=policy.jitter,
            )
            for name, policy in self.retry_policies.items()
        }


def parse_runtime_document(data: Dict[str, Any]) -> RuntimeDocument:
    try:
        document = RuntimeDocument.model_validate(data)
    except PydanticValidationError as exc:
        raise ConfigurationError(
            f"Invalid runtime configuration: {exc.error_count()} error(s)",
            details={"errors": json.loads(exc.json())},
        ) from exc
    ids = [agent.id for agent in document.agents]
    duplicates = sorted({agent_id for agent_id in ids if ids.count(agent_id) > 1})
    if duplicates:
        raise ConfigurationError(f"Duplicate agent ids: {', '.join(duplicates)}")
    return document


def load_runtime_document(path: Optional[str]) -> RuntimeDocument:
    """Read the JSON runtime document; a missing path yields an empty document."""
    if not path:
        return RuntimeDocument()
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigurationError(f"Cannot read runtime configuration {path}: {exc}") from exc
    return parse_runtime_document(data)


# Global config instance
config = Config.from_env()
