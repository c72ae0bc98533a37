"""HTTP API exposing agent lifecycle and command dispatch."""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field

from agent_runtime.agents.base import Agent
from agent_runtime.config import AgentSettings
from agent_runtime.core.errors import (
    AgentNotReadyError,
    AgentRuntimeError,
    BusUnavailableError,
    KIND_VALIDATION,
    NotFoundError,
)
from agent_runtime.orchestration.orchestrator import Orchestrator

router = APIRouter(prefix="/agents", tags=["agents"])


def get_orchestrator(request: Request) -> Orchestrator:
    return request.app.state.orchestrator


def http_error(exc: Exception) -> HTTPException:
    """Translate a runtime error into the matching HTTP status."""
    if isinstance(exc, NotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, AgentRuntimeError) and exc.kind == KIND_VALIDATION:
        code = status.HTTP_400_BAD_REQUEST
    elif isinstance(exc, AgentNotReadyError):
        code = status.HTTP_409_CONFLICT
    elif isinstance(exc, BusUnavailableError):
        code = status.HTTP_503_SERVICE_UNAVAILABLE
    elif isinstance(exc, TimeoutError):
        code = status.HTTP_504_GATEWAY_TIMEOUT
    else:
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
    return HTTPException(status_code=code, detail=str(exc))


class AgentResponse(BaseModel):
    agent_id: str
    name: str
    role: str
    status: str
    queue_depth: int
    modules: Dict[str, Any]
    commands: Dict[str, Any]

    @classmethod
    def from_agent(cls, agent: Agent) -> "AgentResponse":
        snapshot = agent.get_status()
        return cls(
            agent_id=agent.agent_id,
            name=agent.name,
            role=agent.config.role,
            status=snapshot["status"],
            queue_depth=snapshot["queueDepth"],
            modules=snapshot["modules"],
            commands=snapshot["commands"],
        )


class CommandRequest(BaseModel):
    type: str = Field(..., description="Command type registered by the agent")
    payload: Dict[str, Any] = Field(default_factory=dict)
    wait: bool = Field(True, description="Wait for the reply envelope")
    timeout: Optional[float] = Field(None, gt=0, description="Seconds to wait for the reply")


class CommandResponse(BaseModel):
    command_id: Optional[str] = None
    reply: Optional[Dict[str, Any]] = None


@router.post("", response_model=AgentResponse, status_code=status.HTTP_201_CREATED)
async def create_agent(
    request: AgentSettings,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> AgentResponse:
    try:
        agent = await orchestrator.spawn_agent(request.to_config(orchestrator.config))
    except AgentRuntimeError as exc:
        raise http_error(exc) from exc
    return AgentResponse.from_agent(agent)


@router.get("", response_model=List[AgentResponse])
async def list_agents(orchestrator: Orchestrator = Depends(get_orchestrator)) -> List[AgentResponse]:
    return [AgentResponse.from_agent(agent) for agent in orchestrator.list_agents()]


@router.get("/{agent_id}", response_model=AgentResponse)
async def get_agent(agent_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)) -> AgentResponse:
    agent = orchestrator.get_agent(agent_id)
    if agent is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown agent")
    return AgentResponse.from_agent(agent)


@router.delete("/{agent_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_agent(agent_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)) -> None:
    if not await orchestrator.terminate_agent(agent_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown agent")


@router.post("/{agent_id}/commands", response_model=CommandResponse, status_code=status.HTTP_202_ACCEPTED)
async def send_command(
    agent_id: str,
    request: CommandRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> CommandResponse:
    try:
        result = await orchestrator.dispatch(
            agent_id, request.type, request.payload, wait=request.wait, timeout=request.timeout
        )
    except (AgentRuntimeError, TimeoutError) as exc:
        raise http_error(exc) from exc
    if request.wait:
        return CommandResponse(command_id=result.get("id"), reply=result)
    return CommandResponse(command_id=result)


@router.post("/{agent_id}/restart", response_model=AgentResponse)
async def restart_agent(agent_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)) -> AgentResponse:
    try:
        agent = await orchestrator.restart_agent(agent_id)
    except AgentRuntimeError as exc:
        raise http_error(exc) from exc
    return AgentResponse.from_agent(agent)
