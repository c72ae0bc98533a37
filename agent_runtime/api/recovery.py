"""HTTP API over the recovery controller's dead-letter queue and history."""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, status

from agent_runtime.api.routes import get_orchestrator, http_error
from agent_runtime.core.errors import AgentRuntimeError
from agent_runtime.orchestration.orchestrator import Orchestrator

router = APIRouter(prefix="/recovery", tags=["recovery"])


@router.get("/dead-letters")
async def list_dead_letters(
    agent_id: Optional[str] = None,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> List[Dict[str, Any]]:
    return [entry.to_dict() for entry in orchestrator.recovery.list_dead_letters(agent_id)]


@router.delete("/dead-letters/{key}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_dead_letter(key: str, orchestrator: Orchestrator = Depends(get_orchestrator)) -> None:
    if not orchestrator.recovery.delete_dead_letter(key):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown dead letter")


@router.post("/dead-letters/{key}/requeue", status_code=status.HTTP_202_ACCEPTED)
async def requeue_dead_letter(key: str, orchestrator: Orchestrator = Depends(get_orchestrator)) -> Dict[str, str]:
    try:
        command_id = await orchestrator.recovery.requeue_dead_letter(key)
    except AgentRuntimeError as exc:
        raise http_error(exc) from exc
    if command_id is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown dead letter")
    return {"commandId": command_id}


@router.get("/history/{agent_id}")
async def recovery_history(agent_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)) -> List[Dict[str, Any]]:
    return orchestrator.recovery.get_recovery_history(agent_id)
