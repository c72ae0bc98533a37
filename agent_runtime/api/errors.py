"""HTTP API over the error handler's records."""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from agent_runtime.api.routes import get_orchestrator
from agent_runtime.core.errors import NotFoundError
from agent_runtime.orchestration.orchestrator import Orchestrator

router = APIRouter(prefix="/errors", tags=["errors"])


class ResolveRequest(BaseModel):
    resolution: Optional[str] = None
    resolved_by: Optional[str] = None


@router.get("")
async def list_errors(
    include_resolved: bool = False,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> List[Dict[str, Any]]:
    records = await orchestrator.error_handler.list_errors(include_resolved)
    return [record.to_dict() for record in records]


@router.get("/stats")
async def error_statistics(orchestrator: Orchestrator = Depends(get_orchestrator)) -> Dict[str, Any]:
    return await orchestrator.error_handler.get_error_statistics()


@router.get("/{error_id}")
async def get_error(error_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)) -> Dict[str, Any]:
    try:
        record = await orchestrator.error_handler.get_error(error_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return record.to_dict()


@router.post("/{error_id}/resolve")
async def resolve_error(
    error_id: str,
    request: ResolveRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    try:
        record = await orchestrator.error_handler.resolve_error(error_id, request.resolution, request.resolved_by)
    except NotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return record.to_dict()
