"""AI operation routes: start, poll, cancel and inspect orchestration load."""

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from typing import Dict, Any, Optional

from core.container import container
from core.database import Database
from core.logging import get_logger
from services.orchestration import (
    AIOrchestrator,
    OperationNotFound,
    OperationTracker,
    Priority,
    UnknownOperation,
)

logger = get_logger(__name__)
router = APIRouter(prefix="/api/ai", tags=["ai"])


class StartOperationRequest(BaseModel):
    type: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    priority: Optional[Priority] = None
    user_id: Optional[str] = None


class ClearCacheRequest(BaseModel):
    pattern: Optional[str] = None


@router.post("/operations", status_code=202)
async def start_operation(
    request: StartOperationRequest,
    tracker: OperationTracker = Depends(lambda: container.tracker())
):
    """Start an AI operation in the background."""
    try:
        operation_id = await tracker.start_operation(
            request.type,
            request.payload,
            priority=request.priority,
            user_id=request.user_id
        )
    except UnknownOperation as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"success": True, "operation_id": operation_id}


@router.get("/operations/{operation_id}")
async def get_operation_status(
    operation_id: str,
    tracker: OperationTracker = Depends(lambda: container.tracker())
):
    """Get status of an AI operation."""
    try:
        status = await tracker.get_status(operation_id)
    except OperationNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"success": True, "operation": status}


@router.delete("/operations/{operation_id}")
async def cancel_operation(
    operation_id: str,
    tracker: OperationTracker = Depends(lambda: container.tracker())
):
    """Cancel an AI operation. In-flight provider calls are not aborted."""
    try:
        status = await tracker.cancel(operation_id)
    except OperationNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"success": True, "operation": status}


@router.get("/users/{user_id}/operations")
async def list_user_operations(
    user_id: str,
    limit: int = 50,
    database: Database = Depends(lambda: container.database())
):
    """Recent persisted operations for a user."""
    try:
        operations = await database.list_user_records(user_id, limit=limit)
        return {"success": True, "operations": operations}
    except Exception as e:
        logger.error("Failed to list operations", user_id=user_id, error=str(e))
        return {"success": False, "error": str(e)}


@router.get("/stats")
async def get_stats(
    tracker: OperationTracker = Depends(lambda: container.tracker())
):
    """Cache, rate limit, memory and operation statistics."""
    return {"success": True, "stats": tracker.get_stats()}


# ============================================================================
# Administration
# ============================================================================

@router.post("/cache/clear")
async def clear_cache(
    request: ClearCacheRequest,
    orchestrator: AIOrchestrator = Depends(lambda: container.orchestrator())
):
    """Clear cached results, optionally only keys matching a pattern."""
    removed = await orchestrator.cache.clear(request.pattern)
    logger.info("Cache cleared via API", pattern=request.pattern, removed=removed)
    return {"success": True, "removed": removed}


@router.post("/rate-limits/reset")
async def reset_rate_limits(
    orchestrator: AIOrchestrator = Depends(lambda: container.orchestrator())
):
    """Reset every service's rate limit window."""
    orchestrator.rate_limiter.clear_limits()
    return {"success": True}
