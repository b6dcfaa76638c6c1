"""Execution endpoints: inspect, cancel, pause, resume, retry."""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from api.schemas.common import PaginationParams, paginate
from app.dependencies import get_engine, get_repository, get_trigger_router
from core.constants import ExecutionStatus
from db.repository import Repository
from triggers.router import TriggerRouter
from workflow.engine import WorkflowEngine

router = APIRouter(tags=["executions"])


@router.get("/")
async def list_executions(
    pagination: PaginationParams = Depends(),
    execution_status: Optional[ExecutionStatus] = Query(None, alias="status"),
    workflow_id: Optional[str] = Query(None),
    repository: Repository = Depends(get_repository),
) -> dict:
    records = await repository.list_executions(status=execution_status, workflow_id=workflow_id)
    records.sort(key=lambda r: r.created_at, reverse=True)
    page = paginate(records, pagination.page, pagination.per_page)
    page["items"] = [r.model_dump(mode="json") for r in page["items"]]
    return page


@router.get("/running")
async def list_running(engine: WorkflowEngine = Depends(get_engine)) -> dict:
    """Runs driven by this process right now."""
    running = engine.get_running_executions()
    return {"executions": running, "count": len(running)}


@router.get("/{execution_id}")
async def get_execution(execution_id: str, engine: WorkflowEngine = Depends(get_engine)) -> dict:
    return (await engine.get_execution(execution_id)).model_dump(mode="json")


@router.post("/{execution_id}/cancel")
async def cancel_execution(execution_id: str, engine: WorkflowEngine = Depends(get_engine)) -> dict:
    """Request cancellation; a live run stops at its next step boundary."""
    record = await engine.cancel(execution_id)
    return {"execution_id": execution_id, "status": record.status.value, "cancel_requested": True}


@router.post("/{execution_id}/pause")
async def pause_execution(execution_id: str, engine: WorkflowEngine = Depends(get_engine)) -> dict:
    await engine.pause(execution_id)
    return {"execution_id": execution_id, "pause_requested": True}


@router.post("/{execution_id}/resume", status_code=202)
async def resume_execution(execution_id: str, engine: WorkflowEngine = Depends(get_engine)) -> dict:
    await engine.resume(execution_id, background=True)
    return {"execution_id": execution_id, "resumed": True}


@router.post("/{execution_id}/retry", status_code=202)
async def retry_execution(
    execution_id: str,
    trigger_router: TriggerRouter = Depends(get_trigger_router),
) -> dict:
    """Start a new run of a failed execution with its original payload."""
    new_id = await trigger_router.retry_failed_execution(execution_id)
    return {"execution_id": new_id, "retry_of": execution_id}
