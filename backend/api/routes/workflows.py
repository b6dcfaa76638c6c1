"""Workflow endpoints: create, list, get, update, publish, pause, run."""

from typing import Any, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from api.schemas.common import PaginationParams, paginate
from app.dependencies import get_engine, get_repository, get_workflow_service
from core.constants import ExecutionStatus, TriggerKind, WorkflowStatus
from db.repository import Repository
from services.workflow_service import WorkflowService
from workflow.engine import WorkflowEngine

router = APIRouter(tags=["workflows"])


class RunRequest(BaseModel):
    """Manual run of a workflow."""
    trigger_data: dict[str, Any] = Field(default_factory=dict)
    user_id: Optional[str] = None
    wait: bool = Field(default=False, description="Block until the run stops")
    timeout_seconds: Optional[float] = Field(default=None, gt=0, description="Only with wait=true")


@router.get("/")
async def list_workflows(
    pagination: PaginationParams = Depends(),
    workflow_status: Optional[WorkflowStatus] = Query(None, alias="status"),
    service: WorkflowService = Depends(get_workflow_service),
) -> dict:
    workflows = await service.list(status=workflow_status)
    page = paginate(workflows, pagination.page, pagination.per_page)
    page["items"] = [w.dump() for w in page["items"]]
    return page


@router.post("/", status_code=status.HTTP_201_CREATED)
async def create_workflow(
    definition: dict[str, Any],
    service: WorkflowService = Depends(get_workflow_service),
) -> dict:
    """Save a workflow; the whole step graph is validated first."""
    workflow = await service.create_workflow(definition)
    return workflow.dump()


@router.get("/{workflow_id}")
async def get_workflow(
    workflow_id: str,
    service: WorkflowService = Depends(get_workflow_service),
) -> dict:
    return (await service.get(workflow_id)).dump()


@router.put("/{workflow_id}")
async def update_workflow(
    workflow_id: str,
    definition: dict[str, Any],
    service: WorkflowService = Depends(get_workflow_service),
) -> dict:
    return (await service.update_definition(workflow_id, definition)).dump()


@router.post("/{workflow_id}/publish")
async def publish_workflow(
    workflow_id: str,
    service: WorkflowService = Depends(get_workflow_service),
) -> dict:
    return (await service.publish(workflow_id)).dump()


@router.post("/{workflow_id}/pause")
async def pause_workflow(
    workflow_id: str,
    service: WorkflowService = Depends(get_workflow_service),
) -> dict:
    return (await service.pause(workflow_id)).dump()


@router.post("/{workflow_id}/run", status_code=status.HTTP_202_ACCEPTED)
async def run_workflow(
    workflow_id: str,
    request: RunRequest,
    engine: WorkflowEngine = Depends(get_engine),
) -> dict:
    """Start a run. Pre-flight errors are returned directly; everything
    after that is recorded on the execution."""
    kwargs = dict(trigger_data=request.trigger_data, user_id=request.user_id, trigger_kind=TriggerKind.MANUAL)
    if not request.wait:
        execution_id = await engine.start(workflow_id, **kwargs)
        return {"execution_id": execution_id, "status": ExecutionStatus.PENDING.value}

    if request.timeout_seconds:
        execution_id = await engine.run_with_timeout(workflow_id, request.timeout_seconds, **kwargs)
    else:
        execution_id = await engine.run(workflow_id, **kwargs)
    record = await engine.get_execution(execution_id)
    return {"execution_id": execution_id, "status": record.status.value, "execution": record.model_dump(mode="json")}


@router.get("/{workflow_id}/executions")
async def list_workflow_executions(
    workflow_id: str,
    pagination: PaginationParams = Depends(),
    execution_status: Optional[ExecutionStatus] = Query(None, alias="status"),
    service: WorkflowService = Depends(get_workflow_service),
    repository: Repository = Depends(get_repository),
) -> dict:
    await service.get(workflow_id)
    records = await repository.list_executions(status=execution_status, workflow_id=workflow_id)
    records.sort(key=lambda r: r.created_at, reverse=True)
    page = paginate(records, pagination.page, pagination.per_page)
    page["items"] = [r.model_dump(mode="json") for r in page["items"]]
    return page
