"""Schedule management endpoints.

CRUD for workflow schedules (cron, interval, delay, once, event), with
enable/disable, manual fire, fire history and statistics.
"""

from typing import Any, Optional

from fastapi import APIRouter, Depends, Query, status

from api.schemas.common import PaginationParams, paginate
from app.dependencies import get_scheduler
from core.constants import ScheduledExecutionStatus
from scheduling.cron import ScheduleBuilder
from scheduling.models import ScheduleDefinition
from scheduling.scheduler import WorkflowScheduler

router = APIRouter(tags=["schedules"])


def _to_response(schedule: ScheduleDefinition) -> dict:
    data = schedule.model_dump(mode="json")
    data["kind"] = schedule.kind.value
    if schedule.kind.value == "cron":
        data["description"] = ScheduleBuilder.describe(schedule.params.expression)
    return data


@router.get("/")
async def list_schedules(
    pagination: PaginationParams = Depends(),
    workflow_id: Optional[str] = Query(None, description="Filter by workflow"),
    enabled: Optional[bool] = Query(None, description="Filter by enabled status"),
    scheduler: WorkflowScheduler = Depends(get_scheduler),
) -> dict:
    schedules = await scheduler.list_schedules(enabled=enabled, workflow_id=workflow_id)
    schedules.sort(key=lambda s: s.created_at, reverse=True)
    page = paginate(schedules, pagination.page, pagination.per_page)
    page["items"] = [_to_response(s) for s in page["items"]]
    return page


@router.post("/", status_code=status.HTTP_201_CREATED)
async def create_schedule(
    body: dict[str, Any],
    scheduler: WorkflowScheduler = Depends(get_scheduler),
) -> dict:
    """Create a schedule; cron expression and timezone are validated here."""
    return _to_response(await scheduler.create_schedule(body))


@router.get("/stats")
async def schedule_statistics(
    upcoming: int = Query(10, ge=1, le=100),
    scheduler: WorkflowScheduler = Depends(get_scheduler),
) -> dict:
    return await scheduler.get_statistics(upcoming=upcoming)


@router.get("/cron/preview")
async def preview_cron(
    expression: str = Query(..., description="5-field cron expression"),
    timezone: str = Query("UTC"),
    count: int = Query(5, ge=1, le=50),
) -> dict:
    """Describe a cron expression and list its next fire times."""
    runs = ScheduleBuilder.next_runs(expression, timezone, count)
    return {
        "expression": expression,
        "timezone": timezone,
        "description": ScheduleBuilder.describe(expression),
        "next_runs": [r.isoformat() for r in runs],
    }


@router.get("/{schedule_id}")
async def get_schedule(schedule_id: str, scheduler: WorkflowScheduler = Depends(get_scheduler)) -> dict:
    return _to_response(await scheduler.get_schedule(schedule_id))


@router.patch("/{schedule_id}")
async def update_schedule(
    schedule_id: str,
    changes: dict[str, Any],
    scheduler: WorkflowScheduler = Depends(get_scheduler),
) -> dict:
    return _to_response(await scheduler.update_schedule(schedule_id, changes))


@router.delete("/{schedule_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_schedule(schedule_id: str, scheduler: WorkflowScheduler = Depends(get_scheduler)) -> None:
    await scheduler.delete_schedule(schedule_id)


@router.post("/{schedule_id}/enable")
async def enable_schedule(schedule_id: str, scheduler: WorkflowScheduler = Depends(get_scheduler)) -> dict:
    return _to_response(await scheduler.enable_schedule(schedule_id))


@router.post("/{schedule_id}/disable")
async def disable_schedule(schedule_id: str, scheduler: WorkflowScheduler = Depends(get_scheduler)) -> dict:
    return _to_response(await scheduler.disable_schedule(schedule_id))


@router.post("/{schedule_id}/run")
async def run_schedule_now(schedule_id: str, scheduler: WorkflowScheduler = Depends(get_scheduler)) -> dict:
    """Fire the schedule immediately and wait for the run."""
    record = await scheduler.trigger_now(schedule_id)
    return record.model_dump(mode="json")


@router.get("/{schedule_id}/executions")
async def list_schedule_executions(
    schedule_id: str,
    pagination: PaginationParams = Depends(),
    fire_status: Optional[ScheduledExecutionStatus] = Query(None, alias="status"),
    scheduler: WorkflowScheduler = Depends(get_scheduler),
) -> dict:
    records = await scheduler.list_executions(schedule_id, status=fire_status)
    records.sort(key=lambda r: r.scheduled_time, reverse=True)
    page = paginate(records, pagination.page, pagination.per_page)
    page["items"] = [r.model_dump(mode="json") for r in page["items"]]
    return page


@router.post("/executions/{record_id}/cancel")
async def cancel_scheduled_execution(
    record_id: str,
    scheduler: WorkflowScheduler = Depends(get_scheduler),
) -> dict:
    record = await scheduler.cancel_scheduled_execution(record_id)
    return record.model_dump(mode="json")
