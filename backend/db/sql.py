"""SQLAlchemy implementation of the repository.

Every record is stored as its JSON document plus the scalar columns the
queries filter on. Each save is a single-transaction upsert.
"""

from datetime import datetime, timezone
from typing import Any, Optional, Type, TypeVar

from pydantic import BaseModel
from sqlalchemy import delete, select, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.constants import ExecutionStatus, ScheduledExecutionStatus, WorkflowStatus
from db.base import RecordModel
from db.models import (
    CheckpointModel,
    ExecutionModel,
    ScheduledExecutionModel,
    ScheduleModel,
    WebhookModel,
    WorkflowModel,
)
from db.repository import Repository
from scheduling.models import ScheduleDefinition, ScheduledExecutionRecord
from triggers.models import WebhookRegistration
from workflow.definition import WorkflowDefinition
from workflow.records import CheckpointRecord, ExecutionRecord


M = TypeVar("M", bound=BaseModel)


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Column form of a timestamp: naive UTC (SQLite drops tzinfo anyway)."""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _dump(record: BaseModel) -> dict[str, Any]:
    return record.model_dump(mode="json", by_alias=True)


class SqlRepository(Repository):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._sessions = session_factory

    async def ping(self) -> bool:
        async with self._sessions() as session:
            await session.execute(text("SELECT 1"))
        return True

    async def _upsert(self, model: Type[RecordModel], record_id: str, data: dict, **columns: Any) -> None:
        async with self._sessions() as session:
            async with session.begin():
                row = await session.get(model, record_id)
                if row is None:
                    session.add(model(id=record_id, data=data, **columns))
                else:
                    row.data = data
                    for name, value in columns.items():
                        setattr(row, name, value)

    async def _get(self, model: Type[RecordModel], record_id: str, schema: Type[M]) -> Optional[M]:
        async with self._sessions() as session:
            row = await session.get(model, record_id)
            return schema.model_validate(row.data) if row is not None else None

    async def _list(self, stmt, schema: Type[M]) -> list[M]:
        async with self._sessions() as session:
            result = await session.execute(stmt)
            return [schema.model_validate(row.data) for row in result.scalars()]

    # ─── Workflows ─────────────────────────────────────────────

    async def save_workflow(self, workflow: WorkflowDefinition) -> WorkflowDefinition:
        await self._upsert(
            WorkflowModel,
            workflow.id,
            workflow.dump(),
            organization_id=workflow.organization_id,
            status=workflow.status.value,
        )
        return workflow

    async def get_workflow(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        return await self._get(WorkflowModel, workflow_id, WorkflowDefinition)

    async def list_workflows(self, status: Optional[WorkflowStatus] = None) -> list[WorkflowDefinition]:
        stmt = select(WorkflowModel).order_by(WorkflowModel.created_at)
        if status is not None:
            stmt = stmt.where(WorkflowModel.status == status.value)
        return await self._list(stmt, WorkflowDefinition)

    # ─── Executions ────────────────────────────────────────────

    async def save_execution(self, record: ExecutionRecord) -> ExecutionRecord:
        await self._upsert(
            ExecutionModel,
            record.id,
            _dump(record),
            workflow_id=record.workflow_id,
            status=record.status.value,
        )
        return record

    async def get_execution(self, execution_id: str) -> Optional[ExecutionRecord]:
        return await self._get(ExecutionModel, execution_id, ExecutionRecord)

    async def list_executions(
        self,
        status: Optional[ExecutionStatus] = None,
        workflow_id: Optional[str] = None,
    ) -> list[ExecutionRecord]:
        stmt = select(ExecutionModel).order_by(ExecutionModel.created_at)
        if status is not None:
            stmt = stmt.where(ExecutionModel.status == status.value)
        if workflow_id is not None:
            stmt = stmt.where(ExecutionModel.workflow_id == workflow_id)
        return await self._list(stmt, ExecutionRecord)

    # ─── Checkpoints ───────────────────────────────────────────

    async def save_checkpoint(self, checkpoint: CheckpointRecord) -> None:
        await self._upsert(
            CheckpointModel,
            checkpoint.execution_id,
            _dump(checkpoint),
            workflow_id=checkpoint.workflow_id,
            step_id=checkpoint.step_id,
            sequence=checkpoint.sequence,
        )

    async def get_checkpoint(self, execution_id: str) -> Optional[CheckpointRecord]:
        return await self._get(CheckpointModel, execution_id, CheckpointRecord)

    async def delete_checkpoint(self, execution_id: str) -> None:
        async with self._sessions() as session:
            async with session.begin():
                await session.execute(delete(CheckpointModel).where(CheckpointModel.id == execution_id))

    # ─── Schedules ─────────────────────────────────────────────

    async def save_schedule(self, schedule: ScheduleDefinition) -> ScheduleDefinition:
        await self._upsert(
            ScheduleModel,
            schedule.id,
            _dump(schedule),
            workflow_id=schedule.workflow_id,
            kind=schedule.kind.value,
            enabled=schedule.enabled,
            next_execution_at=_naive_utc(schedule.next_execution_at),
        )
        return schedule

    async def get_schedule(self, schedule_id: str) -> Optional[ScheduleDefinition]:
        return await self._get(ScheduleModel, schedule_id, ScheduleDefinition)

    async def list_schedules(
        self,
        enabled: Optional[bool] = None,
        workflow_id: Optional[str] = None,
    ) -> list[ScheduleDefinition]:
        stmt = select(ScheduleModel).order_by(ScheduleModel.created_at)
        if enabled is not None:
            stmt = stmt.where(ScheduleModel.enabled == enabled)
        if workflow_id is not None:
            stmt = stmt.where(ScheduleModel.workflow_id == workflow_id)
        return await self._list(stmt, ScheduleDefinition)

    async def delete_schedule(self, schedule_id: str) -> bool:
        async with self._sessions() as session:
            async with session.begin():
                result = await session.execute(delete(ScheduleModel).where(ScheduleModel.id == schedule_id))
                return result.rowcount > 0

    # ─── Scheduled executions ──────────────────────────────────

    async def save_scheduled_execution(self, record: ScheduledExecutionRecord) -> ScheduledExecutionRecord:
        await self._upsert(
            ScheduledExecutionModel,
            record.id,
            _dump(record),
            schedule_id=record.schedule_id,
            status=record.status.value,
            scheduled_time=_naive_utc(record.scheduled_time),
        )
        return record

    async def get_scheduled_execution(self, record_id: str) -> Optional[ScheduledExecutionRecord]:
        return await self._get(ScheduledExecutionModel, record_id, ScheduledExecutionRecord)

    async def list_scheduled_executions(
        self,
        schedule_id: Optional[str] = None,
        status: Optional[ScheduledExecutionStatus] = None,
        since: Optional[datetime] = None,
    ) -> list[ScheduledExecutionRecord]:
        stmt = select(ScheduledExecutionModel).order_by(ScheduledExecutionModel.scheduled_time)
        if schedule_id is not None:
            stmt = stmt.where(ScheduledExecutionModel.schedule_id == schedule_id)
        if status is not None:
            stmt = stmt.where(ScheduledExecutionModel.status == status.value)
        if since is not None:
            stmt = stmt.where(ScheduledExecutionModel.scheduled_time >= _naive_utc(since))
        return await self._list(stmt, ScheduledExecutionRecord)

    # ─── Webhooks ──────────────────────────────────────────────

    async def save_webhook(self, webhook: WebhookRegistration) -> WebhookRegistration:
        await self._upsert(
            WebhookModel,
            webhook.id,
            _dump(webhook),
            workflow_id=webhook.workflow_id,
            is_active=webhook.is_active,
        )
        return webhook

    async def get_webhook(self, webhook_id: str) -> Optional[WebhookRegistration]:
        return await self._get(WebhookModel, webhook_id, WebhookRegistration)

    async def list_webhooks(self, workflow_id: Optional[str] = None) -> list[WebhookRegistration]:
        stmt = select(WebhookModel).order_by(WebhookModel.created_at)
        if workflow_id is not None:
            stmt = stmt.where(WebhookModel.workflow_id == workflow_id)
        return await self._list(stmt, WebhookRegistration)
