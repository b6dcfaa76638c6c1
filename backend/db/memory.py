"""In-memory implementation of the repository.

Useful for tests or when no database is configured. Data is not persisted
across process restarts. Records are deep-copied on the way in and out.
"""

from datetime import datetime
from typing import Dict, Optional, TypeVar

from pydantic import BaseModel

from core.constants import ExecutionStatus, ScheduledExecutionStatus, WorkflowStatus
from db.repository import Repository
from scheduling.models import ScheduleDefinition, ScheduledExecutionRecord
from triggers.models import WebhookRegistration
from workflow.definition import WorkflowDefinition
from workflow.records import CheckpointRecord, ExecutionRecord

M = TypeVar("M", bound=BaseModel)


def _copy(model: Optional[M]) -> Optional[M]:
    return model.model_copy(deep=True) if model is not None else None


class InMemoryRepository(Repository):
    def __init__(self) -> None:
        self._workflows: Dict[str, WorkflowDefinition] = {}
        self._executions: Dict[str, ExecutionRecord] = {}
        self._checkpoints: Dict[str, CheckpointRecord] = {}
        self._schedules: Dict[str, ScheduleDefinition] = {}
        self._scheduled: Dict[str, ScheduledExecutionRecord] = {}
        self._webhooks: Dict[str, WebhookRegistration] = {}

    # ─── Workflows ─────────────────────────────────────────────

    async def save_workflow(self, workflow: WorkflowDefinition) -> WorkflowDefinition:
        self._workflows[workflow.id] = _copy(workflow)
        return workflow

    async def get_workflow(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        return _copy(self._workflows.get(workflow_id))

    async def list_workflows(self, status: Optional[WorkflowStatus] = None) -> list[WorkflowDefinition]:
        return [_copy(w) for w in self._workflows.values() if status is None or w.status == status]

    # ─── Executions ────────────────────────────────────────────

    async def save_execution(self, record: ExecutionRecord) -> ExecutionRecord:
        self._executions[record.id] = _copy(record)
        return record

    async def get_execution(self, execution_id: str) -> Optional[ExecutionRecord]:
        return _copy(self._executions.get(execution_id))

    async def list_executions(
        self,
        status: Optional[ExecutionStatus] = None,
        workflow_id: Optional[str] = None,
    ) -> list[ExecutionRecord]:
        return [
            _copy(r) for r in self._executions.values()
            if (status is None or r.status == status)
            and (workflow_id is None or r.workflow_id == workflow_id)
        ]

    # ─── Checkpoints ───────────────────────────────────────────

    async def save_checkpoint(self, checkpoint: CheckpointRecord) -> None:
        self._checkpoints[checkpoint.execution_id] = _copy(checkpoint)

    async def get_checkpoint(self, execution_id: str) -> Optional[CheckpointRecord]:
        return _copy(self._checkpoints.get(execution_id))

    async def delete_checkpoint(self, execution_id: str) -> None:
        self._checkpoints.pop(execution_id, None)

    # ─── Schedules ─────────────────────────────────────────────

    async def save_schedule(self, schedule: ScheduleDefinition) -> ScheduleDefinition:
        self._schedules[schedule.id] = _copy(schedule)
        return schedule

    async def get_schedule(self, schedule_id: str) -> Optional[ScheduleDefinition]:
        return _copy(self._schedules.get(schedule_id))

    async def list_schedules(
        self,
        enabled: Optional[bool] = None,
        workflow_id: Optional[str] = None,
    ) -> list[ScheduleDefinition]:
        return [
            _copy(s) for s in self._schedules.values()
            if (enabled is None or s.enabled == enabled)
            and (workflow_id is None or s.workflow_id == workflow_id)
        ]

    async def delete_schedule(self, schedule_id: str) -> bool:
        return self._schedules.pop(schedule_id, None) is not None

    # ─── Scheduled executions ──────────────────────────────────

    async def save_scheduled_execution(self, record: ScheduledExecutionRecord) -> ScheduledExecutionRecord:
        self._scheduled[record.id] = _copy(record)
        return record

    async def get_scheduled_execution(self, record_id: str) -> Optional[ScheduledExecutionRecord]:
        return _copy(self._scheduled.get(record_id))

    async def list_scheduled_executions(
        self,
        schedule_id: Optional[str] = None,
        status: Optional[ScheduledExecutionStatus] = None,
        since: Optional[datetime] = None,
    ) -> list[ScheduledExecutionRecord]:
        records = [
            _copy(r) for r in self._scheduled.values()
            if (schedule_id is None or r.schedule_id == schedule_id)
            and (status is None or r.status == status)
            and (since is None or r.scheduled_time >= since)
        ]
        return sorted(records, key=lambda r: r.scheduled_time)

    # ─── Webhooks ──────────────────────────────────────────────

    async def save_webhook(self, webhook: WebhookRegistration) -> WebhookRegistration:
        self._webhooks[webhook.id] = _copy(webhook)
        return webhook

    async def get_webhook(self, webhook_id: str) -> Optional[WebhookRegistration]:
        return _copy(self._webhooks.get(webhook_id))

    async def list_webhooks(self, workflow_id: Optional[str] = None) -> list[WebhookRegistration]:
        return [_copy(w) for w in self._webhooks.values() if workflow_id is None or w.workflow_id == workflow_id]
