"""Persistence contract used by the engine, scheduler and trigger router.

The core only needs create/read/update by identity plus a few queries by
status or by workflow. `save_*` methods upsert. Implementations must hand
out copies, so callers never share mutable records with the store.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from core.constants import ExecutionStatus, ScheduledExecutionStatus, WorkflowStatus
from scheduling.models import ScheduleDefinition, ScheduledExecutionRecord
from triggers.models import WebhookRegistration
from workflow.definition import WorkflowDefinition
from workflow.records import CheckpointRecord, ExecutionRecord


class Repository(ABC):
    async def ping(self) -> bool:
        """Cheap reachability check for health probes."""
        return True

    # ─── Workflows ─────────────────────────────────────────────

    @abstractmethod
    async def save_workflow(self, workflow: WorkflowDefinition) -> WorkflowDefinition: ...

    @abstractmethod
    async def get_workflow(self, workflow_id: str) -> Optional[WorkflowDefinition]: ...

    @abstractmethod
    async def list_workflows(self, status: Optional[WorkflowStatus] = None) -> list[WorkflowDefinition]: ...

    # ─── Executions ────────────────────────────────────────────

    @abstractmethod
    async def save_execution(self, record: ExecutionRecord) -> ExecutionRecord: ...

    @abstractmethod
    async def get_execution(self, execution_id: str) -> Optional[ExecutionRecord]: ...

    @abstractmethod
    async def list_executions(
        self,
        status: Optional[ExecutionStatus] = None,
        workflow_id: Optional[str] = None,
    ) -> list[ExecutionRecord]: ...

    # ─── Checkpoints ───────────────────────────────────────────

    @abstractmethod
    async def save_checkpoint(self, checkpoint: CheckpointRecord) -> None:
        """Replace the execution's checkpoint in one atomic write."""

    @abstractmethod
    async def get_checkpoint(self, execution_id: str) -> Optional[CheckpointRecord]: ...

    @abstractmethod
    async def delete_checkpoint(self, execution_id: str) -> None: ...

    # ─── Schedules ─────────────────────────────────────────────

    @abstractmethod
    async def save_schedule(self, schedule: ScheduleDefinition) -> ScheduleDefinition: ...

    @abstractmethod
    async def get_schedule(self, schedule_id: str) -> Optional[ScheduleDefinition]: ...

    @abstractmethod
    async def list_schedules(
        self,
        enabled: Optional[bool] = None,
        workflow_id: Optional[str] = None,
    ) -> list[ScheduleDefinition]: ...

    @abstractmethod
    async def delete_schedule(self, schedule_id: str) -> bool: ...

    # ─── Scheduled executions ──────────────────────────────────

    @abstractmethod
    async def save_scheduled_execution(self, record: ScheduledExecutionRecord) -> ScheduledExecutionRecord: ...

    @abstractmethod
    async def get_scheduled_execution(self, record_id: str) -> Optional[ScheduledExecutionRecord]: ...

    @abstractmethod
    async def list_scheduled_executions(
        self,
        schedule_id: Optional[str] = None,
        status: Optional[ScheduledExecutionStatus] = None,
        since: Optional[datetime] = None,
    ) -> list[ScheduledExecutionRecord]: ...

    # ─── Webhooks ──────────────────────────────────────────────

    @abstractmethod
    async def save_webhook(self, webhook: WebhookRegistration) -> WebhookRegistration: ...

    @abstractmethod
    async def get_webhook(self, webhook_id: str) -> Optional[WebhookRegistration]: ...

    @abstractmethod
    async def list_webhooks(self, workflow_id: Optional[str] = None) -> list[WebhookRegistration]: ...
