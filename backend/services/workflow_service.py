"""Workflow service: validated CRUD over the repository."""

from datetime import datetime, timezone
from typing import Optional

import structlog

from core.constants import WorkflowStatus
from core.exceptions import WorkflowNotFound
from db.repository import Repository
from workflow.definition import WorkflowDefinition, parse_workflow

logger = structlog.get_logger(__name__)


class WorkflowService:
    """Service for workflow management.

    Definitions are validated as a whole graph on every save, so the engine
    never sees a malformed one.
    """

    def __init__(self, repository: Repository):
        self.repository = repository

    async def get(self, workflow_id: str) -> WorkflowDefinition:
        workflow = await self.repository.get_workflow(workflow_id)
        if workflow is None:
            raise WorkflowNotFound(workflow_id)
        return workflow

    async def list(self, status: Optional[WorkflowStatus] = None) -> list[WorkflowDefinition]:
        workflows = await self.repository.list_workflows(status=status)
        return sorted(workflows, key=lambda w: w.created_at, reverse=True)

    async def create_workflow(self, data: dict) -> WorkflowDefinition:
        workflow = parse_workflow(data)
        await self.repository.save_workflow(workflow)
        logger.info("Workflow created", workflow_id=workflow.id, steps=len(workflow.steps))
        return workflow

    async def update_definition(self, workflow_id: str, data: dict) -> WorkflowDefinition:
        """Replace the definition and bump the version.

        Runs already in flight keep the definition they started with.
        """
        current = await self.get(workflow_id)
        workflow = parse_workflow({
            **data,
            "id": current.id,
            "version": current.version + 1,
            "created_at": current.created_at.isoformat(),
        })
        workflow.updated_at = datetime.now(timezone.utc)
        await self.repository.save_workflow(workflow)
        logger.info("Workflow updated", workflow_id=workflow.id, version=workflow.version)
        return workflow

    async def set_status(self, workflow_id: str, status: WorkflowStatus) -> WorkflowDefinition:
        workflow = await self.get(workflow_id)
        workflow.status = status
        workflow.updated_at = datetime.now(timezone.utc)
        await self.repository.save_workflow(workflow)
        logger.info("Workflow status changed", workflow_id=workflow_id, status=status.value)
        return workflow

    async def publish(self, workflow_id: str) -> WorkflowDefinition:
        """Make a workflow runnable."""
        return await self.set_status(workflow_id, WorkflowStatus.ACTIVE)

    async def pause(self, workflow_id: str) -> WorkflowDefinition:
        return await self.set_status(workflow_id, WorkflowStatus.PAUSED)
