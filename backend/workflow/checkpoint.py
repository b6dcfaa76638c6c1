"""
Execution state store: checkpoints for pause, resume and crash recovery.

Architecture:
- Before each step: save a "step_starting" checkpoint holding the full
  context (variables, pending queue, visited steps, cursor)
- On pause: save an "execution_paused" checkpoint at the step boundary
- On resume or crash recovery: load the latest checkpoint and continue
  the driver loop from its pending queue
- On a terminal status the checkpoint is deleted

Only the latest snapshot per execution is kept, and each save replaces it
in a single repository write.
"""

from enum import Enum
from typing import Optional

import structlog

from db.repository import Repository
from workflow.context import ExecutionContext, utcnow
from workflow.records import CheckpointRecord

logger = structlog.get_logger(__name__)


class CheckpointType(str, Enum):
    """Why a checkpoint was written."""
    EXECUTION_STARTED = "execution_started"
    STEP_STARTING = "step_starting"
    EXECUTION_PAUSED = "execution_paused"


class CheckpointManager:
    """Reads and writes resumable execution snapshots."""

    def __init__(self, repository: Repository):
        self.repository = repository

    async def save_checkpoint(
        self,
        context: ExecutionContext,
        checkpoint_type: CheckpointType,
        step_id: Optional[str] = None,
        definition: Optional[dict] = None,
    ) -> CheckpointRecord:
        record = CheckpointRecord(
            execution_id=context.execution_id,
            workflow_id=context.workflow_id,
            step_id=step_id,
            sequence=context.step_cursor,
            reason=checkpoint_type.value,
            context=context.to_dict(),
            definition=definition,
            created_at=utcnow(),
        )
        await self.repository.save_checkpoint(record)
        logger.debug(
            "Checkpoint saved",
            execution_id=context.execution_id,
            checkpoint_type=checkpoint_type.value,
            step_id=step_id,
            sequence=context.step_cursor,
        )
        return record

    async def load_context(self, execution_id: str) -> Optional[ExecutionContext]:
        """Restore the context of the latest checkpoint, if any."""
        record = await self.repository.get_checkpoint(execution_id)
        if record is None:
            return None
        return ExecutionContext.from_dict(record.context)

    async def get_checkpoint(self, execution_id: str) -> Optional[CheckpointRecord]:
        return await self.repository.get_checkpoint(execution_id)

    async def cleanup(self, execution_id: str) -> None:
        """Drop the checkpoint of a finished execution."""
        await self.repository.delete_checkpoint(execution_id)
