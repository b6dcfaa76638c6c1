"""
Execution Recovery Service.

Detects and resumes executions interrupted by a crash, restart or
unexpected shutdown.

Recovery flow:
1. On startup, scan the store for executions still `pending` or `running`
   that no driver in this process owns
2. Load their latest checkpoint
3. Re-queue them from the checkpoint's pending steps (the step that was
   running when the process stopped is replayed)
4. Executions without a checkpoint cannot be resumed and are marked failed

Paused executions are left alone; they resume only on request.
"""

from datetime import datetime, timezone
from typing import List, Optional

import structlog

from core.constants import ExecutionStatus
from workflow.checkpoint import CheckpointManager
from workflow.engine import WorkflowEngine

logger = structlog.get_logger(__name__)


class RecoveryResult:
    """Result of a recovery attempt for a single execution."""

    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        self.recovered: bool = False
        self.resume_from_step: Optional[str] = None
        self.completed_steps_count: int = 0
        self.error: Optional[str] = None
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> dict:
        return {
            "execution_id": self.execution_id,
            "recovered": self.recovered,
            "resume_from_step": self.resume_from_step,
            "completed_steps_count": self.completed_steps_count,
            "error": self.error,
            "timestamp": self.timestamp.isoformat(),
        }


class RecoveryService:
    """
    Handles recovery of interrupted executions on startup.

    Uses the CheckpointManager to inspect saved state and the engine to
    resume the runs.
    """

    def __init__(self, engine: WorkflowEngine, checkpoint_manager: Optional[CheckpointManager] = None):
        self.engine = engine
        self.checkpoint_manager = checkpoint_manager or engine.checkpoints
        self._recovery_log: List[RecoveryResult] = []

    async def scan_interrupted_executions(self) -> List[str]:
        """Ids of executions left pending/running by a previous process."""
        live = set(self.engine.get_running_executions())
        found = []
        for status in (ExecutionStatus.RUNNING, ExecutionStatus.PENDING):
            for record in await self.engine.repository.list_executions(status=status):
                if record.id not in live:
                    found.append(record.id)
        if found:
            logger.info("Found interrupted executions", count=len(found), execution_ids=found[:10])
        return found

    async def recover_execution(self, execution_id: str, background: bool = True) -> RecoveryResult:
        """Resume one interrupted execution from its checkpoint."""
        result = RecoveryResult(execution_id)

        checkpoint = await self.checkpoint_manager.get_checkpoint(execution_id)
        if checkpoint is None:
            result.error = "No checkpoint found"
            await self.engine.abandon(execution_id, "Execution interrupted before its first checkpoint")
            logger.warning("Interrupted execution not recoverable", execution_id=execution_id)
            self._recovery_log.append(result)
            return result

        pending = checkpoint.context.get("pending", [])
        result.resume_from_step = pending[0] if pending else None
        result.completed_steps_count = len(checkpoint.context.get("visited", []))
        result.recovered = await self.engine.recover(execution_id, background=background)
        if result.recovered:
            logger.info(
                "Execution recovered",
                execution_id=execution_id,
                resume_from_step=result.resume_from_step,
                completed_steps=result.completed_steps_count,
            )
        self._recovery_log.append(result)
        return result

    async def recover_all(self, background: bool = True) -> List[RecoveryResult]:
        """Scan and recover every interrupted execution."""
        results = []
        for execution_id in await self.scan_interrupted_executions():
            results.append(await self.recover_execution(execution_id, background=background))
        recovered = sum(1 for r in results if r.recovered)
        if results:
            logger.info("Recovery complete", recovered=recovered, failed=len(results) - recovered)
        return results

    def get_recovery_log(self) -> List[dict]:
        return [r.to_dict() for r in self._recovery_log]
