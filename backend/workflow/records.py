"""Persisted execution records."""

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field

from core.constants import ExecutionStatus, TriggerKind


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ExecutionRecord(BaseModel):
    """One run of a workflow. Terminal once completed, failed or cancelled."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    workflow_id: str
    organization_id: Optional[str] = None
    user_id: Optional[str] = None
    status: ExecutionStatus = ExecutionStatus.PENDING
    trigger_kind: TriggerKind = TriggerKind.MANUAL
    trigger_payload: dict[str, Any] = Field(default_factory=dict)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    error_message: Optional[str] = None
    failed_step_id: Optional[str] = None
    step_results: dict[str, dict[str, Any]] = Field(default_factory=dict)
    retry_of: Optional[str] = None
    retry_count: int = 0
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


class CheckpointRecord(BaseModel):
    """Latest resumable snapshot of a run (one per execution)."""

    execution_id: str
    workflow_id: str
    step_id: Optional[str] = None
    sequence: int = 0
    reason: str = "step_starting"
    context: dict[str, Any] = Field(default_factory=dict)
    definition: Optional[dict[str, Any]] = Field(default=None, description="Workflow snapshot taken at run start")
    created_at: datetime = Field(default_factory=_now)
