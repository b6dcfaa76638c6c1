"""Execution record table."""

from sqlalchemy import Index, String
from sqlalchemy.orm import Mapped, mapped_column

from db.base import RecordModel


class ExecutionModel(RecordModel):
    """One workflow run.

    Attributes:
        id: Execution id
        workflow_id: Workflow that ran
        status: pending, running, completed, failed, paused or cancelled
        data: Full ExecutionRecord
    """

    __tablename__ = "executions"

    workflow_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)

    __table_args__ = (
        Index("ix_executions_workflow_status", "workflow_id", "status"),
    )
