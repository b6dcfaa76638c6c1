"""Schedule and scheduled-execution tables."""

from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from db.base import RecordModel


class ScheduleModel(RecordModel):
    """Schedule definition.

    Attributes:
        id: Schedule id
        workflow_id: Workflow started by this schedule
        kind: cron, interval, delay, once or event
        enabled: Whether the schedule is armed
        next_execution_at: Next computed fire time (UTC, naive)
        data: Full ScheduleDefinition
    """

    __tablename__ = "schedules"

    workflow_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    next_execution_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True, index=True)


class ScheduledExecutionModel(RecordModel):
    """One fire attempt of a schedule."""

    __tablename__ = "scheduled_executions"

    schedule_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    scheduled_time: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)

    __table_args__ = (
        Index("ix_scheduled_exec_schedule_time", "schedule_id", "scheduled_time"),
    )
