"""Schedule definitions and scheduled-execution records.

Each schedule kind carries its own parameter model; `params.kind` selects
the variant:

    {"kind": "cron", "expression": "*/5 * * * *", "timezone": "America/New_York"}
    {"kind": "interval", "interval_ms": 60000, "start_at": ..., "end_at": ..., "max_runs": 10}
    {"kind": "delay", "delay_ms": 300000, "trigger_event": "order.created"}
    {"kind": "once", "execute_at": "2026-01-01T09:00:00Z"}
    {"kind": "event", "event_name": "invoice.paid", "filter": {"currency": "EUR"}, "debounce_ms": 5000}
"""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field

from core.constants import ScheduledExecutionStatus, ScheduleKind


def _now() -> datetime:
    return datetime.now(timezone.utc)


class CronParams(BaseModel):
    kind: Literal["cron"] = "cron"
    expression: str = Field(min_length=1)
    timezone: str = "UTC"


class IntervalParams(BaseModel):
    kind: Literal["interval"] = "interval"
    interval_ms: int = Field(ge=1)
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    max_runs: Optional[int] = Field(default=None, ge=1)


class DelayParams(BaseModel):
    kind: Literal["delay"] = "delay"
    delay_ms: int = Field(ge=0)
    trigger_event: str = Field(min_length=1)


class OnceParams(BaseModel):
    kind: Literal["once"] = "once"
    execute_at: datetime
    executed: bool = False


class EventParams(BaseModel):
    kind: Literal["event"] = "event"
    event_name: str = Field(min_length=1)
    filter: dict[str, Any] = Field(default_factory=dict, description="Payload keys that must match")
    debounce_ms: int = Field(default=0, ge=0)


ScheduleParams = Annotated[
    Union[CronParams, IntervalParams, DelayParams, OnceParams, EventParams],
    Field(discriminator="kind"),
]


class ScheduleCondition(BaseModel):
    """Pre-execution check; a failing blocking condition skips the fire."""

    name: str = ""
    condition: Union[bool, str, dict[str, Any]]
    block_execution: bool = True


class ScheduleRetryPolicy(BaseModel):
    """Follow-on attempts for a failed fire."""

    max_retries: int = Field(default=0, ge=0)
    base_delay_ms: int = Field(default=60000, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1)

    def delay_for(self, retry_number: int) -> timedelta:
        """Delay before retry `retry_number` (1-based)."""
        ms = self.base_delay_ms * (self.backoff_multiplier ** max(0, retry_number - 1))
        return timedelta(milliseconds=ms)


class ScheduleDefinition(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    workflow_id: str
    name: str = ""
    organization_id: Optional[str] = None
    user_id: Optional[str] = None
    params: ScheduleParams
    enabled: bool = True
    max_executions: Optional[int] = Field(default=None, ge=1)
    execution_count: int = 0
    last_execution_at: Optional[datetime] = None
    next_execution_at: Optional[datetime] = None
    last_event_at: Optional[datetime] = None
    conditions: list[ScheduleCondition] = Field(default_factory=list)
    retry_policy: Optional[ScheduleRetryPolicy] = None
    trigger_data: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    @property
    def kind(self) -> ScheduleKind:
        return ScheduleKind(self.params.kind)


class ScheduledExecutionRecord(BaseModel):
    """One fire attempt of a schedule (retries get their own records)."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    schedule_id: str
    workflow_id: str
    scheduled_time: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    status: ScheduledExecutionStatus = ScheduledExecutionStatus.PENDING
    retry_count: int = 0
    next_retry_at: Optional[datetime] = None
    retry_of: Optional[str] = None
    execution_id: Optional[str] = None
    error_message: Optional[str] = None
    duration_ms: Optional[int] = None
    created_at: datetime = Field(default_factory=_now)
