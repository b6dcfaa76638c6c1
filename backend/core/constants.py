"""Constants and enums for the workflow automation engine."""

from enum import Enum


class ExecutionStatus(str, Enum):
    """Workflow execution status."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED)


class WorkflowStatus(str, Enum):
    """Workflow lifecycle status."""

    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"


class StepKind(str, Enum):
    ACTION = "action"
    CONDITION = "condition"
    PARALLEL = "parallel"
    LOOP = "loop"


class ErrorPolicy(str, Enum):
    """What the engine does when a step fails."""

    STOP = "stop"
    CONTINUE = "continue"
    NOTIFY = "notify"


class TriggerKind(str, Enum):
    """Kinds of inbound events the trigger router accepts."""

    MANUAL = "manual"
    WEBHOOK = "webhook"
    SCHEDULE = "schedule"
    EMAIL = "email"
    FORM = "form"
    EVENT = "event"


class ScheduleKind(str, Enum):
    CRON = "cron"
    INTERVAL = "interval"
    DELAY = "delay"
    ONCE = "once"
    EVENT = "event"


class ScheduledExecutionStatus(str, Enum):
    """Lifecycle of a single scheduled fire."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"
