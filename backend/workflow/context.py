"""Execution context and step results.

The context is the only mutable state of a run. It is owned by the driver
loop of that run; parallel branches and loop iterations receive forked
copies and hand their outputs back through the join.
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from workflow.templating import MISSING, get_path, set_path


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ─── Step Status ──────────────────────────────────────────────

class StepStatus(str, Enum):
    """Status of a single workflow step execution."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class StepResult:
    """Result of executing a single step."""
    step_id: str
    status: StepStatus
    output: Any = None
    error: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    duration_ms: int = 0
    attempts: int = 0

    def to_dict(self) -> dict:
        return {
            "step_id": self.step_id,
            "status": self.status.value,
            "output": self.output,
            "error": self.error,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "duration_ms": self.duration_ms,
            "attempts": self.attempts,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "StepResult":
        return cls(
            step_id=data["step_id"],
            status=StepStatus(data["status"]),
            output=data.get("output"),
            error=data.get("error"),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            duration_ms=data.get("duration_ms", 0),
            attempts=data.get("attempts", 0),
        )


# ─── Execution Context ────────────────────────────────────────

@dataclass
class ExecutionContext:
    """Everything a run needs to make progress, and to resume after a pause.

    `pending` and `visited` are the driver's cursor: the FIFO of step ids
    still to run and the ids already run. `step_cursor` counts steps
    started and only ever grows.
    """

    execution_id: str
    workflow_id: str
    organization_id: Optional[str] = None
    user_id: Optional[str] = None
    trigger_payload: dict[str, Any] = field(default_factory=dict)
    variables: dict[str, Any] = field(default_factory=dict)
    step_cursor: int = 0
    started_at: str = field(default_factory=lambda: utcnow().isoformat())
    parent_execution_id: Optional[str] = None
    fork_id: Optional[str] = None
    pending: list[str] = field(default_factory=list)
    visited: list[str] = field(default_factory=list)
    steps: dict[str, StepResult] = field(default_factory=dict)

    def set_variable(self, key: str, value: Any) -> None:
        """Set a variable; dotted keys address nested dicts."""
        set_path(self.variables, key, value)

    def get_variable(self, key: str, default: Any = None) -> Any:
        """Get a variable by dotted key."""
        value = get_path(self.variables, key)
        return default if value is MISSING else value

    def record_step(self, result: StepResult) -> None:
        """Store a step result and expose its output under `steps.<id>`."""
        self.steps[result.step_id] = result
        self.variables.setdefault("steps", {})[result.step_id] = result.output

    def fork(self, fork_id: str, extra: Optional[dict[str, Any]] = None) -> "ExecutionContext":
        """Create a child context for a parallel branch or loop iteration.

        The child gets its own copy of the variable bag, so nothing it
        writes is visible to the parent or its siblings.
        """
        variables = copy.deepcopy(self.variables)
        if extra:
            variables.update(extra)
        return ExecutionContext(
            execution_id=self.execution_id,
            workflow_id=self.workflow_id,
            organization_id=self.organization_id,
            user_id=self.user_id,
            trigger_payload=self.trigger_payload,
            variables=variables,
            step_cursor=self.step_cursor,
            started_at=self.started_at,
            parent_execution_id=self.execution_id,
            fork_id=fork_id,
        )

    def to_dict(self) -> dict:
        """Serialize context for checkpoint persistence."""
        return {
            "execution_id": self.execution_id,
            "workflow_id": self.workflow_id,
            "organization_id": self.organization_id,
            "user_id": self.user_id,
            "trigger_payload": self.trigger_payload,
            "variables": self.variables,
            "step_cursor": self.step_cursor,
            "started_at": self.started_at,
            "parent_execution_id": self.parent_execution_id,
            "fork_id": self.fork_id,
            "pending": list(self.pending),
            "visited": list(self.visited),
            "steps": {sid: r.to_dict() for sid, r in self.steps.items()},
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ExecutionContext":
        """Restore context from checkpoint."""
        ctx = cls(
            execution_id=data["execution_id"],
            workflow_id=data["workflow_id"],
            organization_id=data.get("organization_id"),
            user_id=data.get("user_id"),
            trigger_payload=data.get("trigger_payload", {}),
            variables=data.get("variables", {}),
            step_cursor=data.get("step_cursor", 0),
            started_at=data.get("started_at") or utcnow().isoformat(),
            parent_execution_id=data.get("parent_execution_id"),
            fork_id=data.get("fork_id"),
            pending=list(data.get("pending", [])),
            visited=list(data.get("visited", [])),
        )
        for sid, sdata in data.get("steps", {}).items():
            ctx.steps[sid] = StepResult.from_dict(sdata)
        return ctx
