"""Workflow definition schema.

A workflow is a graph of steps. Each step kind has its own model carrying
only the fields it needs; the `kind` field selects the variant. The whole
graph is validated when a workflow is saved, so the engine never meets a
dangling successor or an empty loop body at run time.

Example:
{
    "name": "Sync orders",
    "status": "active",
    "entry_step": "fetch",
    "steps": [
        {"id": "fetch", "kind": "action", "action": "http_request",
         "config": {"url": "https://api.example.com/orders"}, "next": ["check"]},
        {"id": "check", "kind": "condition",
         "condition": {"field": "steps.fetch.status_code", "operator": "equals", "value": 200},
         "then": ["each"], "else": ["alert"]},
        {"id": "each", "kind": "loop", "items": "{{steps.fetch.data}}", "body": ["store"]},
        ...
    ]
}
"""

import uuid
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Optional, Union

import pydantic
from pydantic import BaseModel, Field, model_validator

from core.constants import ErrorPolicy, TriggerKind, WorkflowStatus
from core.exceptions import ValidationError


def _now() -> datetime:
    return datetime.now(timezone.utc)


class RetryConfig(BaseModel):
    """Per-step retry overrides. Unset fields fall back to the engine default."""

    max_retries: Optional[int] = Field(default=None, ge=1, description="Total attempts")
    initial_delay: Optional[float] = Field(default=None, ge=0, description="Seconds")
    max_delay: Optional[float] = Field(default=None, ge=0, description="Seconds")
    exponential_base: Optional[float] = Field(default=None, ge=1)
    backoff_multiplier: Optional[float] = Field(default=None, ge=1)
    jitter: Optional[bool] = None
    preset: Optional[str] = Field(default=None, description="network, rate_limit, server_error, none")


class StepBase(BaseModel):
    id: str = Field(min_length=1)
    name: str = ""
    next: list[str] = Field(default_factory=list, description="Successor step ids")
    on_error: ErrorPolicy = ErrorPolicy.STOP
    retry: Optional[RetryConfig] = None
    timeout_seconds: Optional[float] = Field(default=None, gt=0)

    def successors(self) -> list[str]:
        return list(self.next)


class ActionStep(StepBase):
    kind: Literal["action"] = "action"
    action: str = Field(min_length=1, description="Registered action type")
    config: dict[str, Any] = Field(default_factory=dict)
    service: Optional[str] = Field(default=None, description="Circuit breaker identity")


class ConditionStep(StepBase):
    kind: Literal["condition"] = "condition"
    condition: Union[bool, str, dict[str, Any]]
    then: list[str] = Field(default_factory=list)
    else_: list[str] = Field(default_factory=list, alias="else")

    class Config:
        populate_by_name = True

    def successors(self) -> list[str]:
        return [*self.then, *self.else_, *self.next]


class ParallelStep(StepBase):
    kind: Literal["parallel"] = "parallel"
    branches: list[str] = Field(min_length=1, description="Sub-step ids run concurrently")


class LoopStep(StepBase):
    kind: Literal["loop"] = "loop"
    items: Union[str, list[Any]] = Field(description="Collection or {{placeholder}} resolving to one")
    body: list[str] = Field(min_length=1, description="Step ids run for each item, in order")
    max_iterations: Optional[int] = Field(default=None, ge=1)
    continue_on_error: bool = False


Step = Annotated[
    Union[ActionStep, ConditionStep, ParallelStep, LoopStep],
    Field(discriminator="kind"),
]


class TriggerConfig(BaseModel):
    """How inbound events select this workflow.

    email: {"from": regex, "subject": regex}
    form:  {"form_id": str, "required_fields": [str]}
    """

    kind: TriggerKind = TriggerKind.MANUAL
    config: dict[str, Any] = Field(default_factory=dict)


class WorkflowDefinition(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str = Field(min_length=1)
    description: str = ""
    organization_id: Optional[str] = None
    status: WorkflowStatus = WorkflowStatus.DRAFT
    version: int = 1
    entry_step: Optional[str] = None
    steps: list[Step] = Field(min_length=1)
    variables: dict[str, Any] = Field(default_factory=dict)
    trigger: TriggerConfig = Field(default_factory=TriggerConfig)
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    @model_validator(mode="after")
    def _check_graph(self) -> "WorkflowDefinition":
        ids = [step.id for step in self.steps]
        duplicates = sorted({sid for sid in ids if ids.count(sid) > 1})
        if duplicates:
            raise ValueError(f"Duplicate step ids: {duplicates}")

        known = set(ids)
        if self.entry_step is None:
            self.entry_step = ids[0]
        elif self.entry_step not in known:
            raise ValueError(f"Entry step '{self.entry_step}' does not exist")

        for step in self.steps:
            refs = step.successors()
            if isinstance(step, ParallelStep):
                refs += step.branches
            elif isinstance(step, LoopStep):
                refs += step.body
            missing = [ref for ref in refs if ref not in known]
            if missing:
                raise ValueError(f"Step '{step.id}' references unknown steps: {missing}")
            if isinstance(step, (ParallelStep, LoopStep)):
                inner = step.branches if isinstance(step, ParallelStep) else step.body
                if step.id in inner:
                    raise ValueError(f"Step '{step.id}' cannot contain itself")
        return self

    @property
    def step_map(self) -> dict[str, Any]:
        return {step.id: step for step in self.steps}

    def get_step(self, step_id: str):
        return self.step_map.get(step_id)

    def dump(self) -> dict:
        """JSON-safe dict using wire names (`else`)."""
        return self.model_dump(mode="json", by_alias=True)


def parse_workflow(data: dict) -> WorkflowDefinition:
    """Validate a raw definition, raising the engine's ValidationError."""
    try:
        return WorkflowDefinition.model_validate(data)
    except pydantic.ValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'workflow'}: {err['msg']}"
            for err in e.errors()
        )
        raise ValidationError(f"Invalid workflow definition: {details}") from e
