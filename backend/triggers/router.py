"""Trigger Router: turns inbound events into workflow runs.

- webhook: look up the registration, verify the HMAC signature when the
  webhook has a secret, start the bound workflow
- email:   start every active email-triggered workflow whose `from` and
  `subject` regexes match
- form:    start every active form-triggered workflow bound to the form id
  whose required fields are all present
- event:   forwarded to the scheduler (event and delay schedules)

Schedule triggers never come through here; the scheduler fires them.
"""

import json
import re
from datetime import datetime, timezone
from typing import Any, Optional, Union

import pydantic
import structlog

from core.constants import ExecutionStatus, TriggerKind, WorkflowStatus
from core.exceptions import (
    EngineException,
    InvalidSignature,
    ValidationError,
    WebhookNotFound,
    WorkflowNotFound,
)
from core.webhook_signing import (
    DEFAULT_TOLERANCE_SECONDS,
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    generate_webhook_secret,
    verify_webhook_signature,
)
from db.repository import Repository
from triggers.models import InboundEmail, InboundEvent, InboundForm, InboundWebhook, WebhookRegistration
from workflow.definition import WorkflowDefinition
from workflow.engine import WorkflowEngine

logger = structlog.get_logger(__name__)

_INBOUND_MODELS = {
    TriggerKind.WEBHOOK: InboundWebhook,
    TriggerKind.EMAIL: InboundEmail,
    TriggerKind.FORM: InboundForm,
    TriggerKind.EVENT: InboundEvent,
}


def _parse_inbound(kind: TriggerKind, payload: Union[dict, pydantic.BaseModel]):
    model = _INBOUND_MODELS[kind]
    if isinstance(payload, model):
        return payload
    try:
        return model.model_validate(payload)
    except pydantic.ValidationError as e:
        raise ValidationError(f"Invalid {kind.value} trigger payload: {e.errors()[0]['msg']}") from e


def decode_body(body: bytes) -> Any:
    """JSON body if it parses, else the raw text."""
    if not body:
        return {}
    try:
        return json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return body.decode("utf-8", errors="replace")


class TriggerRouter:
    """Routes trigger events to the execution engine."""

    def __init__(
        self,
        repository: Repository,
        engine: WorkflowEngine,
        scheduler=None,
        signature_tolerance: int = DEFAULT_TOLERANCE_SECONDS,
    ):
        self.repository = repository
        self.engine = engine
        self.scheduler = scheduler
        self.signature_tolerance = signature_tolerance

    async def route(self, kind: Union[TriggerKind, str], payload: Union[dict, pydantic.BaseModel]) -> list[str]:
        """Dispatch one inbound event.

        Returns the ids of the started executions (for `event`, the ids of
        the schedules that fired or were armed).
        """
        kind = TriggerKind(kind)
        if kind == TriggerKind.WEBHOOK:
            return [await self.handle_webhook(_parse_inbound(kind, payload))]
        if kind == TriggerKind.EMAIL:
            return await self.handle_email(_parse_inbound(kind, payload))
        if kind == TriggerKind.FORM:
            return await self.handle_form(_parse_inbound(kind, payload))
        if kind == TriggerKind.EVENT:
            return await self.handle_event(_parse_inbound(kind, payload))
        raise ValidationError(f"Trigger kind '{kind.value}' cannot be routed")

    # ─── Webhooks ──────────────────────────────────────────────

    async def register_webhook(self, workflow_id: str, with_secret: bool = True) -> WebhookRegistration:
        if await self.repository.get_workflow(workflow_id) is None:
            raise WorkflowNotFound(workflow_id)
        webhook = WebhookRegistration(
            workflow_id=workflow_id,
            secret=generate_webhook_secret() if with_secret else None,
        )
        await self.repository.save_webhook(webhook)
        logger.info("Webhook registered", webhook_id=webhook.id, workflow_id=workflow_id, signed=with_secret)
        return webhook

    async def get_webhook(self, webhook_id: str) -> WebhookRegistration:
        webhook = await self.repository.get_webhook(webhook_id)
        if webhook is None:
            raise WebhookNotFound(webhook_id)
        return webhook

    async def rotate_webhook_secret(self, webhook_id: str) -> WebhookRegistration:
        webhook = await self.get_webhook(webhook_id)
        webhook.secret = generate_webhook_secret()
        webhook.rotated_at = datetime.now(timezone.utc)
        await self.repository.save_webhook(webhook)
        logger.info("Webhook secret rotated", webhook_id=webhook_id)
        return webhook

    async def set_webhook_active(self, webhook_id: str, active: bool) -> WebhookRegistration:
        webhook = await self.get_webhook(webhook_id)
        webhook.is_active = active
        await self.repository.save_webhook(webhook)
        return webhook

    async def handle_webhook(self, inbound: InboundWebhook) -> str:
        webhook = await self.repository.get_webhook(inbound.webhook_id)
        if webhook is None or not webhook.is_active:
            raise WebhookNotFound(inbound.webhook_id)

        if webhook.secret:
            valid = verify_webhook_signature(
                inbound.body,
                webhook.secret,
                inbound.header(SIGNATURE_HEADER),
                inbound.header(TIMESTAMP_HEADER),
                tolerance=self.signature_tolerance,
            )
            if not valid:
                logger.warning("Webhook signature rejected", webhook_id=webhook.id)
                raise InvalidSignature()

        trigger = {
            "webhook_id": webhook.id,
            "method": inbound.method.upper(),
            "headers": {k.lower(): v for k, v in inbound.headers.items()},
            "body": decode_body(inbound.body),
        }
        execution_id = await self.engine.start(
            webhook.workflow_id, trigger_data=trigger, trigger_kind=TriggerKind.WEBHOOK
        )
        logger.info("Webhook accepted", webhook_id=webhook.id, execution_id=execution_id)
        return execution_id

    # ─── Email & forms ─────────────────────────────────────────

    async def _workflows_for(self, kind: TriggerKind) -> list[WorkflowDefinition]:
        workflows = await self.repository.list_workflows(status=WorkflowStatus.ACTIVE)
        return [w for w in workflows if w.trigger.kind == kind]

    @staticmethod
    def _regex_matches(pattern: Optional[str], value: str, workflow_id: str) -> bool:
        if not pattern:
            return True
        try:
            return re.search(pattern, value, re.IGNORECASE) is not None
        except re.error as e:
            logger.warning("Invalid trigger regex", workflow_id=workflow_id, pattern=pattern, error=str(e))
            return False

    def email_matches(self, workflow: WorkflowDefinition, email: InboundEmail) -> bool:
        config = workflow.trigger.config
        return (
            self._regex_matches(config.get("from"), email.from_address, workflow.id)
            and self._regex_matches(config.get("subject"), email.subject, workflow.id)
        )

    @staticmethod
    def form_matches(workflow: WorkflowDefinition, form: InboundForm) -> bool:
        config = workflow.trigger.config
        if config.get("form_id") != form.form_id:
            return False
        return all(form.fields.get(name) not in (None, "") for name in config.get("required_fields", []))

    async def _fan_out(self, workflows: list[WorkflowDefinition], trigger: dict, kind: TriggerKind) -> list[str]:
        started = []
        for workflow in workflows:
            try:
                started.append(await self.engine.start(workflow.id, trigger_data=trigger, trigger_kind=kind))
            except EngineException as e:
                logger.warning("Trigger could not start workflow", workflow_id=workflow.id, error=e.message)
        logger.info("Trigger routed", kind=kind.value, matched=len(workflows), started=len(started))
        return started

    async def handle_email(self, email: InboundEmail) -> list[str]:
        matches = [w for w in await self._workflows_for(TriggerKind.EMAIL) if self.email_matches(w, email)]
        trigger = {"email": email.model_dump(by_alias=True)}
        return await self._fan_out(matches, trigger, TriggerKind.EMAIL)

    async def handle_form(self, form: InboundForm) -> list[str]:
        matches = [w for w in await self._workflows_for(TriggerKind.FORM) if self.form_matches(w, form)]
        trigger = {"form_id": form.form_id, "fields": form.fields}
        return await self._fan_out(matches, trigger, TriggerKind.FORM)

    # ─── Events ────────────────────────────────────────────────

    async def handle_event(self, event: InboundEvent) -> list[str]:
        if self.scheduler is None:
            logger.warning("Event dropped, no scheduler attached", event=event.name)
            return []
        return await self.scheduler.emit_event(event.name, event.payload)

    # ─── Retries ───────────────────────────────────────────────

    async def retry_failed_execution(self, execution_id: str) -> str:
        """Start a fresh run of a failed execution with its original payload."""
        new_id = await self.engine.retry_execution(execution_id)
        logger.info("Failed execution retried", execution_id=execution_id, new_execution_id=new_id)
        return new_id

    async def list_failed_executions(self, workflow_id: Optional[str] = None) -> list:
        return await self.repository.list_executions(status=ExecutionStatus.FAILED, workflow_id=workflow_id)
