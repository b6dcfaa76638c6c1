"""Trigger API routes: webhook registration, webhook receiver, email,
form and named-event intake."""

from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, Request, status as http_status
from pydantic import BaseModel, Field

from app.dependencies import get_trigger_router
from core.constants import TriggerKind
from triggers.models import InboundEmail, InboundForm, InboundWebhook, WebhookRegistration
from triggers.router import TriggerRouter

router = APIRouter()
webhooks_router = APIRouter()
hooks_router = APIRouter()


# -- Schemas --

class WebhookCreate(BaseModel):
    signed: bool = Field(default=True, description="Generate a signing secret")


def _webhook_to_response(webhook: WebhookRegistration, include_secret: bool = False) -> dict:
    data = webhook.model_dump(mode="json", exclude={"secret"})
    data["signed"] = webhook.secret is not None
    data["url"] = f"/api/v1/hooks/{webhook.id}"
    if include_secret:
        data["secret"] = webhook.secret
    return data


# -- Webhook registrations --

@webhooks_router.post("/{workflow_id}", status_code=http_status.HTTP_201_CREATED)
async def register_webhook(
    workflow_id: str,
    body: Optional[WebhookCreate] = None,
    trigger_router: TriggerRouter = Depends(get_trigger_router),
) -> dict:
    """Register an inbound webhook for a workflow. The secret is only shown here."""
    webhook = await trigger_router.register_webhook(workflow_id, with_secret=body.signed if body else True)
    return _webhook_to_response(webhook, include_secret=True)


@webhooks_router.get("/{webhook_id}")
async def get_webhook(webhook_id: str, trigger_router: TriggerRouter = Depends(get_trigger_router)) -> dict:
    return _webhook_to_response(await trigger_router.get_webhook(webhook_id))


@webhooks_router.post("/{webhook_id}/rotate")
async def rotate_webhook_secret(
    webhook_id: str,
    trigger_router: TriggerRouter = Depends(get_trigger_router),
) -> dict:
    webhook = await trigger_router.rotate_webhook_secret(webhook_id)
    return _webhook_to_response(webhook, include_secret=True)


@webhooks_router.post("/{webhook_id}/enable")
async def enable_webhook(webhook_id: str, trigger_router: TriggerRouter = Depends(get_trigger_router)) -> dict:
    return _webhook_to_response(await trigger_router.set_webhook_active(webhook_id, True))


@webhooks_router.post("/{webhook_id}/disable")
async def disable_webhook(webhook_id: str, trigger_router: TriggerRouter = Depends(get_trigger_router)) -> dict:
    return _webhook_to_response(await trigger_router.set_webhook_active(webhook_id, False))


# -- Webhook receiver --

@hooks_router.post("/{webhook_id}", status_code=http_status.HTTP_202_ACCEPTED)
async def receive_webhook(
    webhook_id: str,
    request: Request,
    trigger_router: TriggerRouter = Depends(get_trigger_router),
) -> dict:
    """Inbound call; the signature is checked against the raw body."""
    inbound = InboundWebhook(
        webhook_id=webhook_id,
        method=request.method,
        headers=dict(request.headers),
        body=await request.body(),
    )
    execution_ids = await trigger_router.route(TriggerKind.WEBHOOK, inbound)
    return {"execution_id": execution_ids[0]}


# -- Email / form / events --

@router.post("/email", status_code=http_status.HTTP_202_ACCEPTED)
async def receive_email(
    email: InboundEmail,
    trigger_router: TriggerRouter = Depends(get_trigger_router),
) -> dict:
    execution_ids = await trigger_router.route(TriggerKind.EMAIL, email)
    return {"execution_ids": execution_ids, "count": len(execution_ids)}


@router.post("/form", status_code=http_status.HTTP_202_ACCEPTED)
async def receive_form(
    form: InboundForm,
    trigger_router: TriggerRouter = Depends(get_trigger_router),
) -> dict:
    execution_ids = await trigger_router.route(TriggerKind.FORM, form)
    return {"execution_ids": execution_ids, "count": len(execution_ids)}


@router.post("/events/{name}", status_code=http_status.HTTP_202_ACCEPTED)
async def emit_event(
    name: str,
    payload: Optional[dict[str, Any]] = Body(default=None),
    trigger_router: TriggerRouter = Depends(get_trigger_router),
) -> dict:
    """Feed a named event to event and delay schedules."""
    schedule_ids = await trigger_router.route(TriggerKind.EVENT, {"name": name, "payload": payload or {}})
    return {"event": name, "schedule_ids": schedule_ids, "count": len(schedule_ids)}
