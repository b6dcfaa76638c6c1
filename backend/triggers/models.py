"""Trigger input models."""

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field


def _now() -> datetime:
    return datetime.now(timezone.utc)


class WebhookRegistration(BaseModel):
    """An inbound webhook endpoint bound to one workflow."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    workflow_id: str
    secret: Optional[str] = None
    is_active: bool = True
    created_at: datetime = Field(default_factory=_now)
    rotated_at: Optional[datetime] = None


class InboundWebhook(BaseModel):
    webhook_id: str
    method: str = "POST"
    headers: dict[str, str] = Field(default_factory=dict)
    body: bytes = b""

    def header(self, name: str) -> Optional[str]:
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None


class InboundEmail(BaseModel):
    from_address: str = Field(alias="from")
    to: list[str] = Field(default_factory=list)
    subject: str = ""
    body: str = ""
    message_id: Optional[str] = None

    class Config:
        populate_by_name = True


class InboundForm(BaseModel):
    form_id: str
    fields: dict[str, Any] = Field(default_factory=dict)


class InboundEvent(BaseModel):
    name: str
    payload: dict[str, Any] = Field(default_factory=dict)
