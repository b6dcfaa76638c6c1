"""Delivery channels for workflow failure alerts.

A channel takes one Notification and reports a DeliveryResult; it never
raises for a delivery problem, so an unreachable alert endpoint cannot
change how a run ends.
"""

import json
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

import httpx
import structlog

from core.webhook_signing import sign_webhook_payload

logger = structlog.get_logger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class NotificationPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"


class NotificationChannel(str, Enum):
    LOG = "log"
    WEBHOOK = "webhook"


@dataclass
class Notification:
    """Something about a workflow run worth telling an operator."""
    event: str
    title: str
    message: str
    workflow_id: str
    execution_id: Optional[str] = None
    step_id: Optional[str] = None
    organization_id: Optional[str] = None
    priority: NotificationPriority = NotificationPriority.NORMAL
    details: dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=_now)

    def to_payload(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["priority"] = self.priority.value
        return payload


@dataclass
class DeliveryResult:
    channel: NotificationChannel
    success: bool
    target: str = ""
    detail: str = ""
    error: Optional[str] = None
    attempted_at: str = field(default_factory=_now)


class BaseChannel(ABC):
    channel_type: NotificationChannel

    @abstractmethod
    async def send(self, notification: Notification) -> DeliveryResult:
        ...


_LOG_METHODS = {
    NotificationPriority.LOW: "debug",
    NotificationPriority.NORMAL: "info",
    NotificationPriority.HIGH: "warning",
    NotificationPriority.CRITICAL: "error",
}


class LogChannel(BaseChannel):
    """Writes the alert to the structured log. Always configured."""

    channel_type = NotificationChannel.LOG

    async def send(self, notification: Notification) -> DeliveryResult:
        emit = getattr(logger, _LOG_METHODS[notification.priority])
        emit(
            notification.title,
            notification_event=notification.event,
            workflow_id=notification.workflow_id,
            execution_id=notification.execution_id,
            step_id=notification.step_id,
            detail=notification.message,
        )
        return DeliveryResult(channel=self.channel_type, success=True, target="log")


class WebhookChannel(BaseChannel):
    """POSTs the alert as JSON, signed when a secret is configured.

    The event name travels in `X-Workflow-Event` so a receiver can route
    without parsing the body.
    """

    channel_type = NotificationChannel.WEBHOOK

    def __init__(
        self,
        url: str,
        secret: Optional[str] = None,
        headers: Optional[dict[str, str]] = None,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.secret = secret
        self.headers = headers or {}
        self.timeout = timeout
        self._transport = transport

    async def send(self, notification: Notification) -> DeliveryResult:
        body = json.dumps(notification.to_payload(), default=str).encode()
        headers = {"Content-Type": "application/json", **self.headers, "X-Workflow-Event": notification.event}
        if self.secret:
            headers.update(sign_webhook_payload(body, self.secret))

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.url, content=body, headers=headers)
                response.raise_for_status()
        except httpx.HTTPError as e:
            return DeliveryResult(channel=self.channel_type, success=False, target=self.url, error=str(e))

        return DeliveryResult(
            channel=self.channel_type,
            success=True,
            target=self.url,
            detail=f"HTTP {response.status_code}",
        )
