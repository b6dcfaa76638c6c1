"""Fans workflow alerts out to every configured channel.

The engine calls notify_step_failed() when a step with the `notify` error
policy fails, just before the run is aborted.
"""

from typing import Optional

import structlog

from notifications.channels import (
    BaseChannel,
    DeliveryResult,
    LogChannel,
    Notification,
    NotificationChannel,
    NotificationPriority,
    WebhookChannel,
)

logger = structlog.get_logger(__name__)


class NotificationManager:
    def __init__(self, channels: Optional[list[BaseChannel]] = None):
        self._channels: dict[NotificationChannel, BaseChannel] = {}
        for channel in channels or [LogChannel()]:
            self._channels[channel.channel_type] = channel
        self.sent = 0
        self.failed = 0

    @classmethod
    def from_settings(cls, settings) -> "NotificationManager":
        """Log channel always; a webhook channel when NOTIFY_WEBHOOK_URL is set."""
        channels: list[BaseChannel] = [LogChannel()]
        if settings.NOTIFY_WEBHOOK_URL:
            channels.append(WebhookChannel(
                settings.NOTIFY_WEBHOOK_URL,
                secret=settings.NOTIFY_WEBHOOK_SECRET or None,
                timeout=settings.HTTP_TIMEOUT_SECONDS,
            ))
        return cls(channels)

    @property
    def channels(self) -> list[NotificationChannel]:
        return list(self._channels)

    async def send(
        self,
        notification: Notification,
        only: Optional[list[NotificationChannel]] = None,
    ) -> list[DeliveryResult]:
        """Deliver to every channel (or just `only`), one result per channel."""
        results = []
        for channel_type in only or self.channels:
            channel = self._channels.get(channel_type)
            if channel is None:
                result = DeliveryResult(
                    channel=channel_type, success=False, error=f"Channel not configured: {channel_type.value}"
                )
            else:
                result = await channel.send(notification)

            if result.success:
                self.sent += 1
            else:
                self.failed += 1
                logger.warning(
                    "Notification delivery failed",
                    channel=channel_type.value,
                    notification_event=notification.event,
                    execution_id=notification.execution_id,
                    error=result.error,
                )
            results.append(result)
        return results

    async def notify_step_failed(
        self,
        workflow_id: str,
        execution_id: str,
        step_id: str,
        error: str,
        organization_id: Optional[str] = None,
    ) -> list[DeliveryResult]:
        return await self.send(Notification(
            event="step_failed",
            title=f"Workflow step failed: {step_id}",
            message=f"Execution {execution_id[:8]} of workflow {workflow_id} failed at step {step_id}: {error}",
            workflow_id=workflow_id,
            execution_id=execution_id,
            step_id=step_id,
            organization_id=organization_id,
            priority=NotificationPriority.HIGH,
            details={"error": error},
        ))

    def get_status(self) -> dict:
        return {
            "channels": [c.value for c in self.channels],
            "sent": self.sent,
            "failed": self.failed,
        }
