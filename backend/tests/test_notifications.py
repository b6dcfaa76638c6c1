"""Tests for workflow failure alerts."""

import json

import httpx
import pytest

from app.config import Settings
from core.webhook_signing import SIGNATURE_HEADER, TIMESTAMP_HEADER, verify_webhook_signature
from notifications.channels import (
    LogChannel,
    Notification,
    NotificationChannel,
    NotificationPriority,
    WebhookChannel,
)
from notifications.manager import NotificationManager

HOOK = "https://hooks.example.com/alerts"


def transport(requests, status=200):
    def handler(request):
        requests.append(request)
        return httpx.Response(status)

    return httpx.MockTransport(handler)


def alert(**overrides) -> Notification:
    fields = {
        "event": "step_failed",
        "title": "Workflow step failed: fetch",
        "message": "HTTP 503",
        "workflow_id": "wf-1",
        "execution_id": "ex-1",
        "step_id": "fetch",
    }
    fields.update(overrides)
    return Notification(**fields)


@pytest.mark.unit
class TestChannels:
    async def test_webhook_delivers_signed_payload(self):
        requests = []
        channel = WebhookChannel(HOOK, secret="s3", transport=transport(requests))
        result = await channel.send(alert(priority=NotificationPriority.HIGH))

        assert result.success is True
        assert result.detail == "HTTP 200"
        sent = requests[0]
        body = json.loads(sent.content)
        assert body["priority"] == "high"
        assert body["execution_id"] == "ex-1"
        assert sent.headers["X-Workflow-Event"] == "step_failed"
        assert verify_webhook_signature(sent.content, "s3", sent.headers[SIGNATURE_HEADER], sent.headers[TIMESTAMP_HEADER])

    async def test_unsigned_without_secret(self):
        requests = []
        await WebhookChannel(HOOK, headers={"X-Team": "ops"}, transport=transport(requests)).send(alert())
        assert SIGNATURE_HEADER not in requests[0].headers
        assert requests[0].headers["X-Team"] == "ops"

    async def test_http_error_is_reported_not_raised(self):
        result = await WebhookChannel(HOOK, transport=transport([], status=500)).send(alert())
        assert result.success is False
        assert result.target == HOOK
        assert "500" in result.error

    async def test_log_level_follows_priority(self, monkeypatch):
        calls = []

        class Recorder:
            def __getattr__(self, level):
                return lambda event, **kw: calls.append((level, event, kw))

        monkeypatch.setattr("notifications.channels.logger", Recorder())
        await LogChannel().send(alert(priority=NotificationPriority.CRITICAL))
        await LogChannel().send(alert(priority=NotificationPriority.LOW))

        assert [(level, event) for level, event, _ in calls] == [
            ("error", "Workflow step failed: fetch"),
            ("debug", "Workflow step failed: fetch"),
        ]
        assert calls[0][2]["step_id"] == "fetch"


@pytest.mark.unit
class TestNotificationManager:
    async def test_defaults_to_log_channel(self):
        manager = NotificationManager()
        results = await manager.send(alert())
        assert [r.channel for r in results] == [NotificationChannel.LOG]
        assert manager.get_status() == {"channels": ["log"], "sent": 1, "failed": 0}

    async def test_unconfigured_channel(self):
        manager = NotificationManager([LogChannel()])
        [result] = await manager.send(alert(), only=[NotificationChannel.WEBHOOK])
        assert result.success is False
        assert result.error == "Channel not configured: webhook"
        assert manager.failed == 1

    async def test_step_failure_fans_out(self):
        requests = []
        manager = NotificationManager([
            LogChannel(),
            WebhookChannel(HOOK, transport=transport(requests, status=502)),
        ])
        results = await manager.notify_step_failed(
            workflow_id="wf-1", execution_id="0123456789abcdef", step_id="fetch", error="HTTP 503",
        )

        assert [r.success for r in results] == [True, False]
        assert manager.get_status()["failed"] == 1
        body = json.loads(requests[0].content)
        assert body["title"] == "Workflow step failed: fetch"
        assert body["details"] == {"error": "HTTP 503"}
        assert "Execution 01234567 of workflow wf-1" in body["message"]

    def test_from_settings(self):
        plain = NotificationManager.from_settings(Settings(ENVIRONMENT="testing", NOTIFY_WEBHOOK_URL=""))
        assert plain.get_status()["channels"] == ["log"]

        hooked = NotificationManager.from_settings(
            Settings(ENVIRONMENT="testing", NOTIFY_WEBHOOK_URL=HOOK, NOTIFY_WEBHOOK_SECRET="whsec_n")
        )
        assert hooked.get_status()["channels"] == ["log", "webhook"]
        assert hooked._channels[NotificationChannel.WEBHOOK].secret == "whsec_n"
