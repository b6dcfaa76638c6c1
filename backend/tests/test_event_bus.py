"""Tests for the Redis event bus listener (message handling only)."""

import json

import pytest

from core.constants import TriggerKind
from core.exceptions import ValidationError
from triggers.event_bus import EventBusListener, parse_message


class FakeRouter:
    def __init__(self, result=None, error=None):
        self.routed = []
        self.result = result or ["schedule-1"]
        self.error = error

    async def route(self, kind, payload):
        self.routed.append((kind, payload))
        if self.error:
            raise self.error
        return self.result


@pytest.mark.unit
class TestParseMessage:
    def test_bytes_and_text(self):
        raw = json.dumps({"name": "order.created", "payload": {"id": 1}})
        assert parse_message(raw) == {"name": "order.created", "payload": {"id": 1}}
        assert parse_message(raw.encode()) == {"name": "order.created", "payload": {"id": 1}}

    def test_missing_payload_defaults_to_empty(self):
        assert parse_message('{"name": "ping"}') == {"name": "ping", "payload": {}}

    def test_scalar_payload_is_wrapped(self):
        assert parse_message('{"name": "count", "payload": 3}') == {"name": "count", "payload": {"value": 3}}

    @pytest.mark.parametrize("data", [b"\xff", "not json", "[1, 2]", '{"payload": {}}', '{"name": 5}', "", None])
    def test_malformed(self, data):
        assert parse_message(data) is None


@pytest.mark.unit
class TestListener:
    async def test_routes_events(self):
        router = FakeRouter()
        listener = EventBusListener(router, "redis://unused", "events")
        result = await listener.handle_message(b'{"name": "invoice.paid", "payload": {"amount": 5}}')

        assert result == ["schedule-1"]
        assert router.routed == [(TriggerKind.EVENT, {"name": "invoice.paid", "payload": {"amount": 5}})]
        assert listener.received == 1
        assert listener.dropped == 0

    async def test_drops_malformed(self):
        router = FakeRouter()
        listener = EventBusListener(router, "redis://unused", "events")
        assert await listener.handle_message(b"garbage") == []
        assert router.routed == []
        assert listener.dropped == 1

    async def test_routing_errors_do_not_escape(self):
        listener = EventBusListener(FakeRouter(error=ValidationError("bad")), "redis://unused", "events")
        assert await listener.handle_message('{"name": "x"}') == []
        assert listener.received == 1

    def test_not_running_until_started(self):
        listener = EventBusListener(FakeRouter(), "redis://unused", "events")
        assert listener.is_running is False
