"""Event bus listener.

Subscribes to a Redis pub/sub channel. Internal services and external
systems publish named events there; each message is routed as an `event`
trigger, which feeds event and delay schedules.

Message format:
    {"name": "order.created", "payload": {"order_id": 42}}
"""

import asyncio
import json
from typing import Optional

import redis.asyncio as aioredis
import structlog

from core.constants import TriggerKind
from core.exceptions import EngineException

logger = structlog.get_logger(__name__)


def parse_message(data) -> Optional[dict]:
    """Decode one pub/sub message into an InboundEvent dict, or None."""
    if isinstance(data, bytes):
        try:
            data = data.decode("utf-8")
        except UnicodeDecodeError:
            return None
    try:
        message = json.loads(data) if data else None
    except json.JSONDecodeError:
        return None
    if not isinstance(message, dict) or not isinstance(message.get("name"), str):
        return None
    payload = message.get("payload") or {}
    if not isinstance(payload, dict):
        payload = {"value": payload}
    return {"name": message["name"], "payload": payload}


class EventBusListener:
    """Background task feeding Redis pub/sub messages to the trigger router."""

    def __init__(self, router, redis_url: str, channel: str, client: Optional[aioredis.Redis] = None):
        self.router = router
        self.redis_url = redis_url
        self.channel = channel
        self._client = client
        self._task: Optional[asyncio.Task] = None
        self.received = 0
        self.dropped = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.create_task(self._listen(), name=f"event-bus-{self.channel}")
        logger.info("Event bus listener started", channel=self.channel)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
        logger.info("Event bus listener stopped", channel=self.channel)

    async def publish(self, name: str, payload: Optional[dict] = None) -> int:
        """Publish an event on the channel; returns the subscriber count."""
        message = json.dumps({"name": name, "payload": payload or {}})
        if self._client is not None:
            return await self._client.publish(self.channel, message)
        client = aioredis.from_url(self.redis_url)
        try:
            return await client.publish(self.channel, message)
        finally:
            await client.aclose()

    async def handle_message(self, data) -> list[str]:
        event = parse_message(data)
        if event is None:
            self.dropped += 1
            logger.warning("Malformed event bus message dropped", channel=self.channel)
            return []
        self.received += 1
        try:
            return await self.router.route(TriggerKind.EVENT, event)
        except EngineException as e:
            logger.error("Event bus message failed", event=event["name"], error=e.message)
            return []

    async def _listen(self) -> None:
        client = self._client or aioredis.from_url(self.redis_url)
        pubsub = client.pubsub()
        try:
            await pubsub.subscribe(self.channel)
            logger.info("Listening on Redis channel", channel=self.channel)
            async for message in pubsub.listen():
                if message["type"] != "message":
                    continue
                await self.handle_message(message["data"])
        except asyncio.CancelledError:
            logger.info("Redis listener cancelled", channel=self.channel)
            raise
        except Exception:
            logger.exception("Redis listener error", channel=self.channel)
        finally:
            await pubsub.aclose()
            if self._client is None:
                await client.aclose()
