"""Redis pub/sub — carries owner events from worker processes to API processes.

Learn: Redis pub/sub is fire-and-forget. If no API process is listening,
the message is lost. That's fine for real-time UI updates (the client can
always refetch the asset to catch up).

Channel naming: {prefix}:owner:{owner_id}
The relay in each API process pattern-subscribes to {prefix}:owner:* and
hands every message to its local ConnectionManager, which only delivers to
that owner's room.
"""

import asyncio
import json
from typing import Any, Optional

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError

from vaultsync.realtime.rooms import ConnectionManager

logger = structlog.get_logger()


class RedisEventPublisher:
    """EventEmitter used by the worker process."""

    def __init__(self, redis: aioredis.Redis, prefix: str = "vaultsync:events"):
        self.redis = redis
        self.prefix = prefix

    def channel_for(self, owner_id: str) -> str:
        return f"{self.prefix}:owner:{owner_id}"

    async def emit_to_owner(self, owner_id: str, payload: dict[str, Any]) -> int:
        """Publish; returns how many relays received it (0 on Redis errors)."""
        try:
            receivers = await self.redis.publish(
                self.channel_for(owner_id), json.dumps(payload, default=str)
            )
        except RedisError as e:
            logger.warning("realtime.publish_failed", owner_id=owner_id, error=str(e))
            return 0
        logger.debug("realtime.published", owner_id=owner_id, receivers=receivers)
        return receivers


class RedisEventRelay:
    """Forwards published owner events to local WebSocket rooms."""

    def __init__(
        self,
        redis: aioredis.Redis,
        manager: ConnectionManager,
        prefix: str = "vaultsync:events",
    ):
        self.redis = redis
        self.manager = manager
        self.prefix = prefix
        self._task: Optional[asyncio.Task] = None

    @property
    def pattern(self) -> str:
        return f"{self.prefix}:owner:*"

    def owner_from_channel(self, channel: str) -> Optional[str]:
        head = f"{self.prefix}:owner:"
        if not channel.startswith(head):
            return None
        return channel[len(head):] or None

    async def handle_message(self, message: dict[str, Any]) -> int:
        """Deliver one pub/sub message. Returns local deliveries."""
        if message.get("type") != "pmessage":
            return 0
        channel = message.get("channel")
        if isinstance(channel, bytes):
            channel = channel.decode()
        owner_id = self.owner_from_channel(channel or "")
        if owner_id is None:
            return 0
        try:
            payload = json.loads(message["data"])
        except (TypeError, ValueError):
            logger.warning("realtime.relay_bad_payload", channel=channel)
            return 0
        return await self.manager.emit_to_owner(owner_id, payload)

    async def run(self, retry_delay: float = 1.0) -> None:
        """Listen until cancelled, resubscribing after Redis drops us."""
        while True:
            try:
                await self._listen()
            except RedisError as e:
                logger.warning("realtime.relay_disconnected", error=str(e))
            await asyncio.sleep(retry_delay)

    async def _listen(self) -> None:
        pubsub = self.redis.pubsub()
        await pubsub.psubscribe(self.pattern)
        logger.info("realtime.relay_subscribed", pattern=self.pattern)
        try:
            async for message in pubsub.listen():
                await self.handle_message(message)
        finally:
            await pubsub.aclose()

    def start(self) -> asyncio.Task:
        self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        (result,) = await asyncio.gather(self._task, return_exceptions=True)
        if isinstance(result, Exception):
            logger.error("realtime.relay_crashed", error=str(result))
        self._task = None
