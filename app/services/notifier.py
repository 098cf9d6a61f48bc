"""
Notification channel over Redis pub/sub.

The transport layer (websocket gateway, push bridge) subscribes to a user's
channel while the user is connected and records it in the presence registry.
This module only publishes.
"""
import logging

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from app.errors import UpstreamFailure
from app.schemas.events import Event

logger = logging.getLogger(__name__)

DRIVER_BROADCAST_CHANNEL = "drivers:broadcast"


def default_channel(user_id: str) -> str:
    return f"user:{user_id}"


def presence_key(user_id: str) -> str:
    return f"presence:{user_id}"


class ChannelRegistry:
    """Who is connected and on which channel."""

    def __init__(self, redis: aioredis.Redis):
        self.redis = redis

    async def channel_of(self, user_id: str) -> str | None:
        return await self.redis.get(presence_key(user_id))

    async def bind(self, user_id: str, channel: str | None = None) -> str:
        channel = channel or default_channel(user_id)
        await self.redis.set(presence_key(user_id), channel)
        return channel

    async def unbind(self, user_id: str) -> None:
        await self.redis.delete(presence_key(user_id))


class Notifier:
    def __init__(self, redis: aioredis.Redis, channels: ChannelRegistry):
        self.redis = redis
        self.channels = channels

    async def notify(self, recipient_id: str, message: Event) -> None:
        """Fire-and-forget delivery to a user. Never raises."""
        try:
            channel = await self.channels.channel_of(recipient_id) or default_channel(recipient_id)
            await self.redis.publish(channel, message.model_dump_json())
        except RedisError as exc:
            logger.warning(
                "Dropped %s for user=%s ride=%s: %s", message.event, recipient_id, message.ride_id, exc
            )

    async def send(self, channel: str, message: Event) -> int:
        """Publish directly to a channel, failing when nobody is listening."""
        try:
            receivers = await self.redis.publish(channel, message.model_dump_json())
        except RedisError as exc:
            raise UpstreamFailure(f"Notification channel {channel} failed: {exc}") from exc
        if not receivers:
            raise UpstreamFailure(f"Notification channel {channel} is stale")
        return receivers

    async def broadcast(self, message: Event) -> None:
        try:
            await self.redis.publish(DRIVER_BROADCAST_CHANNEL, message.model_dump_json())
        except RedisError as exc:
            logger.warning("Broadcast of %s for ride=%s dropped: %s", message.event, message.ride_id, exc)
