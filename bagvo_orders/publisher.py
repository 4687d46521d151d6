"""
Order Service — event publisher

Order events are broadcast on a Redis Pub/Sub channel after the database
transaction that produced them has committed. Pub/Sub is fire-and-forget:
the committed order is the source of truth, so a Redis outage is logged and
does not fail the request.
"""

import json
import logging

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from . import config

logger = logging.getLogger(__name__)


class EventPublisher:
    """Publishes ``{"event_type": ..., "data": ...}`` messages to one channel."""

    def __init__(self, redis: aioredis.Redis | None, channel: str = config.ORDER_EVENTS_CHANNEL):
        self.redis = redis
        self.channel = channel

    async def publish(self, event_type: str, data: dict) -> None:
        if self.redis is None:
            logger.debug(f"No Redis connection; {event_type} not published")
            return
        message = json.dumps({"event_type": event_type, "data": data}, default=str)
        try:
            await self.redis.publish(self.channel, message)
        except RedisError as e:
            logger.warning(f"Failed to publish {event_type} to '{self.channel}': {e}")
