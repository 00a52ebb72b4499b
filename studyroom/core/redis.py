"""
Redis pub/sub for realtime notifications OR silent no-op.
Controlled by FF_USE_REDIS flag.
"""

import json
import logging
from typing import Any

from .config import Settings
from .flags import FeatureFlags

logger = logging.getLogger(__name__)


class RealtimePublisher:
    """Publishes JSON events. Failures are logged, never raised."""

    def __init__(self, redis_url: str):
        self.redis_url = redis_url
        self._client = None

    async def _get_redis(self):
        if self._client is None:
            import redis.asyncio as aioredis

            self._client = aioredis.from_url(
                self.redis_url,
                decode_responses=True,
                socket_connect_timeout=5,
            )
        return self._client

    async def publish(self, channel: str, event_type: str, data: Any = None) -> None:
        try:
            client = await self._get_redis()
            payload = json.dumps({"type": event_type, "data": data}, default=str)
            await client.publish(channel, payload)
        except Exception as e:
            # Never crash a conversion on notification failure
            logger.warning("Redis publish failed (channel=%s): %s", channel, e)

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None
            logger.info("Redis connection closed")


class NullPublisher(RealtimePublisher):
    def __init__(self):
        super().__init__("")

    async def publish(self, channel: str, event_type: str, data: Any = None) -> None:
        return None


def create_publisher(settings: Settings, flags: FeatureFlags) -> RealtimePublisher:
    if flags.use_redis and settings.redis_url:
        return RealtimePublisher(settings.redis_url)
    return NullPublisher()
