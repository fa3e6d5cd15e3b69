"""
Realtime Publishers
Redis pub/sub fan-out of committed call and dialer changes to dashboards
"""
import json
import logging
from collections import deque
from typing import Deque, Dict, Any, List, Tuple, Optional

import redis.asyncio as redis

from voipcore.domain.interfaces.realtime import RealtimePublisher

logger = logging.getLogger(__name__)


class RedisRealtimePublisher(RealtimePublisher):
    """
    Publishes JSON events on Redis channels.

    Channel names are per tenant (realtime:{tenant_id}:calls|dialer), so a
    dashboard only ever subscribes to its own tenant's changes.
    """

    def __init__(self, redis_url: str):
        self._redis_url = redis_url
        self._client: Optional[redis.Redis] = None

    async def connect(self) -> None:
        self._client = redis.from_url(
            self._redis_url,
            encoding="utf-8",
            decode_responses=True
        )
        await self._client.ping()
        logger.info(f"Realtime publisher connected to Redis: {self._redis_url}")

    async def publish(self, channel: str, event: Dict[str, Any]) -> None:
        if self._client is None:
            await self.connect()
        await self._client.publish(channel, json.dumps(event, default=str))

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None


class InMemoryRealtimePublisher(RealtimePublisher):
    """
    Keeps the most recent published events in memory.

    Stands in for Redis in development, in tests and when Redis is
    unreachable; older events are dropped once max_events is reached.
    """

    def __init__(self, max_events: int = 1000):
        self.events: Deque[Tuple[str, Dict[str, Any]]] = deque(maxlen=max_events)

    async def publish(self, channel: str, event: Dict[str, Any]) -> None:
        self.events.append((channel, event))

    def on_channel(self, channel: str) -> List[Dict[str, Any]]:
        return [event for name, event in self.events if name == channel]
