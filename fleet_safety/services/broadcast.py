"""
Real-time event fan-out with optional Redis pub/sub.
"""
import asyncio
import json
import logging
from typing import Optional

import redis.asyncio as aioredis

from fleet_safety.core.utils import utcnow

logger = logging.getLogger(__name__)


class Broadcaster:
    """In-memory broadcaster delivering events to local subscriber queues."""

    def __init__(self):
        self._subscribers: list[asyncio.Queue] = []
        self._lock = asyncio.Lock()
        self.published = 0

    async def subscribe(self) -> asyncio.Queue:
        """Add a new subscriber and return their queue."""
        q: asyncio.Queue = asyncio.Queue(maxsize=100)
        async with self._lock:
            self._subscribers.append(q)
            logger.info(f"Event subscriber added. Total: {len(self._subscribers)}")
        return q

    async def unsubscribe(self, q: asyncio.Queue):
        """Remove a subscriber."""
        async with self._lock:
            if q in self._subscribers:
                self._subscribers.remove(q)
                logger.info(f"Event subscriber removed. Total: {len(self._subscribers)}")

    def _envelope(self, topic: str, payload: dict) -> dict:
        return {
            "type": topic,
            "data": payload,
            "timestamp": utcnow().isoformat() + "Z",
        }

    async def broadcast(self, topic: str, payload: dict):
        """Send an event to all subscribers."""
        message = self._envelope(topic, payload)
        self.published += 1
        await self._deliver_to_subscribers(message)

    async def _deliver_to_subscribers(self, message: dict):
        dead_queues = []

        async with self._lock:
            for q in self._subscribers:
                try:
                    q.put_nowait(message)
                except asyncio.QueueFull:
                    # Drop the oldest event to make room
                    try:
                        q.get_nowait()
                        q.put_nowait(message)
                    except (asyncio.QueueEmpty, asyncio.QueueFull):
                        dead_queues.append(q)

            for q in dead_queues:
                self._subscribers.remove(q)
                logger.warning(f"Removed dead event subscriber. Total: {len(self._subscribers)}")

    def get_stats(self) -> dict:
        return {
            "subscribers": len(self._subscribers),
            "published": self.published,
        }


class RedisBroadcaster(Broadcaster):
    """Broadcaster that also publishes every event on a Redis channel."""

    CHANNEL = "safety:events"

    def __init__(self, client: aioredis.Redis, channel: Optional[str] = None):
        super().__init__()
        self.redis = client
        self.channel = channel or self.CHANNEL
        self.publish_failures = 0

    async def broadcast(self, topic: str, payload: dict):
        message = self._envelope(topic, payload)
        self.published += 1
        try:
            await self.redis.publish(self.channel, json.dumps(message, default=str))
        except Exception as e:
            self.publish_failures += 1
            logger.warning(f"Redis publish of {topic} failed: {e}")
        await self._deliver_to_subscribers(message)

    def get_stats(self) -> dict:
        stats = super().get_stats()
        stats["channel"] = self.channel
        stats["publish_failures"] = self.publish_failures
        return stats
