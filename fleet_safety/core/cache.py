"""
Redis-backed cache for transient safety state.

Holds active alerts, per-vehicle safety status, battery history windows and
the published system status/health documents. Write helpers never raise:
failures are logged and reported through the return value so that a cache
outage cannot stop evaluation ticks.
"""
import json
import logging
import time
from typing import Any, Optional

import redis.asyncio as aioredis

logger = logging.getLogger(__name__)

BATTERY_HISTORY_KEY = "safety:battery:history:{vehicle_id}"
BATTERY_TREND_KEY = "safety:battery:trend:{vehicle_id}"
ACTIVE_ALERTS_KEY = "safety:alerts:active"
VEHICLE_STATUS_KEY = "safety:vehicles"
SYSTEM_STATUS_KEY = "safety:system:status"
SYSTEM_HEALTH_KEY = "safety:system:health"


def create_redis(url: str) -> aioredis.Redis:
    """Create a redis client with string responses."""
    return aioredis.from_url(url, decode_responses=True)


def _dumps(value: Any) -> str:
    return json.dumps(value, default=str)


class SafetyCache:
    """Key layout and serialization over a redis.asyncio client."""

    def __init__(self, client: aioredis.Redis, history_retention_minutes: int = 60):
        self.redis = client
        self.history_retention = history_retention_minutes * 60

    async def ping(self) -> bool:
        """Probe connectivity. Raises on failure."""
        return await self.redis.ping()

    # Battery history

    async def add_battery_sample(self, vehicle_id: str, sample: dict) -> bool:
        """Append a sample scored by its epoch timestamp and trim the window."""
        key = BATTERY_HISTORY_KEY.format(vehicle_id=vehicle_id)
        ts = sample["timestamp"]
        try:
            pipe = self.redis.pipeline()
            pipe.zadd(key, {_dumps(sample): ts})
            pipe.zremrangebyscore(key, 0, ts - self.history_retention)
            await pipe.execute()
            return True
        except Exception as e:
            logger.error(f"Failed to store battery sample for {vehicle_id}: {e}")
            return False

    async def get_battery_history(self, vehicle_id: str, minutes: Optional[int] = None) -> list[dict]:
        """Samples in ascending time order, optionally limited to a trailing window."""
        key = BATTERY_HISTORY_KEY.format(vehicle_id=vehicle_id)
        window = minutes * 60 if minutes else self.history_retention
        try:
            raw = await self.redis.zrangebyscore(key, time.time() - window, "+inf")
        except Exception as e:
            logger.error(f"Failed to read battery history for {vehicle_id}: {e}")
            return []
        return [json.loads(item) for item in raw]

    async def set_battery_trend(self, vehicle_id: str, trend: dict, ttl: int) -> bool:
        try:
            await self.redis.set(BATTERY_TREND_KEY.format(vehicle_id=vehicle_id), _dumps(trend), ex=ttl)
            return True
        except Exception as e:
            logger.error(f"Failed to store battery trend for {vehicle_id}: {e}")
            return False

    async def get_battery_trend(self, vehicle_id: str) -> Optional[dict]:
        try:
            raw = await self.redis.get(BATTERY_TREND_KEY.format(vehicle_id=vehicle_id))
        except Exception as e:
            logger.error(f"Failed to read battery trend for {vehicle_id}: {e}")
            return None
        return json.loads(raw) if raw else None

    # Active alerts

    async def store_alert(self, alert: dict) -> bool:
        try:
            await self.redis.hset(ACTIVE_ALERTS_KEY, alert["id"], _dumps(alert))
            return True
        except Exception as e:
            logger.error(f"Failed to cache alert {alert.get('id')}: {e}")
            return False

    async def get_alert(self, alert_id: str) -> Optional[dict]:
        try:
            raw = await self.redis.hget(ACTIVE_ALERTS_KEY, alert_id)
        except Exception as e:
            logger.error(f"Failed to read cached alert {alert_id}: {e}")
            return None
        return json.loads(raw) if raw else None

    async def remove_alert(self, alert_id: str) -> bool:
        """Drop an alert from the active set. Returns True if it was present."""
        try:
            return bool(await self.redis.hdel(ACTIVE_ALERTS_KEY, alert_id))
        except Exception as e:
            logger.error(f"Failed to remove cached alert {alert_id}: {e}")
            return False

    async def get_active_alerts(self) -> list[dict]:
        try:
            raw = await self.redis.hgetall(ACTIVE_ALERTS_KEY)
        except Exception as e:
            logger.error(f"Failed to read active alerts: {e}")
            return []
        return [json.loads(value) for value in raw.values()]

    # Per-vehicle safety status

    async def set_vehicle_status(self, vehicle_id: str, status: dict) -> bool:
        try:
            await self.redis.hset(VEHICLE_STATUS_KEY, vehicle_id, _dumps(status))
            return True
        except Exception as e:
            logger.error(f"Failed to store safety status for {vehicle_id}: {e}")
            return False

    async def get_vehicle_status(self, vehicle_id: str) -> Optional[dict]:
        try:
            raw = await self.redis.hget(VEHICLE_STATUS_KEY, vehicle_id)
        except Exception as e:
            logger.error(f"Failed to read safety status for {vehicle_id}: {e}")
            return None
        return json.loads(raw) if raw else None

    async def get_all_vehicle_statuses(self) -> dict[str, dict]:
        try:
            raw = await self.redis.hgetall(VEHICLE_STATUS_KEY)
        except Exception as e:
            logger.error(f"Failed to read vehicle safety statuses: {e}")
            return {}
        return {vehicle_id: json.loads(value) for vehicle_id, value in raw.items()}

    # System documents

    async def publish_document(self, key: str, document: dict, ttl: int) -> bool:
        try:
            await self.redis.set(key, _dumps(document), ex=ttl)
            return True
        except Exception as e:
            logger.error(f"Failed to publish {key}: {e}")
            return False

