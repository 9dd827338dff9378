"""
Shared pytest fixtures for safety engine tests.

Provides an in-memory database, an in-memory Redis stand-in, stubbed
upstream services and fully wired monitor instances.
"""
import asyncio
import os
from datetime import timedelta
from typing import AsyncGenerator, Optional
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool

# Set test environment variables before importing the engine
os.environ.setdefault('DATABASE_URL', 'sqlite+aiosqlite:///:memory:')
os.environ.setdefault('REDIS_URL', 'redis://localhost:6379/15')
os.environ.setdefault('APPRISE_URLS', '')
os.environ.setdefault('EMERGENCY_RESPONSE_ENABLED', 'true')

from fleet_safety import models  # noqa: F401
from fleet_safety.core.cache import SafetyCache
from fleet_safety.core.config import Settings
from fleet_safety.core.database import Base, create_session_factory
from fleet_safety.core.exceptions import DependencyError
from fleet_safety.core.utils import utcnow
from fleet_safety.schemas import VehicleSnapshot
from fleet_safety.services.alerts import AlertStore
from fleet_safety.services.battery import BatteryMonitor
from fleet_safety.services.broadcast import Broadcaster
from fleet_safety.services.emergency import EmergencyProtocol
from fleet_safety.services.fleet_actions import CoordinationServiceClient, MissionServiceClient
from fleet_safety.services.geofence import GeofenceMonitor
from fleet_safety.services.notifications import NotificationManager
from fleet_safety.services.safety import SafetyMonitor


# =============================================================================
# Test doubles
# =============================================================================

class FakeRedis:
    """In-memory stand-in for the subset of redis.asyncio the engine uses."""

    def __init__(self):
        self.strings: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.hashes: dict[str, dict[str, str]] = {}
        self.zsets: dict[str, dict[str, float]] = {}
        self.published: list[tuple[str, str]] = []
        self.fail = False

    def _check(self):
        if self.fail:
            raise ConnectionError("redis unavailable")

    async def ping(self):
        self._check()
        return True

    async def get(self, key):
        self._check()
        return self.strings.get(key)

    async def set(self, key, value, ex=None):
        self._check()
        self.strings[key] = value
        if ex:
            self.ttls[key] = ex
        return True

    async def hset(self, name, key, value):
        self._check()
        self.hashes.setdefault(name, {})[key] = value
        return 1

    async def hget(self, name, key):
        self._check()
        return self.hashes.get(name, {}).get(key)

    async def hgetall(self, name):
        self._check()
        return dict(self.hashes.get(name, {}))

    async def hdel(self, name, *keys):
        self._check()
        bucket = self.hashes.get(name, {})
        return sum(1 for key in keys if bucket.pop(key, None) is not None)

    async def zadd(self, name, mapping):
        self._check()
        self.zsets.setdefault(name, {}).update(mapping)
        return len(mapping)

    @staticmethod
    def _bound(value):
        if value in ("+inf", "inf"):
            return float("inf")
        if value == "-inf":
            return float("-inf")
        return float(value)

    async def zrangebyscore(self, name, min, max):
        self._check()
        low, high = self._bound(min), self._bound(max)
        members = sorted(self.zsets.get(name, {}).items(), key=lambda item: item[1])
        return [member for member, score in members if low <= score <= high]

    async def zremrangebyscore(self, name, min, max):
        self._check()
        low, high = self._bound(min), self._bound(max)
        bucket = self.zsets.get(name, {})
        doomed = [member for member, score in bucket.items() if low <= score <= high]
        for member in doomed:
            del bucket[member]
        return len(doomed)

    async def publish(self, channel, message):
        self._check()
        self.published.append((channel, message))
        return 0

    def pipeline(self):
        return FakePipeline(self)

    async def aclose(self):
        pass


class FakePipeline:
    def __init__(self, redis: FakeRedis):
        self._redis = redis
        self._calls = []

    def __getattr__(self, name):
        def queue(*args, **kwargs):
            self._calls.append((name, args, kwargs))
            return self
        return queue

    async def execute(self):
        results = []
        for name, args, kwargs in self._calls:
            results.append(await getattr(self._redis, name)(*args, **kwargs))
        self._calls = []
        return results


class StubTelemetry:
    """Telemetry source returning whatever snapshots the test sets."""

    def __init__(self):
        self.snapshots: list[VehicleSnapshot] = []
        self.fail = False

    async def get_all_snapshots(self) -> list[VehicleSnapshot]:
        if self.fail:
            raise DependencyError("telemetry service unreachable")
        return list(self.snapshots)

    async def get_snapshot(self, vehicle_id: str) -> Optional[VehicleSnapshot]:
        for snapshot in await self.get_all_snapshots():
            if snapshot.vehicle_id == vehicle_id:
                return snapshot
        return None


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


def drain(queue: asyncio.Queue) -> list[dict]:
    """Pull every event currently waiting in a subscriber queue."""
    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


# =============================================================================
# Infrastructure Fixtures
# =============================================================================

@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        apprise_urls="",
        emergency_response_enabled=True,
    )


@pytest_asyncio.fixture
async def db_engine() -> AsyncGenerator[AsyncEngine, None]:
    """Create async test database engine."""
    # A single shared connection keeps the in-memory database alive across sessions
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def cache(fake_redis) -> SafetyCache:
    return SafetyCache(fake_redis)


@pytest.fixture
def broadcaster() -> Broadcaster:
    return Broadcaster()


@pytest_asyncio.fixture
async def events(broadcaster) -> asyncio.Queue:
    """Subscriber queue receiving every broadcast event."""
    return await broadcaster.subscribe()


@pytest.fixture
def drain_events(events):
    """Callable returning the events broadcast since its last call."""
    return lambda: drain(events)


@pytest.fixture
def notifier() -> NotificationManager:
    return NotificationManager("", 300)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def telemetry() -> StubTelemetry:
    return StubTelemetry()


@pytest.fixture
def mission_client():
    client = AsyncMock(spec=MissionServiceClient)
    client.abort_mission.return_value = True
    return client


@pytest.fixture
def coordination_client():
    client = AsyncMock(spec=CoordinationServiceClient)
    client.request_emergency_landing.return_value = True
    client.request_return_to_base.return_value = True
    client.alert_nearby.return_value = 2
    return client


# =============================================================================
# Component Fixtures
# =============================================================================

@pytest.fixture
def alert_store(cache, session_factory, broadcaster) -> AlertStore:
    return AlertStore(cache, session_factory, broadcaster)


@pytest.fixture
def make_emergency_protocol(
    alert_store, session_factory, broadcaster, notifier, mission_client, coordination_client
):
    """Build an emergency protocol with the given settings."""
    created = []

    def factory(settings: Settings) -> EmergencyProtocol:
        protocol = EmergencyProtocol(
            settings, alert_store, session_factory, broadcaster,
            notifier, mission_client, coordination_client,
        )
        created.append(protocol)
        return protocol

    yield factory

    for protocol in created:
        for task in protocol._timeouts.values():
            task.cancel()


@pytest_asyncio.fixture
async def emergency_protocol(make_emergency_protocol, settings) -> AsyncGenerator[EmergencyProtocol, None]:
    protocol = make_emergency_protocol(settings)
    await protocol.start()
    yield protocol
    await protocol.stop()


@pytest.fixture
def battery_monitor(settings, telemetry, cache, alert_store, emergency_protocol, clock) -> BatteryMonitor:
    return BatteryMonitor(settings, telemetry, cache, alert_store, emergency_protocol, clock=clock)


@pytest.fixture
def geofence_monitor(
    settings, telemetry, session_factory, alert_store, emergency_protocol, broadcaster, clock
) -> GeofenceMonitor:
    return GeofenceMonitor(
        settings, telemetry, session_factory, alert_store, emergency_protocol, broadcaster, clock=clock
    )


@pytest.fixture
def safety_monitor(
    settings, cache, session_factory, alert_store, broadcaster,
    battery_monitor, geofence_monitor, emergency_protocol,
) -> SafetyMonitor:
    return SafetyMonitor(
        settings, cache, session_factory, alert_store, broadcaster,
        battery_monitor, geofence_monitor, emergency_protocol,
    )


# =============================================================================
# Sample Data Fixtures
# =============================================================================

@pytest.fixture
def make_snapshot():
    """Factory for vehicle snapshots with sensible defaults."""
    def factory(vehicle_id: str = "V1", age_seconds: float = 0, **overrides) -> VehicleSnapshot:
        data = {
            "vehicle_id": vehicle_id,
            "latitude": 19.0760,
            "longitude": 72.8777,
            "altitude": 50.0,
            "armed": True,
            "mission_status": "in_flight",
            "battery_level": 80.0,
            "voltage": 22.4,
            "timestamp": utcnow() - timedelta(seconds=age_seconds),
        }
        data.update(overrides)
        return VehicleSnapshot(**data)
    return factory
