"""
Builds the safety engine's components and wires their dependencies.
"""
import logging

import httpx
import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncEngine

from fleet_safety.core.cache import SafetyCache
from fleet_safety.core.config import Settings
from fleet_safety.core.database import create_session_factory
from fleet_safety.services.alerts import AlertStore
from fleet_safety.services.battery import BatteryMonitor
from fleet_safety.services.broadcast import RedisBroadcaster
from fleet_safety.services.emergency import EmergencyProtocol
from fleet_safety.services.fleet_actions import CoordinationServiceClient, MissionServiceClient
from fleet_safety.services.geofence import GeofenceMonitor
from fleet_safety.services.notifications import NotificationManager
from fleet_safety.services.safety import SafetyMonitor
from fleet_safety.services.telemetry import TelemetryClient

logger = logging.getLogger(__name__)


class SafetyEngine:
    """Owns every component and starts/stops them in dependency order."""

    def __init__(
        self,
        settings: Settings,
        db_engine: AsyncEngine,
        redis_client: aioredis.Redis,
        http: httpx.AsyncClient,
    ):
        self.settings = settings
        self.session_factory = create_session_factory(db_engine)

        self.cache = SafetyCache(redis_client, settings.battery_history_retention_minutes)
        self.broadcaster = RedisBroadcaster(redis_client)
        self.notifier = NotificationManager(settings.apprise_urls, settings.notification_cooldown)

        self.telemetry = TelemetryClient(settings.telemetry_service_url, http, settings.http_timeout)
        self.mission = MissionServiceClient(settings.mission_service_url, http, settings.http_timeout)
        self.coordination = CoordinationServiceClient(settings.coordination_service_url, http, settings.http_timeout)

        self.alerts = AlertStore(self.cache, self.session_factory, self.broadcaster)
        self.emergency = EmergencyProtocol(
            settings, self.alerts, self.session_factory, self.broadcaster,
            self.notifier, self.mission, self.coordination,
        )
        self.battery = BatteryMonitor(settings, self.telemetry, self.cache, self.alerts, self.emergency)
        self.geofence = GeofenceMonitor(
            settings, self.telemetry, self.session_factory, self.alerts,
            self.emergency, self.broadcaster,
        )
        self.safety = SafetyMonitor(
            settings, self.cache, self.session_factory, self.alerts, self.broadcaster,
            self.battery, self.geofence, self.emergency,
        )

    async def start(self):
        await self.emergency.start()
        self.battery.start()
        await self.geofence.start()
        self.safety.start()
        logger.info(f"Safety engine started ({self.notifier.server_count} notification servers)")

    async def stop(self):
        await self.safety.stop()
        await self.geofence.stop()
        await self.battery.stop()
        await self.emergency.stop()
        logger.info("Safety engine stopped")
