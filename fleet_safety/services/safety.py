"""
System-wide safety status and health aggregation.
"""
import logging
from typing import Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fleet_safety.core.cache import SYSTEM_HEALTH_KEY, SYSTEM_STATUS_KEY, SafetyCache
from fleet_safety.core.config import Settings
from fleet_safety.core.tasks import PeriodicTask
from fleet_safety.schemas import Alert, SystemHealth, SystemSafetyStatus
from fleet_safety.services.alerts import AlertStore
from fleet_safety.services.battery import BatteryMonitor
from fleet_safety.services.broadcast import Broadcaster
from fleet_safety.services.emergency import EmergencyProtocol
from fleet_safety.services.geofence import GeofenceMonitor

logger = logging.getLogger(__name__)

AT_RISK_LEVELS = {"critical", "warning"}


def calculate_system_status(alerts: list[Alert], vehicle_statuses: dict[str, dict]) -> SystemSafetyStatus:
    critical = sum(1 for a in alerts if a.severity == "critical")
    warning = sum(1 for a in alerts if a.severity == "warning")
    at_risk = sum(1 for s in vehicle_statuses.values() if s.get("safety_level") in AT_RISK_LEVELS)

    if critical > 0 or at_risk > 0:
        overall = "critical"
    elif warning > 2:
        overall = "warning"
    elif warning > 0:
        overall = "caution"
    else:
        overall = "safe"

    return SystemSafetyStatus(
        overall_status=overall,
        critical_alerts=critical,
        warning_alerts=warning,
        total_alerts=len(alerts),
        vehicles_at_risk=at_risk,
        active_vehicles=len(vehicle_statuses),
    )


class SafetyMonitor:
    """
    Publishes the fleet-wide safety status and the engine's own health.

    Reads the alert store and per-vehicle risk state; it never feeds back
    into evaluation.
    """

    def __init__(
        self,
        settings: Settings,
        cache: SafetyCache,
        session_factory: async_sessionmaker[AsyncSession],
        alert_store: AlertStore,
        broadcaster: Broadcaster,
        battery: BatteryMonitor,
        geofence: GeofenceMonitor,
        emergency: EmergencyProtocol,
    ):
        self.settings = settings
        self.cache = cache
        self.session_factory = session_factory
        self.alert_store = alert_store
        self.broadcaster = broadcaster
        self.battery = battery
        self.geofence = geofence
        self.emergency = emergency

        self.status: Optional[SystemSafetyStatus] = None
        self.health: Optional[SystemHealth] = None

        self._status_task = PeriodicTask("safety-status", settings.safety_check_interval, self.perform_safety_check)
        self._health_task = PeriodicTask("health-check", settings.health_check_interval, self.perform_health_check)

    @property
    def is_running(self) -> bool:
        return self._status_task.running

    def start(self):
        self._status_task.start()
        self._health_task.start()

    async def stop(self):
        await self._status_task.stop()
        await self._health_task.stop()

    async def perform_safety_check(self) -> SystemSafetyStatus:
        alerts = await self.alert_store.get_active_alerts()
        vehicle_statuses = await self.cache.get_all_vehicle_statuses()

        status = calculate_system_status(alerts, vehicle_statuses)
        self.status = status

        document = status.model_dump(mode="json")
        await self.cache.publish_document(SYSTEM_STATUS_KEY, document, self.settings.status_ttl)
        await self.broadcaster.broadcast("system_safety_status", document)

        if status.overall_status == "critical":
            logger.warning(
                f"System safety critical: {status.critical_alerts} critical alerts, "
                f"{status.vehicles_at_risk} vehicles at risk"
            )
        return status

    async def perform_health_check(self) -> SystemHealth:
        health = SystemHealth()

        try:
            async with self.session_factory() as db:
                await db.execute(text("SELECT 1"))
            health.database = "healthy"
        except Exception as e:
            health.database = "critical"
            health.errors.append(f"Database: {e}")

        try:
            await self.cache.ping()
            health.cache = "healthy"
        except Exception as e:
            health.cache = "critical"
            health.errors.append(f"Cache: {e}")

        health.services = {
            "battery_monitor": "running" if self.battery.is_running else "stopped",
            "geofence_monitor": "running" if self.geofence.is_running else "stopped",
            "emergency_protocol": "running" if self.emergency.running else "stopped",
        }

        if "critical" in (health.database, health.cache):
            health.overall = "critical"
        elif any(state != "running" for state in health.services.values()):
            health.overall = "degraded"

        self.health = health
        if health.overall != "healthy":
            logger.warning(f"Engine health {health.overall}: {health.errors or health.services}")

        await self.cache.publish_document(SYSTEM_HEALTH_KEY, health.model_dump(mode="json"), self.settings.health_ttl)
        return health

    async def get_system_safety_status(self) -> SystemSafetyStatus:
        """Last published status, computing one if none exists yet."""
        if self.status is None:
            return await self.perform_safety_check()
        return self.status

    async def get_system_health(self) -> SystemHealth:
        if self.health is None:
            return await self.perform_health_check()
        return self.health

    def get_stats(self) -> dict:
        return {
            "running": self.is_running,
            "status": self.status.model_dump(mode="json") if self.status else None,
            "health": self.health.overall if self.health else None,
            "status_task": self._status_task.get_stats(),
            "health_task": self._health_task.get_stats(),
            "alerts": self.alert_store.get_stats(),
            "battery": self.battery.get_stats(),
            "geofence": self.geofence.get_stats(),
            "emergency": self.emergency.get_stats(),
        }
