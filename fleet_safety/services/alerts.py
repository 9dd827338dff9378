"""
Alert store: active alerts in the cache, full history in the database.
"""
import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fleet_safety.core.cache import SafetyCache
from fleet_safety.core.exceptions import NotFoundError
from fleet_safety.core.utils import utcnow
from fleet_safety.models import SafetyAlert
from fleet_safety.schemas import Alert, AlertCreate
from fleet_safety.services.broadcast import Broadcaster

logger = logging.getLogger(__name__)

LOG_LEVELS = {
    "critical": logging.ERROR,
    "warning": logging.WARNING,
    "info": logging.INFO,
}


def alert_to_row(alert: Alert) -> SafetyAlert:
    return SafetyAlert(
        id=alert.id,
        vehicle_id=alert.vehicle_id,
        severity=alert.severity,
        alert_type=alert.type,
        category=alert.category,
        message=alert.message,
        details=alert.model_dump(mode="json")["details"],
        source=alert.source,
        acknowledged=alert.acknowledged,
        acknowledged_by=alert.acknowledged_by,
        acknowledged_at=alert.acknowledged_at,
        resolved=alert.resolved,
        resolved_by=alert.resolved_by,
        resolved_at=alert.resolved_at,
        resolution=alert.resolution,
        created_at=alert.created_at,
    )


def alert_from_row(row: SafetyAlert) -> Alert:
    return Alert(
        id=row.id,
        vehicle_id=row.vehicle_id,
        severity=row.severity,
        type=row.alert_type,
        category=row.category,
        message=row.message,
        details=row.details or {},
        source=row.source,
        created_at=row.created_at,
        acknowledged=row.acknowledged,
        acknowledged_by=row.acknowledged_by,
        acknowledged_at=row.acknowledged_at,
        resolved=row.resolved,
        resolved_by=row.resolved_by,
        resolved_at=row.resolved_at,
        resolution=row.resolution,
    )


class AlertStore:
    """
    Single logical sink for safety alerts.

    The cache holds the active set for fast status queries; the database
    keeps every alert ever raised. Alerts created by evaluators tolerate
    failures of either tier; operator operations raise.
    """

    def __init__(
        self,
        cache: SafetyCache,
        session_factory: async_sessionmaker[AsyncSession],
        broadcaster: Broadcaster,
    ):
        self.cache = cache
        self.session_factory = session_factory
        self.broadcaster = broadcaster
        self.created = 0
        self.write_failures = 0

    async def create_alert(self, alert: Alert, strict: bool = False) -> Alert:
        """
        Record a new alert in both tiers and broadcast it.

        With strict=False, database failures are logged and swallowed so an
        evaluator tick can carry on.
        """
        await self.cache.store_alert(alert.model_dump(mode="json"))

        try:
            async with self.session_factory() as db:
                db.add(alert_to_row(alert))
                await db.commit()
        except Exception as e:
            self.write_failures += 1
            if strict:
                raise
            logger.warning(f"Failed to persist alert {alert.id}: {e}")

        self.created += 1
        logger.log(
            LOG_LEVELS.get(alert.severity, logging.INFO),
            f"Safety alert [{alert.severity}] {alert.type} for {alert.vehicle_id or 'fleet'}: {alert.message}",
        )
        await self.broadcaster.broadcast("safety_alert", alert.model_dump(mode="json"))
        return alert

    async def create_custom_alert(self, data: AlertCreate) -> Alert:
        """Create an operator-raised alert."""
        alert = Alert(
            vehicle_id=data.vehicle_id,
            severity=data.severity,
            type=data.type,
            category=data.category,
            message=data.message,
            details=data.details,
            source="manual",
        )
        return await self.create_alert(alert, strict=True)

    async def get_alert(self, alert_id: str) -> Alert:
        cached = await self.cache.get_alert(alert_id)
        if cached:
            return Alert.model_validate(cached)

        async with self.session_factory() as db:
            row = await db.get(SafetyAlert, alert_id)
        if row is None:
            raise NotFoundError(f"Alert {alert_id} not found")
        return alert_from_row(row)

    async def acknowledge_alert(self, alert_id: str, acknowledged_by: str) -> Alert:
        """Acknowledge an alert. A second acknowledgement keeps the first one."""
        now = utcnow()
        cached = await self.cache.get_alert(alert_id)

        async with self.session_factory() as db:
            row = await db.get(SafetyAlert, alert_id)
            if row is None and cached is None:
                raise NotFoundError(f"Alert {alert_id} not found")
            if (row is not None and row.acknowledged) or (cached is not None and cached.get("acknowledged")):
                logger.debug(f"Alert {alert_id} already acknowledged")
                return Alert.model_validate(cached) if cached is not None else alert_from_row(row)
            if row is not None:
                row.acknowledged = True
                row.acknowledged_by = acknowledged_by
                row.acknowledged_at = now
                await db.commit()

        if cached is not None:
            alert = Alert.model_validate(cached)
            alert.acknowledged = True
            alert.acknowledged_by = acknowledged_by
            alert.acknowledged_at = now
            await self.cache.store_alert(alert.model_dump(mode="json"))
        else:
            alert = alert_from_row(row)

        logger.info(f"Alert {alert_id} acknowledged by {acknowledged_by}")
        await self.broadcaster.broadcast("alert_acknowledged", {
            "alert_id": alert_id,
            "acknowledged_by": acknowledged_by,
            "timestamp": now.isoformat(),
        })
        return alert

    async def resolve_alert(
        self, alert_id: str, resolved_by: str, resolution: Optional[str] = None
    ) -> Alert:
        """
        Mark an alert resolved and drop it from the active set.

        Resolving an already resolved alert returns the stored record unchanged.
        """
        now = utcnow()
        cached = await self.cache.get_alert(alert_id)

        async with self.session_factory() as db:
            row = await db.get(SafetyAlert, alert_id)
            if row is None and cached is None:
                raise NotFoundError(f"Alert {alert_id} not found")
            if row is not None and row.resolved:
                logger.debug(f"Alert {alert_id} already resolved by {row.resolved_by}")
                await self.cache.remove_alert(alert_id)
                return alert_from_row(row)
            if row is not None:
                row.resolved = True
                row.resolved_by = resolved_by
                row.resolved_at = now
                row.resolution = resolution
                await db.commit()

        await self.cache.remove_alert(alert_id)

        alert = Alert.model_validate(cached) if cached is not None else alert_from_row(row)
        alert.resolved = True
        alert.resolved_by = resolved_by
        alert.resolved_at = now
        alert.resolution = resolution

        logger.info(f"Alert {alert_id} resolved by {resolved_by}")
        await self.broadcaster.broadcast("alert_resolved", {
            "alert_id": alert_id,
            "resolved_by": resolved_by,
            "resolution": resolution,
            "timestamp": now.isoformat(),
        })
        return alert

    async def get_active_alerts(self, vehicle_id: Optional[str] = None) -> list[Alert]:
        """Active alerts, newest first."""
        alerts = [Alert.model_validate(a) for a in await self.cache.get_active_alerts()]
        if vehicle_id:
            alerts = [a for a in alerts if a.vehicle_id == vehicle_id]
        alerts.sort(key=lambda a: a.created_at, reverse=True)
        return alerts

    async def get_alert_history(
        self,
        vehicle_id: Optional[str] = None,
        include_resolved: bool = True,
        limit: int = 100,
    ) -> list[Alert]:
        """Alerts from the durable log, newest first."""
        query = select(SafetyAlert).order_by(SafetyAlert.created_at.desc()).limit(limit)
        if vehicle_id:
            query = query.where(SafetyAlert.vehicle_id == vehicle_id)
        if not include_resolved:
            query = query.where(SafetyAlert.resolved.is_(False))

        async with self.session_factory() as db:
            result = await db.execute(query)
            return [alert_from_row(row) for row in result.scalars().all()]

    def get_stats(self) -> dict:
        return {
            "created": self.created,
            "write_failures": self.write_failures,
        }
