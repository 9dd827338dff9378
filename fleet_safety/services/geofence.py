"""
Geofence monitoring and management.

Each tick checks every recently reported vehicle position against every
active geofence. Violations are graded by distance to the nearest edge,
deduplicated per (vehicle, geofence), turned into alerts and stored for
audit. Critical violations open an emergency.
"""
import logging
import time
from typing import Callable, Optional

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fleet_safety.core.config import Settings
from fleet_safety.core.exceptions import DependencyError, NotFoundError
from fleet_safety.core.tasks import PeriodicTask
from fleet_safety.core.utils import (
    distance_to_polygon_edge_m, is_valid_position, point_in_polygon, utcnow,
)
from fleet_safety.models import Geofence, GeofenceViolation
from fleet_safety.schemas import (
    SEVERITY_RANK, Alert, EmergencyTrigger, GeofenceCreate, GeofenceSchema,
    GeofenceUpdate, VehicleSnapshot, Violation, max_severity, new_id,
)
from fleet_safety.services.alerts import AlertStore
from fleet_safety.services.broadcast import Broadcaster
from fleet_safety.services.cooldowns import CooldownTracker
from fleet_safety.services.emergency import EmergencyProtocol
from fleet_safety.services.telemetry import TelemetryClient

logger = logging.getLogger(__name__)

# restriction_type -> (trigger_type, emergency action)
EMERGENCY_RESPONSES = {
    "no_fly": ("no_fly_zone_violation", "emergency_land"),
    "emergency_only": ("restricted_airspace_violation", "return_to_base"),
}
DEFAULT_RESPONSE = ("geofence_violation", "return_to_base")


def evaluation_order(geofences: list[GeofenceSchema]) -> list[GeofenceSchema]:
    """Highest severity first, then oldest first."""
    return sorted(geofences, key=lambda g: (-SEVERITY_RANK[g.severity], g.created_at))


def check_violation(
    snapshot: VehicleSnapshot,
    geofence: GeofenceSchema,
    emergency_buffer: float,
    warning_buffer: float,
) -> Optional[Violation]:
    """Check one vehicle position against one geofence."""
    lat, lng, alt = snapshot.latitude, snapshot.longitude, snapshot.altitude
    common = {
        "vehicle_id": snapshot.vehicle_id,
        "geofence_id": geofence.id,
        "geofence_name": geofence.name,
        "restriction_type": geofence.restriction_type,
        "position": snapshot.position,
        "vehicle_status": snapshot.status,
    }

    if alt is not None:
        if geofence.altitude_min is not None and alt < geofence.altitude_min:
            return Violation(
                **common,
                violation_type="altitude_below",
                severity=geofence.severity,
                message=f"Vehicle altitude {alt}m below minimum {geofence.altitude_min}m in {geofence.name}",
            )
        if geofence.altitude_max is not None and alt > geofence.altitude_max:
            return Violation(
                **common,
                violation_type="altitude_above",
                severity=geofence.severity,
                message=f"Vehicle altitude {alt}m above maximum {geofence.altitude_max}m in {geofence.name}",
            )

    vertices = geofence.vertices
    inside = point_in_polygon(lat, lng, vertices)

    if geofence.type == "exclusion" and inside:
        violation_type = "exclusion_violation"
        message = f"Vehicle inside {geofence.restriction_type} zone: {geofence.name}"
    elif geofence.type == "inclusion" and not inside:
        violation_type = "inclusion_violation"
        message = f"Vehicle outside authorized zone: {geofence.name}"
    else:
        return None

    # Only breaches close to the boundary are reported
    distance = distance_to_polygon_edge_m(lat, lng, vertices)
    if distance < emergency_buffer:
        proximity_severity = "critical"
    elif distance < warning_buffer:
        proximity_severity = "warning"
    else:
        return None

    return Violation(
        **common,
        violation_type=violation_type,
        severity=max_severity(geofence.severity, proximity_severity),
        message=message,
        distance_m=round(distance, 1),
    )


def violation_from_row(row: GeofenceViolation) -> Violation:
    return Violation(
        id=row.id,
        vehicle_id=row.vehicle_id,
        geofence_id=row.geofence_id,
        geofence_name=row.geofence_name,
        violation_type=row.violation_type,
        severity=row.severity,
        message=row.message,
        restriction_type=row.restriction_type,
        distance_m=row.distance_m,
        position=row.position,
        vehicle_status=row.vehicle_status or {},
        timestamp=row.timestamp,
    )


class GeofenceMonitor:
    """Validates vehicle positions against the active geofence set."""

    def __init__(
        self,
        settings: Settings,
        telemetry: TelemetryClient,
        session_factory: async_sessionmaker[AsyncSession],
        alert_store: AlertStore,
        emergency: EmergencyProtocol,
        broadcaster: Broadcaster,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings
        self.telemetry = telemetry
        self.session_factory = session_factory
        self.alert_store = alert_store
        self.emergency = emergency
        self.broadcaster = broadcaster
        self.cooldowns = CooldownTracker(settings.geofence_violation_cooldown, clock)
        self.geofences: list[GeofenceSchema] = []

        self._task = PeriodicTask("geofence-validation", settings.geofence_check_interval, self.validate_all_positions)

        self.stats = {
            "total_checks": 0,
            "violations": 0,
            "suppressed": 0,
            "geometry_errors": 0,
            "last_validation": None,
            "avg_validation_ms": 0.0,
        }

    @property
    def is_running(self) -> bool:
        return self._task.running

    async def start(self):
        await self.reload_geofences()
        self._task.start()
        logger.info(f"Geofence monitor started with {len(self.geofences)} active geofences")

    async def stop(self):
        await self._task.stop()

    async def run_validation(self) -> bool:
        """Run one validation tick, skipping if one is already in flight."""
        return await self._task.run_once()

    async def reload_geofences(self) -> int:
        """Replace the in-memory set with the active geofences from the database."""
        try:
            async with self.session_factory() as db:
                result = await db.execute(select(Geofence).where(Geofence.active.is_(True)))
                rows = result.scalars().all()
        except Exception as e:
            logger.error(f"Failed to load geofences, keeping {len(self.geofences)} cached: {e}")
            return len(self.geofences)

        loaded = []
        for row in rows:
            try:
                geofence = GeofenceSchema.model_validate(row)
            except ValidationError as e:
                logger.warning(f"Skipping malformed geofence {row.id}: {e}")
                continue
            if len(geofence.coordinates) < 3:
                logger.warning(f"Skipping degenerate geofence {row.id} ({row.name}): fewer than 3 vertices")
                continue
            loaded.append(geofence)

        self.geofences = evaluation_order(loaded)
        logger.info(f"Loaded {len(self.geofences)} active geofences")
        return len(self.geofences)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    async def get_vehicle_positions(self) -> list[VehicleSnapshot]:
        """Snapshots with a valid position no older than the configured max age."""
        now = utcnow()
        positions = []
        for snapshot in await self.telemetry.get_all_snapshots():
            if not is_valid_position(snapshot.latitude, snapshot.longitude):
                logger.debug(f"No usable position for {snapshot.vehicle_id}")
                continue
            age = (now - snapshot.timestamp).total_seconds()
            if age > self.settings.telemetry_max_age:
                logger.debug(f"Stale position for {snapshot.vehicle_id} ({age:.0f}s old)")
                continue
            positions.append(snapshot)
        return positions

    def evaluate_vehicle(
        self, snapshot: VehicleSnapshot, geofences: Optional[list[GeofenceSchema]] = None
    ) -> list[Violation]:
        """Violations for one vehicle that are not in cooldown."""
        violations = []
        for geofence in self.geofences if geofences is None else geofences:
            try:
                violation = check_violation(
                    snapshot,
                    geofence,
                    self.settings.emergency_buffer_distance,
                    self.settings.warning_buffer_distance,
                )
            except Exception as e:
                self.stats["geometry_errors"] += 1
                logger.error(f"Geofence check failed for {snapshot.vehicle_id} against {geofence.id}: {e}")
                continue

            if violation is None:
                continue
            if not self.cooldowns.try_acquire((snapshot.vehicle_id, geofence.id)):
                self.stats["suppressed"] += 1
                continue
            violations.append(violation)
        return violations

    async def validate_all_positions(self):
        started = time.perf_counter()
        try:
            snapshots = await self.get_vehicle_positions()
        except DependencyError as e:
            logger.error(f"Geofence validation skipped: {e}")
            return

        geofences = self.geofences
        for snapshot in snapshots:
            for violation in self.evaluate_vehicle(snapshot, geofences):
                try:
                    await self.process_violation(violation)
                except Exception as e:
                    logger.error(f"Failed to process violation {violation.id}: {e}", exc_info=True)

        elapsed_ms = (time.perf_counter() - started) * 1000
        checks = self.stats["total_checks"]
        self.stats["avg_validation_ms"] = (self.stats["avg_validation_ms"] * checks + elapsed_ms) / (checks + 1)
        self.stats["total_checks"] = checks + 1
        self.stats["last_validation"] = utcnow().isoformat()

    async def process_violation(self, violation: Violation) -> Alert:
        alert = Alert(
            id=violation.id,
            vehicle_id=violation.vehicle_id,
            severity=violation.severity,
            type="geofence_violation",
            category="geofence",
            message=violation.message,
            details={
                "geofence_id": violation.geofence_id,
                "geofence_name": violation.geofence_name,
                "violation_type": violation.violation_type,
                "restriction_type": violation.restriction_type,
                "distance_m": violation.distance_m,
                "position": violation.position,
                "vehicle_status": violation.vehicle_status,
            },
            source="geofence_monitor",
        )
        await self.alert_store.create_alert(alert)
        await self._store_violation(violation)
        await self.broadcaster.broadcast("geofence_violation", violation.model_dump(mode="json"))
        self.stats["violations"] += 1

        if violation.severity == "critical":
            trigger_type, action = EMERGENCY_RESPONSES.get(violation.restriction_type, DEFAULT_RESPONSE)
            await self.emergency.trigger(violation.vehicle_id, EmergencyTrigger(
                trigger_type=trigger_type,
                action=action,
                reason=violation.message,
                alert=alert,
            ))
        return alert

    async def _store_violation(self, violation: Violation):
        data = violation.model_dump(mode="json")
        try:
            async with self.session_factory() as db:
                db.add(GeofenceViolation(
                    id=violation.id,
                    vehicle_id=violation.vehicle_id,
                    geofence_id=violation.geofence_id,
                    geofence_name=violation.geofence_name,
                    restriction_type=violation.restriction_type,
                    violation_type=violation.violation_type,
                    severity=violation.severity,
                    message=violation.message,
                    distance_m=violation.distance_m,
                    position=data["position"],
                    vehicle_status=data["vehicle_status"],
                    timestamp=violation.timestamp,
                ))
                await db.commit()
        except Exception as e:
            logger.warning(f"Failed to store geofence violation {violation.id}: {e}")

    # ------------------------------------------------------------------
    # Management
    # ------------------------------------------------------------------

    async def list_geofences(self, active_only: bool = False) -> list[GeofenceSchema]:
        query = select(Geofence).order_by(Geofence.created_at)
        if active_only:
            query = query.where(Geofence.active.is_(True))
        async with self.session_factory() as db:
            result = await db.execute(query)
            return [GeofenceSchema.model_validate(row) for row in result.scalars().all()]

    async def get_geofence(self, geofence_id: str) -> GeofenceSchema:
        async with self.session_factory() as db:
            row = await db.get(Geofence, geofence_id)
        if row is None:
            raise NotFoundError(f"Geofence {geofence_id} not found")
        return GeofenceSchema.model_validate(row)

    async def create_geofence(self, data: GeofenceCreate) -> GeofenceSchema:
        row = Geofence(id=new_id(), **data.model_dump(mode="json"))
        async with self.session_factory() as db:
            db.add(row)
            await db.commit()

        logger.info(f"Created geofence {row.id} ({row.name})")
        await self.reload_geofences()
        return GeofenceSchema.model_validate(row)

    async def update_geofence(self, geofence_id: str, data: GeofenceUpdate) -> GeofenceSchema:
        changes = data.model_dump(mode="json", exclude_unset=True)
        async with self.session_factory() as db:
            row = await db.get(Geofence, geofence_id)
            if row is None:
                raise NotFoundError(f"Geofence {geofence_id} not found")

            for field, value in changes.items():
                setattr(row, field, value)
            if (row.altitude_min is not None and row.altitude_max is not None
                    and row.altitude_min > row.altitude_max):
                raise ValueError("altitude_min must not exceed altitude_max")
            row.updated_at = utcnow()
            await db.commit()

        logger.info(f"Updated geofence {geofence_id}: {sorted(changes)}")
        await self.reload_geofences()
        return GeofenceSchema.model_validate(row)

    async def delete_geofence(self, geofence_id: str):
        async with self.session_factory() as db:
            row = await db.get(Geofence, geofence_id)
            if row is None:
                raise NotFoundError(f"Geofence {geofence_id} not found")
            await db.delete(row)
            await db.commit()

        logger.info(f"Deleted geofence {geofence_id}")
        await self.reload_geofences()

    async def get_violations(
        self,
        vehicle_id: Optional[str] = None,
        geofence_id: Optional[str] = None,
        limit: int = 100,
    ) -> list[Violation]:
        """Stored violations, newest first."""
        query = select(GeofenceViolation).order_by(GeofenceViolation.timestamp.desc()).limit(limit)
        if vehicle_id:
            query = query.where(GeofenceViolation.vehicle_id == vehicle_id)
        if geofence_id:
            query = query.where(GeofenceViolation.geofence_id == geofence_id)

        async with self.session_factory() as db:
            result = await db.execute(query)
            return [violation_from_row(row) for row in result.scalars().all()]

    def get_stats(self) -> dict:
        return {
            "running": self.is_running,
            **self.stats,
            "active_geofences": len(self.geofences),
            "active_cooldowns": self.cooldowns.active_count(),
            "config": {
                "check_interval": self.settings.geofence_check_interval,
                "violation_cooldown": self.settings.geofence_violation_cooldown,
                "emergency_buffer": self.settings.emergency_buffer_distance,
                "warning_buffer": self.settings.warning_buffer_distance,
                "telemetry_max_age": self.settings.telemetry_max_age,
            },
        }
