"""
Emergency response orchestration.

An emergency is opened by a critical battery or geofence condition, runs a
fixed sequence of best-effort remote actions, and is then either resolved by
an operator or escalated when its timeout fires. Every state change for a
vehicle happens under that vehicle's lock, so trigger, resolve and timeout
can never interleave for the same emergency.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fleet_safety.core.config import Settings
from fleet_safety.core.exceptions import NotFoundError
from fleet_safety.models import EmergencyRecord
from fleet_safety.schemas import (
    Alert, Emergency, EmergencyAction, EmergencyResolution, EmergencyTrigger,
)
from fleet_safety.services.alerts import AlertStore
from fleet_safety.services.broadcast import Broadcaster
from fleet_safety.services.fleet_actions import CoordinationServiceClient, MissionServiceClient
from fleet_safety.services.notifications import NotificationManager

logger = logging.getLogger(__name__)

ActionStep = Callable[[Emergency], Awaitable[tuple[bool, str]]]

TIMEOUT_MESSAGE = "Emergency protocol timed out - operator intervention required"
NEARBY_MESSAGE = "Nearby vehicle in emergency landing - avoid area"


def emergency_to_row(emergency: Emergency) -> EmergencyRecord:
    data = emergency.model_dump(mode="json")
    return EmergencyRecord(
        id=emergency.id,
        vehicle_id=emergency.vehicle_id,
        trigger_type=emergency.trigger_type,
        severity=emergency.severity,
        status=emergency.status,
        action=emergency.action,
        reason=emergency.reason,
        alert=data["alert"],
        actions=data["actions"],
        resolution=data["resolution"],
        initiated_at=emergency.initiated_at,
    )


def emergency_from_row(row: EmergencyRecord, timeout_seconds: float) -> Emergency:
    return Emergency(
        id=row.id,
        vehicle_id=row.vehicle_id,
        trigger_type=row.trigger_type,
        severity=row.severity,
        status=row.status,
        action=row.action,
        reason=row.reason or "",
        alert=row.alert or {},
        actions=row.actions or [],
        resolution=row.resolution,
        initiated_at=row.initiated_at,
        timeout_seconds=timeout_seconds,
    )


class EmergencyProtocol:
    """Runs and tracks emergency responses, at most one active per vehicle."""

    def __init__(
        self,
        settings: Settings,
        alert_store: AlertStore,
        session_factory: async_sessionmaker[AsyncSession],
        broadcaster: Broadcaster,
        notifier: NotificationManager,
        mission: MissionServiceClient,
        coordination: CoordinationServiceClient,
    ):
        self.settings = settings
        self.alert_store = alert_store
        self.session_factory = session_factory
        self.broadcaster = broadcaster
        self.notifier = notifier
        self.mission = mission
        self.coordination = coordination

        self._active: dict[str, Emergency] = {}
        self._timeouts: dict[str, asyncio.Task] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self.running = False

        self.stats = {
            "triggered": 0,
            "duplicates_ignored": 0,
            "resolved": 0,
            "timed_out": 0,
            "failed_actions": 0,
        }

    def _lock_for(self, vehicle_id: str) -> asyncio.Lock:
        lock = self._locks.get(vehicle_id)
        if lock is None:
            lock = self._locks[vehicle_id] = asyncio.Lock()
        return lock

    async def start(self):
        self.running = True
        logger.info(
            f"Emergency protocol started (timeout {self.settings.emergency_timeout}s, "
            f"enabled={self.settings.emergency_response_enabled})"
        )

    async def stop(self):
        self.running = False
        tasks = list(self._timeouts.values())
        self._timeouts.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("Emergency protocol stopped")

    # ------------------------------------------------------------------
    # Trigger
    # ------------------------------------------------------------------

    async def trigger(self, vehicle_id: str, trigger: EmergencyTrigger) -> Optional[Emergency]:
        """
        Open an emergency for a vehicle.

        Returns the new emergency, or None if one is already active for the
        vehicle or automatic response is disabled.
        """
        if not self.settings.emergency_response_enabled:
            logger.warning(f"Emergency response disabled, ignoring {trigger.trigger_type} for {vehicle_id}")
            return None

        async with self._lock_for(vehicle_id):
            if vehicle_id in self._active:
                self.stats["duplicates_ignored"] += 1
                logger.warning(
                    f"Emergency already active for {vehicle_id}, ignoring {trigger.trigger_type}"
                )
                return None

            emergency = Emergency(
                vehicle_id=vehicle_id,
                trigger_type=trigger.trigger_type,
                action=trigger.action,
                reason=trigger.reason,
                alert=trigger.alert.model_dump(mode="json"),
                timeout_seconds=self.settings.emergency_timeout,
            )
            self._active[vehicle_id] = emergency
            self.stats["triggered"] += 1
            logger.critical(f"EMERGENCY PROTOCOL INITIATED for {vehicle_id}: {trigger.reason}")

            try:
                await self._record_alert(emergency)
                await self.broadcaster.broadcast("emergency_initiated", emergency.model_dump(mode="json"))

                for name, step in self._action_steps(emergency):
                    emergency.actions.append(await self._run_action(name, step, emergency))

                await self._persist(emergency)
            except BaseException:
                # An active emergency always has a timeout, even if the sequence was interrupted
                logger.error(
                    f"Emergency {emergency.id} for {vehicle_id} interrupted after "
                    f"{len(emergency.actions)} actions"
                )
                self._arm_timeout(emergency)
                raise
            self._arm_timeout(emergency)

            succeeded = sum(1 for a in emergency.actions if a.status == "success")
            logger.info(
                f"Emergency {emergency.id} for {vehicle_id}: "
                f"{succeeded}/{len(emergency.actions)} actions succeeded"
            )
            return emergency

    async def _record_alert(self, emergency: Emergency):
        alert = Alert(
            id=emergency.id,
            vehicle_id=emergency.vehicle_id,
            severity="critical",
            type="emergency",
            category="emergency_protocol",
            message=f"Emergency protocol initiated: {emergency.reason}",
            details={
                "trigger_type": emergency.trigger_type,
                "action": emergency.action,
                "triggering_alert": emergency.alert,
            },
            source="emergency_protocol",
        )
        try:
            await self.alert_store.create_alert(alert)
        except Exception as e:
            logger.error(f"Failed to record emergency alert for {emergency.vehicle_id}: {e}")

    def _action_steps(self, emergency: Emergency) -> list[tuple[str, ActionStep]]:
        if emergency.action == "emergency_land":
            landing = ("request_emergency_landing", self._request_landing)
        else:
            landing = ("request_return_to_base", self._request_return_to_base)
        return [
            ("abort_mission", self._abort_mission),
            landing,
            ("alert_nearby_vehicles", self._alert_nearby),
            ("notify_operators", self._notify_operators),
        ]

    async def _run_action(self, name: str, step: ActionStep, emergency: Emergency) -> EmergencyAction:
        try:
            ok, details = await step(emergency)
        except Exception as e:
            logger.error(f"Emergency action {name} for {emergency.vehicle_id} raised: {e}")
            ok, details = False, f"Error: {e}"

        if not ok:
            self.stats["failed_actions"] += 1
            logger.warning(f"Emergency action {name} failed for {emergency.vehicle_id}: {details}")
        return EmergencyAction(action=name, status="success" if ok else "failed", details=details)

    async def _abort_mission(self, emergency: Emergency) -> tuple[bool, str]:
        ok = await self.mission.abort_mission(emergency.vehicle_id, f"Emergency: {emergency.reason}")
        return ok, "Mission aborted" if ok else "Mission abort request failed"

    async def _request_landing(self, emergency: Emergency) -> tuple[bool, str]:
        ok = await self.coordination.request_emergency_landing(emergency.vehicle_id, emergency.reason)
        return ok, "Emergency landing requested" if ok else "Emergency landing request failed"

    async def _request_return_to_base(self, emergency: Emergency) -> tuple[bool, str]:
        ok = await self.coordination.request_return_to_base(emergency.vehicle_id, emergency.reason)
        return ok, "Return to base requested" if ok else "Return to base request failed"

    async def _alert_nearby(self, emergency: Emergency) -> tuple[bool, str]:
        count = await self.coordination.alert_nearby(
            emergency.vehicle_id, self.settings.nearby_alert_radius, NEARBY_MESSAGE
        )
        if count is None:
            return False, "Nearby vehicle alert failed"
        return True, f"Alerted {count} nearby vehicles"

    async def _notify_operators(self, emergency: Emergency) -> tuple[bool, str]:
        title = f"DRONE EMERGENCY - {emergency.vehicle_id}"
        message = f"Emergency protocol initiated for {emergency.vehicle_id}. Reason: {emergency.reason}"
        await self.broadcaster.broadcast("operator_notification", {
            "type": "emergency",
            "severity": "critical",
            "title": title,
            "message": message,
            "emergency_id": emergency.id,
            "vehicle_id": emergency.vehicle_id,
            "requires_acknowledgment": True,
        })
        sent = await self.notifier.send(title, message, "emergency", key=f"emergency:{emergency.id}")
        return True, "Operators notified" + (" (external notification sent)" if sent else "")

    # ------------------------------------------------------------------
    # Timeout
    # ------------------------------------------------------------------

    def _arm_timeout(self, emergency: Emergency):
        self._timeouts[emergency.vehicle_id] = asyncio.create_task(
            self._timeout_after(emergency.vehicle_id, emergency.id, emergency.timeout_seconds),
            name=f"emergency-timeout-{emergency.id}",
        )

    def _cancel_timeout(self, vehicle_id: str):
        task = self._timeouts.pop(vehicle_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    def has_pending_timeout(self, vehicle_id: str) -> bool:
        task = self._timeouts.get(vehicle_id)
        return task is not None and not task.done()

    async def _timeout_after(self, vehicle_id: str, emergency_id: str, delay: float):
        await asyncio.sleep(delay)
        try:
            await self.handle_timeout(vehicle_id, emergency_id)
        except Exception as e:
            logger.error(f"Emergency timeout handling failed for {vehicle_id}: {e}", exc_info=True)

    async def handle_timeout(self, vehicle_id: str, emergency_id: str) -> bool:
        """
        Escalate an emergency whose timeout elapsed.

        No-op unless `emergency_id` is still the vehicle's active emergency.
        """
        async with self._lock_for(vehicle_id):
            emergency = self._active.get(vehicle_id)
            if emergency is None or emergency.id != emergency_id or emergency.status != "active":
                logger.debug(f"Timeout for emergency {emergency_id} ignored, no longer active")
                return False

            self._cancel_timeout(vehicle_id)
            emergency.status = "timeout"
            emergency.resolution = EmergencyResolution(
                type="timeout", description=TIMEOUT_MESSAGE, resolved_by="system"
            )
            del self._active[vehicle_id]
            self.stats["timed_out"] += 1
            logger.critical(f"EMERGENCY TIMEOUT for {vehicle_id} ({emergency_id}): {TIMEOUT_MESSAGE}")

            await self._persist(emergency)

        title = "EMERGENCY TIMEOUT - IMMEDIATE INTERVENTION REQUIRED"
        message = (
            f"Emergency for {vehicle_id} has not been resolved after "
            f"{emergency.timeout_seconds:.0f}s. Manual intervention required."
        )
        await self.broadcaster.broadcast("emergency_escalation", {
            "type": "emergency_timeout",
            "severity": "critical",
            "title": title,
            "message": message,
            "emergency_id": emergency_id,
            "vehicle_id": vehicle_id,
            "requires_immediate_action": True,
        })
        await self.notifier.send(title, message, "emergency", key=f"escalation:{emergency_id}")
        return True

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def resolve(self, vehicle_id: str, resolution: EmergencyResolution) -> Emergency:
        """Resolve the vehicle's active emergency. Raises NotFoundError if there is none."""
        return await self._resolve(vehicle_id, resolution)

    async def resolve_by_id(self, emergency_id: str, resolution: EmergencyResolution) -> Emergency:
        for vehicle_id, emergency in list(self._active.items()):
            if emergency.id == emergency_id:
                return await self._resolve(vehicle_id, resolution, emergency_id=emergency_id)
        raise NotFoundError(f"Active emergency {emergency_id} not found")

    async def _resolve(
        self,
        vehicle_id: str,
        resolution: EmergencyResolution,
        emergency_id: Optional[str] = None,
    ) -> Emergency:
        async with self._lock_for(vehicle_id):
            emergency = self._active.get(vehicle_id)
            if emergency is None or (emergency_id and emergency.id != emergency_id):
                raise NotFoundError(f"No active emergency for vehicle {vehicle_id}")

            self._cancel_timeout(vehicle_id)
            emergency.status = "resolved"
            emergency.resolution = resolution
            del self._active[vehicle_id]
            self.stats["resolved"] += 1
            logger.info(f"Emergency {emergency.id} for {vehicle_id} resolved: {resolution.description}")

            await self._persist(emergency)

        try:
            await self.alert_store.resolve_alert(
                emergency.id, resolution.resolved_by or "system", resolution.description
            )
        except Exception as e:
            logger.warning(f"Failed to resolve emergency alert {emergency.id}: {e}")

        await self.broadcaster.broadcast("emergency_resolved", {
            "emergency_id": emergency.id,
            "vehicle_id": vehicle_id,
            "resolution": resolution.model_dump(mode="json"),
        })
        return emergency

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_active_emergencies(self) -> list[Emergency]:
        return sorted(self._active.values(), key=lambda e: e.initiated_at, reverse=True)

    def get_vehicle_emergency(self, vehicle_id: str) -> Optional[Emergency]:
        return self._active.get(vehicle_id)

    async def get_emergency(self, emergency_id: str) -> Emergency:
        for emergency in self._active.values():
            if emergency.id == emergency_id:
                return emergency

        async with self.session_factory() as db:
            row = await db.get(EmergencyRecord, emergency_id)
        if row is None:
            raise NotFoundError(f"Emergency {emergency_id} not found")
        return emergency_from_row(row, self.settings.emergency_timeout)

    async def get_emergency_history(
        self, vehicle_id: Optional[str] = None, limit: Optional[int] = None
    ) -> list[Emergency]:
        """Past and current emergencies, most recent first."""
        query = (
            select(EmergencyRecord)
            .order_by(EmergencyRecord.initiated_at.desc())
            .limit(limit or self.settings.emergency_history_limit)
        )
        if vehicle_id:
            query = query.where(EmergencyRecord.vehicle_id == vehicle_id)

        async with self.session_factory() as db:
            result = await db.execute(query)
            return [
                emergency_from_row(row, self.settings.emergency_timeout)
                for row in result.scalars().all()
            ]

    async def _persist(self, emergency: Emergency):
        try:
            async with self.session_factory() as db:
                await db.merge(emergency_to_row(emergency))
                await db.commit()
        except Exception as e:
            logger.warning(f"Failed to persist emergency {emergency.id}: {e}")

    def get_stats(self) -> dict:
        return {
            "running": self.running,
            "active_emergencies": len(self._active),
            "armed_timeouts": sum(1 for t in self._timeouts.values() if not t.done()),
            **self.stats,
            "config": {
                "enabled": self.settings.emergency_response_enabled,
                "timeout": self.settings.emergency_timeout,
                "nearby_alert_radius": self.settings.nearby_alert_radius,
            },
        }
