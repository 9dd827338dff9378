"""
Battery safety monitoring.

Classifies each vehicle's battery level against tiered thresholds on a fast
cadence and looks for rapid discharge trends on a slower one.
"""
import logging
import time
from typing import Callable, Optional

from fleet_safety.core.cache import SafetyCache
from fleet_safety.core.config import Settings
from fleet_safety.core.exceptions import DependencyError, NotFoundError
from fleet_safety.core.tasks import PeriodicTask
from fleet_safety.core.utils import to_epoch, utcnow
from fleet_safety.schemas import (
    Alert, BatteryClassification, BatteryTrend, EmergencyTrigger,
    VehicleSafetyStatus, VehicleSnapshot,
)
from fleet_safety.services.alerts import AlertStore
from fleet_safety.services.cooldowns import CooldownTracker
from fleet_safety.services.emergency import EmergencyProtocol
from fleet_safety.services.telemetry import TelemetryClient

logger = logging.getLogger(__name__)

STATUS_HISTORY_SIZE = 20


def classify_battery(level: float, in_flight: bool, thresholds: dict) -> Optional[BatteryClassification]:
    """Map a battery level to an alert tier, or None above the low threshold."""
    if level <= thresholds["emergency"]:
        return BatteryClassification(
            severity="critical",
            message=f"EMERGENCY: Battery critically low at {level}%. Immediate landing required.",
            action_required=True,
        )
    if level <= thresholds["critical"]:
        advice = "Return to base immediately." if in_flight else "Do not launch mission."
        return BatteryClassification(
            severity="critical",
            message=f"CRITICAL: Battery at {level}%. {advice}",
            action_required=in_flight,
        )
    if level <= thresholds["warning"]:
        advice = "Consider returning to base." if in_flight else "Charge before next mission."
        return BatteryClassification(
            severity="warning",
            message=f"WARNING: Battery low at {level}%. {advice}",
            action_required=False,
        )
    if level <= thresholds["low"]:
        return BatteryClassification(
            severity="info",
            message=f"INFO: Battery at {level}%. Monitor closely.",
            action_required=False,
        )
    return None


def calculate_safety_status(
    vehicle_id: str, level: float, in_flight: bool, thresholds: dict
) -> VehicleSafetyStatus:
    if level <= thresholds["critical"]:
        safety_level = "critical"
        recommendations = (["Land immediately", "Return to nearest safe landing zone"]
                           if in_flight else ["Do not launch", "Charge battery"])
    elif level <= thresholds["warning"]:
        safety_level = "warning"
        recommendations = (["Return to base soon", "Avoid extending the mission"]
                           if in_flight else ["Charge before next mission"])
    elif level <= thresholds["low"]:
        safety_level = "caution"
        recommendations = ["Monitor battery level closely"]
    else:
        safety_level = "safe"
        recommendations = []

    return VehicleSafetyStatus(
        vehicle_id=vehicle_id,
        battery_level=level,
        safety_level=safety_level,
        in_flight=in_flight,
        recommendations=recommendations,
    )


def calculate_battery_trend(
    vehicle_id: str, samples: list[dict], critical_threshold: float, max_samples: int = 10
) -> BatteryTrend:
    """
    Average discharge rate over the most recent samples.

    Samples are dicts with epoch `timestamp` and `level`, oldest first.
    """
    recent = sorted(samples, key=lambda s: s["timestamp"])[-max_samples:]
    first, last = recent[0], recent[-1]
    total_change = last["level"] - first["level"]
    total_minutes = (last["timestamp"] - first["timestamp"]) / 60

    if total_minutes <= 0:
        return BatteryTrend(vehicle_id=vehicle_id, declining=False, rate=0.0, sample_count=len(recent))

    rate = round(abs(total_change / total_minutes), 2)
    declining = total_change < 0

    predicted = None
    if declining and rate > 0:
        minutes_left = (last["level"] - critical_threshold) / rate
        if minutes_left > 0:
            predicted = round(minutes_left)

    return BatteryTrend(
        vehicle_id=vehicle_id,
        declining=declining,
        rate=rate,
        predicted_minutes_to_critical=predicted,
        sample_count=len(recent),
    )


class BatteryMonitor:
    """Periodic battery classification and trend analysis."""

    def __init__(
        self,
        settings: Settings,
        telemetry: TelemetryClient,
        cache: SafetyCache,
        alert_store: AlertStore,
        emergency: EmergencyProtocol,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings
        self.telemetry = telemetry
        self.cache = cache
        self.alert_store = alert_store
        self.emergency = emergency
        self.thresholds = settings.battery_thresholds
        self.cooldowns = CooldownTracker(settings.battery_alert_cooldown, clock)

        self._check_task = PeriodicTask("battery-check", settings.battery_check_interval, self.perform_battery_check)
        self._trend_task = PeriodicTask("battery-trend", settings.battery_trend_interval, self.analyze_trends)

        self.stats = {
            "checks": 0,
            "vehicles_checked": 0,
            "vehicles_skipped": 0,
            "alerts_created": 0,
            "alerts_suppressed": 0,
            "trend_alerts": 0,
            "emergencies_triggered": 0,
            "last_check": None,
        }

    @property
    def is_running(self) -> bool:
        return self._check_task.running

    def start(self):
        self._check_task.start()
        self._trend_task.start()
        logger.info(f"Battery monitor started with thresholds {self.thresholds}")

    async def stop(self):
        await self._check_task.stop()
        await self._trend_task.stop()

    async def run_check(self) -> bool:
        """Run one classification tick, skipping if one is already in flight."""
        return await self._check_task.run_once()

    async def run_trend_analysis(self) -> bool:
        return await self._trend_task.run_once()

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    async def perform_battery_check(self):
        try:
            snapshots = await self.telemetry.get_all_snapshots()
        except DependencyError as e:
            logger.error(f"Battery check skipped: {e}")
            return

        self.stats["checks"] += 1
        self.stats["last_check"] = utcnow().isoformat()

        for snapshot in snapshots:
            try:
                await self.process_vehicle(snapshot)
            except Exception as e:
                self.stats["vehicles_skipped"] += 1
                logger.error(f"Battery check failed for {snapshot.vehicle_id}: {e}", exc_info=True)

    async def process_vehicle(self, snapshot: VehicleSnapshot) -> Optional[Alert]:
        level = snapshot.battery_level
        if level is None or not (0 <= level <= 100):
            self.stats["vehicles_skipped"] += 1
            logger.warning(f"Skipping {snapshot.vehicle_id}: invalid battery level {level!r}")
            return None

        in_flight = snapshot.is_flying
        self.stats["vehicles_checked"] += 1

        await self.cache.add_battery_sample(snapshot.vehicle_id, {
            "timestamp": to_epoch(snapshot.timestamp),
            "level": level,
            "voltage": snapshot.voltage,
        })

        status = calculate_safety_status(snapshot.vehicle_id, level, in_flight, self.thresholds)
        await self.cache.set_vehicle_status(snapshot.vehicle_id, status.model_dump(mode="json"))

        classification = classify_battery(level, in_flight, self.thresholds)
        if classification is None:
            return None

        return await self.create_battery_alert(
            snapshot.vehicle_id,
            classification,
            in_flight=in_flight,
            details={
                "battery_level": level,
                "voltage": snapshot.voltage,
                "mission_status": snapshot.mission_status,
                "position": snapshot.position,
            },
        )

    async def create_battery_alert(
        self,
        vehicle_id: str,
        classification: BatteryClassification,
        in_flight: bool,
        details: dict,
        alert_type: str = "battery",
    ) -> Optional[Alert]:
        """
        Raise a battery alert unless one of the same severity fired recently.

        An action-required alert for a flying vehicle opens an emergency
        before this returns.
        """
        if not self.cooldowns.try_acquire((vehicle_id, classification.severity)):
            self.stats["alerts_suppressed"] += 1
            logger.debug(f"Battery {classification.severity} alert for {vehicle_id} in cooldown")
            return None

        alert = Alert(
            vehicle_id=vehicle_id,
            severity=classification.severity,
            type=alert_type,
            category="battery",
            message=classification.message,
            details={
                **details,
                "in_flight": in_flight,
                "action_required": classification.action_required,
                "thresholds": self.thresholds,
            },
            source="battery_monitor",
        )
        await self.alert_store.create_alert(alert)
        self.stats["alerts_created"] += 1

        if classification.action_required and in_flight:
            emergency = await self.emergency.trigger(vehicle_id, EmergencyTrigger(
                trigger_type="battery_critical",
                action="emergency_land",
                reason=classification.message,
                alert=alert,
            ))
            if emergency:
                self.stats["emergencies_triggered"] += 1
        return alert

    # ------------------------------------------------------------------
    # Trend analysis
    # ------------------------------------------------------------------

    async def analyze_trends(self):
        statuses = await self.cache.get_all_vehicle_statuses()
        for vehicle_id in statuses:
            try:
                await self.analyze_vehicle_trend(vehicle_id)
            except Exception as e:
                logger.error(f"Trend analysis failed for {vehicle_id}: {e}", exc_info=True)

    async def analyze_vehicle_trend(self, vehicle_id: str) -> Optional[BatteryTrend]:
        window = self.settings.battery_trend_window_minutes
        history = await self.cache.get_battery_history(vehicle_id, minutes=window)
        if len(history) < self.settings.battery_trend_min_samples:
            return None

        trend = calculate_battery_trend(
            vehicle_id, history, self.thresholds["critical"], self.settings.battery_trend_max_samples
        )
        await self.cache.set_battery_trend(vehicle_id, trend.model_dump(mode="json"), ttl=window * 60)

        if (trend.declining and trend.rate > self.settings.battery_trend_rate_threshold
                and trend.predicted_minutes_to_critical is not None):
            last_sample = max(history, key=lambda s: s["timestamp"])
            status = await self.cache.get_vehicle_status(vehicle_id) or {}
            alert = await self.create_battery_alert(
                vehicle_id,
                BatteryClassification(
                    severity="warning",
                    message=(
                        f"Battery declining rapidly at {trend.rate}%/min. "
                        f"Estimated {trend.predicted_minutes_to_critical} minutes to critical level."
                    ),
                    action_required=False,
                ),
                in_flight=status.get("in_flight", False),
                details={
                    "battery_level": last_sample["level"],
                    "rate": trend.rate,
                    "predicted_minutes_to_critical": trend.predicted_minutes_to_critical,
                    "sample_count": trend.sample_count,
                },
                alert_type="battery_trend",
            )
            if alert:
                self.stats["trend_alerts"] += 1
        return trend

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_battery_status(self, vehicle_id: str) -> dict:
        status = await self.cache.get_vehicle_status(vehicle_id)
        history = await self.cache.get_battery_history(vehicle_id)
        if status is None and not history:
            raise NotFoundError(f"No battery data for vehicle {vehicle_id}")

        return {
            "vehicle_id": vehicle_id,
            "status": status,
            "history": history[-STATUS_HISTORY_SIZE:],
            "trend": await self.cache.get_battery_trend(vehicle_id),
            "thresholds": self.thresholds,
        }

    async def get_all_battery_statuses(self) -> dict[str, dict]:
        """Battery status for every vehicle with a cached safety status, keyed by vehicle id."""
        statuses = await self.cache.get_all_vehicle_statuses()
        return {
            vehicle_id: await self.get_battery_status(vehicle_id)
            for vehicle_id in sorted(statuses)
        }

    def get_stats(self) -> dict:
        return {
            "running": self.is_running,
            **self.stats,
            "active_cooldowns": self.cooldowns.active_count(),
            "check_task": self._check_task.get_stats(),
            "trend_task": self._trend_task.get_stats(),
            "config": {
                "thresholds": self.thresholds,
                "check_interval": self.settings.battery_check_interval,
                "trend_interval": self.settings.battery_trend_interval,
                "alert_cooldown": self.settings.battery_alert_cooldown,
                "trend_rate_threshold": self.settings.battery_trend_rate_threshold,
            },
        }
