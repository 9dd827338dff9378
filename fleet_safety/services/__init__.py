"""Services package."""
from fleet_safety.services.broadcast import Broadcaster, RedisBroadcaster
from fleet_safety.services.notifications import NotificationManager
from fleet_safety.services.cooldowns import CooldownTracker
from fleet_safety.services.telemetry import TelemetryClient
from fleet_safety.services.fleet_actions import MissionServiceClient, CoordinationServiceClient
from fleet_safety.services.alerts import AlertStore
from fleet_safety.services.emergency import EmergencyProtocol
from fleet_safety.services.battery import BatteryMonitor, classify_battery, calculate_battery_trend
from fleet_safety.services.geofence import GeofenceMonitor, check_violation
from fleet_safety.services.safety import SafetyMonitor, calculate_system_status

__all__ = [
    "Broadcaster",
    "RedisBroadcaster",
    "NotificationManager",
    "CooldownTracker",
    "TelemetryClient",
    "MissionServiceClient",
    "CoordinationServiceClient",
    "AlertStore",
    "EmergencyProtocol",
    "BatteryMonitor",
    "classify_battery",
    "calculate_battery_trend",
    "GeofenceMonitor",
    "check_violation",
    "SafetyMonitor",
    "calculate_system_status",
]
