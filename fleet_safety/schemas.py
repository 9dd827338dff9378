"""
Pydantic schemas for telemetry input, alerts, geofences and emergencies.
"""
import uuid
from datetime import datetime, timezone
from typing import Any, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from fleet_safety.core.utils import utcnow

Severity = Literal["critical", "warning", "info"]
GeofenceType = Literal["inclusion", "exclusion"]
RestrictionType = Literal["no_fly", "restricted", "emergency_only", "warning_only"]
ViolationType = Literal["altitude_below", "altitude_above", "exclusion_violation", "inclusion_violation"]
EmergencyStatus = Literal["active", "resolved", "timeout"]
EmergencyActionType = Literal["emergency_land", "return_to_base"]
SafetyLevel = Literal["safe", "caution", "warning", "critical"]

SEVERITY_RANK = {"info": 0, "warning": 1, "critical": 2}

FLYING_STATUSES = {"active", "in_flight"}


def new_id() -> str:
    return str(uuid.uuid4())


def max_severity(*severities: str) -> str:
    return max(severities, key=lambda s: SEVERITY_RANK.get(s, -1))


# ============================================================================
# Telemetry
# ============================================================================

class VehicleSnapshot(BaseModel):
    """Latest telemetry reading for one vehicle."""
    model_config = ConfigDict(populate_by_name=True)

    vehicle_id: str = Field(validation_alias=AliasChoices("vehicle_id", "droneId", "drone_id", "id"))
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    altitude: Optional[float] = None
    armed: bool = False
    mission_status: Optional[str] = Field(None, validation_alias=AliasChoices("mission_status", "status"))
    battery_level: Optional[float] = Field(None, validation_alias=AliasChoices("battery_level", "batteryLevel"))
    voltage: Optional[float] = None
    timestamp: datetime = Field(default_factory=utcnow)

    @field_validator("vehicle_id", mode="before")
    @classmethod
    def coerce_vehicle_id(cls, v: Any) -> str:
        if v is None or str(v).strip() == "":
            raise ValueError("vehicle id is required")
        return str(v)

    @field_validator("timestamp")
    @classmethod
    def naive_utc(cls, v: datetime) -> datetime:
        if v.tzinfo is not None:
            return v.astimezone(timezone.utc).replace(tzinfo=None)
        return v

    @property
    def is_flying(self) -> bool:
        return (self.mission_status or "").lower() in FLYING_STATUSES

    @property
    def position(self) -> dict:
        return {"lat": self.latitude, "lng": self.longitude, "alt": self.altitude}

    @property
    def status(self) -> dict:
        return {"armed": self.armed, "mission_status": self.mission_status}


# ============================================================================
# Geofences
# ============================================================================

class Coordinate(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class GeofenceCreate(BaseModel):
    """Request body for creating a geofence."""
    name: str = Field(..., min_length=1, max_length=255)
    type: GeofenceType
    coordinates: list[Coordinate] = Field(..., min_length=3)
    altitude_min: Optional[float] = None
    altitude_max: Optional[float] = None
    restriction_type: RestrictionType = "restricted"
    severity: Severity = "warning"
    active: bool = True
    created_by: str = "system"
    description: Optional[str] = None

    @model_validator(mode="after")
    def check_altitudes(self) -> "GeofenceCreate":
        if (self.altitude_min is not None and self.altitude_max is not None
                and self.altitude_min > self.altitude_max):
            raise ValueError("altitude_min must not exceed altitude_max")
        return self


class GeofenceUpdate(BaseModel):
    """Partial update; only fields that are set are applied."""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    type: Optional[GeofenceType] = None
    coordinates: Optional[list[Coordinate]] = Field(None, min_length=3)
    altitude_min: Optional[float] = None
    altitude_max: Optional[float] = None
    restriction_type: Optional[RestrictionType] = None
    severity: Optional[Severity] = None
    active: Optional[bool] = None
    description: Optional[str] = None

    @field_validator("name", "type", "coordinates", "restriction_type", "severity", "active")
    @classmethod
    def not_null(cls, v: Any) -> Any:
        if v is None:
            raise ValueError("may be omitted but not set to null")
        return v


class GeofenceSchema(BaseModel):
    """Geofence as held by the evaluator and returned to callers."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    type: GeofenceType
    coordinates: list[Coordinate]
    altitude_min: Optional[float] = None
    altitude_max: Optional[float] = None
    restriction_type: RestrictionType = "restricted"
    severity: Severity = "warning"
    active: bool = True
    created_by: str = "system"
    description: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    @property
    def vertices(self) -> list[tuple[float, float]]:
        return [(c.lat, c.lng) for c in self.coordinates]


class Violation(BaseModel):
    id: str = Field(default_factory=new_id)
    vehicle_id: str
    geofence_id: str
    geofence_name: str
    violation_type: ViolationType
    severity: Severity
    message: str
    restriction_type: RestrictionType
    distance_m: Optional[float] = None
    position: dict
    vehicle_status: dict = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)


# ============================================================================
# Alerts
# ============================================================================

class Alert(BaseModel):
    """Safety alert. Only acknowledgement and resolution fields change after creation."""
    id: str = Field(default_factory=new_id)
    vehicle_id: Optional[str] = None
    severity: Severity
    type: str
    category: str
    message: str
    details: dict = Field(default_factory=dict)
    source: str = "safety_service"
    created_at: datetime = Field(default_factory=utcnow)
    acknowledged: bool = False
    acknowledged_by: Optional[str] = None
    acknowledged_at: Optional[datetime] = None
    resolved: bool = False
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolution: Optional[str] = None


class AlertCreate(BaseModel):
    """Operator-raised alert."""
    vehicle_id: Optional[str] = None
    severity: Severity = "info"
    type: str = "custom"
    category: str = "custom"
    message: str = Field(..., min_length=1)
    details: dict = Field(default_factory=dict)


# ============================================================================
# Battery
# ============================================================================

class BatteryClassification(BaseModel):
    severity: Severity
    message: str
    action_required: bool


class BatteryTrend(BaseModel):
    vehicle_id: str
    declining: bool
    rate: float  # percent per minute
    predicted_minutes_to_critical: Optional[int] = None
    sample_count: int
    analyzed_at: datetime = Field(default_factory=utcnow)


class VehicleSafetyStatus(BaseModel):
    vehicle_id: str
    battery_level: float
    safety_level: SafetyLevel
    in_flight: bool
    recommendations: list[str] = Field(default_factory=list)
    last_check: datetime = Field(default_factory=utcnow)


# ============================================================================
# Emergencies
# ============================================================================

class EmergencyAction(BaseModel):
    action: str
    status: Literal["success", "failed"]
    timestamp: datetime = Field(default_factory=utcnow)
    details: str = ""


class EmergencyResolution(BaseModel):
    type: str = "manual"
    description: str = ""
    resolved_by: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class EmergencyTrigger(BaseModel):
    """Context handed to the orchestrator by an evaluator."""
    trigger_type: str
    action: EmergencyActionType
    reason: str
    alert: Alert


class Emergency(BaseModel):
    id: str = Field(default_factory=new_id)
    vehicle_id: str
    trigger_type: str
    severity: Severity = "critical"
    status: EmergencyStatus = "active"
    action: EmergencyActionType
    reason: str
    alert: dict = Field(default_factory=dict)
    actions: list[EmergencyAction] = Field(default_factory=list)
    resolution: Optional[EmergencyResolution] = None
    initiated_at: datetime = Field(default_factory=utcnow)
    timeout_seconds: float


# ============================================================================
# System status
# ============================================================================

class SystemSafetyStatus(BaseModel):
    overall_status: SafetyLevel
    critical_alerts: int = 0
    warning_alerts: int = 0
    total_alerts: int = 0
    vehicles_at_risk: int = 0
    active_vehicles: int = 0
    timestamp: datetime = Field(default_factory=utcnow)


class SystemHealth(BaseModel):
    overall: Literal["healthy", "degraded", "critical"] = "healthy"
    database: str = "unknown"
    cache: str = "unknown"
    services: dict[str, str] = Field(default_factory=dict)
    errors: list[str] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=utcnow)
