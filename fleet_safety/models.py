"""
SQLAlchemy models for the safety engine's durable store.
"""
from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Index, JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from fleet_safety.core.database import Base
from fleet_safety.core.utils import utcnow


class Geofence(Base):
    """Polygonal region constraining or forbidding vehicle presence."""
    __tablename__ = "geofences"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[str] = mapped_column(String(20), nullable=False)  # inclusion, exclusion
    coordinates: Mapped[list] = mapped_column(JSON, nullable=False)  # [{"lat": .., "lng": ..}]
    altitude_min: Mapped[Optional[float]] = mapped_column(Float)
    altitude_max: Mapped[Optional[float]] = mapped_column(Float)
    restriction_type: Mapped[str] = mapped_column(String(20), default="restricted")
    severity: Mapped[str] = mapped_column(String(20), default="warning")
    active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    created_by: Mapped[str] = mapped_column(String(100), default="system")
    description: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class SafetyAlert(Base):
    """Durable record of every alert raised, kept for audit."""
    __tablename__ = "safety_alerts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    vehicle_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    alert_type: Mapped[str] = mapped_column(String(50), nullable=False)
    category: Mapped[str] = mapped_column(String(50), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    details: Mapped[Optional[dict]] = mapped_column(JSON)
    source: Mapped[str] = mapped_column(String(50), default="safety_service")
    acknowledged: Mapped[bool] = mapped_column(Boolean, default=False)
    acknowledged_by: Mapped[Optional[str]] = mapped_column(String(100))
    acknowledged_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    resolved: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    resolved_by: Mapped[Optional[str]] = mapped_column(String(100))
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    resolution: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)

    __table_args__ = (
        Index("idx_safety_alerts_vehicle_time", "vehicle_id", "created_at"),
    )


class GeofenceViolation(Base):
    """Geofence breach detected for a vehicle."""
    __tablename__ = "geofence_violations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    vehicle_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    geofence_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("geofences.id", ondelete="CASCADE"), index=True
    )
    geofence_name: Mapped[str] = mapped_column(String(255), nullable=False)
    restriction_type: Mapped[str] = mapped_column(String(20), nullable=False)
    violation_type: Mapped[str] = mapped_column(String(30), nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    distance_m: Mapped[Optional[float]] = mapped_column(Float)
    position: Mapped[dict] = mapped_column(JSON, nullable=False)
    vehicle_status: Mapped[Optional[dict]] = mapped_column(JSON)
    timestamp: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)


class EmergencyRecord(Base):
    """Automated emergency response and its outcome."""
    __tablename__ = "emergencies"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    vehicle_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    trigger_type: Mapped[str] = mapped_column(String(50), nullable=False)
    severity: Mapped[str] = mapped_column(String(20), default="critical")
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(30), nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(Text)
    alert: Mapped[Optional[dict]] = mapped_column(JSON)
    actions: Mapped[list] = mapped_column(JSON, default=list)
    resolution: Mapped[Optional[dict]] = mapped_column(JSON)
    initiated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
