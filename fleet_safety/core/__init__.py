"""Core package containing configuration, database, cache, and utilities."""
from fleet_safety.core.config import get_settings, Settings
from fleet_safety.core.database import Base, create_engine, create_session_factory, init_db, close_db
from fleet_safety.core.cache import SafetyCache, create_redis
from fleet_safety.core.exceptions import (
    SafetyEngineError,
    NotFoundError,
    DependencyError,
    ConfigurationError,
)
from fleet_safety.core.tasks import PeriodicTask
from fleet_safety.core.utils import (
    utcnow,
    to_epoch,
    is_valid_position,
    haversine_m,
    point_in_polygon,
    distance_to_segment_m,
    distance_to_polygon_edge_m,
)

__all__ = [
    "get_settings",
    "Settings",
    "Base",
    "create_engine",
    "create_session_factory",
    "init_db",
    "close_db",
    "SafetyCache",
    "create_redis",
    "SafetyEngineError",
    "NotFoundError",
    "DependencyError",
    "ConfigurationError",
    "PeriodicTask",
    "utcnow",
    "to_epoch",
    "is_valid_position",
    "haversine_m",
    "point_in_polygon",
    "distance_to_segment_m",
    "distance_to_polygon_edge_m",
]
