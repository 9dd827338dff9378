"""
Exception hierarchy for the safety engine.
"""


class SafetyEngineError(Exception):
    """Base exception for safety engine errors."""


class NotFoundError(SafetyEngineError):
    """Requested alert, geofence or emergency does not exist."""


class DependencyError(SafetyEngineError):
    """An upstream dependency could not be reached."""


class ConfigurationError(SafetyEngineError):
    """Settings are invalid and the engine cannot start."""
