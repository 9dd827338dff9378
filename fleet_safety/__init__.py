"""Safety monitoring and emergency response engine for drone fleets."""

__version__ = "1.0.0"
