"""
Client for the telemetry service's latest-snapshot endpoints.
"""
import logging
from typing import Optional

import httpx
from pydantic import ValidationError

from fleet_safety.core.exceptions import DependencyError
from fleet_safety.schemas import VehicleSnapshot

logger = logging.getLogger(__name__)


class TelemetryClient:
    """Fetches current vehicle snapshots over HTTP."""

    def __init__(self, base_url: str, http: httpx.AsyncClient, timeout: float = 5.0):
        self.base_url = base_url.rstrip("/")
        self.http = http
        self.timeout = timeout

    async def get_all_snapshots(self) -> list[VehicleSnapshot]:
        """
        Latest snapshot for every vehicle the telemetry service knows about.

        Entries that fail validation are logged and dropped. Raises
        DependencyError if the service cannot be reached.
        """
        url = f"{self.base_url}/api/v1/telemetry/current"
        try:
            response = await self.http.get(url, timeout=self.timeout)
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise DependencyError(f"Telemetry fetch failed: {e}") from e

        if isinstance(payload, list):
            entries = payload
        else:
            entries = payload.get("vehicles") or payload.get("drones") or []

        snapshots = []
        for entry in entries:
            snapshot = self._parse(entry)
            if snapshot:
                snapshots.append(snapshot)
        return snapshots

    async def get_snapshot(self, vehicle_id: str) -> Optional[VehicleSnapshot]:
        """Latest snapshot for one vehicle, or None if unknown."""
        url = f"{self.base_url}/api/v1/telemetry/{vehicle_id}/current"
        try:
            response = await self.http.get(url, timeout=self.timeout)
            if response.status_code == 404:
                return None
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise DependencyError(f"Telemetry fetch for {vehicle_id} failed: {e}") from e

        if isinstance(payload, dict):
            payload.setdefault("vehicle_id", vehicle_id)
        return self._parse(payload)

    @staticmethod
    def _parse(entry) -> Optional[VehicleSnapshot]:
        if not isinstance(entry, dict):
            logger.warning(f"Skipping non-object telemetry entry: {entry!r}")
            return None
        try:
            return VehicleSnapshot.model_validate(entry)
        except ValidationError as e:
            logger.warning(f"Skipping malformed telemetry entry {entry.get('vehicle_id') or entry.get('droneId')}: {e}")
            return None
