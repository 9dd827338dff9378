"""
Clients for the mission and coordination services used during emergencies.

These calls are best-effort: transport and HTTP errors are logged and
reported as a failed result rather than raised.
"""
import logging
from typing import Optional

import httpx

logger = logging.getLogger(__name__)


async def _post(http: httpx.AsyncClient, url: str, payload: dict, timeout: float) -> Optional[dict]:
    """POST JSON and return the decoded body, or None on any failure."""
    try:
        response = await http.post(url, json=payload, timeout=timeout)
        response.raise_for_status()
    except httpx.HTTPStatusError as e:
        logger.warning(f"{url} returned {e.response.status_code}")
        return None
    except httpx.HTTPError as e:
        logger.warning(f"Request to {url} failed: {e}")
        return None

    try:
        body = response.json()
    except ValueError:
        body = {}
    return body if isinstance(body, dict) else {"result": body}


class MissionServiceClient:
    def __init__(self, base_url: str, http: httpx.AsyncClient, timeout: float = 5.0):
        self.base_url = base_url.rstrip("/")
        self.http = http
        self.timeout = timeout

    async def abort_mission(self, vehicle_id: str, reason: str) -> bool:
        body = await _post(
            self.http,
            f"{self.base_url}/api/v1/missions/abort/{vehicle_id}",
            {"reason": reason, "emergency": True},
            self.timeout,
        )
        return body is not None


class CoordinationServiceClient:
    def __init__(self, base_url: str, http: httpx.AsyncClient, timeout: float = 5.0):
        self.base_url = base_url.rstrip("/")
        self.http = http
        self.timeout = timeout

    async def request_emergency_landing(self, vehicle_id: str, reason: str) -> bool:
        body = await _post(
            self.http,
            f"{self.base_url}/api/v1/coordination/emergency-landing",
            {"droneId": vehicle_id, "reason": reason, "priority": "emergency"},
            self.timeout,
        )
        return body is not None

    async def request_return_to_base(self, vehicle_id: str, reason: str) -> bool:
        body = await _post(
            self.http,
            f"{self.base_url}/api/v1/coordination/return-to-base",
            {"droneId": vehicle_id, "reason": reason, "priority": "emergency"},
            self.timeout,
        )
        return body is not None

    async def alert_nearby(self, vehicle_id: str, radius_m: float, message: str) -> Optional[int]:
        """Warn vehicles near `vehicle_id`. Returns how many were alerted, None on failure."""
        body = await _post(
            self.http,
            f"{self.base_url}/api/v1/coordination/alert-nearby",
            {
                "droneId": vehicle_id,
                "alertType": "emergency_landing",
                "radius": radius_m,
                "message": message,
            },
            self.timeout,
        )
        if body is None:
            return None
        alerted = body.get("alertedDrones") or body.get("alerted_vehicles") or []
        return len(alerted)
