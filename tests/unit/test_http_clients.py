"""Unit tests for the telemetry and fleet service HTTP clients"""
import json

import httpx
import pytest

from fleet_safety.core.exceptions import DependencyError
from fleet_safety.services.fleet_actions import CoordinationServiceClient, MissionServiceClient
from fleet_safety.services.telemetry import TelemetryClient


def client_for(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
class TestTelemetryClient:
    """Tests for TelemetryClient"""

    async def test_parses_vehicles_and_skips_malformed(self):
        """Test malformed entries are dropped without failing the batch"""
        def handler(request):
            assert request.url.path == "/api/v1/telemetry/current"
            return httpx.Response(200, json={"drones": [
                {"droneId": "V1", "latitude": 19.07, "longitude": 72.87, "altitude": 40,
                 "batteryLevel": 55, "status": "in_flight", "armed": True},
                {"droneId": "V2", "latitude": "not-a-number"},
                {"latitude": 19.0},
                "garbage",
            ]})

        async with client_for(handler) as http:
            snapshots = await TelemetryClient("http://telemetry", http).get_all_snapshots()

        assert [s.vehicle_id for s in snapshots] == ["V1"]
        assert snapshots[0].battery_level == 55
        assert snapshots[0].is_flying is True

    async def test_unreachable_raises_dependency_error(self):
        """Test transport failures surface as DependencyError"""
        def handler(request):
            raise httpx.ConnectError("connection refused")

        async with client_for(handler) as http:
            with pytest.raises(DependencyError):
                await TelemetryClient("http://telemetry", http).get_all_snapshots()

    async def test_server_error_raises_dependency_error(self):
        """Test 5xx responses surface as DependencyError"""
        async with client_for(lambda request: httpx.Response(503)) as http:
            with pytest.raises(DependencyError):
                await TelemetryClient("http://telemetry", http).get_all_snapshots()

    async def test_unknown_vehicle_returns_none(self):
        """Test a 404 for a single vehicle is not an error"""
        async with client_for(lambda request: httpx.Response(404)) as http:
            assert await TelemetryClient("http://telemetry", http).get_snapshot("V9") is None

    async def test_single_snapshot(self):
        """Test the vehicle id is filled in from the request"""
        def handler(request):
            assert request.url.path == "/api/v1/telemetry/V3/current"
            return httpx.Response(200, json={"latitude": 19.0, "longitude": 72.0, "battery_level": 90})

        async with client_for(handler) as http:
            snapshot = await TelemetryClient("http://telemetry", http).get_snapshot("V3")

        assert snapshot.vehicle_id == "V3"
        assert snapshot.is_flying is False


@pytest.mark.asyncio
class TestFleetActionClients:
    """Tests for mission and coordination clients"""

    async def test_abort_mission(self):
        """Test abort posts the reason with the emergency flag"""
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"success": True})

        async with client_for(handler) as http:
            ok = await MissionServiceClient("http://mission", http).abort_mission("V1", "battery")

        assert ok is True
        assert seen["path"] == "/api/v1/missions/abort/V1"
        assert seen["body"] == {"reason": "battery", "emergency": True}

    async def test_abort_mission_failure(self):
        """Test an HTTP error is reported as failure, not raised"""
        async with client_for(lambda request: httpx.Response(500)) as http:
            assert await MissionServiceClient("http://mission", http).abort_mission("V1", "x") is False

    async def test_landing_and_return_to_base(self):
        """Test landing and return-to-base hit their endpoints"""
        paths = []

        def handler(request):
            paths.append(request.url.path)
            return httpx.Response(200, json={})

        async with client_for(handler) as http:
            client = CoordinationServiceClient("http://coord", http)
            assert await client.request_emergency_landing("V1", "no fly") is True
            assert await client.request_return_to_base("V1", "boundary") is True

        assert paths == [
            "/api/v1/coordination/emergency-landing",
            "/api/v1/coordination/return-to-base",
        ]

    async def test_alert_nearby_counts_alerted(self):
        """Test the count of alerted vehicles is returned"""
        def handler(request):
            body = json.loads(request.content)
            assert body["radius"] == 1000
            return httpx.Response(200, json={"alertedDrones": ["V2", "V3"]})

        async with client_for(handler) as http:
            count = await CoordinationServiceClient("http://coord", http).alert_nearby("V1", 1000, "avoid")

        assert count == 2

    async def test_alert_nearby_unreachable(self):
        """Test an unreachable coordination service yields None"""
        def handler(request):
            raise httpx.ConnectError("down")

        async with client_for(handler) as http:
            assert await CoordinationServiceClient("http://coord", http).alert_nearby("V1", 1000, "x") is None
