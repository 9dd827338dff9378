"""Integration tests for system status and health aggregation"""
import json

import pytest

from fleet_safety.core.cache import SYSTEM_HEALTH_KEY, SYSTEM_STATUS_KEY
from fleet_safety.schemas import Alert


@pytest.mark.asyncio
class TestSafetyStatus:
    """Tests for the fleet-wide status tick"""

    async def test_status_published(self, safety_monitor, alert_store, cache, fake_redis, drain_events):
        """Test status is derived from active alerts and vehicle risk and published"""
        await alert_store.create_alert(Alert(
            vehicle_id="V1", severity="warning", type="battery", category="battery", message="low",
        ))
        await cache.set_vehicle_status("V1", {"vehicle_id": "V1", "safety_level": "caution"})
        await cache.set_vehicle_status("V2", {"vehicle_id": "V2", "safety_level": "safe"})
        drain_events()

        status = await safety_monitor.perform_safety_check()

        assert status.overall_status == "caution"
        assert status.active_vehicles == 2
        published = json.loads(fake_redis.strings[SYSTEM_STATUS_KEY])
        assert published["overall_status"] == "caution"
        assert fake_redis.ttls[SYSTEM_STATUS_KEY] == 60
        assert [e["type"] for e in drain_events()] == ["system_safety_status"]

    async def test_cached_status_returned(self, safety_monitor):
        """Test the last computed status is reused"""
        first = await safety_monitor.get_system_safety_status()
        assert await safety_monitor.get_system_safety_status() is first


@pytest.mark.asyncio
class TestHealthCheck:
    """Tests for engine health reporting"""

    async def test_stopped_monitors_are_degraded(self, safety_monitor, fake_redis):
        """Test stopped monitors degrade health while stores are fine"""
        health = await safety_monitor.perform_health_check()

        assert health.database == "healthy"
        assert health.cache == "healthy"
        assert health.services["battery_monitor"] == "stopped"
        assert health.services["emergency_protocol"] == "running"
        assert health.overall == "degraded"
        assert json.loads(fake_redis.strings[SYSTEM_HEALTH_KEY])["overall"] == "degraded"

    async def test_cache_outage_is_critical(self, safety_monitor, fake_redis):
        """Test an unreachable cache marks the engine critical"""
        fake_redis.fail = True

        health = await safety_monitor.perform_health_check()

        assert health.cache == "critical"
        assert health.overall == "critical"
        assert any(error.startswith("Cache:") for error in health.errors)

    async def test_all_running_is_healthy(self, safety_monitor, battery_monitor, geofence_monitor):
        """Test health is healthy with every component running"""
        battery_monitor.start()
        await geofence_monitor.start()
        try:
            health = await safety_monitor.perform_health_check()
        finally:
            await battery_monitor.stop()
            await geofence_monitor.stop()

        assert health.overall == "healthy"
        assert health.errors == []

    async def test_cached_health_returned(self, safety_monitor):
        """Test the last health record is reused until the next check"""
        first = await safety_monitor.get_system_health()
        assert await safety_monitor.get_system_health() is first

    async def test_stats_aggregate_components(self, safety_monitor):
        """Test stats include every sub-component"""
        await safety_monitor.perform_health_check()

        stats = safety_monitor.get_stats()

        assert stats["health"] == "degraded"
        assert set(stats) >= {"alerts", "battery", "geofence", "emergency"}
        assert stats["emergency"]["config"]["timeout"] == 180
