"""Integration tests for the alert store"""
import pytest

from fleet_safety.core.exceptions import NotFoundError
from fleet_safety.schemas import Alert, AlertCreate


def battery_alert(vehicle_id="V1", severity="warning") -> Alert:
    return Alert(
        vehicle_id=vehicle_id,
        severity=severity,
        type="battery",
        category="battery",
        message=f"Battery {severity}",
        details={"battery_level": 22},
        source="battery_monitor",
    )


@pytest.mark.asyncio
class TestAlertStore:
    """Tests for AlertStore"""

    async def test_create_alert_stores_both_tiers(self, alert_store, drain_events):
        """Test a new alert is active, persisted and broadcast"""
        created = await alert_store.create_alert(battery_alert())

        active = await alert_store.get_active_alerts()
        history = await alert_store.get_alert_history()
        assert [a.id for a in active] == [created.id]
        assert [a.id for a in history] == [created.id]
        assert history[0].details == {"battery_level": 22}

        events = drain_events()
        assert [e["type"] for e in events] == ["safety_alert"]
        assert events[0]["data"]["id"] == created.id

    async def test_cache_outage_is_not_fatal(self, alert_store, fake_redis):
        """Test the durable record is still written when the cache is down"""
        fake_redis.fail = True
        created = await alert_store.create_alert(battery_alert())
        fake_redis.fail = False

        history = await alert_store.get_alert_history()
        assert [a.id for a in history] == [created.id]
        assert await alert_store.get_active_alerts() == []

    async def test_filter_by_vehicle(self, alert_store):
        """Test active and historical queries filter by vehicle"""
        await alert_store.create_alert(battery_alert("V1"))
        await alert_store.create_alert(battery_alert("V2"))

        assert [a.vehicle_id for a in await alert_store.get_active_alerts("V2")] == ["V2"]
        assert [a.vehicle_id for a in await alert_store.get_alert_history(vehicle_id="V1")] == ["V1"]

    async def test_acknowledge(self, alert_store, drain_events):
        """Test acknowledging sets flags and keeps the alert active"""
        created = await alert_store.create_alert(battery_alert())
        drain_events()

        acked = await alert_store.acknowledge_alert(created.id, "operator-1")

        assert acked.acknowledged is True
        assert acked.acknowledged_by == "operator-1"
        assert acked.message == created.message
        active = await alert_store.get_active_alerts()
        assert active[0].acknowledged is True
        assert drain_events()[0]["type"] == "alert_acknowledged"

    async def test_resolve_removes_from_active(self, alert_store):
        """Test resolving keeps the record but drops it from the active set"""
        created = await alert_store.create_alert(battery_alert())

        resolved = await alert_store.resolve_alert(created.id, "operator-1", "Battery swapped")

        assert resolved.resolved is True
        assert resolved.resolution == "Battery swapped"
        assert await alert_store.get_active_alerts() == []
        history = await alert_store.get_alert_history()
        assert history[0].resolved is True
        assert history[0].resolved_by == "operator-1"
        assert await alert_store.get_alert_history(include_resolved=False) == []

    async def test_unknown_alert(self, alert_store):
        """Test operations on a missing alert raise NotFoundError"""
        with pytest.raises(NotFoundError):
            await alert_store.acknowledge_alert("missing", "operator-1")
        with pytest.raises(NotFoundError):
            await alert_store.resolve_alert("missing", "operator-1")
        with pytest.raises(NotFoundError):
            await alert_store.get_alert("missing")

    async def test_custom_alert(self, alert_store):
        """Test operator-raised alerts are tagged as manual"""
        created = await alert_store.create_custom_alert(AlertCreate(
            severity="warning", message="Bird activity near pad 3", details={"pad": 3},
        ))

        fetched = await alert_store.get_alert(created.id)
        assert fetched.source == "manual"
        assert fetched.category == "custom"
        assert fetched.vehicle_id is None

    async def test_second_resolution_keeps_first(self, alert_store, drain_events):
        """Test resolving twice leaves the original resolver and text in place"""
        created = await alert_store.create_alert(battery_alert())
        await alert_store.resolve_alert(created.id, "operator-1", "Battery swapped")
        drain_events()

        again = await alert_store.resolve_alert(created.id, "operator-2", "Rechecked")

        assert again.resolved_by == "operator-1"
        assert again.resolution == "Battery swapped"
        history = await alert_store.get_alert_history()
        assert history[0].resolved_by == "operator-1"
        assert history[0].resolution == "Battery swapped"
        assert drain_events() == []

    async def test_second_acknowledgement_keeps_first(self, alert_store):
        """Test acknowledging twice leaves the original acknowledger in place"""
        created = await alert_store.create_alert(battery_alert())
        first = await alert_store.acknowledge_alert(created.id, "operator-1")

        again = await alert_store.acknowledge_alert(created.id, "operator-2")

        assert again.acknowledged_by == "operator-1"
        assert again.acknowledged_at == first.acknowledged_at
        history = await alert_store.get_alert_history()
        assert history[0].acknowledged_by == "operator-1"
