"""Unit tests for system-wide safety status labelling"""
from fleet_safety.schemas import Alert
from fleet_safety.services.safety import calculate_system_status


def alert(severity: str) -> Alert:
    return Alert(severity=severity, type="test", category="test", message=severity)


class TestCalculateSystemStatus:
    """Tests for calculate_system_status"""

    def test_safe(self):
        """Test no alerts and healthy vehicles is safe"""
        status = calculate_system_status([alert("info")], {"V1": {"safety_level": "safe"}})
        assert status.overall_status == "safe"
        assert status.total_alerts == 1
        assert status.active_vehicles == 1

    def test_any_critical_alert_is_critical(self):
        """Test a single critical alert makes the system critical"""
        status = calculate_system_status([alert("critical")], {})
        assert status.overall_status == "critical"
        assert status.critical_alerts == 1

    def test_vehicle_at_risk_is_critical(self):
        """Test a vehicle at warning level counts as at risk"""
        status = calculate_system_status([], {
            "V1": {"safety_level": "warning"},
            "V2": {"safety_level": "caution"},
        })
        assert status.overall_status == "critical"
        assert status.vehicles_at_risk == 1

    def test_more_than_two_warnings(self):
        """Test three warnings escalate to warning"""
        status = calculate_system_status([alert("warning")] * 3, {})
        assert status.overall_status == "warning"
        assert status.warning_alerts == 3

    def test_few_warnings_is_caution(self):
        """Test one or two warnings yield caution"""
        assert calculate_system_status([alert("warning")] * 2, {}).overall_status == "caution"
        assert calculate_system_status([alert("warning")], {}).overall_status == "caution"
