"""Unit tests for request schemas"""
import pytest
from pydantic import ValidationError

from fleet_safety.schemas import GeofenceUpdate


class TestGeofenceUpdate:
    """Tests for partial geofence updates"""

    @pytest.mark.parametrize("field", ["name", "type", "coordinates", "restriction_type", "severity", "active"])
    def test_null_required_column_rejected(self, field):
        """Test an explicit null for a required column is refused"""
        with pytest.raises(ValidationError):
            GeofenceUpdate(**{field: None})

    def test_nullable_columns_accept_null(self):
        """Test altitude bounds and description can be cleared"""
        update = GeofenceUpdate(altitude_min=None, altitude_max=None, description=None)

        assert update.model_dump(exclude_unset=True) == {
            "altitude_min": None,
            "altitude_max": None,
            "description": None,
        }

    def test_omitted_fields_not_set(self):
        """Test only the fields given are part of the update"""
        update = GeofenceUpdate(name="Zone B")

        assert update.model_dump(exclude_unset=True) == {"name": "Zone B"}
