import pytest
from datetime import datetime, timezone, timedelta

from proxmox2mqtt.utils.datetime_utils import parse_local_timestamp, serialize_datetime, utc_now_iso

# ==========================================
# Datetime Utils Tests
# ==========================================

@pytest.mark.unit
class TestDatetimeUtils:
    def test_serialize_none(self):
        """Test serializing None returns None"""
        assert serialize_datetime(None) is None

    def test_serialize_naive_datetime(self):
        """Test naive datetime is treated as UTC"""
        dt = datetime(2025, 1, 1, 12, 0, 0)
        assert serialize_datetime(dt) == "2025-01-01T12:00:00+00:00"

    def test_serialize_aware_datetime(self):
        """Test aware datetime is converted to UTC"""
        tz_plus_1 = timezone(timedelta(hours=1))
        dt = datetime(2025, 1, 1, 13, 0, 0, tzinfo=tz_plus_1)
        assert serialize_datetime(dt) == "2025-01-01T12:00:00+00:00"

    def test_utc_now_iso(self):
        assert utc_now_iso().endswith("+00:00")

    def test_parse_local_timestamp(self):
        expected = datetime(2024, 3, 1, 2, 0, 0).timestamp()
        assert parse_local_timestamp("2024-03-01 02:00:00") == expected

    @pytest.mark.parametrize("value", ["", "yesterday", "2024-13-01 02:00:00", "2024-03-01T02:00:00"])
    def test_parse_local_timestamp_invalid(self, value):
        assert parse_local_timestamp(value) is None
