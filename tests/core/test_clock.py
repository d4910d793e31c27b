"""
Tests for the clock and the root exception.
"""

from datetime import datetime, timedelta, timezone

from core.clock import MockClock, SystemClock, from_unix, to_iso8601
from core.exceptions import RelayMonitorError, Severity, UpstreamError


NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


class TestMockClock:
    """Tests for MockClock."""

    def test_time_only_moves_on_request(self):
        clock = MockClock(NOW)

        assert clock.now() == NOW
        assert clock.now() == NOW

        clock.advance(30)
        clock.advance(minutes=1)

        assert clock.now() == NOW + timedelta(seconds=90)
        assert clock.unix_seconds() == int(NOW.timestamp()) + 90

    def test_naive_time_is_utc(self):
        clock = MockClock(datetime(2025, 3, 1, 12, 0))

        assert clock.now() == NOW

    def test_set_time(self):
        clock = MockClock(NOW)
        later = NOW + timedelta(days=1)

        clock.set_time(later)

        assert clock.timestamp() == later.timestamp()


class TestTimestampHelpers:
    """Tests for timestamp utilities."""

    def test_system_clock_is_utc(self):
        assert SystemClock().now().tzinfo is not None

    def test_unix_round_trip(self):
        assert from_unix(NOW.timestamp()) == NOW
        assert to_iso8601(NOW) == "2025-03-01T12:00:00+00:00"


class TestRelayMonitorError:
    """Tests for the root exception."""

    def test_to_dict(self):
        error = RelayMonitorError("boom", context={"chain_id": "osmosis-1"})

        data = error.to_dict()

        assert data["type"] == "RelayMonitorError"
        assert data["code"] == "INTERNAL_ERROR"
        assert data["severity"] == "medium"
        assert data["context"] == {"chain_id": "osmosis-1"}
        assert str(error) == "boom (chain_id=osmosis-1)"

    def test_cause_is_recorded(self):
        cause = ConnectionError("refused")

        error = UpstreamError("Connection error", url="http://lcd", cause=cause, severity=Severity.HIGH)

        assert error.cause is cause
        assert error.context["cause_type"] == "ConnectionError"
        assert error.context["url"] == "http://lcd"
        assert error.to_dict()["code"] == "UPSTREAM_ERROR"
