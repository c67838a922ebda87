"""
Unit tests for timestamp-unit normalization.
"""

from wasync.timestamps import normalize_timestamp, read_timestamp


class TestNormalizeTimestamp:
    def test_milliseconds(self):
        assert normalize_timestamp(1_700_000_000_000) == 1_700_000_000

    def test_seconds_unchanged(self):
        assert normalize_timestamp(1_700_000_000) == 1_700_000_000

    def test_double_milliseconds(self):
        """Values encoded as ms twice are divided twice."""
        assert normalize_timestamp(1_700_000_000_000_000) == 1_700_000_000

    def test_above_band_kept(self):
        """A far-future millisecond value ends up above the band and is kept."""
        assert normalize_timestamp(2_500_000_000_000) == 2_500_000_000

    def test_small_value_passes_through(self):
        assert normalize_timestamp(500) == 500

    def test_zero(self):
        assert normalize_timestamp(0) == 0

    def test_result_not_above_ms_threshold(self):
        for raw in (1, 1_700_000_000, 1_700_000_000_000, 9_999_999_999_999_999):
            assert normalize_timestamp(raw) <= 10_000_000_000


class TestReadTimestamp:
    def test_seconds_is_confident(self):
        reading = read_timestamp(1_700_000_000)
        assert reading.confident is True
        assert reading.reason == "seconds"

    def test_milliseconds_is_confident(self):
        reading = read_timestamp(1_700_000_000_123)
        assert reading.seconds == 1_700_000_000
        assert reading.confident is True
        assert reading.reason == "milliseconds"

    def test_below_band_not_confident(self):
        reading = read_timestamp(12345)
        assert reading.seconds == 12345
        assert reading.confident is False

    def test_above_band_not_confident(self):
        reading = read_timestamp(2_500_000_000_000)
        assert reading.confident is False
        assert reading.reason == "above_valid_band"

    def test_double_milliseconds_flagged(self):
        reading = read_timestamp(1_700_000_000_000_000)
        assert reading.reason == "double_milliseconds"
        assert reading.confident is False
