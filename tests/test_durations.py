"""Tests for human-readable duration parsing."""

import pytest

from warden.service.durations import parse_duration, parse_duration_or_default


class TestParseDuration:
    @pytest.mark.parametrize(
        "value,expected",
        [
            ("90s", 90),
            ("45m", 45 * 60),
            ("2h", 2 * 3600),
            ("30d", 30 * 86400),
            ("2H", 2 * 3600),
            (" 15m ", 15 * 60),
            ("3600", 3600),
            (120, 120),
        ],
    )
    def test_supported_units(self, value, expected):
        assert parse_duration(value) == expected

    @pytest.mark.parametrize("value", ["", "abc", "2w", "-5m", "1.5h", "h", "0", 0, -3, True, None])
    def test_rejects_invalid_values(self, value):
        with pytest.raises(ValueError):
            parse_duration(value)


class TestParseDurationOrDefault:
    def test_valid_override_wins(self):
        assert parse_duration_or_default("5m", 7200, setting="jwt_access_expires_in") == 300

    def test_missing_value_uses_default(self):
        assert parse_duration_or_default(None, 7200, setting="jwt_access_expires_in") == 7200

    def test_garbage_degrades_to_default_without_raising(self):
        assert parse_duration_or_default("soon", 7200, setting="jwt_access_expires_in") == 7200
