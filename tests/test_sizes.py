"""Tests for human-readable size and duration parsing."""

import pytest

from ci_leak_scanner.errors import InvalidConfig, InvalidSize
from ci_leak_scanner.sizes import format_size, parse_duration, parse_size


class TestParseSize:
    @pytest.mark.parametrize("text,expected", [
        ("500Mb", 500_000_000),
        ("500MB", 500_000_000),
        ("2GiB", 2 * 1024**3),
        ("600MiB", 600 * 1024**2),
        ("10 KB", 10_000),
        ("1024", 1024),
        ("0", 0),
        ("1.5k", 1500),
        ("0.5GiB", 512 * 1024**2),
        ("9007199254740993", 2**53 + 1),
    ])
    def test_valid_sizes(self, text, expected):
        assert parse_size(text) == expected

    def test_int_passthrough(self):
        assert parse_size(4096) == 4096

    @pytest.mark.parametrize("text", ["", "abc", "-5", "5XB", "Mb"])
    def test_invalid_sizes(self, text):
        with pytest.raises(InvalidSize):
            parse_size(text)

    def test_negative_int_rejected(self):
        with pytest.raises(InvalidSize):
            parse_size(-1)

    def test_invalid_size_is_config_error(self):
        with pytest.raises(InvalidConfig):
            parse_size("lots")


class TestFormatSize:
    @pytest.mark.parametrize("n", [0, 1, 1000, 1024, 500_000_000, 3 * 1024**3, 1024**5 + 1, 2**53 + 1, 8 * 1024**5 + 3])
    def test_format_parses_back(self, n):
        assert parse_size(format_size(n)) == n

    def test_uses_largest_exact_unit(self):
        assert format_size(600 * 1024**2) == "600MiB"
        assert format_size(1500) == "1500B"


class TestParseDuration:
    @pytest.mark.parametrize("text,expected", [
        ("500ms", 0.5),
        ("30s", 30.0),
        ("2m", 120.0),
        ("1h", 3600.0),
        ("1m30s", 90.0),
        ("45", 45.0),
        ("0.25", 0.25),
    ])
    def test_valid_durations(self, text, expected):
        assert parse_duration(text) == pytest.approx(expected)

    def test_number_passthrough(self):
        assert parse_duration(7) == 7.0

    @pytest.mark.parametrize("text", ["", "soon", "10x", "s10", "-3"])
    def test_invalid_durations(self, text):
        with pytest.raises(InvalidConfig):
            parse_duration(text)
