"""Tests for size and duration parsing."""

from datetime import timedelta

import pytest

from theia_datastore.exceptions import (
    ConfigurationError,
    ErrorCode,
    InvalidDurationFormatError,
    InvalidSizeFormatError,
)
from theia_datastore.units import format_bytes, parse_duration, parse_size


class TestParseSize:
    """Tests for parse_size."""

    def test_binary_suffix(self) -> None:
        """500Mi is 500 * 1024^2 bytes."""
        assert parse_size("500Mi") == 524_288_000

    def test_fractional_decimal_suffix(self) -> None:
        """2.5G is rounded into whole bytes."""
        assert parse_size("2.5G") == 2_500_000_000

    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            ("1", 1),
            ("1K", 1000),
            ("1M", 1000**2),
            ("1G", 1000**3),
            ("1T", 1000**4),
            ("1P", 1000**5),
            ("1E", 1000**6),
            ("1Ki", 1024),
            ("1Mi", 1024**2),
            ("1Gi", 1024**3),
            ("1Ti", 1024**4),
            ("1Pi", 1024**5),
            ("1Ei", 1024**6),
        ],
    )
    def test_every_suffix(self, text: str, expected: int) -> None:
        """Every supported suffix maps to its multiplier."""
        assert parse_size(text) == expected

    def test_default_allocation(self) -> None:
        """The default allocation of 8Gi."""
        assert parse_size("8Gi") == 8 * 1024**3

    def test_fraction_rounds_half_up(self) -> None:
        """Fractional bytes round to the nearest integer."""
        assert parse_size("1.5") == 2
        assert parse_size("0.5Ki") == 512

    def test_leading_dot(self) -> None:
        """A number may start with the decimal point."""
        assert parse_size(".5K") == 500

    def test_surrounding_whitespace(self) -> None:
        """Whitespace around the value is ignored."""
        assert parse_size("  16Gi\n") == 16 * 1024**3

    @pytest.mark.parametrize("text", ["", "Gi", "abc", "-1Gi", "1 Gi", "1.2.3M", "1gi", "5Xi"])
    def test_invalid_text(self, text: str) -> None:
        """Malformed input raises InvalidSizeFormatError."""
        with pytest.raises(InvalidSizeFormatError) as exc_info:
            parse_size(text)
        assert exc_info.value.error_code == ErrorCode.CONFIG_INVALID_SIZE
        assert exc_info.value.context["text"] == text

    def test_error_is_configuration_error(self) -> None:
        """Size errors are reported as configuration problems."""
        with pytest.raises(ConfigurationError):
            parse_size("lots")


class TestParseDuration:
    """Tests for parse_duration."""

    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            ("1m", timedelta(minutes=1)),
            ("90s", timedelta(seconds=90)),
            ("1h30m", timedelta(hours=1, minutes=30)),
            ("1.5s", timedelta(seconds=1.5)),
            ("250ms", timedelta(milliseconds=250)),
            ("10us", timedelta(microseconds=10)),
            ("0", timedelta(0)),
        ],
    )
    def test_valid(self, text: str, expected: timedelta) -> None:
        """Go-style durations are accepted."""
        assert parse_duration(text) == expected

    @pytest.mark.parametrize("text", ["", "  ", "1", "m", "1d", "1m x", "ten seconds", "-1m"])
    def test_invalid(self, text: str) -> None:
        """Malformed durations raise InvalidDurationFormatError."""
        with pytest.raises(InvalidDurationFormatError) as exc_info:
            parse_duration(text)
        assert exc_info.value.error_code == ErrorCode.CONFIG_INVALID_DURATION


class TestFormatBytes:
    """Tests for format_bytes."""

    def test_small_values(self) -> None:
        assert format_bytes(512) == "512B"

    def test_binary_units(self) -> None:
        assert format_bytes(1536) == "1.5Ki"
        assert format_bytes(8 * 1024**3) == "8.0Gi"

    def test_beyond_tebibytes(self) -> None:
        assert format_bytes(2 * 1024**5) == "2.0Pi"
