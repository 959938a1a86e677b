"""
Parsers for human-entered capacity and duration strings.

Sizes follow the Kubernetes quantity suffixes:
- binary family: Ki, Mi, Gi, Ti, Pi, Ei (powers of 1024)
- decimal family: K, M, G, T, P, E (powers of 1000)

Durations follow the Go duration syntax (``90s``, ``1m``, ``1h30m``).
"""

from __future__ import annotations

import re
from datetime import timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from theia_datastore.exceptions import InvalidDurationFormatError, InvalidSizeFormatError

_SIZE_RE = re.compile(r"^(?P<number>\d+(?:\.\d+)?|\.\d+)(?P<unit>[A-Za-z]*)$")

SIZE_MULTIPLIERS: dict[str, int] = {
    "": 1,
    "K": 1000,
    "M": 1000**2,
    "G": 1000**3,
    "T": 1000**4,
    "P": 1000**5,
    "E": 1000**6,
    "Ki": 1024,
    "Mi": 1024**2,
    "Gi": 1024**3,
    "Ti": 1024**4,
    "Pi": 1024**5,
    "Ei": 1024**6,
}

_DURATION_PART_RE = re.compile(r"(?P<number>\d+(?:\.\d*)?|\.\d+)(?P<unit>ns|us|µs|ms|s|m|h)")

DURATION_UNITS: dict[str, timedelta] = {
    "ns": timedelta(microseconds=0.001),
    "us": timedelta(microseconds=1),
    "µs": timedelta(microseconds=1),
    "ms": timedelta(milliseconds=1),
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
}


def parse_size(text: str) -> int:
    """
    Parse a capacity string into a byte count.

    Args:
        text: Number with an optional unit suffix, e.g. "500Mi" or "2.5G".

    Returns:
        Size in bytes, rounded to the nearest integer.

    Raises:
        InvalidSizeFormatError: If the text is not ``<number><optional unit>``
            or the unit is unknown.
    """
    stripped = text.strip()
    match = _SIZE_RE.match(stripped)
    if match is None:
        raise InvalidSizeFormatError.for_text(text, "expected <number><optional unit>")

    unit = match.group("unit")
    multiplier = SIZE_MULTIPLIERS.get(unit)
    if multiplier is None:
        raise InvalidSizeFormatError.for_text(text, f"unknown unit {unit!r}")

    try:
        number = Decimal(match.group("number"))
    except InvalidOperation as e:
        raise InvalidSizeFormatError.for_text(text, str(e)) from e

    return int((number * multiplier).to_integral_value(rounding=ROUND_HALF_UP))


def parse_duration(text: str) -> timedelta:
    """
    Parse a Go-style duration string.

    Args:
        text: Sequence of ``<number><unit>`` parts, e.g. "1m30s". A bare "0" is allowed.

    Returns:
        The duration as a timedelta.

    Raises:
        InvalidDurationFormatError: If the text is not a valid duration.
    """
    stripped = text.strip()
    if stripped == "0":
        return timedelta(0)
    if not stripped:
        raise InvalidDurationFormatError.for_text(text, "empty duration")

    total = timedelta(0)
    position = 0
    for match in _DURATION_PART_RE.finditer(stripped):
        if match.start() != position:
            break
        total += DURATION_UNITS[match.group("unit")] * float(match.group("number"))
        position = match.end()

    if position != len(stripped):
        raise InvalidDurationFormatError.for_text(
            text, "expected <number><unit> parts with units ns, us, ms, s, m, h"
        )
    return total


def format_bytes(size: int) -> str:
    """Render a byte count with a binary suffix for log lines."""
    if abs(size) < 1024:
        return f"{size}B"
    value = float(size)
    for unit in ("Ki", "Mi", "Gi", "Ti"):
        value /= 1024
        if abs(value) < 1024:
            return f"{value:.1f}{unit}"
    return f"{value / 1024:.1f}Pi"
