"""Human-readable byte sizes and durations."""

from __future__ import annotations

import re
from decimal import Decimal

from ci_leak_scanner.errors import InvalidConfig, InvalidSize

# Suffixes are matched case-insensitively. SI units are powers of 1000, IEC units powers of 1024.
_UNITS: dict[str, int] = {
    "": 1,
    "b": 1,
    "k": 1000,
    "kb": 1000,
    "m": 1000**2,
    "mb": 1000**2,
    "g": 1000**3,
    "gb": 1000**3,
    "t": 1000**4,
    "tb": 1000**4,
    "p": 1000**5,
    "pb": 1000**5,
    "ki": 1024,
    "kib": 1024,
    "mi": 1024**2,
    "mib": 1024**2,
    "gi": 1024**3,
    "gib": 1024**3,
    "ti": 1024**4,
    "tib": 1024**4,
    "pi": 1024**5,
    "pib": 1024**5,
}

_SIZE_RE = re.compile(r"^\s*(-?\d+(?:\.\d+)?)\s*([a-zA-Z]*)\s*$")

_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_size(value: str | int) -> int:
    """Parse a size such as ``500Mb``, ``2GiB`` or ``1024`` into bytes.

    Bytes are assumed when no unit is given. ``0`` means "no limit".

    Raises:
        InvalidSize: empty, negative, or unknown-unit input.
    """
    if isinstance(value, bool):
        raise InvalidSize(f"invalid size: {value!r}")
    if isinstance(value, int):
        if value < 0:
            raise InvalidSize(f"size must not be negative: {value}")
        return value

    match = _SIZE_RE.match(value or "")
    if not match:
        raise InvalidSize(f"invalid size: {value!r}")

    number, unit = match.groups()
    multiplier = _UNITS.get(unit.lower())
    if multiplier is None:
        raise InvalidSize(f"unknown size unit {unit!r} in {value!r}")

    amount = Decimal(number)
    if amount < 0:
        raise InvalidSize(f"size must not be negative: {value!r}")
    # Decimal keeps byte counts above 2**53 exact.
    return int(amount * multiplier)


def format_size(num_bytes: int) -> str:
    """Render bytes using the largest IEC unit that divides the value exactly.

    The result always parses back to the same number with :func:`parse_size`.
    """
    if num_bytes < 0:
        raise InvalidSize(f"size must not be negative: {num_bytes}")
    for unit, multiplier in (("PiB", 1024**5), ("TiB", 1024**4), ("GiB", 1024**3), ("MiB", 1024**2), ("KiB", 1024)):
        if num_bytes and num_bytes % multiplier == 0:
            return f"{num_bytes // multiplier}{unit}"
    return f"{num_bytes}B"


def parse_duration(value: str | int | float) -> float:
    """Parse ``500ms``, ``30s``, ``2m``, ``1h``, ``1m30s`` or bare seconds into seconds."""
    if isinstance(value, bool):
        raise InvalidConfig(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        if value < 0:
            raise InvalidConfig(f"duration must not be negative: {value}")
        return float(value)

    text = (value or "").strip().lower()
    if not text:
        raise InvalidConfig("empty duration")
    try:
        seconds = float(text)
    except ValueError:
        pass
    else:
        if seconds < 0:
            raise InvalidConfig(f"duration must not be negative: {value!r}")
        return seconds

    position = 0
    total = 0.0
    for match in _DURATION_RE.finditer(text):
        if match.start() != position:
            raise InvalidConfig(f"invalid duration: {value!r}")
        total += float(match.group(1)) * _DURATION_SECONDS[match.group(2)]
        position = match.end()
    if position != len(text):
        raise InvalidConfig(f"invalid duration: {value!r}")
    return total
