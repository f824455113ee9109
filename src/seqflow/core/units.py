"""
Parsing of memory and duration strings used in resource hints.

Accepts the notations common in pipeline configs: ``"8 GB"``, ``"512.MB"``,
``"2g"`` for memory and ``"2h"``, ``"1h 30m"``, ``"45.s"`` for durations.
Plain numbers are megabytes and seconds respectively.
"""

from __future__ import annotations

import re

_MEMORY_UNITS: dict[str, float] = {
    "b": 1 / (1024 * 1024),
    "k": 1 / 1024,
    "kb": 1 / 1024,
    "m": 1.0,
    "mb": 1.0,
    "g": 1024.0,
    "gb": 1024.0,
    "t": 1024.0 * 1024.0,
    "tb": 1024.0 * 1024.0,
}

_DURATION_UNITS: dict[str, float] = {
    "ms": 0.001,
    "s": 1.0,
    "sec": 1.0,
    "m": 60.0,
    "min": 60.0,
    "h": 3600.0,
    "d": 86400.0,
}

_MEMORY_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*\.?\s*([a-zA-Z]*)\s*$")
_DURATION_TOKEN = re.compile(r"(\d+(?:\.\d+)?)\s*\.?\s*([a-zA-Z]*)")
_DURATION_FULL = re.compile(r"^(?:\s*\d+(?:\.\d+)?\s*\.?\s*[a-zA-Z]*\s*)+$")


def parse_memory(value: str | int | float | None) -> int | None:
    """Convert a memory specification to whole megabytes.

    Args:
        value: ``None``, a number of megabytes, or a string such as ``"8 GB"``.

    Returns:
        Megabytes (rounded up), or None when value is None.

    Raises:
        ValueError: If the string cannot be parsed.

    Example:
        >>> parse_memory("2 GB")
        2048
        >>> parse_memory("512.MB")
        512
    """
    if value is None:
        return None
    if isinstance(value, (int, float)):
        if value < 0:
            msg = f"Memory must be non-negative, got {value}"
            raise ValueError(msg)
        return int(-(-value // 1))

    match = _MEMORY_PATTERN.match(value)
    if not match:
        msg = f"Cannot parse memory value: {value!r}"
        raise ValueError(msg)

    amount = float(match.group(1))
    unit = match.group(2).lower() or "mb"
    if unit not in _MEMORY_UNITS:
        msg = f"Unknown memory unit '{match.group(2)}' in {value!r}"
        raise ValueError(msg)

    megabytes = amount * _MEMORY_UNITS[unit]
    return int(-(-megabytes // 1))


def parse_duration(value: str | int | float | None) -> float | None:
    """Convert a duration specification to seconds.

    Multiple components are summed, so ``"1h 30m"`` is 5400 seconds.

    Raises:
        ValueError: If the string cannot be parsed.
    """
    if value is None:
        return None
    if isinstance(value, (int, float)):
        if value < 0:
            msg = f"Duration must be non-negative, got {value}"
            raise ValueError(msg)
        return float(value)

    text = value.strip()
    if not text:
        msg = "Empty duration string"
        raise ValueError(msg)

    if not _DURATION_FULL.match(text):
        msg = f"Cannot parse duration value: {value!r}"
        raise ValueError(msg)

    total = 0.0
    for match in _DURATION_TOKEN.finditer(text):
        unit = match.group(2).lower() or "s"
        if unit not in _DURATION_UNITS:
            msg = f"Unknown duration unit '{match.group(2)}' in {value!r}"
            raise ValueError(msg)
        total += float(match.group(1)) * _DURATION_UNITS[unit]
    return total


def format_memory(megabytes: int | None) -> str:
    """Render megabytes for display, e.g. ``2048`` -> ``"2 GB"``."""
    if megabytes is None:
        return "-"
    if megabytes >= 1024 and megabytes % 1024 == 0:
        return f"{megabytes // 1024} GB"
    if megabytes >= 1024:
        return f"{megabytes / 1024:.1f} GB"
    return f"{megabytes} MB"


def format_duration(seconds: float | None) -> str:
    """Render seconds for display, e.g. ``3725`` -> ``"1h 2m 5s"``."""
    if seconds is None:
        return "-"
    if seconds < 1:
        return f"{seconds * 1000:.0f}ms"
    if seconds < 60:
        return f"{seconds:.1f}s"

    whole = int(round(seconds))
    hours, rest = divmod(whole, 3600)
    minutes, secs = divmod(rest, 60)
    parts = []
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if secs or not parts:
        parts.append(f"{secs}s")
    return " ".join(parts)
