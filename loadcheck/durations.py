"""Parsing of human-readable durations such as ``"2m"``, ``"1m30s"`` or ``"500ms"``."""

from __future__ import annotations

import re
from typing import Any

from loadcheck.exceptions import ConfigError

_UNIT_SECONDS = {
    "ms": 0.001,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}

_PART_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")


def parse_duration(value: Any, field_name: str = "duration") -> float:
    """
    Convert *value* to seconds.

    Plain numbers are taken as seconds.  Strings are a sequence of
    ``<number><unit>`` parts with units ``h``, ``m``, ``s`` and ``ms``,
    e.g. ``"1h30m"`` or ``"2.5s"``.  A bare numeric string is seconds.

    Args:
        value: Number or duration string.
        field_name: Name used in error messages.

    Returns:
        The duration in seconds.

    Raises:
        ConfigError: If the value is not a duration or is negative.
    """
    if isinstance(value, bool):
        raise ConfigError(f"Invalid {field_name}: {value!r}")

    if isinstance(value, (int, float)):
        seconds = float(value)
    elif isinstance(value, str):
        seconds = _parse_duration_string(value.strip().lower(), field_name)
    else:
        raise ConfigError(f"Invalid {field_name}: {value!r}")

    if seconds < 0:
        raise ConfigError(f"{field_name} must be non-negative, got {value!r}")
    return seconds


def _parse_duration_string(text: str, field_name: str) -> float:
    if text == "":
        raise ConfigError(f"Empty value for {field_name}")

    try:
        return float(text)
    except ValueError:
        pass

    total = 0.0
    position = 0
    for match in _PART_RE.finditer(text):
        if match.start() != position:
            break
        total += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        position = match.end()

    if position != len(text):
        raise ConfigError(f"Invalid {field_name}: {text!r}")
    return total


def format_duration(seconds: float) -> str:
    """Render *seconds* compactly for console output (``"1m30s"``, ``"850ms"``)."""
    if seconds < 1:
        return f"{seconds * 1000:.0f}ms"

    minutes, secs = divmod(seconds, 60)
    hours, minutes = divmod(int(minutes), 60)
    parts = []
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if secs or not parts:
        parts.append(f"{secs:.1f}s".replace(".0s", "s"))
    return "".join(parts)
