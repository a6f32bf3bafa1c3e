"""
Duration helpers for sleep steps.

Durations are expressed in whole seconds on the wire (``Upstash-Delay: 30s``)
and timestamps as unix seconds (``Upstash-Not-Before``).
"""

import re
from datetime import UTC, datetime, timedelta
from typing import Union

_DURATION_PATTERN = re.compile(r"^\s*(\d+)\s*([smhdw]?)\s*$")

_UNIT_SECONDS = {
    "": 1,
    "s": 1,
    "m": 60,
    "h": 60 * 60,
    "d": 24 * 60 * 60,
    "w": 7 * 24 * 60 * 60,
}


def parse_duration(duration: str) -> int:
    """
    Parse a duration string into seconds.

    Args:
        duration: Duration string like "30s", "5m", "1h", "2d", "1w" or "90"

    Returns:
        Duration in seconds

    Raises:
        ValueError: If the string is not a valid duration

    Examples:
        >>> parse_duration("5m")
        300
        >>> parse_duration("1h")
        3600
    """
    match = _DURATION_PATTERN.match(duration.lower())
    if not match:
        raise ValueError(
            f"Invalid duration: {duration!r}. Use a number followed by s, m, h, d or w."
        )
    amount, unit = match.groups()
    return int(amount) * _UNIT_SECONDS[unit]


def to_seconds(duration: Union[str, int, float, timedelta]) -> int:
    """Normalize a sleep duration to whole seconds."""
    if isinstance(duration, timedelta):
        seconds = int(duration.total_seconds())
    elif isinstance(duration, str):
        seconds = parse_duration(duration)
    else:
        seconds = int(duration)

    if seconds < 0:
        raise ValueError(f"Sleep duration cannot be negative: {duration!r}")
    return seconds


def to_timestamp(moment: Union[datetime, int, float]) -> int:
    """Normalize a point in time to unix seconds. Naive datetimes are taken as UTC."""
    if isinstance(moment, datetime):
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=UTC)
        return int(moment.timestamp())
    return int(moment)
