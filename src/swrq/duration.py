"""Duration parsing utilities."""

import math
import re
from datetime import timedelta

from swrq.types import Duration

_DURATION_PATTERN = re.compile(r"^(\d+)(ms|s|m|h|d)$")
_INFINITE = frozenset({"inf", "infinity"})
_UNITS: dict[str, int] = {
    "ms": 1,
    "s": 1000,
    "m": 60_000,
    "h": 3_600_000,
    "d": 86_400_000,
}


def parse_duration(duration: Duration) -> int | float:
    """Parse a duration to milliseconds.

    Numbers pass through as milliseconds, ``timedelta`` is converted, and
    ``"inf"`` yields ``math.inf`` (never stale / never evicted).
    """
    if isinstance(duration, bool):
        raise ValueError(f"Invalid duration: {duration!r}")

    if isinstance(duration, timedelta):
        duration = duration.total_seconds() * 1000

    if isinstance(duration, (int, float)):
        if math.isnan(duration) or duration < 0:
            raise ValueError(f"Invalid duration: {duration!r}")
        return duration

    if not isinstance(duration, str):
        raise ValueError(f"Invalid duration: {duration!r}")

    if duration.lower() in _INFINITE:
        return math.inf

    match = _DURATION_PATTERN.match(duration)
    if not match:
        raise ValueError(f"Invalid duration: {duration!r}")

    value, unit = match.groups()
    return int(value) * _UNITS[unit]
