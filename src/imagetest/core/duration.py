"""Parsing of Go-style duration strings (i.e. `30m`, `1h30m`, `250ms`)."""
import re
from datetime import timedelta

from imagetest.core.errors import InvalidInput

_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}

_PART_RE = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")


def parse_duration(raw: str) -> timedelta:
    """Parses a duration made of decimal numbers followed by a unit.

    Arguments:
        raw: the duration string, i.e. `"1h30m"`.

    Raises:
        InvalidInput: if the string is not a valid duration.
    """
    value = raw.strip()

    if value == "0":
        return timedelta()

    if not value:
        raise InvalidInput("empty duration")

    pos = 0
    seconds = 0.0

    for match in _PART_RE.finditer(value):
        if match.start() != pos:
            break

        seconds += float(match.group(1)) * _UNITS[match.group(2)]
        pos = match.end()

    if pos != len(value):
        raise InvalidInput(f"invalid duration {raw!r}")

    return timedelta(seconds=seconds)


def format_duration(value: timedelta) -> str:
    """Formats a duration using the largest units that represent it exactly."""
    total = value.total_seconds()

    if total == 0:
        return "0s"

    hours, rest = divmod(total, 3600)
    minutes, seconds = divmod(rest, 60)

    parts = []
    if hours:
        parts.append(f"{int(hours)}h")
    if minutes:
        parts.append(f"{int(minutes)}m")
    if seconds:
        parts.append(f"{seconds:g}s")

    return "".join(parts)
