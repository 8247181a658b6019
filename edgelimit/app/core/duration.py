"""Parsing of human readable window sizes such as ``"10 s"``."""

import re

from edgelimit.app.exceptions import InvalidDurationError

_DURATION_PATTERN = re.compile(r"^(\d+)\s?(ms|s|m|h|d)$")

_UNIT_MS = {
    "ms": 1,
    "s": 1000,
    "m": 1000 * 60,
    "h": 1000 * 60 * 60,
    "d": 1000 * 60 * 60 * 24,
}


def ms(duration: str | int) -> int:
    """Convert a duration to milliseconds.

    Args:
        duration: ``"<number> <unit>"`` or ``"<number><unit>"`` with unit one
            of ms, s, m, h, d. Integers are taken as milliseconds.

    Returns:
        The duration in milliseconds.

    Raises:
        InvalidDurationError: If the value cannot be parsed or is not positive.

    Examples:
        >>> ms("10 s")
        10000
        >>> ms("1m")
        60000
    """
    if isinstance(duration, bool):
        raise InvalidDurationError(duration)
    if isinstance(duration, int):
        if duration <= 0:
            raise InvalidDurationError(duration)
        return duration

    match = _DURATION_PATTERN.match(str(duration).strip())
    if not match:
        raise InvalidDurationError(duration)

    value = int(match.group(1)) * _UNIT_MS[match.group(2)]
    if value <= 0:
        raise InvalidDurationError(duration)
    return value
