"""Wall clock helpers.

All timestamps in the rate limiter are integer milliseconds since the epoch,
matching what the Lua scripts receive as ``now``.
"""

import time


def now_ms() -> int:
    """Return the current time in epoch milliseconds."""
    return int(time.time() * 1000)
