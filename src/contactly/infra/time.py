"""Time utilities for consistent timestamp handling."""

import time
from datetime import datetime, timezone


def utc_now() -> datetime:
    """Return current UTC timestamp (timezone-aware)."""
    return datetime.now(timezone.utc)


def epoch_ms() -> int:
    """Return current wall-clock time as integer epoch milliseconds."""
    return time.time_ns() // 1_000_000
