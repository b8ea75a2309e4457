"""Utility functions."""

import time

MS_PER_MINUTE = 60_000


def now_ms() -> int:
    """Current wall-clock time in milliseconds since the epoch."""
    return int(time.time() * 1000)


def format_instant(instant_ms: int | None) -> str:
    """Format an epoch-milliseconds instant for humans ("-" when absent)."""
    if instant_ms is None:
        return "-"
    return time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(instant_ms / 1000))
