"""Per-second rates from two samples of a monotonic counter."""

from __future__ import annotations


def delta_rate(previous: int, current: int, elapsed: float) -> float:
    """Return ``(current - previous) / elapsed``.

    A counter that went backwards (device replaced, driver reload) or a
    non-positive interval yields ``0.0``; the caller stores ``current`` as the
    new baseline either way.
    """

    if elapsed <= 0 or current < previous:
        return 0.0
    return (current - previous) / elapsed


def two_decimals(value: float) -> float:
    return round(value, 2)
