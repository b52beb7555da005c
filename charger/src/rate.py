"""
Pure rate estimator: two cumulative-energy readings -> average net power.

The meter only exposes lifetime Wh counters, so power is derived by
differencing two readings and dividing by the time between them. Averaging
over the whole poll interval is steadier than the meter's instantaneous
power figure, which swings with every kettle and cloud.

This is a pure function: no I/O, no clock, no retained state.

CHANGELOG:
- 2026-03-02: Initial creation (STORY-103)

TODO:
- None
"""

from __future__ import annotations

from charger.src.errors import (
    IntervalTooLongError,
    IntervalTooShortError,
    NonMonotonicError,
)
from charger.src.models import MeterReading, NetPowerSample

DEFAULT_MIN_INTERVAL_S: float = 10.0
"""Shortest interval accepted; duplicate or rapid polls are rejected."""

DEFAULT_MAX_INTERVAL_S: float = 300.0
"""Longest interval accepted; anything older is treated as missing data."""

_SECONDS_PER_HOUR = 3600.0


def compute(
    previous: MeterReading,
    current: MeterReading,
    *,
    min_interval_s: float = DEFAULT_MIN_INTERVAL_S,
    max_interval_s: float = DEFAULT_MAX_INTERVAL_S,
) -> NetPowerSample:
    """Compute the average net power between two readings.

    Args:
        previous: Baseline reading.
        current: Newer reading from the same meter.
        min_interval_s: Reject intervals shorter than this.
        max_interval_s: Reject intervals longer than this.

    Returns:
        A :class:`NetPowerSample`; ``average_watts`` is positive when more
        energy was exported than imported over the interval.

    Raises:
        NonMonotonicError: ``current`` is older than ``previous`` or a
            counter decreased. The caller should adopt ``current`` as the
            new baseline.
        IntervalTooShortError: The interval is below ``min_interval_s``
            (equal timestamps included).
        IntervalTooLongError: The interval is above ``max_interval_s``.
    """
    interval_s = (current.timestamp - previous.timestamp).total_seconds()
    if interval_s < 0:
        raise NonMonotonicError(
            f"timestamp went backwards: {previous.timestamp.isoformat()} -> "
            f"{current.timestamp.isoformat()}"
        )

    delta_imported = current.energy_imported_wh - previous.energy_imported_wh
    delta_exported = current.energy_exported_wh - previous.energy_exported_wh
    if delta_imported < 0 or delta_exported < 0:
        raise NonMonotonicError(
            f"energy counter decreased: imported {delta_imported:+.1f} Wh, "
            f"exported {delta_exported:+.1f} Wh"
        )

    if interval_s == 0 or interval_s < min_interval_s:
        raise IntervalTooShortError(
            f"interval {interval_s:.1f}s is below minimum {min_interval_s:.1f}s"
        )
    if interval_s > max_interval_s:
        raise IntervalTooLongError(
            f"interval {interval_s:.1f}s is above maximum {max_interval_s:.1f}s"
        )

    average_watts = (delta_exported - delta_imported) * _SECONDS_PER_HOUR / interval_s
    return NetPowerSample(average_watts=average_watts, interval_seconds=interval_s)
