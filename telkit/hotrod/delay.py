"""Normally distributed artificial latency."""

from __future__ import annotations

import random
import time
from datetime import timedelta

# Shortest delay ever produced: one nanosecond.
MIN_DELAY_SECONDS = 1e-9

Duration = timedelta | float


def _seconds(value: Duration) -> float:
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


def sample_delay(
    mean: Duration, std_dev: Duration, rng: random.Random | None = None
) -> float:
    """Draw a delay in seconds from N(mean, std_dev), never below one nanosecond."""
    source = random if rng is None else rng
    value = source.gauss(0.0, 1.0) * _seconds(std_dev) + _seconds(mean)
    return max(MIN_DELAY_SECONDS, value)


def sleep(mean: Duration, std_dev: Duration, rng: random.Random | None = None) -> float:
    """Block for a normally distributed delay and return it in seconds."""
    delay = sample_delay(mean, std_dev, rng)
    time.sleep(delay)
    return delay