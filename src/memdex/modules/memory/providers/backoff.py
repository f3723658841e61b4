"""Retry backoff shared by the hosted embedding providers."""

from __future__ import annotations

import random

__all__ = ["MAX_ATTEMPTS", "compute_backoff"]

MAX_ATTEMPTS = 5
_BACKOFF_BASE = 0.5
_BACKOFF_MULTIPLIER = 2.0
_BACKOFF_CAP = 8.0
_JITTER_RATIO = 0.2


def compute_backoff(*, attempt: int, rng: random.Random) -> float:
    """Return the delay before retrying after ``attempt`` failed.

    Example:
        >>> compute_backoff(attempt=1, rng=random.Random(0))
        0.5
        >>> 0.8 <= compute_backoff(attempt=2, rng=random.Random(0)) <= 1.2
        True
    """

    base = _BACKOFF_BASE * (_BACKOFF_MULTIPLIER ** (attempt - 1))
    base = min(base, _BACKOFF_CAP)
    if attempt <= 1:
        return base
    jitter = 1.0 + rng.uniform(-_JITTER_RATIO, _JITTER_RATIO)
    return round(base * jitter, 2)
