"""Exponential backoff shared by session reconnection and webhook retries."""

from __future__ import annotations

import random


def exponential_delay(
    attempt: int,
    base: float,
    cap: float,
    multiplier: float = 2.0,
    jitter: float = 0.0,
    rng: random.Random | None = None,
) -> float:
    """Delay before retry number ``attempt`` (1-based).

    ``base * multiplier ** (attempt - 1)`` capped at ``cap``, then spread by
    +/- ``jitter`` (a fraction of the delay). The result never exceeds ``cap``.
    """
    if attempt < 1:
        raise ValueError("attempt must be >= 1")
    delay = min(base * (multiplier ** (attempt - 1)), cap)
    if jitter > 0 and delay > 0:
        spread = delay * jitter
        delay += (rng or random).uniform(-spread, spread)
    return max(0.0, min(delay, cap))
