"""Tests for exponential backoff."""

from __future__ import annotations

import random

import pytest

from session_gateway.backoff import exponential_delay


def test_doubles_from_base():
    assert [exponential_delay(n, 1, 60) for n in range(1, 6)] == [1, 2, 4, 8, 16]


def test_capped():
    assert exponential_delay(10, 2, 60) == 60


def test_jitter_stays_within_bounds():
    rng = random.Random(7)
    for attempt in range(1, 10):
        delay = exponential_delay(attempt, 1, 60, jitter=0.1, rng=rng)
        nominal = min(2 ** (attempt - 1), 60)
        assert nominal * 0.9 <= delay <= min(nominal * 1.1, 60)


def test_zero_base_never_waits():
    assert exponential_delay(3, 0, 60, jitter=0.5) == 0


def test_attempt_must_be_positive():
    with pytest.raises(ValueError):
        exponential_delay(0, 1, 60)
