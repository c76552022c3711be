from __future__ import annotations

import pytest

from stepflow.services.rate_limiter import RateLimiter


class _FakeClock:
    def __init__(self) -> None:
        self.now = 100.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def test_first_call_passes_then_waits_for_interval():
    clock = _FakeClock()
    limiter = RateLimiter(0.5, clock=clock, sleep=clock.sleep)

    assert limiter.acquire() == 0.0
    clock.now += 0.2
    assert limiter.acquire() == pytest.approx(0.3)
    assert clock.sleeps == [pytest.approx(0.3)]


def test_no_wait_once_interval_elapsed():
    clock = _FakeClock()
    limiter = RateLimiter(0.5, clock=clock, sleep=clock.sleep)

    limiter.acquire()
    clock.now += 2.0
    assert limiter.acquire() == 0.0
    assert clock.sleeps == []


def test_back_to_back_calls_are_spaced():
    clock = _FakeClock()
    limiter = RateLimiter(0.5, clock=clock, sleep=clock.sleep)

    for _ in range(4):
        limiter.acquire()

    assert clock.now == pytest.approx(101.5)
