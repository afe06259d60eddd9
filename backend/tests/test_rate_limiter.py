from __future__ import annotations

import random

import pytest

from salesmap_news.rate_limiter import PacingWatermark, RateLimiter, is_quota_error
from salesmap_news.search_client import SearchProviderError


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def _limiter(clock: FakeClock, **kwargs) -> RateLimiter:
    options = {"interval_ms": 500, "max_retries": 3, "backoff_ms": 1000, "jitter_ms": 0}
    options.update(kwargs)
    return RateLimiter(clock=clock, sleep=clock.sleep, rng=random.Random(7), **options)


def test_is_quota_error_detects_status_and_message():
    assert is_quota_error(SearchProviderError("Too many requests", status_code=429))
    assert is_quota_error(RuntimeError("Quota exceeded for quota metric 'Queries'"))
    assert is_quota_error(RuntimeError("User Rate Limit Exceeded"))
    assert not is_quota_error(SearchProviderError("Invalid value", status_code=400))
    assert not is_quota_error(None)


def test_consecutive_calls_are_spaced_by_interval():
    clock = FakeClock()
    limiter = _limiter(clock)

    assert limiter.run(lambda: "first") == "first"
    assert limiter.run(lambda: "second") == "second"

    assert clock.sleeps == [pytest.approx(0.5)]


def test_no_wait_when_interval_already_elapsed():
    clock = FakeClock()
    limiter = _limiter(clock)

    limiter.run(lambda: None)
    clock.now += 2
    limiter.run(lambda: None)

    assert clock.sleeps == []


def test_quota_errors_retry_with_exponential_backoff():
    clock = FakeClock()
    limiter = _limiter(clock, interval_ms=0)
    calls = {"count": 0}

    def task() -> str:
        calls["count"] += 1
        if calls["count"] < 3:
            raise SearchProviderError("rate limit", status_code=429)
        return "ok"

    assert limiter.run(task) == "ok"
    assert calls["count"] == 3
    assert clock.sleeps == [pytest.approx(1.0), pytest.approx(2.0)]


def test_quota_errors_reraise_after_max_retries():
    clock = FakeClock()
    limiter = _limiter(clock, interval_ms=0, max_retries=2)
    calls = {"count": 0}

    def task() -> None:
        calls["count"] += 1
        raise SearchProviderError("quota exceeded", status_code=429)

    with pytest.raises(SearchProviderError):
        limiter.run(task)

    assert calls["count"] == 3


def test_non_quota_errors_propagate_immediately():
    clock = FakeClock()
    limiter = _limiter(clock, interval_ms=0)
    calls = {"count": 0}

    def task() -> None:
        calls["count"] += 1
        raise ValueError("bad response")

    with pytest.raises(ValueError):
        limiter.run(task)

    assert calls["count"] == 1
    assert clock.sleeps == []


def test_limiters_sharing_a_watermark_pace_together():
    clock = FakeClock()
    shared = PacingWatermark()
    first = _limiter(clock, watermark=shared)
    second = _limiter(clock, watermark=shared)

    first.run(lambda: None)
    second.run(lambda: None)

    assert clock.sleeps == [pytest.approx(0.5)]


def test_independent_limiters_do_not_interfere():
    clock = FakeClock()
    first = _limiter(clock)
    second = _limiter(clock)

    first.run(lambda: None)
    second.run(lambda: None)

    assert clock.sleeps == []


def test_jitter_stays_within_bounds():
    clock = FakeClock()
    limiter = _limiter(clock, jitter_ms=100)

    limiter.run(lambda: None)
    limiter.run(lambda: None)

    assert len(clock.sleeps) == 1
    assert 0.4 <= clock.sleeps[0] <= 0.6
