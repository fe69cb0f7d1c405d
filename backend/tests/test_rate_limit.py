# Overview: Pytest coverage for the fixed-window rate limiter.

import math

import pytest

from vault.errors import RateLimitExceeded
from vault.services.rate_limit_service import InMemoryRateLimitStore, RateLimiter


class FakeClock:
    def __init__(self, now=1_700_000_000.25):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def limiter(clock):
    return RateLimiter(InMemoryRateLimitStore(), limit=3, window_seconds=60, clock=clock)


class TestFixedWindow:
    def test_counts_down_remaining(self, limiter, clock):
        statuses = [limiter.hit(1, "k") for _ in range(3)]
        assert [s.remaining for s in statuses] == [2, 1, 0]
        assert all(s.reset_at == clock.now + 60 for s in statuses)

    def test_headers(self, limiter, clock):
        headers = limiter.hit(1, "k").headers()
        assert headers == {
            "X-RateLimit-Limit": "3",
            "X-RateLimit-Remaining": "2",
            "X-RateLimit-Reset": str(math.ceil(clock.now + 60)),
        }

    def test_exceeded(self, limiter, clock):
        for _ in range(3):
            limiter.hit(1, "k")
        clock.now += 20

        with pytest.raises(RateLimitExceeded) as exc_info:
            limiter.hit(1, "k")

        exc = exc_info.value
        assert exc.limit == 3
        assert exc.remaining == 0
        assert exc.reset_at == math.ceil(1_700_000_000.25 + 60)
        assert exc.retry_after == 40

    def test_window_resets_from_first_hit(self, limiter, clock):
        start = clock.now
        for _ in range(3):
            limiter.hit(1, "k")
        clock.now = start + 60

        status = limiter.hit(1, "k")
        assert status.remaining == 2
        assert status.reset_at == start + 120

    def test_keys_are_independent(self, limiter):
        for _ in range(3):
            limiter.hit(1, "k")
        assert limiter.hit(1, "other").remaining == 2
        assert limiter.hit(2, "k").remaining == 2

    def test_retry_after_at_least_one_second(self, clock):
        limiter = RateLimiter(InMemoryRateLimitStore(), limit=1, window_seconds=1, clock=clock)
        limiter.hit(1, "k")
        clock.now += 0.999
        with pytest.raises(RateLimitExceeded) as exc_info:
            limiter.hit(1, "k")
        assert exc_info.value.retry_after == 1


class TestStore:
    def test_expired_windows_are_swept(self, clock):
        store = InMemoryRateLimitStore()
        store.increment("a", 60, clock.now)
        store.increment("b", 60, clock.now)
        assert len(store) == 2

        store.increment("c", 60, clock.now + 61)
        assert len(store) == 1

    def test_reset(self, clock):
        store = InMemoryRateLimitStore()
        store.increment("a", 60, clock.now)
        store.reset()
        assert len(store) == 0
        assert store.increment("a", 60, clock.now) == (1, clock.now + 60)
