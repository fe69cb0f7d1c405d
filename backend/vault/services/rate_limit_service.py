# Overview: Fixed-window request rate limiting for API credentials.

"""
Rate Limiter

Fixed window per "tenant:credential" key: the first request opens a window
of API_RATE_WINDOW_SECONDS; up to API_RATE_LIMIT requests pass inside it.

The store is pluggable. InMemoryRateLimitStore only counts within one
process; multi-process deployments need a shared store with the same
increment() contract.
"""

from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass

from flask import Flask, current_app

from ..errors import RateLimitExceeded


EXTENSION_KEY = "vault.rate_limiter"


@dataclass(frozen=True)
class RateLimitStatus:
    limit: int
    remaining: int
    reset_at: float  # unix seconds

    def headers(self) -> dict:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(math.ceil(self.reset_at)),
        }


class RateLimitStore:
    def increment(self, key: str, window_seconds: float, now: float) -> tuple[int, float]:
        """Count one hit; returns (count in current window, window reset time)."""
        raise NotImplementedError

    def reset(self) -> None:
        raise NotImplementedError


class InMemoryRateLimitStore(RateLimitStore):
    """Single-process store. Expired windows are swept at most once per window."""

    def __init__(self):
        self._windows: dict[str, list] = {}  # key -> [count, reset_at]
        self._lock = threading.Lock()
        self._last_sweep = 0.0

    def increment(self, key: str, window_seconds: float, now: float) -> tuple[int, float]:
        with self._lock:
            if now - self._last_sweep >= window_seconds:
                self._sweep(now)

            entry = self._windows.get(key)
            if entry is None or entry[1] <= now:
                entry = [0, now + window_seconds]
                self._windows[key] = entry
            entry[0] += 1
            return entry[0], entry[1]

    def _sweep(self, now: float) -> None:
        expired = [k for k, (_, reset_at) in self._windows.items() if reset_at <= now]
        for k in expired:
            del self._windows[k]
        self._last_sweep = now

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()
            self._last_sweep = 0.0

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)


class RateLimiter:
    def __init__(self, store: RateLimitStore, limit: int = 100, window_seconds: float = 60, clock=time.time):
        self.store = store
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock

    def hit(self, tenant_id: int, credential_id: str) -> RateLimitStatus:
        """Count one request. Raises RateLimitExceeded once the window is used up."""
        now = self._clock()
        count, reset_at = self.store.increment(f"{tenant_id}:{credential_id}", self.window_seconds, now)
        remaining = max(0, self.limit - count)
        if count > self.limit:
            raise RateLimitExceeded(
                limit=self.limit,
                remaining=0,
                reset_at=math.ceil(reset_at),
                retry_after=max(1, math.ceil(reset_at - now)),
            )
        return RateLimitStatus(limit=self.limit, remaining=remaining, reset_at=reset_at)


def init_rate_limiter(app: Flask) -> RateLimiter:
    limiter = RateLimiter(
        InMemoryRateLimitStore(),
        limit=app.config["API_RATE_LIMIT"],
        window_seconds=app.config["API_RATE_WINDOW_SECONDS"],
    )
    app.extensions[EXTENSION_KEY] = limiter
    return limiter


def get_rate_limiter() -> RateLimiter:
    return current_app.extensions[EXTENSION_KEY]
