"""Sliding-window rate limiting for capture submissions."""

from __future__ import annotations

import logging
import math
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict

from fastapi import Request

LOGGER = logging.getLogger(__name__)


def extract_rate_limit_key(request: Request) -> str:
    """Identify the submitting client.

    Prefers the first ``X-Forwarded-For`` hop, then ``X-Real-IP``, then the
    socket peer address.
    """

    forwarded = request.headers.get("x-forwarded-for", "")
    first_hop = forwarded.split(",")[0].strip()
    if first_hop:
        return f"ip:{first_hop}"
    real_ip = request.headers.get("x-real-ip", "").strip()
    if real_ip:
        return f"ip:{real_ip}"
    client_host = request.client.host if request.client else "unknown"
    return f"ip:{client_host}"


@dataclass(frozen=True, slots=True)
class RateLimitDecision:
    allowed: bool
    retry_after_seconds: float = 0.0

    @property
    def retry_after_header(self) -> str:
        return str(max(1, math.ceil(self.retry_after_seconds)))


class SlidingWindowRateLimiter:
    """At most ``max_requests`` per ``window_seconds`` for each key.

    Thread-safe; rejected requests do not consume a slot. Idle keys are
    swept from inside :meth:`check` every ``cleanup_interval_seconds``.
    """

    def __init__(
        self,
        max_requests: int,
        *,
        window_seconds: float = 60.0,
        cleanup_interval_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_requests <= 0:
            raise ValueError(f"max_requests must be positive, got {max_requests}")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.cleanup_interval_seconds = cleanup_interval_seconds
        self._clock = clock
        self._hits: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()
        self._last_cleanup = clock()

    @property
    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._hits)

    def check(self, key: str) -> RateLimitDecision:
        with self._lock:
            now = self._clock()
            if now - self._last_cleanup >= self.cleanup_interval_seconds:
                removed = self._sweep(now)
                if removed:
                    LOGGER.debug("Rate limiter dropped %d idle key(s)", removed)
            hits = self._hits.setdefault(key, deque())
            self._prune(hits, now)
            if len(hits) >= self.max_requests:
                retry_after = self.window_seconds - (now - hits[0])
                return RateLimitDecision(allowed=False, retry_after_seconds=max(0.0, retry_after))
            hits.append(now)
            return RateLimitDecision(allowed=True)

    def cleanup(self) -> int:
        """Drop keys with no hits inside the window. Returns keys removed."""

        with self._lock:
            return self._sweep(self._clock())

    def _sweep(self, now: float) -> int:
        self._last_cleanup = now
        stale = []
        for key, hits in self._hits.items():
            self._prune(hits, now)
            if not hits:
                stale.append(key)
        for key in stale:
            del self._hits[key]
        return len(stale)

    def _prune(self, hits: Deque[float], now: float) -> None:
        while hits and now - hits[0] >= self.window_seconds:
            hits.popleft()


__all__ = ["RateLimitDecision", "SlidingWindowRateLimiter", "extract_rate_limit_key"]
