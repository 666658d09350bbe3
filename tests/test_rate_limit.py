from __future__ import annotations

import pytest
from fastapi import Request

from xsnap.rate_limit import RateLimitDecision, SlidingWindowRateLimiter, extract_rate_limit_key


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _request(headers: dict[str, str], client: tuple[str, int] | None = ("10.1.2.3", 5000)) -> Request:
    scope = {
        "type": "http",
        "method": "POST",
        "path": "/captures",
        "headers": [(key.lower().encode(), value.encode()) for key, value in headers.items()],
        "client": client,
    }
    return Request(scope)


def test_allows_up_to_limit_then_rejects() -> None:
    clock = _Clock()
    limiter = SlidingWindowRateLimiter(3, window_seconds=60, clock=clock)

    assert all(limiter.check("ip:a").allowed for _ in range(3))
    clock.now += 15
    decision = limiter.check("ip:a")

    assert not decision.allowed
    assert decision.retry_after_seconds == pytest.approx(45)
    assert decision.retry_after_header == "45"
    assert limiter.check("ip:b").allowed


def test_window_slides_and_rejections_do_not_count() -> None:
    clock = _Clock()
    limiter = SlidingWindowRateLimiter(2, window_seconds=10, clock=clock)
    limiter.check("k")
    clock.now += 5
    limiter.check("k")
    for _ in range(5):
        assert not limiter.check("k").allowed

    clock.now += 5
    assert limiter.check("k").allowed
    assert not limiter.check("k").allowed


def test_cleanup_drops_idle_keys() -> None:
    clock = _Clock()
    limiter = SlidingWindowRateLimiter(1, window_seconds=10, clock=clock)
    limiter.check("old")
    clock.now += 8
    limiter.check("fresh")
    clock.now += 3

    assert limiter.cleanup() == 1
    assert not limiter.check("fresh").allowed
    assert limiter.check("old").allowed


def test_rejects_non_positive_limit() -> None:
    with pytest.raises(ValueError):
        SlidingWindowRateLimiter(0)


def test_retry_after_header_is_at_least_one_second() -> None:
    assert RateLimitDecision(allowed=False, retry_after_seconds=0.2).retry_after_header == "1"


def test_rate_limit_key_prefers_forwarded_headers() -> None:
    assert extract_rate_limit_key(_request({"X-Forwarded-For": "1.1.1.1, 2.2.2.2"})) == "ip:1.1.1.1"
    assert extract_rate_limit_key(_request({"X-Real-IP": "3.3.3.3"})) == "ip:3.3.3.3"
    assert extract_rate_limit_key(_request({})) == "ip:10.1.2.3"
    assert extract_rate_limit_key(_request({}, client=None)) == "ip:unknown"


def test_check_sweeps_idle_keys_periodically() -> None:
    clock = _Clock()
    limiter = SlidingWindowRateLimiter(5, window_seconds=60, cleanup_interval_seconds=300, clock=clock)
    for index in range(50):
        limiter.check(f"ip:10.0.0.{index}")
    assert limiter.tracked_keys == 50

    clock.now += 120
    limiter.check("ip:recent")
    assert limiter.tracked_keys == 51

    clock.now += 200
    limiter.check("ip:fresh")
    assert limiter.tracked_keys == 1
    assert limiter.check("ip:fresh").allowed
