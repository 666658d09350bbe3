"""Exponential backoff policy for failed capture attempts."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import timedelta

_RETRY_SUFFIX = re.compile(r" \(retry \d+/\d+ scheduled\)$")

MAX_RETRY_DELAY_MS = 24 * 60 * 60 * 1000


def retry_delay_ms(
    attempt: int,
    *,
    base_delay_ms: int,
    multiplier: float,
    max_delay_ms: float | None = None,
) -> float:
    """Return ``base_delay_ms * multiplier ** attempt`` (attempt is 0-indexed).

    With ``max_delay_ms`` set the result never exceeds it, even when the
    power overflows a float.
    """

    if attempt < 0:
        raise ValueError(f"attempt must be >= 0, got {attempt}")
    try:
        delay = base_delay_ms * multiplier**attempt
    except OverflowError:
        if max_delay_ms is None:
            raise
        return max_delay_ms
    if max_delay_ms is not None:
        return min(delay, max_delay_ms)
    return delay


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Deterministic backoff: 5s, 20s, 80s with the defaults, capped at a day."""

    base_delay_ms: int = 5000
    multiplier: float = 4.0
    max_delay_ms: float = MAX_RETRY_DELAY_MS

    def delay_ms(self, attempt: int) -> float:
        return retry_delay_ms(
            attempt,
            base_delay_ms=self.base_delay_ms,
            multiplier=self.multiplier,
            max_delay_ms=self.max_delay_ms,
        )

    def delay(self, attempt: int) -> timedelta:
        return timedelta(milliseconds=self.delay_ms(attempt))


def annotate_retry(message: str, *, attempt: int, max_retries: int) -> str:
    """Decorate a failure message for a job that will be retried.

    ``attempt`` is the number of attempts already made, so the scheduled
    retry is ``attempt + 1``.
    """

    return f"{message} (retry {attempt + 1}/{max_retries} scheduled)"


def strip_retry_annotation(text: str | None) -> str | None:
    if text is None:
        return None
    return _RETRY_SUFFIX.sub("", text)


__all__ = [
    "MAX_RETRY_DELAY_MS",
    "RetryPolicy",
    "retry_delay_ms",
    "annotate_retry",
    "strip_retry_annotation",
]
