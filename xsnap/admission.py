"""Submission admission: URL parsing, host policy, normalization, dedup."""

from __future__ import annotations

import ipaddress
import logging
import re
from dataclasses import dataclass, field
from typing import Mapping, Sequence
from urllib.parse import parse_qsl, urlencode, urlsplit

from xsnap.errors import ValidationError
from xsnap.rate_limit import SlidingWindowRateLimiter
from xsnap.settings import AdmissionSettings
from xsnap.store import Store, new_job_id

LOGGER = logging.getLogger(__name__)

TRACKING_PARAMS = frozenset({"s", "t", "ref_src", "ref_url", "src"})
_SPLIT_PATTERN = re.compile(r"[\s,]+")
_LOCAL_HOSTNAMES = frozenset({"localhost", "localhost.localdomain"})


@dataclass(frozen=True, slots=True)
class UrlPolicy:
    """Which hosts may be captured and how host aliases collapse."""

    allowed_hosts: tuple[str, ...]
    host_aliases: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def from_settings(cls, settings: AdmissionSettings) -> UrlPolicy:
        return cls(allowed_hosts=settings.allowed_hosts, host_aliases=settings.host_aliases)


@dataclass(frozen=True, slots=True)
class ParsedUrl:
    original: str
    normalized: str


@dataclass(frozen=True, slots=True)
class InvalidUrl:
    input: str
    reason: str


@dataclass(slots=True)
class ParsedBatch:
    valid: list[ParsedUrl] = field(default_factory=list)
    invalid: list[InvalidUrl] = field(default_factory=list)


@dataclass(slots=True)
class AdmissionResult:
    """Outcome of one submission: created job ids plus rejected entries."""

    created: list[str] = field(default_factory=list)
    duplicates: list[str] = field(default_factory=list)
    invalid: list[InvalidUrl] = field(default_factory=list)
    error: str | None = None
    retry_after_seconds: float | None = None

    @property
    def rate_limited(self) -> bool:
        return self.retry_after_seconds is not None


def _with_scheme(raw: str) -> str:
    return raw if raw.lower().startswith(("http://", "https://")) else f"https://{raw}"


def _strip_www(host: str) -> str:
    return host[4:] if host.startswith("www.") else host


def is_unsafe_host(hostname: str) -> bool:
    """Reject localhost and every IP literal (SSRF guard)."""

    lowered = hostname.lower().strip("[]")
    if lowered in _LOCAL_HOSTNAMES:
        return True
    try:
        ipaddress.ip_address(lowered)
    except ValueError:
        return ":" in lowered
    return True


def validate_url(raw: str, policy: UrlPolicy) -> str:
    """Return the trimmed URL (with scheme) or raise ValidationError."""

    trimmed = raw.strip()
    if not trimmed:
        raise ValidationError("Empty URL")
    if "://" in trimmed and not trimmed.lower().startswith(("http://", "https://")):
        raise ValidationError(f"Invalid URL: {trimmed}")
    candidate = _with_scheme(trimmed)
    try:
        parsed = urlsplit(candidate)
        hostname = parsed.hostname
    except ValueError as exc:
        raise ValidationError(f"Invalid URL: {trimmed}") from exc
    if not hostname:
        raise ValidationError(f"Invalid URL: {trimmed}")
    if is_unsafe_host(hostname):
        raise ValidationError(f"Blocked URL (unsafe host): {trimmed}")
    allowed = {_strip_www(host) for host in policy.allowed_hosts}
    if allowed and _strip_www(hostname.lower()) not in allowed:
        raise ValidationError(f"Host not allowed: {trimmed}")
    return candidate


def normalize_url(raw: str, policy: UrlPolicy) -> str:
    """Canonical form: https, lowercase host without www, aliases applied,
    tracking params dropped, no trailing slash."""

    parsed = urlsplit(_with_scheme(raw.strip()))
    host = _strip_www((parsed.hostname or "").lower())
    host = policy.host_aliases.get(host, host)
    params = parse_qsl(parsed.query, keep_blank_values=True)
    query = urlencode([(key, value) for key, value in params if key not in TRACKING_PARAMS])
    path = parsed.path.rstrip("/") or "/"
    return f"https://{host}{path}{'?' + query if query else ''}"


def parse_urls(text: str, policy: UrlPolicy) -> ParsedBatch:
    """Split free-form input on newlines, commas, and whitespace.

    Duplicates inside the batch (after normalization) are dropped silently.
    """

    batch = ParsedBatch()
    seen: set[str] = set()
    for entry in (part for part in _SPLIT_PATTERN.split(text or "") if part):
        try:
            candidate = validate_url(entry, policy)
        except ValidationError as exc:
            batch.invalid.append(InvalidUrl(input=entry, reason=str(exc)))
            continue
        normalized = normalize_url(candidate, policy)
        if normalized in seen:
            continue
        seen.add(normalized)
        batch.valid.append(ParsedUrl(original=entry, normalized=normalized))
    return batch


class AdmissionController:
    """Turns operator input into queued capture jobs."""

    def __init__(
        self,
        *,
        store: Store,
        policy: UrlPolicy,
        rate_limiter: SlidingWindowRateLimiter | None = None,
    ) -> None:
        self.store = store
        self.policy = policy
        self.rate_limiter = rate_limiter

    @classmethod
    def from_settings(cls, store: Store, settings: AdmissionSettings) -> AdmissionController:
        limiter = SlidingWindowRateLimiter(
            settings.rate_limit,
            window_seconds=settings.rate_limit_window_seconds,
        )
        return cls(store=store, policy=UrlPolicy.from_settings(settings), rate_limiter=limiter)

    def submit(self, text: str, *, client_key: str = "local") -> AdmissionResult:
        if self.rate_limiter is not None:
            decision = self.rate_limiter.check(client_key)
            if not decision.allowed:
                LOGGER.info("Rate limit hit for %s", client_key)
                return AdmissionResult(
                    error=f"Rate limit exceeded. Try again in {decision.retry_after_header} seconds.",
                    retry_after_seconds=decision.retry_after_seconds,
                )

        if not text or not text.strip():
            return AdmissionResult(error="No URLs provided.")

        batch = parse_urls(text, self.policy)
        if not batch.valid:
            return AdmissionResult(invalid=batch.invalid, error="No valid URLs found.")

        return self.enqueue_batch(batch.valid, invalid=batch.invalid)

    def enqueue_batch(
        self,
        entries: Sequence[ParsedUrl],
        *,
        invalid: Sequence[InvalidUrl] = (),
    ) -> AdmissionResult:
        result = AdmissionResult(invalid=list(invalid))
        active = self.store.find_active_targets(entry.normalized for entry in entries)
        for entry in entries:
            if entry.normalized in active:
                result.duplicates.append(entry.original)
                continue
            job_id = new_job_id()
            self.store.enqueue(entry.normalized, job_id, job_id=job_id, url=entry.original)
            result.created.append(job_id)
        if result.created:
            LOGGER.info("Queued %d capture job(s)", len(result.created))
        return result


__all__ = [
    "AdmissionController",
    "AdmissionResult",
    "InvalidUrl",
    "ParsedBatch",
    "ParsedUrl",
    "UrlPolicy",
    "is_unsafe_host",
    "normalize_url",
    "parse_urls",
    "validate_url",
]
