from __future__ import annotations

from pathlib import Path

import pytest

from xsnap.admission import (
    AdmissionController,
    UrlPolicy,
    is_unsafe_host,
    normalize_url,
    parse_urls,
    validate_url,
)
from xsnap.errors import ValidationError
from xsnap.rate_limit import SlidingWindowRateLimiter
from xsnap.settings import AdmissionSettings
from xsnap.store import JOB_ID_PATTERN, StorageConfig, Store

POLICY = UrlPolicy(allowed_hosts=("x.com", "twitter.com"), host_aliases={"twitter.com": "x.com"})


def _storage(tmp_path: Path) -> Store:
    return Store(config=StorageConfig(data_dir=tmp_path / "data", db_path=tmp_path / "xsnap.db"))


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("https://x.com/jack/status/20", "https://x.com/jack/status/20"),
        ("x.com/jack/status/20", "https://x.com/jack/status/20"),
        ("http://WWW.Twitter.com/jack/status/20/", "https://x.com/jack/status/20"),
        ("https://twitter.com/jack/status/20?s=20&t=abc", "https://x.com/jack/status/20"),
        ("https://x.com/search?q=python&src=typed_query", "https://x.com/search?q=python"),
    ],
)
def test_normalize_url(raw: str, expected: str) -> None:
    assert normalize_url(raw, POLICY) == expected


@pytest.mark.parametrize("host", ["localhost", "127.0.0.1", "10.0.0.8", "[::1]", "::1", "169.254.169.254"])
def test_unsafe_hosts(host: str) -> None:
    assert is_unsafe_host(host)


def test_public_hostname_is_safe() -> None:
    assert not is_unsafe_host("x.com")


@pytest.mark.parametrize(
    ("raw", "reason"),
    [
        ("   ", "Empty URL"),
        ("ftp://x.com/a", "Invalid URL"),
        ("http://127.0.0.1/admin", "Blocked URL (unsafe host)"),
        ("https://localhost:8080/", "Blocked URL (unsafe host)"),
        ("https://example.com/page", "Host not allowed"),
    ],
)
def test_validate_url_rejections(raw: str, reason: str) -> None:
    with pytest.raises(ValidationError, match=r"^" + reason.replace("(", r"\(").replace(")", r"\)")):
        validate_url(raw, POLICY)


def test_empty_allow_list_accepts_any_public_host() -> None:
    policy = UrlPolicy(allowed_hosts=())
    assert validate_url("example.com/a", policy) == "https://example.com/a"


def test_parse_urls_splits_and_dedups_within_batch() -> None:
    batch = parse_urls(
        "https://x.com/a/status/1, twitter.com/a/status/1\nhttps://example.com/b  x.com/c/status/3",
        POLICY,
    )

    assert [entry.normalized for entry in batch.valid] == [
        "https://x.com/a/status/1",
        "https://x.com/c/status/3",
    ]
    assert [entry.input for entry in batch.invalid] == ["https://example.com/b"]
    assert batch.invalid[0].reason.startswith("Host not allowed")


def test_submit_creates_jobs_and_reports_duplicates(tmp_path: Path) -> None:
    store = _storage(tmp_path)
    controller = AdmissionController(store=store, policy=POLICY)

    first = controller.submit("https://x.com/a/status/1 https://example.com/x")
    assert len(first.created) == 1
    assert first.error is None
    assert [entry.input for entry in first.invalid] == ["https://example.com/x"]
    job_id = first.created[0]
    assert JOB_ID_PATTERN.match(job_id)
    record = store.get_by_id(job_id)
    assert record.target == "https://x.com/a/status/1"
    assert record.url == "https://x.com/a/status/1"
    assert record.artifact_location == job_id

    second = controller.submit("twitter.com/a/status/1?s=20\nx.com/b/status/2")
    assert second.duplicates == ["twitter.com/a/status/1?s=20"]
    assert len(second.created) == 1


def test_finished_targets_can_be_resubmitted(tmp_path: Path) -> None:
    store = _storage(tmp_path)
    controller = AdmissionController(store=store, policy=POLICY)
    job_id = controller.submit("x.com/a/status/1").created[0]
    store.mark_running(job_id, started_at=store.get_by_id(job_id).created_at)
    store.mark_failed_terminal(job_id, completed_at=store.get_by_id(job_id).created_at, error_text="gone")

    again = controller.submit("x.com/a/status/1")

    assert len(again.created) == 1
    assert again.duplicates == []


@pytest.mark.parametrize(
    ("text", "error"),
    [
        ("", "No URLs provided."),
        ("  \n ", "No URLs provided."),
        ("https://example.com/a localhost", "No valid URLs found."),
    ],
)
def test_submit_errors(tmp_path: Path, text: str, error: str) -> None:
    controller = AdmissionController(store=_storage(tmp_path), policy=POLICY)
    result = controller.submit(text)
    assert result.error == error
    assert result.created == []
    assert not result.rate_limited


def test_submit_is_rate_limited_per_client(tmp_path: Path) -> None:
    limiter = SlidingWindowRateLimiter(1, window_seconds=60, clock=lambda: 50.0)
    controller = AdmissionController(store=_storage(tmp_path), policy=POLICY, rate_limiter=limiter)

    assert controller.submit("x.com/a/status/1", client_key="ip:1").created
    blocked = controller.submit("x.com/b/status/2", client_key="ip:1")

    assert blocked.rate_limited
    assert blocked.retry_after_seconds == pytest.approx(60)
    assert blocked.error == "Rate limit exceeded. Try again in 60 seconds."
    assert controller.submit("x.com/b/status/2", client_key="ip:2").created


def test_from_settings_wires_policy_and_limiter(tmp_path: Path) -> None:
    settings = AdmissionSettings(
        allowed_hosts=("x.com",),
        host_aliases={},
        rate_limit=5,
        rate_limit_window_seconds=30,
    )
    controller = AdmissionController.from_settings(_storage(tmp_path), settings)

    assert controller.policy.allowed_hosts == ("x.com",)
    assert controller.rate_limiter is not None
    assert controller.rate_limiter.max_requests == 5
    assert controller.rate_limiter.window_seconds == 30
