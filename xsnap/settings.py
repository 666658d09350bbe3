"""Typed configuration objects backed by python-decouple settings."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from decouple import Config as DecoupleConfig, RepositoryEmpty, RepositoryEnv

__all__ = [
    "WorkerSettings",
    "StorageSettings",
    "BrowserSettings",
    "AdmissionSettings",
    "TelemetrySettings",
    "Settings",
    "load_config",
    "get_settings",
]

DEFAULT_ALLOWED_HOSTS = ("x.com", "twitter.com")
DEFAULT_HOST_ALIASES = {"twitter.com": "x.com"}


@dataclass(frozen=True, slots=True)
class WorkerSettings:
    """Scheduler knobs: concurrency budget, retry policy, and drain timing."""

    concurrency_limit: int
    max_retries: int
    poll_interval_ms: int
    retry_base_delay_ms: int
    retry_multiplier: float
    shutdown_drain_timeout_ms: int
    shutdown_check_interval_ms: int = 500


@dataclass(frozen=True, slots=True)
class StorageSettings:
    """Filesystem + SQLite layout for job artifacts."""

    data_dir: Path
    db_path: Path


@dataclass(frozen=True, slots=True)
class BrowserSettings:
    """Playwright capture knobs."""

    ws_endpoint: str | None
    storage_state_path: Path | None
    har_enabled: bool
    auto_scroll: bool
    capture_timeout_ms: int
    settle_ms: int
    content_selector: str
    viewport_width: int
    viewport_height: int
    user_agent: str


@dataclass(frozen=True, slots=True)
class AdmissionSettings:
    """URL policy and submission rate limiting."""

    allowed_hosts: tuple[str, ...]
    host_aliases: dict[str, str]
    rate_limit: int
    rate_limit_window_seconds: int = 60


@dataclass(frozen=True, slots=True)
class TelemetrySettings:
    """Server bind address."""

    host: str
    port: int


@dataclass(frozen=True, slots=True)
class Settings:
    """Top-level immutable configuration container."""

    env_path: str
    worker: WorkerSettings
    storage: StorageSettings
    browser: BrowserSettings
    admission: AdmissionSettings
    telemetry: TelemetrySettings


def load_config(env_path: str = ".env") -> DecoupleConfig:
    """Return a python-decouple config anchored to the repository .env file.

    Falls back to the bare process environment when the file does not exist.
    """

    if Path(env_path).is_file():
        return DecoupleConfig(RepositoryEnv(env_path))
    return DecoupleConfig(RepositoryEmpty())


def _int(cfg: DecoupleConfig, key: str, *, default: int) -> int:
    return cfg(key, cast=int, default=default)


def _float(cfg: DecoupleConfig, key: str, *, default: float) -> float:
    return cfg(key, cast=float, default=default)


def _bool(cfg: DecoupleConfig, key: str, *, default: bool) -> bool:
    return cfg(key, cast=bool, default=default)


def _csv_tuple(cfg: DecoupleConfig, key: str, *, default: tuple[str, ...] = ()) -> tuple[str, ...]:
    raw = cfg(key, default="")
    if not raw:
        return default
    return tuple(part.strip().lower() for part in raw.split(",") if part.strip())


def _alias_map(cfg: DecoupleConfig, key: str) -> dict[str, str]:
    """Parse ``alias=canonical`` pairs, e.g. ``twitter.com=x.com``."""

    raw = cfg(key, default="")
    if not raw:
        return dict(DEFAULT_HOST_ALIASES)
    aliases: dict[str, str] = {}
    for pair in raw.split(","):
        if not pair.strip():
            continue
        alias, sep, canonical = pair.partition("=")
        if not sep or not alias.strip() or not canonical.strip():
            msg = f"{key} entries must look like alias=canonical, got '{pair.strip()}'"
            raise ValueError(msg)
        aliases[alias.strip().lower()] = canonical.strip().lower()
    return aliases


def _optional_path(cfg: DecoupleConfig, key: str) -> Path | None:
    raw = cfg(key, default="")
    return Path(raw) if raw else None


def _validate_worker(worker: WorkerSettings) -> None:
    if worker.concurrency_limit <= 0:
        raise ValueError("XSNAP_CONCURRENCY must be a positive integer")
    if worker.max_retries < 0:
        raise ValueError("XSNAP_MAX_RETRIES must be >= 0")
    if worker.poll_interval_ms <= 0:
        raise ValueError("XSNAP_POLL_INTERVAL_MS must be positive")
    if worker.retry_base_delay_ms < 0:
        raise ValueError("XSNAP_RETRY_BASE_DELAY_MS must be >= 0")
    if worker.retry_multiplier < 1:
        raise ValueError("XSNAP_RETRY_MULTIPLIER must be >= 1")
    if worker.shutdown_drain_timeout_ms < 0:
        raise ValueError("XSNAP_SHUTDOWN_DRAIN_TIMEOUT_MS must be >= 0")


@lru_cache(maxsize=1)
def get_settings(env_path: str = ".env") -> Settings:
    """Load and memoize structured settings for the current process."""

    cfg = load_config(env_path)

    worker = WorkerSettings(
        concurrency_limit=_int(cfg, "XSNAP_CONCURRENCY", default=2),
        max_retries=_int(cfg, "XSNAP_MAX_RETRIES", default=3),
        poll_interval_ms=_int(cfg, "XSNAP_POLL_INTERVAL_MS", default=2000),
        retry_base_delay_ms=_int(cfg, "XSNAP_RETRY_BASE_DELAY_MS", default=5000),
        retry_multiplier=_float(cfg, "XSNAP_RETRY_MULTIPLIER", default=4.0),
        shutdown_drain_timeout_ms=_int(cfg, "XSNAP_SHUTDOWN_DRAIN_TIMEOUT_MS", default=30_000),
    )
    _validate_worker(worker)

    data_dir = Path(cfg("XSNAP_DATA_DIR", default="./data/x-snap")).resolve()
    storage = StorageSettings(
        data_dir=data_dir,
        db_path=Path(cfg("XSNAP_DB_PATH", default=str(data_dir / "xsnap.db"))),
    )

    browser = BrowserSettings(
        ws_endpoint=cfg("PLAYWRIGHT_WS_ENDPOINT", default=None) or None,
        storage_state_path=_optional_path(cfg, "XSNAP_STORAGE_STATE_PATH"),
        har_enabled=_bool(cfg, "XSNAP_HAR_ENABLED", default=False),
        auto_scroll=_bool(cfg, "XSNAP_AUTO_SCROLL", default=True),
        capture_timeout_ms=_int(cfg, "XSNAP_CAPTURE_TIMEOUT_MS", default=60_000),
        settle_ms=_int(cfg, "XSNAP_SETTLE_MS", default=3000),
        content_selector=cfg(
            "XSNAP_CONTENT_SELECTOR",
            default='[data-testid="tweet"], [data-testid="tweetText"], article',
        ),
        viewport_width=_int(cfg, "XSNAP_VIEWPORT_WIDTH", default=1280),
        viewport_height=_int(cfg, "XSNAP_VIEWPORT_HEIGHT", default=900),
        user_agent=cfg(
            "XSNAP_USER_AGENT",
            default=(
                "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
                "(KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36"
            ),
        ),
    )

    admission = AdmissionSettings(
        allowed_hosts=_csv_tuple(cfg, "XSNAP_ALLOWED_HOSTS", default=DEFAULT_ALLOWED_HOSTS),
        host_aliases=_alias_map(cfg, "XSNAP_HOST_ALIASES"),
        rate_limit=_int(cfg, "XSNAP_RATE_LIMIT", default=10),
    )
    if admission.rate_limit <= 0:
        raise ValueError("XSNAP_RATE_LIMIT must be a positive integer")

    telemetry = TelemetrySettings(
        host=cfg("HOST", default="127.0.0.1"),
        port=_int(cfg, "PORT", default=3000),
    )

    return Settings(
        env_path=env_path,
        worker=worker,
        storage=storage,
        browser=browser,
        admission=admission,
        telemetry=telemetry,
    )
