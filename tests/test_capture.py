from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any

import pytest
from playwright.async_api import Error as PlaywrightError, TimeoutError as PlaywrightTimeoutError

from xsnap.capture import (
    HASHES_NAME,
    METADATA_NAME,
    PDF_NAME,
    SCREENSHOT_NAME,
    BrowserCaptureExecutor,
    _commit_artifacts,
    hash_file,
)
from xsnap.errors import CaptureFailure
from xsnap.settings import BrowserSettings


def _browser_settings(**overrides: Any) -> BrowserSettings:
    values: dict[str, Any] = {
        "ws_endpoint": None,
        "storage_state_path": None,
        "har_enabled": False,
        "auto_scroll": False,
        "capture_timeout_ms": 1000,
        "settle_ms": 0,
        "content_selector": "article",
        "viewport_width": 800,
        "viewport_height": 600,
        "user_agent": "xsnap-test",
    }
    values.update(overrides)
    return BrowserSettings(**values)


class _FakePage:
    def __init__(self, *, fail_goto: bool = False) -> None:
        self.fail_goto = fail_goto
        self.visited: list[str] = []

    def set_default_timeout(self, timeout: int) -> None:
        self.timeout = timeout

    async def goto(self, url: str, **_: Any) -> None:
        self.visited.append(url)
        if self.fail_goto:
            raise PlaywrightError("net::ERR_NAME_NOT_RESOLVED")

    async def wait_for_selector(self, selector: str, **_: Any) -> None:
        raise PlaywrightTimeoutError(f"{selector} never appeared")

    async def wait_for_timeout(self, _ms: int) -> None:
        return None

    async def evaluate(self, *_: Any) -> None:
        return None

    async def screenshot(self, *, path: str, **_: Any) -> None:
        Path(path).write_bytes(b"png-bytes")

    async def pdf(self, *, path: str, **_: Any) -> None:
        Path(path).write_bytes(b"%PDF-1.7")

    async def title(self) -> str:
        return "Post on X"


class _FakeContext:
    def __init__(self, page: _FakePage, options: dict[str, Any]) -> None:
        self.page = page
        self.options = options
        self.pages: list[_FakePage] = []
        self.closed = False

    async def new_page(self) -> _FakePage:
        self.pages.append(self.page)
        return self.page

    async def close(self) -> None:
        self.closed = True


class _FakeBrowser:
    def __init__(self, page_factory) -> None:  # noqa: ANN001
        self.page_factory = page_factory
        self.connected = True
        self.closed = False
        self.contexts: list[_FakeContext] = []

    def is_connected(self) -> bool:
        return self.connected

    async def new_context(self, **options: Any) -> _FakeContext:
        context = _FakeContext(self.page_factory(), options)
        self.contexts.append(context)
        return context

    async def close(self) -> None:
        self.closed = True


class _FakeChromium:
    def __init__(self, page_factory) -> None:  # noqa: ANN001
        self.page_factory = page_factory
        self.launches: list[dict[str, Any]] = []
        self.connects: list[str] = []
        self.browsers: list[_FakeBrowser] = []

    async def launch(self, **kwargs: Any) -> _FakeBrowser:
        self.launches.append(kwargs)
        browser = _FakeBrowser(self.page_factory)
        self.browsers.append(browser)
        return browser

    async def connect(self, endpoint: str) -> _FakeBrowser:
        self.connects.append(endpoint)
        browser = _FakeBrowser(self.page_factory)
        self.browsers.append(browser)
        return browser


class _FakePlaywright:
    def __init__(self, page_factory) -> None:  # noqa: ANN001
        self.chromium = _FakeChromium(page_factory)
        self.stopped = False

    async def stop(self) -> None:
        self.stopped = True


class _FakeManager:
    def __init__(self, playwright: _FakePlaywright) -> None:
        self.playwright = playwright
        self.starts = 0

    async def start(self) -> _FakePlaywright:
        self.starts += 1
        return self.playwright


def _executor(settings: BrowserSettings | None = None, *, fail_goto: bool = False):
    playwright = _FakePlaywright(lambda: _FakePage(fail_goto=fail_goto))
    manager = _FakeManager(playwright)
    executor = BrowserCaptureExecutor(settings or _browser_settings(), playwright_factory=lambda: manager)
    return executor, manager, playwright


def test_hash_file_matches_sha256(tmp_path: Path) -> None:
    payload = b"x" * (3 * 1024 * 1024 + 7)
    path = tmp_path / "blob.bin"
    path.write_bytes(payload)

    assert hash_file(path) == hashlib.sha256(payload).hexdigest()


def test_commit_artifacts_replaces_previous_files(tmp_path: Path) -> None:
    artifact_dir = tmp_path / "job"
    staging = artifact_dir / ".staging-1"
    staging.mkdir(parents=True)
    (artifact_dir / SCREENSHOT_NAME).write_bytes(b"old")
    (staging / SCREENSHOT_NAME).write_bytes(b"new")
    (staging / PDF_NAME).write_bytes(b"pdf")

    committed = _commit_artifacts(staging, artifact_dir)

    assert sorted(path.name for path in committed) == sorted([SCREENSHOT_NAME, PDF_NAME])
    assert (artifact_dir / SCREENSHOT_NAME).read_bytes() == b"new"
    assert list(staging.iterdir()) == []


@pytest.mark.asyncio
async def test_execute_writes_artifacts_and_digests(tmp_path: Path):
    executor, _manager, playwright = _executor()
    artifact_dir = tmp_path / "01JOB"

    digests = await executor.execute("https://x.com/a/status/1", artifact_dir)

    assert set(digests) == {SCREENSHOT_NAME, PDF_NAME, METADATA_NAME}
    for name, digest in digests.items():
        assert hash_file(artifact_dir / name) == digest
    assert json.loads((artifact_dir / HASHES_NAME).read_text()) == digests
    metadata = json.loads((artifact_dir / METADATA_NAME).read_text())
    assert metadata["url"] == "https://x.com/a/status/1"
    assert metadata["page_title"] == "Post on X"
    assert metadata["viewport"] == {"width": 800, "height": 600}
    assert not any(path.name.startswith(".staging-") for path in artifact_dir.iterdir())

    context = playwright.chromium.browsers[0].contexts[0]
    assert context.closed
    assert context.options["user_agent"] == "xsnap-test"
    assert "record_har_path" not in context.options


@pytest.mark.asyncio
async def test_browser_is_launched_once_and_relaunched_after_disconnect(tmp_path: Path):
    executor, manager, playwright = _executor()

    await executor.execute("https://x.com/a/status/1", tmp_path / "a")
    await executor.execute("https://x.com/a/status/2", tmp_path / "b")
    assert len(playwright.chromium.launches) == 1
    assert playwright.chromium.launches[0]["headless"] is True

    playwright.chromium.browsers[0].connected = False
    await executor.execute("https://x.com/a/status/3", tmp_path / "c")
    assert len(playwright.chromium.launches) == 2
    assert manager.starts == 1

    await executor.close()
    assert all(browser.closed for browser in playwright.chromium.browsers[1:])
    assert playwright.stopped


@pytest.mark.asyncio
async def test_remote_endpoint_uses_connect(tmp_path: Path):
    executor, _manager, playwright = _executor(_browser_settings(ws_endpoint="ws://chrome:3000"))

    await executor.execute("https://x.com/a/status/1", tmp_path / "job")

    assert playwright.chromium.connects == ["ws://chrome:3000"]
    assert playwright.chromium.launches == []


@pytest.mark.asyncio
async def test_har_recording_option(tmp_path: Path):
    executor, _manager, playwright = _executor(_browser_settings(har_enabled=True))

    digests = await executor.execute("https://x.com/a/status/1", tmp_path / "job")

    options = playwright.chromium.browsers[0].contexts[0].options
    assert options["record_har_path"].endswith("network.har")
    # The fake context never writes a HAR, so it is not hashed.
    assert "network.har" not in digests


@pytest.mark.asyncio
async def test_navigation_error_raises_capture_failure(tmp_path: Path):
    executor, _manager, _playwright = _executor(fail_goto=True)
    artifact_dir = tmp_path / "job"

    with pytest.raises(CaptureFailure, match="ERR_NAME_NOT_RESOLVED"):
        await executor.execute("https://x.com/a/status/1", artifact_dir)

    names = {path.name for path in artifact_dir.iterdir()}
    assert "error-metadata.json" in names
    assert "error-screenshot.png" in names
    assert SCREENSHOT_NAME not in names
    assert HASHES_NAME not in names
    assert not any(name.startswith(".staging-") for name in names)
    error_metadata = json.loads((artifact_dir / "error-metadata.json").read_text())
    assert error_metadata["error_type"] == "Error"


@pytest.mark.asyncio
async def test_close_without_browser_is_noop():
    executor, manager, _playwright = _executor()
    await executor.close()
    assert manager.starts == 0
