"""Playwright-based capture executor (screenshot + PDF + metadata + hashes)."""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import json
import logging
import os
import shutil
from datetime import datetime, timezone
from importlib import metadata
from pathlib import Path
from typing import Any, Callable, Mapping, Protocol
from uuid import uuid4

from playwright.async_api import (
    Browser,
    BrowserContext,
    Error as PlaywrightError,
    Page,
    Playwright,
    TimeoutError as PlaywrightTimeoutError,
    async_playwright,
)

from xsnap.errors import CaptureFailure
from xsnap.settings import BrowserSettings

LOGGER = logging.getLogger(__name__)

SCREENSHOT_NAME = "screenshot.png"
PDF_NAME = "page.pdf"
METADATA_NAME = "metadata.json"
HAR_NAME = "network.har"
HASHES_NAME = "hashes.json"
ERROR_SCREENSHOT_NAME = "error-screenshot.png"
ERROR_METADATA_NAME = "error-metadata.json"

SCROLL_STEP_PX = 800
SCROLL_DELAY_MS = 300
_HASH_CHUNK_BYTES = 1024 * 1024

_LAUNCH_ARGS = (
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
)

_AUTO_SCROLL_SCRIPT = """
async ({ stepPx, delayMs }) => {
    await new Promise((resolve) => {
        let scrolled = 0;
        const maxScroll = document.body.scrollHeight;
        const timer = setInterval(() => {
            window.scrollBy(0, stepPx);
            scrolled += stepPx;
            if (scrolled >= maxScroll) {
                clearInterval(timer);
                window.scrollTo(0, 0);
                resolve();
            }
        }, delayMs);
    });
}
"""


class CaptureExecutor(Protocol):
    """Anything the worker can hand a job to.

    ``execute`` must be safe to call concurrently and must never leave a
    partially written capture behind when it raises.
    """

    async def execute(self, target: str, artifact_dir: Path) -> dict[str, str]: ...

    async def close(self) -> None: ...


PlaywrightFactory = Callable[[], Any]


class BrowserCaptureExecutor:
    """Drive a shared Chromium instance to capture one URL per call.

    The browser is launched (or connected to, when a websocket endpoint is
    configured) on first use and reused across jobs until :meth:`close`.
    """

    def __init__(
        self,
        settings: BrowserSettings,
        *,
        playwright_factory: PlaywrightFactory = async_playwright,
    ) -> None:
        self.settings = settings
        self._playwright_factory = playwright_factory
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._lock = asyncio.Lock()

    async def get_browser(self) -> Browser:
        async with self._lock:
            if self._browser is not None and self._browser.is_connected():
                return self._browser
            if self._playwright is None:
                self._playwright = await self._playwright_factory().start()
            if self.settings.ws_endpoint:
                LOGGER.info("Connecting to remote browser at %s", self.settings.ws_endpoint)
                self._browser = await self._playwright.chromium.connect(self.settings.ws_endpoint)
            else:
                LOGGER.debug("launching chromium")
                self._browser = await self._playwright.chromium.launch(headless=True, args=list(_LAUNCH_ARGS))
            return self._browser

    async def close(self) -> None:
        async with self._lock:
            browser, self._browser = self._browser, None
            playwright, self._playwright = self._playwright, None
            if browser is not None:
                with contextlib.suppress(PlaywrightError):
                    await browser.close()
            if playwright is not None:
                await playwright.stop()

    async def execute(self, target: str, artifact_dir: Path) -> dict[str, str]:
        artifact_dir.mkdir(parents=True, exist_ok=True)
        staging = artifact_dir / f".staging-{uuid4().hex}"
        staging.mkdir()
        try:
            try:
                browser = await self.get_browser()
            except PlaywrightError as exc:
                raise CaptureFailure(f"Browser unavailable: {exc.message}") from exc
            names = await self._capture_into(browser, target, staging, artifact_dir)
            digests = await asyncio.to_thread(_hash_artifacts, staging, names)
            (staging / HASHES_NAME).write_text(json.dumps(digests, indent=2), encoding="utf-8")
            await asyncio.to_thread(_commit_artifacts, staging, artifact_dir)
            return digests
        except OSError as exc:
            raise CaptureFailure(f"Could not write artifacts: {exc}") from exc
        finally:
            shutil.rmtree(staging, ignore_errors=True)

    async def _capture_into(
        self,
        browser: Browser,
        target: str,
        staging: Path,
        artifact_dir: Path,
    ) -> list[str]:
        settings = self.settings
        context: BrowserContext | None = None
        try:
            context = await browser.new_context(**self._context_options(staging))
            page = await context.new_page()
            page.set_default_timeout(settings.capture_timeout_ms)

            await page.goto(target, wait_until="load", timeout=settings.capture_timeout_ms)
            try:
                await page.wait_for_selector(settings.content_selector, timeout=min(15_000, settings.capture_timeout_ms))
            except PlaywrightTimeoutError:
                LOGGER.debug("Content selector never appeared for %s", target)
            await page.wait_for_timeout(settings.settle_ms)
            if settings.auto_scroll:
                await _auto_scroll(page, settle_ms=settings.settle_ms)

            await page.screenshot(path=str(staging / SCREENSHOT_NAME), full_page=True)
            await page.pdf(path=str(staging / PDF_NAME), format="A4", print_background=True)
            capture_metadata = {
                "url": target,
                "captured_at": datetime.now(timezone.utc).isoformat(),
                "user_agent": settings.user_agent,
                "viewport": {"width": settings.viewport_width, "height": settings.viewport_height},
                "page_title": await page.title(),
                "playwright_version": playwright_version(),
                "har_enabled": settings.har_enabled,
            }
            (staging / METADATA_NAME).write_text(json.dumps(capture_metadata, indent=2), encoding="utf-8")

            # Closing the context flushes the HAR file.
            closing, context = context, None
            await closing.close()
        except PlaywrightError as exc:
            await _capture_error_state(artifact_dir, target, exc, context)
            raise CaptureFailure(exc.message) from exc
        finally:
            if context is not None:
                with contextlib.suppress(PlaywrightError):
                    await context.close()

        names = [SCREENSHOT_NAME, PDF_NAME, METADATA_NAME]
        if settings.har_enabled and (staging / HAR_NAME).exists():
            names.append(HAR_NAME)
        return names

    def _context_options(self, staging: Path) -> dict[str, Any]:
        settings = self.settings
        options: dict[str, Any] = {
            "viewport": {"width": settings.viewport_width, "height": settings.viewport_height},
            "user_agent": settings.user_agent,
            "ignore_https_errors": True,
        }
        if settings.storage_state_path and settings.storage_state_path.exists():
            options["storage_state"] = str(settings.storage_state_path)
        if settings.har_enabled:
            options["record_har_path"] = str(staging / HAR_NAME)
        return options


def hash_file(path: Path) -> str:
    """SHA-256 hex digest of a file, streamed in chunks."""

    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(_HASH_CHUNK_BYTES), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _hash_artifacts(directory: Path, names: list[str]) -> dict[str, str]:
    return {name: hash_file(directory / name) for name in names}


def _commit_artifacts(staging: Path, artifact_dir: Path) -> list[Path]:
    """Move every staged file into the job directory, replacing older copies."""

    committed: list[Path] = []
    for source in sorted(staging.iterdir()):
        if not source.is_file():
            continue
        destination = artifact_dir / source.name
        os.replace(source, destination)
        committed.append(destination)
    return committed


async def _auto_scroll(page: Page, *, settle_ms: int) -> None:
    await page.evaluate(_AUTO_SCROLL_SCRIPT, {"stepPx": SCROLL_STEP_PX, "delayMs": SCROLL_DELAY_MS})
    await page.wait_for_timeout(settle_ms)


async def _capture_error_state(
    artifact_dir: Path,
    target: str,
    error: BaseException,
    context: BrowserContext | None,
) -> None:
    """Best-effort forensics for a failed capture; never raises."""

    if context is not None and context.pages:
        try:
            await context.pages[0].screenshot(path=str(artifact_dir / ERROR_SCREENSHOT_NAME), full_page=True)
        except PlaywrightError as exc:
            LOGGER.debug("Error-state screenshot failed for %s: %s", target, exc)
    payload: Mapping[str, Any] = {
        "url": target,
        "captured_at": datetime.now(timezone.utc).isoformat(),
        "error": str(error),
        "error_type": type(error).__name__,
    }
    try:
        (artifact_dir / ERROR_METADATA_NAME).write_text(json.dumps(payload, indent=2), encoding="utf-8")
    except OSError as exc:
        LOGGER.warning("Could not write error metadata for %s: %s", target, exc)


def playwright_version() -> str:
    try:
        return metadata.version("playwright")
    except metadata.PackageNotFoundError:  # pragma: no cover - dev fallback
        return "unknown"


__all__ = [
    "CaptureExecutor",
    "BrowserCaptureExecutor",
    "hash_file",
    "playwright_version",
    "SCREENSHOT_NAME",
    "PDF_NAME",
    "METADATA_NAME",
    "HASHES_NAME",
]
