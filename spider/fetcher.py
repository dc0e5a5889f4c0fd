"""
Fetch Worker
============
Renders one URL in headless Chromium and returns its HTML.

- ``BrowserSession`` owns the Playwright driver, the browser and one shared
  ``BrowserContext``.  It is an async context manager: leaving the block
  (normally, on an exception, or on cancellation) closes every open page,
  the context, the browser and the driver.
- ``PageFetcher.fetch(url, credentials)`` acquires exactly one page for the
  duration of the fetch and closes it on every exit path.  It never raises
  for navigation problems: the outcome is a ``RawPage`` or a
  ``FetchFailure``.

HTTP 5xx answers are the only retried outcome (a fresh page per attempt,
exponential backoff).  Timeouts and navigation errors are final for this
dispatch; the URL is recorded as ``error``, and only a record reset to
``queued`` is picked up again by a later run.
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional, Union

from playwright.async_api import Browser, BrowserContext, Page, async_playwright
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeout

from .errors import FailureKind, FetchFailure
from .session import SessionCredentials
from .utils import RetryHandler, truncate

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RawPage:
    """Fully rendered HTML of one URL."""
    url: str
    html: str
    status: int = 200
    elapsed_ms: float = 0.0


FetchOutcome = Union[RawPage, FetchFailure]


# ---------------------------------------------------------------------------
# Browser lifecycle
# ---------------------------------------------------------------------------

class BrowserSession:
    """
    Headless Chromium for one crawl run.

    Usage::

        async with BrowserSession(headless=True) as browser:
            fetcher = PageFetcher(browser)
            outcome = await fetcher.fetch(url, credentials)
    """

    def __init__(self, *, headless: bool = True, viewport_width: int = 1920, viewport_height: int = 1080):
        self.headless = headless
        self.viewport_width = viewport_width
        self.viewport_height = viewport_height
        self._playwright = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None

    async def __aenter__(self) -> "BrowserSession":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def start(self) -> None:
        self._playwright = await async_playwright().start()
        self._browser = await self._playwright.chromium.launch(
            headless=self.headless,
            args=[
                '--disable-gpu',
                '--no-sandbox',
                '--disable-dev-shm-usage',
                '--disable-extensions',
                '--no-first-run',
            ],
        )
        self._context = await self._browser.new_context(
            viewport={'width': self.viewport_width, 'height': self.viewport_height},
        )
        logger.info(f"[BROWSER] Chromium started (headless={self.headless})")

    async def new_page(self) -> Page:
        if self._context is None:
            raise RuntimeError("BrowserSession is not started")
        return await self._context.new_page()

    @property
    def open_pages(self) -> int:
        return len(self._context.pages) if self._context else 0

    async def close(self) -> None:
        """Close pages, context, browser and driver.  Safe to call twice."""
        if self._context is not None:
            leaked = list(self._context.pages)
            if leaked:
                logger.warning(f"[BROWSER] Closing {len(leaked)} pages still open at shutdown")
            for page in leaked:
                try:
                    await page.close()
                except PlaywrightError as exc:
                    logger.debug(f"[BROWSER] Page close during shutdown: {exc}")
            try:
                await self._context.close()
            except PlaywrightError as exc:
                logger.debug(f"[BROWSER] Context close: {exc}")
            self._context = None
        if self._browser is not None:
            try:
                await self._browser.close()
            except PlaywrightError as exc:
                logger.debug(f"[BROWSER] Browser close: {exc}")
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None
            logger.info("[BROWSER] Chromium closed")


# ---------------------------------------------------------------------------
# Fetching
# ---------------------------------------------------------------------------

class PageFetcher:
    """
    Stateless fetch worker.  Any object with an async ``new_page()`` works
    as the page source (``BrowserSession`` in production).
    """

    def __init__(
        self,
        page_source: Any,
        *,
        timeout_ms: int = 60_000,
        max_attempts: int = 3,
        retry_base_delay: float = 1.0,
        retry_handler: Optional[RetryHandler] = None,
    ):
        self.page_source = page_source
        self.timeout_ms = timeout_ms
        self.retry = retry_handler or RetryHandler(
            max_attempts=max_attempts, base_delay=retry_base_delay,
        )

    async def fetch(self, url: str, credentials: Optional[SessionCredentials] = None) -> FetchOutcome:
        """Render *url*; 5xx answers are retried, everything else is final."""
        credentials = credentials or SessionCredentials()
        return await self.retry.run(
            lambda: self._fetch_once(url, credentials),
            should_retry=lambda outcome: (
                isinstance(outcome, FetchFailure) and outcome.kind.is_transient
            ),
            retry_on=(),
            label=f"fetch {truncate(url, 60)}",
        )

    @asynccontextmanager
    async def _open_page(self) -> AsyncIterator[Page]:
        page = await self.page_source.new_page()
        try:
            yield page
        finally:
            try:
                await page.close()
            except PlaywrightError as exc:
                logger.debug(f"[FETCH] Page close failed: {exc}")

    async def _fetch_once(self, url: str, credentials: SessionCredentials) -> FetchOutcome:
        t_start = time.monotonic()
        try:
            async with self._open_page() as page:
                await page.set_extra_http_headers(credentials.headers())
                logger.info(f"[FETCH] {truncate(url)}")
                response = await page.goto(url, wait_until="networkidle", timeout=self.timeout_ms)

                status = response.status if response is not None else 200
                failure = _classify_status(url, status)
                if failure is not None:
                    logger.warning(f"[FETCH] {truncate(url, 60)}: HTTP {status}")
                    return failure

                html = await page.content()
        except PlaywrightTimeout as exc:
            logger.warning(f"[FETCH] Timeout after {self.timeout_ms}ms: {truncate(url, 60)}")
            return FetchFailure(
                url=url,
                kind=FailureKind.NAVIGATION_TIMEOUT,
                message=f"Navigation timed out after {self.timeout_ms}ms: {_first_line(exc)}",
            )
        except PlaywrightError as exc:
            logger.warning(f"[FETCH] Navigation error: {truncate(url, 60)}: {_first_line(exc)}")
            return FetchFailure(
                url=url,
                kind=FailureKind.NAVIGATION_ERROR,
                message=_first_line(exc),
            )

        return RawPage(
            url=url,
            html=html,
            status=status,
            elapsed_ms=round((time.monotonic() - t_start) * 1000, 1),
        )


def _classify_status(url: str, status: int) -> Optional[FetchFailure]:
    """Map an HTTP status to a failure variant (None for success)."""
    if status < 400:
        return None
    if status == 404:
        return FetchFailure(url, FailureKind.NOT_FOUND, "HTTP 404 Not Found", status)
    if status >= 500:
        return FetchFailure(url, FailureKind.SERVER_ERROR, f"HTTP {status} server error", status)
    return FetchFailure(url, FailureKind.HTTP_ERROR, f"HTTP {status}", status)


def _first_line(exc: BaseException) -> str:
    text = str(exc).strip()
    return text.splitlines()[0] if text else type(exc).__name__
