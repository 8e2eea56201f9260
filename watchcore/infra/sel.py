"""
sel.py - Async Playwright helpers for rich-render extraction.

* `PlaywrightClient` owns the Playwright driver and one browser process.
* `BrowserPool` hands out pages with scoped acquisition: every extraction
  gets its own browser context (geo options, user agent, locale) which is
  closed when the ``async with`` block exits.

    async with BrowserPool(size=2) as pool:
        async with pool.page(options) as page:
            await page.goto("https://example.com/pricing")
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from types import TracebackType
from typing import Any, AsyncIterator, Dict, Optional, Sequence, Type

from playwright.async_api import (
    Browser,
    BrowserType,
    Error as PlaywrightError,
    Page,
    TimeoutError as PlaywrightTimeout,
    async_playwright,
)

logger = logging.getLogger(__name__)

STEALTH_SCRIPT = """
// Remove webdriver property
Object.defineProperty(navigator, 'webdriver', {
  get: () => undefined
});
// Chrome headless fix for plugins
Object.defineProperty(navigator, 'plugins', {
  get: () => [1, 2, 3, 4, 5],
});
"""

COOKIE_SELECTORS = (
    "#onetrust-accept-btn-handler",
    "button:has-text('Accept all')",
    "button:has-text('Accept')",
    "button:has-text('I agree')",
)


class PlaywrightClient:
    """
    Lifecycle wrapper around one Playwright browser process.

    Examples
    --------
    async with PlaywrightClient(stealth=True) as pw:
        context = await pw.new_context(locale="en-US")
    """

    def __init__(
        self,
        *,
        headless: bool = True,
        browser_type: str = "chromium",
        timeout: float = 30_000,
        stealth: bool = True,
        extra_launch_kwargs: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.headless = headless
        self.browser_type = browser_type.lower()
        self.timeout = timeout
        self.stealth = stealth
        self._launch_kwargs = extra_launch_kwargs or {}

        self._playwright = None
        self._browser: Optional[Browser] = None
        self._lock = asyncio.Lock()

    async def __aenter__(self) -> "PlaywrightClient":  # noqa: D401
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        await self.stop()

    async def start(self) -> None:
        """Launch the browser if not already started."""
        async with self._lock:
            if self._browser:
                return

            self._playwright = await async_playwright().start()
            launchers: Dict[str, BrowserType] = {
                "chromium": self._playwright.chromium,
                "firefox": self._playwright.firefox,
                "webkit": self._playwright.webkit,
            }
            if self.browser_type not in launchers:  # pragma: no cover
                await self._playwright.stop()
                self._playwright = None
                raise ValueError(f"Unsupported browser type: {self.browser_type}")

            self._browser = await launchers[self.browser_type].launch(
                headless=self.headless, **self._launch_kwargs
            )
            logger.info(
                "Playwright started: %s (headless=%s, stealth=%s)",
                self.browser_type,
                self.headless,
                self.stealth,
            )

    async def stop(self) -> None:
        """Gracefully close browser & Playwright."""
        if self._browser:
            await self._browser.close()
            self._browser = None
        if self._playwright:
            await self._playwright.stop()
            self._playwright = None
            logger.info("Playwright stopped")

    async def new_context(self, **context_kwargs: Any):
        if not self._browser:
            await self.start()
        context = await self._browser.new_context(ignore_https_errors=True, **context_kwargs)
        if self.stealth:
            await context.add_init_script(STEALTH_SCRIPT)
        return context

    # ------------------------------------------------------------------ #
    # Page utilities
    @staticmethod
    async def dismiss_cookies(
        page: Page,
        selectors: Sequence[str] = COOKIE_SELECTORS,
        timeout: int = 2_000,
    ) -> bool:
        """Click the first cookie-banner button that appears."""
        for sel in selectors:
            try:
                btn = await page.wait_for_selector(sel, timeout=timeout)
                await btn.click()
                logger.debug("Cookie banner dismissed with selector: %s", sel)
                return True
            except PlaywrightTimeout:
                continue
            except PlaywrightError as e:
                logger.debug("Dismiss cookie failed for %s: %s", sel, e)
        return False

    @staticmethod
    async def scroll_to_bottom(
        page: Page,
        *,
        delay: float = 0.25,
        max_scrolls: int = 20,
    ) -> None:
        """Scroll until the page height stops growing so lazy sections render."""
        last_height = -1
        for _ in range(max_scrolls):
            height = await page.evaluate("() => document.body.scrollHeight")
            if height == last_height:
                break
            last_height = height
            await page.evaluate("window.scrollTo(0, document.body.scrollHeight);")
            await asyncio.sleep(delay)


class BrowserPool:
    """Owned browser resource with a bound on concurrently open pages."""

    def __init__(self, client: Optional[PlaywrightClient] = None, *, size: int = 2) -> None:
        self.client = client or PlaywrightClient()
        self._slots = asyncio.Semaphore(size)

    async def __aenter__(self) -> "BrowserPool":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        await self.client.stop()

    @asynccontextmanager
    async def page(self, context_options: Optional[Dict[str, Any]] = None) -> AsyncIterator[Page]:
        """Acquire a page in a fresh browser context; released on exit."""
        async with self._slots:
            context = await self.client.new_context(**(context_options or {}))
            try:
                page = await context.new_page()
                page.set_default_timeout(self.client.timeout)
                yield page
            finally:
                await context.close()
