"""
Extractors: turn a URL + monitoring context into a structured signal payload.

* ``HttpExtractor``      - lightweight; one HTTP GET parsed with BeautifulSoup
* ``BrowserExtractor``   - rich render; a real browser page from the pool
* ``PageSpeedExtractor`` - performance metrics from the PageSpeed Insights API

Extractors never raise: every failure becomes an ``ExtractionFailure`` with a
code from the shared taxonomy.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

import aiohttp
from playwright.async_api import Error as PlaywrightError, TimeoutError as PlaywrightTimeout

from .geo import browser_context_options, request_headers
from .infra.http import HttpClient
from .infra.sel import BrowserPool, PlaywrightClient
from .interfaces import Extractor
from .models import (
    ErrorCode,
    Extraction,
    ExtractionFailure,
    ExtractionResult,
    MonitoringContext,
    ScraperStrategy,
    SignalType,
    hash_content,
)
from .parsing import merge_branding, page_text, parse_signal
from .strategy import classify_error

logger = logging.getLogger(__name__)

MIN_HTML_LENGTH = 100

# computed styles read from the rendered page, merged into the parsed payload
BRANDING_SCRIPT = """
() => {
  const css = (el, prop) => el ? getComputedStyle(el).getPropertyValue(prop).trim() : null;
  const toHex = (value) => {
    const m = value && value.match(/rgba?\\((\\d+),\\s*(\\d+),\\s*(\\d+)/);
    if (!m) return null;
    return '#' + [m[1], m[2], m[3]].map(n => Number(n).toString(16).padStart(2, '0')).join('');
  };
  const body = document.body;
  const button = document.querySelector('a[class*="btn"], button[class*="primary"], button');
  const heading = document.querySelector('h1, h2');
  const logo = document.querySelector('img[alt*="logo" i], img[class*="logo" i], header img');
  const fonts = [css(body, 'font-family'), css(heading, 'font-family')]
    .filter(Boolean)
    .map(f => f.split(',')[0].replace(/["']/g, '').trim());
  return {
    colors: {
      primary: toHex(css(button, 'background-color')),
      background: toHex(css(body, 'background-color')),
      text_primary: toHex(css(body, 'color')),
      text_secondary: toHex(css(document.querySelector('p'), 'color')),
    },
    fonts: fonts,
    logo: logo ? logo.src : null,
  };
}
"""


def _result(
    signal: SignalType,
    method: ScraperStrategy,
    content: Dict[str, Any],
    text: str = "",
    evidence: Optional[bytes] = None,
) -> ExtractionResult:
    return ExtractionResult(
        signal=signal,
        method=method,
        content=content,
        content_hash=hash_content(content),
        text=text,
        evidence=evidence,
    )


def _status_code(status: int) -> ErrorCode:
    if status in (401, 403, 429):
        return ErrorCode.BLOCKED
    if status >= 500:
        return ErrorCode.API_ERROR
    return ErrorCode.UNKNOWN


def _empty_check(signal: SignalType, content: Dict[str, Any]) -> Optional[str]:
    """Reason a parsed payload carries nothing worth storing, if any."""
    if signal == SignalType.PRICING and not content.get("plans"):
        return "No plans found on page"
    return None


class HttpExtractor(Extractor):
    """Plain HTTP fetch with region headers; no JavaScript runs."""

    def __init__(self, http: HttpClient):
        self.http = http

    @property
    def method(self) -> ScraperStrategy:
        return ScraperStrategy.LIGHTWEIGHT

    async def extract(
        self,
        url: str,
        context: MonitoringContext,
        signal: SignalType,
        *,
        capture_evidence: bool = False,
    ) -> Extraction:
        try:
            page = await self.http.fetch_page(url, headers=request_headers(context.key))
        except aiohttp.ClientResponseError as e:
            return ExtractionFailure(
                method=self.method, code=_status_code(e.status), error=f"HTTP {e.status}"
            )
        except asyncio.TimeoutError:
            return ExtractionFailure(method=self.method, code=ErrorCode.TIMEOUT, error="Request timed out")
        except aiohttp.ClientError as e:
            return ExtractionFailure(method=self.method, code=classify_error(str(e)), error=str(e))
        except UnicodeDecodeError as e:
            return ExtractionFailure(
                method=self.method, code=ErrorCode.EMPTY, error=f"Undecodable response: {e.reason}"
            )

        if not page.text or len(page.text) < MIN_HTML_LENGTH:
            return ExtractionFailure(method=self.method, code=ErrorCode.EMPTY, error="Empty response")

        try:
            content = parse_signal(signal.value, page.text, page.headers)
        except ValueError as e:
            return ExtractionFailure(method=self.method, code=ErrorCode.UNKNOWN, error=str(e))

        empty = _empty_check(signal, content)
        if empty:
            return ExtractionFailure(method=self.method, code=ErrorCode.EMPTY, error=empty)

        logger.debug("Fetched %s [%s] (%d bytes)", url, context.key, len(page.text))
        return _result(signal, self.method, content, text=page_text(page.text))


class BrowserExtractor(Extractor):
    """Rendered extraction in a fresh, region-configured browser context."""

    def __init__(self, pool: BrowserPool, *, wait_until: str = "networkidle"):
        self.pool = pool
        self.wait_until = wait_until

    @property
    def method(self) -> ScraperStrategy:
        return ScraperStrategy.RICH_RENDER

    async def extract(
        self,
        url: str,
        context: MonitoringContext,
        signal: SignalType,
        *,
        capture_evidence: bool = False,
    ) -> Extraction:
        try:
            async with self.pool.page(browser_context_options(context)) as page:
                response = await page.goto(url, wait_until=self.wait_until)
                if response is not None and response.status >= 400:
                    return ExtractionFailure(
                        method=self.method,
                        code=_status_code(response.status),
                        error=f"HTTP {response.status}",
                    )

                await PlaywrightClient.dismiss_cookies(page)
                await PlaywrightClient.scroll_to_bottom(page)
                html = await page.content()
                headers = dict(response.headers) if response is not None else {}

                content = parse_signal(signal.value, html, headers)
                if signal == SignalType.BRANDING:
                    content = merge_branding(content, await page.evaluate(BRANDING_SCRIPT))

                evidence = None
                if capture_evidence:
                    evidence = await self._screenshot(page, url)
        except PlaywrightTimeout:
            return ExtractionFailure(method=self.method, code=ErrorCode.TIMEOUT, error="Page load timed out")
        except PlaywrightError as e:
            return ExtractionFailure(method=self.method, code=classify_error(str(e)), error=str(e))
        except ValueError as e:
            return ExtractionFailure(method=self.method, code=ErrorCode.UNKNOWN, error=str(e))

        empty = _empty_check(signal, content)
        if empty:
            return ExtractionFailure(method=self.method, code=ErrorCode.EMPTY, error=empty)

        return _result(signal, self.method, content, text=page_text(html), evidence=evidence)

    @staticmethod
    async def _screenshot(page, url: str) -> Optional[bytes]:
        try:
            await page.evaluate("window.scrollTo(0, 0);")
            return await page.screenshot(full_page=True, type="png")
        except PlaywrightError as e:
            logger.warning("Screenshot failed for %s: %s", url, e)
            return None


class PageSpeedExtractor(Extractor):
    """Lighthouse performance score, LCP and CLS via PageSpeed Insights."""

    API_URL = "https://www.googleapis.com/pagespeedonline/v5/runPagespeed"

    def __init__(self, http: HttpClient, *, api_key: Optional[str] = None, strategy: str = "mobile"):
        self.http = http
        self.api_key = api_key
        self.strategy = strategy

    @property
    def method(self) -> ScraperStrategy:
        return ScraperStrategy.LIGHTWEIGHT

    @staticmethod
    def parse(data: Dict[str, Any]) -> Dict[str, Any]:
        lighthouse = data.get("lighthouseResult") or {}
        audits = lighthouse.get("audits") or {}
        category = (lighthouse.get("categories") or {}).get("performance") or {}

        def numeric(audit_id: str) -> Optional[float]:
            value = (audits.get(audit_id) or {}).get("numericValue")
            return float(value) if value is not None else None

        score = category.get("score")
        cls = numeric("cumulative-layout-shift")
        return {
            "score": round(score * 100) if score is not None else None,
            "lcp": numeric("largest-contentful-paint"),
            "cls": round(cls, 4) if cls is not None else None,
        }

    async def extract(
        self,
        url: str,
        context: MonitoringContext,
        signal: SignalType,
        *,
        capture_evidence: bool = False,
    ) -> Extraction:
        params = {"url": url, "strategy": self.strategy, "category": "performance"}
        if self.api_key:
            params["key"] = self.api_key
        try:
            data = await self.http.get_json(self.API_URL, params=params)
        except aiohttp.ClientResponseError as e:
            return ExtractionFailure(method=self.method, code=ErrorCode.API_ERROR, error=f"PageSpeed HTTP {e.status}")
        except asyncio.TimeoutError:
            return ExtractionFailure(method=self.method, code=ErrorCode.TIMEOUT, error="PageSpeed request timed out")
        except aiohttp.ClientError as e:
            return ExtractionFailure(method=self.method, code=ErrorCode.API_ERROR, error=str(e))

        if not isinstance(data, dict) or "lighthouseResult" not in data:
            return ExtractionFailure(method=self.method, code=ErrorCode.API_ERROR, error="No Lighthouse result")

        content = self.parse(data)
        return _result(SignalType.PERFORMANCE, self.method, content)
