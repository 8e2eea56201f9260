"""
Scraper strategy selection and the post-fetch escalation check.

Lightweight (plain HTTP) extraction is tried first because it is cheap; rich
rendering (a real browser) is used when a context needs JavaScript, when the
pair already needed it last time, or when a lightweight result looks thin.
"""

import logging
import re
from typing import Optional, Tuple

from .geo import currency_symbols
from .models import ErrorCode, MonitoringContext, ScraperStrategy, SignalType, Snapshot

logger = logging.getLogger(__name__)

MIN_CONTENT_LENGTH = 500

PRICE_PATTERN = re.compile(
    r"\$[\d,]+|€[\d,]+|₹[\d,]+|£[\d,]+|\d+\s*/\s*(mo|month|year|yr)",
    re.IGNORECASE,
)

# markers of an anti-automation interstitial instead of the real page
SOFT_BLOCK_SIGNATURES = (
    "captcha",
    "access denied",
    "cf-chl",
    "checking your browser",
    "verify you are human",
    "enable javascript",
    "attention required",
    "request blocked",
)


def select_strategy(
    context: MonitoringContext,
    prior_snapshot: Optional[Snapshot],
    scraper_hint: Optional[ScraperStrategy] = None,
) -> ScraperStrategy:
    """Initial extraction method for a (target, context) pair."""
    if context.requires_rich_render:
        return ScraperStrategy.RICH_RENDER
    if prior_snapshot is None:
        return ScraperStrategy.LIGHTWEIGHT
    if prior_snapshot.method == ScraperStrategy.RICH_RENDER:
        return ScraperStrategy.RICH_RENDER
    if scraper_hint is not None:
        return scraper_hint
    return ScraperStrategy.LIGHTWEIGHT


def detect_soft_block(text: str) -> Optional[str]:
    lowered = text.lower()
    for signature in SOFT_BLOCK_SIGNATURES:
        if signature in lowered:
            return signature
    return None


def needs_escalation(
    text: str,
    context_key: str,
    signal: SignalType = SignalType.PRICING,
) -> Tuple[bool, Optional[str]]:
    """Richness heuristic run on lightweight output.

    Returns ``(escalate, reason)``. Performance data comes from an API rather
    than page text and is never escalated.
    """
    if signal == SignalType.PERFORMANCE:
        return False, None

    text = text or ""
    if len(text) < MIN_CONTENT_LENGTH:
        return True, f"content too short ({len(text)} chars)"

    signature = detect_soft_block(text)
    if signature:
        return True, f"soft-block signature '{signature}'"

    if signal == SignalType.PRICING:
        if not PRICE_PATTERN.search(text):
            return True, "no price-like numbers"
        symbols = currency_symbols(context_key)
        if not any(symbol in text for symbol in symbols):
            return True, f"none of the expected currency symbols {symbols}"

    return False, None


def classify_error(message: str) -> ErrorCode:
    """Map an extraction error message onto the failure taxonomy."""
    lowered = (message or "").lower()
    if "timeout" in lowered or "timed out" in lowered:
        return ErrorCode.TIMEOUT
    if "403" in lowered or "blocked" in lowered or "access denied" in lowered or "captcha" in lowered:
        return ErrorCode.BLOCKED
    if "no plans" in lowered or "empty" in lowered or "no content" in lowered:
        return ErrorCode.EMPTY
    return ErrorCode.UNKNOWN
