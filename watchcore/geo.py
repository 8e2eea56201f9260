"""
Region presets for monitoring contexts: expected currencies and the browser
settings used to look like a local visitor.
"""

from typing import Any, Dict, List

from .models import MonitoringContext


GEO_COORDINATES: Dict[str, Dict[str, float]] = {
    "us": {"latitude": 40.7128, "longitude": -74.006},   # New York
    "in": {"latitude": 19.076, "longitude": 72.8777},    # Mumbai
    "eu": {"latitude": 52.52, "longitude": 13.405},      # Berlin
    "global": {"latitude": 0.0, "longitude": 0.0},
}

USER_AGENTS: Dict[str, str] = {
    "us": (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    "in": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    "eu": (
        "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
}
USER_AGENTS["global"] = USER_AGENTS["us"]

ACCEPT_LANGUAGE: Dict[str, str] = {
    "us": "en-US,en;q=0.9",
    "in": "en-IN,en;q=0.9,hi;q=0.8",
    "eu": "en-DE,en;q=0.9,de;q=0.8",
    "global": "en-US,en;q=0.9",
}

CURRENCY_SYMBOLS: Dict[str, List[str]] = {
    "us": ["$", "USD"],
    "in": ["₹", "INR", "Rs"],
    "eu": ["€", "EUR"],
    "global": ["$", "€", "₹", "£"],
}

EXPECTED_CURRENCY: Dict[str, str] = {"us": "USD", "in": "INR", "eu": "EUR", "global": "USD"}


def currency_symbols(context_key: str) -> List[str]:
    return CURRENCY_SYMBOLS.get(context_key, CURRENCY_SYMBOLS["global"])


def expected_currency(context_key: str) -> str:
    return EXPECTED_CURRENCY.get(context_key, "USD")


def request_headers(context_key: str) -> Dict[str, str]:
    """Headers for a lightweight fetch made on behalf of a context."""
    return {
        "User-Agent": USER_AGENTS.get(context_key, USER_AGENTS["global"]),
        "Accept-Language": ACCEPT_LANGUAGE.get(context_key, ACCEPT_LANGUAGE["global"]),
    }


def browser_context_options(context: MonitoringContext) -> Dict[str, Any]:
    """Playwright ``new_context`` kwargs simulating a visitor from the region."""
    options: Dict[str, Any] = {
        "geolocation": GEO_COORDINATES.get(context.key, GEO_COORDINATES["global"]),
        "permissions": ["geolocation"],
        "user_agent": USER_AGENTS.get(context.key, USER_AGENTS["global"]),
        "extra_http_headers": {
            "Accept-Language": ACCEPT_LANGUAGE.get(context.key, ACCEPT_LANGUAGE["global"]),
        },
        "viewport": {"width": 1440, "height": 900},
        "device_scale_factor": 2,
    }
    if context.locale:
        options["locale"] = context.locale
    if context.timezone:
        options["timezone_id"] = context.timezone
    return options
