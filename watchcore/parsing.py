"""
HTML -> structured payloads for the diff engines.

Everything here is synchronous and side-effect free so the extractors can hand
it HTML from either a plain HTTP fetch or a rendered browser page.
"""

import logging
import re
from typing import Any, Dict, List, Mapping, Optional, Tuple

from bs4 import BeautifulSoup, Tag

logger = logging.getLogger(__name__)

PLAN_CLASS_RE = re.compile(r"plan|tier|pricing-card|price-card|package", re.IGNORECASE)
HIGHLIGHT_CLASS_RE = re.compile(r"popular|featured|recommended|highlight", re.IGNORECASE)
BADGE_CLASS_RE = re.compile(r"badge|ribbon", re.IGNORECASE)
PRICE_RE = re.compile(
    r"(?:[$€£₹¥]\s?[\d,]+(?:\.\d{1,2})?|[\d,]+(?:\.\d{1,2})?\s?(?:USD|EUR|GBP|INR|kr)\b|\bfree\b)",
    re.IGNORECASE,
)
YEARLY_RE = re.compile(r"/\s*(?:yr|year)|per year|annually|billed yearly", re.IGNORECASE)
MONTHLY_RE = re.compile(r"/\s*(?:mo|month)|per month|monthly", re.IGNORECASE)
ONE_TIME_RE = re.compile(r"one[- ]time|lifetime", re.IGNORECASE)

CURRENCY_MARKERS = (
    ("₹", "INR"),
    ("€", "EUR"),
    ("£", "GBP"),
    ("¥", "JPY"),
    ("$", "USD"),
    ("INR", "INR"),
    ("EUR", "EUR"),
    ("GBP", "GBP"),
    ("USD", "USD"),
)

NOISE_TAGS = ("script", "style", "noscript", "iframe", "svg", "template")

# name, category, patterns matched against script src / html, response header prefixes
TECH_SIGNATURES: Tuple[Tuple[str, str, Tuple[str, ...], Tuple[str, ...]], ...] = (
    ("Next.js", "framework", ("_next/static", "__next_data__"), ("x-nextjs",)),
    ("React", "framework", ("react-dom", "data-reactroot"), ()),
    ("Vue.js", "framework", ("data-v-", "vue.runtime", "vue.global"), ()),
    ("Angular", "framework", ("ng-version",), ()),
    ("Nuxt", "framework", ("_nuxt/",), ()),
    ("Svelte", "framework", ("svelte-", "__svelte"), ()),
    ("Google Analytics", "analytics", ("googletagmanager.com", "gtag(", "google-analytics.com"), ()),
    ("Segment", "analytics", ("cdn.segment.com",), ()),
    ("Mixpanel", "analytics", ("cdn.mxpnl.com", "mixpanel"), ()),
    ("Amplitude", "analytics", ("cdn.amplitude.com", "amplitude.com/libs"), ()),
    ("Hotjar", "analytics", ("static.hotjar.com",), ()),
    ("PostHog", "analytics", ("posthog.com", "posthog-js"), ()),
    ("Intercom", "chat", ("widget.intercom.io", "js.intercomcdn.com"), ()),
    ("Drift", "chat", ("js.driftt.com", "drift.com"), ()),
    ("HubSpot", "marketing", ("js.hs-scripts.com", "js.hsforms.net"), ()),
    ("Crisp", "chat", ("client.crisp.chat",), ()),
    ("Stripe", "payment", ("js.stripe.com",), ()),
    ("Paddle", "payment", ("cdn.paddle.com",), ()),
    ("PayPal", "payment", ("paypal.com/sdk", "paypalobjects.com"), ()),
    ("Cloudflare", "hosting", (), ("cf-ray",)),
    ("Vercel", "hosting", (), ("x-vercel",)),
    ("Netlify", "hosting", (), ("x-nf",)),
    ("AWS CloudFront", "hosting", (), ("x-amz-cf",)),
    ("WordPress", "cms", ("wp-content", "wp-includes"), ()),
    ("Webflow", "cms", ("webflow.js", "data-wf-page"), ()),
    ("Contentful", "cms", ("ctfassets.net",), ()),
    ("Auth0", "auth", ("auth0.com",), ()),
    ("Clerk", "auth", ("clerk.com", "clerk.accounts"), ()),
    ("Sentry", "monitoring", ("sentry.io", "browser.sentry-cdn.com"), ()),
    ("LogRocket", "monitoring", ("cdn.logrocket.io", "cdn.lr-ingest.io"), ()),
    ("Datadog", "monitoring", ("datadoghq.com", "datadog-rum"), ()),
    ("Mailchimp", "marketing", ("mailchimp.com", "mc-embedded"), ()),
    ("ConvertKit", "marketing", ("convertkit.com",), ()),
)

CSS_VAR_RE = re.compile(r"--([\w-]+)\s*:\s*([^;}{]+)")
FONT_FAMILY_RE = re.compile(r"font-family\s*:\s*([^;}{]+)", re.IGNORECASE)
GOOGLE_FONT_RE = re.compile(r"fonts\.googleapis\.com/css2?\?family=([^\"'&>]+)", re.IGNORECASE)
GENERIC_FONTS = {
    "serif", "sans-serif", "monospace", "cursive", "fantasy", "system-ui",
    "inherit", "initial", "unset", "-apple-system", "blinkmacsystemfont",
    "ui-sans-serif", "ui-serif", "ui-monospace", "emoji",
}

# CSS custom property name fragments -> branding color channel, first match wins
COLOR_VARS = (
    ("text_secondary", ("text-secondary", "foreground-muted", "muted-foreground", "text-muted")),
    ("text_primary", ("text-primary", "foreground", "text-color", "body-color")),
    ("background", ("background", "bg-color", "body-bg")),
    ("primary", ("primary", "brand")),
    ("secondary", ("secondary",)),
    ("accent", ("accent", "highlight")),
)


def soup_of(html: str) -> BeautifulSoup:
    return BeautifulSoup(html or "", "html.parser")


def page_text(html: str) -> str:
    """Visible text with whitespace collapsed, used by the richness check."""
    soup = soup_of(html)
    for tag in soup(NOISE_TAGS):
        tag.decompose()
    return " ".join(soup.get_text(" ").split())


def _clean(text: Optional[str]) -> str:
    return " ".join((text or "").split())


def _classes(tag: Tag) -> str:
    return " ".join(tag.get("class") or [])


def _slug(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")


# --------------------------------------------------------------------------- #
# Pricing


def detect_currency(text: str) -> Optional[str]:
    for marker, code in CURRENCY_MARKERS:
        if marker in text:
            return code
    return None


def _billing(text: str) -> str:
    if YEARLY_RE.search(text):
        return "yearly"
    if MONTHLY_RE.search(text):
        return "monthly"
    if ONE_TIME_RE.search(text):
        return "one_time"
    return "unknown"


def _plan_cards(soup: BeautifulSoup) -> List[Tag]:
    """Innermost elements that look like a plan card with a heading and a price."""
    candidates = [
        tag for tag in soup.find_all(["div", "section", "article", "li"])
        if (PLAN_CLASS_RE.search(_classes(tag)) or tag.has_attr("data-plan"))
        and tag.find(["h1", "h2", "h3", "h4", "h5"]) is not None
        and PRICE_RE.search(tag.get_text(" "))
    ]
    ids = {id(tag) for tag in candidates}
    # a wrapper around several cards is not a card itself
    wrappers = {id(parent) for tag in candidates for parent in tag.parents if id(parent) in ids}
    return [tag for tag in candidates if id(tag) not in wrappers]


def _parse_card(card: Tag, index: int) -> Optional[Dict[str, Any]]:
    heading = card.find(["h1", "h2", "h3", "h4", "h5"]) or card.find(
        class_=re.compile(r"name|title", re.IGNORECASE)
    )
    name = _clean(heading.get_text(" ")) if heading else ""
    if not name:
        name = _clean(card.get("data-plan")) or ""
    if not name:
        return None

    text = _clean(card.get_text(" "))
    price_el = card.find(class_=re.compile(r"price|amount|cost", re.IGNORECASE))
    price_source = _clean(price_el.get_text(" ")) if price_el else text
    match = PRICE_RE.search(price_source) or PRICE_RE.search(text)
    price_raw = match.group(0).strip() if match else None

    cta_el = card.find(["a", "button"])
    features = [
        _clean(li.get_text(" ")) for li in card.find_all("li") if _clean(li.get_text(" "))
    ]
    badges = [
        _clean(el.get_text(" "))
        for el in card.find_all(class_=BADGE_CLASS_RE)
        if el is not card and _clean(el.get_text(" "))
    ]
    return {
        "id": _slug(name) or f"plan-{index}",
        "name": name,
        "price_raw": price_raw,
        "billing": _billing(text),
        "cta": _clean(cta_el.get_text(" ")) if cta_el else None,
        "features": features,
        "badges": badges,
        "highlighted": bool(HIGHLIGHT_CLASS_RE.search(_classes(card))) or bool(badges),
    }


def parse_pricing(html: str) -> Dict[str, Any]:
    """Extract plan cards from a pricing page."""
    soup = soup_of(html)
    for tag in soup(NOISE_TAGS):
        tag.decompose()

    plans = []
    seen = set()
    for index, card in enumerate(_plan_cards(soup)):
        plan = _parse_card(card, index)
        if plan is None or plan["id"] in seen:
            continue
        seen.add(plan["id"])
        plans.append(plan)

    flags = [p.pop("highlighted") for p in plans]
    highlighted = next((p["id"] for p, flag in zip(plans, flags) if flag), None)
    has_free_tier = any(
        (p["price_raw"] or "").lower() == "free"
        or re.fullmatch(r"[^\d]*0+(?:\.0+)?[^\d]*", p["price_raw"] or "x") is not None
        or "free" in p["name"].lower()
        for p in plans
    )
    currency = detect_currency(" ".join(p["price_raw"] or "" for p in plans))
    logger.debug("Parsed %d plan(s), currency=%s", len(plans), currency)
    return {
        "currency": currency,
        "plans": plans,
        "has_free_tier": has_free_tier,
        "highlighted_plan": highlighted,
    }


# --------------------------------------------------------------------------- #
# Tech stack


def detect_technologies(html: str, headers: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """Match known script, markup and response-header fingerprints."""
    soup = soup_of(html)
    sources = " ".join(
        tag.get("src") or tag.get("href") or ""
        for tag in soup.find_all(["script", "link"])
    ).lower()
    haystack = sources + " " + (html or "").lower()
    header_names = [name.lower() for name in (headers or {})]
    if (headers or {}).get("server", "").lower() == "cloudflare":
        header_names.append("cf-ray")

    found = []
    for name, category, patterns, header_prefixes in TECH_SIGNATURES:
        if any(p.lower() in haystack for p in patterns) or any(
            h.startswith(prefix) for prefix in header_prefixes for h in header_names
        ):
            found.append({"name": name, "category": category})
    found.sort(key=lambda t: t["name"])
    return {"technologies": found}


# --------------------------------------------------------------------------- #
# Branding


def _font_names(value: str) -> List[str]:
    names = []
    for part in value.split(","):
        name = part.strip().strip("'\"").strip()
        if name and name.lower() not in GENERIC_FONTS and not name.startswith("var("):
            names.append(name)
    return names


def _luminance(color: str) -> Optional[float]:
    value = color.strip().lstrip("#")
    if not re.fullmatch(r"[0-9a-fA-F]{3}|[0-9a-fA-F]{6}", value):
        return None
    if len(value) == 3:
        value = "".join(ch * 2 for ch in value)
    r, g, b = (int(value[i:i + 2], 16) / 255 for i in (0, 2, 4))
    return 0.2126 * r + 0.7152 * g + 0.0722 * b


def color_scheme_from(background: Optional[str], declared: Optional[str] = None) -> str:
    if declared:
        declared = declared.lower()
        if "dark" in declared and "light" not in declared:
            return "dark"
        if "light" in declared and "dark" not in declared:
            return "light"
    if background:
        luminance = _luminance(background)
        if luminance is not None:
            return "dark" if luminance < 0.5 else "light"
    return "unknown"


def parse_branding(html: str) -> Dict[str, Any]:
    """Colors, fonts and logo from meta tags, CSS custom properties and font links."""
    soup = soup_of(html)
    css = "\n".join(tag.get_text() for tag in soup.find_all("style"))
    css += "\n" + "\n".join(tag.get("style", "") for tag in soup.find_all(style=True))

    colors: Dict[str, Optional[str]] = {
        "primary": None, "secondary": None, "accent": None,
        "background": None, "text_primary": None, "text_secondary": None,
    }
    for var, value in CSS_VAR_RE.findall(css):
        value = value.strip()
        if not value.startswith(("#", "rgb", "hsl")):
            continue
        var = var.lower()
        for channel, fragments in COLOR_VARS:
            if any(fragment in var for fragment in fragments):
                if colors[channel] is None:
                    colors[channel] = value.lower()
                break

    theme = soup.find("meta", attrs={"name": "theme-color"})
    if theme and theme.get("content") and colors["primary"] is None:
        colors["primary"] = theme["content"].strip().lower()

    fonts = []
    for value in FONT_FAMILY_RE.findall(css):
        fonts.extend(_font_names(value))
    for link in soup.find_all("link", href=True):
        match = GOOGLE_FONT_RE.search(link["href"])
        if match:
            fonts.append(match.group(1).split(":")[0].replace("+", " "))

    logo = None
    logo_el = soup.find("img", attrs={"alt": re.compile("logo", re.IGNORECASE)}) or soup.find(
        "img", class_=re.compile("logo", re.IGNORECASE)
    )
    if logo_el and logo_el.get("src"):
        logo = logo_el["src"]
    else:
        icon = soup.find("link", rel=lambda v: v and "icon" in v)
        if icon and icon.get("href"):
            logo = icon["href"]

    declared = soup.find("meta", attrs={"name": "color-scheme"})
    return {
        "color_scheme": color_scheme_from(
            colors["background"], declared.get("content") if declared else None
        ),
        "colors": colors,
        "fonts": sorted(set(fonts)),
        "logo": logo,
    }


def merge_branding(parsed: Dict[str, Any], computed: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Fill gaps in a parsed payload with computed styles from a rendered page."""
    if not computed:
        return parsed
    merged = dict(parsed)
    colors = dict(parsed.get("colors") or {})
    for channel, value in (computed.get("colors") or {}).items():
        if value and not colors.get(channel):
            colors[channel] = value.lower()
    merged["colors"] = colors
    merged["fonts"] = sorted(set(parsed.get("fonts") or []) | set(computed.get("fonts") or []))
    if not merged.get("logo") and computed.get("logo"):
        merged["logo"] = computed["logo"]
    if merged.get("color_scheme") == "unknown":
        merged["color_scheme"] = color_scheme_from(colors.get("background"))
    return merged


PARSERS = {
    "pricing": lambda html, headers: parse_pricing(html),
    "tech_stack": detect_technologies,
    "branding": lambda html, headers: parse_branding(html),
}


def parse_signal(signal: str, html: str, headers: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """Dispatch to the parser for ``signal`` (a SignalType value)."""
    try:
        parser = PARSERS[signal]
    except KeyError:
        raise ValueError(f"No HTML parser for signal '{signal}'") from None
    return parser(html, headers)
