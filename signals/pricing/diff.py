"""
Pricing diff engine.

Payload schema::

    {
        "currency": "USD",
        "plans": [{"id", "name", "price_raw", "billing", "cta", "features", "badges"}],
        "has_free_tier": bool,
        "highlighted_plan": plan id or None,
    }
"""

import logging
import re
from typing import Any, Dict, List, Optional

from watchcore.interfaces import DiffEngine
from watchcore.models import ChangeRecord, DiffResult, Severity, SignalType

logger = logging.getLogger(__name__)

SEVERITY_WEIGHTS: Dict[str, float] = {
    "price_increase": 0.9,
    "price_decrease": 0.85,
    "plan_added": 0.8,
    "plan_removed": 0.95,
    "free_tier_removed": 1.0,
    "free_tier_added": 0.7,
    "plan_promoted": 0.5,
    "cta_changed": 0.4,
    "features_changed": 0.5,
    "regional_difference": 0.6,
}

# always reported as high whatever the magnitude
ALWAYS_HIGH = {"plan_added", "plan_removed", "free_tier_removed"}

# (from, to, weight) - first match wins
CTA_TRANSITIONS = [
    ("free", "paid", 0.7),
    ("trial", "paid", 0.6),
    ("start", "contact", 0.5),
]

MIN_PRICE_CHANGE_PCT = 5.0
MIN_REGIONAL_DIFF_PCT = 10.0

# units of each currency per 1 USD, used when live rates are unavailable
FALLBACK_RATES: Dict[str, float] = {
    "USD": 1.0,
    "EUR": 0.92,
    "INR": 83.5,
    "GBP": 0.79,
    "JPY": 157.0,
    "AUD": 1.54,
    "CAD": 1.36,
    "BRL": 4.97,
}

_PRICE_RE = re.compile(r"[\d,]+(?:\.\d{2})?")
_WS_RE = re.compile(r"\s+")


def normalize(text: Optional[str]) -> str:
    return _WS_RE.sub(" ", (text or "").lower()).strip()


def extract_price(price_raw: Optional[str]) -> Optional[float]:
    """First number in a display price ("$1,299.00/mo" -> 1299.0)."""
    if not price_raw:
        return None
    match = _PRICE_RE.search(price_raw)
    if not match:
        return None
    digits = match.group(0).replace(",", "")
    if not digits or digits == ".":
        return None
    try:
        return float(digits)
    except ValueError:
        return None


def to_usd(amount: float, currency: Optional[str], rates: Optional[Dict[str, float]] = None) -> float:
    """Convert ``amount`` to USD; a currency without a rate is taken as USD."""
    code = (currency or "USD").upper()
    if code == "USD":
        return amount
    rate = (rates or FALLBACK_RATES).get(code)
    if not rate:
        logger.warning("No exchange rate for %s, comparing unconverted", code)
        return amount
    return amount / rate


def _plans(payload: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    plans = (payload or {}).get("plans") or []
    return [p for p in plans if isinstance(p, dict) and p.get("name")]


def _by_name(plans: List[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    indexed: Dict[str, Dict[str, Any]] = {}
    for plan in plans:
        indexed.setdefault(normalize(plan["name"]), plan)
    return indexed


def _plan_summary(plan: Dict[str, Any]) -> str:
    return f"{plan['name']}: {plan.get('price_raw') or 'N/A'} ({plan.get('billing') or 'unknown'})"


def _percent_change(before: float, after: float) -> float:
    if before == 0:
        return 100.0
    return abs((after - before) / before) * 100


def _price_score(kind: str, pct: float) -> float:
    return SEVERITY_WEIGHTS[kind] * min(1.0, 0.5 + pct / 40.0)


class PricingDiffEngine(DiffEngine):
    """Per-plan price, feature, CTA and promotion comparison."""

    no_changes_summary = "No meaningful pricing changes detected"

    @property
    def signal(self) -> SignalType:
        return SignalType.PRICING

    def _make(self, kind: str, field: str, old: Any, new: Any, description: str,
              score: Optional[float] = None, **extra) -> ChangeRecord:
        score = SEVERITY_WEIGHTS[kind] if score is None else score
        severity = Severity.HIGH if kind in ALWAYS_HIGH else None
        return self.record(kind, field, old, new, score, description, severity=severity, **extra)

    def compare(self, old: Optional[Dict[str, Any]], new: Dict[str, Any]) -> DiffResult:
        if old is None:
            return self.initial()

        new = new or {}
        changes: List[ChangeRecord] = []
        changes.extend(self._free_tier(old, new))
        changes.extend(self._plan_set(old, new))

        before_plans = _by_name(_plans(old))
        for name, after_plan in _by_name(_plans(new)).items():
            before_plan = before_plans.get(name)
            if before_plan is None:
                continue
            changes.extend(self._price(before_plan, after_plan))
            changes.extend(self._features(before_plan, after_plan))
            changes.extend(self._cta(before_plan, after_plan))

        changes.extend(self._promotion(old, new))
        return self.summarize(changes)

    # ------------------------------------------------------------------ #
    def _free_tier(self, old, new) -> List[ChangeRecord]:
        before, after = bool(old.get("has_free_tier")), bool(new.get("has_free_tier"))
        if before and not after:
            return [self._make(
                "free_tier_removed", "has_free_tier", True, False,
                "Free tier has been removed from pricing",
            )]
        if after and not before:
            return [self._make(
                "free_tier_added", "has_free_tier", False, True,
                "Free tier has been added to pricing",
            )]
        return []

    def _plan_set(self, old, new) -> List[ChangeRecord]:
        before, after = _by_name(_plans(old)), _by_name(_plans(new))
        changes = []
        for name, plan in after.items():
            if name not in before:
                changes.append(self._make(
                    "plan_added", f"plans.{name}", None, _plan_summary(plan),
                    f'New plan "{plan["name"]}" added at {plan.get("price_raw") or "unknown price"}',
                    details={"plan": plan["name"]},
                ))
        for name, plan in before.items():
            if name not in after:
                changes.append(self._make(
                    "plan_removed", f"plans.{name}", _plan_summary(plan), None,
                    f'Plan "{plan["name"]}" has been removed',
                    details={"plan": plan["name"]},
                ))
        return changes

    def _price(self, before_plan, after_plan) -> List[ChangeRecord]:
        before = extract_price(before_plan.get("price_raw"))
        after = extract_price(after_plan.get("price_raw"))
        if before is None or after is None or before == after:
            return []

        pct = _percent_change(before, after)
        if pct < MIN_PRICE_CHANGE_PCT:
            return []

        kind = "price_increase" if after > before else "price_decrease"
        verb = "increased" if after > before else "decreased"
        name = after_plan["name"]
        return [self._make(
            kind, f"plans.{normalize(name)}.price",
            before_plan.get("price_raw"), after_plan.get("price_raw"),
            f"{name} price {verb} by {pct:.0f}%",
            score=_price_score(kind, pct),
            magnitude=round(pct, 2),
            details={"plan": name, "before": before, "after": after},
        )]

    def _features(self, before_plan, after_plan) -> List[ChangeRecord]:
        before = {normalize(f) for f in before_plan.get("features") or [] if f}
        after = {normalize(f) for f in after_plan.get("features") or [] if f}
        if before == after:
            return []
        added, removed = sorted(after - before), sorted(before - after)
        name = after_plan["name"]
        parts = []
        if added:
            parts.append(f"{len(added)} added")
        if removed:
            parts.append(f"{len(removed)} removed")
        return [self._make(
            "features_changed", f"plans.{normalize(name)}.features",
            sorted(before), sorted(after),
            f"{name} features changed ({', '.join(parts)})",
            details={"plan": name, "added": added, "removed": removed},
        )]

    def _cta(self, before_plan, after_plan) -> List[ChangeRecord]:
        before, after = normalize(before_plan.get("cta")), normalize(after_plan.get("cta"))
        if not before or not after or before == after:
            return []
        score = SEVERITY_WEIGHTS["cta_changed"]
        for src, dst, weight in CTA_TRANSITIONS:
            if src in before and dst in after:
                score = weight
                break
        name = after_plan["name"]
        return [self._make(
            "cta_changed", f"plans.{normalize(name)}.cta",
            before_plan.get("cta"), after_plan.get("cta"),
            f'{name} CTA changed from "{before_plan.get("cta")}" to "{after_plan.get("cta")}"',
            score=score,
            details={"plan": name},
        )]

    def _promotion(self, old, new) -> List[ChangeRecord]:
        before_id, after_id = old.get("highlighted_plan"), new.get("highlighted_plan")
        if before_id == after_id:
            return []
        before_plan = next((p for p in _plans(old) if p.get("id") == before_id), None)
        after_plan = next((p for p in _plans(new) if p.get("id") == after_id), None)
        if before_plan is None and after_plan is None:
            return []
        before_name = before_plan["name"] if before_plan else None
        after_name = after_plan["name"] if after_plan else None
        return [self._make(
            "plan_promoted", "highlighted_plan", before_name or "None", after_name or "None",
            f'Highlighted plan changed from "{before_name or "none"}" to "{after_name or "none"}"',
        )]


def compare_regions(
    key_a: str, payload_a: Optional[Dict[str, Any]],
    key_b: str, payload_b: Optional[Dict[str, Any]],
    rates: Optional[Dict[str, float]] = None,
) -> List[ChangeRecord]:
    """Plans priced at least 10% apart between two monitoring contexts.

    Both sides are converted to USD first with ``rates`` (units per USD),
    or with ``FALLBACK_RATES`` when none are given.
    """
    engine = PricingDiffEngine()
    currency_a = (payload_a or {}).get("currency")
    currency_b = (payload_b or {}).get("currency")
    plans_b = _by_name(_plans(payload_b))
    changes = []
    for name, plan_a in _by_name(_plans(payload_a)).items():
        plan_b = plans_b.get(name)
        if plan_b is None:
            continue
        price_a = extract_price(plan_a.get("price_raw"))
        price_b = extract_price(plan_b.get("price_raw"))
        if price_a is None or price_b is None:
            continue
        usd_a = to_usd(price_a, currency_a, rates)
        usd_b = to_usd(price_b, currency_b, rates)
        if usd_a == usd_b:
            continue
        pct = _percent_change(usd_a, usd_b)
        if pct < MIN_REGIONAL_DIFF_PCT:
            continue
        changes.append(engine._make(
            "regional_difference", f"plans.{name}.price",
            f"{key_a}: {plan_a.get('price_raw')}", f"{key_b}: {plan_b.get('price_raw')}",
            f"{plan_a['name']} has {pct:.0f}% price difference between "
            f"{key_a.upper()} and {key_b.upper()}",
            magnitude=round(pct, 2),
            details={
                "plan": plan_a["name"],
                "contexts": [key_a, key_b],
                "usd": [round(usd_a, 2), round(usd_b, 2)],
            },
        ))
    return changes
