"""
Alert decision, explanation and alert construction.

Severity is assigned by the diff engines; this module turns each change into
an AlertDecision, attaches explanation text (provider text when the plan
allows it, canned text otherwise) and builds the persisted Alert.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional, Tuple

from .interfaces import ExplanationProvider
from .models import (
    Alert,
    AlertDecision,
    ChangeRecord,
    PlanEntitlements,
    Severity,
    WorkItem,
)

logger = logging.getLogger(__name__)

PRIORITY_BOOST: Dict[str, int] = {
    "free_tier_removed": 2,
    "plan_removed": 1,
    "price_increase": 1,
}

# kind -> (title, emoji)
TITLES: Dict[str, Tuple[str, str]] = {
    "price_increase": ("Price Increase Detected", "📈"),
    "price_decrease": ("Price Drop Detected", "📉"),
    "plan_added": ("New Plan Added", "➕"),
    "plan_removed": ("Plan Removed", "➖"),
    "free_tier_removed": ("Free Tier Removed", "🚨"),
    "free_tier_added": ("Free Tier Added", "🎁"),
    "plan_promoted": ("Featured Plan Changed", "⭐"),
    "cta_changed": ("CTA Updated", "🔄"),
    "features_changed": ("Plan Features Changed", "🧩"),
    "regional_difference": ("Regional Price Difference", "🌍"),
    "tech_added": ("Tech Stack Addition", "🛠"),
    "tech_removed": ("Tech Stack Removal", "🛠"),
    "theme_change": ("Theme Changed", "🎨"),
    "color_change": ("Brand Color Changed", "🎨"),
    "refresh": ("Brand Refresh Detected", "🎨"),
    "font_change": ("Typography Changed", "🔤"),
    "logo_change": ("Logo Changed", "🖼"),
    "improvement": ("Performance Improved", "⚡"),
    "degradation": ("Performance Degraded", "🐢"),
}

# kind -> (why it matters, strategic implication, recommended action)
CANNED_INSIGHTS: Dict[str, Tuple[str, str, str]] = {
    "price_increase": (
        "Price increases directly impact competitive positioning and may affect your relative value proposition.",
        "Competitor may be signaling product maturity or strong demand.",
        "Review your own pricing strategy and assess if adjustment is needed.",
    ),
    "price_decrease": (
        "Price decreases indicate competitive pressure or aggressive growth strategy.",
        "Competitor may be pursuing market share or responding to new entrants.",
        "Monitor customer churn and consider competitive response.",
    ),
    "plan_added": (
        "New plans often target underserved segments you may also want to address.",
        "Competitor is expanding their addressable market.",
        "Analyze the new plan to understand what gap they're filling.",
    ),
    "plan_removed": (
        "Removing a plan simplifies their offering and may indicate strategic focus shift.",
        "Competitor may be consolidating around core segments.",
        "Check if displaced customers could be opportunities for you.",
    ),
    "free_tier_removed": (
        "Removing free tier is a major monetization shift with significant user impact.",
        "Competitor has reached product-market fit confidence.",
        "Monitor for user migration opportunities and review your free tier strategy.",
    ),
    "free_tier_added": (
        "Adding free tier signals aggressive acquisition strategy.",
        "Competitor may be entering growth mode or responding to freemium competitors.",
        "Assess impact on your conversion funnel and consider response.",
    ),
    "plan_promoted": (
        "The highlighted plan reveals which tier they want customers to choose.",
        "May indicate ARPU optimization efforts.",
        "Compare your recommended plan positioning.",
    ),
    "cta_changed": (
        "CTA changes reflect conversion optimization or sales strategy shifts.",
        "May be A/B test winner or strategic pivot.",
        "Monitor for pattern across multiple pages.",
    ),
    "features_changed": (
        "Feature packaging decides which customers each tier attracts.",
        "Competitor is repositioning what each plan is worth.",
        "Compare the affected tier against your equivalent plan.",
    ),
    "regional_difference": (
        "Regional price differences indicate localized market strategies.",
        "Competitor may have purchasing power or competitive situational pricing.",
        "Review your own regional pricing strategy.",
    ),
    "degradation": (
        "A slower competitor page loses visitors and search ranking.",
        "Competitor may be shipping heavier pages or neglecting performance.",
        "Opportunity to outperform: make sure your own page is faster.",
    ),
    "improvement": (
        "Faster pages convert better and rank higher.",
        "Competitor is investing in site performance.",
        "Check your own Core Web Vitals against theirs.",
    ),
}


def priority_for(change: ChangeRecord) -> int:
    # half-up rounding of the 0-1 score onto a 0-10 scale
    priority = int(change.score * 10 + 0.5) + PRIORITY_BOOST.get(change.kind, 0)
    return max(0, min(priority, 10))


def decide(change: ChangeRecord, low_trust: bool = False) -> AlertDecision:
    """Alert decision for one change record.

    Every change alerts at the severity its engine assigned. ``low_trust``
    marks a flapping (target, context) pair: only high severity changes
    alert there.
    """
    if low_trust and change.severity != Severity.HIGH:
        return AlertDecision(
            severity=change.severity,
            should_alert=False,
            priority=0,
            reason="Volatile context: only high severity changes alert",
        )
    return AlertDecision(
        severity=change.severity,
        should_alert=True,
        priority=priority_for(change),
        reason=f"{change.kind} at {change.severity.value} severity",
    )


def canned_explanation(change: ChangeRecord, target_name: str) -> str:
    """Deterministic explanation built from the change record alone."""
    lines = [f"{target_name}: {change.description or change.kind}."]
    insight = CANNED_INSIGHTS.get(change.kind)
    implication = change.details.get("implication")
    if insight:
        why, strategic, action = insight
        lines.append(why)
        lines.append(implication or strategic)
        lines.append(f"Recommended: {action}")
    elif implication:
        lines.append(f"{implication}.")
    return " ".join(lines)


class AlertBuilder:
    """Explains change records and turns them into Alerts."""

    def __init__(self, explainer: Optional[ExplanationProvider] = None):
        self.explainer = explainer

    async def explain(
        self,
        change: ChangeRecord,
        target_name: str,
        entitlements: PlanEntitlements,
    ) -> Tuple[str, str]:
        """Return ``(text, source)``; source is ``provider`` or ``canned``."""
        if entitlements.can_enrich and self.explainer is not None:
            try:
                text = await self.explainer.explain(change, target_name)
            except Exception as e:
                logger.warning("Explanation failed for %s (%s): %s", target_name, change.kind, e)
                text = None
            if text and text.strip():
                return text.strip(), "provider"
        return canned_explanation(change, target_name), "canned"

    def build(
        self,
        item: WorkItem,
        change: ChangeRecord,
        decision: AlertDecision,
        explanation: str,
        explanation_source: str,
        evidence_path: Optional[str] = None,
    ) -> Alert:
        title, emoji = TITLES.get(change.kind, (change.kind.replace("_", " ").title(), "🔔"))
        description = (
            f"{change.description}\n"
            f"Before: {change.old_value if change.old_value is not None else 'N/A'}\n"
            f"After: {change.new_value if change.new_value is not None else 'N/A'}\n"
            f"Severity: {decision.severity.value}"
        )
        return Alert(
            user_id=item.user_id,
            target_id=item.target_id,
            context_id=item.context.id,
            signal=change.signal,
            kind=change.kind,
            severity=decision.severity,
            title=f"{emoji} {item.target_name}: {title}",
            description=description,
            metadata={
                "before": change.old_value,
                "after": change.new_value,
                "field": change.field,
                "magnitude": change.magnitude,
                "score": change.score,
                "priority": decision.priority,
                "explanation": explanation,
                "explanation_source": explanation_source,
                "context_key": item.context.key,
                "evidence_path": evidence_path,
                "details": change.details,
            },
        )
