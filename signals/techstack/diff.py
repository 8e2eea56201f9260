"""
Tech stack diff engine: set difference on detected technology names.

Payload schema: ``{"technologies": [{"name": "Stripe", "category": "payment"}, ...]}``
"""

from typing import Any, Dict, List, Optional, Tuple

from watchcore.interfaces import DiffEngine
from watchcore.models import ChangeRecord, DiffResult, Severity, SignalType

CATEGORY_SEVERITY: Dict[str, Severity] = {
    "payment": Severity.HIGH,
    "analytics": Severity.MEDIUM,
    "marketing": Severity.MEDIUM,
    "chat": Severity.MEDIUM,
}
SEVERITY_SCORE = {Severity.HIGH: 0.9, Severity.MEDIUM: 0.6, Severity.LOW: 0.3}

# name -> (added message, removed message, strategic implication)
TECH_MEANINGS: Dict[str, Tuple[str, str, str]] = {
    "Stripe": ("Added Stripe payment processing",
               "Removed Stripe, may be switching payment providers",
               "Launching or expanding paid plans"),
    "Paddle": ("Added Paddle for payments", "Removed Paddle payment system",
               "Setting up international payment processing"),
    "PayPal": ("Added PayPal payment option", "Removed PayPal",
               "Expanding payment methods for broader audience"),
    "Segment": ("Added Segment for analytics", "Removed Segment",
                "Building data infrastructure for growth"),
    "Mixpanel": ("Added Mixpanel product analytics", "Removed Mixpanel",
                 "Focusing on product-led growth and user behavior"),
    "Amplitude": ("Added Amplitude analytics", "Removed Amplitude",
                  "Investing in product analytics at scale"),
    "PostHog": ("Added PostHog analytics", "Removed PostHog",
                "Building self-hosted analytics stack"),
    "Hotjar": ("Added Hotjar for heatmaps", "Removed Hotjar",
               "Analyzing user behavior and UX patterns"),
    "Intercom": ("Added Intercom for customer messaging", "Removed Intercom",
                 "Scaling customer support and sales automation"),
    "Drift": ("Added Drift conversational marketing", "Removed Drift",
              "Investing in sales-led growth"),
    "Crisp": ("Added Crisp chat widget", "Removed Crisp",
              "Adding live chat for customer support"),
    "Next.js": ("Migrated to Next.js framework", "Moving away from Next.js",
                "Investing in performance and SEO"),
    "React": ("Using React frontend", "Moving away from React",
              "Standard modern frontend stack"),
    "Vue.js": ("Using Vue.js frontend", "Moving away from Vue.js",
               "Progressive frontend approach"),
    "Auth0": ("Added Auth0 authentication", "Removed Auth0",
              "Enterprise-grade authentication setup"),
    "Clerk": ("Added Clerk authentication", "Removed Clerk",
              "Modern auth with social login support"),
    "Sentry": ("Added Sentry error tracking", "Removed Sentry",
               "Improving product reliability"),
    "LogRocket": ("Added LogRocket session replay", "Removed LogRocket",
                  "Debugging UX issues at scale"),
    "Datadog": ("Added Datadog monitoring", "Removed Datadog",
                "Enterprise-level infrastructure monitoring"),
    "HubSpot": ("Added HubSpot CRM/marketing", "Removed HubSpot",
                "Scaling marketing automation"),
    "ConvertKit": ("Added ConvertKit email marketing", "Removed ConvertKit",
                   "Building creator/newsletter focused growth"),
    "Mailchimp": ("Added Mailchimp email marketing", "Removed Mailchimp",
                  "Setting up email marketing campaigns"),
    "Vercel": ("Deployed on Vercel", "Moving away from Vercel",
               "Optimizing for edge performance"),
    "Netlify": ("Deployed on Netlify", "Moving away from Netlify",
                "JAMstack deployment approach"),
    "Cloudflare": ("Using Cloudflare CDN", "Removed Cloudflare",
                   "Improving global performance and security"),
}


def _technologies(payload: Optional[Dict[str, Any]]) -> Dict[str, str]:
    techs: Dict[str, str] = {}
    for tech in (payload or {}).get("technologies") or []:
        if isinstance(tech, dict) and tech.get("name"):
            techs.setdefault(tech["name"], tech.get("category") or "other")
        elif isinstance(tech, str) and tech:
            techs.setdefault(tech, "other")
    return techs


def describe(name: str, category: str, added: bool) -> Tuple[str, str]:
    """(message, strategic implication) for a technology change."""
    if name in TECH_MEANINGS:
        on_add, on_remove, implication = TECH_MEANINGS[name]
        return (on_add if added else on_remove), implication
    if added:
        return f"Added {name}", f"Investing in {category} capabilities"
    return f"Removed {name}", f"Changing {category} approach"


class TechStackDiffEngine(DiffEngine):
    no_changes_summary = "No tech stack changes detected"

    @property
    def signal(self) -> SignalType:
        return SignalType.TECH_STACK

    def compare(self, old: Optional[Dict[str, Any]], new: Dict[str, Any]) -> DiffResult:
        if old is None:
            return self.initial()

        before, after = _technologies(old), _technologies(new)
        changes: List[ChangeRecord] = []
        for name in sorted(set(after) - set(before)):
            changes.append(self._change(name, after[name], added=True))
        for name in sorted(set(before) - set(after)):
            changes.append(self._change(name, before[name], added=False))
        return self.summarize(changes)

    def _change(self, name: str, category: str, added: bool) -> ChangeRecord:
        severity = CATEGORY_SEVERITY.get(category, Severity.LOW)
        message, implication = describe(name, category, added)
        return self.record(
            "tech_added" if added else "tech_removed",
            f"technologies.{name}",
            None if added else name,
            name if added else None,
            SEVERITY_SCORE[severity],
            message,
            severity=severity,
            details={"category": category, "implication": implication},
        )
