"""
Tests for alert decisions, explanations and alert construction.
"""

import pytest

from conftest import FakeExplainer
from watchcore.alerts import AlertBuilder, canned_explanation, decide, priority_for
from watchcore.models import ChangeRecord, MonitoringContext, Plan, Severity, SignalType, WorkItem
from watchcore.plans import StaticEntitlements


def change(kind="price_increase", severity=Severity.HIGH, score=0.9, **extra):
    return ChangeRecord(
        signal=SignalType.PRICING,
        kind=kind,
        field="plans.pro.price",
        old_value="$29/mo",
        new_value="$39/mo",
        severity=severity,
        score=score,
        description="Pro price increased by 34%",
        **extra,
    )


@pytest.fixture
def item():
    return WorkItem(
        target_id="t-pro",
        target_url="https://globex.test/pricing",
        target_name="Globex",
        user_id="u-pro",
        context=MonitoringContext(id="ctx-us", key="us", name="United States"),
    )


class TestDecide:
    @pytest.mark.parametrize("severity", list(Severity))
    def test_every_severity_alerts(self, severity):
        decision = decide(change(severity=severity, score=0.3))
        assert decision.should_alert
        assert decision.severity == severity

    def test_low_trust_only_lets_high_through(self):
        """Should suppress medium and low changes on a volatile pair."""
        assert decide(change(severity=Severity.HIGH), low_trust=True).should_alert
        suppressed = decide(change(severity=Severity.MEDIUM, score=0.6), low_trust=True)
        assert not suppressed.should_alert
        assert "Volatile" in suppressed.reason

    def test_priority(self):
        assert priority_for(change(score=0.9)) == 10
        assert priority_for(change(kind="cta_changed", score=0.45)) == 5
        assert priority_for(change(kind="free_tier_removed", score=1.0)) == 10
        assert priority_for(change(kind="plan_promoted", score=0.5)) == 5


class TestExplanations:
    def test_canned_explanation_uses_kind_insight(self):
        text = canned_explanation(change(), "Globex")
        assert text.startswith("Globex: Pro price increased by 34%.")
        assert "Recommended:" in text

    def test_canned_explanation_prefers_change_implication(self):
        record = change(kind="tech_added", details={"implication": "Launching or expanding paid plans"})
        assert "Launching or expanding paid plans" in canned_explanation(record, "Globex")

    async def test_provider_used_when_plan_allows(self):
        explainer = FakeExplainer("Globex is moving upmarket.")
        builder = AlertBuilder(explainer)
        text, source = await builder.explain(change(), "Globex", StaticEntitlements().get(Plan.PRO))
        assert (text, source) == ("Globex is moving upmarket.", "provider")

    async def test_free_plan_gets_canned_text(self):
        explainer = FakeExplainer()
        builder = AlertBuilder(explainer)
        _, source = await builder.explain(change(), "Globex", StaticEntitlements().get(Plan.FREE))
        assert source == "canned"
        assert explainer.calls == []

    @pytest.mark.parametrize("explainer", [
        FakeExplainer(error=RuntimeError("provider down")),
        FakeExplainer(text="   "),
        FakeExplainer(text=None),
    ])
    async def test_provider_failure_falls_back(self, explainer):
        """Should never lose an alert because the provider failed."""
        builder = AlertBuilder(explainer)
        text, source = await builder.explain(change(), "Globex", StaticEntitlements().get(Plan.PRO))
        assert source == "canned"
        assert text.startswith("Globex:")


class TestBuild:
    def test_alert_carries_change_metadata(self, item):
        record = change(magnitude=34.48)
        decision = decide(record)
        alert = AlertBuilder().build(item, record, decision, "why", "canned", "evidence/t-pro/us/1.png")

        assert alert.user_id == "u-pro"
        assert alert.context_id == "ctx-us"
        assert alert.severity == Severity.HIGH
        assert alert.title == "📈 Globex: Price Increase Detected"
        assert "Before: $29/mo" in alert.description
        assert alert.metadata["before"] == "$29/mo"
        assert alert.metadata["after"] == "$39/mo"
        assert alert.metadata["magnitude"] == 34.48
        assert alert.metadata["priority"] == decision.priority
        assert alert.metadata["explanation_source"] == "canned"
        assert alert.metadata["evidence_path"] == "evidence/t-pro/us/1.png"
        assert not alert.read
