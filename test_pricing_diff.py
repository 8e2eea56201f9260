"""
Tests for the pricing diff engine and cross-region comparison.
"""

import pytest

from conftest import pricing_payload
from signals.pricing import PricingDiffEngine, compare_regions, extract_price, to_usd
from watchcore.models import Severity, SignalType, Verdict


@pytest.fixture
def engine():
    return PricingDiffEngine()


def kinds(result):
    return [c.kind for c in result.changes]


class TestExtractPrice:
    @pytest.mark.parametrize("raw,expected", [
        ("$29/mo", 29.0),
        ("$1,299.00 per year", 1299.0),
        ("€19", 19.0),
        ("₹2,499/month", 2499.0),
    ])
    def test_parses_display_prices(self, raw, expected):
        assert extract_price(raw) == expected

    @pytest.mark.parametrize("raw", [None, "", "Contact sales", "Free"])
    def test_returns_none_without_number(self, raw):
        assert extract_price(raw) is None


class TestPricingDiff:
    def test_first_snapshot_is_initial(self, engine):
        """Should report an initial capture with no changes."""
        result = engine.compare(None, pricing_payload())
        assert result.verdict == Verdict.INITIAL
        assert result.summary == "Initial snapshot captured"
        assert not result.has_changes

    def test_identical_payloads_have_no_changes(self, engine):
        result = engine.compare(pricing_payload(), pricing_payload())
        assert not result.has_changes
        assert result.verdict == Verdict.NO_CHANGES
        assert result.summary == "No meaningful pricing changes detected"
        assert result.signal == SignalType.PRICING

    def test_price_increase_is_high(self, engine):
        """Should flag a 34% increase as a high severity price change."""
        result = engine.compare(pricing_payload("$29/mo"), pricing_payload("$39/mo"))
        assert kinds(result) == ["price_increase"]
        change = result.changes[0]
        assert change.severity == Severity.HIGH
        assert change.old_value == "$29/mo"
        assert change.new_value == "$39/mo"
        assert change.magnitude == pytest.approx(34.48, abs=0.01)
        assert "Pro price increased by 34%" in result.summary

    def test_price_decrease(self, engine):
        result = engine.compare(pricing_payload("$40/mo"), pricing_payload("$30/mo"))
        assert kinds(result) == ["price_decrease"]
        assert result.changes[0].magnitude == pytest.approx(25.0)

    def test_small_price_move_is_ignored(self, engine):
        """Should ignore changes under five percent."""
        result = engine.compare(pricing_payload("$100/mo"), pricing_payload("$103/mo"))
        assert not result.has_changes

    def test_plan_removed_and_added_are_high(self, engine):
        old = pricing_payload()
        new = pricing_payload()
        new["plans"] = [old["plans"][0], {
            "id": "team", "name": "Team", "price_raw": "$49/mo", "billing": "monthly",
            "cta": "Buy now", "features": [], "badges": [],
        }]
        new["highlighted_plan"] = None
        result = engine.compare(old, new)

        by_kind = {c.kind: c for c in result.changes}
        assert by_kind["plan_added"].severity == Severity.HIGH
        assert by_kind["plan_removed"].severity == Severity.HIGH
        assert by_kind["plan_removed"].details["plan"] == "Pro"

    def test_free_tier_removed(self, engine):
        result = engine.compare(
            pricing_payload(has_free_tier=True), pricing_payload(has_free_tier=False)
        )
        change = result.changes[0]
        assert change.kind == "free_tier_removed"
        assert change.severity == Severity.HIGH
        assert change.score == 1.0

    def test_free_tier_added_is_medium(self, engine):
        result = engine.compare(pricing_payload(), pricing_payload(has_free_tier=True))
        assert result.changes[0].kind == "free_tier_added"
        assert result.changes[0].severity == Severity.MEDIUM

    def test_cta_change_uses_transition_weight(self, engine):
        """Should weight start->contact CTA moves as medium."""
        old = pricing_payload()
        new = pricing_payload()
        new["plans"][1] = dict(new["plans"][1], cta="Contact sales")
        result = engine.compare(old, new)
        assert kinds(result) == ["cta_changed"]
        assert result.changes[0].score == 0.5
        assert result.changes[0].severity == Severity.MEDIUM

    def test_cta_whitespace_and_case_are_not_changes(self, engine):
        old = pricing_payload()
        new = pricing_payload()
        new["plans"][1] = dict(new["plans"][1], cta="  START free   Trial ")
        assert not engine.compare(old, new).has_changes

    def test_features_changed(self, engine):
        old = pricing_payload()
        new = pricing_payload()
        new["plans"][1] = dict(new["plans"][1], features=["10 projects", "SSO"])
        result = engine.compare(old, new)
        change = result.changes[0]
        assert change.kind == "features_changed"
        assert change.details["added"] == ["sso"]
        assert change.details["removed"] == ["priority support"]

    def test_highlighted_plan_change(self, engine):
        result = engine.compare(pricing_payload(), pricing_payload(highlighted_plan="starter"))
        assert kinds(result) == ["plan_promoted"]
        assert result.changes[0].old_value == "Pro"
        assert result.changes[0].new_value == "Starter"

    def test_summary_lists_top_three_and_counts_rest(self, engine):
        old = pricing_payload(has_free_tier=True)
        new = pricing_payload("$59/mo", has_free_tier=False, highlighted_plan="starter")
        new["plans"][0] = dict(new["plans"][0], price_raw="$19/mo", cta="Contact sales")
        result = engine.compare(old, new)

        assert len(result.changes) == 5
        assert result.summary.endswith("and 2 more changes")
        assert result.overall_score == 1.0

    def test_missing_plans_are_treated_as_empty(self, engine):
        result = engine.compare({"plans": None}, {})
        assert not result.has_changes


class TestCompareRegions:
    def test_reports_regional_gap(self):
        changes = compare_regions("us", pricing_payload("$29/mo"), "in", pricing_payload("$19/mo"))
        assert len(changes) == 1
        change = changes[0]
        assert change.kind == "regional_difference"
        assert change.details["contexts"] == ["us", "in"]
        assert "US and IN" in change.description

    def test_ignores_small_gaps_and_equal_prices(self):
        assert compare_regions("us", pricing_payload("$29/mo"), "eu", pricing_payload("$31/mo")) == []
        assert compare_regions("us", pricing_payload(), "eu", pricing_payload()) == []

    def rupees(self, pro_price):
        payload = pricing_payload(pro_price, currency="INR")
        payload["plans"][0]["price_raw"] = "₹749/mo"
        return payload

    def test_prices_are_converted_to_usd(self):
        """Should not report a gap between equivalent dollar and rupee prices."""
        assert compare_regions("us", pricing_payload("$29/mo"), "in", self.rupees("₹2,399/mo")) == []

        cheaper = self.rupees("₹1,299/mo")
        [change] = compare_regions("us", pricing_payload("$29/mo"), "in", cheaper)
        assert change.details["usd"] == [29.0, 15.56]
        assert change.magnitude == pytest.approx(46.36, abs=0.01)

    def test_given_rates_override_the_fallback_table(self):
        inr = self.rupees("₹2,900/mo")
        inr["plans"][0]["price_raw"] = "₹900/mo"
        assert compare_regions("us", pricing_payload("$29/mo"), "in", inr, {"INR": 100.0}) == []

    @pytest.mark.parametrize("currency,expected", [("USD", 50.0), (None, 50.0), ("XYZ", 50.0), ("EUR", 54.35)])
    def test_to_usd(self, currency, expected):
        assert to_usd(50.0, currency) == pytest.approx(expected, abs=0.01)
