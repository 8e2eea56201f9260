"""
Tests for the tech stack, branding and performance diff engines.
"""

import pytest

from signals.branding import BrandingDiffEngine
from signals.performance import PerformanceDiffEngine
from signals.techstack import TechStackDiffEngine
from watchcore.models import Severity, SignalType, Verdict


def stack(*names_and_categories):
    return {"technologies": [{"name": n, "category": c} for n, c in names_and_categories]}


def branding(**overrides):
    payload = {
        "color_scheme": "light",
        "colors": {
            "primary": "#3366ff", "secondary": "#222222", "accent": "#ff6600",
            "background": "#ffffff", "text_primary": "#111111", "text_secondary": "#666666",
        },
        "fonts": ["Inter"],
        "logo": "https://acme.test/logo.svg",
    }
    payload.update(overrides)
    return payload


class TestTechStackDiff:
    @pytest.fixture
    def engine(self):
        return TechStackDiffEngine()

    def test_initial_and_unchanged(self, engine):
        current = stack(("Stripe", "payment"))
        assert engine.compare(None, current).verdict == Verdict.INITIAL
        result = engine.compare(current, current)
        assert not result.has_changes
        assert result.summary == "No tech stack changes detected"

    def test_payment_addition_is_high(self, engine):
        """Should treat a new payment provider as high severity."""
        result = engine.compare(stack(("React", "framework")), stack(("React", "framework"), ("Stripe", "payment")))
        change = result.changes[0]
        assert change.kind == "tech_added"
        assert change.new_value == "Stripe"
        assert change.severity == Severity.HIGH
        assert change.description == "Added Stripe payment processing"
        assert change.details["implication"] == "Launching or expanding paid plans"
        assert result.signal == SignalType.TECH_STACK

    def test_removal_uses_category_severity(self, engine):
        result = engine.compare(stack(("Hotjar", "analytics"), ("Vercel", "hosting")), stack())
        by_name = {c.old_value: c for c in result.changes}
        assert by_name["Hotjar"].kind == "tech_removed"
        assert by_name["Hotjar"].severity == Severity.MEDIUM
        assert by_name["Vercel"].severity == Severity.LOW

    def test_payment_provider_from_empty_stack(self, engine):
        result = engine.compare({"technologies": []}, stack(("Stripe", "payment")))
        assert len(result.changes) == 1
        assert result.changes[0].severity == Severity.HIGH

    def test_unknown_tech_gets_generic_message(self, engine):
        result = engine.compare(stack(), stack(("Plausible", "analytics")))
        assert result.changes[0].description == "Added Plausible"
        assert result.changes[0].details["implication"] == "Investing in analytics capabilities"


class TestBrandingDiff:
    @pytest.fixture
    def engine(self):
        return BrandingDiffEngine()

    def test_identical_branding_has_no_changes(self, engine):
        assert not engine.compare(branding(), branding()).has_changes

    def test_theme_change_is_high(self, engine):
        result = engine.compare(branding(), branding(color_scheme="dark"))
        change = result.changes[0]
        assert change.kind == "theme_change"
        assert change.severity == Severity.HIGH
        assert change.details["direction"] == "light_to_dark"

    def test_unknown_scheme_is_not_a_change(self, engine):
        assert not engine.compare(branding(color_scheme="unknown"), branding(color_scheme="dark")).has_changes

    def test_primary_color_is_high_others_medium(self, engine):
        new = branding()
        new["colors"] = dict(new["colors"], primary="#FF0000", accent="#00ff00")
        result = engine.compare(branding(), new)
        by_channel = {c.details["channel"]: c for c in result.changes}
        assert by_channel["primary"].severity == Severity.HIGH
        assert by_channel["primary"].new_value == "#ff0000"
        assert by_channel["accent"].severity == Severity.MEDIUM
        assert "refresh" not in [c.kind for c in result.changes]

    def test_three_color_changes_add_refresh(self, engine):
        new = branding()
        new["colors"] = dict(new["colors"], secondary="#000000", accent="#00ff00", background="#fafafa")
        result = engine.compare(branding(), new)
        refresh = [c for c in result.changes if c.kind == "refresh"]
        assert len(refresh) == 1
        assert refresh[0].severity == Severity.HIGH
        assert refresh[0].details["channels"] == ["secondary", "accent", "background"]

    def test_missing_values_are_skipped(self, engine):
        """Should not report a color that disappeared from extraction."""
        new = branding(logo=None, fonts=[])
        new["colors"] = dict(new["colors"], primary=None)
        assert not engine.compare(branding(), new).has_changes

    def test_font_and_logo_changes(self, engine):
        result = engine.compare(branding(), branding(fonts=["Roboto", "Inter"], logo="https://acme.test/new.svg"))
        by_kind = {c.kind: c for c in result.changes}
        assert by_kind["font_change"].severity == Severity.MEDIUM
        assert by_kind["font_change"].new_value == ["Inter", "Roboto"]
        assert by_kind["logo_change"].severity == Severity.HIGH

    def test_font_order_is_not_a_change(self, engine):
        assert not engine.compare(branding(fonts=["A", "B"]), branding(fonts=["B", "A"])).has_changes


class TestPerformanceDiff:
    @pytest.fixture
    def engine(self):
        return PerformanceDiffEngine()

    def test_score_drop_is_high_degradation(self, engine):
        """Should report 85 -> 70 as a high severity degradation of 15 points."""
        result = engine.compare({"score": 85, "lcp": 2000, "cls": 0.05}, {"score": 70, "lcp": 2000, "cls": 0.05})
        change = result.changes[0]
        assert change.kind == "degradation"
        assert change.severity == Severity.HIGH
        assert change.magnitude == 15
        assert result.verdict == Verdict.DEGRADATION
        assert "opportunity to outperform" in change.description

    def test_lcp_improvement_is_medium(self, engine):
        result = engine.compare({"lcp": 3500}, {"lcp": 2100})
        change = result.changes[0]
        assert change.kind == "improvement"
        assert change.severity == Severity.MEDIUM
        assert result.verdict == Verdict.IMPROVEMENT

    def test_cls_thresholds(self, engine):
        worse = engine.compare({"cls": 0.05}, {"cls": 0.2})
        assert worse.changes[0].severity == Severity.MEDIUM
        better = engine.compare({"cls": 0.25}, {"cls": 0.1})
        assert better.changes[0].severity == Severity.LOW
        assert not engine.compare({"cls": 0.1}, {"cls": 0.15}).has_changes

    def test_mixed_and_stable(self, engine):
        mixed = engine.compare({"score": 60, "lcp": 4000}, {"score": 45, "lcp": 2500})
        assert mixed.verdict == Verdict.MIXED
        stable = engine.compare({"score": 80, "lcp": 2000}, {"score": 85, "lcp": 2500})
        assert stable.verdict == Verdict.STABLE
        assert stable.summary == "Performance stable"

    def test_missing_metrics_are_ignored(self, engine):
        assert not engine.compare({"score": None, "lcp": 2000}, {"score": 50}).has_changes

    def test_metric_appearing_from_null_is_not_a_change(self, engine):
        result = engine.compare({"score": 80, "lcp": None, "cls": 0.1}, {"score": 80, "lcp": 2500, "cls": 0.1})
        assert [c for c in result.changes if c.field == "lcp"] == []

    def test_identical_metrics_are_stable(self, engine):
        metrics = {"score": 90, "lcp": 1800, "cls": 0.02}
        result = engine.compare(metrics, dict(metrics))
        assert not result.has_changes
        assert result.verdict == Verdict.STABLE

    def test_same_input_same_output(self, engine):
        old, new = {"score": 90, "lcp": 1500, "cls": 0.3}, {"score": 70, "lcp": 2600, "cls": 0.05}
        assert engine.compare(old, new) == engine.compare(old, new)
