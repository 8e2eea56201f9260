"""
Tests for quota enforcement, abuse heuristics and target failure handling.
"""

import asyncio
from datetime import date, timedelta

import pytest

from watchcore.guardrail import (
    CRAWL_LIMIT_REASON,
    HOARDING_REASON,
    MANUAL_LIMIT_REASON,
    Guardrail,
)
from watchcore.models import (
    AbuseAction,
    AbuseKind,
    Plan,
    ScraperStrategy,
    SignalType,
    Snapshot,
    Target,
    TargetStatus,
    User,
    utcnow,
)
from watchcore.plans import StaticEntitlements

TODAY = date(2026, 3, 10)


class FakeStore:
    """Just enough of the Store for the pure guardrail checks."""

    def __init__(self, hashes=None, created=0, volume=0, alerts=0):
        self.hashes = hashes or []
        self.alerts = alerts
        self.created = created
        self.volume = volume

    async def recent_snapshot_hashes(self, target_id, context_id, signal, limit):
        return self.hashes[:limit]

    async def count_recent_alerts(self, target_id, context_id, signal, window):
        return self.alerts

    async def count_targets_created_since(self, user_id, since):
        return self.created

    async def count_snapshots_since(self, since):
        return self.volume

    async def list_contexts(self):
        return []


def make_guardrail(**store_kwargs):
    return Guardrail(FakeStore(**store_kwargs), StaticEntitlements())


class TestQuotaChecks:
    def test_free_user_under_cap(self):
        user = User(id="u", plan=Plan.FREE, crawls_today=0, last_reset=TODAY)
        assert make_guardrail().can_scheduled_crawl(user, TODAY).allowed

    def test_free_user_at_cap_gets_upgrade_prompt(self):
        user = User(id="u", plan=Plan.FREE, crawls_today=1, last_reset=TODAY)
        check = make_guardrail().can_scheduled_crawl(user, TODAY)
        assert not check.allowed
        assert check.reason == CRAWL_LIMIT_REASON
        assert check.upgrade_prompt

    def test_paid_user_at_cap_has_no_upgrade_prompt(self):
        user = User(id="u", plan=Plan.PRO, manual_checks_today=5, last_reset=TODAY)
        check = make_guardrail().can_manual_check(user, TODAY)
        assert not check.allowed
        assert check.reason == MANUAL_LIMIT_REASON
        assert not check.upgrade_prompt

    def test_stale_counters_read_as_reset(self):
        """Should treat yesterday's counters as zero."""
        user = User(id="u", plan=Plan.FREE, crawls_today=1, manual_checks_today=1,
                    last_reset=TODAY - timedelta(days=1))
        guardrail = make_guardrail()
        assert guardrail.can_scheduled_crawl(user, TODAY).allowed
        assert guardrail.can_manual_check(user, TODAY).allowed

    def test_unknown_plan_falls_back_to_lowest(self):
        ents = StaticEntitlements()
        assert ents.get("platinum").plan == Plan.FREE

    @pytest.mark.parametrize("plan,count,allowed", [
        (Plan.FREE, 0, True),
        (Plan.FREE, 1, False),
        (Plan.PRO, 4, True),
        (Plan.PRO, 5, False),
    ])
    def test_can_add_target(self, plan, count, allowed):
        check = make_guardrail().can_add_target(User(id="u", plan=plan), count)
        assert check.allowed is allowed
        if not allowed:
            assert check.upgrade_prompt is (plan == Plan.FREE)

    def test_free_target_limit_message(self):
        check = make_guardrail().can_add_target(User(id="u", plan=Plan.FREE), 1)
        assert check.reason == "Free plan limited to 1 competitor. Upgrade to Pro for unlimited."


class TestAbuseHeuristics:
    def test_manual_spam_soft_blocks(self):
        user = User(id="u", plan=Plan.PRO, manual_checks_today=5, last_reset=TODAY)
        check = make_guardrail().detect_manual_spam(user, TODAY)
        assert check.flagged
        assert check.flag.kind == AbuseKind.MANUAL_SPAM
        assert check.action == AbuseAction.SOFT_BLOCK

    async def test_target_hoarding(self):
        assert not (await make_guardrail(created=20).detect_target_hoarding("u")).flagged
        check = await make_guardrail(created=21).detect_target_hoarding("u")
        assert check.flagged
        assert check.reason == HOARDING_REASON
        assert check.details["created"] == 21

    async def test_volatile_context_needs_enough_history(self):
        check = await make_guardrail(hashes=["a", "b", "c", "d"]).detect_volatile_context("t", "c")
        assert not check.flagged

    async def test_volatile_context_flags_flapping_pair(self):
        """Should throttle when more than 70% of recent snapshots differ."""
        hashes = ["a", "b", "c", "d", "e", "f", "g", "h", "a", "b"]
        check = await make_guardrail(hashes=hashes).detect_volatile_context("t", "c")
        assert check.flagged
        assert check.action == AbuseAction.THROTTLE
        assert check.details["change_rate"] == 0.8

    async def test_flapping_pair_with_regular_alerts_is_not_volatile(self):
        """Should leave a pair alone when its changes keep producing alerts."""
        hashes = ["a", "b", "c", "d", "e", "f", "g", "h", "i", "j"]
        assert not (await make_guardrail(hashes=hashes, alerts=1).detect_volatile_context("t", "c")).flagged

    async def test_stable_pair_is_not_volatile(self):
        hashes = ["a"] * 6 + ["b"] * 4
        assert not (await make_guardrail(hashes=hashes).detect_volatile_context("t", "c")).flagged

    def test_global_throttle(self):
        guardrail = make_guardrail()
        assert not guardrail.check_global_throttle(150, expected_volume=100).flagged
        check = guardrail.check_global_throttle(151, expected_volume=100)
        assert check.flagged
        assert check.flag.kind == AbuseKind.GLOBAL_THROTTLE

    async def test_run_all_checks_returns_flagged_only(self):
        user = User(id="u", plan=Plan.FREE, manual_checks_today=1, last_reset=utcnow().date())
        flags = await make_guardrail(created=30).run_all_checks(user)
        assert {f.flag.kind for f in flags} == {AbuseKind.MANUAL_SPAM, AbuseKind.TARGET_HOARDING}


class TestShouldCrawl:
    def target(self, **kwargs):
        return Target(id="t", user_id="u", name="Acme", url="https://acme.test", **kwargs)

    def test_active_target(self):
        assert make_guardrail().should_crawl(self.target()) == (True, None)

    def test_paused_and_errored_targets(self):
        guardrail = make_guardrail()
        assert guardrail.should_crawl(self.target(status=TargetStatus.PAUSED))[0] is False
        assert guardrail.should_crawl(self.target(failure_count=3)) == (False, "Paused due to repeated failures")

    def test_failure_cooldown(self):
        now = utcnow()
        guardrail = make_guardrail()
        recent = self.target(failure_count=1, last_failure_at=now - timedelta(hours=2))
        assert guardrail.should_crawl(recent, now) == (False, "In failure cooldown period")
        old = self.target(failure_count=1, last_failure_at=now - timedelta(hours=25))
        assert guardrail.should_crawl(old, now) == (True, None)


class TestStoreBackedGuardrail:
    async def test_consume_is_atomic_under_concurrency(self, guardrail, seeded):
        """Should admit exactly one manual check for a free user however many race."""
        results = await asyncio.gather(*(guardrail.consume_manual_check(seeded["free"]) for _ in range(5)))
        assert sum(r.allowed for r in results) == 1
        denied = [r for r in results if not r.allowed]
        assert all(r.upgrade_prompt for r in denied)

    async def test_consume_resets_stale_counters(self, store, guardrail, seeded):
        stale = seeded["free"].model_copy(update={
            "crawls_today": 1, "manual_checks_today": 1, "last_reset": date(2020, 1, 1),
        })
        await store.add_user(stale)
        assert (await guardrail.consume_scheduled_crawl(stale)).allowed
        usage = await store.get_usage(stale.id)
        assert usage.crawls_today == 1
        assert usage.manual_checks_today == 0
        assert usage.last_reset == utcnow().date()

    async def test_record_failure_pauses_after_three(self, store, guardrail, seeded):
        target_id = seeded["pro_target"].id
        assert await guardrail.record_failure(target_id) is False
        assert await guardrail.record_failure(target_id) is False
        assert await guardrail.record_failure(target_id) is True

        target = await store.get_target(target_id)
        assert target.failure_count == 3
        assert target.status == TargetStatus.ERROR
        assert guardrail.should_crawl(target)[0] is False

    async def test_volatile_context_from_snapshots(self, store, guardrail, seeded):
        target = seeded["pro_target"]
        for i in range(6):
            await store.insert_snapshot(Snapshot(
                target_id=target.id, context_id="ctx-us", signal=SignalType.PRICING,
                method=ScraperStrategy.LIGHTWEIGHT, content_hash=f"h{i}", content={"i": i},
            ))
        check = await guardrail.detect_volatile_context(target.id, "ctx-us")
        assert check.flagged
        assert check.details["sample"] == 6

    async def test_todays_volume_counts_snapshots(self, store, guardrail, seeded):
        await store.insert_snapshot(Snapshot(
            target_id=seeded["free_target"].id, context_id="ctx-us", content_hash="h", content={},
        ))
        assert await guardrail.todays_volume() == 1
