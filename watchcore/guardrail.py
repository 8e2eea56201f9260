"""
Quota enforcement and abuse heuristics.

Quota checks compare a user's daily counters with the plan caps; consuming a
quota goes through the store's atomic reset-and-increment. Abuse checks only
recommend an action (soft block or throttle); callers decide whether to act.
"""

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import List, Optional, Tuple

from .config import GuardrailSettings
from .interfaces import EntitlementProvider, Store
from .models import (
    AbuseAction,
    AbuseCheck,
    AbuseFlag,
    AbuseKind,
    Plan,
    QuotaCheck,
    SignalType,
    Target,
    TargetStatus,
    User,
    utcnow,
)
from .plans import LOWEST_PLAN

logger = logging.getLogger(__name__)

CRAWL_LIMIT_REASON = "Daily crawl limit reached"
MANUAL_LIMIT_REASON = (
    "You've reached today's manual check limit. We'll check again tomorrow."
)
FREE_TARGET_LIMIT_REASON = "Free plan limited to {limit} competitor. Upgrade to Pro for unlimited."
PAID_TARGET_LIMIT_REASON = "You've reached the maximum pages. Contact us if you need more."
MANUAL_SPAM_REASON = "Manual checks are temporarily limited to keep things reliable."
HOARDING_REASON = "We noticed many new pages in a short time. Consider focusing on pricing or key pages."
VOLATILE_REASON = "This page changes frequently but rarely has meaningful updates."
THROTTLE_REASON = "System temporarily throttled for reliability. Please try again later."


def _counter_today(user: User, value: int, today: date) -> int:
    # counters from a previous UTC day read as already reset
    if user.last_reset is not None and user.last_reset != today:
        return 0
    return value


def _not_flagged() -> AbuseCheck:
    return AbuseCheck(flagged=False)


def _flagged(kind: AbuseKind, action: AbuseAction, reason: str, **details) -> AbuseCheck:
    return AbuseCheck(
        flagged=True,
        flag=AbuseFlag(kind=kind, action=action, reason=reason),
        details=details,
    )


class Guardrail:
    def __init__(
        self,
        store: Store,
        entitlements: EntitlementProvider,
        settings: Optional[GuardrailSettings] = None,
    ):
        self.store = store
        self.entitlements = entitlements
        self.settings = settings or GuardrailSettings()

    # ------------------------------------------------------------------ #
    # Quotas
    def _denied(self, plan: Plan, reason: str) -> QuotaCheck:
        return QuotaCheck(allowed=False, reason=reason, upgrade_prompt=plan == LOWEST_PLAN)

    def can_scheduled_crawl(self, user: User, today: Optional[date] = None) -> QuotaCheck:
        today = today or utcnow().date()
        cap = self.entitlements.get(user.plan).daily_crawl_cap
        if _counter_today(user, user.crawls_today, today) >= cap:
            return self._denied(user.plan, CRAWL_LIMIT_REASON)
        return QuotaCheck(allowed=True)

    def can_manual_check(self, user: User, today: Optional[date] = None) -> QuotaCheck:
        today = today or utcnow().date()
        cap = self.entitlements.get(user.plan).daily_manual_check_cap
        if _counter_today(user, user.manual_checks_today, today) >= cap:
            return self._denied(user.plan, MANUAL_LIMIT_REASON)
        return QuotaCheck(allowed=True)

    def can_add_target(self, user: User, current_active_count: int) -> QuotaCheck:
        limit = self.entitlements.get(user.plan).max_targets
        if current_active_count < limit:
            return QuotaCheck(allowed=True)
        if user.plan == LOWEST_PLAN:
            return self._denied(user.plan, FREE_TARGET_LIMIT_REASON.format(limit=limit))
        return self._denied(user.plan, PAID_TARGET_LIMIT_REASON)

    async def _consume(self, user: User, counter: str, cap: int, reason: str) -> QuotaCheck:
        counters = await self.store.consume_usage(
            user.id, counter, cap, today=utcnow().date().isoformat()
        )
        if counters is None:
            logger.info("Quota denied for user %s: %s", user.id, reason)
            return self._denied(user.plan, reason)
        return QuotaCheck(allowed=True)

    async def consume_scheduled_crawl(self, user: User) -> QuotaCheck:
        """Check and count one scheduled crawl in a single atomic step."""
        cap = self.entitlements.get(user.plan).daily_crawl_cap
        return await self._consume(user, "crawls_today", cap, CRAWL_LIMIT_REASON)

    async def consume_manual_check(self, user: User) -> QuotaCheck:
        cap = self.entitlements.get(user.plan).daily_manual_check_cap
        return await self._consume(user, "manual_checks_today", cap, MANUAL_LIMIT_REASON)

    # ------------------------------------------------------------------ #
    # Abuse heuristics
    def detect_manual_spam(self, user: User, today: Optional[date] = None) -> AbuseCheck:
        today = today or utcnow().date()
        cap = self.entitlements.get(user.plan).daily_manual_check_cap
        used = _counter_today(user, user.manual_checks_today, today)
        if used >= cap:
            return _flagged(
                AbuseKind.MANUAL_SPAM, AbuseAction.SOFT_BLOCK, MANUAL_SPAM_REASON,
                manual_checks_today=used, cap=cap,
            )
        return _not_flagged()

    async def detect_target_hoarding(self, user_id: str, now: Optional[datetime] = None) -> AbuseCheck:
        now = now or utcnow()
        since = now - timedelta(hours=self.settings.hoarding_window_hours)
        created = await self.store.count_targets_created_since(user_id, since)
        if created > self.settings.hoarding_threshold:
            return _flagged(
                AbuseKind.TARGET_HOARDING, AbuseAction.SOFT_BLOCK, HOARDING_REASON,
                created=created, window_hours=self.settings.hoarding_window_hours,
            )
        return _not_flagged()

    async def detect_volatile_context(
        self,
        target_id: str,
        context_id: str,
        signal: SignalType = SignalType.PRICING,
    ) -> AbuseCheck:
        """Flag a pair whose recent snapshots keep changing hash but rarely alert."""
        window = self.settings.volatile_window
        hashes = await self.store.recent_snapshot_hashes(target_id, context_id, signal, window)
        if len(hashes) < self.settings.volatile_min_snapshots:
            return _not_flagged()

        rate = len(set(hashes)) / len(hashes)
        if rate <= self.settings.volatile_rate:
            return _not_flagged()

        alerts = await self.store.count_recent_alerts(target_id, context_id, signal, window)
        meaningful_rate = alerts / len(hashes)
        if meaningful_rate >= self.settings.volatile_meaningful_rate:
            return _not_flagged()
        return _flagged(
            AbuseKind.VOLATILE_CONTEXT, AbuseAction.THROTTLE, VOLATILE_REASON,
            change_rate=round(rate, 3), meaningful_rate=round(meaningful_rate, 3),
            sample=len(hashes),
        )

    def check_global_throttle(
        self, current_volume: int, expected_volume: Optional[int] = None
    ) -> AbuseCheck:
        expected = expected_volume if expected_volume is not None else self.settings.expected_daily_crawls
        threshold = expected * self.settings.throttle_factor
        if current_volume > threshold:
            return _flagged(
                AbuseKind.GLOBAL_THROTTLE, AbuseAction.THROTTLE, THROTTLE_REASON,
                current=current_volume, threshold=threshold,
            )
        return _not_flagged()

    async def todays_volume(self, now: Optional[datetime] = None) -> int:
        """System-wide crawl volume today, counted as snapshots since UTC midnight."""
        now = now or utcnow()
        midnight = datetime.combine(now.date(), time.min, tzinfo=timezone.utc)
        return await self.store.count_snapshots_since(midnight)

    async def run_all_checks(
        self,
        user: User,
        target: Optional[Target] = None,
        signal: SignalType = SignalType.PRICING,
    ) -> List[AbuseCheck]:
        """Run every applicable check and keep only the flagged ones."""
        checks = [
            self.detect_manual_spam(user),
            await self.detect_target_hoarding(user.id),
            self.check_global_throttle(await self.todays_volume()),
        ]
        if target is not None:
            for context in await self.store.list_contexts():
                check = await self.detect_volatile_context(target.id, context.id, signal)
                if check.flagged:
                    check.details["context_key"] = context.key
                checks.append(check)
        return [check for check in checks if check.flagged]

    # ------------------------------------------------------------------ #
    # Target failure handling
    def should_crawl(self, target: Target, now: Optional[datetime] = None) -> Tuple[bool, Optional[str]]:
        """Whether the scheduler should queue ``target`` at all this run."""
        now = now or utcnow()
        if target.status != TargetStatus.ACTIVE:
            return False, f"Status is {target.status.value}"
        if target.failure_count >= self.settings.max_failures:
            return False, "Paused due to repeated failures"
        if target.last_failure_at is not None:
            cooldown_end = target.last_failure_at + timedelta(hours=self.settings.failure_cooldown_hours)
            if now < cooldown_end:
                return False, "In failure cooldown period"
        return True, None

    async def record_failure(self, target_id: str, now: Optional[datetime] = None) -> bool:
        """Count a failed check; returns True when the target was paused."""
        count = await self.store.record_target_failure(
            target_id,
            now or utcnow(),
            pause_after=self.settings.max_failures,
            pause_status=TargetStatus.ERROR,
        )
        paused = count >= self.settings.max_failures
        if paused:
            logger.warning("Target %s paused after %d consecutive failures", target_id, count)
        return paused
