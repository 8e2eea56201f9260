"""
Adaptive scheduler: builds the daily work queue over (target, context) pairs
and drives the target-context task through the job runner.

Pairs that have not changed in a long time are checked less often
(frequency decay), the queue is capped per run, and items are dispatched by a
small worker pool with a fixed delay after every item. A failing item is
counted and the run moves on.
"""

import asyncio
import logging
import random
from datetime import datetime
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from signals.pricing import compare_regions as compare_region_pricing

from .config import SchedulerSettings
from .guardrail import Guardrail
from .interfaces import EntitlementProvider, Store
from .models import (
    ChangeRecord,
    ErrorCode,
    ManualCheckResult,
    MonitoringContext,
    PlanEntitlements,
    RunStats,
    SignalType,
    Target,
    TaskResult,
    WorkItem,
    utcnow,
)
from .orchestrator import JobRunner, Task
from .providers import ExchangeRateProvider

logger = logging.getLogger(__name__)

# (minimum days since last change, enqueue probability), checked in order
DECAY_STEPS: Sequence[Tuple[float, float]] = ((90, 0.25), (30, 0.5))

NO_CONTEXTS_REASON = "None of the requested regions are available on your plan."


def decay_probability(days_since_change: Optional[float]) -> float:
    """Probability that a pair is checked this run."""
    if days_since_change is None:
        return 1.0
    for days, probability in DECAY_STEPS:
        if days_since_change > days:
            return probability
    return 1.0


class AdaptiveScheduler:
    def __init__(
        self,
        store: Store,
        guardrail: Guardrail,
        entitlements: EntitlementProvider,
        task: Task,
        runner: JobRunner,
        settings: Optional[SchedulerSettings] = None,
        *,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rates: Optional[ExchangeRateProvider] = None,
    ):
        self.store = store
        self.guardrail = guardrail
        self.entitlements = entitlements
        self.task = task
        self.runner = runner
        self.settings = settings or SchedulerSettings()
        self.rng = rng or random.Random()
        self._sleep = sleep
        self.rates = rates or ExchangeRateProvider()

    # ------------------------------------------------------------------ #
    # Queue building
    def should_enqueue(self, days_since_change: Optional[float]) -> bool:
        probability = decay_probability(days_since_change)
        if probability >= 1.0:
            return True
        return self.rng.random() < probability

    def allowed_contexts(
        self, contexts: Sequence[MonitoringContext], entitlements: PlanEntitlements
    ) -> List[MonitoringContext]:
        """The default context always; extra ones only for geo-aware plans."""
        if not contexts:
            return []
        if not entitlements.can_geo_aware:
            return list(contexts[:1])
        limit = min(self.settings.max_contexts_per_target, entitlements.max_contexts_per_target)
        return list(contexts[:max(1, limit)])

    def _items(
        self, target: Target, context: MonitoringContext, signals: Iterable[SignalType]
    ) -> List[WorkItem]:
        return [
            WorkItem(
                target_id=target.id,
                target_url=target.url,
                target_name=target.name,
                user_id=target.user_id,
                context=context,
                signal=signal,
                scraper_hint=target.scraper_hint,
            )
            for signal in signals
        ]

    async def build_queue(self, now: Optional[datetime] = None) -> Tuple[List[WorkItem], int]:
        """Return ``(queue, skipped)`` for one scheduled run."""
        now = now or utcnow()
        targets = await self.store.list_active_targets()
        contexts = await self.store.list_contexts()
        if not targets or not contexts:
            logger.info("Nothing to schedule: %d targets, %d contexts", len(targets), len(contexts))
            return [], 0

        cap = self.settings.max_total_checks
        queue: List[WorkItem] = []
        skipped = 0
        for target, plan in targets:
            if len(queue) >= cap:
                logger.info("Queue cap of %d reached, remaining targets wait for the next run", cap)
                break

            eligible, reason = self.guardrail.should_crawl(target, now)
            if not eligible:
                logger.debug("Skipping %s: %s", target.name, reason)
                skipped += 1
                continue

            for context in self.allowed_contexts(contexts, self.entitlements.get(plan)):
                last_change = await self.store.last_diff_at(target.id, context.id)
                days = None if last_change is None else (now - last_change).total_seconds() / 86400
                if not self.should_enqueue(days):
                    logger.debug("Decay skipped %s [%s] (%.0f days unchanged)", target.name, context.key, days)
                    skipped += 1
                    continue
                for item in self._items(target, context, self.settings.signals):
                    if len(queue) >= cap:
                        break
                    queue.append(item)

        return queue, skipped

    # ------------------------------------------------------------------ #
    # Dispatch
    async def _process(self, item: WorkItem, stats: RunStats, scheduled: bool) -> Optional[TaskResult]:
        if stats.throttled:
            stats.skipped += 1
            return None

        throttle = self.guardrail.check_global_throttle(await self.guardrail.todays_volume())
        if throttle.flagged:
            logger.warning("Global throttle engaged: %s", throttle.details)
            stats.throttled = True
            stats.skipped += 1
            return None

        if scheduled:
            user = await self.store.get_user(item.user_id)
            quota = await self.guardrail.consume_scheduled_crawl(user)
            if not quota.allowed:
                logger.info("Skipping %s [%s]: %s", item.target_name, item.context.key, quota.reason)
                stats.skipped += 1
                return None

        result = await self.runner.run(self.task, item)
        if result.success:
            stats.processed += 1
            if result.has_changes:
                stats.with_changes += 1
            if result.alerts_created:
                stats.with_alerts += 1
        else:
            stats.errors += 1
            logger.warning(
                "Check failed for %s [%s/%s]: %s (%s)",
                item.target_name, item.context.key, item.signal.value,
                result.error, result.code.value if result.code else "-",
            )
        return result

    async def _record_failures(self, failed: Set[str], succeeded: Set[str]) -> None:
        # one failure per target per run; any successful item clears the target
        for target_id in sorted(failed - succeeded):
            try:
                await self.guardrail.record_failure(target_id)
            except Exception as e:
                logger.error("Could not record failure for %s: %s", target_id, e)

    async def dispatch(self, items: Sequence[WorkItem], *, scheduled: bool = True) -> Tuple[RunStats, List[TaskResult]]:
        """Process ``items`` with the worker pool; one failure never stops the batch."""
        stats = RunStats(queued=len(items))
        results: List[TaskResult] = []
        failed: Set[str] = set()
        succeeded: Set[str] = set()
        queue: asyncio.Queue = asyncio.Queue()
        for item in items:
            queue.put_nowait(item)

        async def worker(worker_id: int) -> None:
            while True:
                try:
                    item = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                try:
                    result = await self._process(item, stats, scheduled)
                    if result is not None:
                        results.append(result)
                        (succeeded if result.success else failed).add(item.target_id)
                except Exception as e:
                    stats.errors += 1
                    failed.add(item.target_id)
                    results.append(TaskResult(success=False, error=str(e), code=ErrorCode.UNKNOWN))
                    logger.error(
                        "Worker %d: unhandled error on %s [%s]: %s",
                        worker_id, item.target_name, item.context.key, e,
                        exc_info=True,
                    )
                finally:
                    queue.task_done()
                if not queue.empty() and self.settings.delay_between_checks > 0:
                    await self._sleep(self.settings.delay_between_checks)

        workers = min(self.settings.concurrency, max(1, len(items)))
        await asyncio.gather(*(worker(i) for i in range(workers)))
        await self._record_failures(failed, succeeded)
        return stats, results

    # ------------------------------------------------------------------ #
    # Entry points
    async def run_daily(
        self,
        scheduled_at: Optional[datetime] = None,
        last_run_at: Optional[datetime] = None,
    ) -> RunStats:
        """Scheduled entry point: build the decayed queue and work through it."""
        now = scheduled_at or utcnow()
        logger.info(
            "Scheduled run at %s (previous run: %s)",
            now.isoformat(), last_run_at.isoformat() if last_run_at else "never",
        )
        queue, skipped = await self.build_queue(now)
        if not queue:
            return RunStats(skipped=skipped)

        logger.info("Queued %d check(s), %d skipped before dispatch", len(queue), skipped)
        stats, _ = await self.dispatch(queue, scheduled=True)
        stats.skipped += skipped
        logger.info(
            "Run complete: processed=%d with_changes=%d with_alerts=%d errors=%d skipped=%d%s",
            stats.processed, stats.with_changes, stats.with_alerts, stats.errors, stats.skipped,
            " (throttled)" if stats.throttled else "",
        )
        return stats

    async def check_now(
        self, target_id: str, context_keys: Optional[Sequence[str]] = None
    ) -> ManualCheckResult:
        """On-demand entry point: check a target immediately, bypassing decay."""
        target = await self.store.get_target(target_id)
        user = await self.store.get_user(target.user_id)

        entitlements = self.entitlements.get(user.plan)
        contexts = await self.store.list_contexts()
        selected = self.allowed_contexts(contexts, entitlements)
        if context_keys:
            wanted = set(context_keys)
            selected = [c for c in selected if c.key in wanted]

        # nothing to check costs nothing
        if not selected:
            return ManualCheckResult(
                allowed=False,
                reason=NO_CONTEXTS_REASON,
                upgrade_prompt=not entitlements.can_geo_aware,
            )

        quota = await self.guardrail.consume_manual_check(user)
        if not quota.allowed:
            return ManualCheckResult(
                allowed=False, reason=quota.reason, upgrade_prompt=quota.upgrade_prompt
            )

        items = [
            item
            for context in selected
            for item in self._items(target, context, self.settings.signals)
        ]
        logger.info("Manual check for %s: %d item(s) %s", target.name, len(items), [c.key for c in selected])
        stats, results = await self.dispatch(items, scheduled=False)
        return ManualCheckResult(
            allowed=True,
            contexts=[c.key for c in selected],
            stats=stats,
            results=results,
        )

    async def compare_regions(self, target_id: str) -> List[ChangeRecord]:
        """Price gaps, in USD, between the default context and every other context."""
        target = await self.store.get_target(target_id)
        contexts = await self.store.list_contexts()
        latest: Dict[str, dict] = {}
        for context in contexts:
            snapshot = await self.store.latest_snapshot(target.id, context.id, SignalType.PRICING)
            if snapshot is not None:
                latest[context.key] = snapshot.content
        if len(latest) < 2:
            return []

        rates = await self.rates.rates()
        keys = [c.key for c in contexts if c.key in latest]
        base = keys[0]
        changes: List[ChangeRecord] = []
        for other in keys[1:]:
            changes.extend(compare_region_pricing(base, latest[base], other, latest[other], rates))
        return changes
