"""
Composition root: wires settings, storage, extractors, guardrail, task, job
runner and scheduler into one ``MonitorApp``.

    async with MonitorApp(load_settings()) as app:
        stats = await app.scheduler.run_daily()

Persistent APScheduler job stores can only hold importable references, so the
app currently running registers itself here and the cron job points at
``watchcore.app:scheduled_run``.
"""

import logging
from contextlib import AsyncExitStack
from datetime import datetime
from typing import Optional

from . import plugin_loader
from .alerts import AlertBuilder
from .config import Settings
from .extraction import BrowserExtractor, HttpExtractor, PageSpeedExtractor
from .guardrail import Guardrail
from .infra.db import Database
from .infra.http import HttpClient
from .infra.scheduler import Scheduler
from .infra.sel import BrowserPool, PlaywrightClient
from .infra.store import SqliteStore
from .models import RunStats, ScraperStrategy, SignalType, utcnow
from .orchestrator import JobRunner
from .plans import StaticEntitlements
from .providers import ExchangeRateProvider, HttpExplanationProvider, LocalEvidenceStore
from .scheduling import AdaptiveScheduler
from .task import TargetContextTask

logger = logging.getLogger(__name__)

DAILY_JOB_ID = "daily-monitoring"
SCHEDULED_RUN_REF = "watchcore.app:scheduled_run"

_active: Optional["MonitorApp"] = None


class MonitorApp:
    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or Settings()
        self._stack: Optional[AsyncExitStack] = None
        self.last_run_at: Optional[datetime] = None

        self.db: Optional[Database] = None
        self.store: Optional[SqliteStore] = None
        self.http: Optional[HttpClient] = None
        self.browser: Optional[BrowserPool] = None
        self.entitlements = StaticEntitlements(self.settings.plans)
        self.guardrail: Optional[Guardrail] = None
        self.task: Optional[TargetContextTask] = None
        self.runner = JobRunner.from_settings(self.settings.task)
        self.scheduler: Optional[AdaptiveScheduler] = None

    async def __aenter__(self) -> "MonitorApp":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def start(self) -> None:
        if self._stack is not None:
            return
        extraction = self.settings.extraction
        stack = AsyncExitStack()
        try:
            self.db = await stack.enter_async_context(Database(self.settings.storage.db_path))
            self.http = await stack.enter_async_context(
                HttpClient(timeout=extraction.http_timeout, max_retries=extraction.http_max_retries)
            )
            # the browser itself is launched lazily on the first rich-render check
            self.browser = await stack.enter_async_context(BrowserPool(
                PlaywrightClient(
                    headless=extraction.headless,
                    browser_type=extraction.browser_type,
                    timeout=extraction.browser_timeout_ms,
                ),
                size=extraction.browser_pool_size,
            ))
        except BaseException:
            await stack.aclose()
            raise
        self._stack = stack

        plugin_loader.refresh_registry()
        self.store = SqliteStore(self.db)
        self.guardrail = Guardrail(self.store, self.entitlements, self.settings.guardrail)

        explainer = None
        if self.settings.enrichment.api_url:
            explainer = HttpExplanationProvider(
                self.http,
                self.settings.enrichment.api_url,
                self.settings.enrichment.api_key,
                timeout=self.settings.enrichment.timeout,
            )

        self.task = TargetContextTask(
            self.store,
            {
                ScraperStrategy.LIGHTWEIGHT: HttpExtractor(self.http),
                ScraperStrategy.RICH_RENDER: BrowserExtractor(self.browser),
            },
            self.entitlements,
            signal_extractors={
                SignalType.PERFORMANCE: PageSpeedExtractor(
                    self.http,
                    api_key=extraction.pagespeed_api_key,
                    strategy=extraction.pagespeed_strategy,
                ),
            },
            evidence=LocalEvidenceStore(self.settings.storage.evidence_dir),
            alerts=AlertBuilder(explainer),
            guardrail=self.guardrail,
        )
        self.scheduler = AdaptiveScheduler(
            self.store,
            self.guardrail,
            self.entitlements,
            self.task,
            self.runner,
            self.settings.scheduler,
            rates=ExchangeRateProvider(
                self.http,
                self.settings.currency.rates_url,
                cache_hours=self.settings.currency.cache_hours,
                timeout=self.settings.currency.timeout,
            ),
        )
        logger.info("Monitor ready (db=%s, engines=%s)", self.settings.storage.db_path,
                    sorted(s.value for s in plugin_loader.list_available()))

    async def close(self) -> None:
        global _active
        if _active is self:
            _active = None
        if self._stack is not None:
            await self._stack.aclose()
            self._stack = None

    async def run_once(self) -> RunStats:
        started = utcnow()
        stats = await self.scheduler.run_daily(scheduled_at=started, last_run_at=self.last_run_at)
        self.last_run_at = started
        return stats

    # ------------------------------------------------------------------ #
    # Cron registration
    def activate(self) -> None:
        global _active
        _active = self

    def schedule(self, scheduler: Scheduler) -> None:
        """Register the daily run on ``scheduler`` and make this app its target."""
        self.activate()
        scheduler.add_cron_job(SCHEDULED_RUN_REF, self.settings.scheduler.cron, job_id=DAILY_JOB_ID)


async def scheduled_run() -> Optional[RunStats]:
    """Cron job body; runs the daily pass on the active app."""
    if _active is None:
        logger.error("Scheduled run fired but no monitor app is active")
        return None
    return await _active.run_once()
