"""
Main entry point for the competitor monitoring engine with scheduling support.
"""

import asyncio
import logging
import os
import signal
import sys

from dotenv import load_dotenv

# Add project root to PYTHONPATH so imports work when running this script directly
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from watchcore.app import MonitorApp
from watchcore.config import load_settings
from watchcore.infra.scheduler import Scheduler


async def main():
    """Run the daily monitoring job on its cron schedule until interrupted."""
    load_dotenv()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(name)s | %(levelname)s | %(message)s"
    )
    logger = logging.getLogger(__name__)

    settings = load_settings()

    scheduler_mode = os.getenv("SCHEDULER_MODE", "enabled")
    if scheduler_mode == "disabled":
        logger.info("Starting monitor (one-time run)...")
        await run_without_scheduler(settings)
        return

    logger.info("Starting monitor with scheduler (cron: %s, tz: %s)...",
                settings.scheduler.cron, settings.scheduler.timezone)

    scheduler = Scheduler(
        db_url=settings.scheduler.job_store_url,
        timezone=settings.scheduler.timezone,
        enable_persistence=settings.scheduler.persist_jobs,
    )

    # Setup graceful shutdown
    stop_event = asyncio.Event()

    def signal_handler():
        logger.info("Received shutdown signal")
        stop_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        asyncio.get_running_loop().add_signal_handler(sig, signal_handler)

    async with MonitorApp(settings) as app:
        try:
            app.schedule(scheduler)
            await scheduler.start()
            for job_id, job in scheduler.list_jobs().items():
                logger.info(f"  - {job_id}: next run {job['next_run']}")

            await stop_event.wait()
        except Exception as e:
            logger.error(f"Error in main loop: {e}", exc_info=True)
        finally:
            logger.info("Shutting down...")
            await scheduler.stop()

    logger.info("Shutdown complete")


async def run_without_scheduler(settings):
    """Run one monitoring pass and exit."""
    logger = logging.getLogger(__name__)

    stop_event = asyncio.Event()

    def signal_handler():
        logger.info("Received shutdown signal")
        stop_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        asyncio.get_running_loop().add_signal_handler(sig, signal_handler)

    async with MonitorApp(settings) as app:
        run_task = asyncio.create_task(app.run_once())
        stop_task = asyncio.create_task(stop_event.wait())
        try:
            await asyncio.wait([stop_task, run_task], return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop_task.cancel()
            if not run_task.done():
                logger.info("Cancelling run...")
                run_task.cancel()
                try:
                    await run_task
                except asyncio.CancelledError:
                    pass
            elif run_task.exception() is None:
                stats = run_task.result()
                logger.info(f"Run finished: {stats.model_dump()}")
            else:
                logger.error(f"Run failed: {run_task.exception()}")

    logger.info("Shutdown complete")


def run_monitor():
    """Entry point that can be called from other scripts."""
    asyncio.run(main())


if __name__ == "__main__":
    run_monitor()
