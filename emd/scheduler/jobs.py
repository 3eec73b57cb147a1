"""EMD — Scheduler Jobs.

APScheduler interval job that drives the poller. ``max_instances=1`` and
``coalesce=True`` keep missed ticks from piling up behind a slow cycle.
"""

from typing import Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from emd.core.logging import get_logger

logger = get_logger("scheduler")

POLL_JOB_ID = "poll_cycle"


class PollingScheduler:
    """Owns one ``AsyncIOScheduler`` with a single polling job."""

    def __init__(self, scheduler: AsyncIOScheduler | None = None):
        self.scheduler = scheduler or AsyncIOScheduler()

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def start(self, job: Callable[[], Awaitable[object]], interval_seconds: float) -> None:
        """Schedule ``job`` every ``interval_seconds`` and start the scheduler."""
        self.scheduler.add_job(
            job,
            "interval",
            seconds=interval_seconds,
            id=POLL_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=int(interval_seconds),
        )
        if not self.scheduler.running:
            self.scheduler.start()
        logger.info(f"Scheduler started. Polling every {interval_seconds}s")

    def stop(self) -> None:
        """Remove the polling job and shut the scheduler down."""
        if self.scheduler.get_job(POLL_JOB_ID):
            self.scheduler.remove_job(POLL_JOB_ID)
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
