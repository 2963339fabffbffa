"""Background scheduler for the follow-up jobs.

Uses APScheduler to run discovery and due-send on independent intervals.
Controlled by the ENABLE_SCHEDULER setting (default True); set
ENABLE_SCHEDULER=false to disable during tests or CI.

Alternative: ``python -m src.tasks.scheduled`` runs the same jobs once from
an external cron (Railway cron, Supabase pg_cron, etc.) if APScheduler is not
desired.
"""

import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from src.core.config import settings
from src.jobs.follow_up_discovery_job import run_follow_up_discovery
from src.jobs.follow_up_send_job import run_due_follow_up_sends

logger = logging.getLogger(__name__)

JobFunc = Callable[[], Awaitable[dict[str, Any]]]

DISCOVERY_JOB = "follow_up_discovery"
SEND_JOB = "follow_up_send"


class GuardedJob:
    """A job that never runs concurrently with itself.

    A run requested while the previous one is still in flight is skipped,
    not queued.
    """

    def __init__(self, name: str, func: JobFunc) -> None:
        self.name = name
        self._func = func
        self._running = False

    @property
    def running(self) -> bool:
        """Whether a run is in progress."""
        return self._running

    async def run(self) -> dict[str, Any] | None:
        """Run the job unless it is already running.

        Returns:
            The job's stats, or None when the run was skipped.
        """
        # No await between the check and the set, so this is atomic on the loop.
        if self._running:
            logger.info("%s: previous run still in progress, skipping", self.name)
            return None

        self._running = True
        started = datetime.now(UTC)
        try:
            stats = await self._func()
        finally:
            self._running = False
        logger.info(
            "%s: finished in %.1fs",
            self.name,
            (datetime.now(UTC) - started).total_seconds(),
        )
        return stats


class FollowUpScheduler:
    """Owns the guarded follow-up jobs and their APScheduler registration."""

    def __init__(
        self,
        discovery: JobFunc | None = None,
        send: JobFunc | None = None,
        discovery_interval_minutes: int | None = None,
        send_interval_minutes: int | None = None,
    ) -> None:
        self.jobs: dict[str, GuardedJob] = {
            DISCOVERY_JOB: GuardedJob(DISCOVERY_JOB, discovery or run_follow_up_discovery),
            SEND_JOB: GuardedJob(SEND_JOB, send or run_due_follow_up_sends),
        }
        self._intervals = {
            DISCOVERY_JOB: discovery_interval_minutes
            or settings.FOLLOW_UP_DISCOVERY_INTERVAL_MINUTES,
            SEND_JOB: send_interval_minutes or settings.FOLLOW_UP_SCHEDULER_INTERVAL_MINUTES,
        }
        self._scheduler: AsyncIOScheduler | None = None

    @property
    def started(self) -> bool:
        """Whether the interval scheduler is running."""
        return self._scheduler is not None

    def get_job(self, name: str) -> GuardedJob | None:
        """Look up a guarded job by name."""
        return self.jobs.get(name)

    async def run_job(self, name: str) -> dict[str, Any] | None:
        """Run one job now, subject to its guard.

        Raises:
            KeyError: If no job has this name.
        """
        return await self.jobs[name].run()

    def start(self) -> None:
        """Register both jobs and start the interval scheduler.

        Each job also runs once immediately so a fresh process does not wait
        a full interval.
        """
        if self._scheduler is not None:
            return

        now = datetime.now(UTC)
        scheduler = AsyncIOScheduler()
        for name, job in self.jobs.items():
            scheduler.add_job(
                job.run,
                trigger=IntervalTrigger(minutes=self._intervals[name]),
                id=name,
                name=f"Follow-up job: {name}",
                replace_existing=True,
                max_instances=1,
                coalesce=True,
                next_run_time=now,
            )
        scheduler.start()
        self._scheduler = scheduler
        logger.info(
            "Background scheduler started: discovery every %d min, send every %d min",
            self._intervals[DISCOVERY_JOB],
            self._intervals[SEND_JOB],
        )

    def stop(self) -> None:
        """Stop the interval scheduler if running."""
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("Background scheduler stopped")


_follow_up_scheduler: FollowUpScheduler | None = None


def get_follow_up_scheduler() -> FollowUpScheduler:
    """Get the singleton follow-up scheduler."""
    global _follow_up_scheduler
    if _follow_up_scheduler is None:
        _follow_up_scheduler = FollowUpScheduler()
    return _follow_up_scheduler


async def start_scheduler() -> None:
    """Start the APScheduler background scheduler if enabled."""
    if not settings.ENABLE_SCHEDULER:
        logger.info("Background scheduler disabled (ENABLE_SCHEDULER != true)")
        return

    try:
        get_follow_up_scheduler().start()
    except Exception:
        logger.exception("Failed to start background scheduler")


async def stop_scheduler() -> None:
    """Stop the background scheduler if running."""
    if _follow_up_scheduler is not None:
        _follow_up_scheduler.stop()
