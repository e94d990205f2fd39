"""Cron scheduling for the import job (APScheduler BackgroundScheduler).

One background thread evaluates the cron expression and calls the job;
overlapping fires are coalesced and never run twice at once.
"""
import logging
from datetime import datetime
from typing import Any, Callable, Optional

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED, EVENT_JOB_MISSED, JobEvent
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from dumpsync.core.errors import ConfigurationError

logger = logging.getLogger(__name__)

JOB_ID = "scheduled_import"


def parse_schedule(expression: str, timezone: str = "UTC") -> CronTrigger:
    """Standard 5-field crontab expression -> CronTrigger."""
    try:
        return CronTrigger.from_crontab(expression.strip(), timezone=timezone)
    except (ValueError, TypeError, AttributeError) as e:
        raise ConfigurationError(f"invalid schedule '{expression}': {e}") from e


def _on_job_event(event: JobEvent) -> None:
    """Log scheduler job events."""
    if event.code == EVENT_JOB_MISSED:
        logger.warning("[Scheduler] Job %s missed its run time", event.job_id)
    elif getattr(event, "exception", None):
        logger.error("[Scheduler] Job %s failed: %s", event.job_id, event.exception)
    else:
        logger.debug("[Scheduler] Job %s executed", event.job_id)


class ImportScheduler:
    """Owns the BackgroundScheduler running the import tick."""

    def __init__(self, job: Callable[[], Any], schedule: str, timezone: str = "UTC"):
        self.job = job
        self.schedule = schedule
        self.timezone = timezone
        self._scheduler: Optional[BackgroundScheduler] = None

    @property
    def running(self) -> bool:
        scheduler = self._scheduler
        return scheduler is not None and scheduler.running

    def start(self) -> None:
        """Parse the schedule and start the background thread.

        Raises ConfigurationError before anything is scheduled if the
        expression is invalid.
        """
        trigger = parse_schedule(self.schedule, self.timezone)
        if self.running:
            logger.warning("[Scheduler] Already running")
            return

        scheduler = BackgroundScheduler(timezone=self.timezone)
        scheduler.add_listener(_on_job_event, EVENT_JOB_EXECUTED | EVENT_JOB_ERROR | EVENT_JOB_MISSED)
        scheduler.add_job(
            self.job,
            trigger=trigger,
            id=JOB_ID,
            name=f"Dump import ({self.schedule})",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info("[Scheduler] Started, schedule '%s', next run %s", self.schedule, self.next_run_time())

    def shutdown(self) -> None:
        """Stop ticking without waiting for an in-flight job."""
        scheduler, self._scheduler = self._scheduler, None
        if scheduler is not None and scheduler.running:
            scheduler.shutdown(wait=False)
            logger.info("[Scheduler] Stopped")

    def next_run_time(self) -> Optional[datetime]:
        # shutdown() may clear the attribute from another thread
        scheduler = self._scheduler
        if scheduler is None or not scheduler.running:
            return None
        job = scheduler.get_job(JOB_ID)
        return job.next_run_time if job else None

    def get_status(self) -> dict[str, Any]:
        next_run = self.next_run_time()
        return {
            "running": self.running,
            "schedule": self.schedule,
            "next_run": next_run.isoformat() if next_run else None,
        }
