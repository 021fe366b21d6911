import logging

from apscheduler.events import EVENT_JOB_ERROR, JobExecutionEvent
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from database import session_scope
from periods import Period, resolve_period
from services import apply_recurring_for_all_groups

logger = logging.getLogger(__name__)


class SchedulerManager:
    """Keeps recurring provisions materialized for the current month."""

    def __init__(self) -> None:
        settings = get_settings()
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)
        self.scheduler.add_listener(self._on_job_error, EVENT_JOB_ERROR)

    @staticmethod
    def _on_job_error(event: JobExecutionEvent) -> None:
        logger.error(f"scheduler_job_failed: job={event.job_id} error={event.exception!r}")

    def apply_recurring(self, period: Period, source: str = "manual") -> int:
        logger.info(
            f"scheduler_run: source={source} period={period.year}-{period.month:02d}"
        )
        with session_scope() as session:
            count = apply_recurring_for_all_groups(session, period)
        logger.info(f"scheduler_run: source={source} provisions_created={count}")
        return count

    def _run_job(self, source: str) -> None:
        self.apply_recurring(resolve_period(), source)

    def start(self) -> None:
        self._run_job("startup")

        self.scheduler.add_job(
            self._run_job,
            CronTrigger(hour=3, minute=15),
            args=["daily_03:15"],
            id="recurring_provisions_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )
        self.scheduler.add_job(
            self._run_job,
            IntervalTrigger(hours=1),
            args=["hourly_safety_net"],
            id="recurring_provisions_hourly",
            replace_existing=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info("Scheduler started with daily 03:15 and hourly safety net")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
