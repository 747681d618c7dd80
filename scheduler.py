import logging
from datetime import date
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from config import get_settings
from database import session_scope
from recurrence import ProcessResult, RecurringEngine

logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self) -> None:
        settings = get_settings()
        self.settings = settings
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def run_once(
        self, source: str = "manual", today: Optional[date] = None
    ) -> ProcessResult:
        logger.info(f"scheduler_run: source={source}")
        with session_scope() as session:
            result = RecurringEngine(session).process_due(today)
        logger.info(
            f"scheduler_run: source={source} processed={result.processed} "
            f"failed={result.failed} skipped={result.skipped}"
        )
        return result

    def _run_job(self, source: str) -> None:
        try:
            self.run_once(source)
        except Exception:
            # Keep the scheduler alive; the next tick retries everything still due.
            logger.exception(f"scheduler_run_failed: source={source}")

    def start(self) -> None:
        hour = self.settings.scheduler_hour
        minute = self.settings.scheduler_minute
        if self.settings.run_on_startup:
            self._run_job("startup")

        self.scheduler.add_job(
            self._run_job,
            CronTrigger(hour=hour, minute=minute),
            args=[f"daily_{hour:02d}:{minute:02d}"],
            id="recurring_daily",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=3600,
        )
        self.scheduler.start()
        logger.info(f"Scheduler started with daily {hour:02d}:{minute:02d} run")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
