import logging
from datetime import date, datetime
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from config import get_settings
from database import session_scope
from services import RolloverReport, RolloverService


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self) -> None:
        settings = get_settings()
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_monthly(
        self, source: str = "manual", now: Optional[datetime] = None
    ) -> RolloverReport:
        logger.info(f"scheduler_run: source={source}")
        with session_scope() as session:
            report = RolloverService(session).run_scheduled(now)
        if report.skipped:
            logger.info(f"scheduler_run: source={source} skipped=not_last_day_of_month")
        else:
            logger.info(
                f"scheduler_run: source={source} period={report.period} "
                f"ok={report.success_count} failed={report.failure_count}"
            )
        return report

    def _run_catch_up(self, today: Optional[date] = None) -> RolloverReport:
        with session_scope() as session:
            report = RolloverService(session).run_startup_catch_up(today)
        if report.success_count or report.failure_count:
            logger.info(
                f"scheduler_catch_up: period={report.period} "
                f"ok={report.success_count} failed={report.failure_count}"
            )
        else:
            logger.info("scheduler_catch_up: all users up to date")
        return report

    def start(self) -> None:
        try:
            self._run_catch_up()
        except Exception:
            logger.exception("scheduler_catch_up: failed, continuing with cron job")

        # Days 28-31 cover every month end; the job itself checks for the last day.
        trigger = CronTrigger(day="28-31", hour=23, minute=59)
        self.scheduler.add_job(
            self._run_monthly,
            trigger,
            args=["monthly_23:59"],
            id="monthly_rollover",
            replace_existing=True,
            misfire_grace_time=3600,
            max_instances=1,
            coalesce=True,
        )

        self.scheduler.start()
        logger.info("Scheduler started with monthly rollover at 23:59 on days 28-31")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
