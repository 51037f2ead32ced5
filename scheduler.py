import logging
from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from config import get_settings
from database import session_scope
from services import MonthlyReviewService, TextGenerator


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

MONTHLY_REVIEW_GRACE_SECS = 3600


def scheduled_review_day(now: datetime, grace_secs: int = MONTHLY_REVIEW_GRACE_SECS) -> date:
    """Day the month-end job was due on, for runs delayed up to ``grace_secs``."""
    return (now - timedelta(seconds=grace_secs)).date()


class SchedulerManager:
    def __init__(self, generator: TextGenerator) -> None:
        settings = get_settings()
        self.generator = generator
        self.enabled = settings.review_job_enabled
        self.timezone = settings.timezone
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_job(
        self, source: str = "manual", now: Optional[datetime] = None
    ) -> Optional[dict[str, int]]:
        now = now or datetime.now(ZoneInfo(self.timezone))
        review_day = scheduled_review_day(now)
        logger.info(f"scheduler_run: source={source} review_day={review_day.isoformat()}")
        with session_scope() as session:
            service = MonthlyReviewService(session, self.generator)
            summary = service.generate_for_all_users(review_day)
        logger.info(
            f"scheduler_run: source={source} "
            + " ".join(f"{k}={v}" for k, v in summary.items())
        )
        return summary

    def start(self) -> None:
        if not self.enabled:
            logger.info("Scheduler disabled, monthly review job not registered")
            return

        # Last day of every month, shortly before the month closes.
        trigger = CronTrigger(day="last", hour=23, minute=59)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["month_end_23:59"],
            id="monthly_reviews",
            replace_existing=True,
            misfire_grace_time=MONTHLY_REVIEW_GRACE_SECS,
        )

        self.scheduler.start()
        logger.info("Scheduler started with month-end review job at 23:59")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
