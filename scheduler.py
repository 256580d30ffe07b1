import logging
from typing import Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy.orm import Session

from config import get_settings
from database import SessionLocal
from recurrence import PostingRun, SubscriptionPostingEngine


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self, session_factory: Callable[[], Session] = SessionLocal) -> None:
        settings = get_settings()
        self.settings = settings
        self.engine = SubscriptionPostingEngine(session_factory)
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_job(self, source: str = "manual") -> Optional[PostingRun]:
        logger.info(f"scheduler_run: source={source}")
        run = self.engine.post_due_subscriptions()
        if run.skipped:
            return None
        logger.info(
            f"scheduler_run: source={source} due={run.due} processed={run.processed} "
            f"failed={run.failed} events_posted={run.events_posted}"
        )
        return run

    def start(self) -> None:
        self._run_job("startup")

        hour = self.settings.posting_hour
        minute = self.settings.posting_minute
        trigger = CronTrigger(hour=hour, minute=minute, timezone=self.settings.timezone)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=[f"daily_{hour:02d}:{minute:02d}"],
            id="subscription_posting_daily",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=3600,
        )

        self.scheduler.start()
        logger.info(
            f"Scheduler started with daily subscription posting at "
            f"{hour:02d}:{minute:02d} {self.settings.timezone}"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
