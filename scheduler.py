import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from database import LedgerStore
from recurrence import AutopayEngine, CatchUpResult


logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self, store: LedgerStore, timezone: Optional[str] = None) -> None:
        self.store = store
        self.scheduler = BackgroundScheduler(
            timezone=timezone or get_settings().timezone
        )

    def _run_job(self, source: str = "manual") -> CatchUpResult:
        logger.info(f"scheduler_run: source={source}")
        with self.store.session_scope() as session:
            result = AutopayEngine(session).process_all_due()
        logger.info(
            f"scheduler_run: source={source} occurrences_posted={result.posted} "
            f"plans_advanced={result.plans_advanced} "
            f"plans_failed={len(result.failed_plan_ids)}"
        )
        return result

    def start(self) -> None:
        self._run_job("startup")

        trigger = CronTrigger(hour=3, minute=15)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["daily_03:15"],
            id="autopay_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        trigger = IntervalTrigger(hours=1)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["hourly_safety_net"],
            id="autopay_hourly_safety",
            replace_existing=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info("Scheduler started with daily 03:15 and hourly safety net")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
