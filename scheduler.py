import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from database import session_scope
from services import RecurringBillService


logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self) -> None:
        settings = get_settings()
        self.scan_minutes = settings.bill_scan_minutes
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_job(self, source: str = "manual") -> int:
        logger.info(f"scheduler_run: source={source}")
        with session_scope() as session:
            count = RecurringBillService(session).pay_due()
        logger.info(f"scheduler_run: source={source} bills_paid={count}")
        return count

    def start(self) -> None:
        self._run_job("startup")

        trigger = IntervalTrigger(minutes=self.scan_minutes)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["bill_scan"],
            id="recurring_bills",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info(f"Scheduler started with bill scan every {self.scan_minutes} minutes")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
