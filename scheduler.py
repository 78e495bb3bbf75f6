import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import select

from config import get_settings
from database import session_scope
from models import BankAccount
from services import CategorizationService, TransactionService


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def run_categorization_sweep(session, batch_size: int) -> int:
    """Apply the keyword rules to every family's uncategorized transactions."""
    family_ids = session.scalars(
        select(BankAccount.family_id)
        .where(BankAccount.deleted_at.is_(None))
        .distinct()
        .order_by(BankAccount.family_id)
    ).all()

    total = 0
    for family_id in family_ids:
        service = CategorizationService(session, family_id)
        transactions = TransactionService(session, family_id)
        after_id = 0
        while True:
            chunk = transactions.uncategorized_ids(after_id=after_id, limit=batch_size)
            if not chunk:
                break
            total += service.apply_category_rules(chunk).categorized_count
            after_id = chunk[-1]
    return total


class SchedulerManager:
    def __init__(self) -> None:
        settings = get_settings()
        self.settings = settings
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_job(self, source: str = "manual") -> None:
        logger.info(f"scheduler_run: source={source}")
        with session_scope() as session:
            count = run_categorization_sweep(session, self.settings.categorize_batch_size)
            logger.info(f"scheduler_run: source={source} transactions_categorized={count}")

    def start(self) -> None:
        if not self.settings.categorize_sweep_enabled:
            logger.info("Scheduler disabled: categorization sweep is off")
            return

        self._run_job("startup")

        trigger = CronTrigger(hour=3, minute=15)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["daily_03:15"],
            id="categorize_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        trigger = IntervalTrigger(hours=1)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["hourly_safety_net"],
            id="categorize_hourly_safety",
            replace_existing=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info("Scheduler started with daily 03:15 and hourly safety net")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
