import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from database import session_scope
from errors import AppError
from periods import current_year_month
from quickbooks import QuickBooksClient
from services import BudgetService
from tokens import TokenManager


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self, client: Optional[QuickBooksClient] = None) -> None:
        settings = get_settings()
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)
        self.client = client

    def _client(self) -> QuickBooksClient:
        if self.client is None:
            self.client = QuickBooksClient()
        return self.client

    def ensure_budgets_job(self, source: str = "manual") -> None:
        client = self._client()
        if not client.configured:
            logger.info("scheduler_budgets_skipped: source=%s reason=not_configured", source)
            return
        year_month = current_year_month()
        with session_scope() as session:
            outcomes = BudgetService(session, client).ensure_budgets_for_month(year_month)
        counts: dict[str, int] = {}
        for outcome in outcomes:
            counts[outcome.status] = counts.get(outcome.status, 0) + 1
        logger.info(
            "scheduler_budgets: source=%s year_month=%s %s",
            source,
            year_month,
            " ".join(f"{k}={v}" for k, v in sorted(counts.items())),
        )

    def refresh_tokens_job(self, source: str = "manual") -> None:
        client = self._client()
        if not client.configured:
            return
        refreshed = failed = 0
        with session_scope() as session:
            manager = TokenManager(session, client)
            for realm in manager.realms_due_for_refresh():
                try:
                    manager.refresh_realm(realm)
                    refreshed += 1
                except AppError as exc:
                    session.rollback()
                    failed += 1
                    logger.warning(
                        "scheduler_token_refresh_failed: realm=%s code=%s error=%s",
                        realm.id,
                        exc.code,
                        exc,
                    )
        logger.info(
            "scheduler_tokens: source=%s refreshed=%s failed=%s", source, refreshed, failed
        )

    def _safe(self, job, source: str) -> None:
        try:
            job(source)
        except Exception:
            logger.exception("scheduler_job_failed: job=%s source=%s", job.__name__, source)

    def start(self) -> None:
        self.scheduler.add_job(
            self._safe,
            CronTrigger(hour=2, minute=30),
            args=[self.ensure_budgets_job, "nightly_02:30"],
            id="budgets_nightly",
            replace_existing=True,
            misfire_grace_time=3600,
        )
        self.scheduler.add_job(
            self._safe,
            IntervalTrigger(hours=1),
            args=[self.refresh_tokens_job, "hourly"],
            id="tokens_hourly",
            replace_existing=True,
            misfire_grace_time=300,
        )
        self.scheduler.start()
        logger.info("Scheduler started with nightly budgets and hourly token refresh")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
