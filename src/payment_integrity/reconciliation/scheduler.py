"""Scheduled reconciliation and stuck-state sweeps."""

import logging
from datetime import datetime
from typing import Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from ..config import IntegritySettings
from ..database import DatabaseManager
from ..gateway import PaymentGateway
from ..integrity.stuck import StuckStateDetector, StuckStateSweep, StuckSweepReport
from .dispatch import RunDispatcher
from .models import ReconciliationRun, RunStatus, TriggeredBy
from .service import ReconciliationService, daily_window

logger = logging.getLogger(__name__)

DAILY_RECONCILIATION_JOB = "daily_reconciliation"
STUCK_SWEEP_JOB = "stuck_state_sweep"


class ReconciliationScheduler:
    """Runs the daily reconciliation and the periodic stuck sweep."""

    def __init__(
        self,
        db: DatabaseManager,
        gateway: PaymentGateway,
        settings: IntegritySettings,
        dispatcher: Optional[RunDispatcher] = None,
        detector: Optional[StuckStateDetector] = None,
    ):
        self.db = db
        self.gateway = gateway
        self.settings = settings
        self.dispatcher = dispatcher or RunDispatcher(
            settings.webhook_urls,
            secret=settings.webhook_secret,
            retry_attempts=settings.webhook_retry_attempts,
            retry_delay=settings.webhook_retry_delay,
        )
        self.detector = detector or StuckStateDetector()
        self.scheduler = AsyncIOScheduler(
            jobstores={"default": MemoryJobStore()},
            executors={"default": AsyncIOExecutor()},
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": 3600,
            },
            timezone=settings.reconciliation_timezone,
        )

    def setup_jobs(self) -> None:
        for job_id in (DAILY_RECONCILIATION_JOB, STUCK_SWEEP_JOB):
            if self.scheduler.get_job(job_id):
                self.scheduler.remove_job(job_id)

        self.scheduler.add_job(
            self.run_daily_reconciliation,
            trigger=CronTrigger(
                hour=self.settings.reconciliation_hour,
                minute=self.settings.reconciliation_minute,
                timezone=self.settings.reconciliation_timezone,
            ),
            id=DAILY_RECONCILIATION_JOB,
            name="Daily Payment Reconciliation",
        )
        self.scheduler.add_job(
            self.run_stuck_sweep,
            trigger=IntervalTrigger(minutes=self.settings.stuck_sweep_interval_minutes),
            id=STUCK_SWEEP_JOB,
            name="Stuck State Sweep",
        )
        logger.info(
            f"Scheduled daily reconciliation at {self.settings.reconciliation_hour:02d}:"
            f"{self.settings.reconciliation_minute:02d} {self.settings.reconciliation_timezone} "
            f"and stuck sweep every {self.settings.stuck_sweep_interval_minutes} minutes"
        )

    def start(self) -> None:
        self.setup_jobs()
        self.scheduler.start()
        logger.info("Reconciliation scheduler started")

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Reconciliation scheduler stopped")

    async def run_daily_reconciliation(self, now: Optional[datetime] = None) -> ReconciliationRun:
        """Reconcile yesterday and dispatch the run.

        A window that already has a completed unfiltered run is not run again.
        """
        window_start, window_end = daily_window(now)
        async with self.db.session() as session:
            service = ReconciliationService(session, self.gateway, self.settings)
            existing = await service.latest_for_window(window_start, window_end)
            if existing is not None and existing.status == RunStatus.COMPLETED:
                logger.info(
                    f"Window {window_start.date()} already reconciled by run {existing.run_id}; skipping"
                )
                return existing
            run = await service.reconcile(window_start, window_end, triggered_by=TriggeredBy.SCHEDULER)

        await self.dispatcher.dispatch(run)
        return run

    async def run_stuck_sweep(self, now: Optional[datetime] = None) -> StuckSweepReport:
        async with self.db.session() as session:
            return await StuckStateSweep(session, self.detector).run(now)
