"""Service layer for reconciliation runs."""

import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from ..config import IntegritySettings
from ..database import (
    PaymentRecord,
    PaymentRecordRepository,
    ReconciliationRunRepository,
    SessionRecord,
)
from ..gateway import PaymentGateway
from .lookup import GatewayLookup
from .models import (
    LocalPayment,
    ReconciliationFilters,
    ReconciliationRun,
    RunStatus,
    TriggeredBy,
    to_naive_utc,
)
from .reconciler import Reconciler, find_duplicate_refs
from .report import ReportGenerator

logger = logging.getLogger(__name__)


def daily_window(now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """The whole of yesterday, from 00:00:00 to 23:59:59.999999."""
    now = now or datetime.utcnow()
    today = now.replace(hour=0, minute=0, second=0, microsecond=0)
    start = today - timedelta(days=1)
    return start, today - timedelta(microseconds=1)


def snapshot_payment(payment: PaymentRecord, session: Optional[SessionRecord]) -> LocalPayment:
    return LocalPayment(
        payment_id=payment.id,
        session_id=session.id if session else None,
        session_status=session.status if session else None,
        external_request_ref=payment.external_request_ref,
        external_transaction_ref=payment.external_transaction_ref,
        status=payment.status,
        amount_expected=payment.amount_expected,
        amount_confirmed=payment.amount_confirmed,
        result_code=payment.result_code,
        payer=payment.masked_payer,
        initiated_at=payment.initiated_at,
        confirmed_at=payment.confirmed_at,
    )


class ReconciliationService:
    """Runs, stores and renders reconciliation runs."""

    def __init__(
        self,
        session: AsyncSession,
        gateway: PaymentGateway,
        settings: Optional[IntegritySettings] = None,
    ):
        """Initialize the reconciliation service.

        Args:
            session: Async database session.
            gateway: Gateway queried for the external side of each payment.
            settings: Timeouts, concurrency and grace period. Defaults apply if omitted.
        """
        self.session = session
        self.settings = settings or IntegritySettings()
        self.payment_repo = PaymentRecordRepository(session)
        self.run_repo = ReconciliationRunRepository(session)
        self.lookup = GatewayLookup(
            gateway,
            timeout_seconds=self.settings.gateway_lookup_timeout_seconds,
            max_concurrency=self.settings.max_concurrency,
        )
        self.reconciler = Reconciler(
            pending_grace=timedelta(minutes=self.settings.pending_grace_minutes),
        )

    async def fetch_local_payments(
        self,
        window_start: datetime,
        window_end: datetime,
        filters: Optional[ReconciliationFilters] = None,
    ) -> List[LocalPayment]:
        rows = await self.payment_repo.list_in_window(
            window_start,
            window_end,
            client_id=filters.client_id if filters else None,
            provider_id=filters.provider_id if filters else None,
        )
        payments = [snapshot_payment(payment, session) for payment, session in rows]
        logger.info(f"Fetched {len(payments)} local payments for {window_start} - {window_end}")
        return payments

    async def reconcile(
        self,
        window_start: datetime,
        window_end: datetime,
        filters: Optional[ReconciliationFilters] = None,
        triggered_by: TriggeredBy = TriggeredBy.ADMIN,
        cancel_event: Optional[asyncio.Event] = None,
        run_id: Optional[str] = None,
    ) -> ReconciliationRun:
        """Reconcile one window and persist the run.

        Lookup failures are recorded per item. When ``cancel_event`` is set,
        or the run budget elapses, no further lookups are issued and the run
        is stored as cancelled with whatever was already examined.

        Raises:
            ValueError: If the window is inverted.
        """
        window_start, window_end = to_naive_utc(window_start), to_naive_utc(window_end)
        if window_end < window_start:
            raise ValueError("window_end must not be before window_start")
        if filters is not None and filters.is_empty:
            filters = None

        run_id = run_id or str(uuid.uuid4())
        cancel_event = cancel_event or asyncio.Event()
        executed_at = datetime.utcnow()

        logger.info(
            f"Starting reconciliation run {run_id} ({triggered_by.value}) "
            f"for {window_start} - {window_end}"
        )

        payments = await self.fetch_local_payments(window_start, window_end, filters)
        duplicate_refs = find_duplicate_refs(payments)
        shared = await self.payment_repo.shared_transaction_refs(
            p.external_transaction_ref for p in payments if p.external_transaction_ref
        )
        duplicate_refs.update(shared.keys())

        to_lookup = [p for p in payments if not self.reconciler.within_grace(p, executed_at)]

        loop = asyncio.get_running_loop()
        budget = loop.call_later(self.settings.run_budget_seconds, cancel_event.set)
        try:
            outcomes = await self.lookup.lookup_all(to_lookup, cancel_event)
        finally:
            budget.cancel()

        items = self.reconciler.reconcile(payments, outcomes, duplicate_refs, executed_at)
        summary = self.reconciler.summarize(items, total_in_window=len(payments))
        status = RunStatus.CANCELLED if cancel_event.is_set() else RunStatus.COMPLETED

        run = ReconciliationRun(
            run_id=run_id,
            window_start=window_start,
            window_end=window_end,
            executed_at=executed_at,
            completed_at=datetime.utcnow(),
            triggered_by=triggered_by,
            status=status,
            filters=filters,
            items=items,
            summary=summary,
        )
        await self.run_repo.save(run)
        await self.session.commit()

        if status == RunStatus.CANCELLED:
            logger.warning(
                f"Reconciliation run {run_id} cancelled after examining "
                f"{summary.examined} of {summary.total_in_window} payments"
            )
        else:
            logger.info(f"Reconciliation run {run_id} completed")
        return run

    async def get_run(self, run_id: str) -> Optional[ReconciliationRun]:
        record = await self.run_repo.get_by_id(run_id)
        return ReconciliationRun.from_record(record) if record else None

    async def latest_for_window(
        self,
        window_start: datetime,
        window_end: datetime,
    ) -> Optional[ReconciliationRun]:
        record = await self.run_repo.get_latest_for_window(
            to_naive_utc(window_start), to_naive_utc(window_end)
        )
        return ReconciliationRun.from_record(record) if record else None

    async def list_runs(self, limit: int = 20) -> List[ReconciliationRun]:
        return [ReconciliationRun.from_record(r) for r in await self.run_repo.list_recent(limit)]

    def generate_report(self, run: ReconciliationRun, format: str = "json") -> str:
        """Render a run.

        Args:
            run: The run to render.
            format: One of 'json', 'csv', 'text', 'detailed_text'.

        Returns:
            Formatted report string.
        """
        generator = ReportGenerator(run)

        if format == "json":
            return generator.to_json()
        elif format == "csv":
            return generator.to_csv()
        elif format == "text":
            return generator.to_summary_text()
        elif format == "detailed_text":
            return generator.to_detailed_text()
        else:
            raise ValueError(f"Unsupported report format: {format}")
