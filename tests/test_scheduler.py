"""Tests for the reconciliation scheduler jobs."""

from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from payment_integrity.config import IntegritySettings
from payment_integrity.database import DatabaseManager, PaymentRecordRepository
from payment_integrity.gateway import SimulatorGateway
from payment_integrity.integrity import PaymentState
from payment_integrity.reconciliation import ReconciliationCategory, RunStatus, TriggeredBy
from payment_integrity.reconciliation.scheduler import (
    DAILY_RECONCILIATION_JOB,
    STUCK_SWEEP_JOB,
    ReconciliationScheduler,
)

NOW = datetime(2024, 1, 16, 23, 0, 0)


@pytest.fixture
async def db():
    manager = DatabaseManager("sqlite+aiosqlite:///:memory:")
    await manager.initialize()
    yield manager
    await manager.shutdown()


@pytest.fixture
def settings():
    return IntegritySettings(
        database_url="sqlite+aiosqlite:///:memory:",
        gateway="simulator",
        reconciliation_hour=23,
        reconciliation_minute=30,
        stuck_sweep_interval_minutes=5,
    )


@pytest.fixture
def dispatcher():
    mock = MagicMock()
    mock.dispatch = AsyncMock(return_value={})
    return mock


@pytest.fixture
def gateway():
    return SimulatorGateway()


@pytest.fixture
def scheduler(db, gateway, settings, dispatcher):
    return ReconciliationScheduler(db, gateway, settings, dispatcher=dispatcher)


class TestJobs:
    """Tests for job registration."""

    async def test_setup_jobs(self, scheduler):
        scheduler.setup_jobs()

        daily = scheduler.scheduler.get_job(DAILY_RECONCILIATION_JOB)
        sweep = scheduler.scheduler.get_job(STUCK_SWEEP_JOB)
        assert daily is not None
        assert sweep is not None
        fields = {f.name: str(f) for f in daily.trigger.fields}
        assert fields["hour"] == "23"
        assert fields["minute"] == "30"
        assert sweep.trigger.interval == timedelta(minutes=5)

    async def test_setup_jobs_is_repeatable(self, scheduler):
        scheduler.setup_jobs()
        scheduler.setup_jobs()
        assert len(scheduler.scheduler.get_jobs()) == 2

    async def test_start_and_shutdown(self, scheduler):
        scheduler.start()
        assert scheduler.scheduler.running
        scheduler.shutdown()
        assert not scheduler.scheduler.running


class TestDailyReconciliation:
    """Tests for the daily reconciliation job."""

    async def test_reconciles_yesterday(self, scheduler, db, gateway, dispatcher):
        confirmed_at = datetime(2024, 1, 15, 14, 0, 0)
        async with db.session() as session:
            payment = await PaymentRecordRepository(session).create(
                external_request_ref="ws_CO_DAILY",
                amount_expected=250000,
                payer_identifier="254712345678",
                initiated_at=confirmed_at - timedelta(minutes=1),
            )
            payment.status = PaymentState.CONFIRMED.value
            payment.external_transaction_ref = "QKJDAILY"
            payment.amount_confirmed = 250000
            payment.result_code = 0
            payment.confirmed_at = confirmed_at
        gateway.add_transaction("ws_CO_DAILY", 250000, transaction_ref="QKJDAILY", result_code=0)

        run = await scheduler.run_daily_reconciliation(now=NOW)

        assert run.triggered_by == TriggeredBy.SCHEDULER
        assert run.status == RunStatus.COMPLETED
        assert run.window_start == datetime(2024, 1, 15)
        assert run.summary.total_in_window == 1
        # No session is linked, so the confirmed payment is orphaned.
        assert run.items[0].category == ReconciliationCategory.DISCREPANCY
        dispatcher.dispatch.assert_awaited_once_with(run)

    async def test_completed_window_is_not_rerun(self, scheduler, dispatcher):
        first = await scheduler.run_daily_reconciliation(now=NOW)
        second = await scheduler.run_daily_reconciliation(now=NOW + timedelta(minutes=5))

        assert second.run_id == first.run_id
        assert dispatcher.dispatch.await_count == 1


class TestStuckSweep:
    """Tests for the stuck sweep job."""

    async def test_sweep_reports_stuck_payment(self, scheduler, db):
        entered = datetime(2024, 1, 16, 20, 0, 0)
        async with db.session() as session:
            payment = await PaymentRecordRepository(session).create(
                external_request_ref="ws_CO_STUCK",
                amount_expected=250000,
                status=PaymentState.PROCESSING,
            )
            payment.state_entered_at = entered

        report = await scheduler.run_stuck_sweep(now=NOW)

        assert report.payments_checked == 1
        assert [r.entity_id for r in report.stuck] == [payment.id]
