"""Tests for ReconciliationService against the database and the simulator."""

import asyncio
import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from payment_integrity.config import IntegritySettings, MpesaSettings
from payment_integrity.database import PaymentRecordRepository
from payment_integrity.gateway import MpesaGateway, SimulatorGateway
from payment_integrity.integrity import PaymentState
from payment_integrity.reconciliation import (
    IssueCode,
    ReconciliationCategory,
    ReconciliationFilters,
    ReconciliationRequest,
    ReconciliationService,
    RunStatus,
    TriggeredBy,
    daily_window,
)


def _window():
    now = datetime.utcnow()
    return now - timedelta(hours=1), now + timedelta(hours=1)


async def insert_confirmed(db_session, request_ref, transaction_ref, confirmed_at, amount=250000):
    """Write a confirmed payment directly, bypassing the write path."""
    payment = await PaymentRecordRepository(db_session).create(
        external_request_ref=request_ref,
        amount_expected=amount,
        payer_identifier="254700000001",
        initiated_at=confirmed_at - timedelta(minutes=1),
    )
    payment.status = PaymentState.CONFIRMED.value
    payment.external_transaction_ref = transaction_ref
    payment.amount_confirmed = amount
    payment.result_code = 0
    payment.confirmed_at = confirmed_at
    await db_session.commit()
    return payment


def daraja_gateway(failing_refs):
    """An M-Pesa gateway whose STK query answers HTML 502 pages for ``failing_refs``."""
    settings = MpesaSettings(
        consumer_key="key",
        consumer_secret="secret",
        shortcode="174379",
        passkey="passkey",
        callback_url="https://example.com/webhooks/gateway",
    )

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/oauth/v1/generate":
            return httpx.Response(200, json={"access_token": "token-123"})
        request_ref = json.loads(request.content)["CheckoutRequestID"]
        if request_ref in failing_refs:
            return httpx.Response(
                502, text="<html>Bad Gateway</html>", headers={"content-type": "text/html"}
            )
        return httpx.Response(200, json={
            "CheckoutRequestID": request_ref,
            "ResultCode": "0",
            "ResultDesc": "The service request is processed successfully.",
        })

    client = httpx.AsyncClient(base_url=settings.base_url, transport=httpx.MockTransport(handler))
    return MpesaGateway(settings, client=client)


@pytest.fixture
def settings():
    return IntegritySettings(database_url="sqlite+aiosqlite:///:memory:")


@pytest.fixture
def service(db_session, simulator, settings):
    return ReconciliationService(db_session, simulator, settings)


class TestDailyWindow:
    """Tests for daily_window."""

    def test_covers_yesterday(self):
        start, end = daily_window(datetime(2024, 1, 16, 23, 0, 0))
        assert start == datetime(2024, 1, 15, 0, 0, 0)
        assert end == datetime(2024, 1, 15, 23, 59, 59, 999999)


class TestReconcile:
    """Tests for ReconciliationService.reconcile."""

    async def test_matched_payment(self, service, book_session):
        record, payment = await book_session()
        start, end = _window()

        run = await service.reconcile(start, end)

        assert run.status == RunStatus.COMPLETED
        assert run.triggered_by == TriggeredBy.ADMIN
        assert run.summary.matched == 1
        assert run.summary.total_confirmed_amount == 250000
        item = run.items[0]
        assert item.payment_id == payment.id
        assert item.session_id == record.id
        assert item.category == ReconciliationCategory.MATCHED
        assert item.payer == "***5678"

    async def test_one_unreachable_lookup_in_fifty(self, service, simulator, book_session):
        payments = []
        for _ in range(50):
            _, payment = await book_session()
            payments.append(payment)
        simulator.make_unreachable(payments[17].external_request_ref)
        start, end = _window()

        run = await service.reconcile(start, end)

        assert run.status == RunStatus.COMPLETED
        assert run.summary.total_in_window == 50
        assert run.summary.matched == 49
        assert run.summary.unmatched == 1
        unmatched = run.items_in(ReconciliationCategory.UNMATCHED)
        assert unmatched[0].payment_id == payments[17].id
        assert unmatched[0].issues == [IssueCode.GATEWAY_UNREACHABLE]

    async def test_html_error_page_fails_only_its_item(self, db_session, settings, book_session):
        """Test that a proxy's HTML 502 for one lookup does not abort the run."""
        _, failing = await book_session()
        _, answered = await book_session()
        gateway = daraja_gateway({failing.external_request_ref})
        service = ReconciliationService(db_session, gateway, settings)
        start, end = _window()

        run = await service.reconcile(start, end)
        await gateway.aclose()

        assert run.status == RunStatus.COMPLETED
        items = {item.payment_id: item for item in run.items}
        assert items[failing.id].category == ReconciliationCategory.UNMATCHED
        assert items[failing.id].issues == [IssueCode.GATEWAY_UNREACHABLE]
        assert items[answered.id].category == ReconciliationCategory.MATCHED

    async def test_unexpected_gateway_error_fails_only_its_item(
        self, service, simulator, book_session, monkeypatch
    ):
        _, broken = await book_session()
        _, answered = await book_session()
        original = simulator.query_transaction_status

        async def query(external_request_ref, external_transaction_ref=None):
            if external_request_ref == broken.external_request_ref:
                raise RuntimeError("unexpected payload")
            return await original(external_request_ref, external_transaction_ref)

        monkeypatch.setattr(simulator, "query_transaction_status", query)
        start, end = _window()

        run = await service.reconcile(start, end)

        assert run.status == RunStatus.COMPLETED
        items = {item.payment_id: item for item in run.items}
        assert items[broken.id].issues == [IssueCode.GATEWAY_UNREACHABLE]
        assert items[answered.id].category == ReconciliationCategory.MATCHED

    async def test_slow_lookup_times_out(self, db_session, simulator, book_session):
        settings = IntegritySettings(
            gateway_lookup_timeout_seconds=0.05, run_budget_seconds=5.0, max_concurrency=4
        )
        service = ReconciliationService(db_session, simulator, settings)
        _, slow = await book_session()
        await book_session()
        simulator.make_slow(slow.external_request_ref, 1.0)
        start, end = _window()

        run = await service.reconcile(start, end)

        assert run.status == RunStatus.COMPLETED
        assert run.summary.matched == 1
        assert run.items_in(ReconciliationCategory.UNMATCHED)[0].payment_id == slow.id

    async def test_amount_mismatch(self, db_session, service, simulator):
        confirmed_at = datetime.utcnow()
        payment = await insert_confirmed(db_session, "ws_CO_AMT", "TXNAMT", confirmed_at, amount=250050)
        simulator.add_transaction("ws_CO_AMT", 250000, transaction_ref="TXNAMT", result_code=0)
        start, end = _window()

        run = await service.reconcile(start, end)

        item = run.items[0]
        assert item.payment_id == payment.id
        assert item.category == ReconciliationCategory.DISCREPANCY
        assert IssueCode.AMOUNT_MISMATCH in item.issues
        assert item.amount_confirmed == 250050
        assert item.external_amount == 250000

    async def test_duplicate_transaction_refs(self, db_session, service, simulator):
        confirmed_at = datetime.utcnow()
        first = await insert_confirmed(db_session, "ws_CO_D1", "TXN-DUP", confirmed_at)
        second = await insert_confirmed(db_session, "ws_CO_D2", "TXN-DUP", confirmed_at)
        simulator.add_transaction("ws_CO_D1", 250000, transaction_ref="TXN-DUP", result_code=0)
        start, end = _window()

        run = await service.reconcile(start, end)

        assert {item.payment_id for item in run.items} == {first.id, second.id}
        for item in run.items:
            assert item.category == ReconciliationCategory.DISCREPANCY
            assert IssueCode.DUPLICATE_TRANSACTION in item.issues

    async def test_duplicate_outside_window_is_detected(self, db_session, service, simulator):
        now = datetime.utcnow()
        await insert_confirmed(db_session, "ws_CO_OLD", "TXN-SHARED", now - timedelta(days=3))
        current = await insert_confirmed(db_session, "ws_CO_NEW", "TXN-SHARED", now)
        simulator.add_transaction("ws_CO_NEW", 250000, transaction_ref="TXN-SHARED", result_code=0)
        start, end = _window()

        run = await service.reconcile(start, end)

        assert [item.payment_id for item in run.items] == [current.id]
        assert IssueCode.DUPLICATE_TRANSACTION in run.items[0].issues

    async def test_recent_unconfirmed_payment_is_pending_without_lookup(
        self, service, simulator, book_session
    ):
        _, payment = await book_session(confirm=False)
        start, end = _window()

        run = await service.reconcile(start, end)

        assert simulator.lookups == 0
        assert run.summary.pending == 1
        assert run.items[0].issues == [IssueCode.AWAITING_CONFIRMATION]

    async def test_filters(self, service, book_session):
        await book_session(client_id="client-1")
        record, _ = await book_session(client_id="client-2")
        start, end = _window()

        run = await service.reconcile(start, end, filters=ReconciliationFilters(client_id="client-2"))

        assert [item.session_id for item in run.items] == [record.id]
        assert run.filters.client_id == "client-2"

    async def test_empty_filters_are_dropped(self, service, book_session):
        await book_session()
        start, end = _window()

        run = await service.reconcile(start, end, filters=ReconciliationFilters())

        assert run.filters is None

    async def test_payments_outside_window_are_ignored(self, service, book_session):
        await book_session()
        now = datetime.utcnow()

        run = await service.reconcile(now - timedelta(days=2), now - timedelta(days=1))

        assert run.items == []
        assert run.summary.total_in_window == 0
        assert run.summary.has_issues is False

    async def test_inverted_window(self, service):
        now = datetime.utcnow()
        with pytest.raises(ValueError):
            await service.reconcile(now, now - timedelta(hours=1))

    async def test_offset_window_is_converted_to_utc(self, db_session, service):
        """Test that a +03:00 window includes a payment confirmed at 22:00 UTC the day before."""
        payment = await insert_confirmed(db_session, "ws_CO_EAT", "TXNEAT", datetime(2026, 1, 1, 22, 0))
        eat = timezone(timedelta(hours=3))

        run = await service.reconcile(
            datetime(2026, 1, 2, 0, 0, tzinfo=eat),
            datetime(2026, 1, 2, 23, 59, 59, tzinfo=eat),
        )

        assert run.summary.total_in_window == 1
        assert run.items[0].payment_id == payment.id
        assert run.window_start == datetime(2026, 1, 1, 21, 0)
        assert run.window_end == datetime(2026, 1, 2, 20, 59, 59)

    def test_request_normalises_offset_timestamps(self):
        request = ReconciliationRequest(
            window_start="2026-01-02T00:00:00+03:00",
            window_end="2026-01-02T23:59:59Z",
        )
        assert request.window_start == datetime(2026, 1, 1, 21, 0)
        assert request.window_end == datetime(2026, 1, 2, 23, 59, 59)
        assert request.window_start.tzinfo is None


class TestCancellation:
    """Tests for cancelled and over-budget runs."""

    async def test_cancel_stops_new_lookups(self, db_session, book_session):
        cancel_event = asyncio.Event()

        class CancellingGateway(SimulatorGateway):
            async def query_transaction_status(self, external_request_ref, external_transaction_ref=None):
                cancel_event.set()
                return await super().query_transaction_status(external_request_ref, external_transaction_ref)

        gateway = CancellingGateway()
        service = ReconciliationService(
            db_session, gateway, IntegritySettings(max_concurrency=1)
        )
        for _ in range(5):
            _, payment = await book_session()
            gateway.add_transaction(
                payment.external_request_ref, 250000,
                transaction_ref=payment.external_transaction_ref, result_code=0,
            )
        start, end = _window()

        run = await service.reconcile(start, end, cancel_event=cancel_event)

        assert run.status == RunStatus.CANCELLED
        assert gateway.lookups == 1
        assert run.summary.examined == 1
        assert run.summary.skipped == 4
        assert len(run.items) == 1

    async def test_run_budget_cancels_run(self, db_session, simulator, book_session):
        settings = IntegritySettings(
            gateway_lookup_timeout_seconds=0.1, run_budget_seconds=0.2, max_concurrency=1
        )
        service = ReconciliationService(db_session, simulator, settings)
        for _ in range(6):
            _, payment = await book_session()
            simulator.make_slow(payment.external_request_ref, 0.08)
        start, end = _window()

        run = await service.reconcile(start, end)

        assert run.status == RunStatus.CANCELLED
        assert 0 < run.summary.examined < 6
        assert run.summary.examined + run.summary.skipped == 6

        stored = await service.get_run(run.run_id)
        assert stored.status == RunStatus.CANCELLED


class TestStoredRuns:
    """Tests for run persistence and retrieval."""

    async def test_run_round_trips(self, service, book_session):
        await book_session()
        await book_session(confirm=False)
        start, end = _window()

        run = await service.reconcile(start, end)
        stored = await service.get_run(run.run_id)

        assert stored.model_dump(mode="json") == run.model_dump(mode="json")

    async def test_unknown_run(self, service):
        assert await service.get_run("missing") is None

    async def test_latest_for_window_ignores_filtered_runs(self, service, book_session):
        await book_session()
        start, end = _window()

        unfiltered = await service.reconcile(start, end)
        await service.reconcile(start, end, filters=ReconciliationFilters(provider_id="provider-1"))

        latest = await service.latest_for_window(start, end)
        assert latest.run_id == unfiltered.run_id

    async def test_list_runs(self, service):
        start, end = _window()
        first = await service.reconcile(start, end)
        second = await service.reconcile(start, end)

        runs = await service.list_runs(limit=10)

        assert {r.run_id for r in runs} == {first.run_id, second.run_id}

    async def test_saving_twice_is_rejected(self, service):
        start, end = _window()
        run = await service.reconcile(start, end)

        with pytest.raises(ValueError):
            await service.run_repo.save(run)

    async def test_unsupported_report_format(self, service):
        start, end = _window()
        run = await service.reconcile(start, end)

        with pytest.raises(ValueError):
            service.generate_report(run, format="xml")
