"""Tests for the reconciliation command-line interface."""

import json
from datetime import datetime, timedelta

import pytest

from payment_integrity.config import IntegritySettings
from payment_integrity.database import DatabaseManager, PaymentRecordRepository
from payment_integrity.gateway import SimulatorGateway
from payment_integrity.integrity import PaymentState
from payment_integrity.reconciliation.cli import (
    EXIT_CLEAN,
    EXIT_FAILED,
    EXIT_ISSUES,
    create_parser,
    main,
    parse_datetime,
    run_reconciliation_async,
    sweep_stuck_async,
)


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}"


@pytest.fixture
def settings(database_url):
    return IntegritySettings(database_url=database_url, gateway="simulator")


async def seed_payment(database_url, **fields):
    db = DatabaseManager(database_url)
    await db.initialize()
    try:
        async with db.session() as session:
            payment = await PaymentRecordRepository(session).create(
                external_request_ref="ws_CO_CLI",
                amount_expected=250000,
                payer_identifier="254712345678",
            )
            for name, value in fields.items():
                setattr(payment, name, value)
    finally:
        await db.shutdown()


class TestParseDatetime:
    """Tests for parse_datetime."""

    def test_date_only(self):
        assert parse_datetime("2024-01-15") == datetime(2024, 1, 15)

    def test_iso_format(self):
        assert parse_datetime("2024-01-15T10:30:00") == datetime(2024, 1, 15, 10, 30)

    def test_with_microseconds(self):
        assert parse_datetime("2024-01-15T10:30:00.250000") == datetime(2024, 1, 15, 10, 30, 0, 250000)

    def test_space_separated(self):
        assert parse_datetime("2024-01-15 10:30:00") == datetime(2024, 1, 15, 10, 30)

    def test_invalid(self):
        with pytest.raises(ValueError, match="Unable to parse datetime"):
            parse_datetime("15/01/2024")


class TestParser:
    """Tests for the argument parser."""

    def test_reconcile_arguments(self):
        args = create_parser().parse_args([
            "reconcile", "--start", "2024-01-01", "--end", "2024-01-31",
            "--client", "client-1", "--format", "csv", "--output", "run.csv",
        ])

        assert args.command == "reconcile"
        assert args.client == "client-1"
        assert args.provider is None
        assert args.format == "csv"
        assert args.output == "run.csv"

    def test_default_format_is_json(self):
        args = create_parser().parse_args(["reconcile", "-s", "2024-01-01", "-e", "2024-01-01"])
        assert args.format == "json"

    def test_unknown_format_is_rejected(self):
        with pytest.raises(SystemExit):
            create_parser().parse_args(["reconcile", "-s", "2024-01-01", "-e", "2024-01-01", "-f", "xml"])


class TestMain:
    """Tests for main exit codes."""

    def test_no_command(self):
        assert main([]) == EXIT_FAILED

    def test_invalid_date(self, monkeypatch):
        monkeypatch.setenv("PAYMENT_GATEWAY", "simulator")
        assert main(["reconcile", "--start", "yesterday", "--end", "2024-01-01"]) == EXIT_FAILED

    def test_inverted_window(self, monkeypatch):
        monkeypatch.setenv("PAYMENT_GATEWAY", "simulator")
        assert main(["reconcile", "--start", "2024-01-02", "--end", "2024-01-01"]) == EXIT_FAILED

    def test_invalid_configuration(self, monkeypatch):
        monkeypatch.setenv("INTEGRITY_ENFORCEMENT", "lenient")
        assert main(["sweep-stuck"]) == EXIT_FAILED

    def test_unconfigured_gateway(self, monkeypatch, database_url):
        """Test that reconciling against an unconfigured M-Pesa gateway fails cleanly."""
        monkeypatch.setenv("DATABASE_URL", database_url)
        monkeypatch.setenv("PAYMENT_GATEWAY", "mpesa")
        for name in ("MPESA_CONSUMER_KEY", "MPESA_CONSUMER_SECRET", "MPESA_SHORTCODE"):
            monkeypatch.delenv(name, raising=False)

        assert main(["reconcile", "--start", "2024-01-15", "--end", "2024-01-15"]) == EXIT_FAILED

    def test_reconcile_empty_day(self, monkeypatch, database_url, tmp_path):
        """Test that a bare end date covers the whole day and a clean run exits 0."""
        monkeypatch.setenv("DATABASE_URL", database_url)
        monkeypatch.setenv("PAYMENT_GATEWAY", "simulator")
        output = tmp_path / "run.json"

        code = main([
            "reconcile", "--start", "2024-01-15", "--end", "2024-01-15", "--output", str(output),
        ])

        assert code == EXIT_CLEAN
        data = json.loads(output.read_text())
        assert data["window_end"].startswith("2024-01-15T23:59:59.999999")
        assert data["summary"]["examined"] == 0


class TestRunReconciliation:
    """Tests for run_reconciliation_async."""

    async def test_issues_exit_code(self, settings, database_url, tmp_path):
        """Test that a run with an orphaned confirmed payment exits 1 and writes CSV."""
        confirmed_at = datetime(2024, 1, 15, 10, 0, 0)
        await seed_payment(
            database_url,
            status=PaymentState.CONFIRMED.value,
            external_transaction_ref="QKJCLI",
            amount_confirmed=250000,
            result_code=0,
            confirmed_at=confirmed_at,
        )
        gateway = SimulatorGateway()
        gateway.add_transaction("ws_CO_CLI", 250000, transaction_ref="QKJCLI", result_code=0)
        output = tmp_path / "run.csv"

        code = await run_reconciliation_async(
            settings,
            datetime(2024, 1, 15),
            datetime(2024, 1, 15, 23, 59, 59),
            output_file=str(output),
            output_format="csv",
            gateway=gateway,
        )

        assert code == EXIT_ISSUES
        lines = output.read_text().splitlines()
        assert len(lines) == 2
        assert lines[1].endswith("orphaned_payment")

    async def test_prints_when_no_output_file(self, settings, capsys):
        code = await run_reconciliation_async(
            settings,
            datetime(2024, 1, 15),
            datetime(2024, 1, 16),
            output_format="text",
            gateway=SimulatorGateway(),
        )

        assert code == EXIT_CLEAN
        assert "RECONCILIATION RUN SUMMARY" in capsys.readouterr().out


class TestSweepStuck:
    """Tests for sweep_stuck_async."""

    async def test_clean_sweep(self, settings, tmp_path):
        output = tmp_path / "sweep.json"

        assert await sweep_stuck_async(settings, str(output)) == EXIT_CLEAN
        assert json.loads(output.read_text())["stuck_count"] == 0

    async def test_stuck_payment(self, settings, database_url, tmp_path):
        await seed_payment(
            database_url,
            status=PaymentState.PROCESSING.value,
            state_entered_at=datetime.utcnow() - timedelta(days=2),
        )
        output = tmp_path / "sweep.json"

        assert await sweep_stuck_async(settings, str(output)) == EXIT_ISSUES
        report = json.loads(output.read_text())
        assert report["payments_checked"] == 1
        assert report["stuck"][0]["state"] == "processing"
