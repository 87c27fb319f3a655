"""Tests for API endpoints."""

import csv
import io
import time
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from payment_integrity.api import create_app
from payment_integrity.auth import limiter
from payment_integrity.config import IntegritySettings
from payment_integrity.gateway import SimulatorGateway
from payment_integrity.reconciliation import CSV_COLUMNS


@pytest.fixture
def gateway():
    return SimulatorGateway()


@pytest.fixture
def client(gateway):
    """Create a test client backed by an in-memory database and the simulator."""
    limiter.reset()
    settings = IntegritySettings(database_url="sqlite+aiosqlite:///:memory:", gateway="simulator")
    app = create_app(settings, gateway=gateway, start_scheduler=False)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def window():
    now = datetime.utcnow()
    return {
        "window_start": (now - timedelta(hours=1)).isoformat(),
        "window_end": (now + timedelta(hours=1)).isoformat(),
    }


def deliver_confirmation(client, gateway, request_ref="ws_CO_API1", receipt="QKJAPI1"):
    gateway.add_transaction(request_ref, 250000, payer_identifier="254712345678")
    gateway.complete(request_ref, 0, receipt)
    return client.post("/webhooks/gateway", json=gateway.build_callback(request_ref))


class TestHealth:
    """Tests for GET /health."""

    def test_health(self, client):
        """Test that health reports enforcement and gateway status."""
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database"] is True
        assert data["enforcement"] == "strict"
        assert data["gateway"]["gateway"] == "simulator"


class TestGatewayWebhook:
    """Tests for POST /webhooks/gateway."""

    def test_confirmation_is_accepted(self, client, gateway):
        """Test that a successful callback confirms the payment."""
        response = deliver_confirmation(client, gateway)

        assert response.status_code == 200
        data = response.json()
        assert data["ResultCode"] == 0
        assert data["outcome"] == "created"
        assert data["status"] == "confirmed"

    def test_redelivery_is_acknowledged(self, client, gateway):
        """Test that a redelivered callback is acknowledged without reapplying."""
        first = deliver_confirmation(client, gateway)
        second = client.post("/webhooks/gateway", json=gateway.build_callback("ws_CO_API1"))

        assert second.status_code == 200
        assert second.json()["outcome"] == "duplicate"
        assert second.json()["payment_id"] == first.json()["payment_id"]

    def test_non_json_body(self, client):
        """Test that a non-JSON body is rejected."""
        response = client.post(
            "/webhooks/gateway", content=b"not json", headers={"Content-Type": "application/json"}
        )
        assert response.status_code == 400

    def test_malformed_callback(self, client):
        """Test that a callback without the STK envelope is rejected."""
        response = client.post("/webhooks/gateway", json={"Body": {}})
        assert response.status_code == 400


class TestOrphanCheck:
    """Tests for GET /payments/{payment_id}/orphan-check."""

    def test_requires_authentication(self, client):
        response = client.get("/payments/any/orphan-check")
        assert response.status_code in (401, 403)

    def test_invalid_api_key(self, client):
        response = client.get(
            "/payments/any/orphan-check", headers={"Authorization": "Bearer wrong"}
        )
        assert response.status_code == 401

    def test_unlinked_confirmed_payment_is_orphaned(self, client, gateway, auth_headers):
        """Test that a confirmed payment without a session is reported as orphaned."""
        payment_id = deliver_confirmation(client, gateway).json()["payment_id"]

        response = client.get(f"/payments/{payment_id}/orphan-check", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["is_orphaned"] is True
        assert data["reasons"] == ["confirmed payment is not linked to any session"]

    def test_unknown_payment(self, client, auth_headers):
        response = client.get("/payments/missing/orphan-check", headers=auth_headers)
        assert response.status_code == 404


class TestEnforcementEndpoints:
    """Tests for the enforcement level endpoints."""

    def test_status(self, client, auth_headers):
        response = client.get("/integrity/enforcement", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["level"] == "strict"
        assert data["recent_changes"][0]["context"] == "startup"

    def test_change_to_warn(self, client, auth_headers):
        """Test that an admin can relax enforcement to warn and the change is audited."""
        response = client.post(
            "/integrity/enforcement",
            json={"level": "warn", "reason": "provider migration", "actor": "ops"},
            headers=auth_headers,
        )

        assert response.status_code == 200
        assert response.json()["change"]["new_level"] == "warn"
        status = client.get("/integrity/enforcement", headers=auth_headers).json()
        assert status["level"] == "warn"
        assert status["recent_changes"][0]["actor"] == "ops"

    def test_off_requires_emergency(self, client, auth_headers):
        """Test that enforcement cannot be turned off outside the emergency path."""
        denied = client.post(
            "/integrity/enforcement",
            json={"level": "off", "reason": "noisy"},
            headers=auth_headers,
        )
        assert denied.status_code == 403

        allowed = client.post(
            "/integrity/enforcement",
            json={"level": "off", "reason": "gateway incident", "emergency": True},
            headers=auth_headers,
        )
        assert allowed.status_code == 200
        assert allowed.json()["change"]["context"] == "emergency"

    def test_reason_is_required(self, client, auth_headers):
        response = client.post(
            "/integrity/enforcement", json={"level": "warn", "reason": ""}, headers=auth_headers
        )
        assert response.status_code == 422

    def test_rate_limited(self, client, auth_headers):
        """Test that enforcement changes are rate limited."""
        body = {"level": "warn", "reason": "testing limits"}
        statuses = [
            client.post("/integrity/enforcement", json=body, headers=auth_headers).status_code
            for _ in range(6)
        ]
        assert statuses[:5] == [200] * 5
        assert statuses[5] == 429


class TestReconcileEndpoints:
    """Tests for the /reconcile endpoints."""

    def test_reconcile_window(self, client, gateway, auth_headers, window):
        """Test that a synchronous run returns the stored run with its items."""
        deliver_confirmation(client, gateway)

        response = client.post("/reconcile", json=window, headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "completed"
        assert data["triggered_by"] == "admin"
        assert data["summary"]["discrepancy"] == 1
        assert data["items"][0]["issues"] == ["orphaned_payment"]

        stored = client.get(f"/reconcile/runs/{data['run_id']}", headers=auth_headers)
        assert stored.status_code == 200
        assert stored.json() == data

    def test_offset_window(self, client, gateway, auth_headers):
        """Test that a window sent with a UTC offset selects the same payments."""
        deliver_confirmation(client, gateway)
        now = datetime.now(timezone(timedelta(hours=3)))
        body = {
            "window_start": (now - timedelta(hours=1)).isoformat(),
            "window_end": (now + timedelta(hours=1)).isoformat(),
        }

        response = client.post("/reconcile", json=body, headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["summary"]["total_in_window"] == 1

    def test_inverted_window(self, client, auth_headers, window):
        body = {"window_start": window["window_end"], "window_end": window["window_start"]}
        response = client.post("/reconcile", json=body, headers=auth_headers)
        assert response.status_code == 422

    def test_requires_authentication(self, client, window):
        response = client.post("/reconcile", json=window, headers={"Authorization": "Bearer wrong"})
        assert response.status_code == 401

    def test_csv_report(self, client, gateway, auth_headers, window):
        """Test that the CSV report has the fixed header and one row per payment."""
        deliver_confirmation(client, gateway)

        response = client.get(
            "/reconcile/report", params={**window, "format": "csv"}, headers=auth_headers
        )

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        rows = list(csv.reader(io.StringIO(response.text)))
        assert rows[0] == CSV_COLUMNS
        assert len(rows) == 2
        assert rows[1][CSV_COLUMNS.index("payer")] == "***5678"

    def test_report_reuses_stored_run(self, client, gateway, auth_headers, window):
        deliver_confirmation(client, gateway)
        run_id = client.post("/reconcile", json=window, headers=auth_headers).json()["run_id"]

        response = client.get("/reconcile/report", params=window, headers=auth_headers)

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/json")
        assert response.json()["run_id"] == run_id

    def test_invalid_report_format(self, client, auth_headers, window):
        response = client.get(
            "/reconcile/report", params={**window, "format": "xml"}, headers=auth_headers
        )
        assert response.status_code == 400

    def test_text_report(self, client, auth_headers, window):
        response = client.get(
            "/reconcile/report", params={**window, "format": "text"}, headers=auth_headers
        )
        assert response.status_code == 200
        assert "RECONCILIATION RUN SUMMARY" in response.text

    def test_background_run(self, client, gateway, auth_headers, window):
        """Test that a background run can be started and later fetched."""
        deliver_confirmation(client, gateway)

        started = client.post("/reconcile/runs", json=window, headers=auth_headers)
        assert started.status_code == 202
        run_id = started.json()["run_id"]

        runs = client.app.state.runs
        for _ in range(100):
            if not runs.is_active(run_id):
                break
            time.sleep(0.05)

        response = client.get(f"/reconcile/runs/{run_id}", headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["summary"]["total_in_window"] == 1

        listed = client.get("/reconcile/runs", headers=auth_headers).json()
        assert [run["run_id"] for run in listed] == [run_id]

    def test_unknown_run(self, client, auth_headers):
        assert client.get("/reconcile/runs/missing", headers=auth_headers).status_code == 404
        assert client.delete("/reconcile/runs/missing", headers=auth_headers).status_code == 404
