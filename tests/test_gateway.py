"""Tests for the M-Pesa gateway client, callback parsing and the simulator."""

import json

import httpx
import pytest

from payment_integrity.config import IntegritySettings, MpesaSettings
from payment_integrity.exceptions import GatewayError, GatewayUnreachable, InvalidCallback
from payment_integrity.gateway import (
    GatewayTransactionStatus,
    MpesaGateway,
    SimulatorGateway,
    get_gateway,
    to_major_units,
    to_minor_units,
)
from payment_integrity.gateway.mpesa import format_phone_number, parse_stk_callback
from payment_integrity.gateway.simulator import SimulatorConfig


@pytest.fixture
def mpesa_settings():
    return MpesaSettings(
        environment="sandbox",
        consumer_key="key",
        consumer_secret="secret",
        shortcode="174379",
        passkey="passkey",
        callback_url="https://example.com/webhooks/gateway",
    )


def make_gateway(settings, handler):
    client = httpx.AsyncClient(base_url=settings.base_url, transport=httpx.MockTransport(handler))
    return MpesaGateway(settings, client=client)


def daraja(query_response=None, query_status=200, calls=None):
    """Build a MockTransport handler that mimics the Daraja endpoints used."""
    def handler(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(request.url.path)
        if request.url.path == "/oauth/v1/generate":
            return httpx.Response(200, json={"access_token": "token-123", "expires_in": "3599"})
        assert request.headers["Authorization"] == "Bearer token-123"
        if request.url.path == "/mpesa/stkpush/v1/processrequest":
            body = json.loads(request.content)
            assert body["Amount"] == 2500
            assert body["PhoneNumber"] == "254712345678"
            return httpx.Response(200, json={
                "MerchantRequestID": "29115-34620561-1",
                "CheckoutRequestID": "ws_CO_191220191020363925",
                "ResponseCode": "0",
                "ResponseDescription": "Success. Request accepted for processing",
                "CustomerMessage": "Success. Request accepted for processing",
            })
        if request.url.path == "/mpesa/stkpushquery/v1/query":
            return httpx.Response(query_status, json=query_response or {})
        return httpx.Response(404)

    return handler


def stk_callback(result_code=0, amount=2500, receipt="NLJ7RT61SV"):
    callback = {
        "MerchantRequestID": "29115-34620561-1",
        "CheckoutRequestID": "ws_CO_191220191020363925",
        "ResultCode": result_code,
        "ResultDesc": "The service request is processed successfully.",
    }
    if result_code == 0:
        items = [
            {"Name": "Amount", "Value": amount},
            {"Name": "TransactionDate", "Value": 20191219102115},
            {"Name": "PhoneNumber", "Value": 254712345678},
        ]
        if receipt:
            items.append({"Name": "MpesaReceiptNumber", "Value": receipt})
        callback["CallbackMetadata"] = {"Item": items}
    return {"Body": {"stkCallback": callback}}


class TestAmounts:
    """Tests for minor-unit conversion."""

    def test_to_minor_units(self):
        assert to_minor_units(2500) == 250000
        assert to_minor_units("2500.50") == 250050
        assert to_minor_units(2500.5) == 250050

    def test_sub_cent_amount_is_rejected(self):
        with pytest.raises(ValueError):
            to_minor_units("1.005")

    def test_non_numeric_amount_is_rejected(self):
        with pytest.raises(ValueError):
            to_minor_units("abc")

    def test_to_major_units(self):
        assert f"{to_major_units(250050):.2f}" == "2500.50"


class TestMpesaGateway:
    """Tests for MpesaGateway against a mocked Daraja API."""

    def test_requires_configuration(self):
        with pytest.raises(ValueError):
            MpesaGateway(MpesaSettings())

    def test_format_phone_number(self):
        assert format_phone_number("0712 345 678") == "254712345678"
        assert format_phone_number("+254712345678") == "254712345678"
        assert format_phone_number("712345678") == "254712345678"

    async def test_initiate_payment(self, mpesa_settings):
        gateway = make_gateway(mpesa_settings, daraja())

        initiated = await gateway.initiate_payment(250000, "0712345678", "session-1")

        assert initiated.external_request_ref == "ws_CO_191220191020363925"
        assert initiated.response_code == "0"

    async def test_initiate_rejects_fractional_shillings(self, mpesa_settings):
        gateway = make_gateway(mpesa_settings, daraja())
        with pytest.raises(GatewayError):
            await gateway.initiate_payment(250050, "0712345678", "session-1")

    async def test_token_is_cached(self, mpesa_settings):
        calls = []
        gateway = make_gateway(
            mpesa_settings,
            daraja(query_response={"ResultCode": "0", "ResultDesc": "ok"}, calls=calls),
        )

        await gateway.query_transaction_status("ws_CO_1")
        await gateway.query_transaction_status("ws_CO_2")

        assert calls.count("/oauth/v1/generate") == 1

    async def test_query_success(self, mpesa_settings):
        gateway = make_gateway(mpesa_settings, daraja(query_response={
            "ResponseCode": "0",
            "CheckoutRequestID": "ws_CO_1",
            "ResultCode": "0",
            "ResultDesc": "The service request is processed successfully.",
        }))

        txn = await gateway.query_transaction_status("ws_CO_1", "NLJ7RT61SV")

        assert txn.found is True
        assert txn.status == GatewayTransactionStatus.SUCCESS
        assert txn.result_code == 0
        assert txn.transaction_ref == "NLJ7RT61SV"
        assert txn.amount is None

    async def test_query_cancelled_by_user(self, mpesa_settings):
        gateway = make_gateway(mpesa_settings, daraja(query_response={
            "CheckoutRequestID": "ws_CO_1",
            "ResultCode": "1032",
            "ResultDesc": "Request cancelled by user",
        }))

        txn = await gateway.query_transaction_status("ws_CO_1")

        assert txn.status == GatewayTransactionStatus.FAILED
        assert txn.result_code == 1032
        assert txn.transaction_ref is None

    async def test_query_still_processing(self, mpesa_settings):
        gateway = make_gateway(mpesa_settings, daraja(
            query_response={"errorCode": "500.001.1001", "errorMessage": "The transaction is being processed"},
            query_status=500,
        ))

        txn = await gateway.query_transaction_status("ws_CO_1")

        assert txn.found is True
        assert txn.status == GatewayTransactionStatus.PENDING

    async def test_query_unknown_request(self, mpesa_settings):
        gateway = make_gateway(mpesa_settings, daraja(
            query_response={"errorCode": "400.002.02", "errorMessage": "Invalid CheckoutRequestID"},
            query_status=400,
        ))

        txn = await gateway.query_transaction_status("ws_CO_missing")

        assert txn.found is False

    async def test_query_server_error(self, mpesa_settings):
        gateway = make_gateway(mpesa_settings, daraja(query_response={}, query_status=503))
        with pytest.raises(GatewayUnreachable):
            await gateway.query_transaction_status("ws_CO_1")

    @pytest.mark.parametrize("status, expected", [
        (502, GatewayUnreachable),
        (200, GatewayError),
    ])
    async def test_query_html_body(self, mpesa_settings, status, expected):
        """Test that an HTML page from a proxy raises a gateway error, not a decode error."""
        def handler(request):
            if request.url.path == "/oauth/v1/generate":
                return httpx.Response(200, json={"access_token": "token-123"})
            return httpx.Response(
                status, text="<html>Bad Gateway</html>", headers={"content-type": "text/html"}
            )

        gateway = make_gateway(mpesa_settings, handler)
        with pytest.raises(expected) as excinfo:
            await gateway.query_transaction_status("ws_CO_1")
        assert excinfo.value.status_code == status

    async def test_query_html_not_found(self, mpesa_settings):
        def handler(request):
            if request.url.path == "/oauth/v1/generate":
                return httpx.Response(200, json={"access_token": "token-123"})
            return httpx.Response(404, text="<html>Not Found</html>", headers={"content-type": "text/html"})

        gateway = make_gateway(mpesa_settings, handler)
        txn = await gateway.query_transaction_status("ws_CO_1")

        assert txn.found is False

    async def test_transport_failure(self, mpesa_settings):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        gateway = make_gateway(mpesa_settings, handler)
        with pytest.raises(GatewayUnreachable):
            await gateway.query_transaction_status("ws_CO_1")

    async def test_health_check_reports_auth_failure(self, mpesa_settings):
        gateway = make_gateway(mpesa_settings, lambda request: httpx.Response(401))

        health = await gateway.health_check()

        assert health["ok"] is False
        assert health["gateway"] == "mpesa"


class TestParseStkCallback:
    """Tests for parse_stk_callback."""

    def test_successful_callback(self):
        callback = parse_stk_callback(stk_callback(amount=2500.5))

        assert callback.succeeded
        assert callback.external_request_ref == "ws_CO_191220191020363925"
        assert callback.external_transaction_ref == "NLJ7RT61SV"
        assert callback.amount == 250050
        assert callback.payer_identifier == "254712345678"

    def test_failed_callback(self):
        callback = parse_stk_callback(stk_callback(result_code=1032))

        assert not callback.succeeded
        assert callback.amount is None
        assert callback.external_transaction_ref is None

    def test_success_without_receipt(self):
        with pytest.raises(InvalidCallback):
            parse_stk_callback(stk_callback(receipt=None))

    @pytest.mark.parametrize("body", [
        {},
        {"Body": {}},
        {"Body": {"stkCallback": {"CheckoutRequestID": "ws_CO_1"}}},
        {"Body": {"stkCallback": {"CheckoutRequestID": "ws_CO_1", "ResultCode": "abc"}}},
    ])
    def test_malformed_callback(self, body):
        with pytest.raises(InvalidCallback):
            parse_stk_callback(body)


class TestSimulatorGateway:
    """Tests for SimulatorGateway."""

    async def test_initiate_and_query(self):
        gateway = SimulatorGateway()
        initiated = await gateway.initiate_payment(250000, "254712345678", "session-1")
        gateway.complete(initiated.external_request_ref, 0, "QKJ1")

        txn = await gateway.query_transaction_status(initiated.external_request_ref)

        assert txn.status == GatewayTransactionStatus.SUCCESS
        assert txn.amount == 250000
        assert txn.transaction_ref == "QKJ1"

    async def test_lookup_by_transaction_ref(self):
        gateway = SimulatorGateway()
        gateway.add_transaction("ws_CO_A", 1000, transaction_ref="QKJ2", result_code=0)

        txn = await gateway.query_transaction_status("ws_CO_other", "QKJ2")

        assert txn.external_request_ref == "ws_CO_A"

    async def test_unknown_transaction(self):
        txn = await SimulatorGateway().query_transaction_status("ws_CO_none")
        assert txn.found is False

    async def test_reversal(self):
        gateway = SimulatorGateway()
        gateway.add_transaction("ws_CO_R", 1000, transaction_ref="QKJ3", result_code=0)
        gateway.reverse("ws_CO_R")

        txn = await gateway.query_transaction_status("ws_CO_R")

        assert txn.status == GatewayTransactionStatus.REVERSED

    async def test_outage(self):
        gateway = SimulatorGateway(SimulatorConfig(unreachable=True))
        with pytest.raises(GatewayUnreachable):
            await gateway.initiate_payment(1000, "254712345678", "session-1")
        assert (await gateway.health_check())["ok"] is False

    async def test_non_positive_amount(self):
        with pytest.raises(GatewayError):
            await SimulatorGateway().initiate_payment(0, "254712345678", "session-1")

    def test_callback_round_trip(self):
        gateway = SimulatorGateway()
        gateway.add_transaction("ws_CO_CB", 250050, payer_identifier="254712345678")
        gateway.complete("ws_CO_CB", 0, "QKJ4")

        callback = gateway.parse_callback(gateway.build_callback("ws_CO_CB"))

        assert callback.amount == 250050
        assert callback.external_transaction_ref == "QKJ4"


class TestGetGateway:
    """Tests for gateway selection from settings."""

    def test_simulator(self):
        settings = IntegritySettings(gateway="simulator")
        assert isinstance(get_gateway(settings), SimulatorGateway)

    def test_unconfigured_mpesa(self):
        with pytest.raises(ValueError):
            get_gateway(IntegritySettings(gateway="mpesa"))
