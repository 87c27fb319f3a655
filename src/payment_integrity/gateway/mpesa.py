"""M-Pesa (Daraja) STK-push gateway client."""

import base64
import logging
import time
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import httpx

from ..config import MpesaSettings
from ..database.models import mask_identifier
from ..exceptions import GatewayError, GatewayUnreachable, InvalidCallback
from .base import (
    GatewayCallback,
    GatewayTransaction,
    GatewayTransactionStatus,
    InitiatedPayment,
    PaymentGateway,
    describe_result_code,
    status_for_result_code,
    to_minor_units,
)

logger = logging.getLogger(__name__)

# Daraja reports an STK request still awaiting the payer with this error code.
STILL_PROCESSING_ERROR = "500.001.1001"
# Daraja does not know the CheckoutRequestID.
INVALID_CHECKOUT_ID_ERROR = "400.002.02"

# Cache tokens for 50 minutes; Daraja issues them for an hour.
TOKEN_TTL_SECONDS = 50 * 60

EAT_OFFSET = timedelta(hours=3)


def format_phone_number(phone: str) -> str:
    """Normalise a Kenyan phone number to 2547XXXXXXXX form."""
    cleaned = "".join(ch for ch in phone if ch not in " -()")
    cleaned = cleaned.lstrip("+")
    if cleaned.startswith("07") or cleaned.startswith("01"):
        return "254" + cleaned[1:]
    if cleaned.startswith("254"):
        return cleaned
    return "254" + cleaned


def _json_body(response: httpx.Response, operation: str) -> Dict[str, Any]:
    """Decode a Daraja response body.

    Proxies in front of Daraja answer outages with HTML. An undecodable body
    on a 5xx means the gateway is unreachable and on a 200 it is an error.
    Other statuses decode to an empty dict so callers map the status code.
    """
    if not response.content:
        return {}
    try:
        data = response.json()
    except ValueError:
        data = None
    if isinstance(data, dict):
        return data
    if response.status_code >= 500:
        raise GatewayUnreachable(
            f"M-Pesa {operation} failed with HTTP {response.status_code}",
            status_code=response.status_code,
            raw_response=response.text[:200],
        )
    if response.status_code == 200:
        raise GatewayError(
            f"M-Pesa {operation} returned an unreadable body",
            status_code=response.status_code,
            raw_response=response.text[:200],
        )
    return {}


def _int_or_none(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class MpesaGateway(PaymentGateway):
    """STK-push client for the Daraja API."""

    name = "mpesa"

    def __init__(
        self,
        settings: MpesaSettings,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ):
        if not settings.is_configured:
            raise ValueError(
                "M-Pesa is not configured. Set MPESA_CONSUMER_KEY, MPESA_CONSUMER_SECRET, "
                "MPESA_SHORTCODE, MPESA_PASSKEY and MPESA_CALLBACK_URL."
            )
        self.settings = settings
        self._client = client or httpx.AsyncClient(base_url=settings.base_url, timeout=timeout)
        self._owns_client = client is None
        self._token: Optional[str] = None
        self._token_expires_at: float = 0.0

    @staticmethod
    def timestamp(now: Optional[datetime] = None) -> str:
        """Daraja timestamps are East Africa Time, formatted YYYYmmddHHMMSS."""
        now = now or (datetime.utcnow() + EAT_OFFSET)
        return now.strftime("%Y%m%d%H%M%S")

    def password(self, timestamp: str) -> str:
        raw = f"{self.settings.shortcode}{self.settings.passkey}{timestamp}"
        return base64.b64encode(raw.encode()).decode()

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            return await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise GatewayUnreachable(f"M-Pesa request to {url} timed out") from e
        except httpx.TransportError as e:
            raise GatewayUnreachable(f"M-Pesa request to {url} failed: {e}") from e

    async def get_access_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token

        response = await self._request(
            "GET",
            "/oauth/v1/generate",
            params={"grant_type": "client_credentials"},
            auth=(self.settings.consumer_key, self.settings.consumer_secret),
        )
        if response.status_code >= 500:
            raise GatewayUnreachable("M-Pesa auth service unavailable", status_code=response.status_code)
        if response.status_code != 200:
            raise GatewayError("M-Pesa authentication failed", status_code=response.status_code)

        token = _json_body(response, "authentication").get("access_token")
        if not token:
            raise GatewayError("M-Pesa authentication returned no token")
        self._token = token
        self._token_expires_at = time.monotonic() + TOKEN_TTL_SECONDS
        return token

    async def _post(self, url: str, payload: Dict[str, Any]) -> httpx.Response:
        token = await self.get_access_token()
        return await self._request(
            "POST",
            url,
            json=payload,
            headers={"Authorization": f"Bearer {token}"},
        )

    async def initiate_payment(
        self,
        amount: int,
        payer_identifier: str,
        correlation_ref: str,
        description: Optional[str] = None,
    ) -> InitiatedPayment:
        if amount <= 0 or amount % 100:
            # STK push only accepts whole shillings.
            raise GatewayError(f"M-Pesa amounts must be whole and positive, got {amount} minor units")

        timestamp = self.timestamp()
        phone = format_phone_number(payer_identifier)
        payload = {
            "BusinessShortCode": self.settings.shortcode,
            "Password": self.password(timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": amount // 100,
            "PartyA": phone,
            "PartyB": self.settings.shortcode,
            "PhoneNumber": phone,
            "CallBackURL": self.settings.callback_url,
            "AccountReference": correlation_ref[:12],
            "TransactionDesc": description or "Therapy session",
        }
        response = await self._post("/mpesa/stkpush/v1/processrequest", payload)
        if response.status_code >= 500:
            raise GatewayUnreachable("M-Pesa STK push unavailable", status_code=response.status_code)

        data = _json_body(response, "STK push")
        if response.status_code != 200 or str(data.get("ResponseCode")) != "0":
            raise GatewayError(
                data.get("errorMessage") or data.get("ResponseDescription") or "STK push failed",
                status_code=response.status_code,
                raw_response=data,
            )

        logger.info(
            f"STK push sent to {mask_identifier(phone)} for {correlation_ref}: "
            f"{data.get('CheckoutRequestID')}"
        )
        return InitiatedPayment(
            external_request_ref=data["CheckoutRequestID"],
            merchant_request_ref=data.get("MerchantRequestID"),
            response_code=str(data.get("ResponseCode")),
            customer_message=data.get("CustomerMessage"),
        )

    async def query_transaction_status(
        self,
        external_request_ref: str,
        external_transaction_ref: Optional[str] = None,
    ) -> GatewayTransaction:
        # STK query is keyed by CheckoutRequestID and does not echo the
        # receipt number or the amount.
        timestamp = self.timestamp()
        payload = {
            "BusinessShortCode": self.settings.shortcode,
            "Password": self.password(timestamp),
            "Timestamp": timestamp,
            "CheckoutRequestID": external_request_ref,
        }
        response = await self._post("/mpesa/stkpushquery/v1/query", payload)
        data = _json_body(response, "STK query")
        error_code = data.get("errorCode")

        if error_code == STILL_PROCESSING_ERROR:
            return GatewayTransaction(
                found=True,
                external_request_ref=external_request_ref,
                status=GatewayTransactionStatus.PENDING,
                result_description=data.get("errorMessage"),
                raw_response=data,
            )
        if error_code == INVALID_CHECKOUT_ID_ERROR or response.status_code == 404:
            return GatewayTransaction(found=False, external_request_ref=external_request_ref, raw_response=data)
        if response.status_code >= 500:
            raise GatewayUnreachable(
                f"M-Pesa STK query failed with HTTP {response.status_code}",
                status_code=response.status_code,
                raw_response=data,
            )
        if response.status_code != 200:
            raise GatewayError(
                data.get("errorMessage") or "STK query rejected",
                status_code=response.status_code,
                raw_response=data,
            )

        result_code = _int_or_none(data.get("ResultCode"))
        return GatewayTransaction(
            found=True,
            external_request_ref=data.get("CheckoutRequestID", external_request_ref),
            transaction_ref=external_transaction_ref if result_code == 0 else None,
            result_code=result_code,
            result_description=data.get("ResultDesc"),
            status=status_for_result_code(result_code),
            raw_response=data,
        )

    def parse_callback(self, body: Dict[str, Any]) -> GatewayCallback:
        return parse_stk_callback(body)

    async def health_check(self) -> Dict[str, Any]:
        try:
            await self.get_access_token()
        except GatewayError as e:
            return {"ok": False, "gateway": self.name, "error": e.message}
        return {"ok": True, "gateway": self.name, "environment": self.settings.environment}

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def parse_stk_callback(body: Dict[str, Any]) -> GatewayCallback:
    """Parse a Daraja STK callback body into a ``GatewayCallback``.

    Raises:
        InvalidCallback: If the payload is malformed.
    """
    try:
        callback = body["Body"]["stkCallback"]
        request_ref = callback["CheckoutRequestID"]
        result_code = int(callback["ResultCode"])
    except (KeyError, TypeError, ValueError) as e:
        raise InvalidCallback(f"Malformed STK callback: {e}") from e
    if not request_ref:
        raise InvalidCallback("STK callback has no CheckoutRequestID")

    items: List[Dict[str, Any]] = (callback.get("CallbackMetadata") or {}).get("Item") or []
    metadata = {item.get("Name"): item.get("Value") for item in items if isinstance(item, dict)}

    amount = None
    if metadata.get("Amount") is not None:
        try:
            amount = to_minor_units(metadata["Amount"])
        except ValueError as e:
            raise InvalidCallback(str(e)) from e

    payer = metadata.get("PhoneNumber")
    receipt = metadata.get("MpesaReceiptNumber")
    if result_code == 0 and not receipt:
        raise InvalidCallback(f"Successful callback for {request_ref} has no receipt number")

    return GatewayCallback(
        external_request_ref=request_ref,
        merchant_request_ref=callback.get("MerchantRequestID"),
        external_transaction_ref=str(receipt) if receipt else None,
        result_code=result_code,
        result_description=callback.get("ResultDesc") or describe_result_code(result_code),
        amount=amount,
        payer_identifier=str(payer) if payer is not None else None,
    )
