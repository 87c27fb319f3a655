"""Gateway collaborator interface and canonical gateway models."""

import enum
from abc import ABC, abstractmethod
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from pydantic import BaseModel


class GatewayTransactionStatus(str, enum.Enum):
    SUCCESS = "success"
    FAILED = "failed"
    PENDING = "pending"
    REVERSED = "reversed"


RESULT_CODE_DESCRIPTIONS: Dict[int, str] = {
    0: "The service request is processed successfully.",
    1: "The balance is insufficient for the transaction.",
    1032: "Request cancelled by user.",
    1037: "DS timeout user cannot be reached.",
    2001: "The initiator information is invalid.",
    2006: "Wrong PIN entered.",
}


def describe_result_code(result_code: Optional[int]) -> str:
    if result_code is None:
        return "No result yet"
    return RESULT_CODE_DESCRIPTIONS.get(result_code, f"Payment failed with result code {result_code}")


def status_for_result_code(result_code: Optional[int]) -> GatewayTransactionStatus:
    if result_code is None:
        return GatewayTransactionStatus.PENDING
    if result_code == 0:
        return GatewayTransactionStatus.SUCCESS
    return GatewayTransactionStatus.FAILED


def to_minor_units(amount: Any) -> int:
    """Convert a major-unit amount such as ``2500.50`` to minor units exactly.

    Raises:
        ValueError: If the amount is not a number or has sub-cent precision.
    """
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise ValueError(f"Invalid amount: {amount!r}") from None
    if not value.is_finite():
        raise ValueError(f"Invalid amount: {amount!r}")
    minor = value.scaleb(2)
    if minor != minor.to_integral_value():
        raise ValueError(f"Amount {amount!r} has more than two decimal places")
    return int(minor)


def to_major_units(amount: int) -> Decimal:
    return Decimal(amount).scaleb(-2)


class InitiatedPayment(BaseModel):
    external_request_ref: str
    merchant_request_ref: Optional[str] = None
    response_code: Optional[str] = None
    customer_message: Optional[str] = None


class GatewayTransaction(BaseModel):
    """The gateway's view of one transaction. Amounts are in minor units."""
    found: bool
    external_request_ref: Optional[str] = None
    transaction_ref: Optional[str] = None
    amount: Optional[int] = None
    result_code: Optional[int] = None
    result_description: Optional[str] = None
    status: Optional[GatewayTransactionStatus] = None
    raw_response: Optional[Dict[str, Any]] = None


class GatewayCallback(BaseModel):
    """A parsed asynchronous payment callback. Amounts are in minor units."""
    external_request_ref: str
    merchant_request_ref: Optional[str] = None
    external_transaction_ref: Optional[str] = None
    result_code: int
    result_description: Optional[str] = None
    amount: Optional[int] = None
    payer_identifier: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.result_code == 0


class PaymentGateway(ABC):
    """
    Minimal mobile-money gateway interface. Lookups are read-only; only
    ``initiate_payment`` asks the gateway to move money.
    """

    name: str = "gateway"

    @abstractmethod
    async def initiate_payment(
        self,
        amount: int,
        payer_identifier: str,
        correlation_ref: str,
        description: Optional[str] = None,
    ) -> InitiatedPayment:
        """Ask the payer to approve ``amount`` (minor units)."""
        raise NotImplementedError

    @abstractmethod
    async def query_transaction_status(
        self,
        external_request_ref: str,
        external_transaction_ref: Optional[str] = None,
    ) -> GatewayTransaction:
        """
        Look a transaction up at the gateway, by transaction ref when known.

        Returns ``found=False`` when the gateway has no such transaction.

        Raises:
            GatewayUnreachable: On transport failure or timeout.
        """
        raise NotImplementedError

    @abstractmethod
    def parse_callback(self, body: Dict[str, Any]) -> GatewayCallback:
        """
        Validate and canonicalize a callback payload.

        Raises:
            InvalidCallback: If the payload is malformed.
        """
        raise NotImplementedError

    async def health_check(self) -> Dict[str, Any]:
        return {"ok": True, "gateway": self.name}

    async def aclose(self) -> None:
        return None
