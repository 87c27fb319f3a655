"""In-memory gateway for exercising payment flows without Daraja."""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Set

from ..exceptions import GatewayError, GatewayUnreachable
from .base import (
    GatewayCallback,
    GatewayTransaction,
    GatewayTransactionStatus,
    InitiatedPayment,
    PaymentGateway,
    describe_result_code,
    status_for_result_code,
    to_major_units,
)
from .mpesa import parse_stk_callback

logger = logging.getLogger(__name__)


@dataclass
class SimulatedTransaction:
    """The simulator's ground truth for one payment request."""
    external_request_ref: str
    amount: int
    payer_identifier: str
    correlation_ref: Optional[str] = None
    transaction_ref: Optional[str] = None
    result_code: Optional[int] = None
    reversed: bool = False
    created_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def status(self) -> GatewayTransactionStatus:
        if self.reversed:
            return GatewayTransactionStatus.REVERSED
        return status_for_result_code(self.result_code)


@dataclass
class SimulatorConfig:
    """Configuration for simulator behavior."""
    delay_seconds: float = 0.0
    unreachable: bool = False


class SimulatorGateway(PaymentGateway):
    """
    Gateway double with controllable ground truth.

    Features:
    - In-memory transaction storage
    - Completing, failing and reversing transactions
    - Per-reference outages and slow lookups
    - Daraja-shaped callback payloads
    """

    name = "simulator"

    def __init__(self, config: Optional[SimulatorConfig] = None):
        self.config = config or SimulatorConfig()
        self._transactions: Dict[str, SimulatedTransaction] = {}
        self._unreachable_refs: Set[str] = set()
        self._slow_refs: Dict[str, float] = {}
        self.lookups: int = 0
        logger.info("SimulatorGateway initialized")

    def _generate_request_ref(self) -> str:
        return f"ws_CO_{uuid.uuid4().hex[:20].upper()}"

    def _generate_receipt(self) -> str:
        return uuid.uuid4().hex[:10].upper()

    def add_transaction(
        self,
        external_request_ref: str,
        amount: int,
        payer_identifier: str = "254700000000",
        transaction_ref: Optional[str] = None,
        result_code: Optional[int] = None,
    ) -> SimulatedTransaction:
        """Seed the gateway with a transaction it knows about."""
        txn = SimulatedTransaction(
            external_request_ref=external_request_ref,
            amount=amount,
            payer_identifier=payer_identifier,
            transaction_ref=transaction_ref,
            result_code=result_code,
        )
        self._transactions[external_request_ref] = txn
        return txn

    def get(self, external_request_ref: str) -> Optional[SimulatedTransaction]:
        return self._transactions.get(external_request_ref)

    def complete(
        self,
        external_request_ref: str,
        result_code: int = 0,
        transaction_ref: Optional[str] = None,
    ) -> SimulatedTransaction:
        """Record the payer's response to an STK prompt."""
        txn = self._transactions.get(external_request_ref)
        if txn is None:
            raise KeyError(external_request_ref)
        txn.result_code = result_code
        if result_code == 0:
            txn.transaction_ref = transaction_ref or txn.transaction_ref or self._generate_receipt()
        return txn

    def reverse(self, external_request_ref: str) -> SimulatedTransaction:
        txn = self._transactions[external_request_ref]
        txn.reversed = True
        return txn

    def make_unreachable(self, reference: str) -> None:
        """Fail lookups for one request or transaction ref."""
        self._unreachable_refs.add(reference)

    def make_slow(self, reference: str, seconds: float) -> None:
        self._slow_refs[reference] = seconds

    def build_callback(self, external_request_ref: str) -> Dict[str, Any]:
        """Build the Daraja callback body the gateway would push for a transaction."""
        txn = self._transactions[external_request_ref]
        result_code = txn.result_code if txn.result_code is not None else 0
        callback: Dict[str, Any] = {
            "MerchantRequestID": f"sim-{external_request_ref[-8:]}",
            "CheckoutRequestID": external_request_ref,
            "ResultCode": result_code,
            "ResultDesc": describe_result_code(result_code),
        }
        if result_code == 0:
            callback["CallbackMetadata"] = {
                "Item": [
                    {"Name": "Amount", "Value": float(to_major_units(txn.amount))},
                    {"Name": "MpesaReceiptNumber", "Value": txn.transaction_ref},
                    {"Name": "TransactionDate", "Value": int(txn.created_at.strftime("%Y%m%d%H%M%S"))},
                    {"Name": "PhoneNumber", "Value": int(txn.payer_identifier)},
                ]
            }
        return {"Body": {"stkCallback": callback}}

    async def initiate_payment(
        self,
        amount: int,
        payer_identifier: str,
        correlation_ref: str,
        description: Optional[str] = None,
    ) -> InitiatedPayment:
        if self.config.unreachable:
            raise GatewayUnreachable("Simulated gateway outage")
        if amount <= 0:
            raise GatewayError(f"Amount must be positive, got {amount}")

        request_ref = self._generate_request_ref()
        txn = self.add_transaction(request_ref, amount, payer_identifier)
        txn.correlation_ref = correlation_ref
        logger.info(f"Simulated STK push {request_ref} for {correlation_ref}")
        return InitiatedPayment(
            external_request_ref=request_ref,
            merchant_request_ref=f"sim-{request_ref[-8:]}",
            response_code="0",
            customer_message="Success. Request accepted for processing",
        )

    async def query_transaction_status(
        self,
        external_request_ref: str,
        external_transaction_ref: Optional[str] = None,
    ) -> GatewayTransaction:
        self.lookups += 1
        references = {external_request_ref, external_transaction_ref}
        delay = max([self._slow_refs.get(ref, 0.0) for ref in references if ref] + [self.config.delay_seconds])
        if delay:
            await asyncio.sleep(delay)
        if self.config.unreachable or references & self._unreachable_refs:
            raise GatewayUnreachable(f"Simulated outage looking up {external_request_ref}")

        txn = None
        if external_transaction_ref:
            txn = next(
                (t for t in self._transactions.values() if t.transaction_ref == external_transaction_ref),
                None,
            )
        if txn is None:
            txn = self._transactions.get(external_request_ref)
        if txn is None:
            return GatewayTransaction(found=False, external_request_ref=external_request_ref)

        return GatewayTransaction(
            found=True,
            external_request_ref=txn.external_request_ref,
            transaction_ref=txn.transaction_ref,
            amount=txn.amount,
            result_code=txn.result_code,
            result_description=describe_result_code(txn.result_code),
            status=txn.status,
        )

    def parse_callback(self, body: Dict[str, Any]) -> GatewayCallback:
        return parse_stk_callback(body)

    async def health_check(self) -> Dict[str, Any]:
        return {
            "ok": not self.config.unreachable,
            "gateway": self.name,
            "transactions": len(self._transactions),
        }
