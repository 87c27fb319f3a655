"""Concurrent gateway lookups for reconciliation."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from ..exceptions import GatewayError
from ..gateway import GatewayTransaction, PaymentGateway
from .models import LocalPayment

logger = logging.getLogger(__name__)


@dataclass
class LookupOutcome:
    """What the gateway said about one local payment."""
    payment_id: str
    transaction: Optional[GatewayTransaction] = None
    error: Optional[str] = None
    skipped: bool = False

    @property
    def failed(self) -> bool:
        return self.error is not None


class GatewayLookup:
    """
    Looks up local payments at the gateway with bounded fan-out.

    Each lookup has its own timeout. A failing or slow lookup only affects
    its own outcome. Once ``cancel_event`` is set no new lookups are issued;
    lookups already in flight are allowed to finish.
    """

    def __init__(
        self,
        gateway: PaymentGateway,
        timeout_seconds: float = 10.0,
        max_concurrency: int = 8,
    ):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.gateway = gateway
        self.timeout_seconds = timeout_seconds
        self.max_concurrency = max_concurrency

    async def lookup_one(self, payment: LocalPayment) -> LookupOutcome:
        """Query the gateway for one payment, converting failures into an outcome."""
        try:
            transaction = await asyncio.wait_for(
                self.gateway.query_transaction_status(
                    payment.external_request_ref,
                    payment.external_transaction_ref,
                ),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"Gateway lookup for payment {payment.payment_id} timed out "
                f"after {self.timeout_seconds}s"
            )
            return LookupOutcome(payment_id=payment.payment_id, error="timeout")
        except GatewayError as e:
            logger.warning(f"Gateway lookup for payment {payment.payment_id} failed: {e.message}")
            return LookupOutcome(payment_id=payment.payment_id, error=e.message)
        except Exception as e:
            logger.exception(f"Unexpected error looking up payment {payment.payment_id}")
            return LookupOutcome(payment_id=payment.payment_id, error=f"unexpected error: {e}")

        return LookupOutcome(payment_id=payment.payment_id, transaction=transaction)

    async def lookup_all(
        self,
        payments: List[LocalPayment],
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Dict[str, LookupOutcome]:
        """Look up every payment, keyed by payment id.

        Payments not looked up because of cancellation come back with
        ``skipped=True``.
        """
        cancel_event = cancel_event or asyncio.Event()
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def guarded(payment: LocalPayment) -> LookupOutcome:
            async with semaphore:
                if cancel_event.is_set():
                    return LookupOutcome(payment_id=payment.payment_id, skipped=True)
                return await self.lookup_one(payment)

        outcomes = await asyncio.gather(*(guarded(p) for p in payments))

        skipped = sum(1 for o in outcomes if o.skipped)
        failed = sum(1 for o in outcomes if o.failed)
        logger.info(
            f"Gateway lookups finished: {len(outcomes) - skipped - failed} answered, "
            f"{failed} failed, {skipped} skipped"
        )
        return {o.payment_id: o for o in outcomes}
