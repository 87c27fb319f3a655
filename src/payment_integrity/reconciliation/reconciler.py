"""Reconciliation logic for comparing local payments with the gateway."""

import logging
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Set

from ..gateway import GatewayTransactionStatus
from ..integrity.states import PaymentState, SESSION_PAID_STATES
from .lookup import LookupOutcome
from .models import (
    CATEGORY_ORDER,
    IssueCode,
    LocalPayment,
    ReconciliationCategory,
    ReconciliationItem,
    ReconciliationSummary,
)

logger = logging.getLogger(__name__)

UNCONFIRMED_STATES = frozenset({
    PaymentState.NOT_STARTED.value,
    PaymentState.INITIATED.value,
    PaymentState.PROCESSING.value,
})

DISCREPANCY_ISSUES = frozenset({
    IssueCode.AMOUNT_MISMATCH,
    IssueCode.STATUS_MISMATCH,
    IssueCode.RESULT_CODE_MISMATCH,
    IssueCode.TRANSACTION_REF_MISMATCH,
    IssueCode.DUPLICATE_TRANSACTION,
    IssueCode.ORPHANED_PAYMENT,
})

UNMATCHED_ISSUES = frozenset({
    IssueCode.NOT_FOUND_AT_GATEWAY,
    IssueCode.GATEWAY_UNREACHABLE,
    IssueCode.STUCK_AWAITING_CONFIRMATION,
})

_SESSION_PAID_VALUES = frozenset(s.value for s in SESSION_PAID_STATES)


def find_duplicate_refs(payments: Iterable[LocalPayment]) -> Set[str]:
    """Transaction refs carried by more than one of the given payments."""
    seen: Dict[str, int] = {}
    for payment in payments:
        if payment.external_transaction_ref:
            seen[payment.external_transaction_ref] = seen.get(payment.external_transaction_ref, 0) + 1
    return {ref for ref, count in seen.items() if count > 1}


def item_sort_key(item: ReconciliationItem):
    """Category first, then confirmation time with unconfirmed last, then payment id."""
    return (
        CATEGORY_ORDER[item.category],
        item.confirmed_at is None,
        item.confirmed_at or datetime.min,
        item.payment_id,
    )


class Reconciler:
    """Classifies local payments against what the gateway reports.

    The reconciler is pure: it never queries anything and never changes a
    payment. Every payment it is given ends up in exactly one category.
    """

    # Local payment status -> gateway statuses that agree with it
    STATUS_EQUIVALENTS: Dict[str, Set[GatewayTransactionStatus]] = {
        PaymentState.NOT_STARTED.value: {GatewayTransactionStatus.PENDING},
        PaymentState.INITIATED.value: {GatewayTransactionStatus.PENDING},
        PaymentState.PROCESSING.value: {GatewayTransactionStatus.PENDING},
        PaymentState.CONFIRMED.value: {GatewayTransactionStatus.SUCCESS},
        PaymentState.FAILED.value: {GatewayTransactionStatus.FAILED},
        PaymentState.REFUNDED.value: {GatewayTransactionStatus.REVERSED},
    }

    def __init__(self, pending_grace: timedelta = timedelta(minutes=10)):
        """Initialize the reconciler.

        Args:
            pending_grace: How long after initiation an unconfirmed payment is
                reported as pending without asking the gateway.
        """
        self.pending_grace = pending_grace

    def within_grace(self, payment: LocalPayment, now: datetime) -> bool:
        """True for unconfirmed payments too young for a definitive verdict."""
        if payment.status not in UNCONFIRMED_STATES or payment.initiated_at is None:
            return False
        return now - payment.initiated_at <= self.pending_grace

    def _statuses_match(self, local_status: str, gateway_status: Optional[GatewayTransactionStatus]) -> bool:
        return gateway_status in self.STATUS_EQUIVALENTS.get(local_status, set())

    def _compare(self, payment: LocalPayment, external) -> List[IssueCode]:
        issues: List[IssueCode] = []
        unconfirmed = payment.status in UNCONFIRMED_STATES

        if not self._statuses_match(payment.status, external.status):
            issues.append(IssueCode.STATUS_MISMATCH)
            if unconfirmed and external.status == GatewayTransactionStatus.SUCCESS:
                # Money moved but the callback never landed.
                issues.append(IssueCode.ORPHANED_PAYMENT)

        if external.result_code is not None:
            if payment.result_code is not None and payment.result_code != external.result_code:
                issues.append(IssueCode.RESULT_CODE_MISMATCH)
            elif payment.status == PaymentState.CONFIRMED.value and external.result_code != 0:
                issues.append(IssueCode.RESULT_CODE_MISMATCH)

        if external.amount is not None:
            local_amount = (
                payment.amount_confirmed if payment.amount_confirmed is not None else payment.amount_expected
            )
            if local_amount != external.amount:
                issues.append(IssueCode.AMOUNT_MISMATCH)

        if (
            external.transaction_ref
            and payment.external_transaction_ref
            and external.transaction_ref != payment.external_transaction_ref
        ):
            issues.append(IssueCode.TRANSACTION_REF_MISMATCH)

        return issues

    def categorize(self, issues: List[IssueCode]) -> ReconciliationCategory:
        found = set(issues)
        if found & DISCREPANCY_ISSUES:
            return ReconciliationCategory.DISCREPANCY
        if found & UNMATCHED_ISSUES:
            return ReconciliationCategory.UNMATCHED
        if IssueCode.AWAITING_CONFIRMATION in found:
            return ReconciliationCategory.PENDING
        return ReconciliationCategory.MATCHED

    def classify(
        self,
        payment: LocalPayment,
        outcome: Optional[LookupOutcome],
        duplicate_refs: Set[str],
    ) -> ReconciliationItem:
        """Classify one payment.

        ``outcome`` is None when the payment was not looked up because it is
        still within its pending grace. A looked-up payment the gateway still
        reports as pending has outlived that grace and is flagged as stuck.
        """
        issues: List[IssueCode] = []
        external = outcome.transaction if outcome is not None else None

        if outcome is None:
            issues.append(IssueCode.AWAITING_CONFIRMATION)
        elif outcome.failed:
            issues.append(IssueCode.GATEWAY_UNREACHABLE)
        elif external is None or not external.found:
            issues.append(IssueCode.NOT_FOUND_AT_GATEWAY)
        elif (
            external.status == GatewayTransactionStatus.PENDING
            and payment.status in UNCONFIRMED_STATES
        ):
            issues.append(IssueCode.STUCK_AWAITING_CONFIRMATION)
        else:
            issues.extend(self._compare(payment, external))

        if payment.external_transaction_ref in duplicate_refs:
            issues.append(IssueCode.DUPLICATE_TRANSACTION)

        if (
            payment.status == PaymentState.CONFIRMED.value
            and payment.session_status not in _SESSION_PAID_VALUES
            and IssueCode.ORPHANED_PAYMENT not in issues
        ):
            issues.append(IssueCode.ORPHANED_PAYMENT)

        found = external is not None and external.found
        return ReconciliationItem(
            payment_id=payment.payment_id,
            session_id=payment.session_id,
            category=self.categorize(issues),
            issues=issues,
            local_status=payment.status,
            external_status=external.status.value if found and external.status else None,
            session_status=payment.session_status,
            external_request_ref=payment.external_request_ref,
            external_transaction_ref=payment.external_transaction_ref,
            external_transaction_ref_reported=external.transaction_ref if found else None,
            amount_expected=payment.amount_expected,
            amount_confirmed=payment.amount_confirmed,
            external_amount=external.amount if found else None,
            local_result_code=payment.result_code,
            external_result_code=external.result_code if found else None,
            payer=payment.payer,
            initiated_at=payment.initiated_at,
            confirmed_at=payment.confirmed_at,
        )

    def reconcile(
        self,
        payments: List[LocalPayment],
        outcomes: Dict[str, LookupOutcome],
        duplicate_refs: Set[str],
        now: datetime,
    ) -> List[ReconciliationItem]:
        """Classify every examined payment and return items in report order.

        Payments whose lookup was skipped are left out.
        """
        items: List[ReconciliationItem] = []
        for payment in payments:
            outcome = outcomes.get(payment.payment_id)
            if outcome is None and not self.within_grace(payment, now):
                continue
            if outcome is not None and outcome.skipped:
                continue
            items.append(self.classify(payment, outcome, duplicate_refs))

        items.sort(key=item_sort_key)
        return items

    @staticmethod
    def summarize(items: List[ReconciliationItem], total_in_window: int) -> ReconciliationSummary:
        counts = {category: 0 for category in ReconciliationCategory}
        confirmed_total = 0
        for item in items:
            counts[item.category] += 1
            if item.local_status == PaymentState.CONFIRMED.value and item.amount_confirmed:
                confirmed_total += item.amount_confirmed

        summary = ReconciliationSummary(
            matched=counts[ReconciliationCategory.MATCHED],
            unmatched=counts[ReconciliationCategory.UNMATCHED],
            discrepancy=counts[ReconciliationCategory.DISCREPANCY],
            pending=counts[ReconciliationCategory.PENDING],
            total_in_window=total_in_window,
            skipped=total_in_window - len(items),
            total_confirmed_amount=confirmed_total,
        )
        logger.info(
            f"Reconciliation classified {len(items)} of {total_in_window}: "
            f"{summary.matched} matched, {summary.unmatched} unmatched, "
            f"{summary.discrepancy} discrepancies, {summary.pending} pending"
        )
        return summary
