"""Payment and session services: the single write path for state changes.

Every mutation of a PaymentRecord or SessionRecord goes through these
services, which consult the transition validator, hold per-record locks,
append audit entries and commit.
"""

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from .database import (
    AuditLogRepository,
    PaymentRecord,
    PaymentRecordRepository,
    SessionRecord,
    SessionRecordRepository,
    mask_identifier,
)
from .exceptions import (
    AuthorityViolation,
    GatewayError,
    InvariantViolation,
    RecordNotFound,
)
from .gateway.base import GatewayCallback, GatewayTransactionStatus, PaymentGateway
from .integrity.states import (
    SESSION_PAID_STATES,
    EntityType,
    PaymentState,
    SessionState,
    Subsystem,
    is_payment_regression,
    payment_state_for_result,
)
from .integrity.stuck import StuckStateDetector
from .integrity.validator import TransitionRequest, TransitionValidator, ValidationResult
from .locks import KeyedLocks, payment_lock_keys

logger = logging.getLogger(__name__)


class EventOutcome(str, enum.Enum):
    CREATED = "created"
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    STALE = "stale"


@dataclass(frozen=True)
class PaymentEvent:
    """A change in a payment's status reported by the gateway or the platform.

    Amounts are in minor units.
    """
    external_request_ref: str
    status: PaymentState
    external_transaction_ref: Optional[str] = None
    result_code: Optional[int] = None
    result_description: Optional[str] = None
    amount: Optional[int] = None
    payer_identifier: Optional[str] = None
    occurred_at: Optional[datetime] = None
    session_id: Optional[str] = None
    amount_expected: Optional[int] = None

    @classmethod
    def from_callback(
        cls,
        callback: GatewayCallback,
        occurred_at: Optional[datetime] = None,
    ) -> "PaymentEvent":
        status = payment_state_for_result(
            callback.result_code, bool(callback.external_transaction_ref)
        )
        return cls(
            external_request_ref=callback.external_request_ref,
            status=status,
            external_transaction_ref=(
                callback.external_transaction_ref if status == PaymentState.CONFIRMED else None
            ),
            result_code=callback.result_code,
            result_description=callback.result_description,
            amount=callback.amount,
            payer_identifier=callback.payer_identifier,
            occurred_at=occurred_at,
        )


@dataclass
class PaymentEventResult:
    payment: PaymentRecord
    outcome: EventOutcome
    previous_status: Optional[PaymentState] = None
    session_confirmed: bool = False
    session_error: Optional[str] = None
    warning: Optional[str] = None
    session_record: Optional[SessionRecord] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "payment": self.payment.to_dict(),
            "previous_status": self.previous_status.value if self.previous_status else None,
            "session_confirmed": self.session_confirmed,
            "session_error": self.session_error,
            "warning": self.warning,
        }


class LoggingNotifier:
    """Default side-effect sink for session confirmations."""

    async def session_confirmed(self, session_record: SessionRecord, payment: PaymentRecord) -> None:
        logger.info(
            f"Session {session_record.id} confirmed by payment {payment.id} "
            f"({payment.external_transaction_ref})"
        )


def _require_allowed(check: ValidationResult, request: TransitionRequest) -> None:
    if not check.allowed:
        raise AuthorityViolation(check.error or "Transition denied", request=request)


class SessionStateService:
    """Session lifecycle actions, each validated and audited."""

    def __init__(
        self,
        session: AsyncSession,
        validator: TransitionValidator,
        locks: Optional[KeyedLocks] = None,
    ):
        self.session = session
        self.validator = validator
        self.locks = locks or KeyedLocks()
        self.session_repo = SessionRecordRepository(session)
        self.payment_repo = PaymentRecordRepository(session)
        self.audit_repo = AuditLogRepository(session)

    async def transition(
        self,
        record: SessionRecord,
        target: SessionState,
        acting_subsystem: Subsystem,
        reason: Optional[str] = None,
        payment: Optional[PaymentRecord] = None,
    ) -> ValidationResult:
        """Move ``record`` to ``target`` without committing.

        Raises:
            AuthorityViolation: If strict enforcement denies the transition.
            InvariantViolation: If the target state's preconditions do not hold.
        """
        target = SessionState(target)
        current = SessionState(record.status)
        request = TransitionRequest(
            entity_type=EntityType.SESSION,
            entity_id=record.id,
            current_state=current,
            proposed_state=target,
            acting_subsystem=acting_subsystem,
        )
        check = self.validator.validate(request)
        _require_allowed(check, request)

        if target == SessionState.CONFIRMED:
            if payment is None and record.payment_id:
                payment = await self.payment_repo.get_by_id(record.payment_id)
            if payment is None or payment.status != PaymentState.CONFIRMED.value:
                raise InvariantViolation(
                    f"Session {record.id} cannot be confirmed without a confirmed payment"
                )
        if target in (SessionState.IN_PROGRESS, SessionState.COMPLETED) and record.confirmed_at is None:
            raise InvariantViolation(
                f"Session {record.id} was never confirmed and cannot move to {target.value}"
            )

        now = datetime.utcnow()
        record.status = target.value
        record.state_entered_at = now
        if target == SessionState.CONFIRMED:
            record.confirmed_at = now
        await self.audit_repo.append(
            EntityType.SESSION,
            record.id,
            current,
            target,
            acting_subsystem,
            reason=reason,
            violation=check.warning,
        )
        logger.info(f"Session {record.id}: {current.value} -> {target.value} by {Subsystem(acting_subsystem).value}")
        return check

    async def create_session(
        self,
        client_id: str,
        provider_id: str,
        price: int,
        session_type: str = "individual",
        scheduled_at: Optional[datetime] = None,
        currency: str = "KES",
    ) -> SessionRecord:
        """Book a session on behalf of a client. It starts awaiting approval."""
        request = TransitionRequest(
            entity_type=EntityType.SESSION,
            entity_id="new",
            current_state=None,
            proposed_state=SessionState.PENDING_APPROVAL,
            acting_subsystem=Subsystem.CLIENT,
        )
        check = self.validator.validate(request)
        _require_allowed(check, request)

        record = await self.session_repo.create(
            client_id=client_id,
            provider_id=provider_id,
            price=price,
            session_type=session_type,
            scheduled_at=scheduled_at,
            currency=currency,
        )
        await self.audit_repo.append(
            EntityType.SESSION,
            record.id,
            None,
            SessionState.PENDING_APPROVAL,
            Subsystem.CLIENT,
            reason="session requested",
            violation=check.warning,
        )
        await self.session.commit()
        return record

    async def _act(
        self,
        session_id: str,
        target: SessionState,
        acting_subsystem: Subsystem,
        reason: Optional[str],
    ) -> SessionRecord:
        async with self.locks.hold(f"session:{session_id}"):
            try:
                record = await self.session_repo.get_by_id(session_id, for_update=True)
                if record is None:
                    raise RecordNotFound("Session", session_id)
                await self.transition(record, target, acting_subsystem, reason)
                await self.session.commit()
            except Exception:
                await self.session.rollback()
                raise
        return record

    async def approve(self, session_id: str, acting_subsystem: Subsystem = Subsystem.PROVIDER,
                      reason: Optional[str] = None) -> SessionRecord:
        return await self._act(session_id, SessionState.APPROVED, acting_subsystem, reason)

    async def decline(self, session_id: str, acting_subsystem: Subsystem = Subsystem.PROVIDER,
                      reason: Optional[str] = None) -> SessionRecord:
        return await self._act(session_id, SessionState.DECLINED, acting_subsystem, reason)

    async def cancel(self, session_id: str, acting_subsystem: Subsystem,
                     reason: Optional[str] = None) -> SessionRecord:
        return await self._act(session_id, SessionState.CANCELLED, acting_subsystem, reason)

    async def start(self, session_id: str, acting_subsystem: Subsystem = Subsystem.SESSION,
                    reason: Optional[str] = None) -> SessionRecord:
        return await self._act(session_id, SessionState.IN_PROGRESS, acting_subsystem, reason)

    async def complete(self, session_id: str, acting_subsystem: Subsystem = Subsystem.SESSION,
                       reason: Optional[str] = None) -> SessionRecord:
        return await self._act(session_id, SessionState.COMPLETED, acting_subsystem, reason)


class PaymentService:
    """Idempotent payment write path plus payment initiation and refunds."""

    def __init__(
        self,
        session: AsyncSession,
        validator: TransitionValidator,
        locks: Optional[KeyedLocks] = None,
        gateway: Optional[PaymentGateway] = None,
        notifier: Optional[Any] = None,
        currency: str = "KES",
    ):
        """Initialize the service.

        Args:
            session: AsyncSession used for every read and write.
            validator: Transition validator consulted before each mutation.
            locks: Lock registry shared by every writer in the process.
            gateway: Gateway used to initiate payments.
            notifier: Receives ``session_confirmed`` once per confirmed session.
            currency: Currency for newly registered payments.
        """
        self.session = session
        self.validator = validator
        self.locks = locks or KeyedLocks()
        self.gateway = gateway
        self.notifier = notifier or LoggingNotifier()
        self.currency = currency
        self.payment_repo = PaymentRecordRepository(session)
        self.session_repo = SessionRecordRepository(session)
        self.audit_repo = AuditLogRepository(session)
        self.sessions = SessionStateService(session, validator, self.locks)

    async def apply_payment_event(self, event: PaymentEvent) -> PaymentEventResult:
        """Apply a payment event exactly once.

        Redelivered events for an already settled transaction and events that
        would move a payment backwards are absorbed and reported through the
        result's outcome.

        Raises:
            AuthorityViolation: If strict enforcement rejects the transition.
            InvariantViolation: If the event would break a payment invariant.
            RecordNotFound: If the event names a session that does not exist.
        """
        status = PaymentState(event.status)
        if status == PaymentState.NOT_STARTED:
            raise InvariantViolation("A payment event cannot report not_started")
        if not event.external_request_ref:
            raise InvariantViolation("A payment event needs an external request reference")

        keys = payment_lock_keys(event.external_request_ref, event.external_transaction_ref)
        async with self.locks.hold(*keys):
            try:
                result = await self._apply(event, status)
                await self.session.commit()
            except Exception:
                await self.session.rollback()
                raise

        if result.session_confirmed:
            await self.notifier.session_confirmed(result.session_record, result.payment)
        return result

    async def _register(self, event: PaymentEvent) -> PaymentRecord:
        request = TransitionRequest(
            entity_type=EntityType.PAYMENT,
            entity_id=event.external_request_ref,
            current_state=PaymentState.NOT_STARTED,
            proposed_state=PaymentState.INITIATED,
            acting_subsystem=Subsystem.PAYMENT,
        )
        check = self.validator.validate(request)
        _require_allowed(check, request)

        session_record = None
        if event.session_id:
            session_record = await self.session_repo.get_by_id(event.session_id, for_update=True)
            if session_record is None:
                raise RecordNotFound("Session", event.session_id)

        amount_expected = event.amount_expected
        if amount_expected is None:
            amount_expected = session_record.price if session_record else (event.amount or 0)

        payment = await self.payment_repo.create(
            external_request_ref=event.external_request_ref,
            amount_expected=amount_expected,
            payer_identifier=event.payer_identifier,
            currency=session_record.currency if session_record else self.currency,
            status=PaymentState.INITIATED,
            initiated_at=event.occurred_at,
        )
        if session_record is not None:
            session_record.payment_id = payment.id

        await self.audit_repo.append(
            EntityType.PAYMENT,
            payment.id,
            PaymentState.NOT_STARTED,
            PaymentState.INITIATED,
            Subsystem.PAYMENT,
            reason="payment request registered",
            violation=check.warning,
        )
        await self.payment_repo.add_attempt(payment, "initiated", status=PaymentState.INITIATED)
        return payment

    async def _apply(self, event: PaymentEvent, status: PaymentState) -> PaymentEventResult:
        payment = await self.payment_repo.get_by_request_ref(event.external_request_ref, for_update=True)
        created = False
        if payment is None:
            payment = await self._register(event)
            created = True
            if status == PaymentState.INITIATED:
                return PaymentEventResult(payment=payment, outcome=EventOutcome.CREATED)

        txn_ref = event.external_transaction_ref
        if txn_ref and status != PaymentState.REFUNDED:
            owner = await self.payment_repo.find_settled_by_transaction_ref(txn_ref)
            if owner is not None:
                if owner.external_request_ref != event.external_request_ref:
                    logger.warning(
                        f"Transaction {txn_ref} reported for request {event.external_request_ref} "
                        f"is already settled on payment {owner.id}"
                    )
                await self.payment_repo.add_attempt(
                    owner,
                    "duplicate",
                    status=status,
                    result_code=event.result_code,
                    external_transaction_ref=txn_ref,
                    detail=f"redelivery for request {event.external_request_ref}",
                )
                logger.info(f"Duplicate delivery of transaction {txn_ref} for payment {owner.id}")
                return PaymentEventResult(
                    payment=owner,
                    outcome=EventOutcome.DUPLICATE,
                    previous_status=PaymentState(owner.status),
                )

        current = PaymentState(payment.status)
        if is_payment_regression(current, status):
            await self.payment_repo.add_attempt(
                payment,
                "ignored_stale",
                status=status,
                result_code=event.result_code,
                external_transaction_ref=txn_ref,
                detail=f"payment already {current.value}",
            )
            logger.info(
                f"Ignoring stale {status.value} event for payment {payment.id} "
                f"already {current.value}"
            )
            return PaymentEventResult(payment=payment, outcome=EventOutcome.STALE, previous_status=current)

        request = TransitionRequest(
            entity_type=EntityType.PAYMENT,
            entity_id=payment.id,
            current_state=current,
            proposed_state=status,
            acting_subsystem=Subsystem.PAYMENT,
        )
        check = self.validator.validate(request)
        _require_allowed(check, request)

        if status == PaymentState.CONFIRMED and not txn_ref:
            raise InvariantViolation(
                f"Payment {payment.id} cannot be confirmed without a transaction reference"
            )

        now = datetime.utcnow()
        payment.status = status.value
        payment.state_entered_at = now
        if event.result_code is not None:
            payment.result_code = event.result_code
            payment.result_description = event.result_description
        if event.payer_identifier and not payment.payer_identifier:
            payment.payer_identifier = event.payer_identifier

        if status == PaymentState.CONFIRMED:
            payment.external_transaction_ref = txn_ref
            payment.amount_confirmed = event.amount if event.amount is not None else payment.amount_expected
            payment.confirmed_at = event.occurred_at or now
            if payment.amount_confirmed != payment.amount_expected:
                logger.warning(
                    f"Payment {payment.id} confirmed for {payment.amount_confirmed} "
                    f"but {payment.amount_expected} was expected"
                )
        elif status == PaymentState.REFUNDED:
            payment.amount_refunded = payment.amount_confirmed or 0
            payment.amount_confirmed = None
            payment.refunded_at = event.occurred_at or now

        await self.payment_repo.add_attempt(
            payment,
            "applied",
            status=status,
            result_code=event.result_code,
            external_transaction_ref=txn_ref,
        )
        await self.audit_repo.append(
            EntityType.PAYMENT,
            payment.id,
            current,
            status,
            Subsystem.PAYMENT,
            reason=event.result_description,
            violation=check.warning,
        )
        logger.info(
            f"Payment {payment.id} ({mask_identifier(payment.payer_identifier)}): "
            f"{current.value} -> {status.value}"
        )

        result = PaymentEventResult(
            payment=payment,
            outcome=EventOutcome.CREATED if created else EventOutcome.APPLIED,
            previous_status=current,
            warning=check.warning,
        )
        if status == PaymentState.CONFIRMED:
            await self._confirm_session(payment, result)
        return result

    async def _confirm_session(self, payment: PaymentRecord, result: PaymentEventResult) -> None:
        session_record = await self.session_repo.get_by_payment_id(payment.id, for_update=True)
        result.session_record = session_record
        if session_record is None:
            logger.warning(f"Confirmed payment {payment.id} is not linked to a session")
            return
        try:
            await self.sessions.transition(
                session_record,
                SessionState.CONFIRMED,
                Subsystem.PAYMENT,
                reason=f"payment {payment.id} confirmed",
                payment=payment,
            )
        except (AuthorityViolation, InvariantViolation) as e:
            # The money has moved; keep the payment confirmed and surface the
            # session as orphaned.
            result.session_error = e.message
            logger.error(
                f"Payment {payment.id} confirmed but session {session_record.id} "
                f"could not be confirmed: {e.message}"
            )
            return
        result.session_confirmed = True

    async def initiate_payment(
        self,
        session_id: str,
        payer_identifier: str,
        description: Optional[str] = None,
    ) -> PaymentEventResult:
        """Send a payment request for an approved session and record it as initiated."""
        if self.gateway is None:
            raise RuntimeError("PaymentService was created without a gateway")

        session_record = await self.session_repo.get_by_id(session_id)
        if session_record is None:
            raise RecordNotFound("Session", session_id)
        if session_record.status != SessionState.APPROVED.value:
            raise InvariantViolation(
                f"Session {session_id} is {session_record.status}; only approved sessions can be paid"
            )

        initiated = await self.gateway.initiate_payment(
            amount=session_record.price,
            payer_identifier=payer_identifier,
            correlation_ref=session_id,
            description=description,
        )
        return await self.apply_payment_event(PaymentEvent(
            external_request_ref=initiated.external_request_ref,
            status=PaymentState.INITIATED,
            payer_identifier=payer_identifier,
            session_id=session_id,
            amount_expected=session_record.price,
            occurred_at=datetime.utcnow(),
        ))

    async def refund_payment(
        self,
        payment_id: str,
        acting_subsystem: Subsystem = Subsystem.ADMIN,
        reason: Optional[str] = None,
    ) -> PaymentRecord:
        """Mark a confirmed payment refunded. The confirmed amount moves to ``amount_refunded``."""
        payment = await self.payment_repo.get_by_id(payment_id)
        if payment is None:
            raise RecordNotFound("Payment", payment_id)

        keys = payment_lock_keys(payment.external_request_ref, payment.external_transaction_ref)
        async with self.locks.hold(*keys):
            try:
                payment = await self.payment_repo.get_by_id(payment_id, for_update=True)
                current = PaymentState(payment.status)
                request = TransitionRequest(
                    entity_type=EntityType.PAYMENT,
                    entity_id=payment.id,
                    current_state=current,
                    proposed_state=PaymentState.REFUNDED,
                    acting_subsystem=acting_subsystem,
                )
                check = self.validator.validate(request)
                _require_allowed(check, request)
                if current != PaymentState.CONFIRMED:
                    raise InvariantViolation(f"Payment {payment_id} is {current.value}; only confirmed payments can be refunded")

                now = datetime.utcnow()
                payment.status = PaymentState.REFUNDED.value
                payment.state_entered_at = now
                payment.amount_refunded = payment.amount_confirmed or 0
                payment.amount_confirmed = None
                payment.refunded_at = now
                await self.payment_repo.add_attempt(
                    payment, "refunded", status=PaymentState.REFUNDED, detail=reason
                )
                await self.audit_repo.append(
                    EntityType.PAYMENT,
                    payment.id,
                    current,
                    PaymentState.REFUNDED,
                    acting_subsystem,
                    reason=reason,
                    violation=check.warning,
                )
                await self.session.commit()
            except Exception:
                await self.session.rollback()
                raise

        logger.info(f"Payment {payment_id} refunded {payment.amount_refunded} by {Subsystem(acting_subsystem).value}")
        return payment


@dataclass
class OrphanCheckResult:
    payment_id: str
    is_orphaned: bool
    reasons: List[str] = field(default_factory=list)
    gateway_status: Optional[str] = None
    gateway_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "payment_id": self.payment_id,
            "is_orphaned": self.is_orphaned,
            "reasons": list(self.reasons),
            "gateway_status": self.gateway_status,
            "gateway_error": self.gateway_error,
        }


class OrphanChecker:
    """Find payments where money moved but local state did not follow. Read-only."""

    def __init__(
        self,
        session: AsyncSession,
        gateway: Optional[PaymentGateway] = None,
        detector: Optional[StuckStateDetector] = None,
    ):
        self.session = session
        self.gateway = gateway
        self.detector = detector or StuckStateDetector()
        self.payment_repo = PaymentRecordRepository(session)
        self.session_repo = SessionRecordRepository(session)

    async def check(self, payment_id: str, now: Optional[datetime] = None) -> OrphanCheckResult:
        payment = await self.payment_repo.get_by_id(payment_id)
        if payment is None:
            raise RecordNotFound("Payment", payment_id)

        result = OrphanCheckResult(payment_id=payment_id, is_orphaned=False)
        status = PaymentState(payment.status)

        if status == PaymentState.CONFIRMED:
            session_record = await self.session_repo.get_by_payment_id(payment.id)
            if session_record is None:
                result.reasons.append("confirmed payment is not linked to any session")
            elif SessionState(session_record.status) not in SESSION_PAID_STATES:
                result.reasons.append(
                    f"payment confirmed but session {session_record.id} is {session_record.status}"
                )

        if payment.external_transaction_ref and status not in (PaymentState.CONFIRMED, PaymentState.REFUNDED):
            result.reasons.append(
                f"transaction {payment.external_transaction_ref} recorded but payment is {status.value}"
            )

        if status in (PaymentState.INITIATED, PaymentState.PROCESSING) and self.gateway is not None:
            stuck = self.detector.is_stuck(
                EntityType.PAYMENT, status, payment.state_entered_at, now, payment.id
            )
            if stuck.is_stuck:
                try:
                    txn = await self.gateway.query_transaction_status(
                        payment.external_request_ref, payment.external_transaction_ref
                    )
                except GatewayError as e:
                    result.gateway_error = e.message
                    logger.warning(f"Orphan check for {payment_id} could not reach gateway: {e.message}")
                else:
                    if txn.found and txn.status:
                        result.gateway_status = txn.status.value
                    if txn.found and txn.status == GatewayTransactionStatus.SUCCESS:
                        result.reasons.append(
                            f"gateway reports success but payment has been {status.value} "
                            f"for {stuck.elapsed}"
                        )

        result.is_orphaned = bool(result.reasons)
        if result.is_orphaned:
            logger.warning(f"Payment {payment_id} is orphaned: {'; '.join(result.reasons)}")
        return result
