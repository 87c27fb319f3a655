"""Repository layer for payment, session and audit persistence."""

import json
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import select, and_, or_, func
from sqlalchemy.ext.asyncio import AsyncSession

from ..integrity.states import PAYMENT_TERMINAL_STATES, PaymentState, SessionState
from .models import (
    AuditLogEntry,
    EnforcementChangeRecord,
    PaymentAttempt,
    PaymentRecord,
    ReconciliationRunRecord,
    SessionRecord,
)

logger = logging.getLogger(__name__)

SESSION_CLOSED_STATES = (
    SessionState.DECLINED.value,
    SessionState.CANCELLED.value,
    SessionState.COMPLETED.value,
)


def _value(state) -> str:
    return getattr(state, "value", state)


class PaymentRecordRepository:
    """Repository for PaymentRecord reads and writes."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        external_request_ref: str,
        amount_expected: int,
        payer_identifier: Optional[str] = None,
        currency: str = "KES",
        status: PaymentState = PaymentState.INITIATED,
        initiated_at: Optional[datetime] = None,
    ) -> PaymentRecord:
        """Create a new payment record.

        Args:
            external_request_ref: Gateway request reference that correlates callbacks.
            amount_expected: Amount in minor units.
            payer_identifier: Phone number or account paying.
            currency: Three-letter currency code.
            status: Initial status.
            initiated_at: When the payment request was sent.
        """
        now = datetime.utcnow()
        payment = PaymentRecord(
            external_request_ref=external_request_ref,
            amount_expected=amount_expected,
            payer_identifier=payer_identifier,
            currency=currency.upper(),
            status=_value(status),
            initiated_at=initiated_at or now,
            state_entered_at=now,
            attempts=[],
        )
        self.session.add(payment)
        await self.session.flush()

        logger.info(f"Created payment {payment.id} for request {external_request_ref}")
        return payment

    async def get_by_id(self, payment_id: str, for_update: bool = False) -> Optional[PaymentRecord]:
        stmt = select(PaymentRecord).where(PaymentRecord.id == payment_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_request_ref(
        self,
        external_request_ref: str,
        for_update: bool = False,
    ) -> Optional[PaymentRecord]:
        stmt = select(PaymentRecord).where(
            PaymentRecord.external_request_ref == external_request_ref
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_transaction_ref(self, external_transaction_ref: str) -> List[PaymentRecord]:
        """All payments carrying ``external_transaction_ref``. More than one is a defect."""
        result = await self.session.execute(
            select(PaymentRecord)
            .where(PaymentRecord.external_transaction_ref == external_transaction_ref)
            .order_by(PaymentRecord.created_at, PaymentRecord.id)
        )
        return list(result.scalars().all())

    async def find_settled_by_transaction_ref(
        self,
        external_transaction_ref: str,
    ) -> Optional[PaymentRecord]:
        """The confirmed or refunded payment that already owns this transaction ref."""
        result = await self.session.execute(
            select(PaymentRecord)
            .where(
                and_(
                    PaymentRecord.external_transaction_ref == external_transaction_ref,
                    PaymentRecord.status.in_([
                        PaymentState.CONFIRMED.value,
                        PaymentState.REFUNDED.value,
                    ]),
                )
            )
            .order_by(PaymentRecord.confirmed_at, PaymentRecord.id)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_open(self) -> List[PaymentRecord]:
        """Payments not yet in a terminal state."""
        result = await self.session.execute(
            select(PaymentRecord)
            .where(PaymentRecord.status.notin_([s.value for s in PAYMENT_TERMINAL_STATES]))
            .order_by(PaymentRecord.state_entered_at)
        )
        return list(result.scalars().all())

    async def list_in_window(
        self,
        window_start: datetime,
        window_end: datetime,
        client_id: Optional[str] = None,
        provider_id: Optional[str] = None,
    ) -> List[Tuple[PaymentRecord, Optional[SessionRecord]]]:
        """Payments confirmed in the window, or still unconfirmed and initiated in it.

        Each payment is paired with the session it pays for, if any. Results
        are ordered by confirmation time with unconfirmed payments last.
        """
        in_window = or_(
            and_(
                PaymentRecord.confirmed_at.is_not(None),
                PaymentRecord.confirmed_at >= window_start,
                PaymentRecord.confirmed_at <= window_end,
            ),
            and_(
                PaymentRecord.confirmed_at.is_(None),
                PaymentRecord.initiated_at >= window_start,
                PaymentRecord.initiated_at <= window_end,
            ),
        )
        stmt = (
            select(PaymentRecord, SessionRecord)
            .outerjoin(SessionRecord, SessionRecord.payment_id == PaymentRecord.id)
            .where(in_window)
        )
        if client_id:
            stmt = stmt.where(SessionRecord.client_id == client_id)
        if provider_id:
            stmt = stmt.where(SessionRecord.provider_id == provider_id)
        stmt = stmt.order_by(
            PaymentRecord.confirmed_at.is_(None),
            PaymentRecord.confirmed_at,
            PaymentRecord.initiated_at,
            PaymentRecord.id,
        )

        result = await self.session.execute(stmt)
        seen = set()
        pairs: List[Tuple[PaymentRecord, Optional[SessionRecord]]] = []
        for payment, session_record in result.all():
            if payment.id in seen:
                continue
            seen.add(payment.id)
            pairs.append((payment, session_record))
        return pairs

    async def shared_transaction_refs(self, refs: Iterable[str]) -> Dict[str, List[str]]:
        """Map each ref held by more than one payment anywhere to those payment ids."""
        refs = [r for r in set(refs) if r]
        if not refs:
            return {}
        dup_refs = (
            select(PaymentRecord.external_transaction_ref)
            .where(PaymentRecord.external_transaction_ref.in_(refs))
            .group_by(PaymentRecord.external_transaction_ref)
            .having(func.count(PaymentRecord.id) > 1)
        )
        result = await self.session.execute(
            select(PaymentRecord.external_transaction_ref, PaymentRecord.id)
            .where(PaymentRecord.external_transaction_ref.in_(dup_refs))
            .order_by(PaymentRecord.external_transaction_ref, PaymentRecord.id)
        )
        shared: Dict[str, List[str]] = {}
        for ref, payment_id in result.all():
            shared.setdefault(ref, []).append(payment_id)
        return shared

    async def add_attempt(
        self,
        payment: PaymentRecord,
        outcome: str,
        status: Optional[str] = None,
        result_code: Optional[int] = None,
        external_transaction_ref: Optional[str] = None,
        detail: Optional[str] = None,
    ) -> PaymentAttempt:
        """Append an attempt entry. Attempts are never edited."""
        attempt = PaymentAttempt(
            outcome=outcome,
            status=_value(status) if status is not None else None,
            result_code=result_code,
            external_transaction_ref=external_transaction_ref,
            detail=detail,
            attempted_at=datetime.utcnow(),
        )
        payment.attempts.append(attempt)
        await self.session.flush()
        return attempt


class SessionRecordRepository:
    """Repository for SessionRecord reads and writes."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        client_id: str,
        provider_id: str,
        price: int,
        session_type: str = "individual",
        scheduled_at: Optional[datetime] = None,
        currency: str = "KES",
    ) -> SessionRecord:
        now = datetime.utcnow()
        record = SessionRecord(
            client_id=client_id,
            provider_id=provider_id,
            session_type=session_type,
            scheduled_at=scheduled_at,
            price=price,
            currency=currency.upper(),
            status=SessionState.PENDING_APPROVAL.value,
            state_entered_at=now,
        )
        self.session.add(record)
        await self.session.flush()

        logger.info(f"Created session {record.id} for provider {provider_id}")
        return record

    async def get_by_id(self, session_id: str, for_update: bool = False) -> Optional[SessionRecord]:
        stmt = select(SessionRecord).where(SessionRecord.id == session_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_payment_id(self, payment_id: str, for_update: bool = False) -> Optional[SessionRecord]:
        stmt = select(SessionRecord).where(SessionRecord.payment_id == payment_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt.order_by(SessionRecord.created_at).limit(1))
        return result.scalar_one_or_none()

    async def list_open(self) -> List[SessionRecord]:
        result = await self.session.execute(
            select(SessionRecord)
            .where(SessionRecord.status.notin_(SESSION_CLOSED_STATES))
            .order_by(SessionRecord.state_entered_at)
        )
        return list(result.scalars().all())


class AuditLogRepository:
    """Append-only access to the audit log."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def append(
        self,
        entity_type,
        entity_id: str,
        from_state,
        to_state,
        acting_subsystem,
        reason: Optional[str] = None,
        violation: Optional[str] = None,
    ) -> AuditLogEntry:
        entry = AuditLogEntry(
            entity_type=_value(entity_type),
            entity_id=entity_id,
            from_state=_value(from_state) if from_state is not None else None,
            to_state=_value(to_state),
            acting_subsystem=_value(acting_subsystem),
            timestamp=datetime.utcnow(),
            reason=reason,
            violation=violation,
        )
        self.session.add(entry)
        await self.session.flush()

        logger.debug(
            f"Audit: {entry.entity_type} {entity_id} {entry.from_state} -> "
            f"{entry.to_state} by {entry.acting_subsystem}"
        )
        return entry

    async def list_for_entity(self, entity_type, entity_id: str) -> List[AuditLogEntry]:
        result = await self.session.execute(
            select(AuditLogEntry)
            .where(
                and_(
                    AuditLogEntry.entity_type == _value(entity_type),
                    AuditLogEntry.entity_id == entity_id,
                )
            )
            .order_by(AuditLogEntry.id)
        )
        return list(result.scalars().all())


class EnforcementChangeRepository:
    """Append-only access to persisted enforcement level changes."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def record(self, change) -> EnforcementChangeRecord:
        """Persist an ``EnforcementChange``."""
        row = EnforcementChangeRecord(
            previous_level=_value(change.previous_level) if change.previous_level else None,
            new_level=_value(change.new_level),
            actor=change.actor,
            reason=change.reason,
            context=_value(change.context),
            changed_at=change.changed_at,
        )
        self.session.add(row)
        await self.session.flush()
        return row

    async def list_recent(self, limit: int = 20) -> List[EnforcementChangeRecord]:
        result = await self.session.execute(
            select(EnforcementChangeRecord)
            .order_by(EnforcementChangeRecord.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())


class ReconciliationRunRepository:
    """Stores reconciliation runs. Runs are inserted once and never changed."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def save(self, run: Any) -> ReconciliationRunRecord:
        """Persist a ``ReconciliationRun``.

        Raises:
            ValueError: If a run with the same id already exists.
        """
        existing = await self.session.get(ReconciliationRunRecord, run.run_id)
        if existing is not None:
            raise ValueError(f"Reconciliation run {run.run_id} is already stored")

        data = run.model_dump(mode="json")
        row = ReconciliationRunRecord(
            id=run.run_id,
            window_start=run.window_start,
            window_end=run.window_end,
            executed_at=run.executed_at,
            completed_at=run.completed_at,
            triggered_by=data["triggered_by"],
            status=data["status"],
            filters_json=json.dumps(data["filters"]) if data.get("filters") else None,
            summary_json=json.dumps(data["summary"], sort_keys=True),
            items_json=json.dumps(data["items"]),
        )
        self.session.add(row)
        await self.session.flush()

        logger.info(f"Stored reconciliation run {run.run_id} ({data['status']})")
        return row

    async def get_by_id(self, run_id: str) -> Optional[ReconciliationRunRecord]:
        result = await self.session.execute(
            select(ReconciliationRunRecord).where(ReconciliationRunRecord.id == run_id)
        )
        return result.scalar_one_or_none()

    async def get_latest_for_window(
        self,
        window_start: datetime,
        window_end: datetime,
    ) -> Optional[ReconciliationRunRecord]:
        result = await self.session.execute(
            select(ReconciliationRunRecord)
            .where(
                and_(
                    ReconciliationRunRecord.window_start == window_start,
                    ReconciliationRunRecord.window_end == window_end,
                    ReconciliationRunRecord.filters_json.is_(None),
                )
            )
            .order_by(ReconciliationRunRecord.executed_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_recent(self, limit: int = 20) -> List[ReconciliationRunRecord]:
        result = await self.session.execute(
            select(ReconciliationRunRecord)
            .order_by(ReconciliationRunRecord.executed_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())
