"""SQLAlchemy models for payments, sessions and their audit trail."""

import uuid
import json
from datetime import datetime
from typing import Optional, Dict, Any, List

from sqlalchemy import (
    String,
    Integer,
    DateTime,
    ForeignKey,
    Text,
    Index,
)
from sqlalchemy.orm import DeclarativeBase, relationship, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


def mask_identifier(value: Optional[str]) -> str:
    """Keep only the last four characters of a payer identifier."""
    if not value:
        return ""
    return "***" + value[-4:]


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class PaymentRecord(Base):
    """One logical payment attempt against the mobile-money gateway."""
    __tablename__ = "payment_records"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    external_request_ref: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    external_transaction_ref: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    status: Mapped[str] = mapped_column(String(30), nullable=False)

    # Amounts in minor currency units
    amount_expected: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    amount_confirmed: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    amount_refunded: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="KES")

    payer_identifier: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    result_code: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    result_description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    initiated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    refunded_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    state_entered_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    attempts: Mapped[List["PaymentAttempt"]] = relationship(
        "PaymentAttempt",
        back_populates="payment",
        cascade="all, delete-orphan",
        order_by="PaymentAttempt.id",
        lazy="selectin",
    )

    __table_args__ = (
        Index("ix_payment_records_status", "status"),
        Index("ix_payment_records_confirmed_at", "confirmed_at"),
        Index("ix_payment_records_initiated_at", "initiated_at"),
    )

    @property
    def masked_payer(self) -> str:
        return mask_identifier(self.payer_identifier)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "external_request_ref": self.external_request_ref,
            "external_transaction_ref": self.external_transaction_ref,
            "status": self.status,
            "amount_expected": self.amount_expected,
            "amount_confirmed": self.amount_confirmed,
            "amount_refunded": self.amount_refunded,
            "currency": self.currency,
            "payer": self.masked_payer,
            "result_code": self.result_code,
            "result_description": self.result_description,
            "initiated_at": _iso(self.initiated_at),
            "confirmed_at": _iso(self.confirmed_at),
            "refunded_at": _iso(self.refunded_at),
            "state_entered_at": _iso(self.state_entered_at),
        }


class PaymentAttempt(Base):
    """Append-only log of every event seen for a payment."""
    __tablename__ = "payment_attempts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    payment_id: Mapped[str] = mapped_column(String(36), ForeignKey("payment_records.id"), nullable=False)
    attempted_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    outcome: Mapped[str] = mapped_column(String(30), nullable=False)
    status: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    result_code: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    external_transaction_ref: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    detail: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    payment: Mapped["PaymentRecord"] = relationship("PaymentRecord", back_populates="attempts")

    __table_args__ = (
        Index("ix_payment_attempts_payment_id", "payment_id"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "payment_id": self.payment_id,
            "attempted_at": _iso(self.attempted_at),
            "outcome": self.outcome,
            "status": self.status,
            "result_code": self.result_code,
            "external_transaction_ref": self.external_transaction_ref,
            "detail": self.detail,
        }


class SessionRecord(Base):
    """A booked therapy session and the payment that secures it."""
    __tablename__ = "session_records"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    client_id: Mapped[str] = mapped_column(String(64), nullable=False)
    provider_id: Mapped[str] = mapped_column(String(64), nullable=False)
    session_type: Mapped[str] = mapped_column(String(50), nullable=False, default="individual")
    scheduled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    price: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="KES")
    status: Mapped[str] = mapped_column(String(30), nullable=False)
    payment_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("payment_records.id"), nullable=True
    )
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    state_entered_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_session_records_status", "status"),
        Index("ix_session_records_payment_id", "payment_id"),
        Index("ix_session_records_client_id", "client_id"),
        Index("ix_session_records_provider_id", "provider_id"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "client_id": self.client_id,
            "provider_id": self.provider_id,
            "session_type": self.session_type,
            "scheduled_at": _iso(self.scheduled_at),
            "price": self.price,
            "currency": self.currency,
            "status": self.status,
            "payment_id": self.payment_id,
            "confirmed_at": _iso(self.confirmed_at),
            "state_entered_at": _iso(self.state_entered_at),
        }


class AuditLogEntry(Base):
    """Immutable record of an accepted state transition."""
    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_type: Mapped[str] = mapped_column(String(20), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(36), nullable=False)
    from_state: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    to_state: Mapped[str] = mapped_column(String(30), nullable=False)
    acting_subsystem: Mapped[str] = mapped_column(String(20), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # Set when the transition went through only because enforcement was relaxed
    violation: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_audit_log_entity", "entity_type", "entity_id"),
        Index("ix_audit_log_timestamp", "timestamp"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "from_state": self.from_state,
            "to_state": self.to_state,
            "acting_subsystem": self.acting_subsystem,
            "timestamp": _iso(self.timestamp),
            "reason": self.reason,
            "violation": self.violation,
        }


class EnforcementChangeRecord(Base):
    """Persisted enforcement level change."""
    __tablename__ = "enforcement_changes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    previous_level: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    new_level: Mapped[str] = mapped_column(String(10), nullable=False)
    actor: Mapped[str] = mapped_column(String(100), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    context: Mapped[str] = mapped_column(String(20), nullable=False)
    changed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "previous_level": self.previous_level,
            "new_level": self.new_level,
            "actor": self.actor,
            "reason": self.reason,
            "context": self.context,
            "changed_at": _iso(self.changed_at),
        }


class ReconciliationRunRecord(Base):
    """A completed or cancelled reconciliation run. Never updated."""
    __tablename__ = "reconciliation_runs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    window_start: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    window_end: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    executed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    completed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    triggered_by: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    filters_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    summary_json: Mapped[str] = mapped_column(Text, nullable=False)
    items_json: Mapped[str] = mapped_column(Text, nullable=False)

    __table_args__ = (
        Index("ix_reconciliation_runs_window", "window_start", "window_end"),
        Index("ix_reconciliation_runs_executed_at", "executed_at"),
    )

    @property
    def filters(self) -> Optional[Dict[str, Any]]:
        if self.filters_json:
            return json.loads(self.filters_json)
        return None

    @property
    def summary(self) -> Dict[str, Any]:
        return json.loads(self.summary_json)

    @property
    def items(self) -> List[Dict[str, Any]]:
        return json.loads(self.items_json)
