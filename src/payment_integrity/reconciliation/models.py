"""Models for payment reconciliation runs."""

import enum
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List

from pydantic import BaseModel, Field, field_validator, model_validator


def to_naive_utc(value: datetime) -> datetime:
    """Convert an aware datetime to the naive UTC form timestamps are stored in."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class ReconciliationCategory(str, enum.Enum):
    """Verdict for one payment. Declared in report reading order."""
    DISCREPANCY = "discrepancy"
    UNMATCHED = "unmatched"
    PENDING = "pending"
    MATCHED = "matched"


CATEGORY_ORDER: Dict[ReconciliationCategory, int] = {
    category: index for index, category in enumerate(ReconciliationCategory)
}


class IssueCode(str, enum.Enum):
    """Reasons attached to reconciliation items."""
    AMOUNT_MISMATCH = "amount_mismatch"
    STATUS_MISMATCH = "status_mismatch"
    RESULT_CODE_MISMATCH = "result_code_mismatch"
    TRANSACTION_REF_MISMATCH = "transaction_ref_mismatch"
    DUPLICATE_TRANSACTION = "duplicate_transaction"
    ORPHANED_PAYMENT = "orphaned_payment"
    NOT_FOUND_AT_GATEWAY = "not_found_at_gateway"
    GATEWAY_UNREACHABLE = "gateway_unreachable"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    STUCK_AWAITING_CONFIRMATION = "stuck_awaiting_confirmation"


class RunStatus(str, enum.Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class TriggeredBy(str, enum.Enum):
    SCHEDULER = "scheduler"
    ADMIN = "admin"


class ReconciliationFilters(BaseModel):
    """Optional narrowing of a run to one client or provider."""
    client_id: Optional[str] = Field(None, description="Only sessions booked by this client")
    provider_id: Optional[str] = Field(None, description="Only sessions with this provider")

    @property
    def is_empty(self) -> bool:
        return not self.client_id and not self.provider_id

    class Config:
        frozen = True


class LocalPayment(BaseModel):
    """Snapshot of a local payment and its session taken at the start of a run."""
    payment_id: str
    session_id: Optional[str] = None
    session_status: Optional[str] = None
    external_request_ref: str
    external_transaction_ref: Optional[str] = None
    status: str
    amount_expected: int
    amount_confirmed: Optional[int] = None
    result_code: Optional[int] = None
    payer: str = Field("", description="Masked payer identifier")
    initiated_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None

    class Config:
        from_attributes = True
        frozen = True


class ReconciliationItem(BaseModel):
    """One payment's place in a run."""
    payment_id: str
    session_id: Optional[str] = None
    category: ReconciliationCategory
    issues: List[IssueCode] = Field(default_factory=list)
    local_status: str
    external_status: Optional[str] = None
    session_status: Optional[str] = None
    external_request_ref: str
    external_transaction_ref: Optional[str] = None
    external_transaction_ref_reported: Optional[str] = None
    amount_expected: int
    amount_confirmed: Optional[int] = None
    external_amount: Optional[int] = None
    local_result_code: Optional[int] = None
    external_result_code: Optional[int] = None
    payer: str = ""
    initiated_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None

    class Config:
        frozen = True


class ReconciliationSummary(BaseModel):
    matched: int = 0
    unmatched: int = 0
    discrepancy: int = 0
    pending: int = 0
    total_in_window: int = 0
    skipped: int = 0
    total_confirmed_amount: int = Field(0, description="Sum of confirmed amounts in minor units")

    class Config:
        frozen = True

    @property
    def examined(self) -> int:
        return self.matched + self.unmatched + self.discrepancy + self.pending

    @property
    def has_issues(self) -> bool:
        return self.discrepancy > 0 or self.unmatched > 0


class ReconciliationRun(BaseModel):
    """An immutable reconciliation result."""
    run_id: str
    window_start: datetime
    window_end: datetime
    executed_at: datetime
    completed_at: datetime
    triggered_by: TriggeredBy
    status: RunStatus
    filters: Optional[ReconciliationFilters] = None
    items: List[ReconciliationItem] = Field(default_factory=list)
    summary: ReconciliationSummary

    class Config:
        frozen = True

    def items_in(self, category: ReconciliationCategory) -> List[ReconciliationItem]:
        return [item for item in self.items if item.category == category]

    @classmethod
    def from_record(cls, record: Any) -> "ReconciliationRun":
        """Rebuild a run from its stored ``ReconciliationRunRecord``."""
        return cls(
            run_id=record.id,
            window_start=record.window_start,
            window_end=record.window_end,
            executed_at=record.executed_at,
            completed_at=record.completed_at,
            triggered_by=record.triggered_by,
            status=record.status,
            filters=record.filters,
            items=record.items,
            summary=record.summary,
        )

    def to_summary_dict(self) -> Dict[str, Any]:
        """Return the run without its items."""
        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "triggered_by": self.triggered_by.value,
            "window_start": self.window_start.isoformat(),
            "window_end": self.window_end.isoformat(),
            "executed_at": self.executed_at.isoformat(),
            "completed_at": self.completed_at.isoformat(),
            "filters": self.filters.model_dump() if self.filters else None,
            "summary": {
                **self.summary.model_dump(),
                "examined": self.summary.examined,
            },
        }


class ReconciliationRequest(BaseModel):
    """Request model for starting a reconciliation run."""
    window_start: datetime = Field(..., description="Start of the window to reconcile")
    window_end: datetime = Field(..., description="End of the window to reconcile")
    filters: Optional[ReconciliationFilters] = Field(None, description="Client/provider narrowing")

    @field_validator("window_start", "window_end")
    @classmethod
    def normalise_to_utc(cls, value: datetime) -> datetime:
        return to_naive_utc(value)

    @model_validator(mode="after")
    def check_window(self) -> "ReconciliationRequest":
        if self.window_end < self.window_start:
            raise ValueError("window_end must not be before window_start")
        return self
