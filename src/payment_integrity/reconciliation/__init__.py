"""Reconciliation of local payments against the payment gateway.

Features:
- Bounded concurrent gateway lookups with per-lookup timeouts and cancellation
- Classification into matched, discrepancy, unmatched and pending
- Duplicate transaction reference detection
- Immutable stored runs with JSON, CSV and text reports
- Daily scheduling and signed completion webhooks
"""

from .models import (
    CATEGORY_ORDER,
    IssueCode,
    LocalPayment,
    ReconciliationCategory,
    ReconciliationFilters,
    ReconciliationItem,
    ReconciliationRequest,
    ReconciliationRun,
    ReconciliationSummary,
    RunStatus,
    TriggeredBy,
)
from .lookup import GatewayLookup, LookupOutcome
from .reconciler import Reconciler, find_duplicate_refs
from .report import CSV_COLUMNS, ReportGenerator
from .service import ReconciliationService, daily_window
from .dispatch import RunDispatcher, sign_payload

__all__ = [
    # Models
    "CATEGORY_ORDER",
    "IssueCode",
    "LocalPayment",
    "ReconciliationCategory",
    "ReconciliationFilters",
    "ReconciliationItem",
    "ReconciliationRequest",
    "ReconciliationRun",
    "ReconciliationSummary",
    "RunStatus",
    "TriggeredBy",
    # Core Components
    "GatewayLookup",
    "LookupOutcome",
    "Reconciler",
    "find_duplicate_refs",
    "ReconciliationService",
    "daily_window",
    "ReportGenerator",
    "CSV_COLUMNS",
    "RunDispatcher",
    "sign_payload",
]
