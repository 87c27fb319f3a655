"""Database module for payment integrity persistence."""

from .models import (
    Base,
    PaymentRecord,
    PaymentAttempt,
    SessionRecord,
    AuditLogEntry,
    EnforcementChangeRecord,
    ReconciliationRunRecord,
    mask_identifier,
)
from .session import (
    get_db,
    get_database_url,
    normalize_database_url,
    create_async_engine,
    get_async_session_factory,
    DatabaseManager,
)
from .repository import (
    PaymentRecordRepository,
    SessionRecordRepository,
    AuditLogRepository,
    EnforcementChangeRepository,
    ReconciliationRunRepository,
)

__all__ = [
    # Models
    "Base",
    "PaymentRecord",
    "PaymentAttempt",
    "SessionRecord",
    "AuditLogEntry",
    "EnforcementChangeRecord",
    "ReconciliationRunRecord",
    "mask_identifier",
    # Session management
    "get_db",
    "get_database_url",
    "normalize_database_url",
    "create_async_engine",
    "get_async_session_factory",
    "DatabaseManager",
    # Repositories
    "PaymentRecordRepository",
    "SessionRecordRepository",
    "AuditLogRepository",
    "EnforcementChangeRepository",
    "ReconciliationRunRepository",
]
