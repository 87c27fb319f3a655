# payment_integrity package
__version__ = "0.1.0"

from .config import IntegritySettings
from .database import (
    PaymentRecord,
    SessionRecord,
    AuditLogEntry,
    DatabaseManager,
    get_db,
)
from .integrity import (
    EntityType,
    PaymentState,
    SessionState,
    VideoCallState,
    Subsystem,
    EnforcementLevel,
    EnforcementConfig,
    StateAuthorityRegistry,
    TransitionValidator,
    TransitionRequest,
    StuckStateDetector,
)
from .locks import KeyedLocks
from .services import (
    EventOutcome,
    PaymentEvent,
    PaymentService,
    SessionStateService,
    OrphanChecker,
)

# Reconciliation exports
from .reconciliation import (
    ReconciliationService,
    ReconciliationRun,
    ReconciliationCategory,
    IssueCode,
    Reconciler,
    ReportGenerator,
)
