"""State machines, transition authority, enforcement and stuck-state detection."""

from .states import (
    EntityType,
    PaymentState,
    SessionState,
    VideoCallState,
    Subsystem,
    PAYMENT_ORDER,
    PAYMENT_TERMINAL_STATES,
    SESSION_PAID_STATES,
    is_legal_transition,
    is_payment_regression,
    payment_state_for_result,
)
from .authority import (
    TransitionAuthorityRule,
    StateAuthorityRegistry,
    DEFAULT_AUTHORITY_RULES,
)
from .enforcement import (
    EnforcementLevel,
    ChangeContext,
    EnforcementChange,
    EnforcementStats,
    EnforcementConfig,
)
from .validator import (
    TransitionRequest,
    ValidationResult,
    TransitionValidator,
)
from .stuck import (
    StuckSeverity,
    ResolutionAction,
    StuckResult,
    StuckStateDetector,
    StuckStateSweep,
    StuckSweepReport,
)

__all__ = [
    # States
    "EntityType",
    "PaymentState",
    "SessionState",
    "VideoCallState",
    "Subsystem",
    "PAYMENT_ORDER",
    "PAYMENT_TERMINAL_STATES",
    "SESSION_PAID_STATES",
    "is_legal_transition",
    "is_payment_regression",
    "payment_state_for_result",
    # Authority
    "TransitionAuthorityRule",
    "StateAuthorityRegistry",
    "DEFAULT_AUTHORITY_RULES",
    # Enforcement
    "EnforcementLevel",
    "ChangeContext",
    "EnforcementChange",
    "EnforcementStats",
    "EnforcementConfig",
    # Validation
    "TransitionRequest",
    "ValidationResult",
    "TransitionValidator",
    # Stuck detection
    "StuckSeverity",
    "ResolutionAction",
    "StuckResult",
    "StuckStateDetector",
    "StuckStateSweep",
    "StuckSweepReport",
]
