"""State machines for payments, sessions and video calls."""

import enum
from typing import Dict, FrozenSet, Optional, Type


class EntityType(str, enum.Enum):
    """Entities whose state is governed by the integrity layer."""
    PAYMENT = "payment"
    SESSION = "session"
    VIDEO_CALL = "video_call"


class PaymentState(str, enum.Enum):
    """Lifecycle of a single payment attempt."""
    NOT_STARTED = "not_started"
    INITIATED = "initiated"
    PROCESSING = "processing"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    REFUNDED = "refunded"


class SessionState(str, enum.Enum):
    """Lifecycle of a booked therapy session."""
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    DECLINED = "declined"
    CANCELLED = "cancelled"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class VideoCallState(str, enum.Enum):
    """Lifecycle of the video call attached to a session."""
    NOT_STARTED = "not_started"
    WAITING_FOR_PARTICIPANTS = "waiting_for_participants"
    ACTIVE = "active"
    ENDED = "ended"
    FAILED = "failed"


class Subsystem(str, enum.Enum):
    """Actors that may request a state change."""
    PAYMENT = "payment"
    SESSION = "session"
    VIDEO = "video"
    CLIENT = "client"
    PROVIDER = "provider"
    ADMIN = "admin"
    SCHEDULER = "scheduler"


STATE_ENUMS: Dict[EntityType, Type[enum.Enum]] = {
    EntityType.PAYMENT: PaymentState,
    EntityType.SESSION: SessionState,
    EntityType.VIDEO_CALL: VideoCallState,
}


PAYMENT_TRANSITIONS: Dict[PaymentState, FrozenSet[PaymentState]] = {
    PaymentState.NOT_STARTED: frozenset({PaymentState.INITIATED}),
    PaymentState.INITIATED: frozenset({
        PaymentState.PROCESSING,
        PaymentState.CONFIRMED,
        PaymentState.FAILED,
    }),
    PaymentState.PROCESSING: frozenset({PaymentState.CONFIRMED, PaymentState.FAILED}),
    PaymentState.CONFIRMED: frozenset({PaymentState.REFUNDED}),
    PaymentState.FAILED: frozenset(),
    PaymentState.REFUNDED: frozenset(),
}

SESSION_TRANSITIONS: Dict[SessionState, FrozenSet[SessionState]] = {
    SessionState.PENDING_APPROVAL: frozenset({
        SessionState.APPROVED,
        SessionState.DECLINED,
        SessionState.CANCELLED,
    }),
    SessionState.APPROVED: frozenset({SessionState.CONFIRMED, SessionState.CANCELLED}),
    SessionState.CONFIRMED: frozenset({SessionState.IN_PROGRESS, SessionState.CANCELLED}),
    SessionState.IN_PROGRESS: frozenset({SessionState.COMPLETED}),
    SessionState.DECLINED: frozenset(),
    SessionState.CANCELLED: frozenset(),
    SessionState.COMPLETED: frozenset(),
}

VIDEO_CALL_TRANSITIONS: Dict[VideoCallState, FrozenSet[VideoCallState]] = {
    VideoCallState.NOT_STARTED: frozenset({
        VideoCallState.WAITING_FOR_PARTICIPANTS,
        VideoCallState.FAILED,
    }),
    VideoCallState.WAITING_FOR_PARTICIPANTS: frozenset({
        VideoCallState.ACTIVE,
        VideoCallState.ENDED,
        VideoCallState.FAILED,
    }),
    VideoCallState.ACTIVE: frozenset({VideoCallState.ENDED, VideoCallState.FAILED}),
    VideoCallState.FAILED: frozenset({VideoCallState.WAITING_FOR_PARTICIPANTS}),
    VideoCallState.ENDED: frozenset(),
}

TRANSITIONS: Dict[EntityType, Dict] = {
    EntityType.PAYMENT: PAYMENT_TRANSITIONS,
    EntityType.SESSION: SESSION_TRANSITIONS,
    EntityType.VIDEO_CALL: VIDEO_CALL_TRANSITIONS,
}

INITIAL_STATES: Dict[EntityType, enum.Enum] = {
    EntityType.PAYMENT: PaymentState.NOT_STARTED,
    EntityType.SESSION: SessionState.PENDING_APPROVAL,
    EntityType.VIDEO_CALL: VideoCallState.NOT_STARTED,
}

# Confirmed and Failed share a rank: neither may replace the other.
PAYMENT_ORDER: Dict[PaymentState, int] = {
    PaymentState.NOT_STARTED: 0,
    PaymentState.INITIATED: 1,
    PaymentState.PROCESSING: 2,
    PaymentState.CONFIRMED: 3,
    PaymentState.FAILED: 3,
    PaymentState.REFUNDED: 4,
}

PAYMENT_TERMINAL_STATES = frozenset({
    PaymentState.CONFIRMED,
    PaymentState.FAILED,
    PaymentState.REFUNDED,
})

# Session states that prove a confirmed payment was honoured.
SESSION_PAID_STATES = frozenset({
    SessionState.CONFIRMED,
    SessionState.IN_PROGRESS,
    SessionState.COMPLETED,
})


def _check_tables() -> None:
    for entity_type, state_enum in STATE_ENUMS.items():
        table = TRANSITIONS[entity_type]
        missing = set(state_enum) - set(table)
        if missing:
            raise RuntimeError(
                f"Transition table for {entity_type.value} is missing states: "
                f"{sorted(s.value for s in missing)}"
            )
    missing_order = set(PaymentState) - set(PAYMENT_ORDER)
    if missing_order:
        raise RuntimeError(f"Payment ordering is missing states: {missing_order}")


_check_tables()


def coerce_state(entity_type: EntityType, state) -> enum.Enum:
    """Return ``state`` as a member of the entity's state enum.

    Raises:
        ValueError: If the value is not a state of that entity type.
    """
    state_enum = STATE_ENUMS[entity_type]
    if isinstance(state, state_enum):
        return state
    if isinstance(state, enum.Enum):
        state = state.value
    try:
        return state_enum(state)
    except ValueError:
        raise ValueError(
            f"Unknown {entity_type.value} state: {state!r}"
        ) from None


def is_legal_transition(entity_type: EntityType, from_state, to_state) -> bool:
    """Check the entity's transition table for ``from_state -> to_state``."""
    table = TRANSITIONS[entity_type]
    current = coerce_state(entity_type, from_state)
    target = coerce_state(entity_type, to_state)
    return target in table[current]


def allowed_targets(entity_type: EntityType, from_state) -> FrozenSet:
    return TRANSITIONS[entity_type][coerce_state(entity_type, from_state)]


def is_payment_regression(current: PaymentState, proposed: PaymentState) -> bool:
    """True when ``proposed`` does not move a payment forward.

    A payment only ever moves to a strictly higher rank, so a repeated or
    lower-ranked event, or Failed arriving after Confirmed, counts as stale.
    """
    return PAYMENT_ORDER[proposed] <= PAYMENT_ORDER[current]


def payment_state_for_result(result_code: Optional[int], has_transaction_ref: bool) -> PaymentState:
    """Map a gateway result code to the payment state it reports."""
    if result_code is None:
        return PaymentState.PROCESSING
    if result_code == 0:
        return PaymentState.CONFIRMED if has_transaction_ref else PaymentState.PROCESSING
    return PaymentState.FAILED
