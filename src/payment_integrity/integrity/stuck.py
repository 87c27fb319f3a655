"""Stuck-state detection.

An entity is stuck when it has spent more than twice its state's expected
duration in that state. The detector and the sweep only read; resolving a
stuck entity is left to operators or to reconciliation.
"""

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from .states import (
    STATE_ENUMS,
    EntityType,
    PaymentState,
    SessionState,
    VideoCallState,
    coerce_state,
)

logger = logging.getLogger(__name__)

STUCK_MULTIPLIER = 2


class StuckSeverity(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ResolutionAction(str, enum.Enum):
    NONE = "none"
    ALERT_ADMIN = "alert_admin"
    ALERT_ADMIN_URGENT = "alert_admin_urgent"
    QUERY_GATEWAY = "query_gateway"
    ALERT_PROVIDER = "alert_provider"
    ALERT_CLIENT_PAYMENT = "alert_client_payment"
    ALERT_BOTH_PARTICIPANTS = "alert_both_participants"
    AUTO_END_SESSION = "auto_end_session"
    AUTO_END_CALL = "auto_end_call"
    AUTO_RETRY = "auto_retry"


def _minutes(value: int) -> timedelta:
    return timedelta(minutes=value)


# None marks a state with no duration limit.
DEFAULT_EXPECTED_DURATIONS: Dict[EntityType, Dict[Any, Optional[timedelta]]] = {
    EntityType.PAYMENT: {
        PaymentState.NOT_STARTED: _minutes(60),
        PaymentState.INITIATED: _minutes(5),
        PaymentState.PROCESSING: _minutes(10),
        PaymentState.CONFIRMED: None,
        PaymentState.FAILED: None,
        PaymentState.REFUNDED: None,
    },
    EntityType.SESSION: {
        SessionState.PENDING_APPROVAL: _minutes(1440),
        SessionState.APPROVED: _minutes(60),
        SessionState.CONFIRMED: None,
        SessionState.IN_PROGRESS: _minutes(90),
        SessionState.DECLINED: None,
        SessionState.CANCELLED: None,
        SessionState.COMPLETED: None,
    },
    EntityType.VIDEO_CALL: {
        VideoCallState.NOT_STARTED: None,
        VideoCallState.WAITING_FOR_PARTICIPANTS: _minutes(15),
        VideoCallState.ACTIVE: _minutes(90),
        VideoCallState.ENDED: None,
        VideoCallState.FAILED: _minutes(5),
    },
}

RESOLUTION_POLICIES: Dict[EntityType, Dict[Any, ResolutionAction]] = {
    EntityType.PAYMENT: {
        PaymentState.NOT_STARTED: ResolutionAction.ALERT_ADMIN,
        # Gateway callback is missing.
        PaymentState.INITIATED: ResolutionAction.ALERT_ADMIN_URGENT,
        PaymentState.PROCESSING: ResolutionAction.QUERY_GATEWAY,
    },
    EntityType.SESSION: {
        SessionState.PENDING_APPROVAL: ResolutionAction.ALERT_PROVIDER,
        SessionState.APPROVED: ResolutionAction.ALERT_CLIENT_PAYMENT,
        SessionState.IN_PROGRESS: ResolutionAction.AUTO_END_SESSION,
    },
    EntityType.VIDEO_CALL: {
        VideoCallState.WAITING_FOR_PARTICIPANTS: ResolutionAction.ALERT_BOTH_PARTICIPANTS,
        VideoCallState.ACTIVE: ResolutionAction.AUTO_END_CALL,
        VideoCallState.FAILED: ResolutionAction.AUTO_RETRY,
    },
}


def severity_for_ratio(ratio: float) -> StuckSeverity:
    """Grade how far past its expected duration a stuck entity is."""
    if ratio > 5:
        return StuckSeverity.CRITICAL
    if ratio > 3:
        return StuckSeverity.HIGH
    if ratio > 2:
        return StuckSeverity.MEDIUM
    return StuckSeverity.LOW


@dataclass(frozen=True)
class StuckResult:
    entity_type: EntityType
    state: Any
    is_stuck: bool
    expected_duration: Optional[timedelta]
    elapsed: timedelta
    severity: Optional[StuckSeverity] = None
    recommended_action: ResolutionAction = ResolutionAction.NONE
    entity_id: Optional[str] = None

    @property
    def overage_ratio(self) -> Optional[float]:
        if not self.expected_duration:
            return None
        return self.elapsed / self.expected_duration

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_type": self.entity_type.value,
            "entity_id": self.entity_id,
            "state": self.state.value,
            "is_stuck": self.is_stuck,
            "expected_minutes": (
                self.expected_duration.total_seconds() / 60
                if self.expected_duration else None
            ),
            "elapsed_minutes": round(self.elapsed.total_seconds() / 60, 2),
            "severity": self.severity.value if self.severity else None,
            "recommended_action": self.recommended_action.value,
        }


class StuckStateDetector:
    """Compares time-in-state against an expected-duration table."""

    def __init__(
        self,
        expected_durations: Optional[Mapping[EntityType, Mapping[Any, Optional[timedelta]]]] = None,
        multiplier: int = STUCK_MULTIPLIER,
    ):
        table = expected_durations if expected_durations is not None else DEFAULT_EXPECTED_DURATIONS
        self.expected_durations = self._normalise(table)
        self.multiplier = multiplier

    @staticmethod
    def _normalise(table) -> Dict[EntityType, Dict[Any, Optional[timedelta]]]:
        normalised: Dict[EntityType, Dict[Any, Optional[timedelta]]] = {}
        for entity_type, state_enum in STATE_ENUMS.items():
            if entity_type not in table:
                raise ValueError(f"No expected durations configured for {entity_type.value}")
            durations = {
                coerce_state(entity_type, state): duration
                for state, duration in table[entity_type].items()
            }
            missing = set(state_enum) - set(durations)
            if missing:
                raise ValueError(
                    f"Expected durations for {entity_type.value} missing states: "
                    f"{sorted(s.value for s in missing)}"
                )
            normalised[entity_type] = durations
        return normalised

    def expected_duration(self, entity_type: EntityType, state) -> Optional[timedelta]:
        entity_type = EntityType(entity_type)
        return self.expected_durations[entity_type][coerce_state(entity_type, state)]

    def is_stuck(
        self,
        entity_type: EntityType,
        current_state,
        entered_at: datetime,
        now: Optional[datetime] = None,
        entity_id: Optional[str] = None,
    ) -> StuckResult:
        entity_type = EntityType(entity_type)
        state = coerce_state(entity_type, current_state)
        now = now or datetime.utcnow()
        elapsed = max(now - entered_at, timedelta(0))
        expected = self.expected_durations[entity_type][state]

        if expected is None:
            return StuckResult(
                entity_type=entity_type,
                state=state,
                is_stuck=False,
                expected_duration=None,
                elapsed=elapsed,
                entity_id=entity_id,
            )

        stuck = elapsed > expected * self.multiplier
        if not stuck:
            return StuckResult(
                entity_type=entity_type,
                state=state,
                is_stuck=False,
                expected_duration=expected,
                elapsed=elapsed,
                entity_id=entity_id,
            )

        action = RESOLUTION_POLICIES[entity_type].get(state, ResolutionAction.ALERT_ADMIN)
        return StuckResult(
            entity_type=entity_type,
            state=state,
            is_stuck=True,
            expected_duration=expected,
            elapsed=elapsed,
            severity=severity_for_ratio(elapsed / expected),
            recommended_action=action,
            entity_id=entity_id,
        )


@dataclass
class StuckSweepReport:
    checked_at: datetime
    payments_checked: int = 0
    sessions_checked: int = 0
    stuck: List[StuckResult] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "checked_at": self.checked_at.isoformat(),
            "payments_checked": self.payments_checked,
            "sessions_checked": self.sessions_checked,
            "stuck_count": len(self.stuck),
            "stuck": [result.to_dict() for result in self.stuck],
        }


class StuckStateSweep:
    """Reads every non-terminal payment and session and reports the stuck ones."""

    def __init__(self, session: AsyncSession, detector: Optional[StuckStateDetector] = None):
        self.session = session
        self.detector = detector or StuckStateDetector()

    async def run(self, now: Optional[datetime] = None) -> StuckSweepReport:
        from ..database.repository import PaymentRecordRepository, SessionRecordRepository

        now = now or datetime.utcnow()
        report = StuckSweepReport(checked_at=now)

        payments = await PaymentRecordRepository(self.session).list_open()
        report.payments_checked = len(payments)
        for payment in payments:
            result = self.detector.is_stuck(
                EntityType.PAYMENT, payment.status, payment.state_entered_at, now, payment.id
            )
            if result.is_stuck:
                report.stuck.append(result)

        sessions = await SessionRecordRepository(self.session).list_open()
        report.sessions_checked = len(sessions)
        for record in sessions:
            result = self.detector.is_stuck(
                EntityType.SESSION, record.status, record.state_entered_at, now, record.id
            )
            if result.is_stuck:
                report.stuck.append(result)

        for result in report.stuck:
            logger.warning(
                f"Stuck {result.entity_type.value} {result.entity_id} in "
                f"{result.state.value} for {result.elapsed}; "
                f"severity={result.severity.value} action={result.recommended_action.value}"
            )
        logger.info(
            f"Stuck sweep checked {report.payments_checked} payments and "
            f"{report.sessions_checked} sessions, {len(report.stuck)} stuck"
        )
        return report
