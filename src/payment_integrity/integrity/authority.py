"""State authority registry: which subsystem may move which entity where."""

import logging
from dataclasses import dataclass
from typing import FrozenSet, Iterable, List, Optional, Tuple

from .states import (
    EntityType,
    PaymentState,
    SessionState,
    Subsystem,
    VideoCallState,
    coerce_state,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransitionAuthorityRule:
    """Grants ``subsystem`` the right to set ``entity_type`` to any of ``target_states``.

    ``from_states`` narrows the grant to transitions leaving those states;
    ``None`` means any current state.
    """
    subsystem: Subsystem
    entity_type: EntityType
    target_states: FrozenSet
    from_states: Optional[FrozenSet] = None


DEFAULT_AUTHORITY_RULES: Tuple[TransitionAuthorityRule, ...] = (
    # Only the payment subsystem moves payments through the gateway lifecycle.
    TransitionAuthorityRule(
        Subsystem.PAYMENT,
        EntityType.PAYMENT,
        frozenset({
            PaymentState.INITIATED,
            PaymentState.PROCESSING,
            PaymentState.CONFIRMED,
            PaymentState.FAILED,
            PaymentState.REFUNDED,
        }),
    ),
    TransitionAuthorityRule(
        Subsystem.ADMIN,
        EntityType.PAYMENT,
        frozenset({PaymentState.REFUNDED}),
        from_states=frozenset({PaymentState.CONFIRMED}),
    ),
    # Session confirmation is the payment subsystem's alone.
    TransitionAuthorityRule(
        Subsystem.PAYMENT,
        EntityType.SESSION,
        frozenset({SessionState.CONFIRMED}),
    ),
    TransitionAuthorityRule(
        Subsystem.CLIENT,
        EntityType.SESSION,
        frozenset({SessionState.PENDING_APPROVAL, SessionState.CANCELLED}),
    ),
    TransitionAuthorityRule(
        Subsystem.PROVIDER,
        EntityType.SESSION,
        frozenset({
            SessionState.APPROVED,
            SessionState.DECLINED,
            SessionState.CANCELLED,
            SessionState.IN_PROGRESS,
            SessionState.COMPLETED,
        }),
    ),
    TransitionAuthorityRule(
        Subsystem.ADMIN,
        EntityType.SESSION,
        frozenset({
            SessionState.APPROVED,
            SessionState.DECLINED,
            SessionState.CANCELLED,
        }),
    ),
    TransitionAuthorityRule(
        Subsystem.SESSION,
        EntityType.SESSION,
        frozenset({SessionState.IN_PROGRESS, SessionState.COMPLETED}),
    ),
    TransitionAuthorityRule(
        Subsystem.VIDEO,
        EntityType.VIDEO_CALL,
        frozenset(VideoCallState),
    ),
    TransitionAuthorityRule(
        Subsystem.SCHEDULER,
        EntityType.VIDEO_CALL,
        frozenset({VideoCallState.ENDED}),
        from_states=frozenset({VideoCallState.ACTIVE}),
    ),
)


class StateAuthorityRegistry:
    """Static lookup of transition authority. Deny by default."""

    def __init__(self, rules: Iterable[TransitionAuthorityRule] = DEFAULT_AUTHORITY_RULES):
        self._rules: List[TransitionAuthorityRule] = []
        for rule in rules:
            targets = frozenset(coerce_state(rule.entity_type, s) for s in rule.target_states)
            sources = None
            if rule.from_states is not None:
                sources = frozenset(coerce_state(rule.entity_type, s) for s in rule.from_states)
            self._rules.append(TransitionAuthorityRule(
                subsystem=Subsystem(rule.subsystem),
                entity_type=EntityType(rule.entity_type),
                target_states=targets,
                from_states=sources,
            ))

    @property
    def rules(self) -> Tuple[TransitionAuthorityRule, ...]:
        return tuple(self._rules)

    def has_authority(
        self,
        acting_subsystem: Subsystem,
        entity_type: EntityType,
        from_state,
        to_state,
    ) -> bool:
        """Return True if a rule grants ``acting_subsystem`` this transition."""
        acting_subsystem = Subsystem(acting_subsystem)
        entity_type = EntityType(entity_type)
        current = coerce_state(entity_type, from_state) if from_state is not None else None
        target = coerce_state(entity_type, to_state)

        for rule in self._rules:
            if rule.subsystem != acting_subsystem or rule.entity_type != entity_type:
                continue
            if target not in rule.target_states:
                continue
            if rule.from_states is not None and current not in rule.from_states:
                continue
            return True
        return False

    def authorized_subsystems(self, entity_type: EntityType, to_state) -> List[Subsystem]:
        """List the subsystems that may set ``entity_type`` to ``to_state`` from some state."""
        entity_type = EntityType(entity_type)
        target = coerce_state(entity_type, to_state)
        found = []
        for rule in self._rules:
            if rule.entity_type == entity_type and target in rule.target_states:
                if rule.subsystem not in found:
                    found.append(rule.subsystem)
        return found
