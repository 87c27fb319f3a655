"""Transition validation against the state tables and the authority registry."""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .authority import StateAuthorityRegistry
from .enforcement import CheckOutcome, EnforcementConfig, EnforcementLevel
from .states import (
    INITIAL_STATES,
    EntityType,
    Subsystem,
    coerce_state,
    is_legal_transition,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransitionRequest:
    """A proposed state change. ``current_state`` is None when creating an entity."""
    entity_type: EntityType
    entity_id: str
    current_state: Any
    proposed_state: Any
    acting_subsystem: Subsystem

    def describe(self) -> str:
        current = getattr(self.current_state, "value", self.current_state)
        proposed = getattr(self.proposed_state, "value", self.proposed_state)
        return (
            f"{EntityType(self.entity_type).value} {self.entity_id}: "
            f"{current} -> {proposed} by {Subsystem(self.acting_subsystem).value}"
        )


@dataclass(frozen=True)
class ValidationResult:
    allowed: bool
    level: EnforcementLevel
    warning: Optional[str] = None
    error: Optional[str] = None

    @property
    def violation(self) -> Optional[str]:
        return self.error or self.warning

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "level": self.level.value,
            "warning": self.warning,
            "error": self.error,
        }


class TransitionValidator:
    """Decide whether a transition may proceed under the current enforcement level.

    The level is read once at the start of ``validate`` so a concurrent level
    change never splits a single validation.
    """

    def __init__(
        self,
        enforcement: EnforcementConfig,
        registry: Optional[StateAuthorityRegistry] = None,
    ):
        self.enforcement = enforcement
        self.registry = registry or StateAuthorityRegistry()

    def find_violation(self, request: TransitionRequest) -> Optional[str]:
        """Return a description of what is wrong with ``request``, or None."""
        entity_type = EntityType(request.entity_type)
        subsystem = Subsystem(request.acting_subsystem)
        proposed = coerce_state(entity_type, request.proposed_state)

        if request.current_state is None:
            initial = INITIAL_STATES[entity_type]
            if proposed != initial:
                return (
                    f"{entity_type.value} {request.entity_id} must be created in "
                    f"{initial.value}, not {proposed.value}"
                )
            current = None
        else:
            current = coerce_state(entity_type, request.current_state)
            if current == proposed:
                return f"{entity_type.value} {request.entity_id} is already {current.value}"
            if not is_legal_transition(entity_type, current, proposed):
                return (
                    f"Illegal {entity_type.value} transition {current.value} -> "
                    f"{proposed.value} for {request.entity_id}"
                )

        if not self.registry.has_authority(subsystem, entity_type, current, proposed):
            return (
                f"Subsystem {subsystem.value} has no authority to set "
                f"{entity_type.value} {request.entity_id} to {proposed.value}"
            )
        return None

    def validate(self, request: TransitionRequest) -> ValidationResult:
        level = self.enforcement.level

        if level == EnforcementLevel.OFF:
            self.enforcement.record_check(CheckOutcome.SKIPPED)
            logger.debug(f"Enforcement off, skipping check for {request.describe()}")
            return ValidationResult(allowed=True, level=level)

        violation = self.find_violation(request)
        if violation is None:
            self.enforcement.record_check(CheckOutcome.PASSED)
            return ValidationResult(allowed=True, level=level)

        if level == EnforcementLevel.STRICT:
            self.enforcement.record_check(CheckOutcome.BLOCKED)
            logger.error(f"Transition blocked: {violation}")
            return ValidationResult(allowed=False, level=level, error=violation)

        self.enforcement.record_check(CheckOutcome.WARNED)
        logger.warning(f"Transition violation allowed under warn: {violation}")
        return ValidationResult(allowed=True, level=level, warning=violation)
