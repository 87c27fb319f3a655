"""Runtime enforcement level for transition validation.

One ``EnforcementConfig`` is created per application and passed to the
validator and the API. Every level change, including emergency overrides and
the start-up setting, is appended to an in-memory history and handed back to
the caller so it can be persisted to the ``enforcement_changes`` table.
"""

import enum
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..exceptions import EnforcementChangeDenied

logger = logging.getLogger(__name__)


class EnforcementLevel(str, enum.Enum):
    STRICT = "strict"
    WARN = "warn"
    OFF = "off"


class ChangeContext(str, enum.Enum):
    """Who is allowed to change the enforcement level."""
    ADMIN = "admin"
    EMERGENCY = "emergency"
    STARTUP = "startup"


class CheckOutcome(str, enum.Enum):
    PASSED = "passed"
    BLOCKED = "blocked"
    WARNED = "warned"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class EnforcementChange:
    """One audited change of the enforcement level."""
    previous_level: Optional[EnforcementLevel]
    new_level: EnforcementLevel
    actor: str
    reason: str
    context: ChangeContext
    changed_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "previous_level": self.previous_level.value if self.previous_level else None,
            "new_level": self.new_level.value,
            "actor": self.actor,
            "reason": self.reason,
            "context": self.context.value,
            "changed_at": self.changed_at.isoformat(),
        }


@dataclass
class EnforcementStats:
    total_checks: int = 0
    transitions_blocked: int = 0
    warnings_issued: int = 0
    checks_skipped: int = 0

    @property
    def block_rate(self) -> float:
        if self.total_checks == 0:
            return 0.0
        return self.transitions_blocked / self.total_checks

    @property
    def warning_rate(self) -> float:
        if self.total_checks == 0:
            return 0.0
        return self.warnings_issued / self.total_checks

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_checks": self.total_checks,
            "transitions_blocked": self.transitions_blocked,
            "warnings_issued": self.warnings_issued,
            "checks_skipped": self.checks_skipped,
            "block_rate": round(self.block_rate, 4),
            "warning_rate": round(self.warning_rate, 4),
        }


class EnforcementConfig:
    """Holds the current enforcement level and its audit trail."""

    def __init__(
        self,
        level: EnforcementLevel = EnforcementLevel.STRICT,
        actor: str = "startup",
        reason: str = "initial configuration",
    ):
        self._lock = threading.Lock()
        self._level = EnforcementLevel(level)
        self._stats = EnforcementStats()
        self._history: List[EnforcementChange] = [
            EnforcementChange(
                previous_level=None,
                new_level=self._level,
                actor=actor,
                reason=reason,
                context=ChangeContext.STARTUP,
            )
        ]
        logger.info(f"Enforcement level initialised to {self._level.value} by {actor}")

    @property
    def level(self) -> EnforcementLevel:
        """The level in force right now. Validators read it once per check."""
        with self._lock:
            return self._level

    @property
    def history(self) -> List[EnforcementChange]:
        with self._lock:
            return list(self._history)

    @property
    def stats(self) -> EnforcementStats:
        with self._lock:
            return EnforcementStats(
                total_checks=self._stats.total_checks,
                transitions_blocked=self._stats.transitions_blocked,
                warnings_issued=self._stats.warnings_issued,
                checks_skipped=self._stats.checks_skipped,
            )

    def set_level(
        self,
        level: EnforcementLevel,
        reason: str,
        actor: str,
        context: ChangeContext = ChangeContext.ADMIN,
    ) -> EnforcementChange:
        """Change the enforcement level.

        Turning enforcement off is reserved for the emergency context; every
        change needs an actor and a reason.

        Raises:
            EnforcementChangeDenied: If the change is not permitted.
        """
        level = EnforcementLevel(level)
        try:
            context = ChangeContext(context)
        except ValueError:
            raise EnforcementChangeDenied(f"Unknown change context: {context!r}") from None
        if not reason or not reason.strip():
            raise EnforcementChangeDenied("A reason is required to change enforcement")
        if not actor or not actor.strip():
            raise EnforcementChangeDenied("An actor is required to change enforcement")
        if level == EnforcementLevel.OFF and context != ChangeContext.EMERGENCY:
            raise EnforcementChangeDenied(
                "Enforcement can only be turned off through an emergency disable"
            )

        with self._lock:
            change = EnforcementChange(
                previous_level=self._level,
                new_level=level,
                actor=actor,
                reason=reason,
                context=context,
            )
            self._level = level
            self._history.append(change)

        if level == EnforcementLevel.OFF:
            logger.critical(
                f"Enforcement DISABLED by {actor} ({context.value}): {reason}"
            )
        else:
            logger.warning(
                f"Enforcement level changed {change.previous_level.value} -> "
                f"{level.value} by {actor} ({context.value}): {reason}"
            )
        return change

    def emergency_disable(self, reason: str, actor: str) -> EnforcementChange:
        return self.set_level(EnforcementLevel.OFF, reason, actor, ChangeContext.EMERGENCY)

    def emergency_enable(self, reason: str, actor: str) -> EnforcementChange:
        return self.set_level(EnforcementLevel.STRICT, reason, actor, ChangeContext.EMERGENCY)

    def record_check(self, outcome: CheckOutcome) -> None:
        with self._lock:
            self._stats.total_checks += 1
            if outcome == CheckOutcome.BLOCKED:
                self._stats.transitions_blocked += 1
            elif outcome == CheckOutcome.WARNED:
                self._stats.warnings_issued += 1
            elif outcome == CheckOutcome.SKIPPED:
                self._stats.checks_skipped += 1

    def health(self) -> Dict[str, Any]:
        """Summarise the enforcement state for operators."""
        with self._lock:
            level = self._level
            last_change = self._history[-1]
        return {
            "level": level.value,
            "healthy": level == EnforcementLevel.STRICT,
            "stats": self.stats.to_dict(),
            "last_change": last_change.to_dict(),
        }
