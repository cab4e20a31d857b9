"""
Circuit Breaker - Order Halting State Machine

STATES:
    active     - normal trading
    paused     - timed cool-down after a daily loss breach
    triggered  - emergency stop; only an explicit reset clears it
    disabled   - turned off by configuration; orders are blocked

TRANSITIONS:
    active    -> paused      daily loss limit breached
    paused    -> active      pause elapsed AND no limit critical
    active    -> triggered   manual stop, drawdown, volatility spike,
    paused    -> triggered   correlation breakdown
    triggered -> active      reset(), only with no limit critical
    any       -> disabled    circuit_breaker_enabled = false
    disabled  -> active      re-enabled, no halt latched, no limit critical
    disabled  -> triggered   re-enabled while a halt was latched at disable
                             time or a limit is critical

A halt survives a disable/enable cycle: leaving triggered always goes
through reset().

Every transition appends a RiskEvent and resolves the event of the halt
it ends. Every halt bumps a generation counter; work that captured an
older generation can no longer pass validation.
"""

import logging
import threading
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional, Dict, Set, Callable, Any, Tuple

from src.errors import CircuitOpen
from src.risk import events as ev
from src.risk.events import RiskEventLog, RiskEvent, Severity, RiskAction


logger = logging.getLogger(__name__)


class BreakerState(Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    TRIGGERED = "triggered"
    DISABLED = "disabled"


VALID_TRANSITIONS: Dict[BreakerState, Set[BreakerState]] = {
    BreakerState.ACTIVE: {BreakerState.PAUSED, BreakerState.TRIGGERED, BreakerState.DISABLED},
    BreakerState.PAUSED: {BreakerState.ACTIVE, BreakerState.TRIGGERED, BreakerState.DISABLED},
    BreakerState.TRIGGERED: {BreakerState.ACTIVE, BreakerState.DISABLED},
    BreakerState.DISABLED: {BreakerState.ACTIVE, BreakerState.TRIGGERED},
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CircuitBreaker:
    """
    Per-account circuit breaker.

    All reads and writes go through one re-entrant lock, so a daily-loss
    pause racing a manual emergency stop always ends in one consistent
    state.
    """

    def __init__(
        self,
        event_log: RiskEventLog,
        critical_check: Optional[Callable[[], bool]] = None,
        pause_duration: timedelta = timedelta(hours=12),
        enabled: bool = True,
    ):
        """
        Args:
            event_log: Where transitions are recorded
            critical_check: Returns True while any risk limit is critical
            pause_duration: Daily-loss cool-down
            enabled: Start disabled when False
        """
        self._lock = threading.RLock()
        self.event_log = event_log
        self.critical_check = critical_check or (lambda: False)
        self.pause_duration = pause_duration

        self._state = BreakerState.ACTIVE
        self._generation = 0
        self._paused_at: Optional[datetime] = None
        self._halt_event: Optional[RiskEvent] = None
        self._latched: Optional[RiskEvent] = None    # triggered halt carried across disable
        self._listeners = []

        if not enabled:
            self.disable()

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    @property
    def state(self) -> BreakerState:
        with self._lock:
            return self._state

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    @property
    def resume_at(self) -> Optional[datetime]:
        with self._lock:
            if self._state != BreakerState.PAUSED or self._paused_at is None:
                return None
            return self._paused_at + self.pause_duration

    @property
    def halt_event(self) -> Optional[RiskEvent]:
        with self._lock:
            return self._halt_event

    def token(self) -> int:
        """Cancellation token: the generation at the time of the call."""
        return self.generation

    def allows_orders(self) -> bool:
        return self.state == BreakerState.ACTIVE

    def check(self, token: Optional[int] = None):
        """
        Raise unless new orders are allowed.

        Raises:
            CircuitOpen: breaker not active, or halted since token was taken
        """
        with self._lock:
            if self._state != BreakerState.ACTIVE:
                raise CircuitOpen(
                    f"Circuit breaker is {self._state.value}",
                    details={'state': self._state.value},
                )
            if token is not None and token != self._generation:
                raise CircuitOpen(
                    "Circuit breaker halted since this request started",
                    details={'token': token, 'generation': self._generation},
                )

    def add_listener(self, callback: Callable[[BreakerState, BreakerState], None]):
        self._listeners.append(callback)

    def status(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "state": self._state.value,
                "generation": self._generation,
                "paused_at": self._paused_at.isoformat() if self._paused_at else None,
                "resume_at": self.resume_at.isoformat() if self.resume_at else None,
                "halt_event": self._halt_event.to_dict() if self._halt_event else None,
            }

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def _transition(
        self,
        new_state: BreakerState,
        event_type: str,
        severity: Severity,
        description: str,
        triggered_by: Optional[Dict[str, Any]],
        actions: Tuple[RiskAction, ...],
        now: datetime,
    ) -> RiskEvent:
        old_state = self._state
        if new_state not in VALID_TRANSITIONS[old_state]:
            raise CircuitOpen(f"Invalid breaker transition {old_state.value} -> {new_state.value}")

        if self._halt_event is not None:
            self.event_log.resolve(self._halt_event.id, now)
            self._halt_event = None

        self._state = new_state
        details = {'from': old_state.value, 'to': new_state.value}
        details.update(triggered_by or {})
        event = self.event_log.record(
            event_type, severity, description,
            triggered_by=details, actions=actions, created_at=now,
        )

        if new_state in (BreakerState.PAUSED, BreakerState.TRIGGERED, BreakerState.DISABLED):
            self._generation += 1
            self._halt_event = event
        if new_state != BreakerState.PAUSED:
            self._paused_at = None

        logger.warning(f"Circuit breaker {old_state.value} -> {new_state.value}: {description}")

        for callback in self._listeners:
            callback(old_state, new_state)
        return event

    def pause(
        self,
        description: str,
        triggered_by: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Daily-loss cool-down. Only applies to an active breaker.

        Returns:
            True if the breaker moved to paused
        """
        now = now or _utcnow()
        with self._lock:
            if self._state != BreakerState.ACTIVE:
                logger.debug(f"Pause ignored in state {self._state.value}")
                return False
            self._paused_at = now
            self._transition(
                BreakerState.PAUSED,
                ev.DAILY_LOSS_LIMIT,
                Severity.HIGH,
                description,
                triggered_by,
                (RiskAction.PAUSE_TRADING, RiskAction.NOTIFY_USER, RiskAction.LOG_EVENT),
                now,
            )
            return True

    def trigger(
        self,
        event_type: str,
        description: str,
        triggered_by: Optional[Dict[str, Any]] = None,
        close_positions: bool = False,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Emergency stop.

        Returns:
            True if the breaker moved to triggered
        """
        now = now or _utcnow()
        with self._lock:
            if self._state not in (BreakerState.ACTIVE, BreakerState.PAUSED):
                logger.debug(f"Trigger ignored in state {self._state.value}")
                return False

            actions = [RiskAction.HALT_TRADING]
            if close_positions:
                actions.append(RiskAction.CLOSE_POSITIONS)
            actions += [RiskAction.NOTIFY_USER, RiskAction.LOG_EVENT]

            self._transition(
                BreakerState.TRIGGERED,
                event_type,
                Severity.CRITICAL,
                description,
                triggered_by,
                tuple(actions),
                now,
            )
            return True

    def tick(self, now: Optional[datetime] = None) -> bool:
        """
        Resume a pause whose timer has elapsed, if no limit is critical.

        Returns:
            True if the breaker resumed
        """
        now = now or _utcnow()
        with self._lock:
            if self._state != BreakerState.PAUSED:
                return False
            if now < self._paused_at + self.pause_duration:
                return False
            if self.critical_check():
                logger.info("Pause elapsed but a limit is still critical - staying paused")
                return False

            self._transition(
                BreakerState.ACTIVE,
                ev.BREAKER_RESUMED,
                Severity.LOW,
                "Pause elapsed, trading resumed",
                {'paused_for_hours': (now - self._paused_at).total_seconds() / 3600},
                (RiskAction.RESUME_TRADING, RiskAction.LOG_EVENT),
                now,
            )
            return True

    def reset(self, reason: str = "manual reset", now: Optional[datetime] = None) -> bool:
        """
        Explicit return to active from triggered or paused.

        Raises:
            CircuitOpen: a limit is still critical, or the breaker is disabled
        """
        now = now or _utcnow()
        with self._lock:
            if self._state == BreakerState.ACTIVE:
                return False
            if self._state == BreakerState.DISABLED:
                raise CircuitOpen("Circuit breaker is disabled; enable it instead")
            if self.critical_check():
                raise CircuitOpen("Cannot reset while a risk limit is critical")

            self._transition(
                BreakerState.ACTIVE,
                ev.BREAKER_RESET,
                Severity.MEDIUM,
                reason,
                None,
                (RiskAction.RESUME_TRADING, RiskAction.LOG_EVENT),
                now,
            )
            return True

    def disable(self, now: Optional[datetime] = None) -> bool:
        now = now or _utcnow()
        with self._lock:
            if self._state == BreakerState.DISABLED:
                return False
            if self._state == BreakerState.TRIGGERED:
                self._latched = self._halt_event
            self._transition(
                BreakerState.DISABLED,
                ev.BREAKER_DISABLED,
                Severity.MEDIUM,
                "Circuit breaker disabled by configuration",
                None,
                (RiskAction.HALT_TRADING, RiskAction.LOG_EVENT),
                now,
            )
            return True

    def enable(self, now: Optional[datetime] = None) -> bool:
        """
        Leave disabled. Goes back to triggered if an emergency stop was in
        force when the breaker was disabled, or if a limit is critical now.

        Returns:
            True if the breaker left disabled
        """
        now = now or _utcnow()
        with self._lock:
            if self._state != BreakerState.DISABLED:
                return False

            latched, self._latched = self._latched, None
            critical = self.critical_check()
            if latched is not None or critical:
                details = {'critical_limit': critical}
                if latched is not None:
                    details['latched_event'] = latched.id
                    details['latched_type'] = latched.event_type
                self._transition(
                    BreakerState.TRIGGERED,
                    ev.BREAKER_ENABLED,
                    Severity.HIGH,
                    "Circuit breaker enabled with halt still in force; reset required",
                    details,
                    (RiskAction.HALT_TRADING, RiskAction.NOTIFY_USER, RiskAction.LOG_EVENT),
                    now,
                )
                return True

            self._transition(
                BreakerState.ACTIVE,
                ev.BREAKER_ENABLED,
                Severity.LOW,
                "Circuit breaker enabled by configuration",
                None,
                (RiskAction.RESUME_TRADING, RiskAction.LOG_EVENT),
                now,
            )
            return True
