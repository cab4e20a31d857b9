"""
Risk event audit trail.

Events are append-only: never deleted, and resolution is the only
change ever made to a recorded event.
"""

import uuid
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Dict, Any, Callable, Tuple


logger = logging.getLogger(__name__)


class Severity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RiskAction(Enum):
    """Actions recorded with a risk event."""
    HALT_TRADING = "halt_trading"
    PAUSE_TRADING = "pause_trading"
    RESUME_TRADING = "resume_trading"
    CLOSE_POSITIONS = "close_positions"
    NOTIFY_USER = "notify_user"
    LOG_EVENT = "log_event"


# Event types
DAILY_LOSS_LIMIT = "daily_loss_limit"
RISK_LIMIT_CRITICAL = "risk_limit_critical"
EMERGENCY_STOP = "emergency_stop"
DRAWDOWN_LIMIT = "drawdown_limit"
VOLATILITY_SPIKE = "volatility_spike"
CORRELATION_BREAKDOWN = "correlation_breakdown"
BREAKER_RESUMED = "circuit_breaker_resumed"
BREAKER_RESET = "circuit_breaker_reset"
BREAKER_DISABLED = "circuit_breaker_disabled"
BREAKER_ENABLED = "circuit_breaker_enabled"


@dataclass
class RiskEvent:
    """Audit record created by the CircuitBreaker or RiskMonitor."""
    event_type: str
    severity: Severity
    description: str
    triggered_by: Dict[str, Any] = field(default_factory=dict)
    actions_taken: Tuple[str, ...] = ()
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    resolved_at: Optional[datetime] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "event_type": self.event_type,
            "severity": self.severity.value,
            "description": self.description,
            "triggered_by": self.triggered_by,
            "actions_taken": list(self.actions_taken),
            "created_at": self.created_at.isoformat(),
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
        }


class RiskEventLog:
    """Thread-safe append-only event log with listeners."""

    def __init__(self):
        self._lock = threading.RLock()
        self._events: List[RiskEvent] = []
        self._by_id: Dict[str, RiskEvent] = {}
        self._listeners: List[Callable[[RiskEvent], None]] = []

    def add_listener(self, callback: Callable[[RiskEvent], None]):
        self._listeners.append(callback)

    def record(
        self,
        event_type: str,
        severity: Severity,
        description: str,
        triggered_by: Optional[Dict[str, Any]] = None,
        actions: Tuple[RiskAction, ...] = (RiskAction.LOG_EVENT,),
        created_at: Optional[datetime] = None,
    ) -> RiskEvent:
        event = RiskEvent(
            event_type=event_type,
            severity=severity,
            description=description,
            triggered_by=dict(triggered_by or {}),
            actions_taken=tuple(a.value for a in actions),
            created_at=created_at or datetime.now(timezone.utc),
        )
        with self._lock:
            self._events.append(event)
            self._by_id[event.id] = event

        log = logger.warning if severity in (Severity.HIGH, Severity.CRITICAL) else logger.info
        log(f"RISK EVENT [{severity.value}] {event_type}: {description}")

        for callback in self._listeners:
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Risk event listener failed: {e}")
        return event

    def resolve(self, event_id: str, resolved_at: Optional[datetime] = None) -> bool:
        """Mark an event resolved. Returns False if unknown or already resolved."""
        with self._lock:
            event = self._by_id.get(event_id)
            if event is None or event.is_resolved:
                return False
            event.resolved_at = resolved_at or datetime.now(timezone.utc)
            return True

    def get(self, event_id: str) -> Optional[RiskEvent]:
        with self._lock:
            return self._by_id.get(event_id)

    def unresolved(self, event_type: Optional[str] = None) -> List[RiskEvent]:
        with self._lock:
            return [e for e in self._events
                    if not e.is_resolved and (event_type is None or e.event_type == event_type)]

    def events(self, limit: Optional[int] = None) -> List[RiskEvent]:
        """Events, newest first."""
        with self._lock:
            events = list(reversed(self._events))
        return events[:limit] if limit else events

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)
