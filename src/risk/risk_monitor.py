"""
Risk Monitor - Limit Utilization Tracking

Recomputes the status of every configured limit whenever capital,
open risk or P&L changes.

LIMITS:
    daily_loss            loss today (currency)      vs max_daily_loss
    position_size         largest notional / equity   vs max_position_size
    portfolio_risk        total risk / equity         vs max_portfolio_risk
    symbol_exposure       largest symbol notional     vs max_symbol_exposure
    correlation_exposure  largest group notional      vs max_correlation_exposure
    drawdown              drawdown from reference high vs circuit_breaker_threshold
    volatility            largest ATR / price         vs volatility_spike_threshold

STATUS:
    warning   > 75% utilization
    critical  > 90% utilization

A risk_limit_critical event is emitted on each crossing into critical,
not on every evaluation.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Dict, Set, Tuple

from config.settings import RiskSettings
from src.risk import events as ev
from src.risk.events import RiskEventLog, Severity, RiskAction


logger = logging.getLogger(__name__)


WARNING_UTILIZATION = 75.0
CRITICAL_UTILIZATION = 90.0
BREACH_UTILIZATION = 100.0


class LimitType(Enum):
    DAILY_LOSS = "daily_loss"
    POSITION_SIZE = "position_size"
    PORTFOLIO_RISK = "portfolio_risk"
    SYMBOL_EXPOSURE = "symbol_exposure"
    CORRELATION_EXPOSURE = "correlation_exposure"
    DRAWDOWN = "drawdown"
    VOLATILITY = "volatility"


class LimitStatus(Enum):
    NORMAL = "normal"
    WARNING = "warning"
    CRITICAL = "critical"


# Breach of these limits requests an emergency stop
TRIGGER_LIMITS = {
    LimitType.DRAWDOWN: ev.DRAWDOWN_LIMIT,
    LimitType.VOLATILITY: ev.VOLATILITY_SPIKE,
    LimitType.CORRELATION_EXPOSURE: ev.CORRELATION_BREAKDOWN,
}


@dataclass(frozen=True)
class RiskLimitStatus:
    """Utilization of one limit."""
    limit_type: LimitType
    current_value: float
    limit_value: float
    utilization_percentage: float
    status: LimitStatus

    @property
    def breached(self) -> bool:
        return self.utilization_percentage >= BREACH_UTILIZATION

    def to_dict(self) -> dict:
        return {
            "limit_type": self.limit_type.value,
            "current_value": self.current_value,
            "limit_value": self.limit_value,
            "utilization_percentage": self.utilization_percentage,
            "status": self.status.value,
        }


@dataclass(frozen=True)
class PortfolioSnapshot:
    """Account state the limits are evaluated against."""
    equity: float
    realized_pnl_today: float = 0.0
    unrealized_pnl: float = 0.0
    largest_position_notional: float = 0.0
    portfolio_risk: float = 0.0
    symbol_exposure: Dict[str, float] = field(default_factory=dict)
    correlation_groups: Tuple[frozenset, ...] = ()
    atr_pct: Dict[str, float] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def daily_pnl(self) -> float:
        return self.realized_pnl_today + self.unrealized_pnl

    def largest_group_exposure(self) -> Tuple[float, Set[str]]:
        """Largest notional over correlated groups of two or more symbols."""
        best, best_group = 0.0, set()
        for group in self.correlation_groups:
            if len(group) < 2:
                continue
            notional = sum(self.symbol_exposure.get(s, 0.0) for s in group)
            if notional > best:
                best, best_group = notional, set(group)
        return best, best_group


@dataclass
class DrawdownTracker:
    """
    Equity peak and drawdown.

    Drawdown is only meaningful once a positive equity has been seen.
    """
    equity_peak: float = 0.0
    current_equity: float = 0.0
    drawdown_pct: float = 0.0
    initialized: bool = False

    def update(self, equity: float) -> float:
        if equity is None or equity <= 0:
            if self.initialized:
                self.current_equity = max(equity or 0.0, 0.0)
                self.drawdown_pct = 1.0
            return self.drawdown_pct

        if not self.initialized:
            self.equity_peak = equity
            self.initialized = True

        self.current_equity = equity
        if equity > self.equity_peak:
            self.equity_peak = equity

        self.drawdown_pct = (self.equity_peak - equity) / self.equity_peak
        return self.drawdown_pct

    def rebase(self, equity: float) -> float:
        """Measure drawdown from equity as the new reference high."""
        self.equity_peak = 0.0
        self.drawdown_pct = 0.0
        self.initialized = False
        return self.update(equity)


@dataclass(frozen=True)
class RiskAssessment:
    """Result of one evaluation."""
    statuses: Tuple[RiskLimitStatus, ...]
    pause_requested: bool
    trigger_requests: Tuple[Tuple[str, RiskLimitStatus], ...]   # (event type, status)
    timestamp: datetime

    @property
    def critical(self) -> List[RiskLimitStatus]:
        return [s for s in self.statuses if s.status == LimitStatus.CRITICAL]

    def get(self, limit_type: LimitType) -> Optional[RiskLimitStatus]:
        for s in self.statuses:
            if s.limit_type == limit_type:
                return s
        return None


def classify_utilization(utilization: float) -> LimitStatus:
    if utilization > CRITICAL_UTILIZATION:
        return LimitStatus.CRITICAL
    if utilization > WARNING_UTILIZATION:
        return LimitStatus.WARNING
    return LimitStatus.NORMAL


def _status(limit_type: LimitType, current: float, limit: float) -> RiskLimitStatus:
    utilization = 100.0 * current / limit if limit > 0 else 100.0
    return RiskLimitStatus(
        limit_type=limit_type,
        current_value=current,
        limit_value=limit,
        utilization_percentage=utilization,
        status=classify_utilization(utilization),
    )


class RiskMonitor:
    """
    Limit utilization tracker.

    Owned by one account; not thread-safe on its own.
    """

    def __init__(
        self,
        settings: RiskSettings,
        event_log: RiskEventLog,
        drawdown: Optional[DrawdownTracker] = None,
    ):
        self.settings = settings
        self.event_log = event_log
        self.drawdown = drawdown or DrawdownTracker()
        self._latest: Optional[RiskAssessment] = None
        self._previous_status: Dict[LimitType, LimitStatus] = {}

    def update_settings(self, settings: RiskSettings):
        self.settings = settings

    @property
    def latest(self) -> Optional[RiskAssessment]:
        return self._latest

    def has_critical(self) -> bool:
        return self._latest is not None and bool(self._latest.critical)

    def critical_limits(self) -> List[LimitType]:
        if self._latest is None:
            return []
        return [s.limit_type for s in self._latest.critical]

    def compute_statuses(self, snap: PortfolioSnapshot) -> List[RiskLimitStatus]:
        """Limit statuses for a snapshot; no side effects besides the drawdown peak."""
        rs = self.settings
        equity = snap.equity

        def per_equity(value: float) -> float:
            if equity > 0:
                return value / equity
            return float('inf') if value > 0 else 0.0

        drawdown_pct = self.drawdown.update(equity)
        group_notional, _ = snap.largest_group_exposure()

        return [
            _status(LimitType.DAILY_LOSS, max(0.0, -snap.daily_pnl), rs.max_daily_loss),
            _status(LimitType.POSITION_SIZE, per_equity(snap.largest_position_notional),
                    rs.max_position_size),
            _status(LimitType.PORTFOLIO_RISK, per_equity(snap.portfolio_risk), rs.max_portfolio_risk),
            _status(LimitType.SYMBOL_EXPOSURE,
                    per_equity(max(snap.symbol_exposure.values(), default=0.0)),
                    rs.max_symbol_exposure),
            _status(LimitType.CORRELATION_EXPOSURE, per_equity(group_notional),
                    rs.max_correlation_exposure),
            _status(LimitType.DRAWDOWN, drawdown_pct, rs.circuit_breaker_threshold),
            _status(LimitType.VOLATILITY, max(snap.atr_pct.values(), default=0.0),
                    rs.volatility_spike_threshold),
        ]

    def evaluate(self, snap: PortfolioSnapshot) -> RiskAssessment:
        """
        Recompute all limits and report what the breaker should do.

        Returns:
            RiskAssessment with pause / trigger requests
        """
        statuses = self.compute_statuses(snap)

        for status in statuses:
            previous = self._previous_status.get(status.limit_type, LimitStatus.NORMAL)
            if status.status == LimitStatus.CRITICAL and previous != LimitStatus.CRITICAL:
                self.event_log.record(
                    ev.RISK_LIMIT_CRITICAL,
                    Severity.HIGH,
                    f"{status.limit_type.value} at {status.utilization_percentage:.1f}% "
                    f"of limit",
                    triggered_by=status.to_dict(),
                    actions=(RiskAction.NOTIFY_USER, RiskAction.LOG_EVENT),
                    created_at=snap.timestamp,
                )
            elif status.status == LimitStatus.WARNING and previous == LimitStatus.NORMAL:
                logger.warning(f"Risk limit warning: {status.limit_type.value} "
                               f"{status.utilization_percentage:.1f}%")
            self._previous_status[status.limit_type] = status.status

        pause_requested = snap.daily_pnl <= -self.settings.max_daily_loss

        trigger_requests = tuple(
            (TRIGGER_LIMITS[s.limit_type], s)
            for s in statuses
            if s.limit_type in TRIGGER_LIMITS and s.breached
        )

        self._latest = RiskAssessment(
            statuses=tuple(statuses),
            pause_requested=pause_requested,
            trigger_requests=trigger_requests,
            timestamp=snap.timestamp,
        )
        return self._latest
