"""
Risk module - sizing, limit monitoring, circuit breaker and positions.
"""

from .events import RiskEvent, RiskEventLog, Severity, RiskAction
from .position_sizer import PositionSizer, SizingRequest, SizingResult, kelly_fraction
from .risk_monitor import (
    LimitType,
    LimitStatus,
    RiskLimitStatus,
    PortfolioSnapshot,
    DrawdownTracker,
    RiskAssessment,
    RiskMonitor,
)
from .circuit_breaker import BreakerState, CircuitBreaker
from .portfolio import Position, PositionStatus, PositionBook, DailyPnL, DailyPnLLedger

__all__ = [
    'RiskEvent', 'RiskEventLog', 'Severity', 'RiskAction',
    'PositionSizer', 'SizingRequest', 'SizingResult', 'kelly_fraction',
    'LimitType', 'LimitStatus', 'RiskLimitStatus', 'PortfolioSnapshot',
    'DrawdownTracker', 'RiskAssessment', 'RiskMonitor',
    'BreakerState', 'CircuitBreaker',
    'Position', 'PositionStatus', 'PositionBook', 'DailyPnL', 'DailyPnLLedger',
]
