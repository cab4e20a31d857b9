"""Strategy module - signal engines, exits and the ML gate."""

from src.strategy.signals import (
    StrategyType,
    SignalSide,
    ExitPlan,
    Signal,
    SignalBook,
    BaseSignalEngine,
)
from src.strategy.trend_following import TrendFollowingEngine
from src.strategy.mean_reversion import MeanReversionEngine
from src.strategy.ml_gate import FeatureVector, MLScore, MLDecision, MLGate, GateReason
from src.strategy.exits import ExitManager, ExitInstruction, ExitReason

__all__ = [
    'StrategyType', 'SignalSide', 'ExitPlan', 'Signal', 'SignalBook', 'BaseSignalEngine',
    'TrendFollowingEngine', 'MeanReversionEngine',
    'FeatureVector', 'MLScore', 'MLDecision', 'MLGate', 'GateReason',
    'ExitManager', 'ExitInstruction', 'ExitReason',
]
