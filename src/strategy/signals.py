"""
Signal model and bookkeeping.

Signals are immutable. SignalBook enforces at most one unresolved
signal per (engine, symbol); a second one is rejected, never queued.
"""

import uuid
import logging
import threading
from abc import ABC, abstractmethod
from collections import deque, OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Tuple, Any

from config.settings import Timeframe
from src.analysis.indicators import IndicatorSet
from src.analysis.regime import MarketRegime, RegimeState
from src.errors import DuplicateSignal


logger = logging.getLogger(__name__)


class StrategyType(Enum):
    """Signal engines."""
    TREND_FOLLOWING = "trend_following"
    MEAN_REVERSION = "mean_reversion"


class SignalSide(Enum):
    """Signal direction."""
    BUY = "buy"
    SELL = "sell"
    HOLD = "hold"


@dataclass(frozen=True)
class ExitPlan:
    """Stop and targets attached to an entry signal."""
    stop_loss: float
    take_profit_1: float
    take_profit_2: Optional[float] = None
    trailing_distance: Optional[float] = None
    partial_close_fraction: float = 0.5
    rsi_exit_band: Optional[Tuple[float, float]] = None

    def to_dict(self) -> dict:
        return {
            "stop_loss": self.stop_loss,
            "take_profit_1": self.take_profit_1,
            "take_profit_2": self.take_profit_2,
            "trailing_distance": self.trailing_distance,
            "partial_close_fraction": self.partial_close_fraction,
            "rsi_exit_band": list(self.rsi_exit_band) if self.rsi_exit_band else None,
        }


@dataclass(frozen=True)
class Signal:
    """
    Immutable trading signal.

    Produced by exactly one engine for one completed bar.
    """
    symbol: str
    strategy_type: StrategyType
    side: SignalSide
    confidence: float               # 0-100
    price: float
    timestamp: datetime
    timeframe: Timeframe
    indicators: Dict[str, Any] = field(default_factory=dict)
    exit_plan: Optional[ExitPlan] = None
    regime_aligned: bool = False
    reasons: Tuple[str, ...] = ()
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def is_actionable(self) -> bool:
        return self.side != SignalSide.HOLD

    @property
    def stop_distance(self) -> Optional[float]:
        if self.exit_plan is None:
            return None
        return abs(self.price - self.exit_plan.stop_loss)

    @property
    def tp1_distance(self) -> Optional[float]:
        if self.exit_plan is None:
            return None
        return abs(self.exit_plan.take_profit_1 - self.price)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "symbol": self.symbol,
            "strategy_type": self.strategy_type.value,
            "side": self.side.value,
            "confidence": self.confidence,
            "price": self.price,
            "timestamp": self.timestamp.isoformat(),
            "timeframe": self.timeframe.value,
            "exit_plan": self.exit_plan.to_dict() if self.exit_plan else None,
            "regime_aligned": self.regime_aligned,
            "reasons": list(self.reasons),
        }


class SignalBook:
    """
    Open signals per (engine, symbol) plus a bounded history.

    Thread-safe.
    """

    def __init__(self, history_size: int = 1000):
        self._lock = threading.Lock()
        self._open: Dict[Tuple[StrategyType, str], Signal] = {}
        self._history: "OrderedDict[str, Signal]" = OrderedDict()
        self._resolutions: Dict[str, str] = {}
        self._history_size = history_size

    def register(self, signal: Signal) -> Signal:
        """
        Register an actionable signal.

        Raises:
            DuplicateSignal: the engine has an unresolved signal for the symbol
        """
        if not signal.is_actionable:
            raise ValueError("hold signals are never registered")

        key = (signal.strategy_type, signal.symbol)
        with self._lock:
            existing = self._open.get(key)
            if existing is not None:
                raise DuplicateSignal(
                    f"{signal.strategy_type.value} already has open signal "
                    f"{existing.id} for {signal.symbol}",
                    details={'open_signal_id': existing.id},
                )
            self._open[key] = signal
            self._history[signal.id] = signal
            while len(self._history) > self._history_size:
                old_id, _ = self._history.popitem(last=False)
                self._resolutions.pop(old_id, None)

        logger.debug(f"Registered signal {signal.id} {signal.symbol} "
                     f"{signal.strategy_type.value} {signal.side.value}")
        return signal

    def resolve(self, signal_id: str, reason: str) -> bool:
        """Mark a signal resolved. Returns False if it was not open."""
        with self._lock:
            for key, signal in self._open.items():
                if signal.id == signal_id:
                    del self._open[key]
                    self._resolutions[signal_id] = reason
                    logger.debug(f"Resolved signal {signal_id}: {reason}")
                    return True
        return False

    def get(self, signal_id: str) -> Optional[Signal]:
        with self._lock:
            return self._history.get(signal_id)

    def is_open(self, signal_id: str) -> bool:
        with self._lock:
            return any(s.id == signal_id for s in self._open.values())

    def open_signal(self, strategy_type: StrategyType, symbol: str) -> Optional[Signal]:
        with self._lock:
            return self._open.get((strategy_type, symbol))

    def open_signals(self) -> List[Signal]:
        with self._lock:
            return list(self._open.values())

    def recent(self, symbol: Optional[str] = None, limit: int = 50) -> List[dict]:
        """Most recent signals first, with their resolution."""
        with self._lock:
            signals = [s for s in reversed(self._history.values())
                       if symbol is None or s.symbol == symbol]
            result = []
            for s in signals[:limit]:
                data = s.to_dict()
                data['resolution'] = self._resolutions.get(s.id)
                result.append(data)
            return result


# =============================================================================
# ENGINE BASE
# =============================================================================

PRIMARY_REGIME = {
    StrategyType.TREND_FOLLOWING: MarketRegime.TRENDING,
    StrategyType.MEAN_REVERSION: MarketRegime.RANGING,
}


class BaseSignalEngine(ABC):
    """
    Common signal construction.

    Subclasses decide entries; the base applies regime weighting and
    builds the Signal.
    """

    strategy_type: StrategyType

    def __init__(self, settings):
        self.settings = settings

    @property
    def enabled(self) -> bool:
        return self.settings.enabled

    @abstractmethod
    def _entry(self, ind: IndicatorSet) -> Tuple[SignalSide, float, List[str]]:
        """Return (side, unweighted confidence, reasons)."""

    @abstractmethod
    def _exit_plan(self, ind: IndicatorSet, side: SignalSide) -> ExitPlan:
        """Stops and targets for an entry."""

    def evaluate(self, ind: IndicatorSet, regime: Optional[RegimeState] = None) -> Signal:
        """
        Evaluate one completed bar.

        Args:
            ind: Indicators of the bar
            regime: Regime honored for execution; a mismatch with this
                    engine's primary regime lowers confidence

        Returns:
            Entry signal, or a hold signal when no entry fires
        """
        aligned = (
            regime is not None
            and regime.base_regime == PRIMARY_REGIME[self.strategy_type]
        )

        side, confidence, reasons = self._entry(ind)

        if side == SignalSide.HOLD:
            return Signal(
                symbol=ind.symbol,
                strategy_type=self.strategy_type,
                side=SignalSide.HOLD,
                confidence=0.0,
                price=ind.close,
                timestamp=ind.timestamp,
                timeframe=ind.timeframe,
                regime_aligned=aligned,
                reasons=tuple(reasons),
            )

        if not aligned:
            confidence *= self.settings.regime_mismatch_factor
            reasons.append("regime_mismatch")

        return Signal(
            symbol=ind.symbol,
            strategy_type=self.strategy_type,
            side=side,
            confidence=max(0.0, min(100.0, confidence)),
            price=ind.close,
            timestamp=ind.timestamp,
            timeframe=ind.timeframe,
            indicators=ind.to_dict(),
            exit_plan=self._exit_plan(ind, side),
            regime_aligned=aligned,
            reasons=tuple(reasons),
        )
