"""
Market Regime Classification

Labels each completed bar as trending, ranging or high_volatility.

RULES:
1. trending:  ADX >= 20 AND |EMA50 - EMA200| / price >= 0.5%
2. ranging:   ADX < 20 AND Bollinger width < its 60-bar median
3. neither:   ranging with a fixed low confidence
4. high_volatility: ATR / price >= 2% - checked LAST, overrides the label

Confidence = min(100, 50 + 50 * margin), where margin is the smallest
normalized distance past the rule's thresholds.

RegimeTracker reports label changes as events and only honors a new
label for execution after it has been held for the minimum dwell time.
"""

import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, List, Dict, Tuple, Callable, Deque

from config.settings import RegimeSettings, Timeframe
from src.analysis.indicators import IndicatorSet


logger = logging.getLogger(__name__)


class MarketRegime(Enum):
    """Market regime labels."""
    TRENDING = "trending"
    RANGING = "ranging"
    HIGH_VOLATILITY = "high_volatility"


@dataclass(frozen=True)
class RegimeState:
    """Regime classification of one bar."""
    symbol: str
    timeframe: Timeframe
    regime: MarketRegime
    base_regime: MarketRegime       # Label before the volatility overlay
    confidence: float
    volatility: float               # ATR / price
    trend_strength: float           # ADX
    high_volatility: bool
    timestamp: datetime

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "timeframe": self.timeframe.value,
            "regime": self.regime.value,
            "base_regime": self.base_regime.value,
            "confidence": self.confidence,
            "volatility": self.volatility,
            "trend_strength": self.trend_strength,
            "high_volatility": self.high_volatility,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class RegimeChangeEvent:
    """A label change between two consecutive evaluations."""
    symbol: str
    timeframe: Timeframe
    previous: MarketRegime
    current: MarketRegime
    confidence: float
    timestamp: datetime

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "timeframe": self.timeframe.value,
            "previous": self.previous.value,
            "current": self.current.value,
            "confidence": self.confidence,
            "timestamp": self.timestamp.isoformat(),
        }


def _confidence(margin: float) -> float:
    return min(100.0, 50.0 + 50.0 * margin)


class RegimeClassifier:
    """
    Pure regime classifier.

    Same IndicatorSet in, same RegimeState out.
    """

    def __init__(self, settings: Optional[RegimeSettings] = None):
        self.settings = settings or RegimeSettings()

    def classify(self, indicators: IndicatorSet) -> RegimeState:
        s = self.settings
        adx = indicators.adx
        ema_distance = indicators.ema_distance_pct
        atr_pct = indicators.atr_pct

        if adx >= s.adx_threshold and ema_distance >= s.ema_distance_threshold:
            base = MarketRegime.TRENDING
            margin = min(
                (adx - s.adx_threshold) / s.adx_threshold,
                (ema_distance - s.ema_distance_threshold) / s.ema_distance_threshold,
            )
            confidence = _confidence(margin)
        elif adx < s.adx_threshold and indicators.bb_width < indicators.bb_width_median:
            base = MarketRegime.RANGING
            margin = min(
                (s.adx_threshold - adx) / s.adx_threshold,
                (indicators.bb_width_median - indicators.bb_width) / indicators.bb_width_median,
            )
            confidence = _confidence(margin)
        else:
            base = MarketRegime.RANGING
            confidence = s.fallback_confidence

        high_volatility = atr_pct >= s.atr_pct_threshold
        regime = base
        if high_volatility:
            regime = MarketRegime.HIGH_VOLATILITY
            confidence = _confidence((atr_pct - s.atr_pct_threshold) / s.atr_pct_threshold)

        return RegimeState(
            symbol=indicators.symbol,
            timeframe=indicators.timeframe,
            regime=regime,
            base_regime=base,
            confidence=confidence,
            volatility=atr_pct,
            trend_strength=adx,
            high_volatility=high_volatility,
            timestamp=indicators.timestamp,
        )


class _Track:
    """Per-stream regime tracking."""

    def __init__(self, history_size: int):
        self.state: Optional[RegimeState] = None
        self.confirmed: Optional[RegimeState] = None
        self.label_since: Optional[datetime] = None
        self.history: Deque[RegimeState] = deque(maxlen=history_size)


class RegimeTracker:
    """
    Current regime, history and change events per (symbol, timeframe).

    A label becomes the confirmed regime once it has been observed
    continuously for `min_dwell`, measured between bar close times.
    """

    def __init__(
        self,
        classifier: Optional[RegimeClassifier] = None,
        min_dwell: Optional[timedelta] = None,
        history_size: int = 5000,
    ):
        self.classifier = classifier or RegimeClassifier()
        self.min_dwell = min_dwell if min_dwell is not None else self.classifier.settings.min_dwell
        self.history_size = history_size
        self._tracks: Dict[Tuple[str, Timeframe], _Track] = {}
        self._listeners: List[Callable[[RegimeChangeEvent], None]] = []

    def add_listener(self, callback: Callable[[RegimeChangeEvent], None]):
        self._listeners.append(callback)

    def update(self, indicators: IndicatorSet) -> Tuple[RegimeState, Optional[RegimeChangeEvent]]:
        """
        Classify a bar and update tracking.

        Returns:
            (state, change event or None)
        """
        state = self.classifier.classify(indicators)
        key = (state.symbol, state.timeframe)
        track = self._tracks.get(key)
        if track is None:
            track = _Track(self.history_size)
            self._tracks[key] = track

        observed_at = state.timestamp + state.timeframe.to_timedelta()
        event = None
        previous = track.state

        if previous is None or previous.regime != state.regime:
            track.label_since = observed_at
            if previous is not None:
                event = RegimeChangeEvent(
                    symbol=state.symbol,
                    timeframe=state.timeframe,
                    previous=previous.regime,
                    current=state.regime,
                    confidence=state.confidence,
                    timestamp=state.timestamp,
                )

        track.state = state
        track.history.append(state)

        if observed_at - track.label_since >= self.min_dwell:
            if track.confirmed is None or track.confirmed.regime != state.regime:
                logger.info(f"{state.symbol} {state.timeframe.value}: regime confirmed "
                            f"{state.regime.value} ({state.confidence:.0f})")
            track.confirmed = state

        if event is not None:
            logger.info(f"{state.symbol} {state.timeframe.value}: regime "
                        f"{event.previous.value} -> {event.current.value}")
            for callback in self._listeners:
                callback(event)

        return state, event

    def current(self, symbol: str, timeframe: Timeframe) -> Optional[RegimeState]:
        track = self._tracks.get((symbol, timeframe))
        return track.state if track else None

    def confirmed(
        self,
        symbol: str,
        timeframe: Timeframe,
        now: Optional[datetime] = None,
    ) -> Optional[RegimeState]:
        """
        Regime honored for execution.

        Args:
            now: Optional wall-clock time; the current label counts as
                 confirmed once now - first observation >= min_dwell
        """
        track = self._tracks.get((symbol, timeframe))
        if track is None:
            return None
        if now is not None and track.state is not None:
            if now - track.label_since >= self.min_dwell:
                return track.state
        return track.confirmed

    def history(self, symbol: str, timeframe: Timeframe) -> List[RegimeState]:
        track = self._tracks.get((symbol, timeframe))
        return list(track.history) if track else []
