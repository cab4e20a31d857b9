"""
ML Gate - Score-Based Execution Filter

Scores come from an external inference collaborator; the gate only
applies the execution rule.

EXECUTION RULE:
    executed = probability >= 0.60 AND expected_R >= 1.8

Hold signals and non-finite scores are never executed. Every rejection
names all failed rules.
"""

import math
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Optional, List

import numpy as np

from config.settings import MLGateSettings
from src.analysis.indicators import IndicatorSet
from src.analysis.regime import MarketRegime, RegimeState
from src.strategy.signals import Signal, SignalSide


class GateReason(Enum):
    """Reason for a gate rejection."""
    HOLD_SIGNAL = "HOLD_SIGNAL"
    INVALID_SCORE = "INVALID_SCORE"
    LOW_PROBABILITY = "LOW_PROBABILITY"
    LOW_EXPECTED_R = "LOW_EXPECTED_R"


@dataclass(frozen=True)
class FeatureVector:
    """Model inputs for one candidate signal."""
    regime_trending: float
    regime_ranging: float
    regime_high_volatility: float
    rsi: float
    macd_hist_delta: float
    bb_percent_b: float
    atr_pct: float
    volume_zscore: float
    ema_distance_pct: float
    orderbook_imbalance: float = 0.0

    # Candidate context
    side: float = 0.0               # +1 buy, -1 sell
    signal_confidence: float = 0.0

    @classmethod
    def build(
        cls,
        signal: Signal,
        indicators: IndicatorSet,
        regime: Optional[RegimeState],
        orderbook_imbalance: float = 0.0,
    ) -> 'FeatureVector':
        label = regime.regime if regime is not None else None
        side = {SignalSide.BUY: 1.0, SignalSide.SELL: -1.0}.get(signal.side, 0.0)
        return cls(
            regime_trending=1.0 if label == MarketRegime.TRENDING else 0.0,
            regime_ranging=1.0 if label == MarketRegime.RANGING else 0.0,
            regime_high_volatility=1.0 if label == MarketRegime.HIGH_VOLATILITY else 0.0,
            rsi=indicators.rsi,
            macd_hist_delta=indicators.macd_hist_delta,
            bb_percent_b=indicators.bb_percent_b,
            atr_pct=indicators.atr_pct,
            volume_zscore=indicators.volume_zscore,
            ema_distance_pct=indicators.ema_distance_pct,
            orderbook_imbalance=orderbook_imbalance,
            side=side,
            signal_confidence=signal.confidence,
        )

    def to_dict(self) -> dict:
        return asdict(self)

    def to_array(self) -> np.ndarray:
        return np.array(list(asdict(self).values()), dtype=float)


@dataclass(frozen=True)
class MLScore:
    """Score supplied by the inference collaborator."""
    probability: float
    expected_r: float


@dataclass(frozen=True)
class MLDecision:
    """
    Immutable gate decision.

    One per candidate signal.
    """
    signal_id: str
    probability: float
    expected_r: float
    executed: bool
    reason: str
    reasons: tuple  # Tuple of GateReason

    def to_dict(self) -> dict:
        return {
            "signal_id": self.signal_id,
            "probability": self.probability,
            "expected_r": self.expected_r,
            "executed": self.executed,
            "reason": self.reason,
            "reasons": [r.value for r in self.reasons],
        }


class MLGate:
    """
    Pure decision function over (signal, score).

    Holds nothing but its thresholds.
    """

    def __init__(self, settings: Optional[MLGateSettings] = None):
        self.settings = settings or MLGateSettings()

    def decide(self, signal: Signal, score: MLScore) -> MLDecision:
        s = self.settings
        reasons: List[GateReason] = []
        messages: List[str] = []

        if signal.side == SignalSide.HOLD:
            reasons.append(GateReason.HOLD_SIGNAL)
            messages.append("hold signal")

        if not (math.isfinite(score.probability) and math.isfinite(score.expected_r)):
            reasons.append(GateReason.INVALID_SCORE)
            messages.append("non-finite score")
        else:
            if score.probability < s.min_probability:
                reasons.append(GateReason.LOW_PROBABILITY)
                messages.append(f"probability {score.probability:.2f} < {s.min_probability:.2f}")
            if score.expected_r < s.min_expected_r:
                reasons.append(GateReason.LOW_EXPECTED_R)
                messages.append(f"expected_r {score.expected_r:.2f} < {s.min_expected_r:.2f}")

        executed = not reasons
        return MLDecision(
            signal_id=signal.id,
            probability=score.probability,
            expected_r=score.expected_r,
            executed=executed,
            reason="accepted" if executed else "; ".join(messages),
            reasons=tuple(reasons),
        )
