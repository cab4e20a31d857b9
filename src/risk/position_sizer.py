"""
Position Sizer

Converts an accepted signal into a recommended and a hard-capped size.

Methods:
    fixed_percentage     size = capital x risk / stop_distance
    kelly                f = w - (1 - w) / (avg_win / avg_loss), clipped to
                         [0, risk_per_trade]; size = capital x f / stop_distance
    volatility_adjusted  fixed size x clip(target_vol / ATR%, 0.5, 2.0)
    risk_parity          equal risk per position out of the portfolio budget

Adjustments (before clamping):
    high_volatility regime  x 0.5
    low liquidity session   x (1 - reduction)

Clamp:
    size = min(computed, max_position_size x capital / price,
               remaining symbol exposure / price)
"""

import math
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Tuple

from config.settings import RiskSettings, SizingSettings, SizingMethod
from src.errors import InvalidInputs


logger = logging.getLogger(__name__)


CONFIDENCE_LEVELS = {
    SizingMethod.KELLY: 0.95,
    SizingMethod.FIXED_PERCENTAGE: 0.85,
    SizingMethod.VOLATILITY_ADJUSTED: 0.88,
    SizingMethod.RISK_PARITY: 0.92,
}


@dataclass(frozen=True)
class SizingRequest:
    """Snapshot of everything a sizing decision depends on."""
    symbol: str
    capital: float
    price: float
    stop_distance: float
    risk_per_trade: float
    method: SizingMethod = SizingMethod.FIXED_PERCENTAGE

    atr_pct: Optional[float] = None
    win_rate: Optional[float] = None
    avg_win: Optional[float] = None
    avg_loss: Optional[float] = None

    high_volatility: bool = False
    low_liquidity: Optional[bool] = None    # None: derive from timestamp
    portfolio_risk: float = 0.0             # Currency at risk in open positions
    symbol_exposure: float = 0.0            # Open notional in this symbol
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class SizingResult:
    """Sizing outcome with its inputs."""
    symbol: str
    method: SizingMethod
    recommended_size: float
    max_size: float
    risk_score: float
    confidence_level: float

    capital: float
    price: float
    stop_distance: float
    risk_amount: float
    adjustments: Tuple[str, ...]
    computed_at: datetime
    kelly_fraction: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "method": self.method.value,
            "recommended_size": self.recommended_size,
            "max_size": self.max_size,
            "risk_score": self.risk_score,
            "confidence_level": self.confidence_level,
            "capital": self.capital,
            "price": self.price,
            "stop_distance": self.stop_distance,
            "risk_amount": self.risk_amount,
            "adjustments": list(self.adjustments),
            "computed_at": self.computed_at.isoformat(),
            "kelly_fraction": self.kelly_fraction,
        }


def kelly_fraction(win_rate: float, avg_win: float, avg_loss: float) -> float:
    """Raw Kelly fraction (may be negative)."""
    payoff = avg_win / avg_loss
    return win_rate - (1.0 - win_rate) / payoff


def _finite_positive(name: str, value: float):
    if value is None or not math.isfinite(value) or value <= 0:
        raise InvalidInputs(f"{name} must be a positive number, got {value}")


class PositionSizer:
    """
    Risk-based position sizing with hard caps.

    Pure with respect to its settings: the same request always produces
    the same result.
    """

    def __init__(
        self,
        risk_settings: Optional[RiskSettings] = None,
        sizing_settings: Optional[SizingSettings] = None,
    ):
        self.risk_settings = risk_settings or RiskSettings()
        self.settings = sizing_settings or SizingSettings()

    def _validate(self, req: SizingRequest):
        _finite_positive("capital", req.capital)
        _finite_positive("price", req.price)
        _finite_positive("stop_distance", req.stop_distance)
        _finite_positive("risk_per_trade", req.risk_per_trade)

        stats = (req.win_rate, req.avg_win, req.avg_loss)
        if req.method == SizingMethod.KELLY and any(v is None for v in stats):
            raise InvalidInputs("kelly sizing requires win_rate, avg_win and avg_loss")
        for name, value in zip(("win_rate", "avg_win", "avg_loss"), stats):
            if value is not None:
                _finite_positive(name, value)
        if req.win_rate is not None and req.win_rate > 1:
            raise InvalidInputs(f"win_rate must be <= 1, got {req.win_rate}")

        if req.method == SizingMethod.VOLATILITY_ADJUSTED:
            _finite_positive("atr_pct", req.atr_pct)

    def _is_low_liquidity(self, req: SizingRequest) -> bool:
        if req.low_liquidity is not None:
            return req.low_liquidity
        return self.settings.weekend_is_low_liquidity and req.timestamp.weekday() >= 5

    def _base_size(self, req: SizingRequest) -> Tuple[float, Optional[float]]:
        fixed = req.capital * req.risk_per_trade / req.stop_distance

        if req.method == SizingMethod.FIXED_PERCENTAGE:
            return fixed, None

        if req.method == SizingMethod.KELLY:
            raw = kelly_fraction(req.win_rate, req.avg_win, req.avg_loss)
            fraction = max(0.0, min(raw, req.risk_per_trade))
            return req.capital * fraction / req.stop_distance, raw

        if req.method == SizingMethod.VOLATILITY_ADJUSTED:
            scale = self.settings.target_volatility / req.atr_pct
            scale = min(self.settings.max_volatility_scale,
                        max(self.settings.min_volatility_scale, scale))
            return fixed * scale, None

        if req.method == SizingMethod.RISK_PARITY:
            budget = req.capital * self.risk_settings.max_portfolio_risk
            per_position = budget / self.risk_settings.max_positions
            remaining = max(0.0, budget - req.portfolio_risk)
            return min(per_position, remaining) / req.stop_distance, None

        raise InvalidInputs(f"Unknown sizing method: {req.method}")

    def calculate(self, req: SizingRequest) -> SizingResult:
        """
        Size one order.

        Raises:
            InvalidInputs: non-positive capital, price, stop distance or
                           win/loss statistics
        """
        self._validate(req)

        size, raw_kelly = self._base_size(req)
        adjustments = []

        if req.high_volatility:
            size *= self.settings.high_volatility_factor
            adjustments.append("high_volatility")

        if self._is_low_liquidity(req):
            size *= 1.0 - self.settings.low_liquidity_reduction
            adjustments.append("low_liquidity")

        rs = self.risk_settings
        position_cap = rs.max_position_size * req.capital / req.price
        exposure_room = max(0.0, rs.max_symbol_exposure * req.capital - req.symbol_exposure)
        exposure_cap = exposure_room / req.price
        max_size = min(position_cap, exposure_cap)

        if size > max_size:
            adjustments.append("capped")
        recommended = max(0.0, min(size, max_size))

        risk_amount = recommended * req.stop_distance
        result = SizingResult(
            symbol=req.symbol,
            method=req.method,
            recommended_size=recommended,
            max_size=max_size,
            risk_score=self._risk_score(risk_amount / req.capital, req),
            confidence_level=CONFIDENCE_LEVELS[req.method],
            capital=req.capital,
            price=req.price,
            stop_distance=req.stop_distance,
            risk_amount=risk_amount,
            adjustments=tuple(adjustments),
            computed_at=req.timestamp,
            kelly_fraction=raw_kelly,
        )

        logger.debug(f"Sized {req.symbol} {req.method.value}: {recommended:.6f} "
                     f"(max {max_size:.6f}, risk {risk_amount:.2f})")
        return result

    @staticmethod
    def _risk_score(risk_fraction: float, req: SizingRequest) -> float:
        volatility = req.atr_pct or 0.0
        win_rate = req.win_rate if req.win_rate is not None else 0.5
        score = 0.5 + risk_fraction * 2 + volatility * 10 - (win_rate - 0.5) * 0.5
        return max(0.1, min(0.9, score))
