"""
Mean-Reversion Signal Engine

ENTRY:
- RSI < oversold (30) -> buy, RSI > overbought (70) -> sell

CONFIRMATIONS (each can be switched off):
- The bar touched the band and closed back inside it
- The touch happened near support / resistance
- Volume declined on the overshoot bar

EXITS:
- Stop: 1.8 x ATR
- Target: middle band, or RSI back inside the neutral band
"""

from typing import Optional, List, Tuple

from config.settings import MeanReversionSettings
from src.analysis.indicators import IndicatorSet
from src.strategy.signals import BaseSignalEngine, StrategyType, SignalSide, ExitPlan


class MeanReversionEngine(BaseSignalEngine):
    """RSI extremes confirmed at the Bollinger bands."""

    strategy_type = StrategyType.MEAN_REVERSION

    def __init__(self, settings: Optional[MeanReversionSettings] = None):
        super().__init__(settings or MeanReversionSettings())

    def _band_touch(self, ind: IndicatorSet, side: SignalSide) -> bool:
        tol = self.settings.band_touch_tolerance
        if side == SignalSide.BUY:
            return ind.low <= ind.bb_lower * (1 + tol) and ind.close > ind.bb_lower
        return ind.high >= ind.bb_upper * (1 - tol) and ind.close < ind.bb_upper

    def _near_level(self, ind: IndicatorSet, side: SignalSide) -> bool:
        tol = self.settings.sr_tolerance
        if side == SignalSide.BUY:
            return abs(ind.low - ind.support) / ind.support <= tol
        return abs(ind.high - ind.resistance) / ind.resistance <= tol

    def _entry(self, ind: IndicatorSet) -> Tuple[SignalSide, float, List[str]]:
        s = self.settings

        if ind.rsi < s.rsi_oversold:
            side = SignalSide.BUY
            depth = s.rsi_oversold - ind.rsi
            reasons = ["rsi_oversold"]
        elif ind.rsi > s.rsi_overbought:
            side = SignalSide.SELL
            depth = ind.rsi - s.rsi_overbought
            reasons = ["rsi_overbought"]
        else:
            return SignalSide.HOLD, 0.0, ["rsi_neutral"]

        confidence = s.base_confidence + min(20.0, depth)

        checks = (
            ("band_touch", s.require_band_touch, self._band_touch(ind, side), 10.0),
            ("near_level", s.require_sr_proximity, self._near_level(ind, side), 10.0),
            ("volume_decline", s.require_volume_decline, ind.volume < ind.prev_volume, 5.0),
        )
        for name, required, passed, bonus in checks:
            if passed:
                reasons.append(name)
                confidence += bonus
            elif required:
                return SignalSide.HOLD, 0.0, [f"no_{name}"]

        return side, confidence, reasons

    def _exit_plan(self, ind: IndicatorSet, side: SignalSide) -> ExitPlan:
        s = self.settings
        if side == SignalSide.BUY:
            stop = ind.close - s.stop_atr_multiple * ind.atr
            target = ind.bb_middle if ind.bb_middle > ind.close else ind.close + ind.atr
        else:
            stop = ind.close + s.stop_atr_multiple * ind.atr
            target = ind.bb_middle if ind.bb_middle < ind.close else ind.close - ind.atr

        return ExitPlan(
            stop_loss=stop,
            take_profit_1=target,
            partial_close_fraction=1.0,
            rsi_exit_band=(s.rsi_neutral_low, s.rsi_neutral_high),
        )
