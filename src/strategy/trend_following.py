"""
Trend-Following Signal Engine

ENTRY (buy; sell is mirrored):
1. EMA(9) crosses above EMA(21) on this bar
2. SMA(50) > SMA(200)
3. MACD line above its signal line (same-bar cross if require_macd_cross)
4. If require_breakout: close above the upper band AND
   volume > mean + k * std
5. ADX >= min_adx

EXITS:
- Stop: 1.8 x ATR
- TP1: 1 x ATR, close 50%, stop to breakeven
- TP2: 3 x ATR, or a 1 x ATR trailing stop after TP1
"""

from typing import Optional, List, Tuple

from config.settings import TrendFollowingSettings
from src.analysis.indicators import IndicatorSet
from src.strategy.signals import BaseSignalEngine, StrategyType, SignalSide, ExitPlan


class TrendFollowingEngine(BaseSignalEngine):
    """EMA cross trend entries with MACD and optional breakout confirmation."""

    strategy_type = StrategyType.TREND_FOLLOWING

    def __init__(self, settings: Optional[TrendFollowingSettings] = None):
        super().__init__(settings or TrendFollowingSettings())

    def _direction(self, ind: IndicatorSet) -> SignalSide:
        crossed_up = ind.prev_ema_fast <= ind.prev_ema_slow and ind.ema_fast > ind.ema_slow
        crossed_down = ind.prev_ema_fast >= ind.prev_ema_slow and ind.ema_fast < ind.ema_slow

        if crossed_up and ind.sma_mid > ind.sma_long:
            return SignalSide.BUY
        if crossed_down and ind.sma_mid < ind.sma_long:
            return SignalSide.SELL
        return SignalSide.HOLD

    def _macd_confirms(self, ind: IndicatorSet, side: SignalSide) -> Tuple[bool, bool]:
        """Returns (confirmed, crossed_this_bar)."""
        if side == SignalSide.BUY:
            above = ind.macd > ind.macd_signal
            crossed = above and ind.prev_macd <= ind.prev_macd_signal
        else:
            above = ind.macd < ind.macd_signal
            crossed = above and ind.prev_macd >= ind.prev_macd_signal

        if self.settings.require_macd_cross:
            return crossed, crossed
        return above, crossed

    def _breakout(self, ind: IndicatorSet, side: SignalSide) -> bool:
        spike = ind.volume > ind.volume_mean + self.settings.volume_spike_k * ind.volume_std
        if side == SignalSide.BUY:
            return spike and ind.close > ind.bb_upper
        return spike and ind.close < ind.bb_lower

    def _entry(self, ind: IndicatorSet) -> Tuple[SignalSide, float, List[str]]:
        s = self.settings
        side = self._direction(ind)
        if side == SignalSide.HOLD:
            return SignalSide.HOLD, 0.0, ["no_ema_cross"]

        reasons = ["ema_cross", "sma_aligned"]

        macd_ok, macd_crossed = self._macd_confirms(ind, side)
        if not macd_ok:
            return SignalSide.HOLD, 0.0, ["macd_not_confirming"]
        reasons.append("macd_cross" if macd_crossed else "macd_aligned")

        breakout = self._breakout(ind, side)
        if s.require_breakout and not breakout:
            return SignalSide.HOLD, 0.0, ["no_breakout"]
        if breakout:
            reasons.append("volume_breakout")

        if ind.adx < s.min_adx:
            return SignalSide.HOLD, 0.0, ["adx_below_floor"]

        confidence = s.base_confidence
        confidence += min(15.0, max(0.0, ind.adx - 20.0))
        if macd_crossed:
            confidence += 10.0
        if breakout:
            confidence += 10.0

        return side, confidence, reasons

    def _exit_plan(self, ind: IndicatorSet, side: SignalSide) -> ExitPlan:
        s = self.settings
        sign = 1.0 if side == SignalSide.BUY else -1.0
        return ExitPlan(
            stop_loss=ind.close - sign * s.stop_atr_multiple * ind.atr,
            take_profit_1=ind.close + sign * s.tp1_atr_multiple * ind.atr,
            take_profit_2=ind.close + sign * s.tp2_atr_multiple * ind.atr,
            trailing_distance=s.trailing_atr_multiple * ind.atr,
            partial_close_fraction=s.partial_close_fraction,
        )
