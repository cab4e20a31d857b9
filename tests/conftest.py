"""
Shared fixtures for the risk core tests.
"""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import numpy as np
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from config.settings import Timeframe
from src.analysis.indicators import IndicatorSet
from src.analysis.regime import MarketRegime, RegimeState
from src.data.bars import MarketBar


# Wednesday, so the weekend low-liquidity rule never applies by accident
T0 = datetime(2024, 1, 3, 0, 0, tzinfo=timezone.utc)


INDICATOR_DEFAULTS = dict(
    open=99.8, high=100.5, low=99.5, close=100.0, volume=1000.0,
    adx=25.0, plus_di=25.0, minus_di=15.0, atr=1.0, rsi=50.0,
    ema_fast=100.5, ema_slow=100.0, ema_50=100.3, ema_200=100.0,
    sma_mid=101.0, sma_long=99.0,
    macd=0.5, macd_signal=0.3, macd_hist=0.2,
    bb_upper=104.0, bb_middle=100.0, bb_lower=96.0,
    bb_width=0.08, bb_percent_b=0.5, bb_width_median=0.10,
    volume_mean=1000.0, volume_std=100.0, support=95.0, resistance=105.0,
    prev_close=99.8, prev_volume=1100.0,
    prev_ema_fast=100.6, prev_ema_slow=100.0,
    prev_macd=0.4, prev_macd_signal=0.35, prev_macd_hist=0.05,
)


def make_indicators(symbol="BTCUSD", timeframe=Timeframe.M15, timestamp=T0, **overrides) -> IndicatorSet:
    """IndicatorSet with neutral defaults (no EMA cross, RSI 50)."""
    values = dict(INDICATOR_DEFAULTS)
    values.update(overrides)
    return IndicatorSet(symbol=symbol, timeframe=timeframe, timestamp=timestamp, **values)


def make_buy_cross(**overrides) -> IndicatorSet:
    """Bullish EMA(9/21) cross with a same-bar MACD cross and ADX 30."""
    values = dict(
        ema_fast=100.2, ema_slow=100.0, prev_ema_fast=99.9, prev_ema_slow=100.0,
        macd=0.5, macd_signal=0.3, prev_macd=0.2, prev_macd_signal=0.3,
        sma_mid=101.0, sma_long=99.0, adx=30.0,
    )
    values.update(overrides)
    return make_indicators(**values)


def make_regime(
    regime=MarketRegime.TRENDING,
    base=None,
    symbol="BTCUSD",
    confidence=62.5,
    timestamp=T0,
) -> RegimeState:
    base = base or (MarketRegime.TRENDING if regime == MarketRegime.HIGH_VOLATILITY else regime)
    return RegimeState(
        symbol=symbol,
        timeframe=Timeframe.H4,
        regime=regime,
        base_regime=base,
        confidence=confidence,
        volatility=0.01,
        trend_strength=25.0,
        high_volatility=regime == MarketRegime.HIGH_VOLATILITY,
        timestamp=timestamp,
    )


def random_walk_bars(
    n: int,
    symbol: str = "BTCUSD",
    timeframe: Timeframe = Timeframe.M1,
    start: datetime = T0,
    price: float = 100.0,
    volatility: float = 0.002,
    seed: int = 42,
):
    """Seeded geometric random walk of consistent OHLCV bars."""
    rng = np.random.default_rng(seed)
    step = timeframe.to_timedelta()
    returns = rng.normal(0.0002, volatility, n)
    closes = price * np.exp(np.cumsum(returns))

    bars = []
    prev_close = price
    for i, close in enumerate(closes):
        open_ = prev_close
        high = max(open_, close) * (1 + abs(rng.normal(0, volatility / 2)))
        low = min(open_, close) * (1 - abs(rng.normal(0, volatility / 2)))
        bars.append(MarketBar(
            symbol=symbol,
            timeframe=timeframe,
            open=float(open_),
            high=float(high),
            low=float(low),
            close=float(close),
            volume=float(rng.uniform(500, 1500)),
            timestamp=start + i * step,
        ))
        prev_close = close
    return bars


@pytest.fixture
def t0():
    return T0


@pytest.fixture
def indicators():
    return make_indicators()


@pytest.fixture
def m15_bars():
    """400 seeded 15m bars, enough for the 200-bar warm-up."""
    return random_walk_bars(400, timeframe=Timeframe.M15, volatility=0.004)


@pytest.fixture
def m1_bars():
    return random_walk_bars(120)
