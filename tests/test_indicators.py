"""
Tests for the incremental indicator engine and its batch counterpart.
"""

import math

import numpy as np
import pandas as pd
import pytest

from config.settings import IndicatorSettings, Timeframe
from src.analysis.indicators import (
    IndicatorEngine,
    IndicatorSet,
    compute_indicator_frame,
    indicator_set_from_row,
    calculate_ema,
    calculate_rsi,
)
from src.data.bars import bars_to_frame
from src.errors import InsufficientHistory, StaleData

from conftest import make_indicators, random_walk_bars


SERIES_FIELDS = [
    name for name in IndicatorSet.__dataclass_fields__
    if name not in ('symbol', 'timeframe', 'timestamp')
]


class TestBatchHelpers:
    """Tests for the pandas building blocks."""

    def test_ema_seeded_with_sma(self):
        series = pd.Series([1.0, 2.0, 3.0, 4.0, 5.0])
        ema = calculate_ema(series, 3)
        assert ema.iloc[:2].isna().all()
        assert ema.iloc[2] == pytest.approx(2.0)
        assert ema.iloc[3] == pytest.approx(0.5 * 4.0 + 0.5 * 2.0)

    def test_rsi_all_gains(self):
        close = pd.Series(np.arange(1.0, 40.0))
        rsi = calculate_rsi(close, 14)
        assert rsi.iloc[14] == pytest.approx(100.0)
        assert math.isnan(rsi.iloc[13])

    def test_rsi_bounds(self):
        bars = random_walk_bars(300)
        rsi = calculate_rsi(bars_to_frame(bars)['close'], 14).dropna()
        assert ((rsi >= 0) & (rsi <= 100)).all()


class TestIndicatorEngine:
    """Tests for incremental computation."""

    def test_warmup(self, m15_bars):
        engine = IndicatorEngine()
        results = [engine.update(bar) for bar in m15_bars]

        warmup = engine.warmup_bars
        assert all(r is None for r in results[:warmup - 1])
        assert all(r is not None for r in results[warmup - 1:])

    def test_insufficient_history(self, m15_bars):
        engine = IndicatorEngine()
        with pytest.raises(InsufficientHistory):
            engine.current("BTCUSD", Timeframe.M15)

        for bar in m15_bars[:50]:
            engine.update(bar)
        with pytest.raises(InsufficientHistory) as exc:
            engine.current("BTCUSD", Timeframe.M15)
        assert exc.value.details == {'bars': 50, 'required': 200}

    def test_out_of_order_is_stale(self, m15_bars):
        engine = IndicatorEngine()
        engine.update(m15_bars[1])
        with pytest.raises(StaleData):
            engine.update(m15_bars[0])

    def test_incremental_matches_batch(self, m15_bars):
        engine = IndicatorEngine()
        incremental = [engine.update(bar) for bar in m15_bars]
        batch = compute_indicator_frame(bars_to_frame(m15_bars))

        for i in range(engine.warmup_bars - 1, len(m15_bars)):
            ind = incremental[i]
            row = batch.iloc[i]
            for name in SERIES_FIELDS:
                assert getattr(ind, name) == pytest.approx(row[name], rel=1e-7, abs=1e-9), \
                    f"{name} differs at bar {i}"

    def test_batch_row_to_indicator_set(self, m15_bars):
        batch = compute_indicator_frame(bars_to_frame(m15_bars))
        ts = m15_bars[-1].timestamp
        ind = indicator_set_from_row("BTCUSD", Timeframe.M15, ts, batch.iloc[-1])
        assert ind.close == pytest.approx(m15_bars[-1].close)

        with pytest.raises(InsufficientHistory):
            indicator_set_from_row("BTCUSD", Timeframe.M15, ts, batch.iloc[10])

    def test_value_ranges(self, m15_bars):
        engine = IndicatorEngine()
        for bar in m15_bars:
            engine.update(bar)
        ind = engine.current("BTCUSD", Timeframe.M15)

        assert 0 <= ind.rsi <= 100
        assert 0 <= ind.adx <= 100
        assert ind.atr > 0
        assert ind.bb_lower < ind.bb_middle < ind.bb_upper
        assert ind.macd_hist == pytest.approx(ind.macd - ind.macd_signal)

    def test_smaller_windows(self):
        settings = IndicatorSettings(
            ema_regime_fast=10, ema_regime_slow=30, sma_mid=10, sma_long=30,
            bb_width_median_window=10,
        )
        bars = random_walk_bars(60, timeframe=Timeframe.M15)
        engine = IndicatorEngine(settings)
        results = [engine.update(bar) for bar in bars]
        assert results[settings.warmup_bars - 1] is not None
        assert results[settings.warmup_bars - 2] is None

    def test_streams_are_independent(self, m15_bars):
        engine = IndicatorEngine()
        for bar in m15_bars:
            engine.update(bar)
        assert engine.is_ready("BTCUSD", Timeframe.M15)
        assert not engine.is_ready("ETHUSD", Timeframe.M15)
        assert engine.bars_seen("BTCUSD", Timeframe.M15) == len(m15_bars)


class TestIndicatorSet:
    """Tests for derived properties."""

    def test_derived_values(self):
        ind = make_indicators(close=100.0, atr=2.0, ema_50=101.0, ema_200=100.0,
                              volume=1300.0, volume_mean=1000.0, volume_std=100.0,
                              macd_hist=0.2, prev_macd_hist=0.05)
        assert ind.atr_pct == pytest.approx(0.02)
        assert ind.ema_distance_pct == pytest.approx(0.01)
        assert ind.volume_zscore == pytest.approx(3.0)
        assert ind.macd_hist_delta == pytest.approx(0.15)

    def test_zero_volume_std(self):
        assert make_indicators(volume_std=0.0).volume_zscore == 0.0
