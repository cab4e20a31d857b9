"""
Tests for market bars, aggregation and CSV loading.
"""

from datetime import timedelta

import pandas as pd
import pytest

from config.settings import Timeframe
from src.data.bars import MarketBar, BarAggregator, bars_to_frame, load_bars_csv, period_start
from src.errors import InvalidInputs, StaleData

from conftest import T0, random_walk_bars


def _bar(minute, close=100.0, symbol="BTCUSD", volume=10.0):
    return MarketBar(
        symbol=symbol,
        timeframe=Timeframe.M1,
        open=close,
        high=close + 1,
        low=close - 1,
        close=close,
        volume=volume,
        timestamp=T0 + timedelta(minutes=minute),
    )


class TestMarketBar:
    """Tests for bar validation."""

    def test_end(self):
        assert _bar(0).end == T0 + timedelta(minutes=1)

    def test_naive_timestamp_is_utc(self):
        bar = MarketBar("BTCUSD", Timeframe.M1, 1, 2, 0.5, 1.5, 1, T0.replace(tzinfo=None))
        assert bar.timestamp == T0

    @pytest.mark.parametrize("o,h,l,c,v", [
        (100, 99, 98, 100, 1),              # high below open
        (100, 101, 100.5, 100, 1),          # low above close
        (100, 101, -1, 100, 1),             # negative price
        (100, 101, 99, 100, -5),            # negative volume
        (100, float('nan'), 99, 100, 1),    # non-finite
    ])
    def test_inconsistent_bars_rejected(self, o, h, l, c, v):
        with pytest.raises(InvalidInputs):
            MarketBar("BTCUSD", Timeframe.M1, o, h, l, c, v, T0)


class TestBarAggregator:
    """Tests for multi-timeframe aggregation."""

    def test_period_start_alignment(self):
        ts = T0 + timedelta(hours=5, minutes=37)
        assert period_start(ts, Timeframe.M15) == T0 + timedelta(hours=5, minutes=30)
        assert period_start(ts, Timeframe.H4) == T0 + timedelta(hours=4)

    def test_15m_bar_completes_on_last_minute(self):
        agg = BarAggregator(targets=(Timeframe.M15,))
        completed = []
        for i in range(15):
            completed.extend(agg.add(_bar(i, close=100 + i, volume=1.0)))

        assert len(completed) == 1
        bar = completed[0]
        assert bar.timeframe == Timeframe.M15
        assert bar.timestamp == T0
        assert bar.open == 100
        assert bar.close == 114
        assert bar.high == 115
        assert bar.low == 99
        assert bar.volume == pytest.approx(15.0)

    def test_no_partial_bars_emitted(self):
        agg = BarAggregator(targets=(Timeframe.M15, Timeframe.H4))
        for i in range(14):
            assert agg.add(_bar(i)) == []

    def test_gap_completes_previous_period(self):
        agg = BarAggregator(targets=(Timeframe.M15,))
        for i in range(5):
            agg.add(_bar(i))
        completed = agg.add(_bar(20))
        assert len(completed) == 1
        assert completed[0].timestamp == T0

    def test_h4_from_one_minute_bars(self):
        agg = BarAggregator(targets=(Timeframe.M15, Timeframe.H4))
        completed = []
        for bar in random_walk_bars(240):
            completed.extend(agg.add(bar))

        by_tf = {}
        for bar in completed:
            by_tf.setdefault(bar.timeframe, []).append(bar)
        assert len(by_tf[Timeframe.M15]) == 16
        assert len(by_tf[Timeframe.H4]) == 1

    def test_flush(self):
        agg = BarAggregator(targets=(Timeframe.M15,))
        agg.add(_bar(0))
        assert agg.flush(T0 + timedelta(minutes=10)) == []
        assert len(agg.flush(T0 + timedelta(minutes=15))) == 1

    def test_out_of_order_is_stale(self):
        agg = BarAggregator()
        agg.add(_bar(5))
        with pytest.raises(StaleData):
            agg.add(_bar(5))
        with pytest.raises(StaleData):
            agg.add(_bar(3))

    def test_symbols_are_independent(self):
        agg = BarAggregator()
        agg.add(_bar(5, symbol="BTCUSD"))
        agg.add(_bar(1, symbol="ETHUSD"))

    def test_wrong_base_timeframe(self):
        agg = BarAggregator()
        bar = MarketBar("BTCUSD", Timeframe.M15, 1, 2, 0.5, 1.5, 1, T0)
        with pytest.raises(InvalidInputs):
            agg.add(bar)

    def test_target_must_be_multiple_of_base(self):
        with pytest.raises(InvalidInputs):
            BarAggregator(base_timeframe=Timeframe.M15, targets=(Timeframe.M5,))


class TestLoading:
    """Tests for CSV loading."""

    def test_load_bars_csv(self, tmp_path):
        bars = random_walk_bars(30)
        df = bars_to_frame(bars).reset_index()
        df.loc[3, 'high'] = df.loc[3, 'low'] - 1     # one broken row
        path = tmp_path / "bars.csv"
        df.to_csv(path, index=False)

        loaded = load_bars_csv(str(path), symbol="BTCUSD")
        assert list(loaded) == ["BTCUSD"]
        assert len(loaded["BTCUSD"]) == 29
        assert loaded["BTCUSD"][0].close == pytest.approx(bars[0].close)

    def test_multi_symbol_csv(self, tmp_path):
        frames = []
        for symbol, seed in (("BTCUSD", 1), ("ETHUSD", 2)):
            df = bars_to_frame(random_walk_bars(10, symbol=symbol, seed=seed)).reset_index()
            df['symbol'] = symbol
            frames.append(df)
        path = tmp_path / "bars.csv"
        pd.concat(frames).to_csv(path, index=False)

        loaded = load_bars_csv(str(path))
        assert sorted(loaded) == ["BTCUSD", "ETHUSD"]
        assert all(len(b) == 10 for b in loaded.values())

    def test_missing_columns(self, tmp_path):
        path = tmp_path / "bad.csv"
        pd.DataFrame({"timestamp": [T0], "close": [1.0]}).to_csv(path, index=False)
        with pytest.raises(InvalidInputs):
            load_bars_csv(str(path), symbol="BTCUSD")

    def test_symbol_required(self, tmp_path):
        path = tmp_path / "bars.csv"
        bars_to_frame(random_walk_bars(3)).reset_index().to_csv(path, index=False)
        with pytest.raises(InvalidInputs):
            load_bars_csv(str(path))
