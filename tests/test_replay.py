"""
Tests for the offline replay engine.
"""

import json

import pytest

from config.settings import IndicatorSettings, PipelineSettings, Settings, Timeframe
from src.backtest.replay import ReplayEngine

from conftest import random_walk_bars


@pytest.fixture
def settings():
    # Short windows and timeframes so a regime forms within a few hundred bars
    return Settings(
        indicators=IndicatorSettings(
            ema_regime_fast=10, ema_regime_slow=30, sma_mid=10, sma_long=30,
            bb_width_median_window=10,
        ),
        pipeline=PipelineSettings(
            symbols=["BTCUSD", "ETHUSD"],
            base_timeframe=Timeframe.M1,
            execution_timeframe=Timeframe.M5,
            confirmation_timeframe=Timeframe.M15,
        ),
    )


@pytest.fixture
def bars():
    return {"BTCUSD": random_walk_bars(900, volatility=0.003)}


class TestReplayEngine:
    """Tests for replay runs."""

    def test_run(self, settings, bars):
        engine = ReplayEngine(settings)
        result = engine.run(bars)

        assert result.bars_processed == 900
        assert result.symbols == ["BTCUSD"]
        assert result.initial_capital == 10000.0
        assert result.final_equity > 0
        assert len(result.equity_curve) > 0
        assert result.final_breaker_state in ("active", "paused", "triggered")
        assert result.total_trades == len(engine.core.positions.closed_trades)

        # Everything is closed when the data ends
        assert engine.core.positions.open_positions() == []

    def test_summary(self, settings, bars):
        summary = ReplayEngine(settings).run(bars).summary()
        for key in ("final_equity", "total_return", "max_drawdown", "win_rate",
                    "signal_outcomes", "risk_events", "final_breaker_state"):
            assert key in summary
        assert summary['max_drawdown'] <= 0.0

    def test_interleaves_symbols(self, settings):
        bars = {
            "BTCUSD": random_walk_bars(300, symbol="BTCUSD", seed=1),
            "ETHUSD": random_walk_bars(300, symbol="ETHUSD", price=50.0, seed=2),
        }
        result = ReplayEngine(settings).run(bars)
        assert result.symbols == ["BTCUSD", "ETHUSD"]
        assert result.bars_processed == 600

    def test_save_results(self, settings, bars, tmp_path):
        engine = ReplayEngine(settings)
        engine.save_results(engine.run(bars), str(tmp_path))

        with open(tmp_path / "replay_summary.json") as f:
            summary = json.load(f)
        assert summary['bars_processed'] == 900
        for name in ("replay_trades.csv", "replay_equity.csv", "replay_daily_pnl.csv"):
            assert (tmp_path / name).exists()

    def test_no_bars(self, settings):
        with pytest.raises(ValueError):
            ReplayEngine(settings).run({"BTCUSD": []})
