"""Data module - market bars, aggregation and CSV loading."""

from src.data.bars import (
    MarketBar,
    BarAggregator,
    bars_to_frame,
    load_bars_csv,
    period_start,
    ensure_utc,
)

__all__ = [
    'MarketBar', 'BarAggregator', 'bars_to_frame', 'load_bars_csv',
    'period_start', 'ensure_utc',
]
