"""Analysis module - indicators, regime classification and correlation."""

from src.analysis.indicators import (
    IndicatorSet,
    IndicatorEngine,
    compute_indicator_frame,
    indicator_set_from_row,
)
from src.analysis.regime import (
    MarketRegime,
    RegimeState,
    RegimeChangeEvent,
    RegimeClassifier,
    RegimeTracker,
)
from src.analysis.correlation import CorrelationAnalyzer

__all__ = [
    'IndicatorSet', 'IndicatorEngine', 'compute_indicator_frame', 'indicator_set_from_row',
    'MarketRegime', 'RegimeState', 'RegimeChangeEvent', 'RegimeClassifier', 'RegimeTracker',
    'CorrelationAnalyzer',
]
