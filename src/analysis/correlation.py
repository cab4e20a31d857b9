"""
Correlation Analyzer

Rolling return correlation between traded symbols, used to group
symbols whose exposure counts together against the correlation limit.
"""

import logging
from collections import deque
from typing import Dict, List, Optional, Set, Deque

import numpy as np
import pandas as pd


logger = logging.getLogger(__name__)


class CorrelationAnalyzer:
    """
    Tracks recent closes per symbol and derives correlation groups.

    Two symbols are linked when the correlation of their returns over the
    window is >= threshold; a group is a connected set of linked symbols.
    """

    def __init__(self, threshold: float = 0.8, window: int = 60):
        """
        Initialize the Correlation Analyzer.

        Args:
            threshold: Minimum return correlation to link two symbols
            window: Number of returns used
        """
        self.threshold = threshold
        self.window = window
        self._closes: Dict[str, Deque[float]] = {}

    def update(self, symbol: str, close: float):
        """Record a completed-bar close."""
        closes = self._closes.get(symbol)
        if closes is None:
            closes = deque(maxlen=self.window + 1)
            self._closes[symbol] = closes
        closes.append(close)

    @staticmethod
    def calculate_correlation(series_a: pd.Series, series_b: pd.Series) -> float:
        """
        Pearson correlation of the returns of two price series.

        Returns:
            Correlation coefficient, 0.0 when undefined
        """
        returns_a = series_a.pct_change().dropna()
        returns_b = series_b.pct_change().dropna()

        aligned = pd.concat([returns_a, returns_b], axis=1).dropna()

        if len(aligned) < 2:
            return 0.0

        corr = aligned.iloc[:, 0].corr(aligned.iloc[:, 1])
        return 0.0 if pd.isna(corr) else float(corr)

    def correlation_matrix(self) -> pd.DataFrame:
        """Return-correlation matrix over symbols with a full window."""
        ready = {
            symbol: list(closes)
            for symbol, closes in self._closes.items()
            if len(closes) == self.window + 1
        }
        if len(ready) < 2:
            return pd.DataFrame()

        prices = pd.DataFrame(ready)
        returns = prices.pct_change().dropna()
        return returns.corr().fillna(0.0)

    def correlated_groups(self, matrix: Optional[pd.DataFrame] = None) -> List[Set[str]]:
        """
        Connected groups of symbols with |correlation| >= threshold.

        Symbols without a correlated partner form singleton groups.
        """
        if matrix is None:
            matrix = self.correlation_matrix()

        symbols = set(self._closes)
        if matrix.empty:
            return [{s} for s in sorted(symbols)]

        names = list(matrix.columns)
        linked = np.abs(matrix.to_numpy()) >= self.threshold

        groups: List[Set[str]] = []
        seen: Set[str] = set()
        for i, start in enumerate(names):
            if start in seen:
                continue
            group = set()
            stack = [i]
            while stack:
                j = stack.pop()
                name = names[j]
                if name in group:
                    continue
                group.add(name)
                stack.extend(k for k in np.flatnonzero(linked[j]) if names[k] not in group)
            seen |= group
            groups.append(group)

        for symbol in sorted(symbols - seen):
            groups.append({symbol})

        return groups

    def group_of(self, symbol: str) -> Set[str]:
        """Correlation group containing symbol."""
        for group in self.correlated_groups():
            if symbol in group:
                return group
        return {symbol}
