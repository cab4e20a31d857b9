"""
Backtest module - replay of recorded bars through the account pipeline.
"""

from .replay import ReplayEngine, ReplayResult

__all__ = ['ReplayEngine', 'ReplayResult']
