"""
Atlas Risk Core - risk and execution control for crypto spot accounts.

A per-account decision pipeline with:
- Multi-timeframe bar aggregation and indicators
- Market regime classification
- Trend-following and mean-reversion signal engines with an ML gate
- Position sizing, order validation and risk limit monitoring
- Circuit breaker with daily-loss pause
"""

__version__ = "1.0.0"
__author__ = "Atlas Risk Core"
