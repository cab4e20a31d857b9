"""
Monitoring module - logging setup and CSV audit trails.
"""

from .logging_module import (
    setup_logging,
    RiskEventCsvLogger,
    DecisionCsvLogger,
    DailyPnLCsvLogger,
)

__all__ = ['setup_logging', 'RiskEventCsvLogger', 'DecisionCsvLogger', 'DailyPnLCsvLogger']
