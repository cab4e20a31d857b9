"""Configuration module."""

from config.settings import (
    Settings,
    RiskSettings,
    SettingsError,
    SizingMethod,
    Timeframe,
    TradingMode,
)

__all__ = [
    'Settings', 'RiskSettings', 'SettingsError', 'SizingMethod',
    'Timeframe', 'TradingMode',
]
