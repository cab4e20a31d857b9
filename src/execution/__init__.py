"""
Execution module - final order gate and collaborator boundary.
"""

from .order_validator import OrderType, OrderRequest, ValidationResult, OrderValidator
from .collaborators import (
    ExecutionStatus,
    Fill,
    ExecutionReport,
    MarketDataFeed,
    InferenceClient,
    ExecutionClient,
    SettingsStore,
    call_with_timeout,
    InMemoryBarFeed,
    HeuristicInferenceClient,
    PaperExecutionClient,
    YamlSettingsStore,
)

__all__ = [
    'OrderType', 'OrderRequest', 'ValidationResult', 'OrderValidator',
    'ExecutionStatus', 'Fill', 'ExecutionReport',
    'MarketDataFeed', 'InferenceClient', 'ExecutionClient', 'SettingsStore',
    'call_with_timeout', 'InMemoryBarFeed', 'HeuristicInferenceClient',
    'PaperExecutionClient', 'YamlSettingsStore',
]
