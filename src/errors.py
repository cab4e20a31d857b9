"""
Error kinds for the risk core.

Every error carries a ``kind`` string used at the tagged-action boundary.
Only ConfigurationError is fatal; everything else is local to one
symbol, signal or request.
"""

from typing import Optional, Dict, Any


class TradingCoreError(Exception):
    """Base exception for all core errors."""

    kind = "TradingCoreError"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        data = {'kind': self.kind, 'message': self.message}
        if self.details:
            data['details'] = self.details
        return data


class InsufficientHistory(TradingCoreError):
    """Not enough bars for the largest indicator window. Retry later."""
    kind = "InsufficientHistory"


class InvalidInputs(TradingCoreError):
    """Bad request parameters. The request is rejected with no state change."""
    kind = "InvalidInputs"


class DuplicateSignal(TradingCoreError):
    """An engine already has an unresolved signal for the symbol."""
    kind = "DuplicateSignal"


class LimitBreach(TradingCoreError):
    """An order or position would exceed a configured limit."""
    kind = "LimitBreach"


class ExcessiveCost(LimitBreach):
    """Estimated fees and slippage eat too much of the first target."""
    pass


class InsufficientBalance(LimitBreach):
    """Available balance does not cover the order."""
    pass


class CircuitOpen(TradingCoreError):
    """The circuit breaker is not active, or halted since the token was taken."""
    kind = "CircuitOpen"


class StaleData(TradingCoreError):
    """Market data or inference did not answer in time, or arrived out of order."""
    kind = "StaleData"


class ExecutionTimeout(TradingCoreError):
    """The execution collaborator did not answer in time."""
    kind = "ExecutionTimeout"


class ConfigurationError(TradingCoreError):
    """RiskSettings missing or invalid at startup. Fatal."""
    kind = "ConfigurationError"
