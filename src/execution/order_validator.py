"""
Order Validator - Final Pre-Execution Gate

REJECTION ORDER (first failure wins):
1. Circuit breaker not active                          -> CircuitOpen
2. Breaker halted since the caller's token was taken   -> CircuitOpen
3. quantity > SizingResult.max_size                    -> LimitBreach
4. notional / equity > max_position_size               -> LimitBreach
5. fees + slippage > 25% of TP1 distance x quantity    -> LimitBreach
6. required balance > available balance                -> LimitBreach

Reduce-only (closing) orders skip rules 1-5 and only need balance for
their fees. They are the only orders accepted while the breaker is paused
or triggered, so open positions can always be closed. An accepted order
is returned unchanged; the validator never resizes.
"""

import math
import logging
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Optional, Dict, Any

from config.settings import RiskSettings, ValidatorSettings
from src.errors import (
    TradingCoreError,
    InvalidInputs,
    LimitBreach,
    ExcessiveCost,
    InsufficientBalance,
)
from src.risk.circuit_breaker import CircuitBreaker
from src.risk.position_sizer import SizingResult
from src.strategy.signals import SignalSide


logger = logging.getLogger(__name__)

# Float tolerance when comparing a quantity against its cap
SIZE_EPSILON = 1e-9


class OrderType(Enum):
    MARKET = "market"
    LIMIT = "limit"


@dataclass(frozen=True)
class OrderRequest:
    """Concrete order submitted for validation."""
    symbol: str
    side: SignalSide
    quantity: float
    price: float
    order_type: OrderType = OrderType.MARKET
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    estimated_fees: float = 0.0
    estimated_slippage: float = 0.0
    signal_id: Optional[str] = None
    reduce_only: bool = False
    position_id: Optional[str] = None

    @property
    def notional(self) -> float:
        return self.quantity * self.price

    @property
    def estimated_costs(self) -> float:
        return self.estimated_fees + self.estimated_slippage

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['side'] = self.side.value
        data['order_type'] = self.order_type.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'OrderRequest':
        try:
            values = dict(data)
            values['side'] = SignalSide(values['side'])
            values['order_type'] = OrderType(values.get('order_type', 'market'))
            for name in ('quantity', 'price', 'estimated_fees', 'estimated_slippage'):
                if name in values:
                    values[name] = float(values[name])
            return cls(**values)
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidInputs(f"Invalid order: {e}") from e


@dataclass(frozen=True)
class ValidationResult:
    """Accept / reject outcome."""
    accepted: bool
    order: OrderRequest
    error: Optional[TradingCoreError] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accepted": self.accepted,
            "order": self.order.to_dict(),
            "error": self.error.to_dict() if self.error else None,
        }


class OrderValidator:
    """Synchronous final gate before the execution collaborator."""

    def __init__(
        self,
        breaker: CircuitBreaker,
        risk_settings: Optional[RiskSettings] = None,
        settings: Optional[ValidatorSettings] = None,
    ):
        self.breaker = breaker
        self.risk_settings = risk_settings or RiskSettings()
        self.settings = settings or ValidatorSettings()

    def update_settings(self, risk_settings: RiskSettings):
        self.risk_settings = risk_settings

    def check(
        self,
        order: OrderRequest,
        sizing: Optional[SizingResult],
        equity: float,
        available_balance: float,
        token: Optional[int] = None,
    ) -> OrderRequest:
        """
        Apply every rule in order.

        Returns:
            The order, unchanged

        Raises:
            InvalidInputs, CircuitOpen, LimitBreach
        """
        if not (math.isfinite(order.quantity) and order.quantity > 0):
            raise InvalidInputs(f"Invalid quantity: {order.quantity}")
        if not (math.isfinite(order.price) and order.price > 0):
            raise InvalidInputs(f"Invalid price: {order.price}")
        if order.side == SignalSide.HOLD:
            raise InvalidInputs("Cannot place a hold order")

        if order.reduce_only:
            if order.estimated_costs > available_balance:
                raise InsufficientBalance(
                    f"Fees {order.estimated_costs:.2f} exceed available balance "
                    f"{available_balance:.2f}"
                )
            return order

        self.breaker.check(token)

        if sizing is None:
            raise InvalidInputs("Opening orders require a sizing result")
        if sizing.symbol != order.symbol:
            raise InvalidInputs(f"Sizing is for {sizing.symbol}, order is for {order.symbol}")

        if order.quantity > sizing.max_size * (1 + SIZE_EPSILON):
            raise LimitBreach(
                f"Quantity {order.quantity:.6f} exceeds max size {sizing.max_size:.6f}",
                details={'quantity': order.quantity, 'max_size': sizing.max_size},
            )

        if equity <= 0:
            raise LimitBreach(f"Equity {equity:.2f} does not allow new positions")
        fraction = order.notional / equity
        if fraction > self.risk_settings.max_position_size * (1 + SIZE_EPSILON):
            raise LimitBreach(
                f"Order is {fraction:.1%} of equity, limit "
                f"{self.risk_settings.max_position_size:.1%}",
                details={'fraction': fraction, 'limit': self.risk_settings.max_position_size},
            )

        if order.take_profit is None:
            raise InvalidInputs("Opening orders require a first take-profit")
        target_value = abs(order.take_profit - order.price) * order.quantity
        max_cost = self.settings.max_cost_fraction * target_value
        if order.estimated_costs > max_cost:
            raise ExcessiveCost(
                f"Costs {order.estimated_costs:.2f} exceed "
                f"{self.settings.max_cost_fraction:.0%} of target value {target_value:.2f}",
                details={'costs': order.estimated_costs, 'max_cost': max_cost},
            )

        required = order.notional + order.estimated_costs
        if required > available_balance:
            raise InsufficientBalance(
                f"Required {required:.2f} exceeds available balance {available_balance:.2f}",
                details={'required': required, 'available': available_balance},
            )

        return order

    def validate(
        self,
        order: OrderRequest,
        sizing: Optional[SizingResult],
        equity: float,
        available_balance: float,
        token: Optional[int] = None,
    ) -> ValidationResult:
        """Like check(), but reports rejections instead of raising."""
        try:
            accepted = self.check(order, sizing, equity, available_balance, token)
        except TradingCoreError as e:
            logger.info(f"Order rejected {order.symbol} {order.side.value} "
                        f"{order.quantity:.6f}: [{e.kind}] {e.message}")
            return ValidationResult(accepted=False, order=order, error=e)

        return ValidationResult(accepted=True, order=accepted)

    def estimate_costs(self, notional: float) -> Dict[str, float]:
        """Fee and slippage estimate for a notional."""
        return {
            'estimated_fees': notional * self.settings.fee_rate,
            'estimated_slippage': notional * self.settings.slippage_rate,
        }
