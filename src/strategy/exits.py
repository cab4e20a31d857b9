"""
Exit management for open positions.

Per completed bar, in this order:
1. Stop (initial, breakeven or trailing) - checked first, worst case
2. TP1: close the partial fraction, move the stop to breakeven
3. TP2 / trailing stop on the runner
4. RSI back inside the neutral band (mean-reversion positions)
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, List


logger = logging.getLogger(__name__)


class ExitReason(Enum):
    STOP_LOSS = "stop_loss"
    BREAKEVEN_STOP = "breakeven_stop"
    TRAILING_STOP = "trailing_stop"
    TAKE_PROFIT_1 = "take_profit_1"
    TAKE_PROFIT_2 = "take_profit_2"
    RSI_NEUTRAL = "rsi_neutral"
    EMERGENCY = "emergency_close"


@dataclass(frozen=True)
class ExitInstruction:
    """Close `quantity` of a position at `price`."""
    position_id: str
    symbol: str
    quantity: float
    price: float
    reason: ExitReason

    def to_dict(self) -> dict:
        return {
            "position_id": self.position_id,
            "symbol": self.symbol,
            "quantity": self.quantity,
            "price": self.price,
            "reason": self.reason.value,
        }


class ExitManager:
    """
    Manages stops and targets of open positions.

    Updates the position's stop state in place and returns the closes
    to execute; quantities are applied by the PositionBook.
    """

    def _stop_reason(self, position) -> ExitReason:
        if position.tp1_hit and position.trailing_distance:
            return ExitReason.TRAILING_STOP
        if position.breakeven:
            return ExitReason.BREAKEVEN_STOP
        return ExitReason.STOP_LOSS

    def _instruction(self, position, quantity: float, price: float,
                     reason: ExitReason) -> ExitInstruction:
        return ExitInstruction(
            position_id=position.id,
            symbol=position.symbol,
            quantity=quantity,
            price=price,
            reason=reason,
        )

    def evaluate(
        self,
        position,
        high: float,
        low: float,
        close: float,
        rsi: Optional[float] = None,
    ) -> List[ExitInstruction]:
        """
        Evaluate one bar against a position.

        Args:
            position: Open position (stop state is updated in place)
            high, low, close: Bar prices
            rsi: Current RSI, used for the neutral-band exit

        Returns:
            Close instructions; empty when nothing triggers
        """
        if not position.is_open:
            return []

        d = position.direction
        remaining = position.quantity
        adverse = low if d > 0 else high
        favorable = high if d > 0 else low

        # 1. Stop
        if d * (adverse - position.stop_loss) <= 0:
            return [self._instruction(position, remaining, position.stop_loss,
                                      self._stop_reason(position))]

        instructions = []

        # 2. First target
        if not position.tp1_hit and d * (favorable - position.take_profit) >= 0:
            position.tp1_hit = True
            fraction = position.partial_close_fraction
            if fraction >= 1.0 or (position.take_profit_2 is None and not position.trailing_distance):
                return [self._instruction(position, remaining, position.take_profit,
                                          ExitReason.TAKE_PROFIT_1)]

            partial = remaining * fraction
            instructions.append(self._instruction(position, partial, position.take_profit,
                                                  ExitReason.TAKE_PROFIT_1))
            remaining -= partial
            position.stop_loss = position.entry_price
            position.breakeven = True
            position.best_price = favorable
            logger.debug(f"{position.symbol}: TP1 hit, stop to breakeven")

        # 3. Runner
        if position.tp1_hit:
            if position.take_profit_2 is not None and d * (favorable - position.take_profit_2) >= 0:
                instructions.append(self._instruction(position, remaining, position.take_profit_2,
                                                      ExitReason.TAKE_PROFIT_2))
                return instructions

            if position.trailing_distance:
                if d * (favorable - position.best_price) > 0:
                    position.best_price = favorable
                trail = position.best_price - d * position.trailing_distance
                if d * (trail - position.stop_loss) > 0:
                    position.stop_loss = trail

        # 4. RSI neutral band
        if position.rsi_exit_band is not None and rsi is not None and not instructions:
            low_band, high_band = position.rsi_exit_band
            if low_band <= rsi <= high_band:
                return [self._instruction(position, remaining, close, ExitReason.RSI_NEUTRAL)]

        return instructions

    def emergency_close(self, position, price: float) -> ExitInstruction:
        return self._instruction(position, position.quantity, price, ExitReason.EMERGENCY)
