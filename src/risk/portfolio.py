"""
Positions and daily P&L.

Position is created from an accepted order's fill, mutated by price
updates and exit logic, and closed exactly once. DailyPnL keeps one row
per UTC day; rows are frozen when the day rolls over.
"""

import uuid
import logging
from dataclasses import dataclass, field
from datetime import datetime, date, timezone
from enum import Enum
from typing import Optional, List, Dict, Tuple

from src.errors import DuplicateSignal, InvalidInputs
from src.strategy.signals import SignalSide


logger = logging.getLogger(__name__)


class PositionStatus(Enum):
    OPEN = "open"
    CLOSED = "closed"


@dataclass
class Position:
    """Open or closed position."""
    symbol: str
    side: SignalSide
    entry_price: float
    quantity: float                 # Remaining quantity
    stop_loss: float                # Current stop
    take_profit: float              # First target
    signal_id: str
    opened_at: datetime

    take_profit_2: Optional[float] = None
    trailing_distance: Optional[float] = None
    partial_close_fraction: float = 1.0
    rsi_exit_band: Optional[Tuple[float, float]] = None

    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: PositionStatus = PositionStatus.OPEN
    initial_quantity: float = 0.0
    initial_stop: float = 0.0
    last_price: float = 0.0
    unrealized_pnl: float = 0.0
    realized_pnl: float = 0.0
    fees_paid: float = 0.0
    closed_at: Optional[datetime] = None
    exit_reason: Optional[str] = None

    # Exit state
    tp1_hit: bool = False
    breakeven: bool = False
    best_price: float = 0.0

    def __post_init__(self):
        if self.initial_quantity == 0.0:
            self.initial_quantity = self.quantity
        if self.initial_stop == 0.0:
            self.initial_stop = self.stop_loss
        if self.last_price == 0.0:
            self.last_price = self.entry_price
        if self.best_price == 0.0:
            self.best_price = self.entry_price

    @property
    def direction(self) -> float:
        return 1.0 if self.side == SignalSide.BUY else -1.0

    @property
    def is_open(self) -> bool:
        return self.status == PositionStatus.OPEN

    @property
    def notional(self) -> float:
        return self.quantity * self.last_price

    @property
    def risk_amount(self) -> float:
        """Loss if the current stop is hit; zero once the stop is at or past entry."""
        if not self.is_open:
            return 0.0
        loss_per_unit = self.direction * (self.entry_price - self.stop_loss)
        return max(0.0, loss_per_unit) * self.quantity

    def pnl_at(self, price: float, quantity: Optional[float] = None) -> float:
        qty = self.quantity if quantity is None else quantity
        return self.direction * (price - self.entry_price) * qty

    def mark(self, price: float):
        self.last_price = price
        self.unrealized_pnl = self.pnl_at(price) if self.is_open else 0.0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "signal_id": self.signal_id,
            "symbol": self.symbol,
            "side": self.side.value,
            "entry_price": self.entry_price,
            "quantity": self.quantity,
            "initial_quantity": self.initial_quantity,
            "stop_loss": self.stop_loss,
            "take_profit": self.take_profit,
            "status": self.status.value,
            "risk_amount": self.risk_amount,
            "unrealized_pnl": self.unrealized_pnl,
            "realized_pnl": self.realized_pnl,
            "opened_at": self.opened_at.isoformat(),
            "closed_at": self.closed_at.isoformat() if self.closed_at else None,
            "exit_reason": self.exit_reason,
        }


@dataclass(frozen=True)
class ClosedTrade:
    """Realized outcome of a fully closed position."""
    position_id: str
    symbol: str
    pnl: float
    r_multiple: float
    closed_at: datetime


class PositionBook:
    """Positions of one account."""

    def __init__(self):
        self._positions: Dict[str, Position] = {}
        self._signal_ids = set()
        self.closed_trades: List[ClosedTrade] = []

    def open(self, position: Position) -> Position:
        """
        Add a new position.

        Raises:
            DuplicateSignal: a position already exists for the signal
        """
        if position.signal_id in self._signal_ids:
            raise DuplicateSignal(f"Signal {position.signal_id} already has a position")
        if position.quantity <= 0:
            raise InvalidInputs("Position quantity must be > 0")

        self._signal_ids.add(position.signal_id)
        self._positions[position.id] = position
        logger.info(f"Opened {position.side.value} {position.quantity:.6f} {position.symbol} "
                    f"@ {position.entry_price:.5f} (stop {position.stop_loss:.5f})")
        return position

    def get(self, position_id: str) -> Optional[Position]:
        return self._positions.get(position_id)

    def close(
        self,
        position_id: str,
        quantity: float,
        price: float,
        fees: float,
        reason: str,
        timestamp: datetime,
    ) -> float:
        """
        Close part or all of a position.

        Returns:
            Realized P&L of this close, net of fees
        """
        position = self._positions.get(position_id)
        if position is None:
            raise InvalidInputs(f"Unknown position {position_id}")
        if not position.is_open:
            raise InvalidInputs(f"Position {position_id} is already closed")
        if quantity <= 0:
            raise InvalidInputs("Close quantity must be > 0")

        quantity = min(quantity, position.quantity)
        pnl = position.pnl_at(price, quantity) - fees

        position.realized_pnl += pnl
        position.fees_paid += fees
        position.quantity -= quantity

        if position.quantity <= position.initial_quantity * 1e-9:
            position.quantity = 0.0
            position.status = PositionStatus.CLOSED
            position.closed_at = timestamp
            position.exit_reason = reason
            position.unrealized_pnl = 0.0

            initial_risk = abs(position.entry_price - position.initial_stop) * position.initial_quantity
            self.closed_trades.append(ClosedTrade(
                position_id=position.id,
                symbol=position.symbol,
                pnl=position.realized_pnl,
                r_multiple=position.realized_pnl / initial_risk if initial_risk > 0 else 0.0,
                closed_at=timestamp,
            ))
            logger.info(f"Closed {position.symbol} {reason}: P&L {position.realized_pnl:+.2f}")
        else:
            position.mark(price)
            logger.info(f"Partial close {position.symbol} {reason}: {quantity:.6f} "
                        f"@ {price:.5f}, P&L {pnl:+.2f}")

        return pnl

    def mark(self, symbol: str, price: float):
        for position in self.open_positions(symbol):
            position.mark(price)

    def open_positions(self, symbol: Optional[str] = None) -> List[Position]:
        return [p for p in self._positions.values()
                if p.is_open and (symbol is None or p.symbol == symbol)]

    def all_positions(self) -> List[Position]:
        return list(self._positions.values())

    @property
    def unrealized_pnl(self) -> float:
        return sum(p.unrealized_pnl for p in self.open_positions())

    @property
    def total_open_risk(self) -> float:
        return sum(p.risk_amount for p in self.open_positions())

    @property
    def open_notional(self) -> float:
        return sum(p.notional for p in self.open_positions())

    def exposure_by_symbol(self) -> Dict[str, float]:
        exposure: Dict[str, float] = {}
        for p in self.open_positions():
            exposure[p.symbol] = exposure.get(p.symbol, 0.0) + p.notional
        return exposure

    def largest_position_notional(self) -> float:
        return max((p.notional for p in self.open_positions()), default=0.0)

    def trade_stats(self) -> Tuple[int, float, float, float]:
        """
        Closed-trade statistics for Kelly sizing.

        Returns:
            (trades, win_rate, avg_win_r, avg_loss_r)
        """
        trades = self.closed_trades
        if not trades:
            return 0, 0.0, 0.0, 0.0

        wins = [t.r_multiple for t in trades if t.pnl > 0]
        losses = [-t.r_multiple for t in trades if t.pnl <= 0]
        win_rate = len(wins) / len(trades)
        avg_win = sum(wins) / len(wins) if wins else 0.0
        avg_loss = sum(losses) / len(losses) if losses else 0.0
        return len(trades), win_rate, avg_win, avg_loss


# =============================================================================
# DAILY P&L
# =============================================================================

@dataclass
class DailyPnL:
    """One account day."""
    date: date
    starting_balance: float
    ending_balance: float
    realized_pnl: float = 0.0
    unrealized_pnl: float = 0.0
    total_trades: int = 0
    winning_trades: int = 0
    risk_used: float = 0.0
    max_drawdown: float = 0.0
    peak_equity: float = 0.0
    frozen: bool = False

    @property
    def total_pnl(self) -> float:
        return self.realized_pnl + self.unrealized_pnl

    def to_dict(self) -> dict:
        return {
            "date": self.date.isoformat(),
            "starting_balance": self.starting_balance,
            "ending_balance": self.ending_balance,
            "realized_pnl": self.realized_pnl,
            "unrealized_pnl": self.unrealized_pnl,
            "total_trades": self.total_trades,
            "winning_trades": self.winning_trades,
            "risk_used": self.risk_used,
            "max_drawdown": self.max_drawdown,
        }


class DailyPnLLedger:
    """Append-and-update for today, frozen history for earlier days."""

    def __init__(self, starting_balance: float, today: Optional[date] = None):
        today = today or datetime.now(timezone.utc).date()
        self._history: List[DailyPnL] = []
        self.current = DailyPnL(
            date=today,
            starting_balance=starting_balance,
            ending_balance=starting_balance,
            peak_equity=starting_balance,
        )

    def roll(self, day: date) -> bool:
        """Start a new day if day is later than the current one."""
        if day <= self.current.date:
            return False

        self.current.frozen = True
        self._history.append(self.current)
        logger.info(f"Day {self.current.date} closed: P&L {self.current.total_pnl:+.2f}, "
                    f"{self.current.total_trades} trades")

        balance = self.current.ending_balance
        self.current = DailyPnL(
            date=day,
            starting_balance=balance,
            ending_balance=balance,
            peak_equity=balance,
        )
        return True

    def record_close(self, pnl: float, position_closed: bool):
        self.current.realized_pnl += pnl
        if position_closed:
            self.current.total_trades += 1

    def record_win(self):
        self.current.winning_trades += 1

    def update(self, equity: float, unrealized_pnl: float, risk_used: float):
        row = self.current
        row.unrealized_pnl = unrealized_pnl
        row.ending_balance = equity
        row.risk_used = max(row.risk_used, risk_used)
        row.peak_equity = max(row.peak_equity, equity)
        if row.peak_equity > 0:
            row.max_drawdown = max(row.max_drawdown, (row.peak_equity - equity) / row.peak_equity)

    def history(self) -> List[DailyPnL]:
        return list(self._history) + [self.current]
