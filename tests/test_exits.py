"""
Tests for stop / target management and position bookkeeping.
"""

from datetime import timedelta

import pytest

from src.errors import DuplicateSignal, InvalidInputs
from src.risk.portfolio import Position, PositionBook, DailyPnLLedger
from src.strategy.exits import ExitManager, ExitReason
from src.strategy.signals import SignalSide

from conftest import T0


def _trend_position(side=SignalSide.BUY, **overrides):
    sign = 1.0 if side == SignalSide.BUY else -1.0
    values = dict(
        symbol="BTCUSD",
        side=side,
        entry_price=100.0,
        quantity=10.0,
        stop_loss=100.0 - sign * 5.0,
        take_profit=100.0 + sign * 5.0,
        signal_id="sig-1",
        opened_at=T0,
        take_profit_2=100.0 + sign * 15.0,
        trailing_distance=5.0,
        partial_close_fraction=0.5,
    )
    values.update(overrides)
    return Position(**values)


class TestExitManager:
    """Tests for exit evaluation order."""

    def test_stop_loss(self):
        position = _trend_position()
        [instruction] = ExitManager().evaluate(position, high=101.0, low=94.0, close=96.0)
        assert instruction.reason == ExitReason.STOP_LOSS
        assert instruction.quantity == 10.0
        assert instruction.price == 95.0

    def test_stop_checked_before_target(self):
        position = _trend_position()
        [instruction] = ExitManager().evaluate(position, high=106.0, low=94.0, close=100.0)
        assert instruction.reason == ExitReason.STOP_LOSS

    def test_tp1_partial_and_breakeven(self):
        position = _trend_position()
        [instruction] = ExitManager().evaluate(position, high=106.0, low=101.0, close=105.5)

        assert instruction.reason == ExitReason.TAKE_PROFIT_1
        assert instruction.quantity == pytest.approx(5.0)
        assert instruction.price == 105.0
        assert position.tp1_hit
        assert position.breakeven
        # Trailing 5 below the best price of 106 beats breakeven
        assert position.stop_loss == pytest.approx(101.0)

    def test_tp2_after_tp1(self):
        manager = ExitManager()
        book = PositionBook()
        position = book.open(_trend_position())

        [tp1] = manager.evaluate(position, high=106.0, low=101.0, close=105.5)
        book.close(position.id, tp1.quantity, tp1.price, 0.0, tp1.reason.value, T0)

        [tp2] = manager.evaluate(position, high=116.0, low=110.0, close=115.5)
        assert tp2.reason == ExitReason.TAKE_PROFIT_2
        assert tp2.quantity == pytest.approx(5.0)
        assert tp2.price == 115.0

    def test_trailing_stop_ratchets(self):
        manager = ExitManager()
        position = _trend_position(take_profit_2=None)
        manager.evaluate(position, high=106.0, low=101.5, close=105.5)
        assert position.stop_loss == pytest.approx(101.0)

        manager.evaluate(position, high=110.0, low=106.0, close=109.0)
        assert position.stop_loss == pytest.approx(105.0)

        # A pullback never lowers the stop
        manager.evaluate(position, high=108.0, low=106.0, close=107.0)
        assert position.stop_loss == pytest.approx(105.0)

        [instruction] = manager.evaluate(position, high=106.0, low=104.0, close=104.5)
        assert instruction.reason == ExitReason.TRAILING_STOP
        assert instruction.price == pytest.approx(105.0)

    def test_short_position(self):
        position = _trend_position(side=SignalSide.SELL)
        [instruction] = ExitManager().evaluate(position, high=105.5, low=99.0, close=104.0)
        assert instruction.reason == ExitReason.STOP_LOSS
        assert instruction.price == 105.0

    def test_mean_reversion_full_target(self):
        position = _trend_position(take_profit=103.0, take_profit_2=None, trailing_distance=None,
                                   partial_close_fraction=1.0, rsi_exit_band=(45.0, 55.0))
        [instruction] = ExitManager().evaluate(position, high=103.5, low=101.0, close=103.2, rsi=40.0)
        assert instruction.reason == ExitReason.TAKE_PROFIT_1
        assert instruction.quantity == 10.0

    def test_rsi_neutral_exit(self):
        position = _trend_position(take_profit=103.0, take_profit_2=None, trailing_distance=None,
                                   partial_close_fraction=1.0, rsi_exit_band=(45.0, 55.0))
        [instruction] = ExitManager().evaluate(position, high=101.5, low=100.5, close=101.0, rsi=50.0)
        assert instruction.reason == ExitReason.RSI_NEUTRAL
        assert instruction.price == 101.0

        assert ExitManager().evaluate(position, high=101.5, low=100.5, close=101.0, rsi=40.0) == []

    def test_nothing_triggers(self):
        assert ExitManager().evaluate(_trend_position(), high=102.0, low=98.0, close=101.0) == []


class TestPositionBook:
    """Tests for position bookkeeping."""

    def test_one_position_per_signal(self):
        book = PositionBook()
        book.open(_trend_position())
        with pytest.raises(DuplicateSignal):
            book.open(_trend_position())

    def test_partial_then_full_close(self):
        book = PositionBook()
        position = book.open(_trend_position())

        pnl = book.close(position.id, 5.0, 105.0, 1.0, "take_profit_1", T0)
        assert pnl == pytest.approx(24.0)
        assert position.is_open
        assert position.quantity == pytest.approx(5.0)

        pnl = book.close(position.id, 5.0, 100.0, 1.0, "breakeven_stop", T0 + timedelta(hours=1))
        assert pnl == pytest.approx(-1.0)
        assert not position.is_open
        assert position.realized_pnl == pytest.approx(23.0)

        [trade] = book.closed_trades
        # Initial risk: 5 x 10 units
        assert trade.r_multiple == pytest.approx(23.0 / 50.0)

        with pytest.raises(InvalidInputs):
            book.close(position.id, 1.0, 100.0, 0.0, "again", T0)

    def test_risk_amount_drops_at_breakeven(self):
        position = _trend_position()
        assert position.risk_amount == pytest.approx(50.0)
        position.stop_loss = 100.0
        assert position.risk_amount == 0.0

    def test_exposure(self):
        book = PositionBook()
        book.open(_trend_position())
        book.open(_trend_position(signal_id="sig-2", symbol="ETHUSD", quantity=2.0))
        book.mark("BTCUSD", 110.0)

        assert book.exposure_by_symbol() == {"BTCUSD": pytest.approx(1100.0), "ETHUSD": pytest.approx(200.0)}
        assert book.largest_position_notional() == pytest.approx(1100.0)
        assert book.unrealized_pnl == pytest.approx(100.0)


class TestDailyPnLLedger:
    """Tests for per-day P&L rows."""

    def test_roll_freezes_day(self):
        ledger = DailyPnLLedger(10000.0, today=T0.date())
        ledger.record_close(-20.0, position_closed=True)
        ledger.update(9980.0, 0.0, 50.0)

        assert ledger.roll((T0 + timedelta(days=1)).date())
        assert not ledger.roll(T0.date())

        [day1, day2] = ledger.history()
        assert day1.frozen
        assert day1.realized_pnl == -20.0
        assert day1.total_trades == 1
        assert day2.starting_balance == pytest.approx(9980.0)
        assert day2.realized_pnl == 0.0

    def test_drawdown(self):
        ledger = DailyPnLLedger(10000.0, today=T0.date())
        ledger.update(10100.0, 100.0, 0.0)
        ledger.update(9999.0, -1.0, 0.0)
        assert ledger.current.max_drawdown == pytest.approx(101.0 / 10100.0)
