"""
Tests for the circuit breaker state machine.
"""

import threading
from datetime import timedelta

import pytest

from config.settings import RiskSettings
from src.errors import CircuitOpen
from src.risk import events as ev
from src.risk.circuit_breaker import BreakerState, CircuitBreaker, VALID_TRANSITIONS
from src.risk.events import RiskEventLog, RiskAction
from src.risk.risk_monitor import PortfolioSnapshot, RiskMonitor

from conftest import T0


class _Critical:
    """Toggleable critical-limit flag."""

    def __init__(self):
        self.value = False

    def __call__(self):
        return self.value


@pytest.fixture
def log():
    return RiskEventLog()


@pytest.fixture
def critical():
    return _Critical()


@pytest.fixture
def breaker(log, critical):
    return CircuitBreaker(log, critical_check=critical, pause_duration=timedelta(hours=12))


class TestDailyLossPause:
    """Tests for the daily-loss cool-down."""

    def test_small_daily_loss_pauses(self, log):
        monitor = RiskMonitor(RiskSettings(max_daily_loss=2.0), log)
        breaker = CircuitBreaker(log, critical_check=monitor.has_critical)

        assessment = monitor.evaluate(PortfolioSnapshot(
            equity=100.0, realized_pnl_today=-1.5, unrealized_pnl=-0.6, timestamp=T0))
        assert assessment.pause_requested
        assert breaker.pause("daily loss", now=T0)

        assert breaker.state == BreakerState.PAUSED
        [event] = log.unresolved(ev.DAILY_LOSS_LIMIT)
        assert event.triggered_by['from'] == "active"
        assert event.triggered_by['to'] == "paused"
        assert RiskAction.PAUSE_TRADING.value in event.actions_taken
        with pytest.raises(CircuitOpen):
            breaker.check()

    def test_resumes_exactly_at_pause_end(self, breaker, log):
        breaker.pause("daily loss", now=T0)
        assert breaker.resume_at == T0 + timedelta(hours=12)

        assert not breaker.tick(T0 + timedelta(hours=11, minutes=59))
        assert breaker.state == BreakerState.PAUSED

        assert breaker.tick(T0 + timedelta(hours=12))
        assert breaker.state == BreakerState.ACTIVE
        assert log.unresolved(ev.DAILY_LOSS_LIMIT) == []
        assert log.events()[0].event_type == ev.BREAKER_RESUMED

    def test_stays_paused_while_critical(self, breaker, critical):
        breaker.pause("daily loss", now=T0)
        critical.value = True
        assert not breaker.tick(T0 + timedelta(hours=13))
        assert breaker.state == BreakerState.PAUSED

        critical.value = False
        assert breaker.tick(T0 + timedelta(hours=13))

    def test_pause_only_from_active(self, breaker):
        breaker.trigger(ev.EMERGENCY_STOP, "manual", now=T0)
        assert not breaker.pause("daily loss", now=T0)
        assert breaker.state == BreakerState.TRIGGERED


class TestEmergencyStop:
    """Tests for triggered state and reset."""

    def test_trigger_blocks_until_reset(self, breaker, log):
        assert breaker.trigger(ev.EMERGENCY_STOP, "manual", close_positions=True, now=T0)
        assert breaker.state == BreakerState.TRIGGERED

        # Time alone never clears a trigger
        assert not breaker.tick(T0 + timedelta(days=3))
        with pytest.raises(CircuitOpen):
            breaker.check()

        [event] = log.unresolved(ev.EMERGENCY_STOP)
        assert RiskAction.CLOSE_POSITIONS.value in event.actions_taken

        assert breaker.reset("all clear", now=T0 + timedelta(hours=1))
        assert breaker.state == BreakerState.ACTIVE
        assert log.unresolved(ev.EMERGENCY_STOP) == []
        breaker.check()

    def test_pause_escalates_to_trigger(self, breaker):
        breaker.pause("daily loss", now=T0)
        assert breaker.trigger(ev.DRAWDOWN_LIMIT, "drawdown", now=T0)
        assert breaker.state == BreakerState.TRIGGERED

    def test_trigger_ignored_when_triggered(self, breaker, log):
        breaker.trigger(ev.EMERGENCY_STOP, "first", now=T0)
        count = len(log)
        assert not breaker.trigger(ev.VOLATILITY_SPIKE, "second", now=T0)
        assert len(log) == count

    def test_reset_refused_while_critical(self, breaker, critical):
        breaker.trigger(ev.EMERGENCY_STOP, "manual", now=T0)
        critical.value = True
        with pytest.raises(CircuitOpen):
            breaker.reset(now=T0)
        assert breaker.state == BreakerState.TRIGGERED

    def test_reset_when_active_is_noop(self, breaker):
        assert not breaker.reset(now=T0)

    def test_reset_from_paused(self, breaker):
        breaker.pause("daily loss", now=T0)
        assert breaker.reset(now=T0 + timedelta(hours=1))
        assert breaker.state == BreakerState.ACTIVE


class TestToken:
    """Tests for the halt generation token."""

    def test_halt_invalidates_token(self, breaker):
        token = breaker.token()
        breaker.check(token)

        breaker.trigger(ev.EMERGENCY_STOP, "manual", now=T0)
        breaker.reset(now=T0)

        # Active again, but the request started before the halt
        with pytest.raises(CircuitOpen):
            breaker.check(token)
        breaker.check(breaker.token())


class TestDisabled:
    """Tests for the configuration switch."""

    def test_disabled_blocks_orders(self, log):
        breaker = CircuitBreaker(log, enabled=False)
        assert breaker.state == BreakerState.DISABLED
        assert not breaker.allows_orders()
        with pytest.raises(CircuitOpen):
            breaker.check()

    def test_disabled_ignores_trigger_and_refuses_reset(self, breaker):
        breaker.disable(T0)
        assert not breaker.trigger(ev.EMERGENCY_STOP, "manual", now=T0)
        assert not breaker.pause("daily loss", now=T0)
        with pytest.raises(CircuitOpen):
            breaker.reset(now=T0)

    def test_enable_returns_to_active(self, breaker, log):
        breaker.disable(T0)
        assert breaker.enable(T0)
        assert breaker.state == BreakerState.ACTIVE
        assert log.events()[0].event_type == ev.BREAKER_ENABLED

    def test_enable_keeps_emergency_stop(self, breaker, log):
        breaker.trigger(ev.EMERGENCY_STOP, "manual", now=T0)
        breaker.disable(T0)
        assert breaker.enable(T0)

        assert breaker.state == BreakerState.TRIGGERED
        [event] = log.unresolved()
        assert event.event_type == ev.BREAKER_ENABLED
        assert event.triggered_by['latched_type'] == ev.EMERGENCY_STOP

        assert breaker.reset(now=T0)
        assert breaker.state == BreakerState.ACTIVE

    def test_enable_while_critical(self, breaker, critical):
        breaker.disable(T0)
        critical.value = True
        assert breaker.enable(T0)

        assert breaker.state == BreakerState.TRIGGERED
        assert breaker.halt_event.triggered_by['critical_limit'] is True
        with pytest.raises(CircuitOpen):
            breaker.reset(now=T0)

    def test_enable_after_pause_without_critical(self, breaker):
        breaker.pause("daily loss", now=T0)
        breaker.disable(T0)
        assert breaker.enable(T0)
        assert breaker.state == BreakerState.ACTIVE


class TestConcurrency:
    """Tests for concurrent transitions."""

    def test_pause_and_trigger_race(self, log):
        for _ in range(20):
            breaker = CircuitBreaker(RiskEventLog())
            barrier = threading.Barrier(2)

            def pause():
                barrier.wait()
                breaker.pause("daily loss", now=T0)

            def trigger():
                barrier.wait()
                breaker.trigger(ev.EMERGENCY_STOP, "manual", now=T0)

            threads = [threading.Thread(target=pause), threading.Thread(target=trigger)]
            for t in threads:
                t.start()
            for t in threads:
                t.join()

            assert breaker.state == BreakerState.TRIGGERED

    def test_transition_table(self):
        assert BreakerState.ACTIVE not in VALID_TRANSITIONS[BreakerState.ACTIVE]
        assert BreakerState.PAUSED not in VALID_TRANSITIONS[BreakerState.TRIGGERED]
        assert VALID_TRANSITIONS[BreakerState.DISABLED] == {BreakerState.ACTIVE, BreakerState.TRIGGERED}
