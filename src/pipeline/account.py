"""
Account Core - Per-Account Decision Pipeline

FLOW (per base bar):
1. Aggregate into execution (15m) and confirmation (4h) bars
2. Mark open positions and run exit management on the bar
3. Confirmation bars update the regime tracker
4. Execution bars update indicators and, once the confirmation regime
   is confirmed, run the signal engines
5. Each actionable signal: SignalBook -> inference -> MLGate ->
   PositionSizer -> OrderValidator -> execution collaborator
6. Recompute risk limits and drive the circuit breaker

The core owns all mutable account state. It is driven either directly
(replay, tests) or through an AccountActor, which serializes requests.
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Optional, List, Dict, Callable, Any, Tuple

from config.settings import Settings, RiskSettings, SettingsError
from src.analysis.correlation import CorrelationAnalyzer
from src.analysis.indicators import IndicatorEngine, IndicatorSet
from src.analysis.regime import RegimeClassifier, RegimeTracker, RegimeState
from src.data.bars import MarketBar, BarAggregator
from src.errors import (
    TradingCoreError,
    ConfigurationError,
    InvalidInputs,
    LimitBreach,
    StaleData,
    ExecutionTimeout,
)
from src.execution.collaborators import (
    InferenceClient,
    ExecutionClient,
    SettingsStore,
    ExecutionReport,
    ExecutionStatus,
    Fill,
    HeuristicInferenceClient,
    PaperExecutionClient,
    call_with_timeout,
)
from src.execution.order_validator import OrderRequest, OrderValidator, ValidationResult
from src.risk import events as ev
from src.risk.circuit_breaker import CircuitBreaker, BreakerState
from src.risk.events import RiskEventLog
from src.risk.portfolio import Position, PositionBook, DailyPnL, DailyPnLLedger
from src.risk.position_sizer import PositionSizer, SizingRequest, SizingResult
from src.risk.risk_monitor import RiskMonitor, RiskAssessment, PortfolioSnapshot, LimitType
from src.strategy.exits import ExitManager, ExitInstruction
from src.strategy.mean_reversion import MeanReversionEngine
from src.strategy.ml_gate import MLGate, MLDecision, FeatureVector
from src.strategy.signals import Signal, SignalBook, SignalSide, StrategyType
from src.strategy.trend_following import TrendFollowingEngine


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SignalOutcome:
    """What happened to one actionable signal."""
    signal: Signal
    decision: Optional[MLDecision] = None
    sizing: Optional[SizingResult] = None
    validation: Optional[ValidationResult] = None
    report: Optional[ExecutionReport] = None
    position_id: Optional[str] = None
    error: Optional[TradingCoreError] = None

    @property
    def executed(self) -> bool:
        return self.position_id is not None

    @property
    def outcome(self) -> str:
        if self.executed:
            return "opened"
        if self.error is not None:
            return self.error.kind
        if self.decision is not None and not self.decision.executed:
            return "ml_rejected"
        if self.report is not None:
            return f"execution_{self.report.status.value}"
        return "rejected"

    def to_dict(self) -> dict:
        return {
            "signal": self.signal.to_dict(),
            "outcome": self.outcome,
            "decision": self.decision.to_dict() if self.decision else None,
            "sizing": self.sizing.to_dict() if self.sizing else None,
            "validation": self.validation.to_dict() if self.validation else None,
            "report": self.report.to_dict() if self.report else None,
            "position_id": self.position_id,
            "error": self.error.to_dict() if self.error else None,
        }


class AccountCore:
    """
    Owner of one account's decision pipeline and risk state.

    Handles:
    - Bar ingestion and multi-timeframe aggregation
    - Signal evaluation, ML gating, sizing and validation
    - Position exits and realized P&L feedback
    - Risk limit monitoring and circuit breaker control
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        inference: Optional[InferenceClient] = None,
        execution: Optional[ExecutionClient] = None,
        settings_store: Optional[SettingsStore] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Args:
            settings: Account settings; validated here
            inference: Scores candidate signals
            execution: Receives finalized orders (paper by default)
            settings_store: Persists replaced RiskSettings
            clock: Current time source

        Raises:
            ConfigurationError: settings are missing or invalid
        """
        settings = settings or Settings()
        ok, errors = settings.validate()
        if not ok:
            raise ConfigurationError(
                f"Invalid settings: {'; '.join(errors)}",
                details={'errors': errors},
            )

        self.settings = settings
        self.settings_store = settings_store
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        pipeline = settings.pipeline
        risk = settings.risk
        self.base_timeframe = pipeline.base_timeframe
        self.execution_timeframe = pipeline.execution_timeframe
        self.confirmation_timeframe = pipeline.confirmation_timeframe

        # Analysis
        self.aggregator = BarAggregator(
            base_timeframe=self.base_timeframe,
            targets=(self.execution_timeframe, self.confirmation_timeframe),
        )
        self.indicators = IndicatorEngine(settings.indicators)
        self.regimes = RegimeTracker(RegimeClassifier(settings.regime))
        self.correlation = CorrelationAnalyzer(
            threshold=risk.correlation_threshold,
            window=pipeline.correlation_window,
        )

        # Strategy
        self.engines = {
            StrategyType.TREND_FOLLOWING: TrendFollowingEngine(settings.trend_following),
            StrategyType.MEAN_REVERSION: MeanReversionEngine(settings.mean_reversion),
        }
        self.signal_book = SignalBook()
        self.ml_gate = MLGate(settings.ml_gate)
        self.exits = ExitManager()

        # Risk
        self.event_log = RiskEventLog()
        self.monitor = RiskMonitor(risk, self.event_log)
        self.breaker = CircuitBreaker(
            self.event_log,
            critical_check=self.monitor.has_critical,
            pause_duration=risk.pause_duration,
            enabled=risk.circuit_breaker_enabled,
        )
        self.sizer = PositionSizer(risk, settings.sizing)
        self.validator = OrderValidator(self.breaker, risk, settings.validator)

        # Account
        self.positions = PositionBook()
        self.balance = pipeline.initial_capital
        self.ledger = DailyPnLLedger(pipeline.initial_capital, today=self._clock().date())

        # Collaborators
        self.inference = inference or HeuristicInferenceClient()
        self.execution = execution or PaperExecutionClient(
            fee_rate=settings.validator.fee_rate,
            slippage_rate=settings.validator.slippage_rate,
            clock=self._clock,
        )

        self._lock = threading.RLock()
        self._locks_guard = threading.Lock()
        self._symbol_locks: Dict[str, threading.Lock] = {}

        self._latest: Dict[str, IndicatorSet] = {}
        self._last_prices: Dict[str, float] = {}
        self._groups: Tuple[frozenset, ...] = ()
        self._groups_dirty = False
        self.decisions: deque = deque(maxlen=1000)

        self._decision_listeners: List[Callable[[str, Dict[str, Any]], None]] = []
        self._day_listeners: List[Callable[[DailyPnL], None]] = []
        self._risk_listeners: List[Callable[[RiskAssessment], None]] = []

        logger.info(f"Account core ready: {len(pipeline.symbols)} symbols, "
                    f"{self.execution_timeframe.value} execution, "
                    f"{self.confirmation_timeframe.value} confirmation, "
                    f"capital {self.balance:,.2f}")

    # =========================================================================
    # LISTENERS
    # =========================================================================

    def add_decision_listener(self, callback: Callable[[str, Dict[str, Any]], None]):
        """callback(record_type, payload) for SIGNAL, ML_DECISION, ORDER and CLOSE records."""
        self._decision_listeners.append(callback)

    def add_day_listener(self, callback: Callable[[DailyPnL], None]):
        """callback(row) when a trading day is frozen."""
        self._day_listeners.append(callback)

    def add_risk_listener(self, callback: Callable[[RiskAssessment], None]):
        self._risk_listeners.append(callback)

    def _emit(self, record_type: str, payload: Dict[str, Any]):
        for callback in self._decision_listeners:
            try:
                callback(record_type, payload)
            except Exception as e:
                logger.error(f"Decision listener failed: {e}")

    # =========================================================================
    # ACCOUNT STATE
    # =========================================================================

    @property
    def risk_settings(self) -> RiskSettings:
        return self.settings.risk

    @property
    def equity(self) -> float:
        return self.balance + self.positions.unrealized_pnl

    @property
    def available_balance(self) -> float:
        """Balance not committed to open positions."""
        committed = sum(p.quantity * p.entry_price for p in self.positions.open_positions())
        return self.balance - committed

    def _now(self) -> datetime:
        return self._clock()

    def _symbol_lock(self, symbol: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._symbol_locks.get(symbol)
            if lock is None:
                lock = threading.Lock()
                self._symbol_locks[symbol] = lock
            return lock

    def _roll_day(self, now: datetime):
        previous = self.ledger.current
        if self.ledger.roll(now.date()):
            for callback in self._day_listeners:
                try:
                    callback(previous)
                except Exception as e:
                    logger.error(f"Day listener failed: {e}")

    def _trade_stats(self) -> Tuple[float, float, float]:
        """Win rate and payoff for Kelly sizing; defaults until enough closed trades."""
        s = self.settings.sizing
        trades, win_rate, avg_win, avg_loss = self.positions.trade_stats()
        if trades < s.min_trades_for_stats or min(win_rate, avg_win, avg_loss) <= 0:
            return s.default_win_rate, s.default_avg_win, s.default_avg_loss
        return win_rate, avg_win, avg_loss

    # =========================================================================
    # BAR INGESTION
    # =========================================================================

    def on_bar(self, bar: MarketBar) -> List[SignalOutcome]:
        """
        Ingest one base-timeframe bar.

        Returns:
            Outcomes of the actionable signals produced by this bar

        Raises:
            InvalidInputs: bar is not of the base timeframe
            StaleData: bar is out of order
        """
        if bar.timeframe != self.base_timeframe:
            raise InvalidInputs(
                f"Expected {self.base_timeframe.value} bars, got {bar.timeframe.value}"
            )

        with self._lock:
            now = bar.end
            self._roll_day(now)

            completed = self.aggregator.add(bar)

            self._last_prices[bar.symbol] = bar.close
            self.positions.mark(bar.symbol, bar.close)
            self._manage_exits(bar)

            # Confirmation first, so a regime confirmed at this boundary is honored
            streams = [b for b in [bar] + completed
                       if b.timeframe in (self.execution_timeframe, self.confirmation_timeframe)]
            streams.sort(key=lambda b: b.timeframe.to_minutes(), reverse=True)

            outcomes = []
            for completed_bar in streams:
                outcomes.extend(self._on_completed_bar(completed_bar))

            self.refresh_risk(now)
            return outcomes

    def _on_completed_bar(self, bar: MarketBar) -> List[SignalOutcome]:
        try:
            ind = self.indicators.update(bar)
        except StaleData as e:
            logger.warning(f"Skipping bar: {e.message}")
            return []

        if ind is None:
            return []

        outcomes = []
        if bar.timeframe == self.confirmation_timeframe:
            self.regimes.update(ind)

        if bar.timeframe == self.execution_timeframe:
            self._latest[bar.symbol] = ind
            self.correlation.update(bar.symbol, bar.close)
            self._groups_dirty = True
            outcomes = self._evaluate_entries(ind)

        return outcomes

    def _evaluate_entries(self, ind: IndicatorSet) -> List[SignalOutcome]:
        regime = self.regimes.confirmed(ind.symbol, self.confirmation_timeframe)
        if regime is None:
            logger.debug(f"{ind.symbol}: no confirmed {self.confirmation_timeframe.value} regime yet")
            return []

        if not self.breaker.allows_orders():
            logger.debug(f"{ind.symbol}: breaker {self.breaker.state.value}, skipping entries")
            return []

        outcomes = []
        for engine in self.engines.values():
            if not engine.enabled:
                continue

            signal = engine.evaluate(ind, regime)
            if not signal.is_actionable:
                continue

            try:
                outcomes.append(self.process_signal(signal, ind, regime))
            except TradingCoreError as e:
                logger.warning(f"{signal.symbol} {signal.strategy_type.value}: "
                               f"[{e.kind}] {e.message}")
                outcomes.append(SignalOutcome(signal=signal, error=e))

        return outcomes

    # =========================================================================
    # SIGNAL -> ORDER
    # =========================================================================

    def process_signal(
        self,
        signal: Signal,
        ind: IndicatorSet,
        regime: Optional[RegimeState],
    ) -> SignalOutcome:
        """
        Take one actionable signal through gate, sizing, validation and execution.

        Raises:
            DuplicateSignal: the engine already has an open signal for the symbol
            StaleData, ExecutionTimeout, LimitBreach, InvalidInputs
        """
        # Taken before anything slow so a halt during the request is visible to validation
        token = self.breaker.token()
        self.signal_book.register(signal)
        self._emit("SIGNAL", signal.to_dict())

        try:
            features = FeatureVector.build(signal, ind, regime)
            score = call_with_timeout(
                self.inference.score, features, signal,
                timeout=self.settings.pipeline.inference_timeout_seconds,
                error_cls=StaleData,
                what="inference",
            )
            decision = self.ml_gate.decide(signal, score)
            self.decisions.append(decision)
            payload = decision.to_dict()
            payload.update(symbol=signal.symbol, outcome="accepted" if decision.executed else "rejected")
            self._emit("ML_DECISION", payload)

            if not decision.executed:
                logger.info(f"{signal.symbol} {signal.strategy_type.value} rejected by gate: "
                            f"{decision.reason}")
                self.signal_book.resolve(signal.id, f"ml_rejected: {decision.reason}")
                return SignalOutcome(signal=signal, decision=decision)

            with self._symbol_lock(signal.symbol):
                return self._size_validate_execute(signal, ind, regime, decision, token)

        except TradingCoreError as e:
            self.signal_book.resolve(signal.id, e.kind)
            raise

    def _sizing_request(
        self,
        symbol: str,
        price: float,
        stop_distance: float,
        atr_pct: Optional[float],
        high_volatility: bool,
        timestamp: datetime,
    ) -> SizingRequest:
        win_rate, avg_win, avg_loss = self._trade_stats()
        rs = self.risk_settings
        return SizingRequest(
            symbol=symbol,
            capital=self.equity,
            price=price,
            stop_distance=stop_distance,
            risk_per_trade=rs.risk_per_trade,
            method=rs.sizing_method,
            atr_pct=atr_pct,
            win_rate=win_rate,
            avg_win=avg_win,
            avg_loss=avg_loss,
            high_volatility=high_volatility,
            portfolio_risk=self.positions.total_open_risk,
            symbol_exposure=self.positions.exposure_by_symbol().get(symbol, 0.0),
            timestamp=timestamp,
        )

    def _size_validate_execute(
        self,
        signal: Signal,
        ind: IndicatorSet,
        regime: Optional[RegimeState],
        decision: MLDecision,
        token: int,
    ) -> SignalOutcome:
        rs = self.risk_settings
        open_count = len(self.positions.open_positions())
        if open_count >= rs.max_positions:
            raise LimitBreach(
                f"{open_count} positions open, limit {rs.max_positions}",
                details={'open_positions': open_count, 'max_positions': rs.max_positions},
            )

        sizing = self.sizer.calculate(self._sizing_request(
            signal.symbol,
            signal.price,
            signal.stop_distance,
            ind.atr_pct,
            regime.high_volatility if regime is not None else False,
            signal.timestamp,
        ))
        if sizing.recommended_size <= 0:
            raise LimitBreach(
                f"No size available for {signal.symbol}",
                details={'max_size': sizing.max_size, 'adjustments': list(sizing.adjustments)},
            )

        plan = signal.exit_plan
        costs = self.validator.estimate_costs(sizing.recommended_size * signal.price)
        order = OrderRequest(
            symbol=signal.symbol,
            side=signal.side,
            quantity=sizing.recommended_size,
            price=signal.price,
            stop_loss=plan.stop_loss,
            take_profit=plan.take_profit_1,
            signal_id=signal.id,
            **costs,
        )

        validation = self.validator.validate(order, sizing, self.equity, self.available_balance, token)
        payload = order.to_dict()
        payload['outcome'] = "accepted" if validation.accepted else validation.error.kind
        self._emit("ORDER", payload)

        if not validation.accepted:
            self.signal_book.resolve(signal.id, validation.error.kind)
            return SignalOutcome(signal=signal, decision=decision, sizing=sizing,
                                 validation=validation, error=validation.error)

        report = call_with_timeout(
            self.execution.submit, order,
            timeout=self.settings.pipeline.execution_timeout_seconds,
            error_cls=ExecutionTimeout,
            what="execution",
        )
        if report.status != ExecutionStatus.FILLED or report.fill is None:
            logger.warning(f"{signal.symbol}: order {report.order_id} {report.status.value} "
                           f"{report.message}")
            self.signal_book.resolve(signal.id, f"execution_{report.status.value}")
            return SignalOutcome(signal=signal, decision=decision, sizing=sizing,
                                 validation=validation, report=report)

        position = self._open_position(signal, report.fill)
        return SignalOutcome(signal=signal, decision=decision, sizing=sizing,
                             validation=validation, report=report, position_id=position.id)

    def _open_position(self, signal: Signal, fill: Fill) -> Position:
        plan = signal.exit_plan
        position = Position(
            symbol=signal.symbol,
            side=signal.side,
            entry_price=fill.price,
            quantity=fill.quantity,
            stop_loss=plan.stop_loss,
            take_profit=plan.take_profit_1,
            signal_id=signal.id,
            opened_at=fill.timestamp,
            take_profit_2=plan.take_profit_2,
            trailing_distance=plan.trailing_distance,
            partial_close_fraction=plan.partial_close_fraction,
            rsi_exit_band=plan.rsi_exit_band,
        )
        # Entry fees are realized immediately
        position.realized_pnl = -fill.fees
        position.fees_paid = fill.fees
        self.positions.open(position)

        self.balance -= fill.fees
        self.ledger.record_close(-fill.fees, position_closed=False)
        return position

    # =========================================================================
    # EXITS
    # =========================================================================

    def _manage_exits(self, bar: MarketBar):
        ind = self._latest.get(bar.symbol)
        rsi = ind.rsi if ind is not None else None

        for position in self.positions.open_positions(bar.symbol):
            for instruction in self.exits.evaluate(position, bar.high, bar.low, bar.close, rsi):
                try:
                    self.execute_exit(instruction, bar.end)
                except TradingCoreError as e:
                    logger.error(f"Exit {instruction.reason.value} for {position.symbol} "
                                 f"failed: [{e.kind}] {e.message}")

    def execute_exit(self, instruction: ExitInstruction, timestamp: Optional[datetime] = None) -> Optional[float]:
        """
        Close (part of) a position through a reduce-only order.

        Returns:
            Realized P&L of the close, or None when nothing was filled
        """
        timestamp = timestamp or self._now()
        position = self.positions.get(instruction.position_id)
        if position is None or not position.is_open:
            return None

        quantity = min(instruction.quantity, position.quantity)
        costs = self.validator.estimate_costs(quantity * instruction.price)
        order = OrderRequest(
            symbol=position.symbol,
            side=SignalSide.SELL if position.side == SignalSide.BUY else SignalSide.BUY,
            quantity=quantity,
            price=instruction.price,
            signal_id=position.signal_id,
            reduce_only=True,
            position_id=position.id,
            **costs,
        )
        self.validator.check(order, None, self.equity, self.balance)

        report = call_with_timeout(
            self.execution.submit, order,
            timeout=self.settings.pipeline.execution_timeout_seconds,
            error_cls=ExecutionTimeout,
            what="execution",
        )
        if report.status != ExecutionStatus.FILLED or report.fill is None:
            logger.error(f"{position.symbol}: exit order {report.order_id} "
                         f"{report.status.value} {report.message}")
            return None

        fill = report.fill
        pnl = self.positions.close(position.id, fill.quantity, fill.price, fill.fees,
                                   instruction.reason.value, timestamp)
        self.balance += pnl

        closed = not position.is_open
        self.ledger.record_close(pnl, position_closed=closed)
        if closed:
            if position.realized_pnl > 0:
                self.ledger.record_win()
            self.signal_book.resolve(position.signal_id, f"closed: {instruction.reason.value}")

        payload = instruction.to_dict()
        payload.update(signal_id=position.signal_id, fill_price=fill.price, fees=fill.fees,
                       pnl=pnl, outcome="closed" if closed else "partial")
        self._emit("CLOSE", payload)
        return pnl

    def close_all_positions(self, reason: str = "emergency") -> float:
        """Market-close every open position at the last known price."""
        with self._lock:
            total = 0.0
            for position in self.positions.open_positions():
                price = self._last_prices.get(position.symbol, position.last_price)
                instruction = self.exits.emergency_close(position, price)
                logger.warning(f"Closing {position.symbol} ({reason})")
                try:
                    total += self.execute_exit(instruction) or 0.0
                except TradingCoreError as e:
                    logger.error(f"Emergency close of {position.symbol} failed: "
                                 f"[{e.kind}] {e.message}")
            return total

    # =========================================================================
    # RISK
    # =========================================================================

    def snapshot(self, now: Optional[datetime] = None) -> PortfolioSnapshot:
        """Current account state for limit evaluation."""
        if self._groups_dirty:
            self._groups = tuple(frozenset(g) for g in self.correlation.correlated_groups())
            self._groups_dirty = False

        unrealized = self.positions.unrealized_pnl
        return PortfolioSnapshot(
            equity=self.balance + unrealized,
            realized_pnl_today=self.ledger.current.realized_pnl,
            unrealized_pnl=unrealized,
            largest_position_notional=self.positions.largest_position_notional(),
            portfolio_risk=self.positions.total_open_risk,
            symbol_exposure=self.positions.exposure_by_symbol(),
            correlation_groups=self._groups,
            atr_pct={symbol: ind.atr_pct for symbol, ind in self._latest.items()},
            timestamp=now or self._now(),
        )

    def refresh_risk(self, now: Optional[datetime] = None) -> RiskAssessment:
        """
        Recompute every limit and apply pause / trigger requests.

        Returns:
            The new RiskAssessment
        """
        with self._lock:
            now = now or self._now()
            snap = self.snapshot(now)
            self.ledger.update(snap.equity, snap.unrealized_pnl, snap.portfolio_risk)

            assessment = self.monitor.evaluate(snap)

            if assessment.pause_requested:
                daily = assessment.get(LimitType.DAILY_LOSS)
                self.breaker.pause(
                    f"Daily loss {-snap.daily_pnl:.2f} reached limit "
                    f"{self.risk_settings.max_daily_loss:.2f}",
                    triggered_by=daily.to_dict() if daily else None,
                    now=now,
                )

            for event_type, status in assessment.trigger_requests:
                self.breaker.trigger(
                    event_type,
                    f"{status.limit_type.value} at {status.utilization_percentage:.1f}% of limit",
                    triggered_by=status.to_dict(),
                    now=now,
                )

            self.breaker.tick(now)

            for callback in self._risk_listeners:
                try:
                    callback(assessment)
                except Exception as e:
                    logger.error(f"Risk listener failed: {e}")

            return assessment

    def trigger_circuit_breaker(
        self,
        reason: str = "manual emergency stop",
        close_positions: bool = False,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Manual emergency stop.

        Returns:
            True if the breaker moved to triggered
        """
        triggered = self.breaker.trigger(
            ev.EMERGENCY_STOP,
            reason,
            triggered_by={'source': 'manual'},
            close_positions=close_positions,
            now=now or self._now(),
        )
        if triggered and close_positions:
            self.close_all_positions(reason)
        return triggered

    def reset_circuit_breaker(self, reason: str = "manual reset", now: Optional[datetime] = None) -> bool:
        """
        Return a triggered or paused breaker to active.

        An accepted reset restarts drawdown measurement from current equity,
        so a drawdown halt can be cleared once nothing else is critical.

        Raises:
            CircuitOpen: a limit is still critical, or the breaker is disabled
        """
        with self._lock:
            now = now or self._now()
            self.refresh_risk(now)

            halted = self.breaker.state in (BreakerState.PAUSED, BreakerState.TRIGGERED)
            others = [t for t in self.monitor.critical_limits() if t != LimitType.DRAWDOWN]
            if halted and not others:
                snap = self.snapshot(now)
                self.monitor.drawdown.rebase(snap.equity)
                self.monitor.evaluate(snap)
                logger.info(f"Drawdown reference re-based to equity {snap.equity:,.2f}")

            return self.breaker.reset(reason, now)

    def update_risk_settings(self, risk: RiskSettings) -> RiskSettings:
        """
        Replace RiskSettings as a whole.

        Raises:
            InvalidInputs: the new settings are invalid; the old ones stay active
        """
        try:
            errors = risk.validate()
        except TypeError as e:
            raise InvalidInputs(f"Invalid risk settings: {e}") from e
        if errors:
            raise InvalidInputs(f"Invalid risk settings: {'; '.join(errors)}",
                                details={'errors': errors})

        with self._lock:
            if self.settings_store is not None:
                self.settings_store.save_risk_settings(risk)

            previous = self.settings.risk
            self.settings = self.settings.with_risk(risk)
            self.sizer.risk_settings = risk
            self.monitor.update_settings(risk)
            self.validator.update_settings(risk)
            self.breaker.pause_duration = risk.pause_duration
            self.correlation.threshold = risk.correlation_threshold
            self._groups_dirty = True

            if previous.circuit_breaker_enabled and not risk.circuit_breaker_enabled:
                self.breaker.disable(self._now())

            logger.info("Risk settings updated")
            self.refresh_risk()

            # Limits are re-evaluated under the new settings before re-enabling
            if risk.circuit_breaker_enabled and not previous.circuit_breaker_enabled:
                self.breaker.enable(self._now())
            return risk

    def risk_settings_from_dict(self, data: Dict[str, Any]) -> RiskSettings:
        """Merge a partial mapping over the active RiskSettings."""
        merged = self.risk_settings.to_dict()
        merged.update(data or {})
        try:
            return RiskSettings.from_dict(merged)
        except (SettingsError, TypeError) as e:
            raise InvalidInputs(str(e)) from e

    # =========================================================================
    # QUERIES
    # =========================================================================

    def generate_signals(self, symbol: str) -> List[Signal]:
        """
        Evaluate the enabled engines on the latest execution bar, without acting.

        Raises:
            InsufficientHistory: indicators are still warming up
        """
        with self._lock:
            ind = self.indicators.current(symbol, self.execution_timeframe)
            regime = (self.regimes.confirmed(symbol, self.confirmation_timeframe)
                      or self.regimes.current(symbol, self.confirmation_timeframe))
            return [engine.evaluate(ind, regime)
                    for engine in self.engines.values() if engine.enabled]

    def calculate_position_size(
        self,
        symbol: str,
        price: float,
        stop_distance: float,
        capital: Optional[float] = None,
        **overrides,
    ) -> SizingResult:
        """Size against the account's current state; any request field may be overridden."""
        with self._lock:
            ind = self._latest.get(symbol)
            regime = self.regimes.current(symbol, self.confirmation_timeframe)
            request = self._sizing_request(
                symbol,
                price,
                stop_distance,
                ind.atr_pct if ind is not None else None,
                regime.high_volatility if regime is not None else False,
                self._now(),
            )
            if capital is not None:
                overrides["capital"] = capital
            try:
                request = replace(request, **overrides)
            except (TypeError, ValueError) as e:
                raise InvalidInputs(f"Invalid sizing request: {e}") from e
            try:
                return self.sizer.calculate(request)
            except TypeError as e:
                raise InvalidInputs(f"Invalid sizing request: {e}") from e

    def validate_order(self, order: OrderRequest) -> ValidationResult:
        """Run an externally built order through the validator."""
        with self._lock:
            if order.reduce_only:
                return self.validator.validate(order, None, self.equity, self.balance)

            if order.stop_loss is None:
                raise InvalidInputs("Opening orders require a stop_loss")
            ind = self._latest.get(order.symbol)
            regime = self.regimes.current(order.symbol, self.confirmation_timeframe)
            sizing = self.sizer.calculate(self._sizing_request(
                order.symbol,
                order.price,
                abs(order.price - order.stop_loss),
                ind.atr_pct if ind is not None else None,
                regime.high_volatility if regime is not None else False,
                self._now(),
            ))
            return self.validator.validate(order, sizing, self.equity, self.available_balance)

    def risk_status(self) -> Dict[str, Any]:
        """Breaker, limits, balances and open positions."""
        with self._lock:
            assessment = self.monitor.latest or self.refresh_risk()
            return {
                "breaker": self.breaker.status(),
                "limits": [s.to_dict() for s in assessment.statuses],
                "equity": self.equity,
                "balance": self.balance,
                "available_balance": self.available_balance,
                "daily_pnl": self.ledger.current.to_dict(),
                "open_positions": [p.to_dict() for p in self.positions.open_positions()],
                "unresolved_events": [e.to_dict() for e in self.event_log.unresolved()],
                "risk_settings": self.risk_settings.to_dict(),
            }
