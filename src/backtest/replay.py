"""
Replay Engine Module.

Replays recorded base bars through the full account pipeline with paper
execution, using the bar clock as the account clock.
"""

import json
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional, List, Dict

import numpy as np
import pandas as pd

from config.settings import Settings
from src.data.bars import MarketBar
from src.errors import TradingCoreError
from src.execution.collaborators import InferenceClient
from src.pipeline.account import AccountCore


logger = logging.getLogger(__name__)


@dataclass
class ReplayResult:
    """Complete replay results."""
    symbols: List[str]
    start_date: datetime
    end_date: datetime
    bars_processed: int

    initial_capital: float
    final_equity: float
    total_return: float
    max_drawdown: float

    total_trades: int
    winning_trades: int
    win_rate: float
    profit_factor: float
    avg_r_multiple: float
    total_fees: float

    signal_outcomes: Dict[str, int] = field(default_factory=dict)
    risk_events: Dict[str, int] = field(default_factory=dict)
    final_breaker_state: str = "active"

    equity_curve: Optional[pd.Series] = None
    trades: Optional[pd.DataFrame] = None
    daily_pnl: Optional[pd.DataFrame] = None

    def summary(self) -> Dict:
        return {
            'symbols': self.symbols,
            'start_date': self.start_date.isoformat(),
            'end_date': self.end_date.isoformat(),
            'bars_processed': self.bars_processed,
            'initial_capital': self.initial_capital,
            'final_equity': self.final_equity,
            'total_return': self.total_return,
            'max_drawdown': self.max_drawdown,
            'total_trades': self.total_trades,
            'winning_trades': self.winning_trades,
            'win_rate': self.win_rate,
            'profit_factor': self.profit_factor,
            'avg_r_multiple': self.avg_r_multiple,
            'total_fees': self.total_fees,
            'signal_outcomes': self.signal_outcomes,
            'risk_events': self.risk_events,
            'final_breaker_state': self.final_breaker_state,
        }


class ReplayEngine:
    """
    Offline replay of recorded bars.

    Features:
    - Same pipeline as paper / live runs
    - Bars of all symbols interleaved in time order
    - Open positions closed at the last price when the data ends
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        inference: Optional[InferenceClient] = None,
        close_at_end: bool = True,
    ):
        """
        Args:
            settings: Account settings
            inference: Signal scorer (heuristic by default)
            close_at_end: Close open positions after the last bar
        """
        self.settings = settings or Settings()
        self.inference = inference
        self.close_at_end = close_at_end
        self._now: Optional[datetime] = None
        self.core: Optional[AccountCore] = None

    def _clock(self) -> datetime:
        return self._now

    def build_core(self, start: datetime) -> AccountCore:
        self._now = start
        self.core = AccountCore(self.settings, inference=self.inference, clock=self._clock)
        return self.core

    def run(self, bars: Dict[str, List[MarketBar]]) -> ReplayResult:
        """
        Replay bars of one or more symbols.

        Args:
            bars: Dict of symbol -> ordered base-timeframe bars

        Returns:
            ReplayResult
        """
        stream = sorted(
            (bar for symbol_bars in bars.values() for bar in symbol_bars),
            key=lambda b: (b.timestamp, b.symbol),
        )
        if not stream:
            raise ValueError("No bars to replay")

        core = self.build_core(stream[0].timestamp)
        outcomes = Counter()
        equity_points = {}

        logger.info(f"Replaying {len(stream):,} bars for {sorted(bars)} "
                    f"from {stream[0].timestamp} to {stream[-1].end}")

        for bar in stream:
            self._now = bar.end
            try:
                for outcome in core.on_bar(bar):
                    outcomes[outcome.outcome] += 1
            except TradingCoreError as e:
                logger.warning(f"{bar.symbol} {bar.timestamp}: [{e.kind}] {e.message}")
                continue
            equity_points[bar.end] = core.equity

        if self.close_at_end and core.positions.open_positions():
            core.close_all_positions("end of data")
            core.refresh_risk(self._now)
            equity_points[self._now] = core.equity

        equity_curve = pd.Series(equity_points, dtype=float).sort_index()
        return self._calculate_metrics(core, stream, equity_curve, outcomes)

    def _calculate_metrics(
        self,
        core: AccountCore,
        stream: List[MarketBar],
        equity_curve: pd.Series,
        outcomes: Counter,
    ) -> ReplayResult:
        """Calculate replay metrics."""
        initial = self.settings.pipeline.initial_capital
        final_equity = core.equity

        if len(equity_curve) > 0:
            cummax = equity_curve.cummax()
            max_drawdown = float(((equity_curve - cummax) / cummax).min())
        else:
            max_drawdown = 0.0

        trades = self.trades_frame(core)
        total_trades = len(trades)
        if total_trades > 0:
            winning = trades[trades['pnl'] > 0]
            losing = trades[trades['pnl'] <= 0]
            gross_loss = abs(losing['pnl'].sum())
            profit_factor = winning['pnl'].sum() / gross_loss if gross_loss > 0 else np.inf
            win_rate = len(winning) / total_trades
            avg_r = float(trades['r_multiple'].mean())
        else:
            winning = trades
            profit_factor = 0.0
            win_rate = 0.0
            avg_r = 0.0

        total_fees = sum(p.fees_paid for p in core.positions.all_positions())
        risk_events = Counter(e.event_type for e in core.event_log.events())

        daily = pd.DataFrame([d.to_dict() for d in core.ledger.history()])

        return ReplayResult(
            symbols=sorted({b.symbol for b in stream}),
            start_date=stream[0].timestamp,
            end_date=stream[-1].end,
            bars_processed=len(stream),
            initial_capital=initial,
            final_equity=final_equity,
            total_return=(final_equity - initial) / initial,
            max_drawdown=max_drawdown,
            total_trades=total_trades,
            winning_trades=len(winning),
            win_rate=win_rate,
            profit_factor=profit_factor,
            avg_r_multiple=avg_r,
            total_fees=total_fees,
            signal_outcomes=dict(outcomes),
            risk_events=dict(risk_events),
            final_breaker_state=core.breaker.state.value,
            equity_curve=equity_curve,
            trades=trades,
            daily_pnl=daily,
        )

    @staticmethod
    def trades_frame(core: AccountCore) -> pd.DataFrame:
        """Closed trades as a DataFrame."""
        columns = ['position_id', 'symbol', 'pnl', 'r_multiple', 'closed_at']
        rows = [
            {
                'position_id': t.position_id,
                'symbol': t.symbol,
                'pnl': t.pnl,
                'r_multiple': t.r_multiple,
                'closed_at': t.closed_at,
            }
            for t in core.positions.closed_trades
        ]
        return pd.DataFrame(rows, columns=columns)

    def save_results(self, result: ReplayResult, output_dir: str):
        """Save summary (JSON), trades and equity curve (CSV)."""
        out = Path(output_dir)
        out.mkdir(parents=True, exist_ok=True)

        with open(out / "replay_summary.json", 'w') as f:
            json.dump(result.summary(), f, indent=2, default=str)

        if result.trades is not None:
            result.trades.to_csv(out / "replay_trades.csv", index=False)
        if result.equity_curve is not None:
            result.equity_curve.rename('equity').to_csv(out / "replay_equity.csv", index_label='timestamp')
        if result.daily_pnl is not None:
            result.daily_pnl.to_csv(out / "replay_daily_pnl.csv", index=False)

        logger.info(f"Results saved to {out}")
