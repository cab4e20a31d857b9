#!/usr/bin/env python3
"""
Atlas Risk Core - Main Entry Point

Risk and execution control core for crypto spot accounts.

Usage:
    python main.py replay --csv data/btc_1m.csv --symbol BTCUSD
    python main.py size --symbol BTCUSD --price 65000 --stop 900
    python main.py action --json '{"action": "get_risk_status"}'
    python main.py run --csv data/btc_1m.csv --interval 60
    python main.py config --write config/settings.yaml
"""

import argparse
import json
import logging
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import Optional, Dict, List

import schedule

from config.settings import Settings, SettingsError
from src.backtest.replay import ReplayEngine
from src.data.bars import MarketBar, load_bars_csv
from src.errors import TradingCoreError
from src.execution.collaborators import InMemoryBarFeed, YamlSettingsStore, call_with_timeout
from src.monitoring.logging_module import (
    setup_logging,
    RiskEventCsvLogger,
    DecisionCsvLogger,
    DailyPnLCsvLogger,
)
from src.pipeline.account import AccountCore
from src.pipeline.actor import AccountActor
from src.pipeline.actions import ActionDispatcher


logger = logging.getLogger(__name__)


class RiskCoreSystem:
    """
    Main system orchestrator.

    Coordinates:
    - Settings loading and persistence
    - Account core, actor and action boundary
    - Offline replay and the paper polling loop
    - CSV audit logs
    """

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize system.

        Args:
            config_path: Path to YAML settings (defaults if missing)
        """
        self.config_path = config_path
        self.store = YamlSettingsStore(config_path) if config_path else None
        self.settings = self.store.load() if self.store else Settings()
        self.settings.paths.create_directories()

        self._core: Optional[AccountCore] = None
        self._actor: Optional[AccountActor] = None
        self._dispatcher: Optional[ActionDispatcher] = None

    @property
    def core(self) -> AccountCore:
        if self._core is None:
            self._core = AccountCore(self.settings, settings_store=self.store)
            self._attach_audit_logs(self._core)
        return self._core

    @property
    def dispatcher(self) -> ActionDispatcher:
        if self._dispatcher is None:
            self._dispatcher = ActionDispatcher(self.core, self._actor)
        return self._dispatcher

    def _attach_audit_logs(self, core: AccountCore):
        logs_dir = Path(self.settings.paths.logs_dir)
        core.event_log.add_listener(RiskEventCsvLogger(logs_dir / "risk_events.csv"))
        core.add_decision_listener(DecisionCsvLogger(logs_dir / "decisions.csv"))
        core.add_day_listener(DailyPnLCsvLogger(logs_dir / "daily_pnl.csv").log_day)

    # =========================================================================
    # COMMANDS
    # =========================================================================

    def run_replay(
        self,
        csv_path: str,
        symbol: Optional[str] = None,
        output_dir: Optional[str] = None,
    ) -> Dict:
        """
        Replay recorded base bars through the account pipeline.

        Args:
            csv_path: Recorded bars
            symbol: Symbol when the file has no symbol column
            output_dir: Where to write results (settings results_dir if None)

        Returns:
            Summary dict
        """
        bars = load_bars_csv(csv_path, symbol, self.settings.pipeline.base_timeframe)
        logger.info(f"Loaded {sum(len(b) for b in bars.values()):,} bars for {sorted(bars)}")

        engine = ReplayEngine(self.settings)
        result = engine.run(bars)
        engine.save_results(result, output_dir or self.settings.paths.results_dir)
        return result.summary()

    def dispatch(self, request: Dict) -> Dict:
        return self.dispatcher.dispatch(request)

    def run_paper(self, csv_path: str, symbol: Optional[str] = None, interval: Optional[int] = None):
        """
        Paper session over a recorded feed.

        Bars are released by the feed once closed and pushed through the
        account actor every interval seconds.

        Args:
            csv_path: Recorded bars backing the feed
            symbol: Symbol when the file has no symbol column
            interval: Seconds between polls (settings value if None)
        """
        pipeline = self.settings.pipeline
        interval = interval or pipeline.evaluation_interval_seconds

        feed = InMemoryBarFeed(load_bars_csv(csv_path, symbol, pipeline.base_timeframe))
        core = self.core
        self._actor = AccountActor(core, name="paper")
        self._dispatcher = None
        self._actor.start()

        cursors: Dict[str, Optional[datetime]] = {s: None for s in feed.symbols}

        def poll():
            for sym in feed.symbols:
                try:
                    new_bars: List[MarketBar] = call_with_timeout(
                        feed.fetch_bars,
                        sym,
                        pipeline.base_timeframe,
                        cursors[sym],
                        timeout=pipeline.market_data_timeout_seconds,
                        what=f"{sym} market data",
                    )
                except TradingCoreError as e:
                    logger.warning(f"{sym}: [{e.kind}] {e.message}")
                    continue

                for bar in new_bars:
                    try:
                        outcomes = self._actor.call(core.on_bar, bar)
                    except TradingCoreError as e:
                        logger.warning(f"{sym} {bar.timestamp}: [{e.kind}] {e.message}")
                        continue
                    finally:
                        cursors[sym] = bar.timestamp
                    for outcome in outcomes:
                        logger.info(f"{outcome.signal.symbol} {outcome.signal.side.value}: {outcome.outcome}")

            status = self._actor.call(core.risk_status)
            logger.info(f"Equity {status['equity']:,.2f} | Balance {status['balance']:,.2f} | "
                        f"Positions {len(status['open_positions'])} | "
                        f"Breaker {status['breaker']['state']}")

        schedule.every(interval).seconds.do(poll)

        print("\n" + "=" * 60)
        print("PAPER SESSION STARTED")
        print(f"Symbols: {', '.join(feed.symbols)} | Poll every {interval}s")
        print("Press Ctrl+C to stop")
        print("=" * 60 + "\n")

        try:
            poll()
            while True:
                schedule.run_pending()
                time.sleep(1)
        except KeyboardInterrupt:
            print("\nStopping...")
        finally:
            schedule.clear()
            self._actor.stop()
            print(json.dumps(core.risk_status()["daily_pnl"], indent=2, default=str))

    def shutdown(self):
        if self._actor is not None:
            self._actor.stop()
        logger.info("System shutdown complete")


def _print_json(payload):
    print(json.dumps(payload, indent=2, default=str))


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description='Atlas Risk Core - risk and execution control for crypto spot accounts'
    )
    parser.add_argument('--config', type=str, default=None, help='YAML settings file')
    parser.add_argument('--quiet', action='store_true', help='Console INFO only, no DEBUG in file log')

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    # Replay command
    replay_parser = subparsers.add_parser('replay', help='Replay recorded bars')
    replay_parser.add_argument('--csv', type=str, required=True, help='Recorded bars CSV')
    replay_parser.add_argument('--symbol', type=str, default=None, help='Symbol if CSV has none')
    replay_parser.add_argument('--output', type=str, default=None, help='Results directory')

    # Size command
    size_parser = subparsers.add_parser('size', help='Calculate a position size')
    size_parser.add_argument('--symbol', type=str, required=True)
    size_parser.add_argument('--price', type=float, required=True)
    size_parser.add_argument('--stop', type=float, required=True, help='Stop distance (price units)')
    size_parser.add_argument('--capital', type=float, default=None)
    size_parser.add_argument('--method', type=str, default=None,
                             help='fixed_percentage | volatility_adjusted | kelly | risk_parity')

    # Generic action command
    action_parser = subparsers.add_parser('action', help='Dispatch a tagged action')
    action_parser.add_argument('--json', type=str, required=True, help='Request JSON')

    # Paper session command
    run_parser = subparsers.add_parser('run', help='Run a paper session over a recorded feed')
    run_parser.add_argument('--csv', type=str, required=True, help='Recorded bars CSV')
    run_parser.add_argument('--symbol', type=str, default=None, help='Symbol if CSV has none')
    run_parser.add_argument('--interval', type=int, default=None, help='Poll interval (seconds)')

    # Config command
    config_parser = subparsers.add_parser('config', help='Show or write settings')
    config_parser.add_argument('--write', type=str, default=None, help='Write settings YAML here')

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    try:
        system = RiskCoreSystem(args.config)
    except SettingsError as e:
        print(f"Invalid settings: {e}")
        return 2

    setup_logging(system.settings.paths, verbose=not args.quiet)
    logger.info(f"Command: {args.command} | config: {args.config or 'defaults'}")

    try:
        if args.command == 'replay':
            summary = system.run_replay(args.csv, args.symbol, args.output)

            print("\n" + "=" * 60)
            print("REPLAY RESULTS")
            print("=" * 60)
            print(f"Bars:          {summary['bars_processed']:,}")
            print(f"Final Equity:  ${summary['final_equity']:,.2f}")
            print(f"Total Return:  {summary['total_return']:.2%}")
            print(f"Max Drawdown:  {summary['max_drawdown']:.2%}")
            print(f"Total Trades:  {summary['total_trades']}")
            print(f"Win Rate:      {summary['win_rate']:.1%}")
            print(f"Avg R:         {summary['avg_r_multiple']:.2f}")
            print(f"Breaker:       {summary['final_breaker_state']}")

        elif args.command == 'size':
            request = {
                'action': 'calculate_position_size',
                'symbol': args.symbol,
                'price': args.price,
                'stop_distance': args.stop,
                'capital': args.capital,
                'method': args.method,
            }
            response = system.dispatch(request)
            _print_json(response)
            return 0 if response['success'] else 1

        elif args.command == 'action':
            try:
                request = json.loads(args.json)
            except json.JSONDecodeError as e:
                print(f"Invalid JSON: {e}")
                return 2
            response = system.dispatch(request)
            _print_json(response)
            return 0 if response['success'] else 1

        elif args.command == 'run':
            system.run_paper(args.csv, args.symbol, args.interval)

        elif args.command == 'config':
            if args.write:
                system.settings.to_yaml(args.write)
                print(f"Settings written to {args.write}")
            else:
                ok, errors = system.settings.validate()
                _print_json(system.settings.to_dict())
                if not ok:
                    print("\nErrors:")
                    for error in errors:
                        print(f"  - {error}")
                    return 1

    except KeyboardInterrupt:
        print("\nInterrupted.")
    except TradingCoreError as e:
        logger.error(f"[{e.kind}] {e.message}")
        return 1
    finally:
        system.shutdown()

    return 0


if __name__ == '__main__':
    sys.exit(main())
