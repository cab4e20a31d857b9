"""
Logging & Monitoring Module

Audit trail:
- System log (console + file)
- Risk event log (CSV)
- Decision log (CSV): signals, ML gate decisions, orders, closes
- Daily P&L log (CSV)

All actions must be logged.
"""

import csv
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Dict, Any

from config.settings import PathSettings
from src.risk.events import RiskEvent
from src.risk.portfolio import DailyPnL


LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(message)s"
FILE_LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(paths: Optional[PathSettings] = None, verbose: bool = True) -> logging.Logger:
    """
    Configure system logging.

    Returns configured root logger.
    """
    paths = paths or PathSettings()
    logs_dir = Path(paths.logs_dir)
    logs_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger()
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)

    # Repeated setup must not duplicate output
    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))

    file_handler = logging.FileHandler(logs_dir / "system.log")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(FILE_LOG_FORMAT, datefmt=DATE_FORMAT))

    logger.addHandler(console_handler)
    logger.addHandler(file_handler)

    return logger


class _CsvLogger:
    """Append-only CSV file with a fixed header."""

    HEADERS = []

    def __init__(self, log_path: Path):
        self.log_path = Path(log_path)
        self._ensure_headers()

    def _ensure_headers(self) -> None:
        """Ensure CSV has headers."""
        if not self.log_path.exists():
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.log_path, 'w', newline='') as f:
                writer = csv.writer(f)
                writer.writerow(self.HEADERS)

    def _write_row(self, row: Dict) -> None:
        with open(self.log_path, 'a', newline='') as f:
            writer = csv.DictWriter(f, fieldnames=self.HEADERS)
            writer.writerow(row)


class RiskEventCsvLogger(_CsvLogger):
    """
    CSV logger for risk events.

    Callable, so it can be registered directly as a RiskEventLog listener.
    """

    HEADERS = [
        "created_at",
        "event_id",
        "event_type",
        "severity",
        "description",
        "actions",
        "triggered_by",
        "resolved_at",
    ]

    def __call__(self, event: RiskEvent) -> None:
        self.log_event(event)

    def log_event(self, event: RiskEvent) -> None:
        row = {
            "created_at": event.created_at.isoformat(),
            "event_id": event.id,
            "event_type": event.event_type,
            "severity": event.severity.value,
            "description": event.description,
            "actions": "|".join(event.actions_taken),
            "triggered_by": json.dumps(event.triggered_by, default=str),
            "resolved_at": event.resolved_at.isoformat() if event.resolved_at else "",
        }
        self._write_row(row)


class DecisionCsvLogger(_CsvLogger):
    """
    CSV logger for the decision pipeline.

    One row per signal, ML decision, order outcome or close; the full
    record goes to the payload column as JSON.
    """

    HEADERS = [
        "timestamp",
        "record_type",      # SIGNAL, ML_DECISION, ORDER, CLOSE
        "symbol",
        "reference",
        "outcome",
        "payload",
    ]

    def __call__(self, record_type: str, payload: Dict[str, Any]) -> None:
        self.log(record_type, payload)

    def log(self, record_type: str, payload: Dict[str, Any]) -> None:
        row = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "record_type": record_type,
            "symbol": payload.get("symbol", ""),
            "reference": payload.get("signal_id") or payload.get("id") or "",
            "outcome": payload.get("outcome", ""),
            "payload": json.dumps(payload, default=str),
        }
        self._write_row(row)


class DailyPnLCsvLogger(_CsvLogger):
    """CSV logger for frozen DailyPnL rows."""

    HEADERS = [
        "date",
        "starting_balance",
        "ending_balance",
        "realized_pnl",
        "unrealized_pnl",
        "total_trades",
        "winning_trades",
        "risk_used",
        "max_drawdown",
    ]

    def log_day(self, day: DailyPnL) -> None:
        row = day.to_dict()
        for key in ("starting_balance", "ending_balance", "realized_pnl",
                    "unrealized_pnl", "risk_used"):
            row[key] = f"{row[key]:.2f}"
        row["max_drawdown"] = f"{row['max_drawdown']:.4f}"
        self._write_row(row)
