"""
Market bars and multi-timeframe aggregation.

Handles:
- The immutable MarketBar record
- Aggregation of base bars (1m) into completed higher-timeframe bars
- Loading recorded bars from CSV
"""

import math
import logging
from dataclasses import dataclass, asdict
from datetime import datetime, timezone, timedelta
from typing import Optional, List, Dict, Tuple, Iterable

import pandas as pd

from config.settings import Timeframe
from src.errors import InvalidInputs, StaleData


logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def ensure_utc(ts: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def period_start(ts: datetime, timeframe: Timeframe) -> datetime:
    """Start of the timeframe period containing ts, aligned to the UTC epoch."""
    minutes = int((ensure_utc(ts) - EPOCH).total_seconds() // 60)
    aligned = minutes - minutes % timeframe.to_minutes()
    return EPOCH + timedelta(minutes=aligned)


@dataclass(frozen=True)
class MarketBar:
    """One OHLCV bar. The timestamp is the bar's open time (UTC)."""
    symbol: str
    timeframe: Timeframe
    open: float
    high: float
    low: float
    close: float
    volume: float
    timestamp: datetime

    def __post_init__(self):
        if isinstance(self.timeframe, str):
            object.__setattr__(self, 'timeframe', Timeframe(self.timeframe))
        object.__setattr__(self, 'timestamp', ensure_utc(self.timestamp))

        prices = (self.open, self.high, self.low, self.close, self.volume)
        if not all(math.isfinite(p) for p in prices):
            raise InvalidInputs(f"{self.symbol}: non-finite bar values")
        if self.low > min(self.open, self.close) or self.high < max(self.open, self.close):
            raise InvalidInputs(
                f"{self.symbol}: inconsistent bar "
                f"O={self.open} H={self.high} L={self.low} C={self.close}"
            )
        if self.low <= 0:
            raise InvalidInputs(f"{self.symbol}: prices must be positive")
        if self.volume < 0:
            raise InvalidInputs(f"{self.symbol}: negative volume")

    @property
    def end(self) -> datetime:
        return self.timestamp + self.timeframe.to_timedelta()

    def to_dict(self) -> Dict:
        data = asdict(self)
        data['timeframe'] = self.timeframe.value
        data['timestamp'] = self.timestamp.isoformat()
        return data


class _PartialBar:
    """Accumulates base bars for one higher-timeframe period."""

    def __init__(self, bar: MarketBar, timeframe: Timeframe):
        self.start = period_start(bar.timestamp, timeframe)
        self.timeframe = timeframe
        self.symbol = bar.symbol
        self.open = bar.open
        self.high = bar.high
        self.low = bar.low
        self.close = bar.close
        self.volume = bar.volume

    @property
    def end(self) -> datetime:
        return self.start + self.timeframe.to_timedelta()

    def add(self, bar: MarketBar):
        self.high = max(self.high, bar.high)
        self.low = min(self.low, bar.low)
        self.close = bar.close
        self.volume += bar.volume

    def to_bar(self) -> MarketBar:
        return MarketBar(
            symbol=self.symbol,
            timeframe=self.timeframe,
            open=self.open,
            high=self.high,
            low=self.low,
            close=self.close,
            volume=self.volume,
            timestamp=self.start,
        )


class BarAggregator:
    """
    Builds higher-timeframe bars from a base-timeframe stream.

    A higher-timeframe bar is emitted only once its period is complete:
    when the last base bar of the period arrives, when the first base bar
    of a later period arrives, or when flush() is called past its end.
    """

    def __init__(
        self,
        base_timeframe: Timeframe = Timeframe.M1,
        targets: Iterable[Timeframe] = (Timeframe.M15, Timeframe.H1, Timeframe.H4),
    ):
        self.base_timeframe = base_timeframe
        self.targets = [tf for tf in targets if tf != base_timeframe]

        for tf in self.targets:
            if tf.to_minutes() % base_timeframe.to_minutes() != 0:
                raise InvalidInputs(
                    f"{tf.value} is not a multiple of {base_timeframe.value}"
                )

        self._partials: Dict[Tuple[str, Timeframe], _PartialBar] = {}
        self._last_seen: Dict[str, datetime] = {}

    def add(self, bar: MarketBar) -> List[MarketBar]:
        """
        Feed one base bar.

        Returns:
            Completed higher-timeframe bars, shortest timeframe first
        """
        if bar.timeframe != self.base_timeframe:
            raise InvalidInputs(
                f"Expected {self.base_timeframe.value} bars, got {bar.timeframe.value}"
            )

        last = self._last_seen.get(bar.symbol)
        if last is not None and bar.timestamp <= last:
            raise StaleData(
                f"{bar.symbol}: bar at {bar.timestamp} is not after {last}"
            )
        self._last_seen[bar.symbol] = bar.timestamp

        completed = []
        for tf in self.targets:
            key = (bar.symbol, tf)
            partial = self._partials.get(key)

            if partial is not None and period_start(bar.timestamp, tf) != partial.start:
                # Gap in the stream: the old period can no longer grow
                completed.append(partial.to_bar())
                partial = None

            if partial is None:
                partial = _PartialBar(bar, tf)
                self._partials[key] = partial
            else:
                partial.add(bar)

            if bar.end >= partial.end:
                completed.append(partial.to_bar())
                del self._partials[key]

        return completed

    def flush(self, now: datetime) -> List[MarketBar]:
        """Emit partial bars whose period ended at or before now."""
        now = ensure_utc(now)
        completed = []
        for key in list(self._partials):
            partial = self._partials[key]
            if partial.end <= now:
                completed.append(partial.to_bar())
                del self._partials[key]
        return completed


def bars_to_frame(bars: List[MarketBar]) -> pd.DataFrame:
    """Convert bars of one stream to an OHLCV DataFrame indexed by timestamp."""
    if not bars:
        return pd.DataFrame(columns=['open', 'high', 'low', 'close', 'volume'])

    df = pd.DataFrame(
        {
            'open': [b.open for b in bars],
            'high': [b.high for b in bars],
            'low': [b.low for b in bars],
            'close': [b.close for b in bars],
            'volume': [b.volume for b in bars],
        },
        index=pd.DatetimeIndex([b.timestamp for b in bars], name='timestamp'),
    )
    return df


def load_bars_csv(
    path: str,
    symbol: Optional[str] = None,
    timeframe: Timeframe = Timeframe.M1,
) -> Dict[str, List[MarketBar]]:
    """
    Load recorded bars from a CSV file.

    Expected columns: timestamp, open, high, low, close, volume and,
    optionally, symbol. Rows are sorted by timestamp per symbol.

    Args:
        path: CSV file path
        symbol: Symbol to use when the file has no symbol column
        timeframe: Timeframe of the recorded bars

    Returns:
        Dict of symbol -> ordered bars
    """
    df = pd.read_csv(path)
    df.columns = [c.strip().lower() for c in df.columns]

    required = {'timestamp', 'open', 'high', 'low', 'close', 'volume'}
    missing = required - set(df.columns)
    if missing:
        raise InvalidInputs(f"{path}: missing columns {sorted(missing)}")

    if 'symbol' not in df.columns:
        if symbol is None:
            raise InvalidInputs(f"{path}: no symbol column and no symbol given")
        df['symbol'] = symbol

    df['timestamp'] = pd.to_datetime(df['timestamp'], utc=True)
    df = df.dropna(subset=list(required))
    df = df.sort_values(['symbol', 'timestamp']).drop_duplicates(['symbol', 'timestamp'])

    result: Dict[str, List[MarketBar]] = {}
    skipped = 0
    for sym, group in df.groupby('symbol', sort=True):
        bars = []
        for row in group.itertuples(index=False):
            try:
                bars.append(MarketBar(
                    symbol=str(sym),
                    timeframe=timeframe,
                    open=float(row.open),
                    high=float(row.high),
                    low=float(row.low),
                    close=float(row.close),
                    volume=float(row.volume),
                    timestamp=row.timestamp.to_pydatetime(),
                ))
            except InvalidInputs as e:
                skipped += 1
                logger.debug(f"Skipping bar: {e}")
        result[str(sym)] = bars

    if skipped:
        logger.warning(f"{path}: skipped {skipped} invalid rows")

    logger.info(f"Loaded {sum(len(b) for b in result.values())} bars "
                f"for {len(result)} symbols from {path}")
    return result
