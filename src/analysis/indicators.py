"""
Technical indicators - incremental engine and batch computation.

IndicatorEngine updates ADX, ATR, RSI, EMAs, SMAs, MACD and Bollinger
bands in constant time per bar. compute_indicator_frame() produces the
same values over a full history with pandas, and is what replays are
checked against.

Conventions:
    - EMAs (and Wilder smoothing, alpha = 1/n) are seeded with the simple
      mean of their first n inputs
    - True range, directional movement and RSI changes start at the
      second bar
    - Bollinger sigma is the population standard deviation
    - Volume statistics and support/resistance use the previous bars only
"""

import math
import logging
from collections import deque
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Optional, Dict, Tuple

import numpy as np
import pandas as pd

from config.settings import IndicatorSettings, Timeframe
from src.data.bars import MarketBar
from src.errors import InsufficientHistory, StaleData


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IndicatorSet:
    """Indicator values for one completed bar."""
    symbol: str
    timeframe: Timeframe
    timestamp: datetime

    # Bar
    open: float
    high: float
    low: float
    close: float
    volume: float

    # Trend strength / volatility / momentum
    adx: float
    plus_di: float
    minus_di: float
    atr: float
    rsi: float

    # Moving averages
    ema_fast: float
    ema_slow: float
    ema_50: float
    ema_200: float
    sma_mid: float
    sma_long: float

    # MACD
    macd: float
    macd_signal: float
    macd_hist: float

    # Bollinger
    bb_upper: float
    bb_middle: float
    bb_lower: float
    bb_width: float
    bb_percent_b: float
    bb_width_median: float

    # Volume and levels (previous bars)
    volume_mean: float
    volume_std: float
    support: float
    resistance: float

    # Previous bar
    prev_close: float
    prev_volume: float
    prev_ema_fast: float
    prev_ema_slow: float
    prev_macd: float
    prev_macd_signal: float
    prev_macd_hist: float

    @property
    def atr_pct(self) -> float:
        return self.atr / self.close

    @property
    def ema_distance_pct(self) -> float:
        return abs(self.ema_50 - self.ema_200) / self.close

    @property
    def volume_zscore(self) -> float:
        if self.volume_std <= 0:
            return 0.0
        return (self.volume - self.volume_mean) / self.volume_std

    @property
    def macd_hist_delta(self) -> float:
        return self.macd_hist - self.prev_macd_hist

    def to_dict(self) -> Dict:
        data = asdict(self)
        data['timeframe'] = self.timeframe.value
        data['timestamp'] = self.timestamp.isoformat()
        data['atr_pct'] = self.atr_pct
        data['ema_distance_pct'] = self.ema_distance_pct
        data['volume_zscore'] = self.volume_zscore
        return data


# =============================================================================
# INCREMENTAL BUILDING BLOCKS
# =============================================================================

class _SeededEMA:
    """Exponential average seeded with the simple mean of its first n inputs."""

    __slots__ = ('period', 'alpha', 'value', '_seed_sum', '_count')

    def __init__(self, period: int, alpha: Optional[float] = None):
        self.period = period
        self.alpha = 2.0 / (period + 1) if alpha is None else alpha
        self.value: Optional[float] = None
        self._seed_sum = 0.0
        self._count = 0

    def update(self, x: Optional[float]) -> Optional[float]:
        if x is None:
            return self.value
        if self.value is None:
            self._seed_sum += x
            self._count += 1
            if self._count == self.period:
                self.value = self._seed_sum / self.period
        else:
            self.value = self.alpha * x + (1.0 - self.alpha) * self.value
        return self.value


class _Wilder(_SeededEMA):
    """Wilder smoothing (RMA)."""

    def __init__(self, period: int):
        super().__init__(period, alpha=1.0 / period)


class _Window:
    """Fixed-size window with a running sum."""

    __slots__ = ('size', '_values', '_sum')

    def __init__(self, size: int):
        self.size = size
        self._values = deque(maxlen=size)
        self._sum = 0.0

    def push(self, x: float):
        if len(self._values) == self.size:
            self._sum -= self._values[0]
        self._values.append(x)
        self._sum += x

    @property
    def full(self) -> bool:
        return len(self._values) == self.size

    @property
    def mean(self) -> Optional[float]:
        return self._sum / self.size if self.full else None

    def array(self) -> np.ndarray:
        return np.fromiter(self._values, dtype=float, count=len(self._values))


class _StreamState:
    """Rolling state for one (symbol, timeframe) stream."""

    def __init__(self, settings: IndicatorSettings):
        s = settings
        self.settings = settings
        self.count = 0
        self.last_timestamp: Optional[datetime] = None

        self.prev_high: Optional[float] = None
        self.prev_low: Optional[float] = None
        self.prev_close: Optional[float] = None
        self.prev_volume: Optional[float] = None

        self.ema_fast = _SeededEMA(s.ema_fast)
        self.ema_slow = _SeededEMA(s.ema_slow)
        self.ema_50 = _SeededEMA(s.ema_regime_fast)
        self.ema_200 = _SeededEMA(s.ema_regime_slow)
        self.sma_mid = _Window(s.sma_mid)
        self.sma_long = _Window(s.sma_long)

        self.macd_fast = _SeededEMA(s.macd_fast)
        self.macd_slow = _SeededEMA(s.macd_slow)
        self.macd_signal = _SeededEMA(s.macd_signal)

        self.atr = _Wilder(s.atr_period)
        self.rsi_gain = _Wilder(s.rsi_period)
        self.rsi_loss = _Wilder(s.rsi_period)

        self.adx_tr = _Wilder(s.adx_period)
        self.adx_plus_dm = _Wilder(s.adx_period)
        self.adx_minus_dm = _Wilder(s.adx_period)
        self.adx = _Wilder(s.adx_period)

        self.bb = _Window(s.bb_period)
        self.bb_widths = _Window(s.bb_width_median_window)

        self.volumes = _Window(s.volume_window)
        self.lows = _Window(s.sr_window)
        self.highs = _Window(s.sr_window)

        # Previous-bar values of derived series
        self.last_ema_fast: Optional[float] = None
        self.last_ema_slow: Optional[float] = None
        self.last_macd: Optional[float] = None
        self.last_macd_signal: Optional[float] = None
        self.last_macd_hist: Optional[float] = None

        self.current: Optional[IndicatorSet] = None

    def update(self, bar: MarketBar) -> Optional[IndicatorSet]:
        s = self.settings
        h, l, c, v = bar.high, bar.low, bar.close, bar.volume

        # Values over previous bars are read before this bar is pushed
        volume_mean = self.volumes.mean
        volume_std = float(np.std(self.volumes.array())) if self.volumes.full else None
        support = float(min(self.lows.array())) if self.lows.full else None
        resistance = float(max(self.highs.array())) if self.highs.full else None

        # True range and directional movement
        tr = plus_dm = minus_dm = gain = loss = None
        if self.prev_close is not None:
            tr = max(h - l, abs(h - self.prev_close), abs(l - self.prev_close))
            up = h - self.prev_high
            down = self.prev_low - l
            plus_dm = up if (up > down and up > 0) else 0.0
            minus_dm = down if (down > up and down > 0) else 0.0
            change = c - self.prev_close
            gain = max(change, 0.0)
            loss = max(-change, 0.0)

        atr = self.atr.update(tr)

        avg_gain = self.rsi_gain.update(gain)
        avg_loss = self.rsi_loss.update(loss)
        rsi = None
        if avg_gain is not None and avg_loss is not None:
            rsi = _rsi_value(avg_gain, avg_loss)

        sm_tr = self.adx_tr.update(tr)
        sm_plus = self.adx_plus_dm.update(plus_dm)
        sm_minus = self.adx_minus_dm.update(minus_dm)
        plus_di = minus_di = dx = None
        if sm_tr is not None and sm_plus is not None and sm_minus is not None:
            plus_di, minus_di = _di_values(sm_plus, sm_minus, sm_tr)
            dx = _dx_value(plus_di, minus_di)
        adx = self.adx.update(dx)

        ema_fast = self.ema_fast.update(c)
        ema_slow = self.ema_slow.update(c)
        ema_50 = self.ema_50.update(c)
        ema_200 = self.ema_200.update(c)
        self.sma_mid.push(c)
        self.sma_long.push(c)

        fast = self.macd_fast.update(c)
        slow = self.macd_slow.update(c)
        macd = fast - slow if (fast is not None and slow is not None) else None
        macd_signal = self.macd_signal.update(macd)
        macd_hist = macd - macd_signal if (macd is not None and macd_signal is not None) else None

        self.bb.push(c)
        bb_middle = bb_upper = bb_lower = bb_width = bb_percent_b = bb_width_median = None
        if self.bb.full:
            bb_middle = self.bb.mean
            sigma = float(np.std(self.bb.array()))
            bb_upper = bb_middle + s.bb_std * sigma
            bb_lower = bb_middle - s.bb_std * sigma
            bb_width = (bb_upper - bb_lower) / bb_middle
            bb_percent_b = _percent_b(c, bb_upper, bb_lower)
            self.bb_widths.push(bb_width)
            if self.bb_widths.full:
                bb_width_median = float(np.median(self.bb_widths.array()))

        values = dict(
            adx=adx, plus_di=plus_di, minus_di=minus_di, atr=atr, rsi=rsi,
            ema_fast=ema_fast, ema_slow=ema_slow, ema_50=ema_50, ema_200=ema_200,
            sma_mid=self.sma_mid.mean, sma_long=self.sma_long.mean,
            macd=macd, macd_signal=macd_signal, macd_hist=macd_hist,
            bb_upper=bb_upper, bb_middle=bb_middle, bb_lower=bb_lower,
            bb_width=bb_width, bb_percent_b=bb_percent_b,
            bb_width_median=bb_width_median,
            volume_mean=volume_mean, volume_std=volume_std,
            support=support, resistance=resistance,
            prev_close=self.prev_close, prev_volume=self.prev_volume,
            prev_ema_fast=self.last_ema_fast, prev_ema_slow=self.last_ema_slow,
            prev_macd=self.last_macd, prev_macd_signal=self.last_macd_signal,
            prev_macd_hist=self.last_macd_hist,
        )

        self.count += 1
        self.last_timestamp = bar.timestamp

        if self.count >= s.warmup_bars and all(x is not None for x in values.values()):
            self.current = IndicatorSet(
                symbol=bar.symbol,
                timeframe=bar.timeframe,
                timestamp=bar.timestamp,
                open=bar.open,
                high=h,
                low=l,
                close=c,
                volume=v,
                **values,
            )
        else:
            self.current = None

        # Roll previous-bar state
        self.volumes.push(v)
        self.lows.push(l)
        self.highs.push(h)
        self.prev_high, self.prev_low = h, l
        self.prev_close, self.prev_volume = c, v
        self.last_ema_fast, self.last_ema_slow = ema_fast, ema_slow
        self.last_macd, self.last_macd_signal, self.last_macd_hist = macd, macd_signal, macd_hist

        return self.current


def _rsi_value(avg_gain: float, avg_loss: float) -> float:
    if avg_loss == 0:
        return 100.0 if avg_gain > 0 else 50.0
    return 100.0 - 100.0 / (1.0 + avg_gain / avg_loss)


def _di_values(sm_plus: float, sm_minus: float, sm_tr: float) -> Tuple[float, float]:
    if sm_tr == 0:
        return 0.0, 0.0
    return 100.0 * sm_plus / sm_tr, 100.0 * sm_minus / sm_tr


def _dx_value(plus_di: float, minus_di: float) -> float:
    total = plus_di + minus_di
    if total == 0:
        return 0.0
    return 100.0 * abs(plus_di - minus_di) / total


def _percent_b(close: float, upper: float, lower: float) -> float:
    if upper == lower:
        return 0.5
    return (close - lower) / (upper - lower)


# =============================================================================
# ENGINE
# =============================================================================

class IndicatorEngine:
    """
    Incremental indicator computation for many (symbol, timeframe) streams.

    Usage:
        engine = IndicatorEngine(settings.indicators)
        engine.update(bar)
        indicators = engine.current(bar.symbol, bar.timeframe)
    """

    def __init__(self, settings: Optional[IndicatorSettings] = None):
        self.settings = settings or IndicatorSettings()
        self._streams: Dict[Tuple[str, Timeframe], _StreamState] = {}

    @property
    def warmup_bars(self) -> int:
        return self.settings.warmup_bars

    def update(self, bar: MarketBar) -> Optional[IndicatorSet]:
        """
        Feed one completed bar.

        Returns:
            IndicatorSet for the bar, or None while warming up

        Raises:
            StaleData: bar is not strictly after the previous bar of its stream
        """
        key = (bar.symbol, bar.timeframe)
        stream = self._streams.get(key)
        if stream is None:
            stream = _StreamState(self.settings)
            self._streams[key] = stream

        if stream.last_timestamp is not None and bar.timestamp <= stream.last_timestamp:
            raise StaleData(
                f"{bar.symbol} {bar.timeframe.value}: bar at {bar.timestamp} "
                f"is not after {stream.last_timestamp}"
            )

        return stream.update(bar)

    def current(self, symbol: str, timeframe: Timeframe) -> IndicatorSet:
        """
        Latest IndicatorSet of a stream.

        Raises:
            InsufficientHistory: fewer bars than the largest window
        """
        stream = self._streams.get((symbol, timeframe))
        if stream is None or stream.current is None:
            have = stream.count if stream is not None else 0
            raise InsufficientHistory(
                f"{symbol} {timeframe.value}: {have} bars, need {self.warmup_bars}",
                details={'bars': have, 'required': self.warmup_bars},
            )
        return stream.current

    def bars_seen(self, symbol: str, timeframe: Timeframe) -> int:
        stream = self._streams.get((symbol, timeframe))
        return stream.count if stream is not None else 0

    def is_ready(self, symbol: str, timeframe: Timeframe) -> bool:
        stream = self._streams.get((symbol, timeframe))
        return stream is not None and stream.current is not None


# =============================================================================
# BATCH COMPUTATION
# =============================================================================

def seeded_ewm(series: pd.Series, period: int, alpha: float) -> pd.Series:
    """
    EMA seeded with the mean of the first `period` valid values.

    Args:
        series: Input series (leading NaNs allowed)
        period: Seed window
        alpha: Smoothing factor

    Returns:
        Smoothed series, NaN before the seed
    """
    valid = np.flatnonzero(series.notna().to_numpy())
    if len(valid) < period:
        return pd.Series(np.nan, index=series.index)

    first = valid[0]
    seed_at = first + period - 1

    seeded = series.astype(float).copy()
    seeded.iloc[:seed_at] = np.nan
    seeded.iloc[seed_at] = series.iloc[first:seed_at + 1].mean()
    return seeded.ewm(alpha=alpha, adjust=False).mean()


def calculate_ema(series: pd.Series, period: int) -> pd.Series:
    return seeded_ewm(series, period, 2.0 / (period + 1))


def calculate_wilder(series: pd.Series, period: int) -> pd.Series:
    return seeded_ewm(series, period, 1.0 / period)


def calculate_true_range(df: pd.DataFrame) -> pd.Series:
    prev_close = df['close'].shift(1)
    tr = pd.concat([
        df['high'] - df['low'],
        (df['high'] - prev_close).abs(),
        (df['low'] - prev_close).abs(),
    ], axis=1).max(axis=1)
    tr[prev_close.isna()] = np.nan
    return tr


def calculate_rsi(close: pd.Series, period: int) -> pd.Series:
    change = close.diff()
    avg_gain = calculate_wilder(change.clip(lower=0), period)
    avg_loss = calculate_wilder((-change).clip(lower=0), period)

    with np.errstate(divide='ignore', invalid='ignore'):
        rsi = 100.0 - 100.0 / (1.0 + avg_gain / avg_loss)
    rsi = rsi.where(avg_loss != 0, np.where(avg_gain > 0, 100.0, 50.0))
    return rsi.where(avg_gain.notna() & avg_loss.notna())


def calculate_adx(df: pd.DataFrame, period: int) -> pd.DataFrame:
    """ADX with +DI / -DI."""
    up = df['high'].diff()
    down = -df['low'].diff()

    plus_dm = pd.Series(np.where((up > down) & (up > 0), up, 0.0), index=df.index)
    minus_dm = pd.Series(np.where((down > up) & (down > 0), down, 0.0), index=df.index)
    plus_dm[up.isna()] = np.nan
    minus_dm[up.isna()] = np.nan

    sm_tr = calculate_wilder(calculate_true_range(df), period)
    sm_plus = calculate_wilder(plus_dm, period)
    sm_minus = calculate_wilder(minus_dm, period)

    with np.errstate(divide='ignore', invalid='ignore'):
        plus_di = (100.0 * sm_plus / sm_tr).where(sm_tr != 0, 0.0)
        minus_di = (100.0 * sm_minus / sm_tr).where(sm_tr != 0, 0.0)
        di_sum = plus_di + minus_di
        dx = (100.0 * (plus_di - minus_di).abs() / di_sum).where(di_sum != 0, 0.0)

    valid = sm_tr.notna()
    plus_di = plus_di.where(valid)
    minus_di = minus_di.where(valid)
    dx = dx.where(valid)

    return pd.DataFrame({
        'adx': calculate_wilder(dx, period),
        'plus_di': plus_di,
        'minus_di': minus_di,
    })


def compute_indicator_frame(
    df: pd.DataFrame,
    settings: Optional[IndicatorSettings] = None,
) -> pd.DataFrame:
    """
    Compute every IndicatorSet column over a full OHLCV history.

    Args:
        df: DataFrame with open, high, low, close, volume columns, in time order
        settings: Indicator windows

    Returns:
        DataFrame with one column per IndicatorSet field; rows before the
        warm-up are NaN
    """
    s = settings or IndicatorSettings()
    close = df['close'].astype(float)
    volume = df['volume'].astype(float)

    out = pd.DataFrame(index=df.index)
    for col in ('open', 'high', 'low', 'close', 'volume'):
        out[col] = df[col].astype(float)

    adx = calculate_adx(df, s.adx_period)
    out['adx'] = adx['adx']
    out['plus_di'] = adx['plus_di']
    out['minus_di'] = adx['minus_di']
    out['atr'] = calculate_wilder(calculate_true_range(df), s.atr_period)
    out['rsi'] = calculate_rsi(close, s.rsi_period)

    out['ema_fast'] = calculate_ema(close, s.ema_fast)
    out['ema_slow'] = calculate_ema(close, s.ema_slow)
    out['ema_50'] = calculate_ema(close, s.ema_regime_fast)
    out['ema_200'] = calculate_ema(close, s.ema_regime_slow)
    out['sma_mid'] = close.rolling(s.sma_mid).mean()
    out['sma_long'] = close.rolling(s.sma_long).mean()

    macd = calculate_ema(close, s.macd_fast) - calculate_ema(close, s.macd_slow)
    out['macd'] = macd
    out['macd_signal'] = calculate_ema(macd, s.macd_signal)
    out['macd_hist'] = out['macd'] - out['macd_signal']

    middle = close.rolling(s.bb_period).mean()
    sigma = close.rolling(s.bb_period).std(ddof=0)
    out['bb_upper'] = middle + s.bb_std * sigma
    out['bb_middle'] = middle
    out['bb_lower'] = middle - s.bb_std * sigma
    out['bb_width'] = (out['bb_upper'] - out['bb_lower']) / middle
    band = out['bb_upper'] - out['bb_lower']
    out['bb_percent_b'] = ((close - out['bb_lower']) / band).where(band != 0, 0.5)
    out['bb_percent_b'] = out['bb_percent_b'].where(middle.notna())
    out['bb_width_median'] = out['bb_width'].rolling(s.bb_width_median_window).median()

    out['volume_mean'] = volume.rolling(s.volume_window).mean().shift(1)
    out['volume_std'] = volume.rolling(s.volume_window).std(ddof=0).shift(1)
    out['support'] = df['low'].astype(float).rolling(s.sr_window).min().shift(1)
    out['resistance'] = df['high'].astype(float).rolling(s.sr_window).max().shift(1)

    out['prev_close'] = close.shift(1)
    out['prev_volume'] = volume.shift(1)
    for col in ('ema_fast', 'ema_slow', 'macd', 'macd_signal', 'macd_hist'):
        out[f'prev_{col}'] = out[col].shift(1)

    # Nothing is defined before the largest window is filled
    if s.warmup_bars > 1:
        out.iloc[:s.warmup_bars - 1, 5:] = np.nan

    return out


def indicator_set_from_row(
    symbol: str,
    timeframe: Timeframe,
    timestamp: datetime,
    row: pd.Series,
) -> IndicatorSet:
    """Build an IndicatorSet from one compute_indicator_frame() row."""
    values = {}
    for name in IndicatorSet.__dataclass_fields__:
        if name in ('symbol', 'timeframe', 'timestamp'):
            continue
        value = float(row[name])
        if math.isnan(value):
            raise InsufficientHistory(f"{symbol}: {name} undefined at {timestamp}")
        values[name] = value
    return IndicatorSet(symbol=symbol, timeframe=timeframe, timestamp=timestamp, **values)
