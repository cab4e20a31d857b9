"""
Settings and Configuration for the Atlas Risk Core.

Centralized configuration management using dataclasses and YAML support.
RiskSettings is the single active per-account risk configuration; it is
frozen and only ever replaced as a whole.
"""

import math
from dataclasses import dataclass, field, asdict, fields, replace
from datetime import timedelta
from typing import List, Tuple, Dict, Any
from enum import Enum
from pathlib import Path
import yaml


class SettingsError(ValueError):
    """Raised when a settings file or section cannot be parsed."""
    pass


class TradingMode(Enum):
    """Trading mode enumeration."""
    BACKTEST = "backtest"
    PAPER = "paper"
    LIVE = "live"


class Timeframe(Enum):
    """Supported timeframes."""
    M1 = "M1"
    M5 = "M5"
    M15 = "M15"
    M30 = "M30"
    H1 = "H1"
    H4 = "H4"
    D1 = "D1"

    def to_minutes(self) -> int:
        """Convert timeframe to minutes."""
        mapping = {
            'M1': 1, 'M5': 5, 'M15': 15, 'M30': 30,
            'H1': 60, 'H4': 240, 'D1': 1440
        }
        return mapping[self.value]

    def to_timedelta(self) -> timedelta:
        return timedelta(minutes=self.to_minutes())


class SizingMethod(Enum):
    """Position sizing methods."""
    FIXED_PERCENTAGE = "fixed_percentage"
    KELLY = "kelly"
    VOLATILITY_ADJUSTED = "volatility_adjusted"
    RISK_PARITY = "risk_parity"


@dataclass(frozen=True)
class RiskSettings:
    """
    Per-account risk limits.

    Fractions are of account equity; max_daily_loss is in account currency.
    """

    max_daily_loss: float = 500.0             # Currency loss that pauses trading
    max_position_size: float = 0.10           # 10% of equity per position
    max_portfolio_risk: float = 0.05          # 5% of equity at risk in total
    max_symbol_exposure: float = 0.20         # 20% notional per symbol
    max_correlation_exposure: float = 0.30    # 30% notional per correlated group
    circuit_breaker_enabled: bool = True
    circuit_breaker_threshold: float = 0.03   # Drawdown from reference high
    position_sizing_method: str = "kelly"

    # Per-trade
    risk_per_trade: float = 0.005             # 0.5% of equity
    max_positions: int = 4

    # Breaker behaviour
    pause_hours: float = 12.0                 # Daily loss cool-down
    volatility_spike_threshold: float = 0.05  # ATR / price
    correlation_threshold: float = 0.80       # Returns correlation to group symbols

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RiskSettings':
        """
        Build from a mapping, rejecting unknown keys and mistyped values.

        Integers are accepted for float fields; nothing else is converted.
        """
        known = {f.name: f.type for f in fields(cls)}
        unknown = set(data) - set(known)
        if unknown:
            raise SettingsError(f"Unknown risk settings: {sorted(unknown)}")

        values = {}
        for name, value in data.items():
            expected = known[name]
            if expected is float:
                ok = isinstance(value, (int, float)) and not isinstance(value, bool)
                if ok:
                    value = float(value)
                    ok = math.isfinite(value)
            elif expected is int:
                ok = isinstance(value, int) and not isinstance(value, bool)
            else:
                ok = isinstance(value, expected)
            if not ok:
                raise SettingsError(f"{name} must be a {expected.__name__}, got {value!r}")
            values[name] = value
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @property
    def sizing_method(self) -> SizingMethod:
        return SizingMethod(self.position_sizing_method)

    @property
    def pause_duration(self) -> timedelta:
        return timedelta(hours=self.pause_hours)

    def validate(self) -> List[str]:
        """Return a list of problems; empty when valid."""
        errors = []

        if self.max_daily_loss <= 0:
            errors.append("max_daily_loss must be > 0")

        for name in ("max_position_size", "max_portfolio_risk",
                     "max_symbol_exposure", "max_correlation_exposure",
                     "circuit_breaker_threshold", "risk_per_trade"):
            value = getattr(self, name)
            if not 0 < value <= 1:
                errors.append(f"{name} must be in (0, 1]")

        if self.max_positions < 1:
            errors.append("max_positions must be >= 1")

        if self.pause_hours <= 0:
            errors.append("pause_hours must be > 0")

        if self.volatility_spike_threshold <= 0:
            errors.append("volatility_spike_threshold must be > 0")

        if not 0 < self.correlation_threshold <= 1:
            errors.append("correlation_threshold must be in (0, 1]")

        try:
            SizingMethod(self.position_sizing_method)
        except ValueError:
            errors.append(f"Unknown position_sizing_method: {self.position_sizing_method}")

        return errors


@dataclass
class IndicatorSettings:
    """Indicator windows."""

    adx_period: int = 14
    atr_period: int = 14
    rsi_period: int = 14

    ema_fast: int = 9
    ema_slow: int = 21
    ema_regime_fast: int = 50
    ema_regime_slow: int = 200

    sma_mid: int = 50
    sma_long: int = 200

    macd_fast: int = 12
    macd_slow: int = 26
    macd_signal: int = 9

    bb_period: int = 20
    bb_std: float = 2.0
    bb_width_median_window: int = 60

    volume_window: int = 20
    sr_window: int = 20

    @property
    def warmup_bars(self) -> int:
        """Bars needed before every indicator is defined."""
        return max(
            self.ema_regime_slow,
            self.sma_long,
            self.macd_slow + self.macd_signal - 1,
            self.bb_period + self.bb_width_median_window - 1,
            2 * self.adx_period,
            self.atr_period + 1,
            self.rsi_period + 1,
            self.volume_window + 1,
            self.sr_window + 1,
        )


@dataclass
class RegimeSettings:
    """Regime classification thresholds."""

    adx_threshold: float = 20.0
    ema_distance_threshold: float = 0.005     # |EMA50 - EMA200| / price
    atr_pct_threshold: float = 0.02           # ATR / price
    fallback_confidence: float = 25.0
    min_dwell_hours: float = 4.0              # Debounce before a flip is honored

    @property
    def min_dwell(self) -> timedelta:
        return timedelta(hours=self.min_dwell_hours)


@dataclass
class TrendFollowingSettings:
    """Trend-following engine parameters."""

    enabled: bool = True
    require_macd_cross: bool = False
    require_breakout: bool = False
    volume_spike_k: float = 2.0
    min_adx: float = 0.0

    stop_atr_multiple: float = 1.8
    tp1_atr_multiple: float = 1.0
    tp2_atr_multiple: float = 3.0
    trailing_atr_multiple: float = 1.0
    partial_close_fraction: float = 0.5

    base_confidence: float = 55.0
    regime_mismatch_factor: float = 0.6


@dataclass
class MeanReversionSettings:
    """Mean-reversion engine parameters."""

    enabled: bool = True
    rsi_oversold: float = 30.0
    rsi_overbought: float = 70.0
    rsi_neutral_low: float = 45.0
    rsi_neutral_high: float = 55.0

    band_touch_tolerance: float = 0.002
    sr_tolerance: float = 0.01
    require_band_touch: bool = True
    require_sr_proximity: bool = True
    require_volume_decline: bool = True

    stop_atr_multiple: float = 1.8

    base_confidence: float = 55.0
    regime_mismatch_factor: float = 0.6


@dataclass
class MLGateSettings:
    """Execution thresholds for scored signals."""

    min_probability: float = 0.60
    min_expected_r: float = 1.8


@dataclass
class SizingSettings:
    """Position sizing parameters."""

    target_volatility: float = 0.01
    min_volatility_scale: float = 0.5
    max_volatility_scale: float = 2.0
    high_volatility_factor: float = 0.5
    low_liquidity_reduction: float = 0.25
    weekend_is_low_liquidity: bool = True

    # Used for Kelly until enough closed trades exist
    default_win_rate: float = 0.6
    default_avg_win: float = 1.5
    default_avg_loss: float = 1.0
    min_trades_for_stats: int = 20


@dataclass
class ValidatorSettings:
    """Final order gate parameters."""

    max_cost_fraction: float = 0.25           # Of first take-profit distance
    fee_rate: float = 0.0026                  # Taker fee per notional
    slippage_rate: float = 0.0005


@dataclass
class PipelineSettings:
    """Evaluation cadence, timeframes and collaborator timeouts."""

    symbols: List[str] = field(default_factory=lambda: ["BTCUSD", "ETHUSD", "ADAUSD"])
    base_timeframe: Timeframe = Timeframe.M1
    execution_timeframe: Timeframe = Timeframe.M15
    confirmation_timeframe: Timeframe = Timeframe.H4

    evaluation_interval_seconds: int = 60
    market_data_timeout_seconds: float = 5.0
    inference_timeout_seconds: float = 2.0
    execution_timeout_seconds: float = 5.0

    initial_capital: float = 10000.0
    correlation_window: int = 60

    def __post_init__(self):
        for name in ("base_timeframe", "execution_timeframe", "confirmation_timeframe"):
            value = getattr(self, name)
            if isinstance(value, str):
                setattr(self, name, Timeframe(value))


@dataclass
class PathSettings:
    """File paths configuration."""

    logs_dir: str = "logs"
    state_dir: str = "state"
    results_dir: str = "results"

    def create_directories(self):
        """Create all required directories."""
        for path in [self.logs_dir, self.state_dir, self.results_dir]:
            Path(path).mkdir(parents=True, exist_ok=True)


_SECTIONS = {
    'risk': RiskSettings,
    'indicators': IndicatorSettings,
    'regime': RegimeSettings,
    'trend_following': TrendFollowingSettings,
    'mean_reversion': MeanReversionSettings,
    'ml_gate': MLGateSettings,
    'sizing': SizingSettings,
    'validator': ValidatorSettings,
    'pipeline': PipelineSettings,
    'paths': PathSettings,
}


def _to_plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _to_plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_plain(v) for v in value]
    return value


@dataclass
class Settings:
    """Main settings container."""

    risk: RiskSettings = field(default_factory=RiskSettings)
    indicators: IndicatorSettings = field(default_factory=IndicatorSettings)
    regime: RegimeSettings = field(default_factory=RegimeSettings)
    trend_following: TrendFollowingSettings = field(default_factory=TrendFollowingSettings)
    mean_reversion: MeanReversionSettings = field(default_factory=MeanReversionSettings)
    ml_gate: MLGateSettings = field(default_factory=MLGateSettings)
    sizing: SizingSettings = field(default_factory=SizingSettings)
    validator: ValidatorSettings = field(default_factory=ValidatorSettings)
    pipeline: PipelineSettings = field(default_factory=PipelineSettings)
    paths: PathSettings = field(default_factory=PathSettings)

    mode: TradingMode = TradingMode.PAPER

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> 'Settings':
        """Build settings from a plain mapping (e.g. parsed YAML)."""
        config = config or {}
        kwargs: Dict[str, Any] = {}

        for name, section_cls in _SECTIONS.items():
            section = config.get(name, {}) or {}
            if not isinstance(section, dict):
                raise SettingsError(f"Section '{name}' must be a mapping")
            try:
                if section_cls is RiskSettings:
                    kwargs[name] = RiskSettings.from_dict(section)
                else:
                    kwargs[name] = section_cls(**section)
            except TypeError as e:
                raise SettingsError(f"Invalid section '{name}': {e}") from e

        try:
            kwargs['mode'] = TradingMode(config.get('mode', 'paper'))
        except ValueError as e:
            raise SettingsError(str(e)) from e

        return cls(**kwargs)

    @classmethod
    def from_yaml(cls, path: str) -> 'Settings':
        """Load settings from YAML file."""
        with open(path, 'r') as f:
            config = yaml.safe_load(f)

        if config is not None and not isinstance(config, dict):
            raise SettingsError(f"{path}: top level must be a mapping")

        return cls.from_dict(config or {})

    def to_dict(self) -> Dict[str, Any]:
        config = {name: _to_plain(asdict(getattr(self, name))) for name in _SECTIONS}
        config['mode'] = self.mode.value
        return config

    def to_yaml(self, path: str):
        """Save settings to YAML file."""
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w') as f:
            yaml.safe_dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)

    def with_risk(self, risk: RiskSettings) -> 'Settings':
        """Copy with a replaced risk section."""
        return replace(self, risk=risk)

    def validate(self) -> Tuple[bool, List[str]]:
        """Validate settings configuration."""
        errors = list(self.risk.validate())

        if self.indicators.ema_fast >= self.indicators.ema_slow:
            errors.append("ema_fast must be < ema_slow")

        if self.indicators.sma_mid >= self.indicators.sma_long:
            errors.append("sma_mid must be < sma_long")

        if self.indicators.macd_fast >= self.indicators.macd_slow:
            errors.append("macd_fast must be < macd_slow")

        if self.mean_reversion.rsi_oversold >= self.mean_reversion.rsi_overbought:
            errors.append("rsi_oversold must be < rsi_overbought")

        if not (self.mean_reversion.rsi_oversold
                < self.mean_reversion.rsi_neutral_low
                <= self.mean_reversion.rsi_neutral_high
                < self.mean_reversion.rsi_overbought):
            errors.append("RSI neutral band must sit between oversold and overbought")

        if not 0 <= self.ml_gate.min_probability <= 1:
            errors.append("min_probability must be between 0 and 1")

        if not 0 < self.trend_following.partial_close_fraction < 1:
            errors.append("partial_close_fraction must be in (0, 1)")

        if not 0 <= self.sizing.low_liquidity_reduction < 1:
            errors.append("low_liquidity_reduction must be in [0, 1)")

        pipeline = self.pipeline
        if not (pipeline.base_timeframe.to_minutes()
                <= pipeline.execution_timeframe.to_minutes()
                <= pipeline.confirmation_timeframe.to_minutes()):
            errors.append("timeframes must satisfy base <= execution <= confirmation")

        for tf in (pipeline.execution_timeframe, pipeline.confirmation_timeframe):
            if tf.to_minutes() % pipeline.base_timeframe.to_minutes() != 0:
                errors.append(f"{tf.value} is not a multiple of {pipeline.base_timeframe.value}")

        if not pipeline.symbols:
            errors.append("at least one symbol is required")

        if pipeline.initial_capital <= 0:
            errors.append("initial_capital must be > 0")

        return len(errors) == 0, errors
