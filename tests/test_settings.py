"""
Tests for configuration loading and validation.
"""

import pytest
import yaml

from config.settings import (
    Settings,
    RiskSettings,
    SettingsError,
    SizingMethod,
    Timeframe,
    TradingMode,
)


class TestRiskSettings:
    """Tests for per-account risk limits."""

    def test_defaults_are_valid(self):
        assert RiskSettings().validate() == []

    def test_defaults(self):
        rs = RiskSettings()
        assert rs.max_position_size == 0.10
        assert rs.max_positions == 4
        assert rs.sizing_method == SizingMethod.KELLY
        assert rs.pause_duration.total_seconds() == 12 * 3600

    @pytest.mark.parametrize("field,value", [
        ("max_daily_loss", 0.0),
        ("max_position_size", 1.5),
        ("max_portfolio_risk", 0.0),
        ("risk_per_trade", -0.01),
        ("max_positions", 0),
        ("pause_hours", 0.0),
        ("correlation_threshold", 1.2),
        ("position_sizing_method", "martingale"),
    ])
    def test_invalid_values(self, field, value):
        rs = RiskSettings(**{field: value})
        assert rs.validate()

    def test_from_dict_rejects_unknown_keys(self):
        with pytest.raises(SettingsError):
            RiskSettings.from_dict({"max_leverage": 10})

    @pytest.mark.parametrize("field,value", [
        ("max_daily_loss", "300"),
        ("max_daily_loss", float("inf")),
        ("max_positions", 2.5),
        ("max_positions", True),
        ("circuit_breaker_enabled", 1),
        ("position_sizing_method", None),
    ])
    def test_from_dict_rejects_wrong_types(self, field, value):
        with pytest.raises(SettingsError):
            RiskSettings.from_dict({field: value})

    def test_from_dict_accepts_integers_for_floats(self):
        rs = RiskSettings.from_dict({"max_daily_loss": 300, "max_positions": 2})
        assert rs.max_daily_loss == 300.0
        assert isinstance(rs.max_daily_loss, float)
        assert rs.max_positions == 2

    def test_frozen(self):
        rs = RiskSettings()
        with pytest.raises(Exception):
            rs.max_daily_loss = 1.0


class TestSettings:
    """Tests for the settings container."""

    def test_default_settings(self):
        settings = Settings()
        ok, errors = settings.validate()
        assert ok, errors
        assert settings.mode == TradingMode.PAPER
        assert settings.pipeline.execution_timeframe == Timeframe.M15
        assert settings.pipeline.confirmation_timeframe == Timeframe.H4

    def test_warmup_is_largest_window(self):
        assert Settings().indicators.warmup_bars == 200

    def test_invalid_indicator_windows(self):
        settings = Settings.from_dict({"indicators": {"ema_fast": 30, "ema_slow": 21}})
        ok, errors = settings.validate()
        assert not ok
        assert any("ema_fast" in e for e in errors)

    def test_yaml_roundtrip(self, tmp_path):
        path = tmp_path / "settings.yaml"
        settings = Settings.from_dict({
            "risk": {"max_daily_loss": 250.0, "position_sizing_method": "fixed_percentage"},
            "pipeline": {"symbols": ["BTCUSD"], "execution_timeframe": "H1"},
        })
        settings.to_yaml(str(path))

        with open(path) as f:
            raw = yaml.safe_load(f)
        assert raw["risk"]["max_daily_loss"] == 250.0
        assert raw["pipeline"]["execution_timeframe"] == "H1"

        loaded = Settings.from_yaml(str(path))
        assert loaded.risk == settings.risk
        assert loaded.pipeline.execution_timeframe == Timeframe.H1

    def test_bad_section_type(self):
        with pytest.raises(SettingsError):
            Settings.from_dict({"risk": ["not", "a", "mapping"]})

    def test_unknown_field_in_section(self):
        with pytest.raises(SettingsError):
            Settings.from_dict({"sizing": {"leverage": 3}})

    def test_with_risk(self):
        settings = Settings()
        updated = settings.with_risk(RiskSettings(max_daily_loss=100.0))
        assert updated.risk.max_daily_loss == 100.0
        assert settings.risk.max_daily_loss == 500.0
