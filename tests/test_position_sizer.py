"""
Tests for position sizing.
"""

from datetime import datetime, timezone

import pytest

from config.settings import RiskSettings, SizingSettings, SizingMethod
from src.errors import InvalidInputs
from src.risk.position_sizer import PositionSizer, SizingRequest, kelly_fraction

from conftest import T0


def _request(**overrides):
    values = dict(
        symbol="BTCUSD",
        capital=10000.0,
        price=10.0,
        stop_distance=2.0,
        risk_per_trade=0.005,
        method=SizingMethod.FIXED_PERCENTAGE,
        low_liquidity=False,
        timestamp=T0,
    )
    values.update(overrides)
    return SizingRequest(**values)


@pytest.fixture
def sizer():
    return PositionSizer(RiskSettings(), SizingSettings())


class TestFixedPercentage:
    """Tests for fixed-fractional sizing."""

    def test_small_account(self, sizer):
        result = sizer.calculate(_request(capital=100.0, price=500.0, stop_distance=50.0))
        # $100 x 0.5% = $0.50 at risk over a $50 stop
        assert result.recommended_size == pytest.approx(0.01)
        assert result.risk_amount == pytest.approx(0.5)
        assert result.max_size == pytest.approx(0.02)
        assert result.adjustments == ()

    def test_basic(self, sizer):
        result = sizer.calculate(_request())
        assert result.recommended_size == pytest.approx(25.0)
        assert result.method == SizingMethod.FIXED_PERCENTAGE
        assert result.confidence_level == 0.85

    def test_capped_by_max_position_size(self, sizer):
        result = sizer.calculate(_request(price=100.0))
        # 25 units would be 25% of capital; 10% cap is 10 units
        assert result.recommended_size == pytest.approx(10.0)
        assert result.max_size == pytest.approx(10.0)
        assert "capped" in result.adjustments

    def test_capped_by_symbol_exposure(self, sizer):
        result = sizer.calculate(_request(price=100.0, symbol_exposure=1500.0))
        # 20% exposure limit leaves $500
        assert result.max_size == pytest.approx(5.0)
        assert result.recommended_size == pytest.approx(5.0)

    def test_no_room_left(self, sizer):
        result = sizer.calculate(_request(symbol_exposure=5000.0))
        assert result.recommended_size == 0.0


class TestKelly:
    """Tests for Kelly sizing."""

    def test_kelly_fraction(self):
        assert kelly_fraction(0.6, 1.5, 1.0) == pytest.approx(0.6 - 0.4 / 1.5)
        assert kelly_fraction(0.3, 1.0, 1.0) == pytest.approx(-0.4)

    def test_capped_at_risk_per_trade(self, sizer):
        result = sizer.calculate(_request(method=SizingMethod.KELLY,
                                          win_rate=0.6, avg_win=1.5, avg_loss=1.0))
        assert result.kelly_fraction == pytest.approx(1 / 3)
        assert result.recommended_size == pytest.approx(10000 * 0.005 / 2.0)

    def test_small_edge(self, sizer):
        # f = 0.51 - 0.49 / 1.0 = 0.02 > 0.01
        result = sizer.calculate(_request(method=SizingMethod.KELLY, risk_per_trade=0.05,
                                          win_rate=0.51, avg_win=1.0, avg_loss=1.0))
        assert result.recommended_size == pytest.approx(10000 * 0.02 / 2.0)

    def test_negative_edge_is_zero(self, sizer):
        result = sizer.calculate(_request(method=SizingMethod.KELLY,
                                          win_rate=0.3, avg_win=1.0, avg_loss=1.0))
        assert result.recommended_size == 0.0

    def test_requires_statistics(self, sizer):
        with pytest.raises(InvalidInputs):
            sizer.calculate(_request(method=SizingMethod.KELLY, win_rate=0.6))


class TestOtherMethods:
    """Tests for volatility-adjusted and risk-parity sizing."""

    @pytest.mark.parametrize("atr_pct,scale", [
        (0.01, 1.0),
        (0.02, 0.5),
        (0.05, 0.5),        # clipped low
        (0.001, 2.0),       # clipped high
    ])
    def test_volatility_adjusted(self, sizer, atr_pct, scale):
        result = sizer.calculate(_request(method=SizingMethod.VOLATILITY_ADJUSTED, atr_pct=atr_pct,
                                          price=1.0))
        assert result.recommended_size == pytest.approx(25.0 * scale)

    def test_volatility_adjusted_requires_atr(self, sizer):
        with pytest.raises(InvalidInputs):
            sizer.calculate(_request(method=SizingMethod.VOLATILITY_ADJUSTED))

    def test_risk_parity(self, sizer):
        # Budget 5% of 10000 = 500, over 4 positions = 125 each
        result = sizer.calculate(_request(method=SizingMethod.RISK_PARITY, price=1.0))
        assert result.recommended_size == pytest.approx(125.0 / 2.0)

        result = sizer.calculate(_request(method=SizingMethod.RISK_PARITY, price=1.0,
                                          portfolio_risk=450.0))
        assert result.recommended_size == pytest.approx(50.0 / 2.0)


class TestAdjustments:
    """Tests for regime and liquidity adjustments."""

    def test_high_volatility_halves(self, sizer):
        result = sizer.calculate(_request(high_volatility=True))
        assert result.recommended_size == pytest.approx(12.5)
        assert "high_volatility" in result.adjustments

    def test_low_liquidity(self, sizer):
        result = sizer.calculate(_request(low_liquidity=True))
        assert result.recommended_size == pytest.approx(25.0 * 0.75)

    def test_weekend_is_low_liquidity(self, sizer):
        saturday = datetime(2024, 1, 6, 12, 0, tzinfo=timezone.utc)
        result = sizer.calculate(_request(low_liquidity=None, timestamp=saturday))
        assert "low_liquidity" in result.adjustments

        result = sizer.calculate(_request(low_liquidity=None, timestamp=T0))
        assert "low_liquidity" not in result.adjustments

    def test_deterministic(self, sizer):
        request = _request(high_volatility=True)
        assert sizer.calculate(request) == sizer.calculate(request)


class TestValidation:
    """Tests for rejected requests."""

    @pytest.mark.parametrize("override", [
        dict(capital=0.0),
        dict(capital=-100.0),
        dict(price=0.0),
        dict(stop_distance=0.0),
        dict(stop_distance=float('nan')),
        dict(risk_per_trade=0.0),
        dict(win_rate=1.5),
        dict(avg_loss=0.0),
    ])
    def test_invalid_inputs(self, sizer, override):
        with pytest.raises(InvalidInputs):
            sizer.calculate(_request(**override))

    def test_risk_score_bounds(self, sizer):
        result = sizer.calculate(_request(atr_pct=0.5))
        assert 0.1 <= result.risk_score <= 0.9
