"""
Tests for the score-based execution gate.
"""

import math

import numpy as np
import pytest

from config.settings import MLGateSettings
from src.analysis.regime import MarketRegime
from src.execution.collaborators import HeuristicInferenceClient
from src.strategy.ml_gate import FeatureVector, GateReason, MLGate, MLScore
from src.strategy.trend_following import TrendFollowingEngine

from conftest import make_indicators, make_buy_cross, make_regime


@pytest.fixture
def buy_signal():
    return TrendFollowingEngine().evaluate(make_buy_cross(atr=5.0), make_regime())


@pytest.fixture
def hold_signal():
    return TrendFollowingEngine().evaluate(make_indicators())


class TestMLGate:
    """Table-driven tests for the execution rule."""

    @pytest.mark.parametrize("probability,expected_r,executed,reasons", [
        (0.60, 1.8, True, ()),
        (0.75, 2.5, True, ()),
        (0.59, 2.5, False, (GateReason.LOW_PROBABILITY,)),
        (0.75, 1.79, False, (GateReason.LOW_EXPECTED_R,)),
        (0.10, 0.5, False, (GateReason.LOW_PROBABILITY, GateReason.LOW_EXPECTED_R)),
        (float('nan'), 2.0, False, (GateReason.INVALID_SCORE,)),
        (0.9, float('inf'), False, (GateReason.INVALID_SCORE,)),
    ])
    def test_execution_rule(self, buy_signal, probability, expected_r, executed, reasons):
        decision = MLGate().decide(buy_signal, MLScore(probability, expected_r))
        assert decision.executed is executed
        assert decision.reasons == reasons
        assert decision.signal_id == buy_signal.id

    def test_hold_never_executes(self, hold_signal):
        decision = MLGate().decide(hold_signal, MLScore(0.99, 5.0))
        assert not decision.executed
        assert GateReason.HOLD_SIGNAL in decision.reasons

    def test_reason_names_failed_rules(self, buy_signal):
        decision = MLGate().decide(buy_signal, MLScore(0.5, 1.0))
        assert "probability" in decision.reason
        assert "expected_r" in decision.reason

    def test_custom_thresholds(self, buy_signal):
        gate = MLGate(MLGateSettings(min_probability=0.8, min_expected_r=1.0))
        assert not gate.decide(buy_signal, MLScore(0.75, 3.0)).executed
        assert gate.decide(buy_signal, MLScore(0.85, 1.0)).executed

    def test_decision_serializes(self, buy_signal):
        data = MLGate().decide(buy_signal, MLScore(0.5, 2.0)).to_dict()
        assert data['reasons'] == ["LOW_PROBABILITY"]
        assert data['executed'] is False


class TestFeatureVector:
    """Tests for model inputs."""

    def test_build(self, buy_signal):
        ind = make_buy_cross(atr=5.0)
        features = FeatureVector.build(buy_signal, ind, make_regime(MarketRegime.TRENDING))

        assert features.regime_trending == 1.0
        assert features.regime_ranging == 0.0
        assert features.side == 1.0
        assert features.atr_pct == pytest.approx(0.05)
        assert features.signal_confidence == buy_signal.confidence

        array = features.to_array()
        assert array.dtype == np.float64
        assert len(array) == len(features.to_dict())

    def test_no_regime(self, buy_signal):
        features = FeatureVector.build(buy_signal, make_buy_cross(), None)
        assert features.regime_trending == features.regime_ranging == features.regime_high_volatility == 0.0


class TestHeuristicInferenceClient:
    """Tests for the deterministic paper scorer."""

    def test_score(self, buy_signal):
        features = FeatureVector.build(buy_signal, make_buy_cross(atr=5.0), make_regime())
        score = HeuristicInferenceClient().score(features, buy_signal)

        assert score.probability == pytest.approx(0.75)
        # TP2 at 3 ATR over a 1.8 ATR stop
        assert score.expected_r == pytest.approx(3.0 / 1.8 * 1.25)
        assert MLGate().decide(buy_signal, score).executed

    def test_hold_scores_zero(self, hold_signal):
        features = FeatureVector.build(hold_signal, make_indicators(), None)
        score = HeuristicInferenceClient().score(features, hold_signal)
        assert score.probability == 0.0
        assert score.expected_r == 0.0

    def test_deterministic(self, buy_signal):
        features = FeatureVector.build(buy_signal, make_buy_cross(atr=5.0), make_regime())
        client = HeuristicInferenceClient()
        assert client.score(features, buy_signal) == client.score(features, buy_signal)
        assert math.isfinite(client.score(features, buy_signal).expected_r)
