"""
Tests for the paper execution collaborator.
"""

import pytest

from src.execution.collaborators import ExecutionStatus, PaperExecutionClient
from src.execution.order_validator import OrderRequest
from src.strategy.signals import SignalSide

from conftest import T0


def _order(side=SignalSide.BUY, quantity=2.0, price=100.0):
    return OrderRequest(symbol="BTCUSD", side=side, quantity=quantity, price=price)


@pytest.fixture
def client():
    return PaperExecutionClient(clock=lambda: T0)


class TestPaperExecutionClient:

    def test_buy_fill(self, client):
        report = client.submit(_order())
        assert report.status == ExecutionStatus.FILLED
        assert report.fill.price == pytest.approx(100.05)
        assert report.fill.fees == pytest.approx(2.0 * 100.05 * 0.0026)
        assert report.fill.timestamp == T0

    def test_sell_slips_down(self, client):
        report = client.submit(_order(side=SignalSide.SELL))
        assert report.fill.price == pytest.approx(99.95)

    def test_invalid_order_rejected(self, client):
        report = client.submit(_order(quantity=0.0))
        assert report.status == ExecutionStatus.REJECTED
        assert len(client.fills) == 0

    def test_fill_history_is_bounded(self):
        client = PaperExecutionClient(clock=lambda: T0, max_fills=3)
        reports = [client.submit(_order(quantity=q)) for q in (1.0, 2.0, 3.0, 4.0, 5.0)]

        assert len(client.fills) == 3
        assert [f.quantity for f in client.fills] == [3.0, 4.0, 5.0]
        assert client.fills[-1] == reports[-1].fill
