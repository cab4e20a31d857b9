"""
Collaborator interfaces.

The core never talks to an exchange, a model server or a database
directly; it calls these narrow interfaces, always under a timeout. A
missing answer is StaleData / ExecutionTimeout, never a reason to
proceed.
"""

import uuid
import logging
from collections import deque
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional, List, Dict, Callable, Type, TypeVar

from config.settings import Settings, RiskSettings, Timeframe
from src.data.bars import MarketBar
from src.errors import TradingCoreError, StaleData, ExecutionTimeout, InvalidInputs
from src.execution.order_validator import OrderRequest
from src.strategy.ml_gate import FeatureVector, MLScore
from src.strategy.signals import Signal, SignalSide


logger = logging.getLogger(__name__)

T = TypeVar('T')


class ExecutionStatus(Enum):
    FILLED = "filled"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


@dataclass(frozen=True)
class Fill:
    """Executed quantity."""
    order_id: str
    symbol: str
    side: SignalSide
    quantity: float
    price: float
    fees: float
    timestamp: datetime

    def to_dict(self) -> dict:
        return {
            "order_id": self.order_id,
            "symbol": self.symbol,
            "side": self.side.value,
            "quantity": self.quantity,
            "price": self.price,
            "fees": self.fees,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class ExecutionReport:
    """Answer of the execution collaborator."""
    order_id: str
    status: ExecutionStatus
    fill: Optional[Fill] = None
    message: str = ""

    def to_dict(self) -> dict:
        return {
            "order_id": self.order_id,
            "status": self.status.value,
            "fill": self.fill.to_dict() if self.fill else None,
            "message": self.message,
        }


# =============================================================================
# INTERFACES
# =============================================================================

class MarketDataFeed(ABC):
    """Ordered bar stream per symbol and timeframe."""

    @abstractmethod
    def fetch_bars(
        self,
        symbol: str,
        timeframe: Timeframe,
        since: Optional[datetime] = None,
    ) -> List[MarketBar]:
        """Completed bars strictly after `since`, oldest first."""
        pass


class InferenceClient(ABC):
    """Scores candidate signals."""

    @abstractmethod
    def score(self, features: FeatureVector, signal: Signal) -> MLScore:
        pass


class ExecutionClient(ABC):
    """Accepts finalized orders and reports fills or cancellations."""

    @abstractmethod
    def submit(self, order: OrderRequest) -> ExecutionReport:
        pass

    @abstractmethod
    def cancel(self, order_id: str) -> bool:
        pass


class SettingsStore(ABC):
    """Supplies and persists configuration."""

    @abstractmethod
    def load(self) -> Settings:
        pass

    @abstractmethod
    def save_risk_settings(self, risk: RiskSettings) -> None:
        pass


# =============================================================================
# TIMEOUT BOUNDARY
# =============================================================================

_POOL = ThreadPoolExecutor(max_workers=8, thread_name_prefix="collaborator")


def call_with_timeout(
    fn: Callable[..., T],
    *args,
    timeout: float,
    error_cls: Type[TradingCoreError] = StaleData,
    what: str = "collaborator call",
    **kwargs,
) -> T:
    """
    Run a collaborator call bounded by a timeout.

    Raises:
        error_cls: on timeout or collaborator failure
    """
    future = _POOL.submit(fn, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except FutureTimeout:
        future.cancel()
        raise error_cls(f"{what} timed out after {timeout:.1f}s")
    except TradingCoreError:
        raise
    except Exception as e:
        raise error_cls(f"{what} failed: {e}") from e


# =============================================================================
# IMPLEMENTATIONS
# =============================================================================

class InMemoryBarFeed(MarketDataFeed):
    """
    Feed over recorded bars.

    Bars are released once their close time is <= the feed clock, so a
    live loop over recorded data behaves like a real feed.
    """

    def __init__(
        self,
        bars: Dict[str, List[MarketBar]],
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._bars = bars
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def symbols(self) -> List[str]:
        return sorted(self._bars)

    def fetch_bars(
        self,
        symbol: str,
        timeframe: Timeframe,
        since: Optional[datetime] = None,
    ) -> List[MarketBar]:
        now = self._clock()
        return [
            b for b in self._bars.get(symbol, [])
            if b.timeframe == timeframe
            and (since is None or b.timestamp > since)
            and b.end <= now
        ]


class HeuristicInferenceClient(InferenceClient):
    """
    Deterministic scorer for paper runs and replays.

    probability = signal confidence / 100
    expected_R  = target distance / stop distance x (0.5 + probability)
    """

    def score(self, features: FeatureVector, signal: Signal) -> MLScore:
        if not signal.is_actionable or signal.exit_plan is None:
            return MLScore(probability=0.0, expected_r=0.0)

        plan = signal.exit_plan
        target = plan.take_profit_2 if plan.take_profit_2 is not None else plan.take_profit_1
        stop_distance = signal.stop_distance
        if not stop_distance:
            return MLScore(probability=0.0, expected_r=0.0)

        probability = max(0.0, min(1.0, signal.confidence / 100.0))
        reward_r = abs(target - signal.price) / stop_distance
        return MLScore(probability=probability, expected_r=reward_r * (0.5 + probability))


class PaperExecutionClient(ExecutionClient):
    """
    Paper execution.

    Fills market orders immediately at the order price plus slippage,
    with a proportional fee. Only the most recent max_fills fills are kept.
    """

    def __init__(
        self,
        fee_rate: float = 0.0026,
        slippage_rate: float = 0.0005,
        clock: Optional[Callable[[], datetime]] = None,
        max_fills: int = 1000,
    ):
        self.fee_rate = fee_rate
        self.slippage_rate = slippage_rate
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.fills: deque = deque(maxlen=max_fills)

    def submit(self, order: OrderRequest) -> ExecutionReport:
        order_id = f"PAPER-{uuid.uuid4().hex[:12]}"

        if order.quantity <= 0 or order.price <= 0:
            return ExecutionReport(order_id, ExecutionStatus.REJECTED, message="invalid order")

        slippage = order.price * self.slippage_rate
        fill_price = order.price + slippage if order.side == SignalSide.BUY else order.price - slippage
        fill = Fill(
            order_id=order_id,
            symbol=order.symbol,
            side=order.side,
            quantity=order.quantity,
            price=fill_price,
            fees=order.quantity * fill_price * self.fee_rate,
            timestamp=self._clock(),
        )
        self.fills.append(fill)
        return ExecutionReport(order_id, ExecutionStatus.FILLED, fill=fill)

    def cancel(self, order_id: str) -> bool:
        # Market orders fill immediately; nothing is ever pending
        return False


class YamlSettingsStore(SettingsStore):
    """Configuration collaborator backed by a YAML file."""

    def __init__(self, path: str):
        self.path = Path(path)

    def load(self) -> Settings:
        if not self.path.exists():
            logger.info(f"{self.path} not found, using default settings")
            return Settings()
        return Settings.from_yaml(str(self.path))

    def save_risk_settings(self, risk: RiskSettings) -> None:
        errors = risk.validate()
        if errors:
            raise InvalidInputs("; ".join(errors))
        settings = self.load().with_risk(risk)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        settings.to_yaml(str(tmp_path))
        tmp_path.replace(self.path)
        logger.info(f"Risk settings saved to {self.path}")
