"""
Tagged-action boundary.

Request:   {"action": <name>, ...params}
Response:  {"success": true, "result": ...}
           {"success": false, "error": {"kind": ..., "message": ...}}

Actions:
    generate_signal          symbol
    calculate_position_size  symbol, price, stop_distance, [capital, method,
                             risk_per_trade, atr_pct, win_rate, avg_win,
                             avg_loss, high_volatility, low_liquidity]
    validate_order           order {symbol, side, quantity, price, ...}
    monitor_risk_limits      -
    trigger_circuit_breaker  [reason, close_positions]
    reset_circuit_breaker    [reason]
    get_risk_status          -
    update_risk_settings     settings {field: value, ...}
    get_signals              [symbol, limit]
"""

import logging
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Optional, Dict, Any, Callable

from config.settings import SizingMethod
from src.errors import TradingCoreError, InvalidInputs, StaleData
from src.execution.order_validator import OrderRequest
from src.pipeline.account import AccountCore
from src.pipeline.actor import AccountActor


logger = logging.getLogger(__name__)

FLOAT_SIZING_FIELDS = ("risk_per_trade", "atr_pct", "win_rate", "avg_win", "avg_loss")
BOOL_SIZING_FIELDS = ("high_volatility", "low_liquidity")


def _require(params: Dict[str, Any], name: str) -> Any:
    if params.get(name) is None:
        raise InvalidInputs(f"Missing parameter: {name}")
    return params[name]


def _float(params: Dict[str, Any], name: str) -> float:
    value = _require(params, name)
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise InvalidInputs(f"{name} must be a number, got {value!r}") from e


def _bool(params: Dict[str, Any], name: str) -> bool:
    value = _require(params, name)
    if not isinstance(value, bool):
        raise InvalidInputs(f"{name} must be true or false, got {value!r}")
    return value


class ActionDispatcher:
    """
    Maps tagged actions onto an AccountCore.

    When an actor is given and running, every action runs on the actor's
    worker thread; emergency stops go straight to the breaker.
    """

    def __init__(
        self,
        core: AccountCore,
        actor: Optional[AccountActor] = None,
        timeout: Optional[float] = 30.0,
    ):
        self.core = core
        self.actor = actor
        self.timeout = timeout
        self._handlers: Dict[str, Callable[[Dict[str, Any]], Any]] = {
            "generate_signal": self._generate_signal,
            "calculate_position_size": self._calculate_position_size,
            "validate_order": self._validate_order,
            "monitor_risk_limits": self._monitor_risk_limits,
            "trigger_circuit_breaker": self._trigger_circuit_breaker,
            "reset_circuit_breaker": self._reset_circuit_breaker,
            "get_risk_status": self._get_risk_status,
            "update_risk_settings": self._update_risk_settings,
            "get_signals": self._get_signals,
        }

    @property
    def actions(self):
        return sorted(self._handlers)

    def dispatch(self, request: Dict[str, Any]) -> Dict[str, Any]:
        """Handle one request. Never raises for request-level failures."""
        try:
            if not isinstance(request, dict):
                raise InvalidInputs("Request must be a mapping")
            params = dict(request)
            action = params.pop("action", None)
            handler = self._handlers.get(action)
            if handler is None:
                raise InvalidInputs(f"Unknown action: {action}")

            return {"success": True, "result": handler(params)}

        except TradingCoreError as e:
            logger.info(f"Action {request.get('action') if isinstance(request, dict) else None} "
                        f"failed: [{e.kind}] {e.message}")
            return {"success": False, "error": {"kind": e.kind, "message": e.message}}

    def _run(self, fn: Callable[..., Any], *args, **kwargs) -> Any:
        if self.actor is not None and self.actor.running:
            try:
                return self.actor.call(fn, *args, timeout=self.timeout, **kwargs)
            except FutureTimeout as e:
                raise StaleData(f"Account did not answer within {self.timeout}s") from e
        return fn(*args, **kwargs)

    # -------------------------------------------------------------------------
    # Handlers
    # -------------------------------------------------------------------------

    def _generate_signal(self, params: Dict[str, Any]):
        signals = self._run(self.core.generate_signals, str(_require(params, "symbol")))
        return [s.to_dict() for s in signals]

    def _calculate_position_size(self, params: Dict[str, Any]):
        overrides = {name: _float(params, name)
                     for name in FLOAT_SIZING_FIELDS if params.get(name) is not None}
        overrides.update({name: _bool(params, name)
                          for name in BOOL_SIZING_FIELDS if params.get(name) is not None})
        if params.get("method") is not None:
            try:
                overrides["method"] = SizingMethod(params["method"])
            except (TypeError, ValueError) as e:
                raise InvalidInputs(f"Unknown sizing method: {params['method']}") from e
        capital = _float(params, "capital") if params.get("capital") is not None else None

        result = self._run(
            self.core.calculate_position_size,
            str(_require(params, "symbol")),
            _float(params, "price"),
            _float(params, "stop_distance"),
            capital,
            **overrides,
        )
        return result.to_dict()

    def _validate_order(self, params: Dict[str, Any]):
        order_data = _require(params, "order")
        if not isinstance(order_data, dict):
            raise InvalidInputs("order must be a mapping")
        order = OrderRequest.from_dict(order_data)
        result = self._run(self.core.validate_order, order)
        if not result.accepted:
            raise result.error
        return result.to_dict()

    def _monitor_risk_limits(self, params: Dict[str, Any]):
        assessment = self._run(self.core.refresh_risk)
        return {
            "limits": [s.to_dict() for s in assessment.statuses],
            "pause_requested": assessment.pause_requested,
            "trigger_requests": [event_type for event_type, _ in assessment.trigger_requests],
            "breaker_state": self.core.breaker.state.value,
        }

    def _trigger_circuit_breaker(self, params: Dict[str, Any]):
        reason = str(params.get("reason") or "manual emergency stop")
        close_positions = bool(params.get("close_positions", False))
        if self.actor is not None and self.actor.running:
            triggered = self.actor.emergency_stop(reason, close_positions)
        else:
            triggered = self.core.trigger_circuit_breaker(reason, close_positions)
        return {"triggered": triggered, "breaker": self.core.breaker.status()}

    def _reset_circuit_breaker(self, params: Dict[str, Any]):
        reason = str(params.get("reason") or "manual reset")
        reset = self._run(self.core.reset_circuit_breaker, reason)
        return {"reset": reset, "breaker": self.core.breaker.status()}

    def _get_risk_status(self, params: Dict[str, Any]):
        return self._run(self.core.risk_status)

    def _update_risk_settings(self, params: Dict[str, Any]):
        data = _require(params, "settings")
        if not isinstance(data, dict):
            raise InvalidInputs("settings must be a mapping")
        risk = self.core.risk_settings_from_dict(data)
        return self._run(self.core.update_risk_settings, risk).to_dict()

    def _get_signals(self, params: Dict[str, Any]):
        try:
            limit = int(params.get("limit", 50))
        except (TypeError, ValueError) as e:
            raise InvalidInputs(f"limit must be an integer, got {params.get('limit')!r}") from e
        return self.core.signal_book.recent(symbol=params.get("symbol"), limit=limit)
