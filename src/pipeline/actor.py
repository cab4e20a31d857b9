"""
Account Actor

One worker thread per account processes requests from a queue and
answers through futures, so account state is only ever touched by one
thread at a time. Emergency stops bypass the queue: the breaker is
thread-safe, and a halt must be visible to in-flight work immediately.
"""

import logging
import queue
import threading
from concurrent.futures import Future
from typing import Optional, Callable, Any

from src.pipeline.account import AccountCore
from src.risk import events as ev


logger = logging.getLogger(__name__)

_STOP = object()


class AccountActor:
    """Serializes all requests to one AccountCore."""

    def __init__(self, core: AccountCore, name: str = "account"):
        self.core = core
        self.name = name
        self._queue: "queue.Queue" = queue.Queue()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.running:
            return
        self._thread = threading.Thread(target=self._run, name=f"actor-{self.name}", daemon=True)
        self._thread.start()
        logger.info(f"Actor {self.name} started")

    def stop(self, timeout: Optional[float] = 5.0):
        """Finish queued requests, then stop the worker."""
        if not self.running:
            return
        self._queue.put(_STOP)
        self._thread.join(timeout)
        logger.info(f"Actor {self.name} stopped")

    def submit(self, fn: Callable[..., Any], *args, **kwargs) -> Future:
        """Queue fn(*args, **kwargs) for the worker."""
        if not self.running:
            raise RuntimeError(f"Actor {self.name} is not running")
        future: Future = Future()
        self._queue.put((future, fn, args, kwargs))
        return future

    def call(self, fn: Callable[..., Any], *args, timeout: Optional[float] = None, **kwargs) -> Any:
        """Queue a request and wait for its result."""
        return self.submit(fn, *args, **kwargs).result(timeout=timeout)

    def emergency_stop(self, reason: str, close_positions: bool = False) -> bool:
        """
        Trigger the breaker now; position closing is queued behind it.

        Returns:
            True if the breaker moved to triggered
        """
        triggered = self.core.breaker.trigger(
            ev.EMERGENCY_STOP,
            reason,
            triggered_by={"source": "manual"},
            close_positions=close_positions,
        )
        if triggered and close_positions:
            self.submit(self.core.close_all_positions, reason)
        return triggered

    def _run(self):
        while True:
            item = self._queue.get()
            if item is _STOP:
                break

            future, fn, args, kwargs = item
            if not future.set_running_or_notify_cancel():
                continue
            try:
                future.set_result(fn(*args, **kwargs))
            except Exception as e:
                future.set_exception(e)
