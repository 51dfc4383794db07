"""Keyed debouncing of bursty calls onto timer threads."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Any, Callable


class CancellationToken:
    """Signal that lets superseded work stop early."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._cancelled = False
        self._callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    def add_callback(self, callback: Callable[[], None]) -> None:
        """Call callback on cancellation, immediately if already cancelled."""
        with self._lock:
            if not self._cancelled:
                self._callbacks.append(callback)
                return
        callback()


@dataclass
class _PendingCall:
    timer: threading.Timer
    future: Future
    token: CancellationToken = field(default_factory=CancellationToken)


class QueryDebouncer:
    """Coalesces rapid calls per key so only the last one in a quiet window runs.

    Each call returns a Future. A superseded call's future is cancelled; a
    superseded call that is already running has its cancellation token
    cancelled so it can abandon its work.
    """

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._logger = logger or logging.getLogger("worker_lookup.debouncer")
        self._lock = threading.Lock()
        self._pending: dict[str, _PendingCall] = {}
        self._running: dict[str, _PendingCall] = {}

    def debounce(
        self,
        key: str,
        fn: Callable[..., Any],
        delay: float = 0.3,
        cancellable: bool = False,
    ) -> Callable[..., Future]:
        """Wrap fn so each invocation replaces the pending one for key."""
        if delay < 0:
            raise ValueError("delay must not be negative")

        def wrapper(*args: Any, **kwargs: Any) -> Future:
            future: Future = Future()
            with self._lock:
                self._supersede(key)
                call: _PendingCall | None = None

                def fire() -> None:
                    self._execute(key, call, fn, args, kwargs, cancellable)

                timer = threading.Timer(delay, fire)
                timer.daemon = True
                call = _PendingCall(timer=timer, future=future)
                self._pending[key] = call
                timer.start()
            return future

        return wrapper

    def pending(self, key: str) -> bool:
        with self._lock:
            return key in self._pending

    def clear(self, key: str) -> None:
        """Cancel the pending call for key without running it."""
        with self._lock:
            call = self._pending.pop(key, None)
        if call is not None:
            call.timer.cancel()
            call.future.cancel()

    def clear_all(self) -> None:
        with self._lock:
            calls = list(self._pending.values())
            self._pending.clear()
        for call in calls:
            call.timer.cancel()
            call.future.cancel()
        if calls:
            self._logger.debug("Cancelled %d pending debounced calls", len(calls))

    def _supersede(self, key: str) -> None:
        previous = self._pending.pop(key, None)
        if previous is not None:
            previous.timer.cancel()
            previous.future.cancel()
        running = self._running.get(key)
        if running is not None:
            running.token.cancel()

    def _execute(
        self,
        key: str,
        call: _PendingCall | None,
        fn: Callable[..., Any],
        args: tuple[Any, ...],
        kwargs: dict[str, Any],
        cancellable: bool,
    ) -> None:
        with self._lock:
            if call is None or self._pending.get(key) is not call:
                return
            del self._pending[key]
            if not call.future.set_running_or_notify_cancel():
                return
            self._running[key] = call

        try:
            if cancellable:
                result = fn(*args, cancel_token=call.token, **kwargs)
            else:
                result = fn(*args, **kwargs)
        except BaseException as exc:
            call.future.set_exception(exc)
        else:
            call.future.set_result(result)
        finally:
            with self._lock:
                if self._running.get(key) is call:
                    del self._running[key]
