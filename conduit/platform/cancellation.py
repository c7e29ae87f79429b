"""Cooperative cancellation shared by detection, spawn and streaming."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

from conduit.utils.errors import UserCancelledError

logger = logging.getLogger(__name__)


class ExecutionCancelled(UserCancelledError):
    """Raised inside an invocation when its token was cancelled.

    Never converted into an error message: cancellation is a normal
    teardown, not a failure.
    """

    def __init__(self, message: str = "Execution cancelled") -> None:
        super().__init__(message)


class CancellationToken:
    """A one-shot cancellation flag with callbacks.

    One token is created by the caller per invocation and passed by
    reference into the provider, which hands it to the subprocess engine.
    Calling cancel() from any thread sets the flag and runs the registered
    callbacks exactly once.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        """Request cancellation. Subsequent calls are no-ops."""
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()

        for callback in callbacks:
            self._run_callback(callback)

    def wait(self, timeout: float | None = None) -> bool:
        """Block until cancelled or timeout elapses; returns the flag."""
        return self._event.wait(timeout)

    def add_callback(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Run ``callback`` on cancellation.

        If the token is already cancelled the callback runs immediately.

        Returns:
            A function that unregisters the callback.
        """
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)

                def remove() -> None:
                    with self._lock:
                        if callback in self._callbacks:
                            self._callbacks.remove(callback)

                return remove

        self._run_callback(callback)
        return lambda: None

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise ExecutionCancelled()

    @staticmethod
    def _run_callback(callback: Callable[[], None]) -> None:
        try:
            callback()
        except Exception:
            logger.exception("Cancellation callback failed")


__all__ = [
    "CancellationToken",
    "ExecutionCancelled",
]
