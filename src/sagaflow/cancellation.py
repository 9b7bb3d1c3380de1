"""Cooperative cancellation for pipelines running on a worker thread."""

from __future__ import annotations

import threading
import time
from contextvars import ContextVar

from sagaflow.errors import ExecutionCancelled


class CancellationToken:
    """A one-shot flag shared between a caller and a worker.

    Python threads cannot be killed, so cancellation is cooperative: the
    execution loop checks :attr:`cancelled` between steps and retry
    sleeps wake up early through :meth:`wait`.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, seconds: float) -> bool:
        """Block up to *seconds*; return ``True`` if cancelled meanwhile."""
        return self._event.wait(seconds)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise ExecutionCancelled("execution was cancelled")


current_token: ContextVar[CancellationToken | None] = ContextVar(
    "sagaflow_cancellation_token", default=None
)


def cancellable_sleep(seconds: float) -> None:
    """Sleep for *seconds* unless the current token is cancelled first.

    Raises:
        ExecutionCancelled: If the token bound to this context fires
            before or during the sleep.
    """
    token = current_token.get()
    if token is None:
        time.sleep(seconds)
        return
    token.raise_if_cancelled()
    if token.wait(seconds):
        raise ExecutionCancelled("execution was cancelled while sleeping")
