# cancellation.py
# Cooperative cancellation and pause signalling.
#
# One CancellationToken is threaded through a whole run: backoff sleeps, the
# pause gate, strategy generator calls and driver calls all observe it.

import threading
import time
from concurrent.futures import Executor, Future
from concurrent.futures import wait as wait_futures
from typing import Any, Callable

from selfheal.errors import AttemptTimeoutError, ToolCancelledError

# How often an in-flight call is checked for cancellation.
POLL_INTERVAL = 0.05


class CancellationToken:
    """Thread-safe, one-way cancellation flag. Optionally linked to a parent."""

    def __init__(self, parent: "CancellationToken | None" = None) -> None:
        self._event = threading.Event()
        self._parent = parent

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._parent is not None and self._parent.cancelled:
            self._event.set()
            return True
        return False

    def sleep(self, seconds: float) -> bool:
        """
        Sleep up to `seconds`, waking immediately on cancellation.

        Returns True if the sleep was interrupted by cancellation.
        """
        if self._parent is None:
            return self._event.wait(max(seconds, 0.0))
        end = time.monotonic() + max(seconds, 0.0)
        while not self.cancelled:
            remaining = end - time.monotonic()
            if remaining <= 0:
                return False
            self._event.wait(min(remaining, POLL_INTERVAL))
        return True

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise ToolCancelledError("Cancellation requested.")


class PauseGate:
    """
    Open/closed gate checked at step boundaries.

    wait() blocks while the gate is closed and returns False if the token was
    cancelled while waiting.
    """

    def __init__(self) -> None:
        self._open = threading.Event()
        self._open.set()

    def close(self) -> None:
        self._open.clear()

    def open(self) -> None:
        self._open.set()

    @property
    def is_open(self) -> bool:
        return self._open.is_set()

    def wait(self, token: CancellationToken) -> bool:
        while not self._open.wait(POLL_INTERVAL):
            if token.cancelled:
                return False
        return not token.cancelled


def call_interruptibly(
    pool: Executor,
    fn: Callable[..., Any],
    *args: Any,
    timeout: float,
    token: CancellationToken,
) -> Any:
    """
    Run `fn` on `pool` and wait for it, honouring a timeout and cancellation.

    The call itself cannot be preempted: on timeout or cancellation it is left
    to finish in the background and its outcome is discarded.
    """
    future: Future = pool.submit(fn, *args)
    deadline = time.monotonic() + timeout
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            future.cancel()
            raise AttemptTimeoutError(f"Call timed out after {timeout:.2f}s.")
        done, _ = wait_futures([future], timeout=min(remaining, POLL_INTERVAL))
        if done:
            if token.cancelled:
                raise ToolCancelledError("Cancelled while the call was in flight; result discarded.")
            return future.result()
        if token.cancelled:
            future.cancel()
            raise ToolCancelledError("Cancelled while the call was in flight.")
