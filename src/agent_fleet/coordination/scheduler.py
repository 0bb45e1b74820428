"""Thread-based periodic ticks and cancellable polling waits."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from enum import Enum

logger = logging.getLogger(__name__)


class PollOutcome(str, Enum):
    SATISFIED = "satisfied"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    ABORTED = "aborted"


class Ticker:
    """Run ``callback`` every ``interval_seconds`` on a daemon thread.

    Callbacks never overlap: the next wait starts after the callback returns.
    Exceptions from the callback are logged and the ticker keeps going.
    """

    def __init__(
        self,
        *,
        name: str,
        interval_seconds: float,
        callback: Callable[[], None],
        run_immediately: bool = True,
    ) -> None:
        self.name = name
        self.interval_seconds = interval_seconds
        self._callback = callback
        self._run_immediately = run_immediately
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    def start(self) -> None:
        if self._thread is not None:
            raise RuntimeError(f"Ticker {self.name} already started")
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, daemon=True, name=self.name)
        self._thread.start()
        logger.debug("Ticker %s started (every %.1fs)", self.name, self.interval_seconds)

    def stop(self) -> None:
        """Ask the thread to exit; an in-progress callback is not interrupted."""

        self._stop.set()

    def join(self, timeout: float | None = None) -> bool:
        """Wait for the thread; ``True`` once it has exited."""

        thread = self._thread
        if thread is None:
            return True
        if thread is threading.current_thread():
            return False
        thread.join(timeout=timeout)
        return not thread.is_alive()

    def _run(self) -> None:
        if not self._run_immediately and self._stop.wait(timeout=self.interval_seconds):
            return
        while not self._stop.is_set():
            try:
                self._callback()
            except Exception:
                logger.exception("Ticker %s callback failed", self.name)
            if self._stop.wait(timeout=self.interval_seconds):
                break
        logger.debug("Ticker %s exited", self.name)


def poll_until(
    condition: Callable[[], bool],
    *,
    interval_seconds: float,
    timeout_seconds: float,
    cancel: threading.Event,
    abort: Callable[[], bool] | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> PollOutcome:
    """Check ``condition`` every interval until it holds, time runs out, or a stop arrives.

    ``cancel`` wakes the wait immediately. ``abort`` is evaluated once per
    poll, after ``condition``.
    """

    deadline = clock() + timeout_seconds
    while True:
        if cancel.is_set():
            return PollOutcome.CANCELLED
        if condition():
            return PollOutcome.SATISFIED
        if abort is not None and abort():
            return PollOutcome.ABORTED
        remaining = deadline - clock()
        if remaining <= 0:
            return PollOutcome.TIMED_OUT
        if cancel.wait(timeout=min(interval_seconds, remaining)):
            return PollOutcome.CANCELLED
