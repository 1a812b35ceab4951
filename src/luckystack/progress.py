"""
Progress reporting and cooperative cancellation.

Workers never call the observer directly: they enqueue ``ProgressEvent``
objects and continue, and a single dispatcher thread delivers them to the
callback. Cancellation is a set-once flag polled between units of work.
"""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass
from typing import Callable

from .errors import PipelineCancelled

logger = logging.getLogger(__name__)

_STOP = object()


@dataclass(frozen=True)
class ProgressEvent:
    """One progress notification."""

    stage: str
    percent: float
    message: str = ""


ProgressCallback = Callable[[ProgressEvent], None]


class CancellationToken:
    """Shared, set-once cancellation flag."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        """Request cancellation. Idempotent."""
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        """Raise PipelineCancelled if cancellation was requested."""
        if self._event.is_set():
            raise PipelineCancelled("Cancellation requested")


class ProgressReporter:
    """
    Non-blocking progress channel.

    Example
    -------
    >>> reporter = ProgressReporter(print)
    >>> reporter.start()
    >>> reporter.emit("stacking", 50.0, "band 4/8")
    >>> reporter.close()
    """

    def __init__(self, callback: ProgressCallback | None = None, every: int = 50):
        self.callback = callback
        self.every = max(1, every)
        self._queue: queue.SimpleQueue = queue.SimpleQueue()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        """Start the dispatcher thread (no-op without a callback)."""
        if self.callback is None or self._thread is not None:
            return
        self._thread = threading.Thread(
            target=self._dispatch, name="luckystack-progress", daemon=True
        )
        self._thread.start()

    def emit(self, stage: str, percent: float, message: str = "") -> None:
        """Enqueue an event and return immediately."""
        if self.callback is None:
            return
        self._queue.put(ProgressEvent(stage, float(min(max(percent, 0.0), 100.0)), message))

    def step(self, stage: str, done: int, total: int, unit: str = "frame") -> None:
        """Emit at bounded granularity: every ``every`` units and on the last one."""
        if total <= 0:
            return
        if done % self.every == 0 or done == total:
            self.emit(stage, 100.0 * done / total, f"{unit} {done}/{total}")

    def close(self) -> None:
        """Flush pending events and stop the dispatcher."""
        if self._thread is None:
            return
        self._queue.put(_STOP)
        self._thread.join()
        self._thread = None

    def __enter__(self) -> ProgressReporter:
        self.start()
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _dispatch(self) -> None:
        while True:
            event = self._queue.get()
            if event is _STOP:
                return
            try:
                self.callback(event)
            except Exception:
                # Observer bugs must not stall or kill the pipeline
                logger.exception("Progress callback raised for %s", event)
