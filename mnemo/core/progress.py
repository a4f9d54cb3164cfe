"""
Progress reporting and cooperative cancellation for long operations.

Long operations push ProgressEvent messages onto a ProgressChannel; the
caller (or a background job) drains them from any thread. Cancellation is
checked between batches via a CancellationToken.
"""

from __future__ import annotations

import queue
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Optional

from mnemo.core.errors import OperationCancelled
from mnemo.core.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class ProgressEvent:
    stage: str
    message: str
    fraction: Optional[float] = None
    ts: float = field(default_factory=time.time)


class ProgressChannel:
    """
    Thread-safe message channel for progress events.

    Both the pending queue and the history are bounded; the history keeps the
    most recent history_size events.
    """

    def __init__(self, maxsize: int = 1000, history_size: int = 200):
        self._queue: queue.Queue[ProgressEvent] = queue.Queue(maxsize=maxsize)
        self._history: deque[ProgressEvent] = deque(maxlen=history_size)
        self._lock = threading.Lock()

    def emit(self, stage: str, message: str, fraction: Optional[float] = None) -> None:
        event = ProgressEvent(stage=stage, message=message, fraction=fraction)
        with self._lock:
            self._history.append(event)
        logger.debug("[Progress] %s: %s", stage, message)
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            # Undrained events are still in the history
            pass

    def drain(self) -> list[ProgressEvent]:
        """Pop every pending event without blocking."""
        events = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                return events

    @property
    def history(self) -> list[ProgressEvent]:
        with self._lock:
            return list(self._history)

    def messages(self) -> list[str]:
        return [e.message for e in self.history]


class CancellationToken:
    """Best-effort cooperative cancellation flag."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled("operation cancelled")


def report(progress: Optional[ProgressChannel], stage: str, message: str,
           fraction: Optional[float] = None) -> None:
    """Emit to an optional channel."""
    if progress is not None:
        progress.emit(stage, message, fraction)


def check_cancelled(cancel: Optional[CancellationToken]) -> None:
    if cancel is not None:
        cancel.raise_if_cancelled()
