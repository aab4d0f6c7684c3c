"""Coalesce interactive selection drags into one clipboard capture.

Terminals and some GUI toolkits copy every intermediate extension of a
mouse selection ("n", "no", "not", "not found"). The stabilizer holds such
related values back until the selection has stopped changing for one
window, then emits only the final value.

Two values are related when one strictly contains the other. Values
arriving quickly but unrelated by containment are not coalesced.
"""

import logging
import threading
from collections import deque
from collections.abc import Callable

from cliptrail.config import STABILIZE_TIMEOUT
from cliptrail.utils import truncate_text

logger = logging.getLogger(__name__)

TimerFactory = Callable[[float, Callable[[], None]], threading.Timer]


def is_related(value: str, buffer: str) -> bool:
    """True if one value is a strict substring of the other."""
    if len(value) == len(buffer):
        return False
    if len(value) > len(buffer):
        return buffer in value
    return value in buffer


class SelectionStabilizer:
    """Debounce state machine driven by the poll thread and a timer thread.

    All state lives behind one lock. Decided values are queued under that
    lock and handed to ``on_stable`` after it is released, so a slow
    consumer never blocks the poll thread's next decision. Only one thread
    delivers at a time and it drains the queue in order, so values reach
    ``on_stable`` in the order they were decided.

    A timer that was cancelled after it had already started waiting for the
    lock is recognised by its generation number and does nothing.
    """

    def __init__(
        self,
        on_stable: Callable[[str], None],
        timeout: float = STABILIZE_TIMEOUT,
        timer_factory: TimerFactory = threading.Timer,
    ):
        self._on_stable = on_stable
        self._timeout = timeout
        self._timer_factory = timer_factory
        self._lock = threading.RLock()
        self._pending: str | None = None
        self._last_stable = ""
        self._last_raw: str | None = None
        self._timer: threading.Timer | None = None
        self._generation = 0
        self._closed = False
        self._outbox: deque[str] = deque()
        self._delivery_lock = threading.Lock()

    @property
    def pending(self) -> str | None:
        with self._lock:
            return self._pending

    @property
    def last_stable(self) -> str:
        with self._lock:
            return self._last_stable

    def submit(self, value: str) -> bool:
        """Feed one raw clipboard value observed by the poller.

        Returns False when the value repeats the previous raw value.
        """
        with self._lock:
            if self._closed or value == self._last_raw:
                return False
            self._last_raw = value

            buffer = self._pending if self._pending is not None else self._last_stable
            if is_related(value, buffer):
                logger.debug("Selection still changing, holding back: %s", truncate_text(value))
                self._pending = value
                self._restart_timer()
                return True

            if self._timer is not None:
                logger.debug("Unrelated value supersedes pending selection")
                self._cancel_timer()
                self._pending = None
            self._emit(value)
        self._deliver()
        return True

    def flush(self) -> None:
        """Emit the pending value now instead of waiting for the window."""
        with self._lock:
            if self._pending is None:
                return
            self._cancel_timer()
            value = self._pending
            self._pending = None
            self._emit(value)
        self._deliver()

    def cancel(self) -> None:
        """Drop pending and undelivered values and stop the timer.

        A delivery already running in another thread finishes its current
        value.
        """
        with self._lock:
            self._closed = True
            self._cancel_timer()
            self._pending = None
            self._outbox.clear()

    def _restart_timer(self) -> None:
        self._cancel_timer()
        generation = self._generation
        timer = self._timer_factory(self._timeout, lambda: self._on_timer(generation))
        timer.daemon = True
        self._timer = timer
        timer.start()

    def _cancel_timer(self) -> None:
        self._generation += 1
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timer(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation or self._closed or self._pending is None:
                return
            self._timer = None
            value = self._pending
            self._pending = None
            logger.debug("Selection stabilized: %s", truncate_text(value))
            self._emit(value)
        self._deliver()

    def _emit(self, value: str) -> None:
        # caller holds self._lock
        self._last_stable = value
        self._outbox.append(value)

    def _deliver(self) -> None:
        while self._outbox:
            if not self._delivery_lock.acquire(blocking=False):
                # the thread holding it drains what we queued
                return
            try:
                while True:
                    try:
                        value = self._outbox.popleft()
                    except IndexError:
                        break
                    try:
                        self._on_stable(value)
                    except Exception:
                        logger.exception("Error handling stabilized clipboard value")
            finally:
                self._delivery_lock.release()
