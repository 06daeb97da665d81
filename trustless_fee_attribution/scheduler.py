"""Timers that trigger discovery and settlement on every watcher."""
from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Iterable, List, Optional

from .watcher import EntityWatcher

_LOGGER = logging.getLogger(__name__)


class FlushScheduler:
    """Drive the fixed-interval flush, the adaptive window check and the poll tick.

    The scheduler never touches ledger state; it reads published watcher
    status and enqueues commands. Intervals of ``0`` disable that trigger.
    """

    def __init__(
        self,
        watchers: Callable[[], Iterable[EntityWatcher]],
        *,
        flush_interval: float = 30.0,
        adaptive_interval: float = 5.0,
        poll_interval: float = 15.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._watchers = watchers
        self.flush_interval = flush_interval
        self.adaptive_interval = adaptive_interval
        self.poll_interval = poll_interval
        self._clock = clock
        self._schedule_from(clock())
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _schedule_from(self, start: float) -> None:
        self._next_flush = start + self.flush_interval if self.flush_interval > 0 else None
        self._next_adaptive = start + self.adaptive_interval if self.adaptive_interval > 0 else None
        self._next_poll = start + self.poll_interval if self.poll_interval > 0 else None

    def run_pending(self, now: Optional[float] = None) -> List[str]:
        """Fire every trigger that is due at ``now`` and return their names."""

        now = self._clock() if now is None else now
        fired: List[str] = []
        if self._next_poll is not None and now >= self._next_poll:
            self._next_poll = now + self.poll_interval
            for watcher in self._watchers():
                watcher.notify_activity()
            fired.append("poll")
        if self._next_adaptive is not None and now >= self._next_adaptive:
            self._next_adaptive = now + self.adaptive_interval
            for watcher in self._watchers():
                if watcher.status().event_count > 0:
                    watcher.request_window_check()
            fired.append("adaptive")
        if self._next_flush is not None and now >= self._next_flush:
            self._next_flush = now + self.flush_interval
            due = [watcher for watcher in self._watchers() if watcher.status().fee_amount > 0]
            if due:
                _LOGGER.info("Flushing %d token(s)", len(due))
            else:
                _LOGGER.debug("No pending fees to flush")
            for watcher in due:
                watcher.request_flush("interval")
            fired.append("flush")
        return fired

    def seconds_until_next(self, now: Optional[float] = None) -> Optional[float]:
        now = self._clock() if now is None else now
        deadlines = [d for d in (self._next_flush, self._next_adaptive, self._next_poll) if d is not None]
        if not deadlines:
            return None
        return max(0.0, min(deadlines) - now)

    def flush_all(self, reason: str = "manual") -> None:
        for watcher in self._watchers():
            if watcher.status().fee_amount > 0:
                watcher.request_flush(reason)

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            self.run_pending()
            delay = self.seconds_until_next()
            if delay is None:
                self._stop_event.wait()
                break
            self._stop_event.wait(delay)

    def start(self) -> None:
        if self.is_alive():
            return
        self._stop_event.clear()
        self._schedule_from(self._clock())
        self._thread = threading.Thread(target=self._loop, name="flush-scheduler", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()


__all__ = ["FlushScheduler"]
