"""
Cancellable periodic tasks.

Recurring series and scheduled wallet payments are driven by monitors
created through a Scheduler. ThreadScheduler runs each task on a daemon
thread; ManualScheduler runs tasks only when tick() is called, so tests
and embedding applications control time explicitly.
"""

from __future__ import annotations

import itertools
import logging
import threading
from typing import Callable, Optional, Protocol

logger = logging.getLogger(__name__)


class TaskHandle:
    """Handle returned to the caller; cancel() stops further runs."""

    def __init__(self, name: str, interval: float, fn: Callable[[], None]):
        self.name = name
        self.interval = interval
        self.fn = fn
        self._stopped = threading.Event()

    @property
    def active(self) -> bool:
        return not self._stopped.is_set()

    def cancel(self) -> None:
        self._stopped.set()

    def run_once(self) -> None:
        """Run the task body; errors are logged so the monitor keeps ticking."""
        if not self.active:
            return
        try:
            self.fn()
        except Exception:
            logger.exception("Monitor task %s failed", self.name)

    def wait(self, timeout: float) -> bool:
        return self._stopped.wait(timeout)


class Scheduler(Protocol):
    def schedule(self, name: str, interval: float, fn: Callable[[], None]) -> TaskHandle: ...


class ThreadScheduler:
    """Runs each task every `interval` seconds on its own daemon thread."""

    def schedule(self, name: str, interval: float, fn: Callable[[], None]) -> TaskHandle:
        if interval <= 0:
            raise ValueError("Monitor interval must be positive")
        handle = TaskHandle(name, interval, fn)

        def loop():
            while not handle.wait(interval):
                handle.run_once()
            logger.debug("Monitor %s stopped", name)

        thread = threading.Thread(target=loop, name=f"openpay-{name}", daemon=True)
        thread.start()
        logger.info("Monitor %s started (every %.1fs)", name, interval)
        return handle


class ManualScheduler:
    """Scheduler whose tasks run only on tick()."""

    def __init__(self):
        self._tasks: dict[int, TaskHandle] = {}
        self._ids = itertools.count()
        self._lock = threading.Lock()

    def schedule(self, name: str, interval: float, fn: Callable[[], None]) -> TaskHandle:
        handle = TaskHandle(name, interval, fn)
        with self._lock:
            self._tasks[next(self._ids)] = handle
        return handle

    def active_tasks(self, name: Optional[str] = None) -> list[TaskHandle]:
        with self._lock:
            handles = list(self._tasks.values())
        return [h for h in handles if h.active and (name is None or h.name == name)]

    def tick(self, name: Optional[str] = None) -> int:
        """Run every active task once (optionally only those with `name`)."""
        handles = self.active_tasks(name)
        for handle in handles:
            handle.run_once()
        with self._lock:
            self._tasks = {k: h for k, h in self._tasks.items() if h.active}
        return len(handles)
