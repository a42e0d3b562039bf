"""
Gatekeeper Scheduler

Explicit periodic tasks for the pipeline's housekeeping (state sweep,
threat-level tick). Each task runs on its own daemon thread and waits on
a shutdown Event between runs, so stopping is prompt.

Tests call `run_once()` instead of waiting on real time.
"""

import logging
import threading
from typing import Callable, Dict, List, Optional


logger = logging.getLogger(__name__)


class PeriodicTask:
    """Calls `fn` every `interval_seconds` until stopped."""

    def __init__(self, name: str, interval_seconds: float, fn: Callable[[], object]) -> None:
        if interval_seconds <= 0:
            raise ValueError(f"interval_seconds must be positive, got {interval_seconds}")
        self.name = name
        self.interval_seconds = interval_seconds
        self.fn = fn
        self.runs = 0
        self.failures = 0
        self._shutdown_flag = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> bool:
        """Run the task body. Failures are logged and never propagate."""
        try:
            self.fn()
            return True
        except Exception:
            self.failures += 1
            logger.exception(f"Periodic task {self.name} failed")
            return False
        finally:
            self.runs += 1

    def start(self) -> None:
        if self.running:
            return
        self._shutdown_flag.clear()
        self._thread = threading.Thread(
            target=self._loop,
            name=f"gatekeeper-{self.name}",
            daemon=True,
        )
        self._thread.start()
        logger.info(f"Periodic task {self.name} started (every {self.interval_seconds}s)")

    def stop(self, timeout: float = 5.0) -> None:
        self._shutdown_flag.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def _loop(self) -> None:
        # wait() returns True once stop() sets the flag
        while not self._shutdown_flag.wait(self.interval_seconds):
            self.run_once()


class Scheduler:
    """Owns a set of PeriodicTasks and starts/stops them together."""

    def __init__(self) -> None:
        self._tasks: Dict[str, PeriodicTask] = {}

    def add(self, name: str, interval_seconds: float, fn: Callable[[], object]) -> PeriodicTask:
        if name in self._tasks:
            raise ValueError(f"Task {name!r} already scheduled")
        task = PeriodicTask(name, interval_seconds, fn)
        self._tasks[name] = task
        return task

    def get(self, name: str) -> Optional[PeriodicTask]:
        return self._tasks.get(name)

    @property
    def tasks(self) -> List[PeriodicTask]:
        return list(self._tasks.values())

    def run_all_once(self) -> None:
        for task in self._tasks.values():
            task.run_once()

    def start(self) -> None:
        for task in self._tasks.values():
            task.start()

    def stop(self) -> None:
        for task in self._tasks.values():
            task.stop()
        logger.info("Scheduler stopped")
