"""
Background timers.

Each PeriodicTask runs its callable on a daemon thread every ``interval``
seconds until stopped. The next run is only scheduled after the current one
finishes, so runs of the same task never overlap. Failures are logged and the
task keeps going.
"""

import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from loguru import logger


@dataclass
class TaskStats:
    """Run bookkeeping for one periodic task."""
    run_count: int = 0
    error_count: int = 0
    last_error: Optional[str] = None


class PeriodicTask:
    """
    Fire-and-forget periodic task on a daemon thread.

    Attributes:
        name: Task name (used for the thread name and in logs)
        interval: Seconds between runs
        stats: Run counters
    """

    def __init__(self, name: str, func: Callable[[], object], interval: float):
        """
        Initialize task.

        Args:
            name: Task name
            func: Callable run on every tick
            interval: Seconds between runs
        """
        if interval <= 0:
            raise ValueError("interval must be positive")

        self.name = name
        self.interval = interval
        self.stats = TaskStats()
        self._func = func
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=f"gatekeeper-{self.name}", daemon=True)
        self._thread.start()
        logger.debug(f"Periodic task started: {self.name} (every {self.interval}s)")

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        self._thread = None

    def run_once(self) -> None:
        """Run the task body now, catching and logging any failure."""
        try:
            self._func()
            self.stats.run_count += 1
        except Exception as e:
            self.stats.error_count += 1
            self.stats.last_error = str(e)
            logger.exception(f"Periodic task '{self.name}' failed: {e}")

    def _loop(self) -> None:
        while not self._stop.wait(self.interval):
            self.run_once()


@dataclass
class Scheduler:
    """Owns a set of periodic tasks and starts/stops them together."""
    tasks: Dict[str, PeriodicTask] = field(default_factory=dict)

    def register(self, name: str, func: Callable[[], object], interval: float) -> PeriodicTask:
        if name in self.tasks:
            raise ValueError(f"Task already registered: {name}")
        task = PeriodicTask(name, func, interval)
        self.tasks[name] = task
        return task

    def start(self) -> None:
        for task in self.tasks.values():
            task.start()

    def stop(self) -> None:
        for task in self.tasks.values():
            task.stop()

    def running_tasks(self) -> List[str]:
        return [name for name, task in self.tasks.items() if task.running]
