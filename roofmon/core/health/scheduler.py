from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Callable, Dict, List

from roofmon.core.logger import get_logger


@dataclass
class _Task:
    key: str
    interval_seconds: float
    fn: Callable[[], None]
    stop: threading.Event
    thread: threading.Thread


class HealthCheckScheduler:
    """
    Cancellable periodic tasks keyed by name. One daemon thread per key, each
    waiting on its own Event so cancel() takes effect without waiting out the interval.
    """

    def __init__(self, *, logger=None):
        self.logger = get_logger(__name__, logger)
        self._lock = threading.Lock()
        self._tasks: Dict[str, _Task] = {}

    def schedule(self, key: str, interval_seconds: float, fn: Callable[[], None], *, run_immediately: bool = False) -> None:
        interval = float(interval_seconds)
        if interval <= 0:
            raise ValueError("interval_seconds must be > 0")
        self.cancel(key)
        stop = threading.Event()
        thread = threading.Thread(target=self._loop, args=(key, interval, fn, stop, run_immediately), name=f"health-{key}", daemon=True)
        task = _Task(key=key, interval_seconds=interval, fn=fn, stop=stop, thread=thread)
        with self._lock:
            self._tasks[key] = task
        thread.start()

    def cancel(self, key: str) -> bool:
        with self._lock:
            task = self._tasks.pop(key, None)
        if task is None:
            return False
        task.stop.set()
        if task.thread is not threading.current_thread():
            task.thread.join(timeout=2.0)
        return True

    def cancel_all(self) -> None:
        with self._lock:
            keys = list(self._tasks.keys())
        for k in keys:
            self.cancel(k)

    def is_scheduled(self, key: str) -> bool:
        with self._lock:
            return key in self._tasks

    def scheduled_keys(self) -> List[str]:
        with self._lock:
            return sorted(self._tasks.keys())

    def _loop(self, key: str, interval: float, fn: Callable[[], None], stop: threading.Event, run_immediately: bool) -> None:
        if run_immediately and not stop.is_set():
            self._run(key, fn)
        while not stop.wait(interval):
            self._run(key, fn)

    def _run(self, key: str, fn: Callable[[], None]) -> None:
        try:
            fn()
        except Exception:  # noqa: BLE001
            # the task keeps running after a failure
            self.logger.exception(f"Scheduled task {key} failed")
