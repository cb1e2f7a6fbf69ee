"""
Periodic background task running in a daemon thread.

    start() ──> wait initial_delay ──> tick() ──> wait interval ──> tick() ...
    stop()  ──> wakes the wait immediately, joins the thread

An exception in tick() is logged and the next tick runs as scheduled; a
store outage must never kill the loop.
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Optional

logger = logging.getLogger(__name__)


class PeriodicTask(ABC):

    def __init__(self, name: str, interval: float, initial_delay: float = 0.0):
        self.name = name
        self._interval = interval
        self._initial_delay = initial_delay
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @abstractmethod
    def tick(self) -> None:
        """One unit of periodic work."""
        ...

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            logger.warning(f"{self.name} already running")
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name=self.name, daemon=True)
        self._thread.start()
        logger.info(
            f"Started {self.name} (every {self._interval}s, first run in {self._initial_delay}s)"
        )

    def stop(self, timeout: Optional[float] = 10.0) -> None:
        """Signal the loop to stop; the current tick finishes first."""
        if self._thread is None:
            return
        self._stop_event.set()
        self._thread.join(timeout)
        self._thread = None
        logger.info(f"{self.name} stopped")

    def _run_loop(self) -> None:
        if self._stop_event.wait(self._initial_delay):
            return
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception as e:
                logger.error(f"{self.name} error: {e}", exc_info=True)
            if self._stop_event.wait(self._interval):
                break
