"""
Periodic sync scheduler.

Owns the timer that drives SyncOrchestrator.sync_all_sources: one
immediate cycle on start, then one cycle every interval seconds.
"""

import logging
import threading
from datetime import datetime
from typing import Callable, Optional

from .sync_orchestrator import Clock, SyncOrchestrator, SyncResult, utc_now


logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 300
INITIAL_TIMEOUT = 60
BACKGROUND_TIMEOUT = 45


def _daemon_timer(delay: float, function: Callable[[], None]) -> threading.Timer:
    timer = threading.Timer(delay, function)
    timer.daemon = True
    return timer


class SyncScheduler:
    """
    Runs sync cycles on a fixed interval.

    The first cycle uses the longer initial timeout, later cycles the
    background timeout. timer_factory(delay, function) must return an
    object with start() and cancel(), like threading.Timer.
    """

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        interval: float = DEFAULT_INTERVAL,
        initial_timeout: float = INITIAL_TIMEOUT,
        background_timeout: float = BACKGROUND_TIMEOUT,
        clock: Clock = utc_now,
        timer_factory: Callable = _daemon_timer,
    ):
        self.orchestrator = orchestrator
        self.interval = interval
        self.initial_timeout = initial_timeout
        self.background_timeout = background_timeout
        self.clock = clock
        self._timer_factory = timer_factory

        self._lock = threading.Lock()
        self._cycle_lock = threading.Lock()
        self._timer = None
        self._running = False
        self._first_cycle = True

        self.cycles = 0
        self.last_run: Optional[datetime] = None

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Start the schedule with an immediate cycle."""
        with self._lock:
            if self._running:
                return
            self._running = True
            self._arm(0)
        logger.info("Sync scheduler started (interval %ss)", self.interval)

    def stop(self) -> None:
        """Cancel the timer and wait for an in-flight cycle to finish."""
        with self._lock:
            self._running = False
            timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()
        with self._cycle_lock:
            pass
        logger.info("Sync scheduler stopped")

    def _arm(self, delay: float) -> None:
        self._timer = self._timer_factory(delay, self._tick)
        self._timer.start()

    def _tick(self) -> None:
        if not self._running:
            return
        self.run_once()
        with self._lock:
            if self._running:
                self._arm(self.interval)

    def run_once(self) -> list[SyncResult]:
        """Run one sync cycle synchronously."""
        with self._cycle_lock:
            timeout = self.initial_timeout if self._first_cycle else self.background_timeout
            self._first_cycle = False
            try:
                results = self.orchestrator.sync_all_sources(timeout=timeout)
            except Exception:
                # Keep the schedule alive; the next cycle retries
                logger.exception("Sync cycle failed")
                results = []
            self.cycles += 1
            self.last_run = self.clock()
            return results
