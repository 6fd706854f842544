"""
Supervisor
==========

Steady-state loop of process 1: reap orphans, notice dead services and
contract expired stretches on a fixed polling interval.

There is no restart logic; a dead service is logged and forgotten.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import List, Optional

from waterlight.errors import NotFound
from waterlight.membrane import MembraneController
from waterlight.store import StateStore

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    """What one supervision pass found."""
    timestamp: float
    reaped: List[int] = field(default_factory=list)
    died: List[str] = field(default_factory=list)
    contracted: List[str] = field(default_factory=list)


class Supervisor:
    """
    Periodic supervision of runtime records.

    Runs on the caller's thread via run(), or in the background via start().
    Either way the stop event is the only way out.
    """

    def __init__(
        self,
        store: StateStore,
        membranes: MembraneController,
        interval_sec: float = 5.0,
        stop_event: Optional[threading.Event] = None,
    ):
        self.store = store
        self.membranes = membranes
        self.launcher = membranes.launcher
        self.interval_sec = interval_sec

        self._stop = stop_event or threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._cycle_count = 0
        self._deaths = 0

    @property
    def stop_event(self) -> threading.Event:
        return self._stop

    def sweep(self) -> SweepResult:
        """One supervision pass."""
        result = SweepResult(timestamp=time.time())
        result.reaped = self.launcher.reap()

        for record in self.store.list_runtime():
            if self.launcher.alive(record.pid):
                continue
            logger.warning(f"Service died: {record.service} (PID {record.pid})")
            self.store.delete_runtime(record.service)
            self.membranes.mark_ruptured(record.service)
            result.died.append(record.service)
            self._deaths += 1

        for name in self.membranes.expired_stretches(result.timestamp):
            try:
                self.membranes.contract(name)
                logger.info(f"Stretch on {name} expired, membrane contracted")
                result.contracted.append(name)
            except NotFound:
                continue

        self._cycle_count += 1
        return result

    def run(self) -> None:
        """Supervise until the stop event is set."""
        logger.info(f"Entering steady-state supervision (interval: {self.interval_sec}s)")
        while not self._stop.is_set():
            try:
                self.sweep()
            except Exception as e:
                # Process 1 must keep supervising whatever goes wrong in one pass.
                logger.exception(f"Supervision error: {e}")
            self._stop.wait(timeout=self.interval_sec)
        logger.info(f"Supervision stopped ({self._cycle_count} cycles)")

    def start(self) -> None:
        """Supervise on a background thread."""
        if self._thread is not None and self._thread.is_alive():
            logger.warning("Supervisor already running")
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self.run, daemon=True, name="WaterlightSupervisor")
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=timeout)

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def get_stats(self) -> dict:
        return {
            "cycles": self._cycle_count,
            "deaths": self._deaths,
            "tracked": len(self.store.list_runtime()),
            "interval_sec": self.interval_sec,
        }
