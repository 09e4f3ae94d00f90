"""Background triggers for the scan runner: manual, periodic and startup."""

from __future__ import annotations

import logging
import threading
import time
from typing import Optional

from .runner import ScanRunner

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 2 * 60 * 60
DEFAULT_STARTUP_DELAY_SECONDS = 10


class ScanScheduler:
    """Runs scans on a worker thread with a single-slot request queue.

    A manual trigger arriving while a scan is pending or running is coalesced
    into it and reported back as not accepted.
    """

    def __init__(
        self,
        runner: ScanRunner,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        startup_delay_seconds: Optional[float] = DEFAULT_STARTUP_DELAY_SECONDS,
    ):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.runner = runner
        self.interval_seconds = interval_seconds
        self.startup_delay_seconds = startup_delay_seconds
        self._lock = threading.Lock()
        self._wake = threading.Event()
        self._stopped = threading.Event()
        self._pending = False
        self._busy = False
        self._thread: Optional[threading.Thread] = None

    @property
    def alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.alive:
            return
        self._stopped.clear()
        self._thread = threading.Thread(target=self._loop, name="busradar-scheduler",
                                        daemon=True)
        self._thread.start()
        logger.info(
            "Scheduler started (interval %ss, startup delay %ss)",
            self.interval_seconds, self.startup_delay_seconds,
        )

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stopped.set()
        self._wake.set()
        if self._thread is not None:
            self._thread.join(timeout)
        logger.info("Scheduler stopped")

    def trigger(self) -> bool:
        """Request a scan without waiting for it. False if one is already in flight."""
        with self._lock:
            if self._pending or self._busy or self.runner.running:
                logger.info("Scan already pending or running; trigger coalesced")
                return False
            self._pending = True
        self._wake.set()
        logger.info("Manual scan requested")
        return True

    def wait_idle(self, timeout: float) -> bool:
        """Block until no scan is pending or running. Used for graceful shutdown."""
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            with self._lock:
                if not self._pending and not self._busy:
                    return True
            time.sleep(0.01)
        return False

    def _loop(self) -> None:
        first_delay = (
            self.startup_delay_seconds
            if self.startup_delay_seconds is not None
            else self.interval_seconds
        )
        next_run = time.monotonic() + first_delay

        while not self._stopped.is_set():
            self._wake.wait(max(0.0, next_run - time.monotonic()))
            if self._stopped.is_set():
                break

            with self._lock:
                self._wake.clear()
                requested = self._pending
                due = time.monotonic() >= next_run
                if not requested and not due:
                    continue
                self._pending = False
                self._busy = True

            if due:
                next_run = time.monotonic() + self.interval_seconds
                logger.info("Running scheduled bus check")
            try:
                summary = self.runner.run()
                logger.info("Scan %s at %s", summary.status, summary.executed_at)
            except Exception:  # noqa: BLE001
                logger.exception("Scan raised unexpectedly")
            finally:
                with self._lock:
                    self._busy = False
