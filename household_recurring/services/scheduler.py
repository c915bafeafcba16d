"""
RecurringScheduler -- In-process background loop for due-scans and retries.

Contract:
    Fires ``DueScanOrchestrator.process_due()`` and
    ``RetrySweeper.retry_failed()`` on two independent cadences from one
    daemon thread.

Architecture: household_recurring/services.  Drives the orchestrator and
    sweeper; owns no persistence of its own.

Invariants enforced:
    RT-6  -- A failing tick is logged and the loop keeps running.
    RT-10 -- Graceful shutdown (the stop event is shared with the
             orchestrator and sweeper, so pending items are skipped and
             the item in flight completes).

Non-goals:
    - NOT a distributed scheduler (no leader election); concurrent
      schedulers are made safe by the per-schedule claim instead.
"""

from __future__ import annotations

import threading
import time

from household_kernel.logging_config import get_logger

from household_recurring.domain.types import DueScanResult, RetrySweepResult
from household_recurring.services.orchestrator import DueScanOrchestrator
from household_recurring.services.sweeper import RetrySweeper

logger = get_logger("recurring.scheduler")


class RecurringScheduler:
    """Polling scheduler for the recurring engine.

    Contract:
        - ``tick()`` runs whatever is due now (public for testing).
        - ``start()`` / ``stop()`` for background thread operation.
    """

    def __init__(
        self,
        orchestrator: DueScanOrchestrator,
        sweeper: RetrySweeper,
        stop_event: threading.Event,
        due_scan_interval_seconds: float = 3600,
        retry_interval_seconds: float = 900,
    ):
        self._orchestrator = orchestrator
        self._sweeper = sweeper
        self._stop_event = stop_event
        self._due_scan_interval = due_scan_interval_seconds
        self._retry_interval = retry_interval_seconds
        self._next_scan_at = 0.0
        self._next_retry_at = 0.0
        self._thread: threading.Thread | None = None

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def tick(self) -> tuple[DueScanResult | None, RetrySweepResult | None]:
        """Run the due-scan and/or retry sweep if their cadence has elapsed.

        Returns whichever results were produced; ``None`` for a cadence
        that was not due or whose run failed.
        """
        now = time.monotonic()
        scan_result = None
        sweep_result = None

        if now >= self._next_scan_at:
            self._next_scan_at = now + self._due_scan_interval
            try:
                scan_result = self._orchestrator.process_due()
            except Exception:
                logger.exception("due_scan_tick_failed")

        if now >= self._next_retry_at and not self._stop_event.is_set():
            self._next_retry_at = now + self._retry_interval
            try:
                sweep_result = self._sweeper.retry_failed()
            except Exception:
                logger.exception("retry_sweep_tick_failed")

        return scan_result, sweep_result

    def start(self) -> None:
        """Start the scheduler in a background thread (RT-10)."""
        if self._thread is not None and self._thread.is_alive():
            return

        self._stop_event.clear()
        self._next_scan_at = 0.0
        self._next_retry_at = 0.0
        self._thread = threading.Thread(
            target=self._run_loop,
            name="recurring-scheduler",
            daemon=True,
        )
        self._thread.start()
        logger.info(
            "scheduler_started",
            extra={
                "due_scan_interval": self._due_scan_interval,
                "retry_interval": self._retry_interval,
            },
        )

    def stop(self, timeout: float = 30.0) -> None:
        """Signal stop and wait for the scheduler to finish (RT-10).

        Args:
            timeout: Max seconds to wait for the thread to finish.
        """
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        logger.info("scheduler_stopped")

    def wait(self) -> None:
        """Block until the loop exits (after ``stop()`` or a signal)."""
        while self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=1.0)

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _run_loop(self) -> None:
        """Background polling loop. Exits when the stop event is set."""
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("scheduler_tick_exception")
            wake_at = min(self._next_scan_at, self._next_retry_at)
            self._stop_event.wait(timeout=max(wake_at - time.monotonic(), 0.0))
