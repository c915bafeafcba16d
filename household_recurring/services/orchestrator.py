"""
DueScanOrchestrator -- Executes every due schedule with per-schedule isolation.

Contract:
    ``process_due(as_of)`` queries ``find_due(as_of)`` and runs the
    ExecutionRunner once per returned schedule.  A batch of N due schedules
    yields exactly N outcomes; one schedule's failure never prevents the
    others from running.

Architecture: household_recurring/services.  Uses the ScheduleStore for
    selection and the ExecutionRunner for execution.

Invariants enforced:
    RT-6  -- Per-schedule failure isolation (every exception is trapped
             into that schedule's outcome).
    RT-8  -- ``as_of`` defaults to the injected Clock's date.
    RT-10 -- Graceful shutdown: a set stop event skips items not yet
             started; items in flight complete.
"""

from __future__ import annotations

import contextvars
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import date
from typing import Callable, Sequence, TypeVar
from uuid import UUID, uuid4

from sqlalchemy.orm import Session, sessionmaker

from household_kernel.domain.clock import Clock, SystemClock
from household_kernel.exceptions import (
    ConcurrencyError,
    ScheduleNotActiveError,
    ScheduleNotFoundError,
)
from household_kernel.logging_config import LogContext, get_logger

from household_recurring.domain.types import (
    DueScanResult,
    ExecutionOutcome,
    OutcomeStatus,
)
from household_recurring.services.runner import ExecutionRunner
from household_recurring.services.store import ScheduleStore

logger = get_logger("recurring.orchestrator")

T = TypeVar("T")


def run_isolated(
    items: Sequence[T],
    work: Callable[[T], ExecutionOutcome],
    skipped: Callable[[T], ExecutionOutcome],
    max_workers: int,
    stop_event: threading.Event | None = None,
) -> tuple[ExecutionOutcome, ...]:
    """Run ``work`` over ``items`` on a bounded pool, preserving order.

    ``work`` must trap its own exceptions.  Items not yet started when
    ``stop_event`` is set are reported through ``skipped``.  With
    ``max_workers == 1`` everything runs inline on the calling thread.
    """

    def guarded(item: T) -> ExecutionOutcome:
        if stop_event is not None and stop_event.is_set():
            return skipped(item)
        return work(item)

    if max_workers <= 1 or len(items) <= 1:
        return tuple(guarded(item) for item in items)

    with ThreadPoolExecutor(
        max_workers=min(max_workers, len(items)),
        thread_name_prefix="recurring-worker",
    ) as pool:
        futures = [
            pool.submit(contextvars.copy_context().run, guarded, item)
            for item in items
        ]
        return tuple(f.result() for f in futures)


class DueScanOrchestrator:
    """Due-scan driver: select due schedules, execute each in isolation.

    Contract:
        - ``process_due()`` returns a ``DueScanResult`` and never raises
          for a per-schedule error.

    Non-goals:
        - Does NOT retry failed executions -- that is the RetrySweeper's job.
        - Does NOT manage background threads -- that is the scheduler's job.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        runner: ExecutionRunner,
        clock: Clock | None = None,
        max_workers: int = 4,
        stop_event: threading.Event | None = None,
    ):
        self._session_factory = session_factory
        self._runner = runner
        self._clock = clock or SystemClock()
        self._max_workers = max_workers
        self._stop_event = stop_event

    def process_due(self, as_of: date | None = None) -> DueScanResult:
        """Execute every schedule due on ``as_of`` (default: today)."""
        start_time = time.monotonic()
        effective_as_of = as_of or self._clock.today()
        correlation_id = str(uuid4())

        with LogContext.bind(correlation_id=correlation_id):
            with self._session_factory() as session:
                due = ScheduleStore(session).find_due(effective_as_of)

            logger.info(
                "due_scan_started",
                extra={"as_of": effective_as_of, "due_count": len(due)},
            )

            outcomes = run_isolated(
                [schedule.schedule_id for schedule in due],
                self._execute_one,
                lambda schedule_id: ExecutionOutcome(
                    schedule_id=schedule_id,
                    status=OutcomeStatus.SKIPPED,
                    reason="shutdown",
                ),
                self._max_workers,
                self._stop_event,
            )

            result = DueScanResult(
                as_of=effective_as_of,
                outcomes=outcomes,
                correlation_id=correlation_id,
                duration_ms=int((time.monotonic() - start_time) * 1000),
            )
            logger.info(
                "due_scan_completed",
                extra={
                    "as_of": effective_as_of,
                    "total": result.total,
                    "succeeded": result.succeeded,
                    "failed": result.failed,
                    "skipped": result.skipped,
                    "duration_ms": result.duration_ms,
                },
            )
        return result

    def _execute_one(self, schedule_id: UUID) -> ExecutionOutcome:
        """Run one schedule; every exception becomes its outcome (RT-6)."""
        try:
            return self._runner.execute(schedule_id)
        except ScheduleNotActiveError as exc:
            # Paused or cancelled between selection and claim.
            return self._skipped(schedule_id, "not_active", exc)
        except ScheduleNotFoundError as exc:
            return self._skipped(schedule_id, "not_found", exc)
        except ConcurrencyError as exc:
            return self._skipped(schedule_id, "claim_conflict", exc)
        except Exception as exc:
            logger.exception(
                "due_scan_item_failed", extra={"schedule_id": str(schedule_id)},
            )
            return ExecutionOutcome(
                schedule_id=schedule_id,
                status=OutcomeStatus.FAILED,
                reason=str(exc) or type(exc).__name__,
            )

    @staticmethod
    def _skipped(
        schedule_id: UUID, reason: str, exc: Exception,
    ) -> ExecutionOutcome:
        logger.info(
            "due_scan_item_skipped",
            extra={"schedule_id": str(schedule_id), "reason": reason, "error": str(exc)},
        )
        return ExecutionOutcome(
            schedule_id=schedule_id, status=OutcomeStatus.SKIPPED, reason=reason,
        )
