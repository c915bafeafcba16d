"""
RetrySweeper -- Re-drives FAILED executions and surfaces dead letters.

Contract:
    ``retry_failed(retry_limit)`` re-invokes the runner's retry path for
    every FAILED execution with ``retry_count < retry_limit`` and reports
    dead letters: FAILED executions at or above the limit, and those the
    runner reports as never retryable again (stale occurrence, schedule
    limits reached, schedule closed), which are abandoned.

Architecture: household_recurring/services.  Uses the ScheduleStore for
    selection and escalation, the ExecutionRunner for the retries.

Invariants enforced:
    RT-6 -- One retry's failure never aborts the sweep.
    RT-7 -- Executions at the ceiling or abandoned are never re-invoked;
            each is escalated exactly once (``escalated_at``) and stays
            FAILED.
    RT-8 -- Escalation timestamps from the injected Clock.
"""

from __future__ import annotations

import threading
import time
from typing import Callable
from uuid import uuid4

from sqlalchemy.orm import Session, sessionmaker

from household_kernel.domain.clock import Clock, SystemClock
from household_kernel.exceptions import (
    ConcurrencyError,
    ExecutionNotFoundError,
    ExecutionNotRetryableError,
    MaxRetriesExceededError,
    ScheduleNotActiveError,
    ScheduleNotFoundError,
)
from household_kernel.logging_config import LogContext, get_logger

from household_recurring.domain.types import (
    ExecutionOutcome,
    OutcomeStatus,
    RetrySweepResult,
    ScheduleExecution,
)
from household_recurring.services.orchestrator import run_isolated
from household_recurring.services.runner import ExecutionRunner
from household_recurring.services.store import ScheduleStore

logger = get_logger("recurring.sweeper")

_SKIP_REASONS: tuple[tuple[type[Exception], str], ...] = (
    (MaxRetriesExceededError, "max_retries"),
    (ExecutionNotRetryableError, "not_retryable"),
    (ExecutionNotFoundError, "not_found"),
    (ScheduleNotFoundError, "not_found"),
    (ScheduleNotActiveError, "not_active"),
    (ConcurrencyError, "claim_conflict"),
)

# Runner SKIPPED reasons after which the occurrence can never run.
_FINAL_REASONS = frozenset({"stale_occurrence", "limit_reached", "schedule_closed"})


class RetrySweeper:
    """Retry driver for failed executions.

    Contract:
        - ``retry_failed()`` returns a ``RetrySweepResult``.
        - ``list_dead_letters()`` lists exhausted executions without
          retrying anything.
        - ``on_exhausted`` is called once per newly escalated execution.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        runner: ExecutionRunner,
        clock: Clock | None = None,
        retry_limit: int = 3,
        max_workers: int = 4,
        on_exhausted: Callable[[ScheduleExecution], None] | None = None,
        stop_event: threading.Event | None = None,
    ):
        self._session_factory = session_factory
        self._runner = runner
        self._clock = clock or SystemClock()
        self._retry_limit = retry_limit
        self._max_workers = max_workers
        self._on_exhausted = on_exhausted
        self._stop_event = stop_event

    @property
    def retry_limit(self) -> int:
        return self._retry_limit

    def retry_failed(self, retry_limit: int | None = None) -> RetrySweepResult:
        """Retry every FAILED execution below ``retry_limit``.

        Raises:
            ValueError: If ``retry_limit`` is negative.
        """
        limit = self._retry_limit if retry_limit is None else retry_limit
        if limit < 0:
            raise ValueError(f"retry_limit must be non-negative, got {limit}")

        start_time = time.monotonic()
        correlation_id = str(uuid4())

        with LogContext.bind(correlation_id=correlation_id):
            with self._session_factory() as session:
                failed = ScheduleStore(session).find_failed_executions(limit)

            logger.info(
                "retry_sweep_started",
                extra={"retry_limit": limit, "candidate_count": len(failed)},
            )

            outcomes = run_isolated(
                failed,
                lambda execution: self._retry_one(execution, limit),
                lambda execution: ExecutionOutcome(
                    schedule_id=execution.schedule_id,
                    status=OutcomeStatus.SKIPPED,
                    execution_id=execution.execution_id,
                    scheduled_date=execution.scheduled_date,
                    retry_count=execution.retry_count,
                    reason="shutdown",
                ),
                self._max_workers,
                self._stop_event,
            )

            exhausted, newly_escalated = self._surface_exhausted(limit, outcomes)

            result = RetrySweepResult(
                retry_limit=limit,
                outcomes=outcomes,
                exhausted=exhausted,
                newly_escalated=tuple(e.execution_id for e in newly_escalated),
                correlation_id=correlation_id,
                duration_ms=int((time.monotonic() - start_time) * 1000),
            )
            logger.info(
                "retry_sweep_completed",
                extra={
                    "retry_limit": limit,
                    "retried": result.retried,
                    "recovered": result.recovered,
                    "exhausted": len(result.exhausted),
                    "newly_escalated": len(result.newly_escalated),
                    "duration_ms": result.duration_ms,
                },
            )
        return result

    def list_dead_letters(self, retry_limit: int | None = None) -> tuple[ScheduleExecution, ...]:
        """FAILED executions at or above the retry ceiling, or abandoned."""
        limit = self._retry_limit if retry_limit is None else retry_limit
        with self._session_factory() as session:
            return ScheduleStore(session).find_exhausted_executions(limit)

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _retry_one(self, execution: ScheduleExecution, limit: int) -> ExecutionOutcome:
        try:
            return self._runner.retry(execution.execution_id, limit)
        except Exception as exc:
            for exc_type, reason in _SKIP_REASONS:
                if isinstance(exc, exc_type):
                    logger.info(
                        "retry_skipped",
                        extra={
                            "execution_id": str(execution.execution_id),
                            "reason": reason,
                            "error": str(exc),
                        },
                    )
                    return ExecutionOutcome(
                        schedule_id=execution.schedule_id,
                        status=OutcomeStatus.SKIPPED,
                        execution_id=execution.execution_id,
                        scheduled_date=execution.scheduled_date,
                        retry_count=execution.retry_count,
                        reason=reason,
                    )
            logger.exception(
                "retry_item_failed",
                extra={"execution_id": str(execution.execution_id)},
            )
            return ExecutionOutcome(
                schedule_id=execution.schedule_id,
                status=OutcomeStatus.FAILED,
                execution_id=execution.execution_id,
                scheduled_date=execution.scheduled_date,
                retry_count=execution.retry_count,
                reason=str(exc) or type(exc).__name__,
            )

    def _surface_exhausted(
        self, limit: int, outcomes: tuple[ExecutionOutcome, ...],
    ) -> tuple[tuple[ScheduleExecution, ...], tuple[ScheduleExecution, ...]]:
        """Abandon finished occurrences, report dead letters and escalate
        the ones not seen before (RT-7)."""
        now = self._clock.now()
        final = [
            o for o in outcomes
            if o.status == OutcomeStatus.SKIPPED
            and o.reason in _FINAL_REASONS
            and o.execution_id is not None
        ]
        with self._session_factory.begin() as session:
            store = ScheduleStore(session)
            for outcome in final:
                store.abandon_execution(
                    outcome.execution_id, outcome.reason, self._runner.actor_id,
                )
            exhausted = store.find_exhausted_executions(limit)
            fresh = tuple(e for e in exhausted if e.escalated_at is None)
            store.mark_escalated([e.execution_id for e in fresh], now)

        for execution in fresh:
            extra = {
                "schedule_id": str(execution.schedule_id),
                "execution_id": str(execution.execution_id),
                "scheduled_date": execution.scheduled_date,
                "error_message": execution.error_message,
            }
            if execution.abandon_reason is not None:
                logger.error(
                    "retry_abandoned",
                    extra={**extra, "abandon_reason": execution.abandon_reason},
                )
            else:
                error = MaxRetriesExceededError(
                    str(execution.execution_id), execution.retry_count, limit,
                )
                logger.error("retry_exhausted", extra=extra, exc_info=error)
            if self._on_exhausted is not None:
                try:
                    self._on_exhausted(execution)
                except Exception:
                    logger.exception(
                        "on_exhausted_callback_failed",
                        extra={"execution_id": str(execution.execution_id)},
                    )
        return exhausted, fresh
