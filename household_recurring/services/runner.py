"""
ExecutionRunner -- One execution attempt against one due occurrence.

Contract:
    ``execute(schedule_id)`` realizes the schedule's current occurrence as a
    ledger transaction; ``retry(execution_id, retry_limit)`` re-drives a
    FAILED occurrence.  Both return an ``ExecutionOutcome``.  Ledger
    failures are contained: they are persisted on the execution record and
    reported as a FAILED outcome, never raised.

Steps (each DB step is its own short transaction):
    1. Claim   -- compare-and-swap claim on the cursor, PENDING record.
                  An occurrence beyond ``max_executions``/``end_date``
                  is never claimed; the schedule moves to COMPLETED.
    2. Invoke  -- ledger call on its own thread under a bounded timeout,
                  outside any transaction.  The timeout starts once a
                  ledger call slot is held.
    3. Settle  -- success: record COMPLETED + cursor advance + claim
                  release in ONE transaction.  Failure: record FAILED +
                  claim release; cursor untouched.

Architecture: household_recurring/services.  Imports from
    household_recurring.domain, household_recurring.collaborators and the
    ScheduleStore.

Invariants enforced:
    RT-2 -- Cursor moves only in the success settle, or past an occurrence
            whose COMPLETED record is already counted.
    RT-3 -- Claim before the ledger call; a second picker is rejected.
    RT-4 -- Success settle is a single transaction keyed on the claim.
    RT-5 -- One execution record per occurrence, reused by retries.
    RT-8 -- All timestamps from the injected Clock.

Failure modes:
    - ScheduleNotFoundError / ScheduleNotActiveError from step 1.
    - ScheduleClaimConflictError when another worker owns the occurrence
      or the claim was lost before settling.
    - ExecutionNotFoundError / ExecutionNotRetryableError /
      MaxRetriesExceededError from ``retry()``.

Audit relevance:
    A crash between the ledger call and the settle leaves a PENDING record
    and an expired claim.  The next due-scan resumes it with the same
    idempotency key, so a ledger honouring the key records it once.  The
    same key covers a timed-out call that still lands after its record
    was marked FAILED.
"""

from __future__ import annotations

import contextvars
import threading
import time
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from uuid import UUID, uuid4

from sqlalchemy.orm import Session, sessionmaker

from household_kernel.domain.clock import Clock, SystemClock
from household_kernel.exceptions import (
    ExecutionFailedError,
    ExecutionNotRetryableError,
    MaxRetriesExceededError,
    ScheduleClaimConflictError,
    ScheduleNotActiveError,
)
from household_kernel.logging_config import LogContext, get_logger

from household_recurring.collaborators import (
    LedgerGateway,
    TransactionRef,
    TransactionRequest,
)
from household_recurring.domain.lifecycle import TERMINAL_STATUSES, limits_reached
from household_recurring.domain.recurrence import next_date
from household_recurring.domain.types import (
    ExecutionOutcome,
    ExecutionStatus,
    OutcomeStatus,
    RecurringSchedule,
    ScheduleExecution,
    ScheduleStatus,
)
from household_recurring.services.store import ScheduleStore

logger = get_logger("recurring.runner")


def idempotency_key(schedule_id: UUID, scheduled_date: date) -> str:
    """Ledger idempotency key of one occurrence."""
    return f"recurring:{schedule_id}:{scheduled_date.isoformat()}"


@dataclass(frozen=True)
class _ClaimedAttempt:
    """A claimed occurrence ready for the ledger call."""

    schedule: RecurringSchedule
    execution: ScheduleExecution
    token: UUID


def _skipped(
    schedule_id: UUID,
    scheduled_date: date,
    reason: str,
    execution: ScheduleExecution | None = None,
    next_execution_date: date | None = None,
) -> ExecutionOutcome:
    return ExecutionOutcome(
        schedule_id=schedule_id,
        status=OutcomeStatus.SKIPPED,
        execution_id=execution.execution_id if execution is not None else None,
        scheduled_date=scheduled_date,
        next_execution_date=next_execution_date,
        retry_count=execution.retry_count if execution is not None else 0,
        reason=reason,
    )


class ExecutionRunner:
    """Runs single execution attempts under a per-schedule claim.

    Contract:
        - ``execute()`` for the schedule's current occurrence.
        - ``retry()`` for a FAILED occurrence below the retry ceiling.
        - ``close()`` refuses further ledger calls.

    At most ``max_concurrent_ledger_calls`` ledger calls run at once,
    counting timed-out calls that have not returned yet.

    Non-goals:
        - Does NOT select due schedules -- that is the orchestrator's job.
        - Does NOT authorize -- it runs as the system principal.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        ledger: LedgerGateway,
        actor_id: UUID,
        clock: Clock | None = None,
        ledger_timeout_seconds: float | None = 30.0,
        claim_ttl_seconds: int = 600,
        max_concurrent_ledger_calls: int = 16,
    ):
        self._session_factory = session_factory
        self._ledger = ledger
        self._actor_id = actor_id
        self._clock = clock or SystemClock()
        self._ledger_timeout = ledger_timeout_seconds
        self._claim_ttl = timedelta(seconds=claim_ttl_seconds)
        self._ledger_slots = threading.BoundedSemaphore(max_concurrent_ledger_calls)
        self._closed = False

    @property
    def actor_id(self) -> UUID:
        return self._actor_id

    def close(self) -> None:
        self._closed = True

    # -------------------------------------------------------------------------
    # Public entry points
    # -------------------------------------------------------------------------

    def execute(self, schedule_id: UUID) -> ExecutionOutcome:
        """Execute the schedule's current occurrence.

        Raises:
            ScheduleNotFoundError: Unknown schedule.
            ScheduleNotActiveError: Schedule is not ACTIVE.
            ScheduleClaimConflictError: Another worker owns the occurrence.
        """
        start_time = time.monotonic()
        with LogContext.bind(schedule_id=schedule_id):
            claimed = self._claim_occurrence(schedule_id)
            if isinstance(claimed, ExecutionOutcome):
                return claimed
            return self._run_attempt(claimed, start_time)

    def retry(self, execution_id: UUID, retry_limit: int) -> ExecutionOutcome:
        """Re-drive a FAILED occurrence, reusing its execution record.

        The retry targets the record's own ``scheduled_date``; the cursor
        is never recomputed.  Outcomes that end the occurrence for good
        are reported SKIPPED: ``stale_occurrence`` when the cursor moved
        away, ``limit_reached`` when the schedule limits forbid it,
        ``schedule_closed`` when the schedule is CANCELLED or COMPLETED.

        Raises:
            ExecutionNotFoundError: Unknown execution.
            ExecutionNotRetryableError: Record is not FAILED, or abandoned.
            MaxRetriesExceededError: ``retry_count`` reached ``retry_limit``.
            ScheduleNotActiveError: Owning schedule is PAUSED.
            ScheduleClaimConflictError: Another worker owns the occurrence.
        """
        start_time = time.monotonic()
        with LogContext.bind(execution_id=execution_id):
            claimed = self._claim_retry(execution_id, retry_limit)
            if isinstance(claimed, ExecutionOutcome):
                return claimed
            with LogContext.bind(schedule_id=claimed.schedule.schedule_id):
                return self._run_attempt(claimed, start_time)

    # -------------------------------------------------------------------------
    # Step 1: claim
    # -------------------------------------------------------------------------

    def _claim_occurrence(
        self, schedule_id: UUID,
    ) -> _ClaimedAttempt | ExecutionOutcome:
        now = self._clock.now()
        with self._session_factory.begin() as session:
            store = ScheduleStore(session)
            schedule = store.get(schedule_id)
            if schedule.status != ScheduleStatus.ACTIVE:
                raise ScheduleNotActiveError(str(schedule_id), schedule.status.value)

            scheduled_date = schedule.next_execution_date
            if self._complete_if_exhausted(store, schedule, scheduled_date):
                return _skipped(schedule_id, scheduled_date, "limit_reached")

            existing = store.find_execution_for_occurrence(schedule_id, scheduled_date)
            if existing is not None and existing.status == ExecutionStatus.COMPLETED:
                return self._realign_cursor(store, schedule, existing, now)
            if existing is not None and existing.status == ExecutionStatus.FAILED:
                # FAILED occurrences belong to the retry sweep.
                logger.info(
                    "execution_skipped",
                    extra={
                        "scheduled_date": scheduled_date,
                        "execution_id": str(existing.execution_id),
                        "reason": "awaiting_retry",
                    },
                )
                return _skipped(schedule_id, scheduled_date, "awaiting_retry", existing)

            token = uuid4()
            if not store.claim(
                schedule_id, scheduled_date, token, now, now - self._claim_ttl,
            ):
                raise ScheduleClaimConflictError(str(schedule_id), scheduled_date)

            if existing is not None:
                logger.warning(
                    "execution_resumed",
                    extra={
                        "scheduled_date": scheduled_date,
                        "execution_id": str(existing.execution_id),
                    },
                )
                execution = existing
            else:
                execution = store.create_execution(
                    schedule_id, scheduled_date, self._actor_id, now,
                )

        return _ClaimedAttempt(schedule=schedule, execution=execution, token=token)

    def _claim_retry(
        self, execution_id: UUID, retry_limit: int,
    ) -> _ClaimedAttempt | ExecutionOutcome:
        now = self._clock.now()
        with self._session_factory.begin() as session:
            store = ScheduleStore(session)
            execution = store.get_execution(execution_id)
            if execution.status != ExecutionStatus.FAILED:
                raise ExecutionNotRetryableError(
                    str(execution_id), execution.status.value,
                )
            if execution.abandon_reason is not None:
                raise ExecutionNotRetryableError(
                    str(execution_id), f"abandoned ({execution.abandon_reason})",
                )
            if execution.retry_count >= retry_limit:
                raise MaxRetriesExceededError(
                    str(execution_id), execution.retry_count, retry_limit,
                )

            schedule = store.get(execution.schedule_id)
            scheduled_date = execution.scheduled_date
            if schedule.status in TERMINAL_STATUSES:
                logger.info(
                    "retry_skipped_schedule_closed",
                    extra={
                        "scheduled_date": scheduled_date,
                        "schedule_status": schedule.status.value,
                    },
                )
                return _skipped(
                    schedule.schedule_id, scheduled_date, "schedule_closed", execution,
                )
            if schedule.status != ScheduleStatus.ACTIVE:
                raise ScheduleNotActiveError(
                    str(schedule.schedule_id), schedule.status.value,
                )
            if schedule.next_execution_date != scheduled_date:
                logger.info(
                    "retry_skipped_stale_occurrence",
                    extra={
                        "scheduled_date": scheduled_date,
                        "next_execution_date": schedule.next_execution_date,
                    },
                )
                return _skipped(
                    schedule.schedule_id, scheduled_date, "stale_occurrence", execution,
                )
            if self._complete_if_exhausted(store, schedule, scheduled_date):
                return _skipped(
                    schedule.schedule_id, scheduled_date, "limit_reached", execution,
                )

            token = uuid4()
            claimed = store.claim(
                schedule.schedule_id,
                scheduled_date,
                token,
                now,
                now - self._claim_ttl,
            )
            if not claimed or not store.begin_retry(
                execution_id, retry_limit, self._actor_id,
            ):
                raise ScheduleClaimConflictError(
                    str(schedule.schedule_id), scheduled_date,
                )
            execution = store.get_execution(execution_id)

        return _ClaimedAttempt(schedule=schedule, execution=execution, token=token)

    def _complete_if_exhausted(
        self, store: ScheduleStore, schedule: RecurringSchedule, occurrence: date,
    ) -> bool:
        """Move a schedule whose limits forbid ``occurrence`` to COMPLETED."""
        if not limits_reached(
            schedule.execution_count,
            occurrence,
            schedule.max_executions,
            schedule.end_date,
        ):
            return False
        if store.complete_if_exhausted(schedule.schedule_id, self._actor_id):
            logger.info(
                "schedule_completed",
                extra={
                    "execution_count": schedule.execution_count,
                    "max_executions": schedule.max_executions,
                    "end_date": schedule.end_date,
                    "reason": "limit_reached",
                },
            )
        return True

    def _realign_cursor(
        self,
        store: ScheduleStore,
        schedule: RecurringSchedule,
        execution: ScheduleExecution,
        now: datetime,
    ) -> ExecutionOutcome:
        """Step the cursor past an occurrence whose success is already counted."""
        scheduled_date = execution.scheduled_date
        token = uuid4()
        if not store.claim(
            schedule.schedule_id, scheduled_date, token, now, now - self._claim_ttl,
        ):
            raise ScheduleClaimConflictError(str(schedule.schedule_id), scheduled_date)

        next_cursor = next_date(
            scheduled_date, schedule.frequency, schedule.interval_value,
        )
        exhausted = limits_reached(
            schedule.execution_count,
            next_cursor,
            schedule.max_executions,
            schedule.end_date,
        )
        if not store.advance_after_success(
            schedule.schedule_id,
            token,
            scheduled_date,
            next_cursor,
            exhausted,
            self._actor_id,
            count_execution=False,
        ):
            raise ScheduleClaimConflictError(str(schedule.schedule_id), scheduled_date)

        logger.warning(
            "cursor_realigned",
            extra={
                "scheduled_date": scheduled_date,
                "execution_id": str(execution.execution_id),
                "next_execution_date": next_cursor,
            },
        )
        return _skipped(
            schedule.schedule_id,
            scheduled_date,
            "already_completed",
            execution,
            next_execution_date=next_cursor,
        )

    # -------------------------------------------------------------------------
    # Steps 2 and 3: invoke and settle
    # -------------------------------------------------------------------------

    def _run_attempt(
        self, claimed: _ClaimedAttempt, start_time: float,
    ) -> ExecutionOutcome:
        execution = claimed.execution
        with LogContext.bind(execution_id=execution.execution_id):
            logger.info(
                "execution_started",
                extra={
                    "scheduled_date": execution.scheduled_date,
                    "retry_count": execution.retry_count,
                },
            )
            try:
                ref = self._call_ledger(claimed)
            except ExecutionFailedError as exc:
                return self._settle_failure(claimed, exc, start_time)
            return self._settle_success(claimed, ref, start_time)

    def _build_request(self, claimed: _ClaimedAttempt) -> TransactionRequest:
        schedule = claimed.schedule
        execution = claimed.execution
        return TransactionRequest(
            household_id=schedule.household_id,
            requestor_id=schedule.created_by,
            amount_minor=schedule.amount_minor,
            currency=schedule.currency,
            account_id=schedule.account_id,
            description=schedule.ledger_description,
            date=execution.scheduled_date,
            idempotency_key=idempotency_key(
                schedule.schedule_id, execution.scheduled_date,
            ),
            transfer_account_id=schedule.transfer_account_id,
            category_id=schedule.category_id,
            merchant=schedule.merchant,
            metadata={
                **schedule.metadata,
                "recurring_schedule_id": str(schedule.schedule_id),
                "execution_id": str(execution.execution_id),
            },
        )

    def _call_ledger(self, claimed: _ClaimedAttempt) -> TransactionRef:
        """Invoke the ledger; every failure becomes ExecutionFailedError."""
        schedule_id = str(claimed.schedule.schedule_id)
        scheduled_date = claimed.execution.scheduled_date
        if self._closed:
            raise ExecutionFailedError(
                schedule_id, scheduled_date, "runner is closed", cause_type="RuntimeError",
            )
        request = self._build_request(claimed)
        if self._ledger_timeout is None:
            try:
                return self._ledger.create_transaction(request)
            except Exception as exc:
                raise ExecutionFailedError(
                    schedule_id,
                    scheduled_date,
                    str(exc) or type(exc).__name__,
                    cause_type=type(exc).__name__,
                ) from exc

        if not self._ledger_slots.acquire(timeout=self._ledger_timeout):
            raise ExecutionFailedError(
                schedule_id,
                scheduled_date,
                f"no ledger call slot free within {self._ledger_timeout}s",
                cause_type="TimeoutError",
            )
        future: Future | None = None
        try:
            future = self._start_ledger_call(request)
            return future.result(timeout=self._ledger_timeout)
        except FutureTimeoutError:
            future.cancel()
            raise ExecutionFailedError(
                schedule_id,
                scheduled_date,
                f"ledger call timed out after {self._ledger_timeout}s",
                cause_type="TimeoutError",
            ) from None
        except Exception as exc:
            raise ExecutionFailedError(
                schedule_id,
                scheduled_date,
                str(exc) or type(exc).__name__,
                cause_type=type(exc).__name__,
            ) from exc

    def _start_ledger_call(self, request: TransactionRequest) -> Future:
        """Run the ledger call on a thread of its own; it releases the slot."""
        future: Future = Future()
        ctx = contextvars.copy_context()

        def call() -> None:
            try:
                if not future.set_running_or_notify_cancel():
                    return
                try:
                    result = ctx.run(self._ledger.create_transaction, request)
                except Exception as exc:
                    future.set_exception(exc)
                else:
                    future.set_result(result)
            finally:
                self._ledger_slots.release()

        thread = threading.Thread(target=call, name="ledger-call", daemon=True)
        try:
            thread.start()
        except RuntimeError:
            self._ledger_slots.release()
            raise
        return future

    def _settle_success(
        self,
        claimed: _ClaimedAttempt,
        ref: TransactionRef,
        start_time: float,
    ) -> ExecutionOutcome:
        schedule = claimed.schedule
        execution = claimed.execution
        scheduled_date = execution.scheduled_date
        now = self._clock.now()

        next_cursor = next_date(
            scheduled_date, schedule.frequency, schedule.interval_value,
        )
        new_count = schedule.execution_count + 1
        exhausted = limits_reached(
            new_count, next_cursor, schedule.max_executions, schedule.end_date,
        )

        try:
            with self._session_factory.begin() as session:
                store = ScheduleStore(session)
                recorded = store.mark_execution_completed(
                    execution.execution_id, ref.transaction_id, now, self._actor_id,
                )
                advanced = recorded and store.advance_after_success(
                    schedule.schedule_id,
                    claimed.token,
                    scheduled_date,
                    next_cursor,
                    exhausted,
                    self._actor_id,
                )
                if not advanced:
                    raise ScheduleClaimConflictError(
                        str(schedule.schedule_id), scheduled_date,
                    )
        except ScheduleClaimConflictError:
            logger.error(
                "execution_settle_conflict",
                extra={
                    "scheduled_date": scheduled_date,
                    "transaction_id": ref.transaction_id,
                },
            )
            raise

        duration_ms = int((time.monotonic() - start_time) * 1000)
        logger.info(
            "execution_completed",
            extra={
                "scheduled_date": scheduled_date,
                "transaction_id": ref.transaction_id,
                "next_execution_date": next_cursor,
                "execution_count": new_count,
                "retry_count": execution.retry_count,
                "duration_ms": duration_ms,
            },
        )
        if exhausted:
            logger.info(
                "schedule_completed",
                extra={
                    "execution_count": new_count,
                    "max_executions": schedule.max_executions,
                    "end_date": schedule.end_date,
                },
            )

        return ExecutionOutcome(
            schedule_id=schedule.schedule_id,
            status=OutcomeStatus.COMPLETED,
            execution_id=execution.execution_id,
            scheduled_date=scheduled_date,
            transaction_id=ref.transaction_id,
            next_execution_date=next_cursor,
            retry_count=execution.retry_count,
            duration_ms=duration_ms,
        )

    def _settle_failure(
        self,
        claimed: _ClaimedAttempt,
        error: ExecutionFailedError,
        start_time: float,
    ) -> ExecutionOutcome:
        schedule = claimed.schedule
        execution = claimed.execution

        with self._session_factory.begin() as session:
            store = ScheduleStore(session)
            recorded = store.mark_execution_failed(
                execution.execution_id, error.reason, self._actor_id,
            )
            store.release_claim(schedule.schedule_id, claimed.token)

        duration_ms = int((time.monotonic() - start_time) * 1000)
        if not recorded:
            logger.warning(
                "execution_failure_not_recorded",
                extra={"scheduled_date": execution.scheduled_date},
            )
        logger.warning(
            "execution_failed",
            extra={
                "scheduled_date": execution.scheduled_date,
                "retry_count": execution.retry_count,
                "cause_type": error.cause_type,
                "duration_ms": duration_ms,
            },
            exc_info=error,
        )

        return ExecutionOutcome(
            schedule_id=schedule.schedule_id,
            status=OutcomeStatus.FAILED,
            execution_id=execution.execution_id,
            scheduled_date=execution.scheduled_date,
            retry_count=execution.retry_count,
            reason=error.reason,
            duration_ms=duration_ms,
        )
