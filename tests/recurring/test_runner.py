"""
Tests for household_recurring.services.runner -- ExecutionRunner.

Validates the claim -> invoke -> settle cycle: cursor advance only on
success (RT-2), the per-schedule claim (RT-3), single-transaction settle
(RT-4), record reuse (RT-5) and ledger timeout handling.

Uses in-memory SQLite with real ORM models and the FakeLedger.
"""

import threading
from datetime import date, timedelta
from uuid import uuid4

import pytest

from household_kernel.exceptions import (
    ExecutionNotFoundError,
    ExecutionNotRetryableError,
    MaxRetriesExceededError,
    ScheduleClaimConflictError,
    ScheduleNotActiveError,
    ScheduleNotFoundError,
)

from household_recurring.collaborators import TransactionRef
from household_recurring.domain.types import (
    ExecutionStatus,
    OutcomeStatus,
    RecurrenceFrequency,
    ScheduleStatus,
)
from household_recurring.services.runner import ExecutionRunner, idempotency_key
from household_recurring.services.store import ScheduleStore

from tests.conftest import SYSTEM_ACTOR_ID, TEST_ACTOR_ID, FakeLedger


# =============================================================================
# Success path
# =============================================================================


class TestExecuteSuccess:

    def test_advances_schedule(self, runner, make_schedule, load_schedule):
        schedule = make_schedule()
        outcome = runner.execute(schedule.schedule_id)

        assert outcome.status == OutcomeStatus.COMPLETED
        assert outcome.succeeded
        assert outcome.scheduled_date == date(2024, 1, 1)
        assert outcome.next_execution_date == date(2024, 2, 1)
        assert outcome.transaction_id == "txn-1"

        after = load_schedule(schedule.schedule_id)
        assert after.execution_count == 1
        assert after.next_execution_date == date(2024, 2, 1)
        assert after.last_execution_date == date(2024, 1, 1)
        assert after.claim_token is None
        assert after.status == ScheduleStatus.ACTIVE

    def test_records_completed_execution(self, runner, make_schedule, load_executions, clock):
        schedule = make_schedule()
        outcome = runner.execute(schedule.schedule_id)

        (execution,) = load_executions(schedule.schedule_id)
        assert execution.execution_id == outcome.execution_id
        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.transaction_id == "txn-1"
        assert execution.executed_at == clock.now()
        assert execution.retry_count == 0
        assert execution.error_message is None

    def test_ledger_request(self, runner, ledger, make_schedule):
        schedule = make_schedule(
            merchant="Landlord", extra_metadata={"source": "import"},
        )
        outcome = runner.execute(schedule.schedule_id)

        (request,) = ledger.requests
        assert request.household_id == schedule.household_id
        assert request.requestor_id == TEST_ACTOR_ID
        assert request.amount_minor == 150_000_000
        assert request.currency == "IDR"
        assert request.date == date(2024, 1, 1)
        assert request.description == "Rent - Monthly rent"
        assert request.merchant == "Landlord"
        assert request.idempotency_key == idempotency_key(
            schedule.schedule_id, date(2024, 1, 1),
        )
        assert request.metadata == {
            "source": "import",
            "recurring_schedule_id": str(schedule.schedule_id),
            "execution_id": str(outcome.execution_id),
        }

    def test_idempotency_key_format(self):
        schedule_id = uuid4()
        assert idempotency_key(schedule_id, date(2024, 3, 5)) == (
            f"recurring:{schedule_id}:2024-03-05"
        )

    def test_month_end_schedule(self, runner, make_schedule, load_schedule):
        schedule = make_schedule(start_date=date(2023, 12, 31))
        runner.execute(schedule.schedule_id)
        assert load_schedule(schedule.schedule_id).next_execution_date == date(2024, 1, 31)
        runner.execute(schedule.schedule_id)
        assert load_schedule(schedule.schedule_id).next_execution_date == date(2024, 2, 29)

    def test_second_execute_targets_next_occurrence(self, runner, ledger, make_schedule):
        schedule = make_schedule(frequency=RecurrenceFrequency.DAILY, start_date=date(2023, 12, 30))
        first = runner.execute(schedule.schedule_id)
        second = runner.execute(schedule.schedule_id)
        assert (first.scheduled_date, second.scheduled_date) == (
            date(2023, 12, 30), date(2023, 12, 31),
        )
        assert ledger.transaction_count == 2

    def test_logs_completion(self, runner, make_schedule, captured_logs):
        schedule = make_schedule()
        runner.execute(schedule.schedule_id)

        completed = [r for r in captured_logs() if r["message"] == "execution_completed"]
        assert len(completed) == 1
        assert completed[0]["schedule_id"] == str(schedule.schedule_id)
        assert completed[0]["next_execution_date"] == "2024-02-01"


# =============================================================================
# Completion on limits
# =============================================================================


class TestCompletion:

    def test_max_executions_completes_schedule(self, runner, make_schedule, load_schedule):
        schedule = make_schedule(max_executions=2, execution_count=1)
        runner.execute(schedule.schedule_id)

        after = load_schedule(schedule.schedule_id)
        assert after.status == ScheduleStatus.COMPLETED
        assert after.execution_count == 2

    def test_end_date_completes_schedule(self, runner, make_schedule, load_schedule, captured_logs):
        schedule = make_schedule(end_date=date(2024, 1, 20))
        runner.execute(schedule.schedule_id)

        after = load_schedule(schedule.schedule_id)
        assert after.status == ScheduleStatus.COMPLETED
        assert any(r["message"] == "schedule_completed" for r in captured_logs())

    def test_completed_schedule_not_executable(self, runner, make_schedule):
        schedule = make_schedule(max_executions=1)
        runner.execute(schedule.schedule_id)
        with pytest.raises(ScheduleNotActiveError):
            runner.execute(schedule.schedule_id)

    def test_exhausted_active_schedule_never_claimed(
        self, runner, ledger, make_schedule, load_schedule, load_executions, captured_logs,
    ):
        schedule = make_schedule(
            max_executions=1,
            execution_count=1,
            next_execution_date=date(2024, 2, 1),
            last_execution_date=date(2024, 1, 1),
        )

        outcome = runner.execute(schedule.schedule_id)

        assert outcome.status == OutcomeStatus.SKIPPED
        assert outcome.reason == "limit_reached"
        assert ledger.requests == []
        assert load_executions(schedule.schedule_id) == ()
        after = load_schedule(schedule.schedule_id)
        assert after.status == ScheduleStatus.COMPLETED
        assert after.claim_token is None
        assert any(
            r["message"] == "schedule_completed" and r["reason"] == "limit_reached"
            for r in captured_logs()
        )

    def test_cursor_past_end_date_never_claimed(self, runner, ledger, make_schedule, load_schedule):
        schedule = make_schedule(
            end_date=date(2024, 1, 15), next_execution_date=date(2024, 2, 1),
        )

        outcome = runner.execute(schedule.schedule_id)

        assert outcome.reason == "limit_reached"
        assert ledger.requests == []
        assert load_schedule(schedule.schedule_id).status == ScheduleStatus.COMPLETED


# =============================================================================
# Failure path
# =============================================================================


class TestExecuteFailure:

    def test_cursor_unchanged_on_failure(self, runner, ledger, make_schedule, load_schedule):
        schedule = make_schedule()
        ledger.fail_schedule(schedule.schedule_id, "account frozen")

        outcome = runner.execute(schedule.schedule_id)

        assert outcome.status == OutcomeStatus.FAILED
        assert outcome.reason == "account frozen"
        after = load_schedule(schedule.schedule_id)
        assert after.next_execution_date == date(2024, 1, 1)
        assert after.execution_count == 0
        assert after.last_execution_date is None
        assert after.claim_token is None

    def test_failed_record(self, runner, ledger, make_schedule, load_executions):
        schedule = make_schedule()
        ledger.fail_next()
        runner.execute(schedule.schedule_id)

        (execution,) = load_executions(schedule.schedule_id)
        assert execution.status == ExecutionStatus.FAILED
        assert execution.error_message == "ledger unavailable"
        assert execution.retry_count == 0
        assert execution.transaction_id is None

    def test_empty_error_message_uses_type_name(self, runner, ledger, make_schedule):
        schedule = make_schedule()
        ledger.fail_next(exc=ConnectionError())
        outcome = runner.execute(schedule.schedule_id)
        assert outcome.reason == "ConnectionError"

    def test_failed_occurrence_left_to_retry_sweep(self, runner, ledger, make_schedule):
        schedule = make_schedule()
        ledger.fail_next()
        failed = runner.execute(schedule.schedule_id)

        outcome = runner.execute(schedule.schedule_id)
        assert outcome.status == OutcomeStatus.SKIPPED
        assert outcome.reason == "awaiting_retry"
        assert outcome.execution_id == failed.execution_id
        assert len(ledger.requests) == 1

    def test_logs_failure_with_error_code(self, runner, ledger, make_schedule, captured_logs):
        schedule = make_schedule()
        ledger.fail_next()
        runner.execute(schedule.schedule_id)

        (failed,) = [r for r in captured_logs() if r["message"] == "execution_failed"]
        assert failed["level"] == "WARNING"
        assert failed["exc_code"] == "EXECUTION_FAILED"
        assert failed["cause_type"] == "RuntimeError"


# =============================================================================
# Preconditions and claims
# =============================================================================


class TestClaims:

    def test_unknown_schedule(self, runner):
        with pytest.raises(ScheduleNotFoundError):
            runner.execute(uuid4())

    @pytest.mark.parametrize(
        "status", [ScheduleStatus.PAUSED, ScheduleStatus.CANCELLED, ScheduleStatus.COMPLETED],
    )
    def test_not_active(self, runner, ledger, make_schedule, status):
        schedule = make_schedule(status=status)
        with pytest.raises(ScheduleNotActiveError) as exc_info:
            runner.execute(schedule.schedule_id)
        assert exc_info.value.status == status.value
        assert ledger.requests == []

    def test_live_claim_rejects_second_picker(self, runner, ledger, make_schedule, clock):
        schedule = make_schedule(claim_token=uuid4(), claimed_at=clock.now())
        with pytest.raises(ScheduleClaimConflictError):
            runner.execute(schedule.schedule_id)
        assert ledger.requests == []

    def test_stale_claim_resumes_pending_record(
        self, runner, ledger, make_schedule, session_factory, clock, load_executions,
        captured_logs,
    ):
        schedule = make_schedule(
            claim_token=uuid4(), claimed_at=clock.now() - timedelta(hours=1),
        )
        with session_factory.begin() as session:
            abandoned = ScheduleStore(session).create_execution(
                schedule.schedule_id, date(2024, 1, 1), SYSTEM_ACTOR_ID,
                clock.now() - timedelta(hours=1),
            )

        outcome = runner.execute(schedule.schedule_id)

        assert outcome.status == OutcomeStatus.COMPLETED
        assert outcome.execution_id == abandoned.execution_id
        assert len(load_executions(schedule.schedule_id)) == 1
        assert any(r["message"] == "execution_resumed" for r in captured_logs())

    def test_completed_record_at_cursor_moves_cursor_on(
        self, runner, ledger, make_schedule, session_factory, clock, load_schedule, captured_logs,
    ):
        schedule = make_schedule(execution_count=1, last_execution_date=date(2024, 1, 1))
        with session_factory.begin() as session:
            store = ScheduleStore(session)
            done = store.create_execution(
                schedule.schedule_id, date(2024, 1, 1), SYSTEM_ACTOR_ID, clock.now(),
            )
            store.mark_execution_completed(
                done.execution_id, "txn-earlier", clock.now(), SYSTEM_ACTOR_ID,
            )

        outcome = runner.execute(schedule.schedule_id)

        assert outcome.status == OutcomeStatus.SKIPPED
        assert outcome.reason == "already_completed"
        assert outcome.execution_id == done.execution_id
        assert outcome.next_execution_date == date(2024, 2, 1)
        assert ledger.requests == []
        after = load_schedule(schedule.schedule_id)
        assert after.next_execution_date == date(2024, 2, 1)
        assert after.execution_count == 1
        assert after.claim_token is None
        assert any(r["message"] == "cursor_realigned" for r in captured_logs())

        following = runner.execute(schedule.schedule_id)
        assert following.status == OutcomeStatus.COMPLETED
        assert following.scheduled_date == date(2024, 2, 1)
        assert load_schedule(schedule.schedule_id).execution_count == 2

    def test_retry_reuses_idempotency_key(self, runner, ledger, make_schedule):
        schedule = make_schedule()
        ledger.fail_next()
        failed = runner.execute(schedule.schedule_id)
        runner.retry(failed.execution_id, retry_limit=3)

        key = idempotency_key(schedule.schedule_id, date(2024, 1, 1))
        assert [r.idempotency_key for r in ledger.requests] == [key, key]
        assert ledger.transaction_count == 1

    def test_concurrent_pickers_execute_once(self, session_factory, make_schedule, clock, load_schedule):
        gated = _GatedLedger()
        schedule = make_schedule()
        first = ExecutionRunner(session_factory, gated, SYSTEM_ACTOR_ID, clock, None)
        second = ExecutionRunner(session_factory, gated, SYSTEM_ACTOR_ID, clock, None)

        results = {}
        t = threading.Thread(target=lambda: results.update(first=first.execute(schedule.schedule_id)))
        t.start()
        assert gated.entered.wait(timeout=5)

        # The first runner holds the claim while its ledger call is in flight.
        with pytest.raises(ScheduleClaimConflictError):
            second.execute(schedule.schedule_id)

        gated.release.set()
        t.join(timeout=5)
        assert results["first"].status == OutcomeStatus.COMPLETED
        assert gated.calls == 1
        assert load_schedule(schedule.schedule_id).execution_count == 1


class _GatedLedger:
    """Ledger whose first call blocks until released."""

    def __init__(self):
        self.entered = threading.Event()
        self.release = threading.Event()
        self.calls = 0

    def create_transaction(self, request):
        self.calls += 1
        self.entered.set()
        self.release.wait(timeout=5)
        return TransactionRef(transaction_id=f"gated-{self.calls}")


# =============================================================================
# Timeout
# =============================================================================


class TestLedgerTimeout:

    def test_timeout_is_a_failure(self, session_factory, ledger, make_schedule, clock, load_schedule, load_executions):
        gate = ledger.block()
        runner = ExecutionRunner(
            session_factory, ledger, SYSTEM_ACTOR_ID, clock,
            ledger_timeout_seconds=0.1,
        )
        schedule = make_schedule()
        try:
            outcome = runner.execute(schedule.schedule_id)
        finally:
            gate.set()
            runner.close()

        assert outcome.status == OutcomeStatus.FAILED
        assert "timed out" in outcome.reason
        assert load_schedule(schedule.schedule_id).next_execution_date == date(2024, 1, 1)
        (execution,) = load_executions(schedule.schedule_id)
        assert execution.status == ExecutionStatus.FAILED

    def test_pooled_call_succeeds_within_timeout(self, session_factory, ledger, make_schedule, clock):
        runner = ExecutionRunner(
            session_factory, ledger, SYSTEM_ACTOR_ID, clock, ledger_timeout_seconds=5,
        )
        try:
            outcome = runner.execute(make_schedule().schedule_id)
        finally:
            runner.close()
        assert outcome.status == OutcomeStatus.COMPLETED

    def test_hung_call_does_not_fail_healthy_neighbour(self, session_factory, make_schedule, clock, load_executions):
        hung = make_schedule()
        healthy = make_schedule(name="Internet")
        ledger = _HangingLedger(hung.schedule_id)
        runner = ExecutionRunner(
            session_factory, ledger, SYSTEM_ACTOR_ID, clock,
            ledger_timeout_seconds=0.3, max_concurrent_ledger_calls=2,
        )
        try:
            first = runner.execute(hung.schedule_id)
            second = runner.execute(healthy.schedule_id)
        finally:
            ledger.release.set()
            runner.close()

        assert first.status == OutcomeStatus.FAILED
        assert "timed out" in first.reason
        assert second.status == OutcomeStatus.COMPLETED
        assert len(ledger.requests_for(healthy.schedule_id)) == 1
        (execution,) = load_executions(healthy.schedule_id)
        assert execution.status == ExecutionStatus.COMPLETED

    def test_no_free_slot_fails_without_reaching_ledger(
        self, session_factory, make_schedule, clock, load_executions,
    ):
        hung = make_schedule()
        waiting = make_schedule(name="Internet")
        ledger = _HangingLedger(hung.schedule_id)
        runner = ExecutionRunner(
            session_factory, ledger, SYSTEM_ACTOR_ID, clock,
            ledger_timeout_seconds=0.3, max_concurrent_ledger_calls=1,
        )
        try:
            runner.execute(hung.schedule_id)
            blocked = runner.execute(waiting.schedule_id)
            blocked_requests = list(ledger.requests_for(waiting.schedule_id))

            ledger.release.set()
            ledger.returned.wait(timeout=5)
            recovered = runner.retry(blocked.execution_id, retry_limit=3)
        finally:
            ledger.release.set()
            runner.close()

        assert blocked.status == OutcomeStatus.FAILED
        assert "no ledger call slot free" in blocked.reason
        assert blocked_requests == []
        assert recovered.status == OutcomeStatus.COMPLETED
        assert len(ledger.requests_for(waiting.schedule_id)) == 1

    def test_closed_runner_makes_no_ledger_calls(self, runner, ledger, make_schedule, load_schedule):
        schedule = make_schedule()
        runner.close()

        outcome = runner.execute(schedule.schedule_id)

        assert outcome.status == OutcomeStatus.FAILED
        assert outcome.reason == "runner is closed"
        assert ledger.requests == []
        after = load_schedule(schedule.schedule_id)
        assert after.next_execution_date == date(2024, 1, 1)
        assert after.claim_token is None


class _HangingLedger(FakeLedger):
    """FakeLedger whose calls for one schedule hang until released."""

    def __init__(self, hanging_schedule_id):
        super().__init__()
        self._hanging = str(hanging_schedule_id)
        self.release = threading.Event()
        self.returned = threading.Event()

    def create_transaction(self, request):
        if request.metadata["recurring_schedule_id"] != self._hanging:
            return super().create_transaction(request)
        self.release.wait(timeout=5)
        try:
            return super().create_transaction(request)
        finally:
            self.returned.set()

    def requests_for(self, schedule_id):
        return [
            r for r in self.requests
            if r.metadata["recurring_schedule_id"] == str(schedule_id)
        ]


# =============================================================================
# Retry
# =============================================================================


class TestRetry:

    def _failed(self, runner, ledger, make_schedule, **overrides):
        schedule = make_schedule(**overrides)
        ledger.fail_next()
        outcome = runner.execute(schedule.schedule_id)
        return schedule, outcome.execution_id

    def test_retry_recovers(self, runner, ledger, make_schedule, load_schedule, load_executions):
        schedule, execution_id = self._failed(runner, ledger, make_schedule)

        outcome = runner.retry(execution_id, retry_limit=3)

        assert outcome.status == OutcomeStatus.COMPLETED
        assert outcome.execution_id == execution_id
        assert outcome.retry_count == 1
        (execution,) = load_executions(schedule.schedule_id)
        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.retry_count == 1
        assert load_schedule(schedule.schedule_id).next_execution_date == date(2024, 2, 1)

    def test_retry_failure_increments_count(self, runner, ledger, make_schedule, load_executions):
        schedule, execution_id = self._failed(runner, ledger, make_schedule)
        ledger.fail_next(exc=RuntimeError("still down"))

        outcome = runner.retry(execution_id, retry_limit=3)

        assert outcome.status == OutcomeStatus.FAILED
        (execution,) = load_executions(schedule.schedule_id)
        assert execution.status == ExecutionStatus.FAILED
        assert execution.retry_count == 1
        assert execution.error_message == "still down"

    def test_retry_at_ceiling_raises(self, runner, ledger, make_schedule, session_factory):
        schedule, execution_id = self._failed(runner, ledger, make_schedule)
        with pytest.raises(MaxRetriesExceededError):
            runner.retry(execution_id, retry_limit=0)
        assert len(ledger.requests) == 1

    def test_retry_completed_record_rejected(self, runner, make_schedule):
        outcome = runner.execute(make_schedule().schedule_id)
        with pytest.raises(ExecutionNotRetryableError):
            runner.retry(outcome.execution_id, retry_limit=3)

    def test_retry_unknown_execution(self, runner):
        with pytest.raises(ExecutionNotFoundError):
            runner.retry(uuid4(), retry_limit=3)

    def test_retry_paused_schedule_rejected(self, runner, ledger, make_schedule, session_factory):
        schedule, execution_id = self._failed(runner, ledger, make_schedule)
        with session_factory.begin() as session:
            ScheduleStore(session).update_status(
                schedule.schedule_id, (ScheduleStatus.ACTIVE,), ScheduleStatus.PAUSED,
                TEST_ACTOR_ID,
            )
        with pytest.raises(ScheduleNotActiveError):
            runner.retry(execution_id, retry_limit=3)

    def test_stale_occurrence_skipped(self, runner, ledger, make_schedule, session_factory):
        schedule, execution_id = self._failed(runner, ledger, make_schedule)
        with session_factory.begin() as session:
            ScheduleStore(session).update(
                schedule.schedule_id,
                {"next_execution_date": date(2024, 3, 1)},
                TEST_ACTOR_ID,
            )

        outcome = runner.retry(execution_id, retry_limit=3)
        assert outcome.status == OutcomeStatus.SKIPPED
        assert outcome.reason == "stale_occurrence"
        assert len(ledger.requests) == 1

    @pytest.mark.parametrize("status", [ScheduleStatus.CANCELLED, ScheduleStatus.COMPLETED])
    def test_retry_on_closed_schedule_skipped(self, runner, ledger, make_schedule, session_factory, status):
        schedule, execution_id = self._failed(runner, ledger, make_schedule)
        with session_factory.begin() as session:
            ScheduleStore(session).update(
                schedule.schedule_id, {"status": status.value}, TEST_ACTOR_ID,
            )

        outcome = runner.retry(execution_id, retry_limit=3)

        assert outcome.status == OutcomeStatus.SKIPPED
        assert outcome.reason == "schedule_closed"
        assert len(ledger.requests) == 1

    def test_retry_beyond_lowered_limit_completes_schedule(
        self, runner, ledger, make_schedule, session_factory, load_schedule, load_executions,
    ):
        schedule, execution_id = self._failed(
            runner, ledger, make_schedule,
            execution_count=1,
            next_execution_date=date(2024, 2, 1),
            last_execution_date=date(2024, 1, 1),
        )
        with session_factory.begin() as session:
            ScheduleStore(session).update(
                schedule.schedule_id, {"max_executions": 1}, TEST_ACTOR_ID,
            )

        outcome = runner.retry(execution_id, retry_limit=3)

        assert outcome.status == OutcomeStatus.SKIPPED
        assert outcome.reason == "limit_reached"
        assert len(ledger.requests) == 1
        after = load_schedule(schedule.schedule_id)
        assert after.status == ScheduleStatus.COMPLETED
        assert after.execution_count == 1
        assert after.claim_token is None
        (execution,) = load_executions(schedule.schedule_id)
        assert execution.status == ExecutionStatus.FAILED
        assert execution.retry_count == 0

    def test_abandoned_execution_not_retryable(self, runner, ledger, make_schedule, session_factory):
        _, execution_id = self._failed(runner, ledger, make_schedule)
        with session_factory.begin() as session:
            ScheduleStore(session).abandon_execution(
                execution_id, "stale_occurrence", SYSTEM_ACTOR_ID,
            )

        with pytest.raises(ExecutionNotRetryableError) as exc_info:
            runner.retry(execution_id, retry_limit=3)
        assert "stale_occurrence" in exc_info.value.status
        assert len(ledger.requests) == 1
