"""
Pytest fixtures for the recurring transaction engine test suite.

Provides:
- Structured logging configured once per session, LogContext cleared per test
- An in-memory SQLite database shared across sessions and threads (StaticPool)
- A DeterministicClock (naive datetimes; SQLite strips tzinfo)
- Scriptable fakes for the ledger and household permission collaborators
- ``make_schedule`` for inserting schedules in a given runtime state
"""

import json
import logging
import threading
from datetime import date, datetime
from enum import Enum
from io import StringIO
from typing import Any
from uuid import UUID, uuid4

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from household_kernel.db.base import Base
from household_kernel.domain.clock import DeterministicClock
from household_kernel.exceptions import PermissionDeniedError
from household_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)

import household_recurring.models  # noqa: F401  (registers tables)
from household_recurring.collaborators import (
    HouseholdPermission,
    TransactionRef,
    TransactionRequest,
)
from household_recurring.domain.types import RecurringSchedule
from household_recurring.models.recurring import RecurringScheduleModel
from household_recurring.services.runner import ExecutionRunner
from household_recurring.services.store import ScheduleStore


# Test identities shared by all tests
TEST_ACTOR_ID = UUID("11111111-1111-4111-8111-111111111111")
SYSTEM_ACTOR_ID = UUID("00000000-0000-4000-8000-000000000001")
HOUSEHOLD_ID = UUID("22222222-2222-4222-8222-222222222222")
ACCOUNT_ID = UUID("33333333-3333-4333-8333-333333333333")


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(scope="session", autouse=True)
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture household_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, runner):
            runner.execute(schedule_id)
            logs = captured_logs()
            assert any(r["message"] == "execution_completed" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("household_kernel")
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)


# =============================================================================
# Collaborator fakes
# =============================================================================


class FakeLedger:
    """In-memory ledger honouring idempotency keys.

    Failures are scripted per schedule (``fail_schedule``) or for the next
    N calls (``fail_next``).  ``block`` makes calls wait on an event.
    """

    def __init__(self):
        self.requests: list[TransactionRequest] = []
        self.recorded: dict[str, TransactionRef] = {}
        self._failing_schedules: dict[str, str] = {}
        self._fail_next: list[Exception] = []
        self._gate: threading.Event | None = None
        self._lock = threading.Lock()

    def fail_schedule(self, schedule_id: UUID, message: str = "ledger unavailable") -> None:
        self._failing_schedules[str(schedule_id)] = message

    def heal_schedule(self, schedule_id: UUID) -> None:
        self._failing_schedules.pop(str(schedule_id), None)

    def fail_next(self, count: int = 1, exc: Exception | None = None) -> None:
        for _ in range(count):
            self._fail_next.append(exc or RuntimeError("ledger unavailable"))

    def block(self) -> threading.Event:
        self._gate = threading.Event()
        return self._gate

    def create_transaction(self, request: TransactionRequest) -> TransactionRef:
        if self._gate is not None:
            self._gate.wait(timeout=5)
        with self._lock:
            self.requests.append(request)
            schedule_id = request.metadata.get("recurring_schedule_id")
            if schedule_id in self._failing_schedules:
                raise RuntimeError(self._failing_schedules[schedule_id])
            if self._fail_next:
                raise self._fail_next.pop(0)
            if request.idempotency_key not in self.recorded:
                self.recorded[request.idempotency_key] = TransactionRef(
                    transaction_id=f"txn-{len(self.recorded) + 1}",
                )
            return self.recorded[request.idempotency_key]

    @property
    def transaction_count(self) -> int:
        return len(self.recorded)


class FakePermissionChecker:
    """Allows everything except explicitly denied (user, permission) pairs."""

    def __init__(self):
        self.calls: list[tuple[UUID, UUID, HouseholdPermission]] = []
        self._denied: set[tuple[UUID, HouseholdPermission]] = set()

    def deny(self, user_id: UUID, *permissions: HouseholdPermission) -> None:
        for permission in permissions or tuple(HouseholdPermission):
            self._denied.add((user_id, permission))

    def check_permission(
        self,
        user_id: UUID,
        household_id: UUID,
        permission: HouseholdPermission,
    ) -> None:
        self.calls.append((user_id, household_id, permission))
        if (user_id, permission) in self._denied:
            raise PermissionDeniedError(str(user_id), str(household_id), permission.value)


# =============================================================================
# Database fixtures
# =============================================================================


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock():
    # Naive datetimes for SQLite compatibility (SQLite strips tzinfo)
    return DeterministicClock(fixed_time=datetime(2024, 1, 1, 9, 0, 0))


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def permissions():
    return FakePermissionChecker()


@pytest.fixture
def runner(session_factory, ledger, clock):
    r = ExecutionRunner(
        session_factory=session_factory,
        ledger=ledger,
        actor_id=SYSTEM_ACTOR_ID,
        clock=clock,
        ledger_timeout_seconds=None,
    )
    yield r
    r.close()


@pytest.fixture
def make_schedule(session_factory, clock):
    """Insert a schedule directly, in any runtime state.

    Defaults: ACTIVE monthly rent of 1,500,000.00 IDR starting 2024-01-01,
    cursor at the start date.
    """

    def _make(**overrides: Any) -> RecurringSchedule:
        values: dict[str, Any] = {
            "household_id": HOUSEHOLD_ID,
            "name": "Rent",
            "description": "Monthly rent",
            "amount_minor": 150_000_000,
            "currency": "IDR",
            "account_id": ACCOUNT_ID,
            "frequency": "monthly",
            "interval_value": 1,
            "start_date": date(2024, 1, 1),
            "end_date": None,
            "max_executions": None,
            "next_execution_date": None,
            "last_execution_date": None,
            "execution_count": 0,
            "status": "active",
            "extra_metadata": None,
            "claim_token": None,
            "claimed_at": None,
            "created_by_id": TEST_ACTOR_ID,
            "updated_by_id": None,
        }
        values.update(overrides)
        for key, val in values.items():
            if isinstance(val, Enum):
                values[key] = val.value
        if values["next_execution_date"] is None:
            values["next_execution_date"] = values["start_date"]

        model = RecurringScheduleModel(**values)
        model.id = uuid4()
        model.created_at = clock.now()
        model.updated_at = clock.now()
        with session_factory.begin() as session:
            session.add(model)

        with session_factory() as session:
            return ScheduleStore(session).get(model.id)

    return _make


@pytest.fixture
def load_schedule(session_factory):
    """Fresh read of a schedule from the database."""

    def _load(schedule_id: UUID) -> RecurringSchedule:
        with session_factory() as session:
            return ScheduleStore(session).get(schedule_id)

    return _load


@pytest.fixture
def load_executions(session_factory):
    """Fresh read of a schedule's execution records, newest first."""

    def _load(schedule_id: UUID):
        with session_factory() as session:
            return ScheduleStore(session).find_executions(schedule_id, limit=100)

    return _load
