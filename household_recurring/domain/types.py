"""
household_recurring.domain.types -- Pure frozen dataclasses for the engine.

ZERO I/O.  Frozen dataclasses with enum status fields and tuples for
immutable collections.

Invariants enforced:
    RT-2 -- ``execution_count`` counts successes only; the cursor
            (``next_execution_date``, ``execution_count``,
            ``last_execution_date``) is only moved by a successful execution.
    RT-5 -- At most one execution record per (schedule_id, scheduled_date).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any
from uuid import UUID


# =============================================================================
# Enums
# =============================================================================


class RecurrenceFrequency(str, Enum):
    """Unit of the recurrence rule.  CUSTOM intervals are expressed in days."""

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"
    CUSTOM = "custom"


class ScheduleStatus(str, Enum):
    """Schedule lifecycle status."""

    ACTIVE = "active"
    PAUSED = "paused"
    CANCELLED = "cancelled"  # Terminal, user-driven
    COMPLETED = "completed"  # Terminal, limits exhausted (system-driven)


class ExecutionStatus(str, Enum):
    """Per-occurrence execution status."""

    PENDING = "pending"  # Claimed, ledger call in flight
    COMPLETED = "completed"
    FAILED = "failed"


class OutcomeStatus(str, Enum):
    """Result of one runner invocation."""

    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"  # Nothing executed (not active, claimed elsewhere, ...)


# =============================================================================
# Schedule DTOs
# =============================================================================


@dataclass(frozen=True)
class ScheduleTemplate:
    """Input for creating a recurring schedule.

    ``amount_minor`` is an integer amount in minor currency units (cents).
    """

    name: str
    description: str
    amount_minor: int
    account_id: UUID
    frequency: RecurrenceFrequency
    start_date: date
    interval_value: int = 1
    currency: str | None = None
    transfer_account_id: UUID | None = None
    category_id: UUID | None = None
    merchant: str | None = None
    end_date: date | None = None
    max_executions: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


# Fields a SchedulePatch may carry; ``None`` means "leave unchanged".
PATCHABLE_FIELDS: tuple[str, ...] = (
    "name",
    "description",
    "amount_minor",
    "currency",
    "account_id",
    "transfer_account_id",
    "category_id",
    "merchant",
    "frequency",
    "interval_value",
    "start_date",
    "end_date",
    "max_executions",
    "metadata",
)

# Changing any of these re-derives the cursor.
RECURRENCE_FIELDS: frozenset[str] = frozenset(
    {"frequency", "interval_value", "start_date"}
)

LIMIT_FIELDS: frozenset[str] = frozenset({"end_date", "max_executions"})


@dataclass(frozen=True)
class SchedulePatch:
    """Partial update of a recurring schedule.  ``None`` fields are ignored."""

    name: str | None = None
    description: str | None = None
    amount_minor: int | None = None
    currency: str | None = None
    account_id: UUID | None = None
    transfer_account_id: UUID | None = None
    category_id: UUID | None = None
    merchant: str | None = None
    frequency: RecurrenceFrequency | None = None
    interval_value: int | None = None
    start_date: date | None = None
    end_date: date | None = None
    max_executions: int | None = None
    metadata: dict[str, Any] | None = None

    def changes(self) -> dict[str, Any]:
        """Return only the fields that were set."""
        return {
            name: getattr(self, name)
            for name in PATCHABLE_FIELDS
            if getattr(self, name) is not None
        }

    @property
    def touches_recurrence(self) -> bool:
        return bool(RECURRENCE_FIELDS & self.changes().keys())

    @property
    def touches_limits(self) -> bool:
        return bool(LIMIT_FIELDS & self.changes().keys())


@dataclass(frozen=True)
class RecurringSchedule:
    """Immutable snapshot of a recurring transaction schedule."""

    schedule_id: UUID
    household_id: UUID
    name: str
    description: str
    amount_minor: int
    currency: str
    account_id: UUID
    frequency: RecurrenceFrequency
    interval_value: int
    start_date: date
    next_execution_date: date
    status: ScheduleStatus
    created_by: UUID
    transfer_account_id: UUID | None = None
    category_id: UUID | None = None
    merchant: str | None = None
    end_date: date | None = None
    max_executions: int | None = None
    last_execution_date: date | None = None
    execution_count: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)
    claim_token: UUID | None = None
    claimed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def ledger_description(self) -> str:
        """Description recorded on each generated ledger transaction."""
        if self.description:
            return f"{self.name} - {self.description}"
        return self.name


@dataclass(frozen=True)
class ScheduleFilters:
    """Listing filters for ``find_by_household``."""

    status: ScheduleStatus | None = None
    account_id: UUID | None = None
    category_id: UUID | None = None
    frequency: RecurrenceFrequency | None = None


@dataclass(frozen=True)
class SchedulePage:
    """One page of schedules."""

    items: tuple[RecurringSchedule, ...]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return -(-self.total // self.limit) if self.limit else 0


# =============================================================================
# Execution DTOs
# =============================================================================


@dataclass(frozen=True)
class ScheduleExecution:
    """Immutable snapshot of one execution record (one occurrence)."""

    execution_id: UUID
    schedule_id: UUID
    scheduled_date: date
    status: ExecutionStatus
    transaction_id: str | None = None
    executed_at: datetime | None = None
    error_message: str | None = None
    retry_count: int = 0
    escalated_at: datetime | None = None
    abandon_reason: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class ExecutionOutcome:
    """Result of one ``ExecutionRunner`` invocation.

    ``reason`` explains SKIPPED outcomes (``not_active``, ``schedule_closed``,
    ``claim_conflict``, ``awaiting_retry``, ``limit_reached``, ...) and carries the error
    message for FAILED ones.
    """

    schedule_id: UUID
    status: OutcomeStatus
    execution_id: UUID | None = None
    scheduled_date: date | None = None
    transaction_id: str | None = None
    next_execution_date: date | None = None
    retry_count: int = 0
    reason: str | None = None
    duration_ms: int = 0

    @property
    def succeeded(self) -> bool:
        return self.status == OutcomeStatus.COMPLETED


@dataclass(frozen=True)
class DueScanResult:
    """Immutable result of one due-scan (``process_due``)."""

    as_of: date
    outcomes: tuple[ExecutionOutcome, ...] = ()
    correlation_id: str | None = None
    duration_ms: int = 0

    @property
    def total(self) -> int:
        return len(self.outcomes)

    @property
    def succeeded(self) -> int:
        return sum(1 for o in self.outcomes if o.status == OutcomeStatus.COMPLETED)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if o.status == OutcomeStatus.FAILED)

    @property
    def skipped(self) -> int:
        return sum(1 for o in self.outcomes if o.status == OutcomeStatus.SKIPPED)


@dataclass(frozen=True)
class RetrySweepResult:
    """Immutable result of one retry sweep (``retry_failed``).

    ``exhausted`` lists the dead letters: every FAILED execution at or above
    the retry limit, plus abandoned ones whose occurrence can no longer be
    retried (schedule closed, limits reached, cursor moved on).
    ``newly_escalated`` is the subset first observed by this sweep.
    """

    retry_limit: int
    outcomes: tuple[ExecutionOutcome, ...] = ()
    exhausted: tuple[ScheduleExecution, ...] = ()
    newly_escalated: tuple[UUID, ...] = ()
    correlation_id: str | None = None
    duration_ms: int = 0

    @property
    def retried(self) -> int:
        return len(self.outcomes)

    @property
    def recovered(self) -> int:
        return sum(1 for o in self.outcomes if o.status == OutcomeStatus.COMPLETED)
