"""
household_recurring.domain -- Pure types and rules for the recurring engine.

ZERO I/O.  All DTOs are frozen dataclasses.
"""

from household_recurring.domain.recurrence import (
    add_months,
    first_occurrence_on_or_after,
    next_date,
    occurrences,
)
from household_recurring.domain.types import (
    DueScanResult,
    ExecutionOutcome,
    ExecutionStatus,
    OutcomeStatus,
    RecurrenceFrequency,
    RecurringSchedule,
    RetrySweepResult,
    ScheduleExecution,
    ScheduleFilters,
    SchedulePage,
    SchedulePatch,
    ScheduleStatus,
    ScheduleTemplate,
)

__all__ = [
    "DueScanResult",
    "ExecutionOutcome",
    "ExecutionStatus",
    "OutcomeStatus",
    "RecurrenceFrequency",
    "RecurringSchedule",
    "RetrySweepResult",
    "ScheduleExecution",
    "ScheduleFilters",
    "SchedulePage",
    "SchedulePatch",
    "ScheduleStatus",
    "ScheduleTemplate",
    "add_months",
    "first_occurrence_on_or_after",
    "next_date",
    "occurrences",
]
