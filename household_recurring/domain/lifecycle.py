"""
Pure lifecycle rules: status transitions and schedule validation.

Contract:
    ``validate_transition()`` and ``validate_template()`` /
    ``validate_patch()`` are PURE and raise typed errors; persistence is the
    store's job.

Status machine:
    ACTIVE  <-> PAUSED
    ACTIVE, PAUSED -> CANCELLED   (terminal, user-driven)
    ACTIVE -> COMPLETED           (terminal, set by the engine when limits
                                   are exhausted)

Invariants enforced:
    RT-9 -- No transition leaves CANCELLED or COMPLETED.
"""

from __future__ import annotations

import re
from datetime import date
from typing import Any
from uuid import UUID

from household_kernel.exceptions import (
    InvalidScheduleConfigurationError,
    InvalidStatusTransitionError,
)

from household_recurring.domain.types import (
    RecurrenceFrequency,
    SchedulePatch,
    ScheduleStatus,
    ScheduleTemplate,
)

MAX_INTERVAL_VALUE = 365

_CURRENCY_RE = re.compile(r"^[A-Z]{3}$")

ALLOWED_TRANSITIONS: dict[ScheduleStatus, frozenset[ScheduleStatus]] = {
    ScheduleStatus.ACTIVE: frozenset(
        {ScheduleStatus.PAUSED, ScheduleStatus.CANCELLED, ScheduleStatus.COMPLETED}
    ),
    ScheduleStatus.PAUSED: frozenset(
        {ScheduleStatus.ACTIVE, ScheduleStatus.CANCELLED}
    ),
    ScheduleStatus.CANCELLED: frozenset(),
    ScheduleStatus.COMPLETED: frozenset(),
}

TERMINAL_STATUSES: frozenset[ScheduleStatus] = frozenset(
    status for status, targets in ALLOWED_TRANSITIONS.items() if not targets
)


def can_transition(current: ScheduleStatus, target: ScheduleStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def validate_transition(
    schedule_id: UUID,
    current: ScheduleStatus,
    target: ScheduleStatus,
) -> None:
    """Raise InvalidStatusTransitionError unless ``current -> target`` is allowed."""
    if not can_transition(current, target):
        raise InvalidStatusTransitionError(
            str(schedule_id), current.value, target.value,
        )


def limits_reached(
    execution_count: int,
    occurrence: date,
    max_executions: int | None,
    end_date: date | None,
) -> bool:
    """True when ``occurrence`` may no longer be executed.

    Either ``max_executions`` successes are already recorded or the
    occurrence lies beyond ``end_date``.
    """
    if max_executions is not None and execution_count >= max_executions:
        return True
    return end_date is not None and occurrence > end_date


# =============================================================================
# Field validation
# =============================================================================


def normalize_currency(currency: str) -> str:
    code = currency.strip().upper()
    if not _CURRENCY_RE.match(code):
        raise InvalidScheduleConfigurationError(
            "currency", f"'{currency}' is not a 3-letter currency code",
        )
    return code


def parse_frequency(value: RecurrenceFrequency | str) -> RecurrenceFrequency:
    try:
        return RecurrenceFrequency(value)
    except ValueError:
        raise InvalidScheduleConfigurationError(
            "frequency", f"unknown recurrence frequency '{value}'",
        ) from None


def _require_text(field_name: str, value: str) -> None:
    if not value or not value.strip():
        raise InvalidScheduleConfigurationError(field_name, "must not be empty")


def _validate_amount(amount_minor: int) -> None:
    if isinstance(amount_minor, bool) or not isinstance(amount_minor, int):
        raise InvalidScheduleConfigurationError(
            "amount_minor", "must be an integer amount in minor units",
        )
    if amount_minor < 1:
        raise InvalidScheduleConfigurationError(
            "amount_minor", f"must be at least 1, got {amount_minor}",
        )


def _validate_interval(interval_value: int) -> None:
    if isinstance(interval_value, bool) or not isinstance(interval_value, int):
        raise InvalidScheduleConfigurationError(
            "interval_value", "must be a positive integer",
        )
    if not 1 <= interval_value <= MAX_INTERVAL_VALUE:
        raise InvalidScheduleConfigurationError(
            "interval_value",
            f"must be between 1 and {MAX_INTERVAL_VALUE}, got {interval_value}",
        )


def _validate_date_range(start_date: date, end_date: date | None) -> None:
    if end_date is not None and end_date < start_date:
        raise InvalidScheduleConfigurationError(
            "end_date",
            f"end date {end_date} is before start date {start_date}",
        )


def _validate_max_executions(max_executions: int | None) -> None:
    if max_executions is not None and max_executions < 1:
        raise InvalidScheduleConfigurationError(
            "max_executions", f"must be at least 1, got {max_executions}",
        )


def validate_template(template: ScheduleTemplate) -> None:
    """Validate a create request.

    Raises:
        InvalidScheduleConfigurationError: On the first invalid field.
    """
    _require_text("name", template.name)
    _require_text("description", template.description)
    _validate_amount(template.amount_minor)
    parse_frequency(template.frequency)
    _validate_interval(template.interval_value)
    _validate_date_range(template.start_date, template.end_date)
    _validate_max_executions(template.max_executions)
    if template.currency is not None:
        normalize_currency(template.currency)


def validate_patch(patch: SchedulePatch, merged: dict[str, Any]) -> None:
    """Validate a patch against the schedule values it would produce.

    Args:
        patch: The requested changes.
        merged: The schedule's field values with the patch applied.
    """
    changes = patch.changes()
    if "name" in changes:
        _require_text("name", patch.name or "")
    if "description" in changes:
        _require_text("description", patch.description or "")
    if "amount_minor" in changes:
        _validate_amount(changes["amount_minor"])
    if "frequency" in changes:
        parse_frequency(changes["frequency"])
    if "interval_value" in changes:
        _validate_interval(changes["interval_value"])
    if "max_executions" in changes:
        _validate_max_executions(changes["max_executions"])
    if "currency" in changes:
        normalize_currency(changes["currency"])
    _validate_date_range(merged["start_date"], merged["end_date"])
