"""
Pure recurrence calculation.

Contract:
    ``next_date(from_date, frequency, interval)`` is total and PURE -- no
    I/O, no clock.  Inputs are assumed pre-validated (``interval >= 1``).

Month-end policy:
    MONTHLY and YEARLY keep the day-of-month where it exists and otherwise
    clamp to the last day of the target month (Jan 31 + 1 month is
    Feb 29 in 2024; Feb 29 + 1 year is Feb 28).  Advancement chains from
    the current cursor, so a clamped date becomes the new anchor.

Invariants enforced:
    RT-1 -- ``next_date(d, ...) > d`` for every valid input.
"""

from __future__ import annotations

import calendar
from datetime import date, timedelta

from household_recurring.domain.types import RecurrenceFrequency


def add_months(from_date: date, months: int) -> date:
    """Calendar month arithmetic with end-of-month clamping."""
    month_index = from_date.month - 1 + months
    year = from_date.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(from_date.day, last_day))


def next_date(
    from_date: date,
    frequency: RecurrenceFrequency,
    interval: int,
) -> date:
    """Return the occurrence following ``from_date`` (RT-1 pure)."""
    match frequency:
        case RecurrenceFrequency.DAILY:
            return from_date + timedelta(days=interval)
        case RecurrenceFrequency.WEEKLY:
            return from_date + timedelta(weeks=interval)
        case RecurrenceFrequency.MONTHLY:
            return add_months(from_date, interval)
        case RecurrenceFrequency.YEARLY:
            return add_months(from_date, 12 * interval)
        case RecurrenceFrequency.CUSTOM:
            return from_date + timedelta(days=interval)
    raise AssertionError(f"Unhandled recurrence frequency: {frequency!r}")


def _step_days(frequency: RecurrenceFrequency, interval: int) -> int | None:
    """Fixed step in days, or None for calendar-month frequencies."""
    match frequency:
        case RecurrenceFrequency.DAILY | RecurrenceFrequency.CUSTOM:
            return interval
        case RecurrenceFrequency.WEEKLY:
            return interval * 7
        case RecurrenceFrequency.MONTHLY | RecurrenceFrequency.YEARLY:
            return None
    raise AssertionError(f"Unhandled recurrence frequency: {frequency!r}")


def first_occurrence_on_or_after(
    anchor: date,
    frequency: RecurrenceFrequency,
    interval: int,
    floor: date,
) -> date:
    """First occurrence of the rule anchored at ``anchor`` that is >= ``floor``.

    Occurrences are ``anchor``, ``next_date(anchor)``, ... chained exactly
    as the runner advances the cursor, so the result is a date the runner
    itself would have produced.  Used when a schedule's recurrence is
    edited and its cursor must be re-derived.
    """
    if anchor >= floor:
        return anchor

    step = _step_days(frequency, interval)
    if step is not None:
        behind = (floor - anchor).days
        periods = -(-behind // step)
        return anchor + timedelta(days=periods * step)

    # Chained walk: a clamped day-of-month carries forward.
    current = anchor
    while current < floor:
        current = next_date(current, frequency, interval)
    return current


def occurrences(
    anchor: date,
    frequency: RecurrenceFrequency,
    interval: int,
    count: int,
    end_date: date | None = None,
) -> tuple[date, ...]:
    """Up to ``count`` occurrences starting at ``anchor`` (inclusive).

    Stops early at ``end_date`` (inclusive upper bound).  Used to preview a
    schedule's upcoming dates.
    """
    result: list[date] = []
    current = anchor
    while len(result) < count and (end_date is None or current <= end_date):
        result.append(current)
        current = next_date(current, frequency, interval)
    return tuple(result)
