"""
RecurringScheduleService -- Authorized create/update/status/delete/query API.

Contract:
    Every operation authorizes the requestor against the owning household
    through the injected PermissionChecker, validates with the pure rules
    in ``household_recurring.domain.lifecycle`` and persists through the
    ScheduleStore's atomic operations.

Architecture: household_recurring/services.  Imports from
    household_recurring.domain, household_recurring.collaborators and the
    ScheduleStore.

Invariants enforced:
    RT-2 -- ``resume`` leaves the cursor untouched; only a recurrence edit
            re-derives it (first occurrence of the new rule on or after
            ``max(today, start_date)`` and after the last execution).
    RT-3 -- Recurrence and limit edits are refused while a runner holds
            the claim, and apply only to the cursor they were derived from.
    RT-8 -- ``today`` from the injected Clock.
    RT-9 -- Status changes are conditional updates on the expected status;
            CANCELLED and COMPLETED are terminal.

Failure modes:
    - PermissionDeniedError -- requestor lacks the household permission.
    - ScheduleNotFoundError -- unknown schedule.
    - InvalidScheduleConfigurationError -- invalid template or patch.
    - InvalidStatusTransitionError -- e.g. resume after cancel.
    - ScheduleClaimConflictError -- recurrence or limit edit during an
      execution.

Non-goals:
    - Does NOT call ``session.commit()`` -- caller controls boundaries.
"""

from __future__ import annotations

from dataclasses import asdict
from datetime import date, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from household_kernel.domain.clock import Clock, SystemClock
from household_kernel.exceptions import InvalidScheduleConfigurationError
from household_kernel.logging_config import LogContext, get_logger

from household_recurring.collaborators import HouseholdPermission, PermissionChecker
from household_recurring.domain.lifecycle import (
    TERMINAL_STATUSES,
    limits_reached,
    normalize_currency,
    parse_frequency,
    validate_patch,
    validate_template,
    validate_transition,
)
from household_recurring.domain.recurrence import (
    first_occurrence_on_or_after,
    occurrences,
)
from household_recurring.domain.types import (
    RecurringSchedule,
    ScheduleExecution,
    ScheduleFilters,
    SchedulePage,
    SchedulePatch,
    ScheduleStatus,
    ScheduleTemplate,
)
from household_recurring.models.recurring import RecurringScheduleModel
from household_recurring.services.store import ScheduleStore

logger = get_logger("recurring.lifecycle")


class RecurringScheduleService:
    """Schedule lifecycle API."""

    def __init__(
        self,
        session: Session,
        permissions: PermissionChecker,
        clock: Clock | None = None,
        default_currency: str = "IDR",
        claim_ttl_seconds: int = 600,
        default_page_size: int = 20,
        max_page_size: int = 100,
        history_limit: int = 50,
    ):
        self._store = ScheduleStore(session)
        self._permissions = permissions
        self._clock = clock or SystemClock()
        self._default_currency = default_currency
        self._claim_ttl = timedelta(seconds=claim_ttl_seconds)
        self._default_page_size = default_page_size
        self._max_page_size = max_page_size
        self._history_limit = history_limit

    # -------------------------------------------------------------------------
    # Create / update
    # -------------------------------------------------------------------------

    def create(
        self,
        household_id: UUID,
        requestor_id: UUID,
        template: ScheduleTemplate,
    ) -> RecurringSchedule:
        """Create an ACTIVE schedule whose cursor starts at ``start_date``."""
        self._authorize(requestor_id, household_id, HouseholdPermission.CREATE_TRANSACTIONS)
        validate_template(template)
        currency = normalize_currency(template.currency or self._default_currency)

        model = RecurringScheduleModel.from_template(
            template, household_id, currency, requestor_id,
        )
        now = self._clock.now()
        model.created_at = now
        model.updated_at = now
        schedule = self._store.create(model)

        with LogContext.bind(household_id=household_id, actor_id=requestor_id):
            logger.info(
                "schedule_created",
                extra={
                    "schedule_id": str(schedule.schedule_id),
                    "frequency": schedule.frequency.value,
                    "interval_value": schedule.interval_value,
                    "next_execution_date": schedule.next_execution_date,
                },
            )
        return schedule

    def update(
        self,
        schedule_id: UUID,
        requestor_id: UUID,
        patch: SchedulePatch,
    ) -> RecurringSchedule:
        """Apply a partial update.

        Changing ``frequency``, ``interval_value`` or ``start_date``
        re-derives ``next_execution_date`` from the new rule.  An ACTIVE
        schedule whose new limits leave no occurrence to run moves to
        COMPLETED.

        Raises:
            ScheduleClaimConflictError: A recurrence or limit edit raced a
                runner holding the claim or settling an occurrence.
        """
        current = self._store.get(schedule_id)
        self._authorize(
            requestor_id, current.household_id, HouseholdPermission.UPDATE_TRANSACTIONS,
        )
        changes = patch.changes()
        if not changes:
            return current

        if current.status in TERMINAL_STATUSES:
            raise InvalidScheduleConfigurationError(
                "status", f"cannot update a {current.status.value} schedule",
            )

        merged = {**asdict(current), **changes}
        validate_patch(patch, merged)

        if "max_executions" in changes and changes["max_executions"] < current.execution_count:
            raise InvalidScheduleConfigurationError(
                "max_executions",
                f"{changes['max_executions']} is below the "
                f"{current.execution_count} executions already recorded",
            )

        values: dict[str, Any] = dict(changes)
        if "name" in values:
            values["name"] = values["name"].strip()
        if "description" in values:
            values["description"] = values["description"].strip()
        if "currency" in values:
            values["currency"] = normalize_currency(values["currency"])
        if "frequency" in values:
            values["frequency"] = parse_frequency(values["frequency"]).value

        unclaimed_since = None
        expected = None
        if patch.touches_recurrence or patch.touches_limits:
            # Derived from the cursor as read; a settle in between wins.
            unclaimed_since = self._clock.now() - self._claim_ttl
            expected = {
                "next_execution_date": current.next_execution_date,
                "execution_count": current.execution_count,
                "status": current.status.value,
            }
        if patch.touches_recurrence:
            values["next_execution_date"] = self._rederive_cursor(current, merged)
        completes = (
            expected is not None
            and current.status == ScheduleStatus.ACTIVE
            and limits_reached(
                current.execution_count,
                values.get("next_execution_date", current.next_execution_date),
                merged["max_executions"],
                merged["end_date"],
            )
        )
        if completes:
            values["status"] = ScheduleStatus.COMPLETED.value

        updated = self._store.update(
            schedule_id,
            values,
            requestor_id,
            unclaimed_since=unclaimed_since,
            expected=expected,
        )
        if completes:
            logger.info(
                "schedule_completed",
                extra={
                    "schedule_id": str(schedule_id),
                    "execution_count": updated.execution_count,
                    "max_executions": updated.max_executions,
                    "end_date": updated.end_date,
                    "reason": "limit_reached",
                },
            )
        logger.info(
            "schedule_updated",
            extra={
                "schedule_id": str(schedule_id),
                "fields": sorted(changes),
                "next_execution_date": updated.next_execution_date,
            },
        )
        return updated

    def _rederive_cursor(
        self, current: RecurringSchedule, merged: dict[str, Any],
    ) -> date:
        start_date: date = merged["start_date"]
        floor = max(self._clock.today(), start_date)
        if current.last_execution_date is not None:
            floor = max(floor, current.last_execution_date + timedelta(days=1))
        return first_occurrence_on_or_after(
            start_date,
            parse_frequency(merged["frequency"]),
            merged["interval_value"],
            floor,
        )

    # -------------------------------------------------------------------------
    # Status transitions
    # -------------------------------------------------------------------------

    def pause(self, schedule_id: UUID, requestor_id: UUID) -> RecurringSchedule:
        """ACTIVE -> PAUSED."""
        return self._transition(
            schedule_id, requestor_id, (ScheduleStatus.ACTIVE,), ScheduleStatus.PAUSED,
        )

    def resume(self, schedule_id: UUID, requestor_id: UUID) -> RecurringSchedule:
        """PAUSED -> ACTIVE; the cursor is left as it was."""
        return self._transition(
            schedule_id, requestor_id, (ScheduleStatus.PAUSED,), ScheduleStatus.ACTIVE,
        )

    def cancel(self, schedule_id: UUID, requestor_id: UUID) -> RecurringSchedule:
        """ACTIVE or PAUSED -> CANCELLED (terminal)."""
        return self._transition(
            schedule_id,
            requestor_id,
            (ScheduleStatus.ACTIVE, ScheduleStatus.PAUSED),
            ScheduleStatus.CANCELLED,
        )

    def _transition(
        self,
        schedule_id: UUID,
        requestor_id: UUID,
        expected: tuple[ScheduleStatus, ...],
        target: ScheduleStatus,
    ) -> RecurringSchedule:
        current = self._store.get(schedule_id)
        self._authorize(
            requestor_id, current.household_id, HouseholdPermission.UPDATE_TRANSACTIONS,
        )
        validate_transition(schedule_id, current.status, target)
        updated = self._store.update_status(schedule_id, expected, target, requestor_id)
        logger.info(
            "schedule_status_changed",
            extra={
                "schedule_id": str(schedule_id),
                "from_status": current.status.value,
                "to_status": target.value,
            },
        )
        return updated

    # -------------------------------------------------------------------------
    # Delete
    # -------------------------------------------------------------------------

    def delete(self, schedule_id: UUID, requestor_id: UUID) -> None:
        """Remove a schedule and its execution history."""
        current = self._store.get(schedule_id)
        self._authorize(
            requestor_id, current.household_id, HouseholdPermission.DELETE_TRANSACTIONS,
        )
        self._store.delete(schedule_id)
        logger.info("schedule_deleted", extra={"schedule_id": str(schedule_id)})

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def find_by_id(self, schedule_id: UUID, requestor_id: UUID) -> RecurringSchedule:
        schedule = self._store.get(schedule_id)
        self._authorize(
            requestor_id, schedule.household_id, HouseholdPermission.VIEW_TRANSACTIONS,
        )
        return schedule

    def find_by_household(
        self,
        household_id: UUID,
        requestor_id: UUID,
        filters: ScheduleFilters | None = None,
        page: int = 1,
        limit: int | None = None,
    ) -> SchedulePage:
        """One page of the household's schedules.

        ``limit`` defaults to the configured page size and is capped at the
        configured maximum.

        Raises:
            ValueError: If ``page`` or ``limit`` is below 1.
        """
        self._authorize(requestor_id, household_id, HouseholdPermission.VIEW_TRANSACTIONS)
        if page < 1:
            raise ValueError(f"page must be at least 1, got {page}")
        effective_limit = self._default_page_size if limit is None else limit
        if effective_limit < 1:
            raise ValueError(f"limit must be at least 1, got {effective_limit}")
        effective_limit = min(effective_limit, self._max_page_size)
        return self._store.find_by_household(household_id, filters, page, effective_limit)

    def get_execution_history(
        self,
        schedule_id: UUID,
        requestor_id: UUID,
        limit: int | None = None,
    ) -> tuple[ScheduleExecution, ...]:
        """Most recent execution records, newest occurrence first."""
        schedule = self._store.get(schedule_id)
        self._authorize(
            requestor_id, schedule.household_id, HouseholdPermission.VIEW_TRANSACTIONS,
        )
        return self._store.find_executions(schedule_id, limit or self._history_limit)

    def preview(
        self,
        schedule_id: UUID,
        requestor_id: UUID,
        count: int = 5,
    ) -> tuple[date, ...]:
        """Upcoming occurrence dates from the current cursor.

        Bounded by ``end_date`` and by the executions remaining under
        ``max_executions``.  Empty for non-ACTIVE schedules.
        """
        schedule = self.find_by_id(schedule_id, requestor_id)
        if schedule.status != ScheduleStatus.ACTIVE:
            return ()
        if schedule.max_executions is not None:
            count = min(count, schedule.max_executions - schedule.execution_count)
        return occurrences(
            schedule.next_execution_date,
            schedule.frequency,
            schedule.interval_value,
            max(count, 0),
            schedule.end_date,
        )

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _authorize(
        self,
        requestor_id: UUID,
        household_id: UUID,
        permission: HouseholdPermission,
    ) -> None:
        self._permissions.check_permission(requestor_id, household_id, permission)
