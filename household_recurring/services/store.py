"""
ScheduleStore -- Durable collection of schedules and execution records.

Contract:
    Point lookups, filtered/paginated listing, the due-for-execution query
    and every mutation the engine needs.  All mutations that race with
    other workers are single conditional UPDATE statements; callers never
    read-modify-write a schedule row.

Architecture: household_recurring/services.  Imports from
    household_recurring.domain and household_recurring.models.

Invariants enforced:
    RT-2 -- ``advance_after_success`` is the only statement that moves the
            cursor, and it is keyed on the claim token and observed cursor.
    RT-3 -- ``claim`` is a compare-and-swap on ``next_execution_date``.
    RT-9 -- ``find_due`` only ever returns ACTIVE schedules.

Non-goals:
    - Does NOT call ``session.commit()`` -- caller controls boundaries.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Any, Iterable
from uuid import UUID

from sqlalchemy import and_, case, func, not_, or_, select, update
from sqlalchemy.orm import Session

from household_kernel.exceptions import (
    ExecutionNotFoundError,
    InvalidStatusTransitionError,
    ScheduleClaimConflictError,
    ScheduleNotFoundError,
)
from household_kernel.logging_config import get_logger

from household_recurring.domain.types import (
    ExecutionStatus,
    RecurringSchedule,
    ScheduleExecution,
    ScheduleFilters,
    SchedulePage,
    ScheduleStatus,
)
from household_recurring.models.recurring import (
    RecurringScheduleModel,
    ScheduleExecutionModel,
)

logger = get_logger("recurring.store")

# Patch field name -> ORM attribute name, where they differ.
_COLUMN_ALIASES = {"metadata": "extra_metadata"}


def _claim_is_free(stale_before: datetime):
    """SQL predicate: nobody holds the claim, or the holder abandoned it."""
    return or_(
        RecurringScheduleModel.claim_token.is_(None),
        RecurringScheduleModel.claimed_at < stale_before,
    )


def _within_limits(occurrence):
    """SQL predicate: ``occurrence`` is still allowed by the schedule limits."""
    m = RecurringScheduleModel
    return and_(
        or_(m.max_executions.is_(None), m.execution_count < m.max_executions),
        or_(m.end_date.is_(None), m.end_date >= occurrence),
    )


class ScheduleStore:
    """Persistence operations for recurring schedules and executions."""

    def __init__(self, session: Session):
        self._session = session

    @property
    def session(self) -> Session:
        return self._session

    # -------------------------------------------------------------------------
    # Schedules: create / read
    # -------------------------------------------------------------------------

    def create(self, model: RecurringScheduleModel) -> RecurringSchedule:
        self._session.add(model)
        self._session.flush()
        logger.debug(
            "schedule_persisted",
            extra={"schedule_id": str(model.id), "household_id": str(model.household_id)},
        )
        return model.to_dto()

    def find_by_id(self, schedule_id: UUID) -> RecurringSchedule | None:
        model = self._load(schedule_id)
        return model.to_dto() if model is not None else None

    def get(self, schedule_id: UUID) -> RecurringSchedule:
        """Like ``find_by_id`` but raises ScheduleNotFoundError."""
        schedule = self.find_by_id(schedule_id)
        if schedule is None:
            raise ScheduleNotFoundError(str(schedule_id))
        return schedule

    def find_by_household(
        self,
        household_id: UUID,
        filters: ScheduleFilters | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> SchedulePage:
        """Filtered page of a household's schedules, soonest cursor first."""
        filters = filters or ScheduleFilters()
        conditions = [RecurringScheduleModel.household_id == household_id]
        if filters.status is not None:
            conditions.append(RecurringScheduleModel.status == filters.status.value)
        if filters.account_id is not None:
            conditions.append(RecurringScheduleModel.account_id == filters.account_id)
        if filters.category_id is not None:
            conditions.append(RecurringScheduleModel.category_id == filters.category_id)
        if filters.frequency is not None:
            conditions.append(RecurringScheduleModel.frequency == filters.frequency.value)

        total = self._session.execute(
            select(func.count()).select_from(RecurringScheduleModel).where(*conditions)
        ).scalar_one()

        models = self._session.execute(
            select(RecurringScheduleModel)
            .where(*conditions)
            .order_by(
                RecurringScheduleModel.next_execution_date,
                RecurringScheduleModel.id,
            )
            .offset((page - 1) * limit)
            .limit(limit)
            .execution_options(populate_existing=True)
        ).scalars().all()

        return SchedulePage(
            items=tuple(m.to_dto() for m in models),
            total=total,
            page=page,
            limit=limit,
        )

    def find_due(self, as_of: date) -> tuple[RecurringSchedule, ...]:
        """Schedules eligible for execution on ``as_of`` (RT-9).

        Always evaluated against the database, never a cache: concurrent
        scans must observe each other's cursor advances.
        """
        m = RecurringScheduleModel
        models = self._session.execute(
            select(m)
            .where(
                m.status == ScheduleStatus.ACTIVE.value,
                m.next_execution_date <= as_of,
                or_(m.end_date.is_(None), m.end_date >= as_of),
                or_(m.max_executions.is_(None), m.execution_count < m.max_executions),
            )
            .order_by(m.next_execution_date, m.id)
            .execution_options(populate_existing=True)
        ).scalars().all()
        return tuple(model.to_dto() for model in models)

    # -------------------------------------------------------------------------
    # Schedules: lifecycle mutations
    # -------------------------------------------------------------------------

    def update(
        self,
        schedule_id: UUID,
        values: dict[str, Any],
        actor_id: UUID,
        unclaimed_since: datetime | None = None,
        expected: dict[str, Any] | None = None,
    ) -> RecurringSchedule:
        """Apply field changes in one statement.

        Args:
            values: Patch field names to new values.
            unclaimed_since: When given, the update only applies if no
                runner holds a claim newer than this instant.
            expected: Column values the row must still hold, typically the
                cursor the new values were derived from.

        Raises:
            ScheduleNotFoundError: Unknown schedule.
            ScheduleClaimConflictError: A runner holds the claim, or the
                row moved away from ``expected``.
        """
        assignments = {_COLUMN_ALIASES.get(k, k): v for k, v in values.items()}
        assignments["updated_by_id"] = actor_id

        conditions = [RecurringScheduleModel.id == schedule_id]
        if unclaimed_since is not None:
            conditions.append(_claim_is_free(unclaimed_since))
        for column, value in (expected or {}).items():
            conditions.append(getattr(RecurringScheduleModel, column) == value)

        result = self._session.execute(
            update(RecurringScheduleModel)
            .where(*conditions)
            .values(**assignments)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            current = self.get(schedule_id)
            raise ScheduleClaimConflictError(
                str(schedule_id), current.next_execution_date,
            )
        return self.get(schedule_id)

    def update_status(
        self,
        schedule_id: UUID,
        expected: Iterable[ScheduleStatus],
        target: ScheduleStatus,
        actor_id: UUID,
    ) -> RecurringSchedule:
        """Conditional status change: applies only from an ``expected`` status.

        Raises:
            ScheduleNotFoundError: Unknown schedule.
            InvalidStatusTransitionError: Current status not in ``expected``.
        """
        expected_values = [s.value for s in expected]
        result = self._session.execute(
            update(RecurringScheduleModel)
            .where(
                RecurringScheduleModel.id == schedule_id,
                RecurringScheduleModel.status.in_(expected_values),
            )
            .values(status=target.value, updated_by_id=actor_id)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            current = self.get(schedule_id)
            raise InvalidStatusTransitionError(
                str(schedule_id), current.status.value, target.value,
            )
        return self.get(schedule_id)

    def delete(self, schedule_id: UUID) -> None:
        """Remove a schedule together with its execution history."""
        model = self._load(schedule_id)
        if model is None:
            raise ScheduleNotFoundError(str(schedule_id))
        self._session.delete(model)
        self._session.flush()

    # -------------------------------------------------------------------------
    # Schedules: runner cursor operations
    # -------------------------------------------------------------------------

    def claim(
        self,
        schedule_id: UUID,
        expected_next_date: date,
        token: UUID,
        now: datetime,
        stale_before: datetime,
    ) -> bool:
        """Compare-and-swap claim on the schedule's current occurrence (RT-3).

        Succeeds only if the schedule is still ACTIVE, its cursor still
        equals ``expected_next_date``, the occurrence is within
        ``max_executions`` and ``end_date``, and no live claim exists.
        """
        m = RecurringScheduleModel
        result = self._session.execute(
            update(m)
            .where(
                m.id == schedule_id,
                m.status == ScheduleStatus.ACTIVE.value,
                m.next_execution_date == expected_next_date,
                _within_limits(expected_next_date),
                _claim_is_free(stale_before),
            )
            .values(claim_token=token, claimed_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def release_claim(self, schedule_id: UUID, token: UUID) -> bool:
        result = self._session.execute(
            update(RecurringScheduleModel)
            .where(
                RecurringScheduleModel.id == schedule_id,
                RecurringScheduleModel.claim_token == token,
            )
            .values(claim_token=None, claimed_at=None)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def advance_after_success(
        self,
        schedule_id: UUID,
        token: UUID,
        scheduled_date: date,
        next_date: date,
        mark_completed: bool,
        actor_id: UUID,
        count_execution: bool = True,
    ) -> bool:
        """Move the cursor past ``scheduled_date`` and release the claim (RT-2).

        Sets ``next_execution_date``, increments ``execution_count``, sets
        ``last_execution_date``; optionally moves an ACTIVE schedule to
        COMPLETED.  With ``count_execution=False`` only the cursor moves,
        for an occurrence whose success was already counted.
        Keyed on the claim token AND the observed cursor, so a lost claim
        can never advance the schedule.
        """
        m = RecurringScheduleModel
        values: dict[str, Any] = {
            "next_execution_date": next_date,
            "claim_token": None,
            "claimed_at": None,
            "updated_by_id": actor_id,
        }
        if count_execution:
            values["execution_count"] = m.execution_count + 1
            values["last_execution_date"] = scheduled_date
        if mark_completed:
            # A pause or cancel that landed mid-flight wins over COMPLETED.
            values["status"] = case(
                (m.status == ScheduleStatus.ACTIVE.value, ScheduleStatus.COMPLETED.value),
                else_=m.status,
            )

        result = self._session.execute(
            update(m)
            .where(
                m.id == schedule_id,
                m.claim_token == token,
                m.next_execution_date == scheduled_date,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def complete_if_exhausted(self, schedule_id: UUID, actor_id: UUID) -> bool:
        """ACTIVE -> COMPLETED when the cursor lies beyond the schedule limits."""
        m = RecurringScheduleModel
        result = self._session.execute(
            update(m)
            .where(
                m.id == schedule_id,
                m.status == ScheduleStatus.ACTIVE.value,
                not_(_within_limits(m.next_execution_date)),
            )
            .values(status=ScheduleStatus.COMPLETED.value, updated_by_id=actor_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    # -------------------------------------------------------------------------
    # Executions
    # -------------------------------------------------------------------------

    def find_execution(self, execution_id: UUID) -> ScheduleExecution | None:
        model = self._session.get(
            ScheduleExecutionModel, execution_id, populate_existing=True,
        )
        return model.to_dto() if model is not None else None

    def get_execution(self, execution_id: UUID) -> ScheduleExecution:
        execution = self.find_execution(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(str(execution_id))
        return execution

    def find_execution_for_occurrence(
        self, schedule_id: UUID, scheduled_date: date,
    ) -> ScheduleExecution | None:
        model = self._session.execute(
            select(ScheduleExecutionModel)
            .where(
                ScheduleExecutionModel.schedule_id == schedule_id,
                ScheduleExecutionModel.scheduled_date == scheduled_date,
            )
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        return model.to_dto() if model is not None else None

    def create_execution(
        self,
        schedule_id: UUID,
        scheduled_date: date,
        actor_id: UUID,
        created_at: datetime,
    ) -> ScheduleExecution:
        """Insert a PENDING record for the occurrence (RT-5 UNIQUE)."""
        model = ScheduleExecutionModel(
            schedule_id=schedule_id,
            scheduled_date=scheduled_date,
            status=ExecutionStatus.PENDING.value,
            retry_count=0,
            transaction_id=None,
            executed_at=None,
            error_message=None,
            escalated_at=None,
            abandon_reason=None,
            created_by_id=actor_id,
            updated_by_id=None,
        )
        model.created_at = created_at
        model.updated_at = created_at
        self._session.add(model)
        self._session.flush()
        return model.to_dto()

    def begin_retry(self, execution_id: UUID, retry_limit: int, actor_id: UUID) -> bool:
        """FAILED -> PENDING with ``retry_count + 1``, below the ceiling only.

        Abandoned executions are never retried.
        """
        e = ScheduleExecutionModel
        result = self._session.execute(
            update(e)
            .where(
                e.id == execution_id,
                e.status == ExecutionStatus.FAILED.value,
                e.retry_count < retry_limit,
                e.abandon_reason.is_(None),
            )
            .values(
                status=ExecutionStatus.PENDING.value,
                retry_count=e.retry_count + 1,
                updated_by_id=actor_id,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def mark_execution_completed(
        self,
        execution_id: UUID,
        transaction_id: str,
        executed_at: datetime,
        actor_id: UUID,
    ) -> bool:
        e = ScheduleExecutionModel
        result = self._session.execute(
            update(e)
            .where(e.id == execution_id, e.status == ExecutionStatus.PENDING.value)
            .values(
                status=ExecutionStatus.COMPLETED.value,
                transaction_id=transaction_id,
                executed_at=executed_at,
                error_message=None,
                updated_by_id=actor_id,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def mark_execution_failed(
        self,
        execution_id: UUID,
        error_message: str,
        actor_id: UUID,
    ) -> bool:
        e = ScheduleExecutionModel
        result = self._session.execute(
            update(e)
            .where(e.id == execution_id, e.status == ExecutionStatus.PENDING.value)
            .values(
                status=ExecutionStatus.FAILED.value,
                error_message=error_message,
                updated_by_id=actor_id,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def find_failed_executions(
        self, retry_limit: int, limit: int | None = None,
    ) -> tuple[ScheduleExecution, ...]:
        """Retryable FAILED executions, oldest first.

        Below the ceiling, not abandoned, and not owned by a PAUSED schedule;
        those wait for ``resume``.
        """
        e = ScheduleExecutionModel
        m = RecurringScheduleModel
        stmt = (
            select(e)
            .join(m, m.id == e.schedule_id)
            .where(
                e.status == ExecutionStatus.FAILED.value,
                e.retry_count < retry_limit,
                e.abandon_reason.is_(None),
                m.status != ScheduleStatus.PAUSED.value,
            )
            .order_by(e.scheduled_date, e.id)
            .execution_options(populate_existing=True)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        return tuple(model.to_dto() for model in self._session.execute(stmt).scalars().all())

    def find_exhausted_executions(self, retry_limit: int) -> tuple[ScheduleExecution, ...]:
        """Dead letters: FAILED executions at the ceiling or abandoned."""
        e = ScheduleExecutionModel
        models = self._session.execute(
            select(e)
            .where(
                e.status == ExecutionStatus.FAILED.value,
                or_(e.retry_count >= retry_limit, e.abandon_reason.isnot(None)),
            )
            .order_by(e.scheduled_date, e.id)
            .execution_options(populate_existing=True)
        ).scalars().all()
        return tuple(m.to_dto() for m in models)

    def abandon_execution(self, execution_id: UUID, reason: str, actor_id: UUID) -> bool:
        """Retire a FAILED execution that can never be retried."""
        e = ScheduleExecutionModel
        result = self._session.execute(
            update(e)
            .where(
                e.id == execution_id,
                e.status == ExecutionStatus.FAILED.value,
                e.abandon_reason.is_(None),
            )
            .values(abandon_reason=reason, updated_by_id=actor_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def mark_escalated(self, execution_ids: Iterable[UUID], at: datetime) -> int:
        """Stamp ``escalated_at`` on executions not escalated before."""
        ids = list(execution_ids)
        if not ids:
            return 0
        e = ScheduleExecutionModel
        result = self._session.execute(
            update(e)
            .where(e.id.in_(ids), e.escalated_at.is_(None))
            .values(escalated_at=at)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    def find_executions(
        self, schedule_id: UUID, limit: int = 50,
    ) -> tuple[ScheduleExecution, ...]:
        """Most recent execution records of a schedule."""
        e = ScheduleExecutionModel
        models = self._session.execute(
            select(e)
            .where(e.schedule_id == schedule_id)
            .order_by(e.scheduled_date.desc())
            .limit(limit)
            .execution_options(populate_existing=True)
        ).scalars().all()
        return tuple(m.to_dto() for m in models)

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _load(self, schedule_id: UUID) -> RecurringScheduleModel | None:
        return self._session.get(
            RecurringScheduleModel, schedule_id, populate_existing=True,
        )
