"""
ORM models for recurring schedules and their execution records.

Contract:
    RecurringScheduleModel and ScheduleExecutionModel persist the recurrence
    rule with its runtime cursor, and one row per attempted occurrence.
    Each has ``to_dto()``; schedules also have ``from_template()``.

Architecture: household_recurring/models.  Imports from
    household_kernel.db.base only (DTO types lazily).

Invariants enforced:
    RT-3 -- ``claim_token`` / ``claimed_at`` hold the per-schedule claim.
    RT-5 -- UNIQUE (schedule_id, scheduled_date): one execution record,
            hence at most one COMPLETED outcome, per occurrence.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from household_kernel.db.base import TrackedBase, UUIDString

if TYPE_CHECKING:
    from household_recurring.domain.types import (
        RecurringSchedule,
        ScheduleExecution,
        ScheduleTemplate,
    )


class RecurringScheduleModel(TrackedBase):
    """Persistent recurrence rule plus cursor (one row per schedule)."""

    __tablename__ = "recurring_schedules"

    __table_args__ = (
        Index("ix_recurring_schedules_household", "household_id"),
        Index("ix_recurring_schedules_due", "status", "next_execution_date"),
        CheckConstraint("interval_value > 0", name="ck_recurring_interval_positive"),
        CheckConstraint("amount_minor > 0", name="ck_recurring_amount_positive"),
        CheckConstraint(
            "end_date IS NULL OR end_date >= start_date",
            name="ck_recurring_date_range",
        ),
        CheckConstraint(
            "max_executions IS NULL OR execution_count <= max_executions",
            name="ck_recurring_execution_ceiling",
        ),
    )

    household_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    merchant: Mapped[str | None] = mapped_column(String(200), nullable=True)

    amount_minor: Mapped[int] = mapped_column(nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    account_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    transfer_account_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), nullable=True,
    )
    category_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    frequency: Mapped[str] = mapped_column(String(20), nullable=False)
    interval_value: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    max_executions: Mapped[int | None] = mapped_column(Integer, nullable=True)

    next_execution_date: Mapped[date] = mapped_column(Date, nullable=False)
    last_execution_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    execution_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    status: Mapped[str] = mapped_column(String(20), nullable=False)
    extra_metadata: Mapped[dict | None] = mapped_column(
        "metadata", JSON, nullable=True,
    )

    claim_token: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    executions: Mapped[list["ScheduleExecutionModel"]] = relationship(
        "ScheduleExecutionModel",
        back_populates="schedule",
        cascade="all, delete-orphan",
    )

    def to_dto(self) -> RecurringSchedule:
        from household_recurring.domain.types import (
            RecurrenceFrequency,
            RecurringSchedule,
            ScheduleStatus,
        )

        return RecurringSchedule(
            schedule_id=self.id,
            household_id=self.household_id,
            name=self.name,
            description=self.description,
            amount_minor=self.amount_minor,
            currency=self.currency,
            account_id=self.account_id,
            transfer_account_id=self.transfer_account_id,
            category_id=self.category_id,
            merchant=self.merchant,
            frequency=RecurrenceFrequency(self.frequency),
            interval_value=self.interval_value,
            start_date=self.start_date,
            end_date=self.end_date,
            max_executions=self.max_executions,
            next_execution_date=self.next_execution_date,
            last_execution_date=self.last_execution_date,
            execution_count=self.execution_count,
            status=ScheduleStatus(self.status),
            metadata=dict(self.extra_metadata or {}),
            claim_token=self.claim_token,
            claimed_at=self.claimed_at,
            created_by=self.created_by_id,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )

    @classmethod
    def from_template(
        cls,
        template: ScheduleTemplate,
        household_id: UUID,
        currency: str,
        created_by_id: UUID,
    ) -> RecurringScheduleModel:
        """New ACTIVE schedule whose cursor starts at ``start_date``."""
        from household_recurring.domain.types import RecurrenceFrequency, ScheduleStatus

        return cls(
            household_id=household_id,
            name=template.name.strip(),
            description=template.description.strip(),
            merchant=template.merchant,
            amount_minor=template.amount_minor,
            currency=currency,
            account_id=template.account_id,
            transfer_account_id=template.transfer_account_id,
            category_id=template.category_id,
            frequency=RecurrenceFrequency(template.frequency).value,
            interval_value=template.interval_value,
            start_date=template.start_date,
            end_date=template.end_date,
            max_executions=template.max_executions,
            next_execution_date=template.start_date,
            last_execution_date=None,
            execution_count=0,
            status=ScheduleStatus.ACTIVE.value,
            extra_metadata=dict(template.metadata) or None,
            claim_token=None,
            claimed_at=None,
            created_by_id=created_by_id,
            updated_by_id=None,
        )


class ScheduleExecutionModel(TrackedBase):
    """One attempted occurrence of a schedule (retries update it in place)."""

    __tablename__ = "recurring_executions"

    __table_args__ = (
        UniqueConstraint(
            "schedule_id", "scheduled_date", name="uq_recurring_execution_occurrence",
        ),
        Index("ix_recurring_executions_status_retry", "status", "retry_count"),
    )

    schedule_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("recurring_schedules.id", ondelete="CASCADE"),
        nullable=False,
    )
    scheduled_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    transaction_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    executed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    escalated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    # Set when the occurrence can no longer be retried; makes it a dead letter.
    abandon_reason: Mapped[str | None] = mapped_column(String(50), nullable=True)

    schedule: Mapped["RecurringScheduleModel"] = relationship(
        "RecurringScheduleModel",
        back_populates="executions",
        foreign_keys=[schedule_id],
    )

    def to_dto(self) -> ScheduleExecution:
        from household_recurring.domain.types import ExecutionStatus, ScheduleExecution

        return ScheduleExecution(
            execution_id=self.id,
            schedule_id=self.schedule_id,
            scheduled_date=self.scheduled_date,
            status=ExecutionStatus(self.status),
            transaction_id=self.transaction_id,
            executed_at=self.executed_at,
            error_message=self.error_message,
            retry_count=self.retry_count,
            escalated_at=self.escalated_at,
            abandon_reason=self.abandon_reason,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )
