"""
household_recurring.models -- ORM models for schedule persistence.

Architecture: household_recurring/models. Imports from household_kernel.db.base only.
"""

from household_recurring.models.recurring import (
    RecurringScheduleModel,
    ScheduleExecutionModel,
)

__all__ = [
    "RecurringScheduleModel",
    "ScheduleExecutionModel",
]
