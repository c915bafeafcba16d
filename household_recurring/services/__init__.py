"""household_recurring.services -- Store, runner, drivers and lifecycle API."""

from household_recurring.services.lifecycle import RecurringScheduleService
from household_recurring.services.orchestrator import DueScanOrchestrator
from household_recurring.services.runner import ExecutionRunner
from household_recurring.services.scheduler import RecurringScheduler
from household_recurring.services.store import ScheduleStore
from household_recurring.services.sweeper import RetrySweeper

__all__ = [
    "DueScanOrchestrator",
    "ExecutionRunner",
    "RecurringScheduleService",
    "RecurringScheduler",
    "RetrySweeper",
    "ScheduleStore",
]
