"""
Typed exception hierarchy for the household finance backend.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers (HTTP bindings, the scheduler loop, operator tooling) must react to
errors by TYPE and CODE, never by parsing messages:

    try:
        service.pause(schedule_id, requestor_id)
    except InvalidStatusTransitionError as e:
        api_response(409, code=e.code, current=e.current_status)
    except PermissionDeniedError as e:
        api_response(403, code=e.code, permission=e.permission)

Every exception:
  1. Has a ``code`` class attribute (machine-readable, API-safe).
  2. Stores its context as attributes (survives logging / serialization).

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    HouseholdKernelError (base)
    |
    +-- ScheduleError
    |   +-- ScheduleNotFoundError
    |   +-- ScheduleNotActiveError
    |   +-- InvalidScheduleConfigurationError
    |       +-- InvalidStatusTransitionError
    |
    +-- ExecutionError
    |   +-- ExecutionNotFoundError
    |   +-- ExecutionFailedError
    |   +-- ExecutionNotRetryableError
    |   +-- MaxRetriesExceededError
    |
    +-- ConcurrencyError
    |   +-- ScheduleClaimConflictError
    |
    +-- AuthorizationError
    |   +-- PermissionDeniedError
    |
    +-- ConfigurationError
        +-- SchedulerConfigError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category      | Code                            | When Raised
--------------|---------------------------------|-------------------------------------
Schedule      | SCHEDULE_NOT_FOUND              | Schedule ID doesn't exist
              | SCHEDULE_NOT_ACTIVE             | Execution requested for non-ACTIVE schedule
              | INVALID_SCHEDULE_CONFIGURATION  | Bad date range, interval, amount, ...
              | INVALID_STATUS_TRANSITION       | e.g. resume a CANCELLED schedule
--------------|---------------------------------|-------------------------------------
Execution     | EXECUTION_NOT_FOUND             | Execution ID doesn't exist
              | EXECUTION_FAILED                | Ledger collaborator error or timeout
              | EXECUTION_NOT_RETRYABLE         | Retry requested for non-FAILED record
              | MAX_RETRIES_EXCEEDED            | Retry ceiling reached (dead letter)
--------------|---------------------------------|-------------------------------------
Concurrency   | SCHEDULE_CLAIM_CONFLICT         | Another worker owns the occurrence
--------------|---------------------------------|-------------------------------------
Authorization | PERMISSION_DENIED               | Household permission check failed
--------------|---------------------------------|-------------------------------------
Configuration | SCHEDULER_CONFIG_ERROR          | Invalid engine configuration

===============================================================================
PROPAGATION
===============================================================================

ScheduleError and AuthorizationError are fatal to the single lifecycle call
that raised them.  ExecutionFailedError is contained by the execution runner:
it is persisted on the execution record and never aborts a due-scan batch.
MaxRetriesExceededError marks a standing, operator-visible failure.
"""

from __future__ import annotations

from datetime import date


class HouseholdKernelError(Exception):
    """
    Base exception for all household backend errors.

    All subclasses must define a ``code`` class attribute.
    """

    code: str = "HOUSEHOLD_KERNEL_ERROR"


# Schedule-related exceptions


class ScheduleError(HouseholdKernelError):
    """Base exception for recurring schedule errors."""

    code: str = "SCHEDULE_ERROR"


class ScheduleNotFoundError(ScheduleError):
    """Recurring schedule with given ID was not found."""

    code: str = "SCHEDULE_NOT_FOUND"

    def __init__(self, schedule_id: str):
        self.schedule_id = schedule_id
        super().__init__(f"Recurring schedule not found: {schedule_id}")


class ScheduleNotActiveError(ScheduleError):
    """Execution attempted against a schedule that is not ACTIVE."""

    code: str = "SCHEDULE_NOT_ACTIVE"

    def __init__(self, schedule_id: str, status: str):
        self.schedule_id = schedule_id
        self.status = status
        super().__init__(
            f"Recurring schedule {schedule_id} is not active (status: {status})"
        )


class InvalidScheduleConfigurationError(ScheduleError):
    """Schedule definition or patch fails validation."""

    code: str = "INVALID_SCHEDULE_CONFIGURATION"

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid schedule configuration ({field}): {reason}")


class InvalidStatusTransitionError(InvalidScheduleConfigurationError):
    """Requested lifecycle transition is not allowed from the current status."""

    code: str = "INVALID_STATUS_TRANSITION"

    def __init__(self, schedule_id: str, current_status: str, target_status: str):
        self.schedule_id = schedule_id
        self.current_status = current_status
        self.target_status = target_status
        super().__init__(
            "status",
            f"cannot transition schedule {schedule_id} "
            f"from {current_status} to {target_status}",
        )


# Execution-related exceptions


class ExecutionError(HouseholdKernelError):
    """Base exception for execution record errors."""

    code: str = "EXECUTION_ERROR"


class ExecutionNotFoundError(ExecutionError):
    """Execution record with given ID was not found."""

    code: str = "EXECUTION_NOT_FOUND"

    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"Execution not found: {execution_id}")


class ExecutionFailedError(ExecutionError):
    """
    The ledger collaborator failed (or timed out) for one occurrence.

    Wraps the original error; recorded on the execution record and never
    treated as fatal by the due-scan or retry sweep.
    """

    code: str = "EXECUTION_FAILED"

    def __init__(
        self,
        schedule_id: str,
        scheduled_date: date,
        reason: str,
        cause_type: str | None = None,
    ):
        self.schedule_id = schedule_id
        self.scheduled_date = scheduled_date
        self.reason = reason
        self.cause_type = cause_type
        super().__init__(reason)


class ExecutionNotRetryableError(ExecutionError):
    """Retry requested for an execution that is not FAILED, or was abandoned."""

    code: str = "EXECUTION_NOT_RETRYABLE"

    def __init__(self, execution_id: str, status: str):
        self.execution_id = execution_id
        self.status = status
        super().__init__(
            f"Execution {execution_id} cannot be retried from status {status}"
        )


class MaxRetriesExceededError(ExecutionError):
    """Execution has exhausted its retry ceiling and needs operator attention."""

    code: str = "MAX_RETRIES_EXCEEDED"

    def __init__(self, execution_id: str, retry_count: int, retry_limit: int):
        self.execution_id = execution_id
        self.retry_count = retry_count
        self.retry_limit = retry_limit
        super().__init__(
            f"Execution {execution_id} exhausted retries "
            f"({retry_count}/{retry_limit})"
        )


# Concurrency-related exceptions


class ConcurrencyError(HouseholdKernelError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"


class ScheduleClaimConflictError(ConcurrencyError):
    """Another worker holds (or advanced) the schedule occurrence."""

    code: str = "SCHEDULE_CLAIM_CONFLICT"

    def __init__(self, schedule_id: str, observed_date: date | None = None):
        self.schedule_id = schedule_id
        self.observed_date = observed_date
        super().__init__(
            f"Claim conflict on recurring schedule {schedule_id} "
            f"(observed cursor: {observed_date})"
        )


# Authorization-related exceptions


class AuthorizationError(HouseholdKernelError):
    """Base exception for authorization errors."""

    code: str = "AUTHORIZATION_ERROR"


class PermissionDeniedError(AuthorizationError):
    """User lacks the household permission required for the operation."""

    code: str = "PERMISSION_DENIED"

    def __init__(self, user_id: str, household_id: str, permission: str):
        self.user_id = user_id
        self.household_id = household_id
        self.permission = permission
        super().__init__(
            f"User {user_id} lacks {permission} on household {household_id}"
        )


# Configuration-related exceptions


class ConfigurationError(HouseholdKernelError):
    """Base exception for configuration errors."""

    code: str = "CONFIGURATION_ERROR"


class SchedulerConfigError(ConfigurationError):
    """Engine configuration file or value is invalid."""

    code: str = "SCHEDULER_CONFIG_ERROR"

    def __init__(self, key: str, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"Invalid scheduler configuration '{key}': {reason}")
