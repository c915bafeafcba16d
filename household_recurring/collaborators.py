"""
External collaborator protocols consumed by the recurring engine.

Contract:
    ``LedgerGateway`` records one financial transaction per occurrence.
    ``PermissionChecker`` authorizes lifecycle operations per household.
    Both are injected; the engine never talks to the ledger or membership
    tables directly.

Also provides ``RolePermissionChecker``, a role-based checker with the
household's default grants, for deployments that resolve the caller's
household role themselves.

Architecture:
    household_recurring (top-level module).  ZERO imports from the store
    or services.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Callable, Protocol, runtime_checkable
from uuid import UUID

from household_kernel.exceptions import PermissionDeniedError


# =============================================================================
# Ledger collaborator
# =============================================================================


@dataclass(frozen=True)
class TransactionRequest:
    """Ledger transaction requested for one occurrence.

    ``idempotency_key`` is stable per (schedule, occurrence): a ledger that
    honours it never records the same occurrence twice, even when a timed
    out or abandoned attempt is re-driven.
    """

    household_id: UUID
    requestor_id: UUID
    amount_minor: int
    currency: str
    account_id: UUID
    description: str
    date: date
    idempotency_key: str
    transfer_account_id: UUID | None = None
    category_id: UUID | None = None
    merchant: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TransactionRef:
    """Reference to the transaction the ledger recorded."""

    transaction_id: str


@runtime_checkable
class LedgerGateway(Protocol):
    """Interface of the ledger/transaction subsystem.

    Contract:
        - ``create_transaction()`` records ONE transaction and returns its ref.
        - Any exception is a domain failure for that occurrence; the runner
          records it and leaves the schedule cursor untouched.
    """

    def create_transaction(self, request: TransactionRequest) -> TransactionRef:
        ...


# =============================================================================
# Household permissions
# =============================================================================


class HouseholdPermission(str, Enum):
    """Household permissions used by the recurring schedule API."""

    CREATE_TRANSACTIONS = "create_transactions"
    UPDATE_TRANSACTIONS = "update_transactions"
    DELETE_TRANSACTIONS = "delete_transactions"
    VIEW_TRANSACTIONS = "view_transactions"


class HouseholdRole(str, Enum):
    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"
    VIEWER = "viewer"


DEFAULT_ROLE_PERMISSIONS: dict[HouseholdRole, frozenset[HouseholdPermission]] = {
    HouseholdRole.OWNER: frozenset(HouseholdPermission),
    HouseholdRole.ADMIN: frozenset(HouseholdPermission),
    HouseholdRole.MEMBER: frozenset({
        HouseholdPermission.CREATE_TRANSACTIONS,
        HouseholdPermission.UPDATE_TRANSACTIONS,
        HouseholdPermission.VIEW_TRANSACTIONS,
    }),
    HouseholdRole.VIEWER: frozenset({HouseholdPermission.VIEW_TRANSACTIONS}),
}


@runtime_checkable
class PermissionChecker(Protocol):
    """Interface of the household permission subsystem.

    Contract:
        ``check_permission()`` returns None when allowed and raises
        ``PermissionDeniedError`` otherwise.
    """

    def check_permission(
        self,
        user_id: UUID,
        household_id: UUID,
        permission: HouseholdPermission,
    ) -> None:
        ...


class RolePermissionChecker:
    """Authorizes by the caller's household role and the default grants.

    ``role_lookup(user_id, household_id)`` returns the member's role, or
    None when the user does not belong to the household.  ``overrides``
    replace the default grants for specific roles.
    """

    def __init__(
        self,
        role_lookup: Callable[[UUID, UUID], HouseholdRole | None],
        overrides: dict[HouseholdRole, frozenset[HouseholdPermission]] | None = None,
    ):
        self._role_lookup = role_lookup
        self._grants = {**DEFAULT_ROLE_PERMISSIONS, **(overrides or {})}

    def check_permission(
        self,
        user_id: UUID,
        household_id: UUID,
        permission: HouseholdPermission,
    ) -> None:
        role = self._role_lookup(user_id, household_id)
        if role is None or permission not in self._grants.get(role, frozenset()):
            raise PermissionDeniedError(
                str(user_id), str(household_id), HouseholdPermission(permission).value,
            )
