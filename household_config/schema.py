"""
SchedulerConfig schema.

Typed, frozen view of the recurring engine's runtime settings.  YAML files
are parsed into this type by the loader; services receive individual
values from it through the engine's wiring, never the raw mapping.
"""

from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID

# Principal recorded on writes made by the scheduler itself.
DEFAULT_SYSTEM_ACTOR_ID = UUID("00000000-0000-4000-8000-000000000001")


@dataclass(frozen=True)
class SchedulerConfig:
    """Runtime settings of the recurring transaction engine."""

    database_url: str = "sqlite:///recurring.db"

    # Background cadences
    due_scan_interval_seconds: int = 3600
    retry_interval_seconds: int = 900

    # Execution
    retry_limit: int = 3
    max_workers: int = 4
    ledger_timeout_seconds: float = 30.0
    claim_ttl_seconds: int = 600

    # Lifecycle API
    default_page_size: int = 20
    max_page_size: int = 100
    history_limit: int = 50
    default_currency: str = "IDR"

    # Wiring
    ledger_gateway: str | None = None  # "package.module:factory"
    system_actor_id: UUID = DEFAULT_SYSTEM_ACTOR_ID
