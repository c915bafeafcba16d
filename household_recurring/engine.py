"""
RecurringEngine -- DI container for the recurring transaction engine.

Contract:
    Wires the ExecutionRunner, DueScanOrchestrator, RetrySweeper and
    RecurringScheduler from one ``SchedulerConfig``, one session factory,
    one Clock and the external collaborators.  Single place where all
    engine dependencies are composed, and the operator-facing surface
    (force a due-scan or retry sweep, execute one schedule now, list dead
    letters).

Architecture: household_recurring (top-level).  The canonical entry point
    for configuring and running the engine.

Invariants enforced:
    RT-8 -- Clock injection (all services receive the same Clock).
"""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import date
from typing import Callable
from uuid import UUID

from sqlalchemy.orm import Session, sessionmaker

from household_config.schema import SchedulerConfig
from household_kernel.db.engine import get_session_factory, init_engine_from_url
from household_kernel.domain.clock import Clock, SystemClock
from household_kernel.logging_config import get_logger

from household_recurring.collaborators import LedgerGateway, PermissionChecker
from household_recurring.domain.types import (
    DueScanResult,
    ExecutionOutcome,
    RetrySweepResult,
    ScheduleExecution,
)
from household_recurring.services.lifecycle import RecurringScheduleService
from household_recurring.services.orchestrator import DueScanOrchestrator
from household_recurring.services.runner import ExecutionRunner
from household_recurring.services.scheduler import RecurringScheduler
from household_recurring.services.sweeper import RetrySweeper

logger = get_logger("recurring.engine")


class RecurringEngine:
    """DI container and operator surface of the recurring engine.

    Contract:
        - ``from_config()`` initializes the database engine and wires
          everything from a ``SchedulerConfig``.
        - ``lifecycle(session)`` returns a RecurringScheduleService bound
          to the caller's session.
        - ``create_scheduler()`` returns the background scheduler.

    Non-goals:
        - Does NOT start the scheduler automatically -- caller decides.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        ledger: LedgerGateway,
        permissions: PermissionChecker | None = None,
        clock: Clock | None = None,
        config: SchedulerConfig | None = None,
        on_exhausted: Callable[[ScheduleExecution], None] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._permissions = permissions
        self._clock = clock or SystemClock()
        self._config = config or SchedulerConfig()
        self._stop_event = threading.Event()

        cfg = self._config
        self._runner = ExecutionRunner(
            session_factory=session_factory,
            ledger=ledger,
            actor_id=cfg.system_actor_id,
            clock=self._clock,
            ledger_timeout_seconds=cfg.ledger_timeout_seconds,
            claim_ttl_seconds=cfg.claim_ttl_seconds,
        )
        self._orchestrator = DueScanOrchestrator(
            session_factory=session_factory,
            runner=self._runner,
            clock=self._clock,
            max_workers=cfg.max_workers,
            stop_event=self._stop_event,
        )
        self._sweeper = RetrySweeper(
            session_factory=session_factory,
            runner=self._runner,
            clock=self._clock,
            retry_limit=cfg.retry_limit,
            max_workers=cfg.max_workers,
            on_exhausted=on_exhausted,
            stop_event=self._stop_event,
        )

    # -------------------------------------------------------------------------
    # Factory
    # -------------------------------------------------------------------------

    @classmethod
    def from_config(
        cls,
        config: SchedulerConfig,
        ledger: LedgerGateway,
        permissions: PermissionChecker | None = None,
        clock: Clock | None = None,
        on_exhausted: Callable[[ScheduleExecution], None] | None = None,
    ) -> RecurringEngine:
        """Initialize the database from ``config.database_url`` and wire up.

        SQLite shares one connection across threads, so scans run inline
        there regardless of ``max_workers``.
        """
        db_engine = init_engine_from_url(config.database_url)
        if db_engine.dialect.name == "sqlite" and config.max_workers > 1:
            logger.warning(
                "sqlite_inline_workers",
                extra={"configured_max_workers": config.max_workers},
            )
            config = replace(config, max_workers=1)

        return cls(
            session_factory=get_session_factory(),
            ledger=ledger,
            permissions=permissions,
            clock=clock,
            config=config,
            on_exhausted=on_exhausted,
        )

    # -------------------------------------------------------------------------
    # Operator surface
    # -------------------------------------------------------------------------

    def run_due_scan(self, as_of: date | None = None) -> DueScanResult:
        """Force an immediate due-scan."""
        return self._orchestrator.process_due(as_of)

    def run_retry_sweep(self, retry_limit: int | None = None) -> RetrySweepResult:
        """Force an immediate retry sweep."""
        return self._sweeper.retry_failed(retry_limit)

    def execute_now(self, schedule_id: UUID) -> ExecutionOutcome:
        """Execute one schedule's current occurrence; errors propagate."""
        return self._runner.execute(schedule_id)

    def retry_execution(self, execution_id: UUID) -> ExecutionOutcome:
        """Retry one FAILED execution under the configured ceiling."""
        return self._runner.retry(execution_id, self._config.retry_limit)

    def list_dead_letters(self) -> tuple[ScheduleExecution, ...]:
        return self._sweeper.list_dead_letters()

    # -------------------------------------------------------------------------
    # Wiring
    # -------------------------------------------------------------------------

    def lifecycle(self, session: Session) -> RecurringScheduleService:
        """Lifecycle API bound to ``session`` (caller commits).

        Raises:
            RuntimeError: If the engine was built without a PermissionChecker.
        """
        if self._permissions is None:
            raise RuntimeError("RecurringEngine has no PermissionChecker configured")
        cfg = self._config
        return RecurringScheduleService(
            session=session,
            permissions=self._permissions,
            clock=self._clock,
            default_currency=cfg.default_currency,
            claim_ttl_seconds=cfg.claim_ttl_seconds,
            default_page_size=cfg.default_page_size,
            max_page_size=cfg.max_page_size,
            history_limit=cfg.history_limit,
        )

    def create_scheduler(self) -> RecurringScheduler:
        """Background scheduler sharing the engine's stop event."""
        return RecurringScheduler(
            orchestrator=self._orchestrator,
            sweeper=self._sweeper,
            stop_event=self._stop_event,
            due_scan_interval_seconds=self._config.due_scan_interval_seconds,
            retry_interval_seconds=self._config.retry_interval_seconds,
        )

    def close(self) -> None:
        """Signal shutdown to in-progress scans and refuse further ledger calls."""
        self._stop_event.set()
        self._runner.close()

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def config(self) -> SchedulerConfig:
        return self._config

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def session_factory(self) -> sessionmaker[Session]:
        return self._session_factory

    @property
    def runner(self) -> ExecutionRunner:
        return self._runner

    @property
    def orchestrator(self) -> DueScanOrchestrator:
        return self._orchestrator

    @property
    def sweeper(self) -> RetrySweeper:
        return self._sweeper
