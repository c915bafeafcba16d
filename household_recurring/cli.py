"""
Operator CLI for the recurring transaction engine.

Usage:
  household-recurring [--config PATH] init-db
  household-recurring [--config PATH] scan [--as-of YYYY-MM-DD]
  household-recurring [--config PATH] retry [--retry-limit N]
  household-recurring [--config PATH] dead-letters
  household-recurring [--config PATH] run

``scan``, ``retry`` and ``run`` need a ledger: ``--ledger module:attr`` or
``ledger_gateway`` in the configuration file, naming either a
LedgerGateway instance or a zero-argument factory returning one.
"""

from __future__ import annotations

import argparse
import importlib
import signal
import sys
from dataclasses import replace
from datetime import date
from typing import Sequence

from household_config import get_scheduler_config
from household_config.schema import SchedulerConfig
from household_kernel.db.engine import (
    create_tables,
    get_session_factory,
    init_engine_from_url,
)
from household_kernel.exceptions import HouseholdKernelError, SchedulerConfigError
from household_kernel.logging_config import configure_logging

from household_recurring.collaborators import LedgerGateway
from household_recurring.domain.types import DueScanResult, RetrySweepResult
from household_recurring.engine import RecurringEngine
from household_recurring.services.store import ScheduleStore


def load_ledger(spec: str) -> LedgerGateway:
    """Resolve ``module:attr`` to a LedgerGateway (instance or factory)."""
    module_name, _, attr_path = spec.partition(":")
    if not module_name or not attr_path:
        raise ValueError(f"expected 'module:attribute', got {spec!r}")
    target = importlib.import_module(module_name)
    for part in attr_path.split("."):
        target = getattr(target, part)
    if (isinstance(target, type) or not isinstance(target, LedgerGateway)) and callable(target):
        target = target()
    if not isinstance(target, LedgerGateway):
        raise TypeError(f"{spec!r} does not provide a LedgerGateway")
    return target


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        prog="household-recurring",
        description="Recurring transaction engine operator tool",
    )
    p.add_argument("--config", help="Scheduler YAML file (default: packaged defaults)")
    p.add_argument("--db-url", help="Override database_url from the configuration")
    p.add_argument("--ledger", help="Ledger gateway as 'module:attr' (overrides config)")

    sub = p.add_subparsers(dest="command", required=True)
    sub.add_parser("init-db", help="Create the schedule and execution tables")

    scan = sub.add_parser("scan", help="Run one due-scan now")
    scan.add_argument(
        "--as-of", type=date.fromisoformat, help="Scan date (default: today)",
    )

    retry = sub.add_parser("retry", help="Run one retry sweep now")
    retry.add_argument("--retry-limit", type=int, help="Override retry_limit")

    sub.add_parser("dead-letters", help="List executions that exhausted their retries or were abandoned")
    sub.add_parser("run", help="Run the background scheduler until interrupted")
    return p.parse_args(argv)


def _effective_config(args: argparse.Namespace) -> SchedulerConfig:
    config = get_scheduler_config(args.config)
    if args.db_url:
        config = replace(config, database_url=args.db_url)
    return config


def _resolve_ledger(args: argparse.Namespace, config: SchedulerConfig) -> LedgerGateway:
    """Load the configured ledger; every failure is a configuration error."""
    spec = args.ledger or config.ledger_gateway
    if not spec:
        raise SchedulerConfigError(
            "ledger_gateway", "no ledger gateway configured (use --ledger or ledger_gateway)",
        )
    try:
        return load_ledger(spec)
    except (ValueError, TypeError, ImportError, AttributeError) as exc:
        raise SchedulerConfigError("ledger_gateway", str(exc)) from exc


def _print_scan(result: DueScanResult) -> None:
    print(
        f"  due-scan {result.as_of}: {result.total} due, {result.succeeded} completed, "
        f"{result.failed} failed, {result.skipped} skipped ({result.duration_ms} ms)"
    )
    for outcome in result.outcomes:
        detail = outcome.transaction_id or outcome.reason or ""
        print(f"    {outcome.schedule_id}  {outcome.status.value:<9}  {detail}")


def _print_sweep(result: RetrySweepResult) -> None:
    print(
        f"  retry sweep (limit {result.retry_limit}): {result.retried} retried, "
        f"{result.recovered} recovered, {len(result.exhausted)} exhausted "
        f"({len(result.newly_escalated)} new)"
    )
    for outcome in result.outcomes:
        detail = outcome.transaction_id or outcome.reason or ""
        print(f"    {outcome.execution_id}  {outcome.status.value:<9}  {detail}")


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)
    configure_logging()

    try:
        config = _effective_config(args)

        if args.command == "init-db":
            init_engine_from_url(config.database_url)
            create_tables()
            print(f"  Tables created in {config.database_url}")
            return 0

        if args.command == "dead-letters":
            init_engine_from_url(config.database_url)
            with get_session_factory()() as session:
                dead = ScheduleStore(session).find_exhausted_executions(config.retry_limit)
            if not dead:
                print("  No dead letters.")
            for execution in dead:
                abandoned = (
                    f"  abandoned={execution.abandon_reason}"
                    if execution.abandon_reason else ""
                )
                print(
                    f"  {execution.execution_id}  schedule={execution.schedule_id}  "
                    f"date={execution.scheduled_date}  retries={execution.retry_count}  "
                    f"error={execution.error_message}{abandoned}"
                )
            return 0

        engine = RecurringEngine.from_config(config, _resolve_ledger(args, config))
        try:
            if args.command == "scan":
                result = engine.run_due_scan(args.as_of)
                _print_scan(result)
                return 1 if result.failed else 0

            if args.command == "retry":
                _print_sweep(engine.run_retry_sweep(args.retry_limit))
                return 0

            scheduler = engine.create_scheduler()

            def _shutdown(signum, frame):
                scheduler.stop()

            signal.signal(signal.SIGINT, _shutdown)
            signal.signal(signal.SIGTERM, _shutdown)
            scheduler.start()
            print("  Scheduler running; Ctrl-C to stop.")
            scheduler.wait()
            return 0
        finally:
            engine.close()

    except HouseholdKernelError as exc:
        print(f"  ERROR: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
