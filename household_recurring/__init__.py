"""
household_recurring -- Recurring Transaction Engine.

Turns a declarative recurrence rule ("charge this account 1,500,000 every
month starting Jan 1") into a stream of ledger transactions: one execution
per due occurrence, the schedule advancing only on success, failed
occurrences re-driven by a retry sweep and surfaced once they exhaust the
retry ceiling.

Architecture:
    household_recurring/ is a top-level package.  Nothing in
    household_kernel or household_config imports from it.  The ledger and
    the household permission subsystem are injected collaborators (see
    ``collaborators``).

Invariants:
    RT-1  Recurrence is pure and strictly advancing
    RT-2  Cursor moves only on a successful execution
    RT-3  Per-schedule claim (compare-and-swap on the cursor)
    RT-4  Success path is one transaction (record + cursor + claim)
    RT-5  One execution record per occurrence (UNIQUE schedule/date)
    RT-6  Per-schedule failure isolation in scans and sweeps
    RT-7  Retry ceiling; exhausted executions surfaced, never retried
    RT-8  Clock injection (no datetime.now() calls)
    RT-9  Only ACTIVE schedules execute; CANCELLED and COMPLETED are terminal
    RT-10 Graceful shutdown
"""
