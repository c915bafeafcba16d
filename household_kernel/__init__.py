"""
household_kernel -- Shared infrastructure for the household finance backend.

Provides the pieces every higher package builds on:

    exceptions       Typed error hierarchy with machine-readable codes.
    logging_config   Structured JSON logging and request-scoped LogContext.
    domain.clock     Injectable clock (no direct datetime.now() calls).
    db               Declarative base, UUID keys, engine/session management.

Architecture:
    The kernel imports nothing from household_config or
    household_recurring.
"""
