"""
household_config -- single public entrypoint for engine configuration.

Responsibility:
    Provides the ONLY way to obtain scheduler settings at runtime through
    ``get_scheduler_config()``.  Services never read configuration files
    or environment variables directly; the engine wiring hands them the
    values they need.

Architecture position:
    Sits above ``household_kernel`` and below ``household_recurring``.
    The kernel MUST NEVER import from ``household_config``.

Failure modes:
    - ``FileNotFoundError`` -- the requested file does not exist.
    - ``SchedulerConfigError`` -- unknown key or invalid value.

Audit relevance:
    Every successful ``get_scheduler_config()`` call emits a
    ``scheduler_config_loaded`` log entry naming the source file and the
    effective cadences, so each run can be tied to the settings that
    governed it.
"""

from __future__ import annotations

from pathlib import Path

from household_kernel.logging_config import get_logger

from household_config.loader import load_scheduler_config, parse_scheduler_config
from household_config.schema import DEFAULT_SYSTEM_ACTOR_ID, SchedulerConfig

_logger = get_logger("config")

# Default configuration file
DEFAULT_CONFIG_PATH = Path(__file__).parent / "defaults" / "scheduler.yaml"


def get_scheduler_config(path: Path | str | None = None) -> SchedulerConfig:
    """The ONLY public configuration entrypoint.

    Args:
        path: YAML file to load.  Defaults to the packaged
            ``defaults/scheduler.yaml``.

    Raises:
        FileNotFoundError: If the file does not exist.
        SchedulerConfigError: If validation fails.
    """
    source = Path(path) if path is not None else DEFAULT_CONFIG_PATH
    config = load_scheduler_config(source)

    _logger.info(
        "scheduler_config_loaded",
        extra={
            "source": str(source),
            "database_url": config.database_url,
            "due_scan_interval_seconds": config.due_scan_interval_seconds,
            "retry_interval_seconds": config.retry_interval_seconds,
            "retry_limit": config.retry_limit,
            "max_workers": config.max_workers,
        },
    )
    return config


__all__ = [
    "DEFAULT_CONFIG_PATH",
    "DEFAULT_SYSTEM_ACTOR_ID",
    "SchedulerConfig",
    "get_scheduler_config",
    "load_scheduler_config",
    "parse_scheduler_config",
]
