"""
Configuration Loader (``household_config.loader``).

Responsibility
--------------
Reads a YAML file and parses it into a frozen ``SchedulerConfig``.  The
public runtime entry point is ``household_config.get_scheduler_config()``.

Invariants enforced
-------------------
* Unknown keys are rejected; a typo never silently falls back to a default.
* Every numeric setting is validated for range before the dataclass is
  built.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Unknown key or invalid value  -> ``SchedulerConfigError``.
"""

from __future__ import annotations

import re
from dataclasses import fields
from pathlib import Path
from typing import Any
from uuid import UUID

import yaml

from household_kernel.exceptions import SchedulerConfigError

from household_config.schema import SchedulerConfig

_KNOWN_KEYS: frozenset[str] = frozenset(f.name for f in fields(SchedulerConfig))

_POSITIVE_INT_KEYS = (
    "due_scan_interval_seconds",
    "retry_interval_seconds",
    "max_workers",
    "claim_ttl_seconds",
    "default_page_size",
    "max_page_size",
    "history_limit",
)

_CURRENCY_RE = re.compile(r"^[A-Z]{3}$")
_GATEWAY_RE = re.compile(r"^[\w.]+:[\w.]+$")


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        SchedulerConfigError: if the document is not a mapping.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise SchedulerConfigError("<root>", f"expected a mapping in {path}")
    return data


def _positive_int(key: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise SchedulerConfigError(key, f"must be a positive integer, got {value!r}")
    return value


def _non_negative_int(key: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise SchedulerConfigError(key, f"must be a non-negative integer, got {value!r}")
    return value


def _positive_number(key: str, value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise SchedulerConfigError(key, f"must be a positive number, got {value!r}")
    return float(value)


def parse_scheduler_config(data: dict[str, Any]) -> SchedulerConfig:
    """
    Parse a ``SchedulerConfig`` from a dict.  Missing keys take defaults.

    Raises:
        SchedulerConfigError: On an unknown key or an invalid value.
    """
    unknown = sorted(set(data) - _KNOWN_KEYS)
    if unknown:
        raise SchedulerConfigError(unknown[0], "unknown configuration key")

    values: dict[str, Any] = {}

    if "database_url" in data:
        url = data["database_url"]
        if not isinstance(url, str) or not url.strip():
            raise SchedulerConfigError("database_url", "must be a non-empty string")
        values["database_url"] = url

    for key in _POSITIVE_INT_KEYS:
        if key in data:
            values[key] = _positive_int(key, data[key])

    if "retry_limit" in data:
        values["retry_limit"] = _non_negative_int("retry_limit", data["retry_limit"])

    if "ledger_timeout_seconds" in data:
        values["ledger_timeout_seconds"] = _positive_number(
            "ledger_timeout_seconds", data["ledger_timeout_seconds"],
        )

    if "default_currency" in data:
        currency = str(data["default_currency"]).strip().upper()
        if not _CURRENCY_RE.match(currency):
            raise SchedulerConfigError(
                "default_currency", f"'{data['default_currency']}' is not a 3-letter code",
            )
        values["default_currency"] = currency

    if data.get("ledger_gateway") is not None:
        gateway = data["ledger_gateway"]
        if not isinstance(gateway, str) or not _GATEWAY_RE.match(gateway):
            raise SchedulerConfigError(
                "ledger_gateway", f"expected 'module:attribute', got {gateway!r}",
            )
        values["ledger_gateway"] = gateway

    if "system_actor_id" in data:
        try:
            values["system_actor_id"] = UUID(str(data["system_actor_id"]))
        except ValueError:
            raise SchedulerConfigError(
                "system_actor_id", f"'{data['system_actor_id']}' is not a UUID",
            ) from None

    config = SchedulerConfig(**values)
    if config.default_page_size > config.max_page_size:
        raise SchedulerConfigError(
            "default_page_size",
            f"{config.default_page_size} exceeds max_page_size {config.max_page_size}",
        )
    return config


def load_scheduler_config(path: Path) -> SchedulerConfig:
    """Load and parse a scheduler configuration file."""
    return parse_scheduler_config(load_yaml_file(path))
