"""
Tests for household_config -- YAML loading and validation of SchedulerConfig.

Covers the packaged defaults file, overrides, rejection of unknown keys and
invalid values, and the ``scheduler_config_loaded`` audit log entry.
"""

from pathlib import Path
from uuid import UUID

import pytest
import yaml

from household_config import (
    DEFAULT_CONFIG_PATH,
    DEFAULT_SYSTEM_ACTOR_ID,
    SchedulerConfig,
    get_scheduler_config,
    load_scheduler_config,
    parse_scheduler_config,
)
from household_kernel.exceptions import SchedulerConfigError


def _write_yaml(tmp_path: Path, data) -> Path:
    path = tmp_path / "scheduler.yaml"
    path.write_text(yaml.safe_dump(data))
    return path


# =============================================================================
# Defaults
# =============================================================================


class TestDefaults:

    def test_packaged_defaults_match_dataclass(self):
        assert load_scheduler_config(DEFAULT_CONFIG_PATH) == SchedulerConfig()

    def test_default_values(self):
        config = SchedulerConfig()
        assert config.due_scan_interval_seconds == 3600
        assert config.retry_interval_seconds == 900
        assert config.retry_limit == 3
        assert config.max_workers == 4
        assert config.ledger_timeout_seconds == 30.0
        assert config.default_currency == "IDR"
        assert config.system_actor_id == DEFAULT_SYSTEM_ACTOR_ID

    def test_empty_document_gives_defaults(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert load_scheduler_config(path) == SchedulerConfig()


# =============================================================================
# Overrides
# =============================================================================


class TestOverrides:

    def test_values_override_defaults(self, tmp_path):
        path = _write_yaml(tmp_path, {
            "database_url": "sqlite://",
            "retry_limit": 5,
            "max_workers": 2,
            "ledger_timeout_seconds": 2.5,
            "default_currency": "usd",
            "ledger_gateway": "my_app.ledger:build_gateway",
            "system_actor_id": "12345678-1234-4234-8234-123456789abc",
        })
        config = load_scheduler_config(path)
        assert config.database_url == "sqlite://"
        assert config.retry_limit == 5
        assert config.max_workers == 2
        assert config.ledger_timeout_seconds == 2.5
        assert config.default_currency == "USD"
        assert config.ledger_gateway == "my_app.ledger:build_gateway"
        assert config.system_actor_id == UUID("12345678-1234-4234-8234-123456789abc")

    def test_retry_limit_zero_allowed(self):
        assert parse_scheduler_config({"retry_limit": 0}).retry_limit == 0

    def test_integer_timeout_becomes_float(self):
        config = parse_scheduler_config({"ledger_timeout_seconds": 10})
        assert isinstance(config.ledger_timeout_seconds, float)


# =============================================================================
# Validation
# =============================================================================


class TestValidation:

    def test_unknown_key_rejected(self):
        with pytest.raises(SchedulerConfigError) as exc_info:
            parse_scheduler_config({"retry_limt": 3})
        assert exc_info.value.key == "retry_limt"

    @pytest.mark.parametrize(
        "key, value",
        [
            ("due_scan_interval_seconds", 0),
            ("retry_interval_seconds", -5),
            ("max_workers", "four"),
            ("claim_ttl_seconds", True),
            ("max_page_size", 1.5),
            ("retry_limit", -1),
            ("ledger_timeout_seconds", 0),
            ("default_currency", "RUPIAH"),
            ("ledger_gateway", "no_colon_here"),
            ("system_actor_id", "not-a-uuid"),
            ("database_url", ""),
        ],
    )
    def test_invalid_value_rejected(self, key, value):
        with pytest.raises(SchedulerConfigError) as exc_info:
            parse_scheduler_config({key: value})
        assert exc_info.value.key == key

    def test_default_page_size_cannot_exceed_max(self):
        with pytest.raises(SchedulerConfigError) as exc_info:
            parse_scheduler_config({"default_page_size": 50, "max_page_size": 10})
        assert exc_info.value.key == "default_page_size"

    def test_non_mapping_document_rejected(self, tmp_path):
        path = _write_yaml(tmp_path, [1, 2, 3])
        with pytest.raises(SchedulerConfigError) as exc_info:
            load_scheduler_config(path)
        assert exc_info.value.key == "<root>"

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            get_scheduler_config(tmp_path / "nope.yaml")


# =============================================================================
# Public entrypoint
# =============================================================================


class TestGetSchedulerConfig:

    def test_loads_packaged_defaults(self):
        assert get_scheduler_config() == SchedulerConfig()

    def test_logs_effective_settings(self, tmp_path, captured_logs):
        path = _write_yaml(tmp_path, {"retry_limit": 7})
        get_scheduler_config(path)

        loaded = [r for r in captured_logs() if r["message"] == "scheduler_config_loaded"]
        assert len(loaded) == 1
        assert loaded[0]["source"] == str(path)
        assert loaded[0]["retry_limit"] == 7
        assert loaded[0]["logger"] == "household_kernel.config"
