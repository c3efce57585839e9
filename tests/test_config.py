"""
Tests for memsync.config — configuration loading and validation.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

import json

import pytest

from memsync.config import (
    ConflictConfig,
    PointerConfig,
    RetryConfig,
    StateConfig,
    SyncConfig,
    ValidationError,
    load_config,
)


def _write(tmp_path, data, name="config.json"):
    path = str(tmp_path / name)
    with open(path, "w") as f:
        json.dump(data, f)
    return path


class TestLoadConfig:
    def test_defaults_without_path(self):
        cfg = load_config()
        assert cfg.state.backend == "sqlite"
        assert cfg.trigger.staleness_threshold_minutes == 60
        assert cfg.trigger.session_threshold == 10
        assert cfg.pointer.max_constraints == 3

    def test_load_valid_json(self, tmp_path):
        """Parses all sections from a valid JSON config."""
        path = _write(tmp_path, {
            "state": {"backend": "file", "state_dir": "/tmp/x"},
            "trigger": {"session_threshold": 3},
            "retry": {"max_attempts": 5, "call_timeout_seconds": None},
            "apply": {"max_workers": 2},
            "conflict": {"strategies": {"orphaned_pointer": "keep_memory"}},
        })
        cfg = load_config(path)
        assert cfg.state.backend == "file"
        assert cfg.trigger.session_threshold == 3
        assert cfg.retry.max_attempts == 5
        assert cfg.retry.call_timeout_seconds is None
        assert cfg.apply.max_workers == 2
        assert cfg.conflict.strategies == {"orphaned_pointer": "keep_memory"}

    def test_load_missing_file(self, tmp_path):
        """Returns defaults silently when file is missing."""
        cfg = load_config(str(tmp_path / "nonexistent.json"))
        assert isinstance(cfg, SyncConfig)
        assert cfg.retry.max_attempts == 3

    def test_load_invalid_json(self, tmp_path):
        path = str(tmp_path / "bad.json")
        with open(path, "w") as f:
            f.write("not json {{{")
        assert load_config(path).apply.max_workers == 4

    def test_unknown_key_falls_back(self, tmp_path):
        path = _write(tmp_path, {"retry": {"bogus": 1}})
        assert load_config(path).retry == RetryConfig()

    def test_partial_config(self, tmp_path):
        """Missing sections get defaults."""
        cfg = load_config(_write(tmp_path, {"pointer": {"max_content_length": 500}}))
        assert cfg.pointer.max_content_length == 500
        assert cfg.state == StateConfig()


class TestValidation:
    def test_defaults_valid(self):
        assert SyncConfig().validate() == []

    def test_out_of_range(self):
        errors = PointerConfig(max_constraints=5).validate()
        assert len(errors) == 1
        assert "pointer.max_constraints" in errors[0]

    def test_bool_rejected_as_int(self):
        errors = StateConfig(lease_ttl_seconds=True).validate()
        assert "expected int" in errors[0]

    def test_float_field_accepts_int(self):
        assert RetryConfig(base_delay_seconds=1, max_delay_seconds=2).validate() == []

    def test_wrong_type_for_number(self):
        errors = RetryConfig(base_delay_seconds="fast").validate()
        assert "expected number" in errors[0]

    def test_max_delay_below_base(self):
        errors = RetryConfig(base_delay_seconds=5.0, max_delay_seconds=1.0).validate()
        assert errors and "max_delay_seconds" in errors[0]

    def test_unknown_backend(self):
        assert StateConfig(backend="redis").validate()

    def test_unknown_strategy(self):
        errors = ConflictConfig(strategies={"hash_mismatch": "ignore", "bad": "manual"}).validate()
        assert len(errors) == 2

    def test_strict_raises(self, tmp_path):
        path = _write(tmp_path, {"apply": {"max_workers": 0}})
        with pytest.raises(ValidationError):
            load_config(path, strict=True)

    def test_non_strict_keeps_values(self, tmp_path):
        path = _write(tmp_path, {"apply": {"max_workers": 0}})
        assert load_config(path).apply.max_workers == 0
