"""
Sync Bridge Configuration

Configuration dataclasses for memsync: state storage, trigger thresholds,
retry policy, apply-phase concurrency, pointer rendering and conflict
strategies.  Includes load_config() for reading a JSON config file with
silent fallback to compiled defaults.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ValidationError(ValueError):
    """Raised when config values are out of valid range."""

    pass


def _check_range(
    errors: List[str], name: str, value, lo, hi, typ=None,
) -> None:
    """Append an error message if value is out of [lo, hi] or wrong type."""
    if typ is not None and (not isinstance(value, typ) or isinstance(value, bool)):
        expected = "number" if isinstance(typ, tuple) else typ.__name__
        errors.append(f"{name}: expected {expected}, got {type(value).__name__}")
        return
    if value < lo or value > hi:
        errors.append(f"{name}: {value} not in [{lo}, {hi}]")


StateBackend = Literal["sqlite", "file"]

# Conflict and resolution tags accepted in "conflict.strategies"
CONFLICT_TYPES = (
    "hash_mismatch", "orphaned_pointer", "duplicate_pointer",
    "status_change", "layer_mismatch", "detection_error",
)
RESOLUTION_ACTIONS = (
    "update_memory", "delete_memory", "keep_memory", "merge", "manual",
)


@dataclass
class StateConfig:
    """Where SyncState, checkpoints and leases live."""
    backend: StateBackend = "sqlite"
    db_path: str = ".memory/sync.db"
    state_dir: str = ".memory/sync_state"
    lease_ttl_seconds: int = 300
    failed_item_retention_days: int = 30

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        if self.backend not in ("sqlite", "file"):
            errors.append(f"state.backend: {self.backend!r} not in ('sqlite', 'file')")
        _check_range(errors, "state.lease_ttl_seconds",
                     self.lease_ttl_seconds, 1, 86400, int)
        _check_range(errors, "state.failed_item_retention_days",
                     self.failed_item_retention_days, 1, 3650, int)
        return errors


@dataclass
class TriggerConfig:
    """When a sync run should start."""
    staleness_threshold_minutes: int = 60
    session_threshold: int = 10  # 0 = disabled
    schedule_interval_minutes: int = 0  # 0 = disabled

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "trigger.staleness_threshold_minutes",
                     self.staleness_threshold_minutes, 1, 525600, int)
        _check_range(errors, "trigger.session_threshold",
                     self.session_threshold, 0, 100000, int)
        _check_range(errors, "trigger.schedule_interval_minutes",
                     self.schedule_interval_minutes, 0, 525600, int)
        return errors


@dataclass
class RetryConfig:
    """Per-call timeout and exponential backoff."""
    max_attempts: int = 3
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 8.0
    call_timeout_seconds: Optional[float] = 30.0  # None = no timeout

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "retry.max_attempts", self.max_attempts, 1, 20, int)
        _check_range(errors, "retry.base_delay_seconds",
                     self.base_delay_seconds, 0.0, 60.0, (int, float))
        _check_range(errors, "retry.max_delay_seconds",
                     self.max_delay_seconds, 0.0, 3600.0, (int, float))
        if not errors and self.max_delay_seconds < self.base_delay_seconds:
            errors.append(
                "retry.max_delay_seconds must be >= retry.base_delay_seconds"
            )
        if self.call_timeout_seconds is not None:
            _check_range(errors, "retry.call_timeout_seconds",
                         self.call_timeout_seconds, 0.001, 3600.0, (int, float))
        return errors


@dataclass
class ApplyConfig:
    """Bounded concurrency of the apply phase."""
    max_workers: int = 4

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "apply.max_workers", self.max_workers, 1, 64, int)
        return errors


@dataclass
class PointerConfig:
    """Pointer record rendering limits."""
    max_content_length: int = 1000
    max_constraints: int = 3

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "pointer.max_content_length",
                     self.max_content_length, 80, 100000, int)
        _check_range(errors, "pointer.max_constraints",
                     self.max_constraints, 0, 3, int)
        return errors


@dataclass
class ConflictConfig:
    """Per-type resolution overrides (conflict type -> action)."""
    strategies: Dict[str, str] = field(default_factory=dict)

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        for ctype, action in self.strategies.items():
            if ctype not in CONFLICT_TYPES:
                errors.append(f"conflict.strategies: unknown conflict type {ctype!r}")
            if action not in RESOLUTION_ACTIONS:
                errors.append(
                    f"conflict.strategies.{ctype}: unknown action {action!r}"
                )
        return errors


@dataclass
class SyncConfig:
    """Top-level memsync configuration."""
    state: StateConfig = field(default_factory=StateConfig)
    trigger: TriggerConfig = field(default_factory=TriggerConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    apply: ApplyConfig = field(default_factory=ApplyConfig)
    pointer: PointerConfig = field(default_factory=PointerConfig)
    conflict: ConflictConfig = field(default_factory=ConflictConfig)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> SyncConfig:
        """Build config from a nested dict (e.g. JSON)."""
        kwargs: Dict[str, Any] = {}
        if "state" in d:
            kwargs["state"] = StateConfig(**d["state"])
        if "trigger" in d:
            kwargs["trigger"] = TriggerConfig(**d["trigger"])
        if "retry" in d:
            kwargs["retry"] = RetryConfig(**d["retry"])
        if "apply" in d:
            kwargs["apply"] = ApplyConfig(**d["apply"])
        if "pointer" in d:
            kwargs["pointer"] = PointerConfig(**d["pointer"])
        if "conflict" in d:
            kwargs["conflict"] = ConflictConfig(**d["conflict"])
        return cls(**kwargs)

    def validate(self) -> List[str]:
        """Validate all config sections. Returns list of error messages."""
        errors: List[str] = []
        errors.extend(self.state.validate())
        errors.extend(self.trigger.validate())
        errors.extend(self.retry.validate())
        errors.extend(self.apply.validate())
        errors.extend(self.pointer.validate())
        errors.extend(self.conflict.validate())
        return errors


def load_config(
    path: Optional[str] = None, *, strict: bool = False,
) -> SyncConfig:
    """Load config from a JSON file. Returns defaults if file missing/invalid.

    Args:
        path: Path to config.json. If None, returns compiled defaults.
        strict: If True, raise ValidationError on invalid config values.

    Returns:
        SyncConfig with values from file or defaults.

    Raises:
        ValidationError: If strict=True and config values are out of range.
    """
    if path is None:
        cfg = SyncConfig()
    else:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            cfg = SyncConfig.from_dict(data)
        except (FileNotFoundError, json.JSONDecodeError, TypeError, KeyError):
            cfg = SyncConfig()

    if strict:
        errors = cfg.validate()
        if errors:
            raise ValidationError(
                f"Config validation failed: {'; '.join(errors)}"
            )

    return cfg
