"""
State Store — durable SyncState with checkpoint and rollback

One SyncState record and at most one checkpoint per scope.  The persisted
form is the canonical JSON text of the state; checkpoint and rollback copy
that text verbatim, so a rollback restores the pre-run record bit for bit.

Loading is strict: unparsable or structurally invalid records raise
StateCorruptedError, an unknown ``version`` raises StateVersionError.  Nothing
is ever repaired automatically.

Backends:
    SqliteStateStore - tables sync_state / sync_checkpoints
    FileStateStore   - one JSON file per scope and slot, written atomically

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import sqlite3
import tempfile
import threading
from pathlib import Path
from typing import Optional

from memsync.config import StateConfig
from memsync.errors import (
    CheckpointFailedError,
    PersistenceError,
    RollbackFailedError,
    StateCorruptedError,
    StateVersionError,
)
from memsync.types import (
    SUPPORTED_STATE_VERSIONS,
    SyncState,
    _now_iso,
    validate_state_dict,
)

logger = logging.getLogger(__name__)

STATE_SLOT = "state"
CHECKPOINT_SLOT = "checkpoint"


def decode_state(text: str) -> SyncState:
    """Parse and validate a persisted SyncState.

    Raises:
        StateVersionError: unknown version tag (fail closed).
        StateCorruptedError: any other parse or structural failure.
    """
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, TypeError) as exc:
        raise StateCorruptedError(f"state is not valid JSON: {exc}") from exc
    if isinstance(data, dict) and isinstance(data.get("version"), str):
        if data["version"] not in SUPPORTED_STATE_VERSIONS:
            raise StateVersionError(data["version"])
    errors = validate_state_dict(data)
    if errors:
        raise StateCorruptedError(
            f"state failed validation: {'; '.join(errors)}", errors=errors,
        )
    return SyncState.from_dict(data)


# ---------------------------------------------------------------------------
# Base class
# ---------------------------------------------------------------------------

class StateStore:
    """Slot-based store: subclasses implement raw text read/write/delete."""

    def _read(self, scope: str, slot: str) -> Optional[str]:
        raise NotImplementedError

    def _write(self, scope: str, slot: str, text: str) -> None:
        raise NotImplementedError

    def _delete(self, scope: str, slot: str) -> None:
        raise NotImplementedError

    # -- Public API --------------------------------------------------------

    def load(self, scope: str) -> SyncState:
        """Persisted state of a scope (empty state on first boot)."""
        text = self._read(scope, STATE_SLOT)
        if text is None:
            return SyncState()
        return decode_state(text)

    def save(self, scope: str, state: SyncState) -> None:
        """Persist ``state`` atomically.

        Raises:
            PersistenceError: on any storage failure.
        """
        try:
            self._write(scope, STATE_SLOT, state.to_json())
        except (OSError, sqlite3.Error) as exc:
            raise PersistenceError(f"save failed for scope {scope!r}: {exc}") from exc
        logger.debug(f"state saved: scope={scope}")

    def checkpoint(self, scope: str, state: Optional[SyncState] = None) -> str:
        """Snapshot ``state`` (default: the persisted state) as the checkpoint.

        Returns the checkpoint text.

        Raises:
            CheckpointFailedError: on any storage failure.
        """
        try:
            if state is None:
                text = self._read(scope, STATE_SLOT)
                if text is None:
                    text = SyncState().to_json()
            else:
                text = state.to_json()
            self._write(scope, CHECKPOINT_SLOT, text)
        except (OSError, sqlite3.Error) as exc:
            raise CheckpointFailedError(
                f"checkpoint failed for scope {scope!r}: {exc}"
            ) from exc
        logger.info(f"checkpoint taken: scope={scope}")
        return text

    def rollback(self, scope: str) -> SyncState:
        """Restore the checkpoint as the persisted state and return it.

        Raises:
            RollbackFailedError: no checkpoint, or the restore failed.
        """
        try:
            text = self._read(scope, CHECKPOINT_SLOT)
            if text is None:
                raise RollbackFailedError(f"no checkpoint for scope {scope!r}")
            self._write(scope, STATE_SLOT, text)
        except (OSError, sqlite3.Error) as exc:
            raise RollbackFailedError(f"rollback failed for scope {scope!r}: {exc}") from exc
        logger.info(f"rolled back to checkpoint: scope={scope}")
        return decode_state(text)

    def has_checkpoint(self, scope: str) -> bool:
        return self._read(scope, CHECKPOINT_SLOT) is not None

    def raw_state(self, scope: str) -> Optional[str]:
        """Persisted text of the state (None if never saved)."""
        return self._read(scope, STATE_SLOT)

    def clear(self, scope: str) -> None:
        """Remove state and checkpoint of a scope."""
        self._delete(scope, STATE_SLOT)
        self._delete(scope, CHECKPOINT_SLOT)

    def close(self) -> None:
        pass


# ---------------------------------------------------------------------------
# SQLite backend
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS sync_state (
    scope       TEXT PRIMARY KEY,
    state_json  TEXT NOT NULL,
    updated_at  TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sync_checkpoints (
    scope       TEXT PRIMARY KEY,
    state_json  TEXT NOT NULL,
    created_at  TEXT NOT NULL
);
"""

_SLOT_TABLES = {
    STATE_SLOT: ("sync_state", "updated_at"),
    CHECKPOINT_SLOT: ("sync_checkpoints", "created_at"),
}


class SqliteStateStore(StateStore):
    """SyncState persisted in SQLite (one row per scope and slot)."""

    def __init__(self, db_path: str = ":memory:"):
        self._db_path = db_path
        self._lock = threading.Lock()
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(_SCHEMA_SQL)
        self._conn.commit()
        logger.info(f"SqliteStateStore initialized: {db_path}")

    def _read(self, scope: str, slot: str) -> Optional[str]:
        table, _ = _SLOT_TABLES[slot]
        with self._lock:
            row = self._conn.execute(
                f"SELECT state_json FROM {table} WHERE scope=?", (scope,)
            ).fetchone()
        return row["state_json"] if row is not None else None

    def _write(self, scope: str, slot: str, text: str) -> None:
        table, ts_col = _SLOT_TABLES[slot]
        with self._lock:
            try:
                self._conn.execute(
                    f"INSERT OR REPLACE INTO {table} (scope, state_json, {ts_col}) "
                    "VALUES (?,?,?)",
                    (scope, text, _now_iso()),
                )
                self._conn.commit()
            except sqlite3.Error:
                self._conn.rollback()
                raise

    def _delete(self, scope: str, slot: str) -> None:
        table, _ = _SLOT_TABLES[slot]
        with self._lock:
            self._conn.execute(f"DELETE FROM {table} WHERE scope=?", (scope,))
            self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()


# ---------------------------------------------------------------------------
# File backend
# ---------------------------------------------------------------------------

_UNSAFE_RE = re.compile(r"[^A-Za-z0-9_.-]+")


def atomic_write(path: Path, content: str) -> None:
    """Write to a temp file in the same directory, then os.replace()."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, str(path))
    except OSError:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


class FileStateStore(StateStore):
    """SyncState persisted as JSON files under one directory."""

    def __init__(self, state_dir: str):
        self._root = Path(state_dir)
        self._lock = threading.Lock()

    def path_for(self, scope: str, slot: str) -> Path:
        slug = _UNSAFE_RE.sub("_", scope).strip("_")[:48] or "scope"
        digest = hashlib.sha1(scope.encode("utf-8")).hexdigest()[:8]
        return self._root / f"{slug}-{digest}.{slot}.json"

    def _read(self, scope: str, slot: str) -> Optional[str]:
        path = self.path_for(scope, slot)
        with self._lock:
            try:
                return path.read_text(encoding="utf-8")
            except FileNotFoundError:
                return None

    def _write(self, scope: str, slot: str, text: str) -> None:
        with self._lock:
            atomic_write(self.path_for(scope, slot), text)

    def _delete(self, scope: str, slot: str) -> None:
        with self._lock:
            try:
                self.path_for(scope, slot).unlink()
            except FileNotFoundError:
                pass


def open_state_store(cfg: StateConfig) -> StateStore:
    """State store for the configured backend."""
    if cfg.backend == "file":
        return FileStateStore(cfg.state_dir)
    return SqliteStateStore(cfg.db_path)
