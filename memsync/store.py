"""
Memory Store — SQLite backend for agent-facing memory records

Tables:
    memory_records - Current records (pointer and non-pointer)
    memory_events  - Audit log (append-only)
    schema_meta    - Schema metadata for forward compatibility

Metadata blobs are validated once, here, into the closed RecordMetadata
variant; callers never inspect raw JSON.  Any sqlite3 failure surfaces as
MemoryUnavailableError so the orchestrator can retry it.

Thread safety: uses sqlite3 check_same_thread=False with explicit serialization.
All writes create audit events automatically.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from memsync.errors import MemoryUnavailableError
from memsync.types import (
    POINTER_KIND,
    MemoryRecord,
    _now_iso,
    content_hash,
    parse_metadata,
)

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS memory_records (
    id            TEXT PRIMARY KEY,
    scope         TEXT NOT NULL DEFAULT 'default',
    layer         TEXT NOT NULL DEFAULT 'project',
    kind          TEXT NOT NULL DEFAULT 'note',
    content       TEXT NOT NULL DEFAULT '',
    metadata_json TEXT NOT NULL DEFAULT '{}',       -- JSON object
    content_hash  TEXT NOT NULL DEFAULT '',
    created_at    TEXT NOT NULL,
    updated_at    TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS memory_events (
    id            TEXT PRIMARY KEY,
    action        TEXT NOT NULL,
    record_id     TEXT,
    details_json  TEXT NOT NULL DEFAULT '{}',
    content_hash  TEXT NOT NULL DEFAULT '',
    timestamp     TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS schema_meta (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_records_scope ON memory_records(scope);
CREATE INDEX IF NOT EXISTS idx_records_kind ON memory_records(kind);
CREATE INDEX IF NOT EXISTS idx_events_record ON memory_events(record_id);
"""


class MemoryBackend(Protocol):
    """What the sync bridge needs from a memory store."""

    def add(self, record: MemoryRecord) -> str: ...

    def update(self, record: MemoryRecord) -> bool: ...

    def get(self, record_id: str) -> Optional[MemoryRecord]: ...

    def delete(self, record_id: str) -> bool: ...

    def list_records(
        self, scope: Optional[str] = None, kind: Optional[str] = None,
    ) -> List[MemoryRecord]: ...


class MemoryStore:
    """
    SQLite-backed memory store.

    Thread-safe via explicit lock. All mutations create audit events.
    """

    def __init__(self, db_path: str = ":memory:", wal_mode: bool = True):
        """Open (or create) the store.

        Args:
            db_path: SQLite database path (or ":memory:" for in-memory).
            wal_mode: Enable WAL journal mode for concurrent readers.
        """
        self._db_path = db_path
        self._lock = threading.Lock()
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        if wal_mode and db_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(_SCHEMA_SQL)
        self._conn.execute(
            "INSERT OR IGNORE INTO schema_meta (key, value) VALUES ('schema_version', ?)",
            (str(SCHEMA_VERSION),),
        )
        self._conn.execute(
            "INSERT OR IGNORE INTO schema_meta (key, value) VALUES ('created_by', 'memsync')",
        )
        self._conn.commit()
        logger.info(f"MemoryStore initialized: {db_path}")

    def close(self) -> None:
        """Close the underlying SQLite connection."""
        with self._lock:
            self._conn.close()

    # -- Write operations --------------------------------------------------

    def add(self, record: MemoryRecord) -> str:
        """Insert a new record. Returns its id (generated when empty).

        Raises:
            ValueError: if a record with the same id already exists.
            MemoryUnavailableError: on any database failure.
        """
        if not record.id:
            record.id = f"MEM-{uuid.uuid4().hex[:12]}"
        now = _now_iso()
        record.created_at = record.created_at or now
        record.updated_at = now
        ch = content_hash(record.content)
        try:
            with self._lock:
                self._conn.execute(
                    """INSERT INTO memory_records
                       (id, scope, layer, kind, content, metadata_json,
                        content_hash, created_at, updated_at)
                       VALUES (?,?,?,?,?,?,?,?,?)""",
                    (
                        record.id, record.scope, record.layer,
                        record.metadata.kind, record.content,
                        json.dumps(record.metadata.to_dict(), sort_keys=True),
                        ch, record.created_at, record.updated_at,
                    ),
                )
                self._log_event("add", record.id, {"kind": record.metadata.kind}, ch)
                self._conn.commit()
        except sqlite3.IntegrityError as exc:
            raise ValueError(f"memory record {record.id!r} already exists") from exc
        except sqlite3.Error as exc:
            raise MemoryUnavailableError(f"add failed: {exc}", item_id=record.id) from exc
        return record.id

    def update(self, record: MemoryRecord) -> bool:
        """Replace content, layer and metadata of an existing record.

        The id and created_at never change. Returns False if not found.
        """
        record.updated_at = _now_iso()
        ch = content_hash(record.content)
        try:
            with self._lock:
                cur = self._conn.execute(
                    """UPDATE memory_records
                       SET scope=?, layer=?, kind=?, content=?, metadata_json=?,
                           content_hash=?, updated_at=?
                       WHERE id=?""",
                    (
                        record.scope, record.layer, record.metadata.kind,
                        record.content,
                        json.dumps(record.metadata.to_dict(), sort_keys=True),
                        ch, record.updated_at, record.id,
                    ),
                )
                if cur.rowcount == 0:
                    return False
                self._log_event("update", record.id, {"kind": record.metadata.kind}, ch)
                self._conn.commit()
        except sqlite3.Error as exc:
            raise MemoryUnavailableError(f"update failed: {exc}", item_id=record.id) from exc
        return True

    def delete(self, record_id: str) -> bool:
        """Hard-delete a record. Returns False if it did not exist."""
        try:
            with self._lock:
                cur = self._conn.execute(
                    "DELETE FROM memory_records WHERE id=?", (record_id,)
                )
                if cur.rowcount == 0:
                    return False
                self._log_event("delete", record_id, {}, "")
                self._conn.commit()
        except sqlite3.Error as exc:
            raise MemoryUnavailableError(f"delete failed: {exc}", item_id=record_id) from exc
        return True

    # -- Query operations --------------------------------------------------

    def get(self, record_id: str) -> Optional[MemoryRecord]:
        """Read one record by id (None if absent).

        Raises:
            ValueError: if stored pointer metadata is malformed.
        """
        try:
            with self._lock:
                row = self._conn.execute(
                    "SELECT * FROM memory_records WHERE id=?", (record_id,)
                ).fetchone()
        except sqlite3.Error as exc:
            raise MemoryUnavailableError(f"get failed: {exc}", item_id=record_id) from exc
        if row is None:
            return None
        return self._row_to_record(row)

    def list_records(
        self, scope: Optional[str] = None, kind: Optional[str] = None,
    ) -> List[MemoryRecord]:
        """List records with optional scope/kind filters, oldest first."""
        conditions = []
        params: list = []
        if scope:
            conditions.append("scope=?")
            params.append(scope)
        if kind:
            conditions.append("kind=?")
            params.append(kind)
        where = " AND ".join(conditions) if conditions else "1=1"
        try:
            with self._lock:
                rows = self._conn.execute(
                    f"SELECT * FROM memory_records WHERE {where} ORDER BY created_at, id",
                    params,
                ).fetchall()
        except sqlite3.Error as exc:
            raise MemoryUnavailableError(f"list failed: {exc}") from exc
        return [self._row_to_record(row) for row in rows]

    def list_pointers(self, scope: Optional[str] = None) -> List[MemoryRecord]:
        """All knowledge pointer records (optionally within one scope)."""
        return self.list_records(scope=scope, kind=POINTER_KIND)

    def read_events(
        self, record_id: Optional[str] = None, limit: int = 100,
    ) -> List[Dict[str, Any]]:
        """Query audit events, newest first."""
        with self._lock:
            if record_id:
                rows = self._conn.execute(
                    "SELECT * FROM memory_events WHERE record_id=? "
                    "ORDER BY timestamp DESC, rowid DESC LIMIT ?",
                    (record_id, limit),
                ).fetchall()
            else:
                rows = self._conn.execute(
                    "SELECT * FROM memory_events ORDER BY timestamp DESC, rowid DESC LIMIT ?",
                    (limit,),
                ).fetchall()
        return [
            {
                "id": r["id"], "action": r["action"], "record_id": r["record_id"],
                "details": json.loads(r["details_json"]),
                "content_hash": r["content_hash"], "timestamp": r["timestamp"],
            }
            for r in rows
        ]

    # -- Internal helpers --------------------------------------------------

    def _row_to_record(self, row: sqlite3.Row) -> MemoryRecord:
        """Convert a SQLite Row to MemoryRecord (metadata validated)."""
        return MemoryRecord(
            id=row["id"],
            content=row["content"],
            layer=row["layer"],
            scope=row["scope"],
            metadata=parse_metadata(json.loads(row["metadata_json"])),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _log_event(
        self, action: str, record_id: Optional[str],
        details: Dict[str, Any], ch: str,
    ) -> None:
        """Write an audit event (must be called within lock)."""
        self._conn.execute(
            """INSERT INTO memory_events
               (id, action, record_id, details_json, content_hash, timestamp)
               VALUES (?,?,?,?,?,?)""",
            (
                f"EVT-{uuid.uuid4().hex[:12]}", action, record_id,
                json.dumps(details), ch, _now_iso(),
            ),
        )
