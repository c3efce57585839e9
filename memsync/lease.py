"""
Sync Lease — single writer per scope

A lease is a row (scope, owner, expires_at) in SQLite.  Acquisition succeeds
when no row exists, the row has expired, or the caller already owns it, so a
crashed process never blocks later runs for longer than the TTL.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Optional

from memsync.errors import LeaseHeldError

logger = logging.getLogger(__name__)

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS sync_leases (
    scope       TEXT PRIMARY KEY,
    owner       TEXT NOT NULL,
    expires_at  REAL NOT NULL
);
"""


def lease_key(scope: str, job: str = "sync") -> str:
    """Lease name for a scope and job kind."""
    return f"sync_lock:{scope}:{job}"


class LeaseManager:
    """Mutex with TTL keyed by scope."""

    def __init__(
        self,
        db_path: str = ":memory:",
        ttl_seconds: float = 300.0,
        clock: Optional[Callable[[], float]] = None,
    ):
        self._ttl = ttl_seconds
        self._clock = clock or time.time
        self._lock = threading.Lock()
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(
            db_path, check_same_thread=False, isolation_level=None,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(_SCHEMA_SQL)

    @staticmethod
    def new_owner() -> str:
        return uuid.uuid4().hex

    def acquire(self, key: str, owner: str) -> bool:
        """Take or renew the lease. Returns False if another owner holds it."""
        now = self._clock()
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                row = self._conn.execute(
                    "SELECT owner, expires_at FROM sync_leases WHERE scope=?", (key,)
                ).fetchone()
                if row is not None and row["owner"] != owner and row["expires_at"] > now:
                    self._conn.execute("ROLLBACK")
                    return False
                self._conn.execute(
                    "INSERT OR REPLACE INTO sync_leases (scope, owner, expires_at) "
                    "VALUES (?,?,?)",
                    (key, owner, now + self._ttl),
                )
                self._conn.execute("COMMIT")
            except sqlite3.Error:
                self._conn.execute("ROLLBACK")
                raise
        if row is not None and row["owner"] != owner:
            logger.info(f"lease {key} taken over from expired owner {row['owner']}")
        return True

    def release(self, key: str, owner: str) -> bool:
        """Drop the lease if ``owner`` holds it."""
        with self._lock:
            cur = self._conn.execute(
                "DELETE FROM sync_leases WHERE scope=? AND owner=?", (key, owner)
            )
        return cur.rowcount > 0

    def holder(self, key: str) -> Optional[str]:
        """Current unexpired owner of a lease, if any."""
        with self._lock:
            row = self._conn.execute(
                "SELECT owner, expires_at FROM sync_leases WHERE scope=?", (key,)
            ).fetchone()
        if row is None or row["expires_at"] <= self._clock():
            return None
        return row["owner"]

    @contextmanager
    def hold(self, key: str, owner: Optional[str] = None) -> Iterator[str]:
        """Context manager around acquire/release.

        Raises:
            LeaseHeldError: another owner holds an unexpired lease.
        """
        owner = owner or self.new_owner()
        if not self.acquire(key, owner):
            raise LeaseHeldError(key, self.holder(key) or "")
        logger.info(f"lease acquired: {key}")
        try:
            yield owner
        finally:
            self.release(key, owner)
            logger.debug(f"lease released: {key}")

    def close(self) -> None:
        with self._lock:
            self._conn.close()
