"""
Run Log — structured JSONL record per sync operation

One line per orchestrator operation (full, incremental, item, conflicts,
prune), schema-versioned so downstream consumers (drift detection,
governance) can follow sync events without coupling to the bridge.

Record fields (v1):
    v        schema version
    ts       UTC timestamp, millisecond precision
    rid      run id
    op       operation name
    scope    scope key of the run
    outcome  "ok", "partial", "failed" or "aborted"
    d        operation-specific detail (optional)
    ms       wall-clock duration in milliseconds

The log() method is fire-and-forget: it never raises into a sync run.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import json
import logging
import sys
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional, TextIO

logger = logging.getLogger(__name__)

RUN_LOG_SCHEMA_VERSION = 1
VALID_OUTCOMES = {"ok", "partial", "failed", "aborted"}


class RunLogger:
    """Structured JSONL logger for sync runs."""

    def __init__(self, output: Optional[TextIO] = None, path: Optional[str] = None):
        """
        Args:
            output: File handle for run records. None and no path -> stderr.
            path: Append records to this file instead (opened per record).
        """
        self._path = path
        self._output = output if output is not None or path else sys.stderr
        self._lock = threading.Lock()

    @staticmethod
    def new_rid() -> str:
        """Generate a new run ID (UUID4 hex string)."""
        return uuid.uuid4().hex

    def log(
        self,
        op: str,
        rid: str,
        scope: str,
        outcome: str,
        detail: Optional[Dict[str, Any]] = None,
        duration_ms: float = 0.0,
    ) -> None:
        """Write one JSONL record. Fire-and-forget, never raises."""
        try:
            now = datetime.now(timezone.utc)
            record: Dict[str, Any] = {
                "v": RUN_LOG_SCHEMA_VERSION,
                "ts": now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z",
                "rid": rid,
                "op": op,
                "scope": scope,
                "outcome": outcome,
            }
            if detail:
                record["d"] = detail
            record["ms"] = round(duration_ms, 1)
            line = json.dumps(record, ensure_ascii=False, separators=(",", ":"), default=str)
            with self._lock:
                if self._path:
                    with open(self._path, "a", encoding="utf-8") as f:
                        f.write(line + "\n")
                else:
                    self._output.write(line + "\n")
                    self._output.flush()
        except Exception as exc:
            logger.debug(f"run log record dropped: {exc}")


class NullRunLogger(RunLogger):
    """RunLogger that discards everything."""

    def __init__(self):
        super().__init__(output=None, path=None)

    def log(self, *args: Any, **kwargs: Any) -> None:
        return None
