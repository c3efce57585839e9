"""
Sync Error Taxonomy

Every failure raised by the sync bridge derives from SyncError and carries a
stable ``code`` tag and a ``retryable`` flag.  Collaborator I/O errors and
timeouts are retryable; state, checkpoint, rollback and persistence errors are
fatal for the run.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

from typing import List, Optional


class SyncError(Exception):
    """Base class of all sync bridge errors."""

    code: str = "INTERNAL"
    retryable: bool = False

    def __init__(self, message: str = "", *, item_id: Optional[str] = None):
        super().__init__(message)
        self.item_id = item_id

    def __str__(self) -> str:
        msg = super().__str__()
        if self.item_id:
            return f"[{self.code}] {msg} (item={self.item_id})"
        return f"[{self.code}] {msg}"


# ---------------------------------------------------------------------------
# Retryable collaborator errors
# ---------------------------------------------------------------------------

class KnowledgeUnavailableError(SyncError):
    """The knowledge repository could not be reached."""

    code = "KNOWLEDGE_UNAVAILABLE"
    retryable = True


class MemoryUnavailableError(SyncError):
    """The memory store could not be reached."""

    code = "MEMORY_UNAVAILABLE"
    retryable = True


class CollaboratorTimeoutError(SyncError):
    """A collaborator call exceeded its per-call timeout."""

    code = "TIMEOUT"
    retryable = True


# ---------------------------------------------------------------------------
# Fatal errors
# ---------------------------------------------------------------------------

class StateCorruptedError(SyncError):
    """The persisted SyncState failed structural validation."""

    code = "STATE_CORRUPTED"

    def __init__(self, message: str = "", *, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = list(errors or [])


class StateVersionError(StateCorruptedError):
    """The persisted SyncState carries a version this build cannot read."""

    def __init__(self, version: str):
        super().__init__(f"unsupported state version {version!r}")
        self.version = version


class CheckpointFailedError(SyncError):
    """The pre-run checkpoint could not be written."""

    code = "CHECKPOINT_FAILED"


class RollbackFailedError(SyncError):
    """Restoring the pre-run checkpoint failed."""

    code = "ROLLBACK_FAILED"


class PersistenceError(SyncError):
    """Saving the final SyncState failed (the run was rolled back)."""

    code = "PERSISTENCE_FAILED"


class LeaseHeldError(SyncError):
    """Another run holds the lease for this scope."""

    code = "LEASE_HELD"

    def __init__(self, scope: str, owner: str = ""):
        super().__init__(f"sync lease for scope {scope!r} held by {owner or 'another run'}")
        self.scope = scope
        self.owner = owner


class SyncCancelledError(SyncError):
    """The run was cancelled; the checkpoint remains the last valid state."""

    code = "CANCELLED"


class UnknownCommitError(SyncError):
    """The knowledge repository does not know the requested commit."""

    code = "UNKNOWN_COMMIT"


class ItemNotFoundError(SyncError):
    """A knowledge item listed in the manifest could not be fetched."""

    code = "KNOWLEDGE_NOT_FOUND"


# Tags used in reports (never raised)
PARTIAL_FAILURE = "PARTIAL_FAILURE"
CONFLICT_UNRESOLVED = "CONFLICT_UNRESOLVED"


def error_code(exc: BaseException) -> str:
    """Code tag of any exception (INTERNAL for non-sync errors)."""
    if isinstance(exc, SyncError):
        return exc.code
    return "INTERNAL"


def is_retryable(exc: BaseException) -> bool:
    """True when a later attempt may succeed."""
    return isinstance(exc, SyncError) and exc.retryable
