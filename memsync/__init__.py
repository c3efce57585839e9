"""
memsync — keeps an agent-facing memory store consistent with a versioned
knowledge repository.

Memory holds lightweight pointers, never copies: each pointer references one
authoritative knowledge item by id and content hash.  Runs are hash-delta
driven, checkpointed, and rolled back wholesale on failure.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

__version__ = "0.1.0"

from memsync.types import (
    Constraint,
    KnowledgeItem,
    KnowledgePointer,
    KnowledgePointerMetadata,
    Manifest,
    MemoryRecord,
    SyncFailure,
    SyncResult,
    SyncState,
)
from memsync.config import SyncConfig, load_config
from memsync.errors import SyncError
from memsync.delta import compute_delta
from memsync.store import MemoryStore
from memsync.knowledge import InMemoryKnowledgeRepository
from memsync.state import FileStateStore, SqliteStateStore, open_state_store
from memsync.conflict import Conflict, ResolutionPolicy
from memsync.trigger import TriggerContext, evaluate_trigger
from memsync.orchestrator import SyncOrchestrator
from memsync.scheduler import BackgroundSync

__all__ = [
    "__version__",
    "Constraint",
    "KnowledgeItem",
    "KnowledgePointer",
    "KnowledgePointerMetadata",
    "Manifest",
    "MemoryRecord",
    "SyncFailure",
    "SyncResult",
    "SyncState",
    "SyncConfig",
    "load_config",
    "SyncError",
    "compute_delta",
    "MemoryStore",
    "InMemoryKnowledgeRepository",
    "FileStateStore",
    "SqliteStateStore",
    "open_state_store",
    "Conflict",
    "ResolutionPolicy",
    "TriggerContext",
    "evaluate_trigger",
    "SyncOrchestrator",
    "BackgroundSync",
]
