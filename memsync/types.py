"""
Sync Data Model — Knowledge Items, Pointers, and Sync State

Defines the records exchanged with the knowledge repository and the memory
store, the pointer metadata embedded in memory records, and the single
versioned SyncState record that the orchestrator threads through every run.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import copy
import hashlib
import json
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Mapping, Optional, Union

# ---------------------------------------------------------------------------
# Type aliases (Literal unions for validation)
# ---------------------------------------------------------------------------

KnowledgeLayer = Literal["company", "org", "team", "project"]
KnowledgeType = Literal["adr", "policy", "pattern", "spec"]
KnowledgeStatus = Literal["draft", "proposed", "accepted", "deprecated", "superseded"]
ConstraintSeverity = Literal["info", "warn", "block"]
ConstraintOperator = Literal[
    "must_use", "must_not_use", "must_match",
    "must_not_match", "must_exist", "must_not_exist",
]
ConstraintTarget = Literal["file", "code", "dependency", "import", "config"]

# Valid values for runtime checks
VALID_LAYERS: set = {"company", "org", "team", "project"}
VALID_KNOWLEDGE_TYPES: set = {"adr", "policy", "pattern", "spec"}
VALID_STATUSES: set = {"draft", "proposed", "accepted", "deprecated", "superseded"}
VALID_SEVERITIES: set = {"info", "warn", "block"}
VALID_OPERATORS: set = {
    "must_use", "must_not_use", "must_match",
    "must_not_match", "must_exist", "must_not_exist",
}
VALID_TARGETS: set = {"file", "code", "dependency", "import", "config"}

# Statuses that retire a knowledge item without deleting it
RETIRED_STATUSES: set = {"deprecated", "superseded"}

POINTER_KIND = "knowledge_pointer"
POINTER_ID_PREFIX = "ptr_"

STATE_VERSION = "1.0"
SUPPORTED_STATE_VERSIONS: set = {"1.0"}


def _now_iso() -> str:
    """Current UTC time as ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    if not value:
        return None
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def content_hash(text: str) -> str:
    """SHA-256 content hash with prefix."""
    h = hashlib.sha256(text.encode("utf-8")).hexdigest()
    return f"sha256:{h}"


def knowledge_hash(
    content: str,
    constraints: List[Dict[str, Any]],
    status: str,
) -> str:
    """Deterministic hash of the (content, constraints, status) triple.

    Constraints are serialized with sorted keys so that dict ordering never
    changes the result.
    """
    h = hashlib.sha256()
    h.update(content.encode("utf-8"))
    h.update(json.dumps(constraints, sort_keys=True, separators=(",", ":")).encode("utf-8"))
    h.update(status.encode("utf-8"))
    return f"sha256:{h.hexdigest()}"


def pointer_id_for(knowledge_id: str) -> str:
    """Deterministic memory id of the pointer for a knowledge item."""
    return f"{POINTER_ID_PREFIX}{knowledge_id}"


def scope_key(identifiers: Optional[Mapping[str, str]]) -> str:
    """Canonical scope string for an identifier set (tenant, project, ...)."""
    if not identifiers:
        return "default"
    return ";".join(f"{k}={identifiers[k]}" for k in sorted(identifiers))


# ---------------------------------------------------------------------------
# Knowledge side
# ---------------------------------------------------------------------------

@dataclass
class Constraint:
    """A single constraint attached to a knowledge item."""

    operator: ConstraintOperator = "must_use"
    pattern: str = ""
    target: ConstraintTarget = "code"
    severity: ConstraintSeverity = "warn"
    message: Optional[str] = None

    def __post_init__(self):
        if self.operator not in VALID_OPERATORS:
            raise ValueError(f"Invalid constraint operator: {self.operator!r}")
        if self.target not in VALID_TARGETS:
            raise ValueError(f"Invalid constraint target: {self.target!r}")
        if self.severity not in VALID_SEVERITIES:
            raise ValueError(f"Invalid constraint severity: {self.severity!r}")

    def to_dict(self) -> Dict[str, Any]:
        """Serialize constraint to a plain dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> Constraint:
        """Deserialize constraint from a dictionary."""
        return cls(**{k: v for k, v in d.items() if k in cls.__dataclass_fields__})


@dataclass
class KnowledgeItem:
    """
    One authoritative knowledge item as returned by the repository.

    ``content_hash`` is computed from (content, constraints, status) when the
    repository does not supply one.
    """

    id: str = ""
    title: str = ""
    summary: str = ""
    content: str = ""
    constraints: List[Constraint] = field(default_factory=list)
    status: KnowledgeStatus = "accepted"
    layer: KnowledgeLayer = "project"
    type: KnowledgeType = "adr"
    content_hash: str = ""

    def __post_init__(self):
        """Validate enums, coerce dict constraints, fill in the hash."""
        if self.status not in VALID_STATUSES:
            raise ValueError(f"Invalid knowledge status: {self.status!r}")
        if self.layer not in VALID_LAYERS:
            raise ValueError(f"Invalid knowledge layer: {self.layer!r}")
        if self.type not in VALID_KNOWLEDGE_TYPES:
            raise ValueError(f"Invalid knowledge type: {self.type!r}")
        self.constraints = [
            Constraint.from_dict(c) if isinstance(c, dict) else c
            for c in self.constraints
        ]
        if not self.content_hash:
            self.content_hash = self.compute_hash()

    def compute_hash(self) -> str:
        """Hash of the fields that define change for this item."""
        return knowledge_hash(
            self.content, [c.to_dict() for c in self.constraints], self.status,
        )

    @property
    def is_retired(self) -> bool:
        """True when the item is deprecated or superseded."""
        return self.status in RETIRED_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dict (JSON-safe)."""
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> KnowledgeItem:
        """Deserialize from dict."""
        known = set(cls.__dataclass_fields__.keys())
        return cls(**{k: v for k, v in d.items() if k in known})


@dataclass
class ManifestEntry:
    """Minimal per-item metadata carried by a manifest."""

    content_hash: str
    layer: KnowledgeLayer = "project"
    type: KnowledgeType = "adr"


@dataclass
class Manifest:
    """Immutable snapshot of the repository at one commit."""

    commit_id: Optional[str] = None
    items: Dict[str, ManifestEntry] = field(default_factory=dict)

    def hashes(self) -> Dict[str, str]:
        """The id -> content hash map used for delta detection."""
        return {kid: entry.content_hash for kid, entry in self.items.items()}

    def restrict(self, ids) -> Manifest:
        """Sub-manifest containing only the given ids (those present)."""
        wanted = set(ids)
        return Manifest(
            commit_id=self.commit_id,
            items={k: v for k, v in self.items.items() if k in wanted},
        )


@dataclass
class CommitInfo:
    """A commit and the knowledge ids it touched."""

    commit_id: str
    affected_item_ids: List[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Pointer metadata (closed tagged variant)
# ---------------------------------------------------------------------------

@dataclass
class KnowledgePointer:
    """Link from a memory record back to its source knowledge item."""

    source_type: KnowledgeType = "adr"
    source_id: str = ""
    content_hash: str = ""
    synced_at: str = field(default_factory=_now_iso)
    source_layer: KnowledgeLayer = "project"
    is_orphaned: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Serialize pointer to a plain dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> KnowledgePointer:
        """Strict deserialization: every field must be present and typed."""
        missing = [k for k in cls.__dataclass_fields__ if k not in d]
        if missing:
            raise ValueError(f"knowledge_pointer missing fields: {', '.join(missing)}")
        if not isinstance(d["is_orphaned"], bool):
            raise ValueError("knowledge_pointer.is_orphaned must be a boolean")
        for key in ("source_id", "content_hash", "synced_at"):
            if not isinstance(d[key], str):
                raise ValueError(f"knowledge_pointer.{key} must be a string")
        if d["source_layer"] not in VALID_LAYERS:
            raise ValueError(f"Invalid pointer layer: {d['source_layer']!r}")
        if d["source_type"] not in VALID_KNOWLEDGE_TYPES:
            raise ValueError(f"Invalid pointer source type: {d['source_type']!r}")
        return cls(**{k: d[k] for k in cls.__dataclass_fields__})


@dataclass
class KnowledgePointerMetadata:
    """Metadata of a pointer record (``type == "knowledge_pointer"``)."""

    knowledge_pointer: KnowledgePointer = field(default_factory=KnowledgePointer)
    tags: List[str] = field(default_factory=list)

    @property
    def kind(self) -> str:
        return POINTER_KIND

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": POINTER_KIND,
            "knowledge_pointer": self.knowledge_pointer.to_dict(),
            "tags": list(self.tags),
        }


@dataclass
class GenericMetadata:
    """Metadata of any memory record not owned by the sync bridge."""

    type: str = "note"
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def kind(self) -> str:
        return self.type

    def to_dict(self) -> Dict[str, Any]:
        d = dict(self.data)
        d["type"] = self.type
        return d


RecordMetadata = Union[KnowledgePointerMetadata, GenericMetadata]


def parse_metadata(d: Optional[Dict[str, Any]]) -> RecordMetadata:
    """Validate a raw metadata blob once, at the store boundary.

    Raises:
        ValueError: if a blob tagged as a knowledge pointer is malformed.
    """
    d = dict(d or {})
    kind = d.get("type", "note")
    if kind != POINTER_KIND:
        d.pop("type", None)
        return GenericMetadata(type=str(kind), data=d)
    raw_ptr = d.get("knowledge_pointer")
    if not isinstance(raw_ptr, dict):
        raise ValueError("knowledge_pointer metadata without a pointer object")
    tags = d.get("tags", [])
    if not isinstance(tags, list):
        raise ValueError("knowledge_pointer.tags must be a list")
    return KnowledgePointerMetadata(
        knowledge_pointer=KnowledgePointer.from_dict(raw_ptr),
        tags=[str(t) for t in tags],
    )


@dataclass
class MemoryRecord:
    """One record of the memory store, with validated metadata."""

    id: str = ""
    content: str = ""
    layer: KnowledgeLayer = "project"
    scope: str = "default"
    metadata: RecordMetadata = field(default_factory=GenericMetadata)
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)

    @property
    def is_pointer(self) -> bool:
        return isinstance(self.metadata, KnowledgePointerMetadata)

    @property
    def pointer(self) -> Optional[KnowledgePointer]:
        """The embedded pointer, or None for non-pointer records."""
        if isinstance(self.metadata, KnowledgePointerMetadata):
            return self.metadata.knowledge_pointer
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "layer": self.layer,
            "scope": self.scope,
            "metadata": self.metadata.to_dict(),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


# ---------------------------------------------------------------------------
# Sync state
# ---------------------------------------------------------------------------

@dataclass
class SyncFailure:
    """One item that failed to sync, kept until a later run succeeds."""

    knowledge_id: str = ""
    error: str = ""
    failed_at: str = field(default_factory=_now_iso)
    retry_count: int = 1
    code: str = "INTERNAL"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> SyncFailure:
        known = set(cls.__dataclass_fields__.keys())
        return cls(**{k: v for k, v in d.items() if k in known})


@dataclass
class SyncStats:
    """Lifetime counters of the bridge for one scope."""

    total_syncs: int = 0
    total_items_synced: int = 0
    total_conflicts_detected: int = 0
    total_conflicts_resolved: int = 0
    avg_sync_duration_ms: float = 0.0

    def record_run(self, duration_ms: float) -> None:
        """Fold a completed run into the counters (running mean)."""
        self.total_syncs += 1
        n = self.total_syncs
        self.avg_sync_duration_ms = round(
            self.avg_sync_duration_ms + (duration_ms - self.avg_sync_duration_ms) / n, 3,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> SyncStats:
        known = set(cls.__dataclass_fields__.keys())
        return cls(**{k: v for k, v in d.items() if k in known})


@dataclass
class SyncState:
    """
    The one mutable, versioned record of the sync bridge.

    Rules:
    - knowledge_hashes is the sole input to delta computation.
    - Only a completed, persisted orchestrator run replaces it.
    """

    version: str = STATE_VERSION
    last_sync_at: Optional[str] = None
    last_knowledge_commit: Optional[str] = None
    knowledge_hashes: Dict[str, str] = field(default_factory=dict)
    pointer_mapping: Dict[str, str] = field(default_factory=dict)
    knowledge_layers: Dict[str, str] = field(default_factory=dict)
    failed_items: List[SyncFailure] = field(default_factory=list)
    stats: SyncStats = field(default_factory=SyncStats)

    def copy(self) -> SyncState:
        """Deep copy, used as the working state of a run."""
        return copy.deepcopy(self)

    def memory_ids_for(self, knowledge_id: str) -> List[str]:
        """All pointer ids mapped to a knowledge id (sorted)."""
        return sorted(m for m, k in self.pointer_mapping.items() if k == knowledge_id)

    def find_failure(self, knowledge_id: str) -> Optional[SyncFailure]:
        for failure in self.failed_items:
            if failure.knowledge_id == knowledge_id:
                return failure
        return None

    def record_failure(self, knowledge_id: str, error: str, code: str) -> SyncFailure:
        """Add or bump the failure entry of an item."""
        existing = self.find_failure(knowledge_id)
        if existing is not None:
            existing.retry_count += 1
            existing.error = error
            existing.code = code
            existing.failed_at = _now_iso()
            return existing
        failure = SyncFailure(knowledge_id=knowledge_id, error=error, code=code)
        self.failed_items.append(failure)
        return failure

    def clear_failure(self, knowledge_id: str) -> None:
        self.failed_items = [f for f in self.failed_items if f.knowledge_id != knowledge_id]

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dict (JSON-safe)."""
        return asdict(self)

    def to_json(self) -> str:
        """Canonical JSON text (sorted keys) used for persistence."""
        return json.dumps(self.to_dict(), ensure_ascii=False, indent=2, sort_keys=True)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> SyncState:
        """Deserialize a dict that already passed validate_state_dict()."""
        return cls(
            version=d["version"],
            last_sync_at=d.get("last_sync_at"),
            last_knowledge_commit=d.get("last_knowledge_commit"),
            knowledge_hashes=dict(d.get("knowledge_hashes", {})),
            pointer_mapping=dict(d.get("pointer_mapping", {})),
            knowledge_layers=dict(d.get("knowledge_layers", {})),
            failed_items=[SyncFailure.from_dict(f) for f in d.get("failed_items", [])],
            stats=SyncStats.from_dict(d.get("stats", {})),
        )


def _is_str_map(value: Any) -> bool:
    return isinstance(value, dict) and all(
        isinstance(k, str) and isinstance(v, str) for k, v in value.items()
    )


def validate_state_dict(d: Any) -> List[str]:
    """Structural validation of a persisted SyncState.

    Returns list of error messages (empty = valid). The version tag is
    checked separately by the state store.
    """
    if not isinstance(d, dict):
        return [f"state: expected object, got {type(d).__name__}"]
    errors: List[str] = []
    if not isinstance(d.get("version"), str):
        errors.append("version: missing or not a string")
    for key in ("last_sync_at", "last_knowledge_commit"):
        if d.get(key) is not None and not isinstance(d[key], str):
            errors.append(f"{key}: expected string or null")
    for key in ("knowledge_hashes", "pointer_mapping"):
        if key not in d:
            errors.append(f"{key}: missing")
        elif not _is_str_map(d[key]):
            errors.append(f"{key}: expected map of string to string")
    if "knowledge_layers" in d and not _is_str_map(d["knowledge_layers"]):
        errors.append("knowledge_layers: expected map of string to string")
    failed = d.get("failed_items", [])
    if not isinstance(failed, list):
        errors.append("failed_items: expected list")
    else:
        for i, f in enumerate(failed):
            if not isinstance(f, dict) or not isinstance(f.get("knowledge_id"), str):
                errors.append(f"failed_items[{i}]: missing knowledge_id")
            elif not isinstance(f.get("retry_count", 0), int):
                errors.append(f"failed_items[{i}].retry_count: expected integer")
    stats = d.get("stats", {})
    if not isinstance(stats, dict):
        errors.append("stats: expected object")
    else:
        for key, value in stats.items():
            if not isinstance(value, (int, float)) or isinstance(value, bool):
                errors.append(f"stats.{key}: expected number")
    return errors


# ---------------------------------------------------------------------------
# Run result
# ---------------------------------------------------------------------------

SyncMode = Literal["full", "incremental", "item"]


@dataclass
class SyncResult:
    """Summary of one orchestrator run, returned even on partial failure."""

    mode: SyncMode = "full"
    added: int = 0
    updated: int = 0
    deleted: int = 0
    unchanged: int = 0
    failures: List[SyncFailure] = field(default_factory=list)
    duration_ms: float = 0.0
    commit_id: Optional[str] = None
    run_id: str = ""

    @property
    def success(self) -> bool:
        """True when no item failed."""
        return len(self.failures) == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "mode": self.mode,
            "success": self.success,
            "added": self.added,
            "updated": self.updated,
            "deleted": self.deleted,
            "unchanged": self.unchanged,
            "failures": [f.to_dict() for f in self.failures],
            "duration_ms": self.duration_ms,
            "commit_id": self.commit_id,
        }
