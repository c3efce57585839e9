"""
Conflict Detection and Resolution

The detector scans every (memory id, knowledge id) pair of a SyncState
snapshot and classifies what went wrong; it never mutates anything.  The
resolver applies a resolution policy, a plain mapping from conflict type to
action, and re-checks the triggering condition before each action so that
re-resolving an already resolved conflict is a no-op.

Conflict types:
    hash_mismatch      pointer hash != current item hash
    orphaned_pointer   knowledge item or pointer record is gone
    duplicate_pointer  several pointers map to one knowledge item
    status_change      item moved to deprecated/superseded
    layer_mismatch     pointer layer != current item layer
    detection_error    a collaborator failed while checking the pair

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Mapping, Optional, Tuple

from memsync.config import CONFLICT_TYPES, RESOLUTION_ACTIONS, ConflictConfig
from memsync.errors import CONFLICT_UNRESOLVED, SyncCancelledError, error_code
from memsync.knowledge import ManifestFetcher
from memsync.pointer import PointerMemoryManager, merge_tags
from memsync.retry import RetryPolicy, call_with_retry
from memsync.types import (
    KnowledgeItem,
    KnowledgePointerMetadata,
    MemoryRecord,
    SyncState,
    parse_iso,
)

logger = logging.getLogger(__name__)

ConflictType = Literal[
    "hash_mismatch", "orphaned_pointer", "duplicate_pointer",
    "status_change", "layer_mismatch", "detection_error",
]
ResolutionAction = Literal[
    "update_memory", "delete_memory", "keep_memory", "merge", "manual",
]
OrphanReason = Literal["knowledge_deleted", "memory_deleted", "both_deleted"]

DEFAULT_RESOLUTIONS: Dict[str, str] = {
    "hash_mismatch": "update_memory",
    "orphaned_pointer": "delete_memory",
    "duplicate_pointer": "delete_memory",
    "status_change": "update_memory",
    "layer_mismatch": "update_memory",
    "detection_error": "manual",
}

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass
class Conflict:
    """One detected inconsistency between a pointer and its source."""

    type: ConflictType
    memory_id: str
    knowledge_id: str
    details: Dict[str, Any] = field(default_factory=dict)
    suggested_resolution: ResolutionAction = "manual"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "memory_id": self.memory_id,
            "knowledge_id": self.knowledge_id,
            "details": dict(self.details),
            "suggested_resolution": self.suggested_resolution,
        }


# ---------------------------------------------------------------------------
# Resolution policy
# ---------------------------------------------------------------------------

class ResolutionPolicy:
    """Conflict type -> resolution action, with per-type overrides."""

    def __init__(self, overrides: Optional[Mapping[str, str]] = None):
        overrides = dict(overrides or {})
        for ctype, action in overrides.items():
            if ctype not in CONFLICT_TYPES:
                raise ValueError(f"Unknown conflict type: {ctype!r}")
            if action not in RESOLUTION_ACTIONS:
                raise ValueError(f"Unknown resolution action: {action!r}")
        self._table = {**DEFAULT_RESOLUTIONS, **overrides}

    @classmethod
    def from_config(cls, cfg: ConflictConfig) -> ResolutionPolicy:
        return cls(cfg.strategies)

    def action_for(self, conflict_type: str) -> str:
        return self._table[conflict_type]

    def as_dict(self) -> Dict[str, str]:
        return dict(self._table)


def pick_keeper(records: List[MemoryRecord]) -> str:
    """Pointer to keep among duplicates: newest synced_at, then smallest id."""

    def key(r: MemoryRecord) -> Tuple[float, str]:
        ptr = r.pointer
        ts = parse_iso(ptr.synced_at) if ptr is not None else None
        return (-(ts or _EPOCH).timestamp(), r.id)

    return sorted(records, key=key)[0].id


# ---------------------------------------------------------------------------
# Detector
# ---------------------------------------------------------------------------

class ConflictDetector:
    """Read-only scan of pointer mappings."""

    def __init__(
        self,
        fetcher: ManifestFetcher,
        pointers: PointerMemoryManager,
        policy: Optional[ResolutionPolicy] = None,
        retry: Optional[RetryPolicy] = None,
        cancel: Optional[threading.Event] = None,
    ):
        self._fetcher = fetcher
        self._pointers = pointers
        self._policy = policy or ResolutionPolicy()
        self._retry = retry or RetryPolicy()
        self._cancel = cancel

    def _conflict(
        self, ctype: str, memory_id: str, knowledge_id: str, **details: Any,
    ) -> Conflict:
        return Conflict(
            type=ctype, memory_id=memory_id, knowledge_id=knowledge_id,
            details=details, suggested_resolution=self._policy.action_for(ctype),
        )

    def _get_record(self, memory_id: str) -> Optional[MemoryRecord]:
        return call_with_retry(
            lambda: self._pointers.get(memory_id), self._retry,
            cancel=self._cancel, label=f"memory.get({memory_id})",
        )

    def detect(self, state: SyncState) -> List[Conflict]:
        """Classify every pair of ``state.pointer_mapping``.

        Each orphaned pair yields exactly one orphaned_pointer conflict.
        Output order is deterministic (by knowledge id, then memory id).
        """
        groups: Dict[str, List[str]] = defaultdict(list)
        for mid, kid in dict(state.pointer_mapping).items():
            groups[kid].append(mid)

        conflicts: List[Conflict] = []
        for kid in sorted(groups):
            mids = sorted(groups[kid])
            try:
                item = self._fetcher.find_item(kid)
            except Exception as exc:
                if isinstance(exc, SyncCancelledError):
                    raise
                logger.warning(f"conflict check failed for {kid}: {exc}")
                conflicts.extend(
                    self._conflict(
                        "detection_error", mid, kid,
                        error=str(exc), code=error_code(exc), side="knowledge",
                    )
                    for mid in mids
                )
                continue

            live: List[MemoryRecord] = []
            for mid in mids:
                try:
                    record = self._get_record(mid)
                except Exception as exc:
                    if isinstance(exc, SyncCancelledError):
                        raise
                    logger.warning(f"conflict check failed for {mid}: {exc}")
                    if item is None:
                        # The pair is orphaned whatever the memory side holds.
                        conflicts.append(self._conflict(
                            "orphaned_pointer", mid, kid, reason="knowledge_deleted",
                        ))
                        continue
                    code = "STATE_CORRUPTED" if isinstance(exc, ValueError) else error_code(exc)
                    conflicts.append(self._conflict(
                        "detection_error", mid, kid,
                        error=str(exc), code=code, side="memory",
                    ))
                    continue
                reason = _orphan_reason(item, record)
                if reason is not None:
                    conflicts.append(self._conflict(
                        "orphaned_pointer", mid, kid, reason=reason,
                    ))
                    continue
                live.append(record)

            if item is None or not live:
                continue
            if len(live) > 1:
                keep = pick_keeper(live)
                group = [r.id for r in live]
                for record in live:
                    if record.id != keep:
                        conflicts.append(self._conflict(
                            "duplicate_pointer", record.id, kid, keep=keep, group=group,
                        ))
                live = [r for r in live if r.id == keep]

            for record in live:
                conflicts.extend(self._content_conflicts(record, item))

        logger.debug(f"conflict scan: {len(conflicts)} conflict(s)")
        return conflicts

    def _content_conflicts(
        self, record: MemoryRecord, item: KnowledgeItem,
    ) -> List[Conflict]:
        ptr = record.pointer
        found: List[Conflict] = []
        if ptr.content_hash != item.content_hash:
            if item.is_retired:
                found.append(self._conflict(
                    "status_change", record.id, item.id,
                    status=item.status,
                    stored_hash=ptr.content_hash, current_hash=item.content_hash,
                ))
            else:
                found.append(self._conflict(
                    "hash_mismatch", record.id, item.id,
                    stored_hash=ptr.content_hash, current_hash=item.content_hash,
                ))
        if ptr.source_layer != item.layer:
            found.append(self._conflict(
                "layer_mismatch", record.id, item.id,
                stored_layer=ptr.source_layer, current_layer=item.layer,
            ))
        return found


def _orphan_reason(
    item: Optional[KnowledgeItem], record: Optional[MemoryRecord],
) -> Optional[str]:
    record_gone = record is None or record.pointer is None
    if item is None and record_gone:
        return "both_deleted"
    if item is None:
        return "knowledge_deleted"
    if record_gone:
        return "memory_deleted"
    return None


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------

OutcomeStatus = Literal["applied", "noop", "manual", "failed"]


@dataclass
class ResolutionOutcome:
    """What happened to one conflict."""

    conflict: Conflict
    action: str
    status: OutcomeStatus
    error: str = ""
    code: str = ""

    def to_dict(self) -> Dict[str, Any]:
        d = {"conflict": self.conflict.to_dict(), "action": self.action, "status": self.status}
        if self.error:
            d["error"] = self.error
        if self.code:
            d["code"] = self.code
        return d


@dataclass
class ResolutionReport:
    """Outcomes of one resolution pass."""

    outcomes: List[ResolutionOutcome] = field(default_factory=list)

    def _with(self, status: str) -> List[ResolutionOutcome]:
        return [o for o in self.outcomes if o.status == status]

    @property
    def applied(self) -> List[ResolutionOutcome]:
        return self._with("applied")

    @property
    def noop(self) -> List[ResolutionOutcome]:
        return self._with("noop")

    @property
    def manual(self) -> List[ResolutionOutcome]:
        return self._with("manual")

    @property
    def failed(self) -> List[ResolutionOutcome]:
        return self._with("failed")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "applied": len(self.applied),
            "noop": len(self.noop),
            "manual": len(self.manual),
            "failed": len(self.failed),
            "outcomes": [o.to_dict() for o in self.outcomes],
        }


class ConflictResolver:
    """Applies resolutions to pointer records and a working SyncState."""

    def __init__(
        self,
        fetcher: ManifestFetcher,
        pointers: PointerMemoryManager,
        policy: Optional[ResolutionPolicy] = None,
        retry: Optional[RetryPolicy] = None,
        cancel: Optional[threading.Event] = None,
    ):
        self._fetcher = fetcher
        self._pointers = pointers
        self._policy = policy or ResolutionPolicy()
        self._retry = retry or RetryPolicy()
        self._cancel = cancel

    def resolve(self, conflicts: List[Conflict], state: SyncState) -> ResolutionReport:
        """Resolve each conflict with the configured action.

        ``state`` is the run's working copy and is mutated in place.
        Manual resolutions are reported with code CONFLICT_UNRESOLVED.
        """
        report = ResolutionReport()
        for conflict in conflicts:
            action = self._policy.action_for(conflict.type)
            if action == "manual":
                report.outcomes.append(ResolutionOutcome(
                    conflict, action, "manual", code=CONFLICT_UNRESOLVED,
                ))
                continue
            try:
                changed = self._apply(conflict, action, state)
            except Exception as exc:
                if isinstance(exc, SyncCancelledError):
                    raise
                logger.warning(
                    f"resolution {action} failed for {conflict.memory_id}: {exc}"
                )
                report.outcomes.append(ResolutionOutcome(
                    conflict, action, "failed", error=str(exc), code=error_code(exc),
                ))
                continue
            status = "applied" if changed else "noop"
            logger.debug(f"{conflict.type} {conflict.memory_id}: {action} -> {status}")
            report.outcomes.append(ResolutionOutcome(conflict, action, status))
        return report

    # -- Helpers -----------------------------------------------------------

    def _call(self, fn, label: str):
        return call_with_retry(fn, self._retry, cancel=self._cancel, label=label)

    def _record(self, memory_id: str) -> Optional[MemoryRecord]:
        return self._call(lambda: self._pointers.get(memory_id), f"memory.get({memory_id})")

    def _item(self, knowledge_id: str) -> Optional[KnowledgeItem]:
        return self._fetcher.find_item(knowledge_id)

    def _forget(self, memory_id: str, knowledge_id: str, state: SyncState) -> None:
        """Drop a mapping; forget the item once no pointer is left for it."""
        state.pointer_mapping.pop(memory_id, None)
        if not state.memory_ids_for(knowledge_id):
            state.knowledge_hashes.pop(knowledge_id, None)
            state.knowledge_layers.pop(knowledge_id, None)

    def _refresh(self, memory_id: str, item: KnowledgeItem, state: SyncState) -> None:
        self._call(lambda: self._pointers.update(memory_id, item), f"update({memory_id})")
        state.knowledge_hashes[item.id] = item.content_hash
        state.knowledge_layers[item.id] = item.layer

    def _live_group(self, knowledge_id: str, state: SyncState) -> List[MemoryRecord]:
        live = []
        for mid in state.memory_ids_for(knowledge_id):
            record = self._record(mid)
            if record is not None and record.pointer is not None:
                live.append(record)
        return live

    # -- Dispatch ----------------------------------------------------------

    def _apply(self, conflict: Conflict, action: str, state: SyncState) -> bool:
        """Apply one action. Returns False when the condition no longer holds."""
        mid, kid = conflict.memory_id, conflict.knowledge_id
        if state.pointer_mapping.get(mid) != kid:
            return False
        if conflict.type == "orphaned_pointer":
            return self._resolve_orphan(mid, kid, action, state)
        if conflict.type == "duplicate_pointer":
            return self._resolve_duplicate(mid, kid, action, state)

        item = self._item(kid)
        record = self._record(mid)
        if item is None or record is None or record.pointer is None:
            # Now an orphan; a later detection pass classifies it.
            return False
        ptr = record.pointer
        if conflict.type in ("hash_mismatch", "status_change"):
            still = ptr.content_hash != item.content_hash
        elif conflict.type == "layer_mismatch":
            still = ptr.source_layer != item.layer
        else:
            still = True
        if not still:
            return False

        if action in ("update_memory", "merge"):
            self._refresh(mid, item, state)
            return True
        if action == "delete_memory":
            self._call(lambda: self._pointers.delete(mid), f"delete({mid})")
            self._forget(mid, kid, state)
            return True
        return False  # keep_memory

    def _resolve_orphan(
        self, mid: str, kid: str, action: str, state: SyncState,
    ) -> bool:
        item = self._item(kid)
        record = self._record(mid)
        if _orphan_reason(item, record) is None:
            return False
        if action == "delete_memory":
            if record is not None:
                self._call(lambda: self._pointers.delete(mid), f"delete({mid})")
            self._forget(mid, kid, state)
            return True
        if action == "keep_memory":
            if record is not None:
                self._call(lambda: self._pointers.mark_orphaned(mid), f"orphan({mid})")
            self._forget(mid, kid, state)
            return True
        # update_memory / merge: recreate the pointer when the item survives
        if item is not None:
            self._refresh(mid, item, state)
            return True
        return self._call(lambda: self._pointers.mark_orphaned(mid), f"orphan({mid})")

    def _resolve_duplicate(
        self, mid: str, kid: str, action: str, state: SyncState,
    ) -> bool:
        live = self._live_group(kid, state)
        if len(live) < 2 or mid not in {r.id for r in live}:
            return False
        keep = pick_keeper(live)
        if keep == mid:
            return False
        if action == "keep_memory":
            return False
        if action == "update_memory":
            item = self._item(kid)
            if item is None:
                return False
            self._refresh(mid, item, state)
            return True
        if action == "merge":
            survivor = next(r for r in live if r.id == keep)
            loser = next(r for r in live if r.id == mid)
            if isinstance(survivor.metadata, KnowledgePointerMetadata) and isinstance(
                loser.metadata, KnowledgePointerMetadata
            ):
                tags = merge_tags(survivor.metadata.tags, loser.metadata.tags)
                self._call(lambda: self._pointers.set_tags(keep, tags), f"tags({keep})")
        self._call(lambda: self._pointers.delete(mid), f"delete({mid})")
        state.pointer_mapping.pop(mid, None)
        return True
