"""
Pointer Records — content generation and lifecycle in the memory store

A pointer is a small, generated memory record that references an
authoritative knowledge item without duplicating it.  Content generation is a
pure function; PointerMemoryManager performs the idempotent create / update /
orphan operations against a MemoryBackend.

Pointer ids are deterministic (``ptr_<knowledge id>``), so re-running a
create after a crash updates the existing record instead of duplicating it.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Callable, List, Mapping, Optional

from memsync.config import PointerConfig
from memsync.store import MemoryBackend
from memsync.types import (
    Constraint,
    KnowledgeItem,
    KnowledgePointer,
    KnowledgePointerMetadata,
    MemoryRecord,
    VALID_KNOWLEDGE_TYPES,
    VALID_LAYERS,
    VALID_STATUSES,
    pointer_id_for,
    scope_key,
)

logger = logging.getLogger(__name__)

ELLIPSIS = "\u2026"
MAX_BLOCK_CONSTRAINTS = 3

_WS_RE = re.compile(r"\s+")

# Tags derived from the item itself; everything else on a pointer is preserved
_GENERATED_TAGS = {"knowledge"} | VALID_KNOWLEDGE_TYPES | VALID_LAYERS | VALID_STATUSES


# ---------------------------------------------------------------------------
# Content generation (pure)
# ---------------------------------------------------------------------------

def _one_line(text: str) -> str:
    return _WS_RE.sub(" ", text or "").strip()


def render_constraint(c: Constraint) -> str:
    """``operator: pattern [target]``, or the human message when present."""
    if c.message:
        return _one_line(c.message)
    return f"{c.operator}: {_one_line(c.pattern)} [{c.target}]"


def generate_pointer_content(
    item: KnowledgeItem,
    max_length: int = 1000,
    max_constraints: int = MAX_BLOCK_CONSTRAINTS,
) -> str:
    """Render the bounded summary text stored in a pointer record.

    Layout: title, one-line summary, type/status tag, up to
    ``max_constraints`` block-severity constraints, then a reference line.
    The body is truncated with an ellipsis when needed; the reference line is
    always kept intact.
    """
    limit = min(max_constraints, MAX_BLOCK_CONSTRAINTS)
    lines: List[str] = [_one_line(item.title) or item.id]
    summary = _one_line(item.summary)
    if summary:
        lines.append(summary)
    lines.append(f"[{item.type}] [{item.status}] [{item.layer}]")
    blocking = [c for c in item.constraints if c.severity == "block"][:limit]
    if blocking:
        lines.append("Constraints:")
        lines.extend(f"- {render_constraint(c)}" for c in blocking)

    ref = f"Ref: knowledge:{item.id}"
    body = "\n".join(lines)
    budget = max_length - len(ref) - 1  # newline before ref
    if budget < 1:
        # Not even the reference fits: shorten the id inside it.
        return ref[:max(max_length - 1, 0)] + ELLIPSIS
    if len(body) > budget:
        body = body[:max(budget - 1, 0)].rstrip() + ELLIPSIS
    return f"{body}\n{ref}"


def pointer_tags(item: KnowledgeItem) -> List[str]:
    """Default tags carried by a pointer record."""
    return ["knowledge", item.type, item.layer, item.status]


# ---------------------------------------------------------------------------
# Pointer memory manager
# ---------------------------------------------------------------------------

class PointerMemoryManager:
    """Create, update and orphan pointer records for one scope."""

    def __init__(
        self,
        backend: MemoryBackend,
        config: Optional[PointerConfig] = None,
        identifiers: Optional[Mapping[str, str]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._backend = backend
        self._config = config or PointerConfig()
        self._scope = scope_key(identifiers)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def scope(self) -> str:
        return self._scope

    def build_record(
        self, item: KnowledgeItem, memory_id: Optional[str] = None,
        tags: Optional[List[str]] = None,
    ) -> MemoryRecord:
        """Pointer record for an item (not written)."""
        pointer = KnowledgePointer(
            source_type=item.type,
            source_id=item.id,
            content_hash=item.content_hash,
            synced_at=self._clock().isoformat(),
            source_layer=item.layer,
            is_orphaned=False,
        )
        return MemoryRecord(
            id=memory_id or pointer_id_for(item.id),
            content=generate_pointer_content(
                item,
                max_length=self._config.max_content_length,
                max_constraints=self._config.max_constraints,
            ),
            layer=item.layer,
            scope=self._scope,
            metadata=KnowledgePointerMetadata(
                knowledge_pointer=pointer,
                tags=tags if tags is not None else pointer_tags(item),
            ),
        )

    def create(self, item: KnowledgeItem) -> str:
        """Write the pointer for an item and return its memory id.

        Idempotent: when the deterministic id already exists the record is
        refreshed in place.
        """
        memory_id = pointer_id_for(item.id)
        if self._backend.get(memory_id) is not None:
            logger.debug(f"pointer {memory_id} exists, refreshing")
            self.update(memory_id, item)
            return memory_id
        record = self.build_record(item, memory_id)
        self._backend.add(record)
        logger.debug(f"pointer created: {memory_id} -> {item.id}")
        return memory_id

    def update(self, memory_id: str, item: KnowledgeItem) -> str:
        """Regenerate content and hash, keeping the memory id.

        A record deleted out of band is recreated under the same id.
        """
        existing = self._backend.get(memory_id)
        if existing is None:
            self._backend.add(self.build_record(item, memory_id))
            logger.debug(f"pointer {memory_id} recreated for {item.id}")
            return memory_id
        tags = None
        if isinstance(existing.metadata, KnowledgePointerMetadata):
            kept = [t for t in existing.metadata.tags if t not in _GENERATED_TAGS]
            tags = merge_tags(pointer_tags(item), kept)
        record = self.build_record(item, memory_id, tags=tags)
        record.created_at = existing.created_at
        self._backend.update(record)
        logger.debug(f"pointer updated: {memory_id} -> {item.id}")
        return memory_id

    def mark_orphaned(self, memory_id: str) -> bool:
        """Set ``is_orphaned`` on a pointer. Returns True if it changed.

        Missing records and already-orphaned pointers are a no-op.
        """
        record = self._backend.get(memory_id)
        if record is None or record.pointer is None:
            return False
        if record.pointer.is_orphaned:
            return False
        record.pointer.is_orphaned = True
        self._backend.update(record)
        logger.debug(f"pointer orphaned: {memory_id}")
        return True

    def set_tags(self, memory_id: str, tags: List[str]) -> bool:
        """Replace the tags of a pointer record (used by duplicate merge)."""
        record = self._backend.get(memory_id)
        if record is None or not isinstance(record.metadata, KnowledgePointerMetadata):
            return False
        record.metadata.tags = list(tags)
        return self._backend.update(record)

    def delete(self, memory_id: str) -> bool:
        """Hard-delete a pointer record."""
        deleted = self._backend.delete(memory_id)
        if deleted:
            logger.debug(f"pointer deleted: {memory_id}")
        return deleted

    def get(self, memory_id: str) -> Optional[MemoryRecord]:
        return self._backend.get(memory_id)


def merge_tags(base: List[str], extra: List[str]) -> List[str]:
    """Union preserving first-seen order."""
    seen = set()
    out: List[str] = []
    for tag in list(base) + list(extra):
        if tag not in seen:
            seen.add(tag)
            out.append(tag)
    return out
