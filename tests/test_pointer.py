"""
Tests for memsync.pointer — content generation and pointer lifecycle.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

import pytest

from memsync.config import PointerConfig
from memsync.pointer import (
    PointerMemoryManager,
    generate_pointer_content,
    render_constraint,
)
from memsync.store import MemoryStore
from memsync.types import Constraint, KnowledgeItem, MemoryRecord, GenericMetadata


def _item(**over):
    base = dict(
        id="adr-7", title="Use PostgreSQL", summary="All services\nuse Postgres.",
        content="Long body", type="adr", layer="team", status="accepted",
    )
    base.update(over)
    return KnowledgeItem(**base)


@pytest.fixture
def store():
    s = MemoryStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def manager(store):
    return PointerMemoryManager(store, PointerConfig(), {"tenant": "acme"})


# ---------------------------------------------------------------------------
# Content generation
# ---------------------------------------------------------------------------


class TestGenerateContent:
    def test_layout(self):
        text = generate_pointer_content(_item())
        lines = text.splitlines()
        assert lines[0] == "Use PostgreSQL"
        assert lines[1] == "All services use Postgres."
        assert lines[2] == "[adr] [accepted] [team]"
        assert lines[-1] == "Ref: knowledge:adr-7"

    def test_only_blocking_constraints_at_most_three(self):
        cons = [
            Constraint(operator="must_use", pattern=f"lib{i}", target="dependency", severity="block")
            for i in range(5)
        ] + [Constraint(operator="must_not_use", pattern="warnonly", severity="warn")]
        text = generate_pointer_content(_item(constraints=cons))
        assert text.count("\n- ") == 3
        assert "- must_use: lib0 [dependency]" in text
        assert "warnonly" not in text
        assert "lib3" not in text

    def test_message_preferred(self):
        c = Constraint(operator="must_not_use", pattern="eval", severity="block",
                       message="Never call eval")
        assert render_constraint(c) == "Never call eval"

    def test_length_capped_and_ref_kept(self):
        text = generate_pointer_content(_item(summary="x" * 5000), max_length=200)
        assert len(text) <= 200
        assert text.endswith("Ref: knowledge:adr-7")
        assert "…" in text

    def test_length_capped_for_long_id(self):
        text = generate_pointer_content(_item(id="k" * 200), max_length=80)
        assert len(text) <= 80
        assert text.startswith("Ref: knowledge:kkk")
        assert text.endswith("…")

    def test_deterministic(self):
        item = _item(constraints=[Constraint(pattern="p", severity="block")])
        assert generate_pointer_content(item) == generate_pointer_content(item)


# ---------------------------------------------------------------------------
# Pointer manager
# ---------------------------------------------------------------------------


class TestPointerManager:
    def test_create(self, manager, store):
        mid = manager.create(_item())
        assert mid == "ptr_adr-7"
        rec = store.get(mid)
        assert rec.is_pointer
        assert rec.pointer.source_id == "adr-7"
        assert rec.pointer.content_hash == _item().content_hash
        assert rec.pointer.source_layer == "team"
        assert rec.scope == "tenant=acme"

    def test_create_twice_no_duplicate(self, manager, store):
        manager.create(_item())
        manager.create(_item(content="changed"))
        pointers = store.list_pointers()
        assert len(pointers) == 1
        assert pointers[0].pointer.content_hash == _item(content="changed").content_hash

    def test_update_preserves_id(self, manager, store):
        mid = manager.create(_item())
        created_at = store.get(mid).created_at
        manager.update(mid, _item(status="deprecated"))
        rec = store.get(mid)
        assert rec.id == mid
        assert rec.created_at == created_at
        assert "[deprecated]" in rec.content
        assert "deprecated" in rec.metadata.tags
        assert "accepted" not in rec.metadata.tags

    def test_update_keeps_custom_tags(self, manager, store):
        mid = manager.create(_item())
        manager.set_tags(mid, ["knowledge", "pinned"])
        manager.update(mid, _item(content="v2"))
        assert "pinned" in store.get(mid).metadata.tags

    def test_update_recreates_missing(self, manager, store):
        mid = manager.create(_item())
        store.delete(mid)
        manager.update(mid, _item())
        assert store.get(mid) is not None

    def test_mark_orphaned_idempotent(self, manager, store):
        mid = manager.create(_item())
        assert manager.mark_orphaned(mid) is True
        assert store.get(mid).pointer.is_orphaned
        assert manager.mark_orphaned(mid) is False

    def test_mark_orphaned_missing(self, manager):
        assert manager.mark_orphaned("ptr_nope") is False

    def test_mark_orphaned_ignores_non_pointer(self, manager, store):
        store.add(MemoryRecord(id="note-1", content="hi", metadata=GenericMetadata()))
        assert manager.mark_orphaned("note-1") is False

    def test_create_clears_orphan_flag(self, manager, store):
        mid = manager.create(_item())
        manager.mark_orphaned(mid)
        manager.create(_item())
        assert store.get(mid).pointer.is_orphaned is False

    def test_delete(self, manager, store):
        mid = manager.create(_item())
        assert manager.delete(mid) is True
        assert store.get(mid) is None
        assert manager.delete(mid) is False
