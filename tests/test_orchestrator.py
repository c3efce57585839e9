"""
Tests for memsync.orchestrator — full/incremental/item sync, failures,
checkpoint rollback, leases, cancellation and conflict passes.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

import io
import json
import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from memsync.audit import RunLogger
from memsync.config import RetryConfig, SyncConfig
from memsync.errors import (
    KnowledgeUnavailableError,
    LeaseHeldError,
    MemoryUnavailableError,
    PersistenceError,
    StateCorruptedError,
    SyncCancelledError,
)
from memsync.knowledge import InMemoryKnowledgeRepository
from memsync.lease import LeaseManager, lease_key
from memsync.metrics import ROLLBACKS, SYNC_RUNS, MetricsRegistry
from memsync.orchestrator import MANIFEST_FAILURE_ID, SyncOrchestrator
from memsync.state import SqliteStateStore
from memsync.store import MemoryStore
from memsync.trigger import TriggerContext
from memsync.types import KnowledgeItem

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self):
        self.now = T0

    def __call__(self):
        return self.now


def _config():
    return SyncConfig(retry=RetryConfig(
        max_attempts=2, base_delay_seconds=0.0, max_delay_seconds=0.0,
        call_timeout_seconds=None,
    ))


class FlakyMemoryStore(MemoryStore):
    """Memory store that refuses writes for selected record ids."""

    def __init__(self):
        super().__init__(":memory:")
        self.broken = set()

    def add(self, record):
        if record.id in self.broken:
            raise MemoryUnavailableError("memory backend down", item_id=record.id)
        return super().add(record)


class OfflineRepository(InMemoryKnowledgeRepository):
    def __init__(self):
        super().__init__()
        self.offline = False

    def get_manifest(self):
        if self.offline:
            raise KnowledgeUnavailableError("repository offline")
        return super().get_manifest()


class CrashingStateStore(SqliteStateStore):
    """Fails the next ``crashes`` state saves (checkpoint writes still work)."""

    def __init__(self):
        super().__init__(":memory:")
        self.crashes = 0

    def save(self, scope, state):
        if self.crashes:
            self.crashes -= 1
            raise PersistenceError("simulated crash before persistence")
        return super().save(scope, state)


class Env:
    def __init__(self):
        self.repo = OfflineRepository()
        self.memory = FlakyMemoryStore()
        self.states = CrashingStateStore()
        self.leases = LeaseManager(":memory:")
        self.metrics = MetricsRegistry()
        self.log_buf = io.StringIO()
        self.clock = Clock()
        self.orch = SyncOrchestrator(
            self.repo, self.memory, self.states,
            config=_config(), leases=self.leases, metrics=self.metrics,
            run_log=RunLogger(output=self.log_buf), clock=self.clock,
        )

    @property
    def state(self):
        return self.orch.get_state()

    def run_records(self):
        self.log_buf.seek(0)
        return [json.loads(ln) for ln in self.log_buf.read().splitlines() if ln]

    def close(self):
        self.memory.close()
        self.states.close()
        self.leases.close()


@pytest.fixture
def env():
    e = Env()
    yield e
    e.close()


def _hash(content, **kw):
    return KnowledgeItem(id="x", content=content, **kw).content_hash


# ---------------------------------------------------------------------------
# Reference scenarios
# ---------------------------------------------------------------------------


class TestScenarios:
    def test_first_full_sync_adds(self, env):
        env.repo.put(KnowledgeItem(id="A", content="h1"))
        result = env.orch.sync_full()
        assert result.added == 1
        assert result.success
        assert env.state.pointer_mapping == {"ptr_A": "A"}
        assert env.state.knowledge_hashes == {"A": _hash("h1")}
        assert env.state.last_knowledge_commit == env.repo.head_commit

    def test_incremental_updates(self, env):
        env.repo.put(KnowledgeItem(id="A", content="h1"))
        env.orch.sync_full()
        env.repo.put(KnowledgeItem(id="A", content="h2"))
        result = env.orch.sync_incremental()
        assert result.mode == "incremental"
        assert result.updated == 1
        assert env.state.knowledge_hashes == {"A": _hash("h2")}
        assert env.memory.get("ptr_A").pointer.content_hash == _hash("h2")

    def test_removed_item_tombstoned(self, env):
        env.repo.put(KnowledgeItem(id="A", content="h1"))
        env.orch.sync_full()
        env.repo.remove("A")
        result = env.orch.sync_full()
        assert result.deleted == 1
        assert env.memory.get("ptr_A").pointer.is_orphaned is True
        assert "A" not in env.state.knowledge_hashes
        assert env.state.pointer_mapping == {"ptr_A": "A"}

    def test_out_of_band_deletion_detected(self, env):
        env.repo.put(KnowledgeItem(id="A", content="a"))
        env.repo.put(KnowledgeItem(id="B", content="b"))
        env.orch.sync_full()
        env.memory.delete("ptr_B")
        (c,) = env.orch.detect_conflicts()
        assert c.type == "orphaned_pointer"
        assert c.details["reason"] == "memory_deleted"
        assert c.knowledge_id == "B"

    def test_crash_before_persist_rolls_back_then_retry_succeeds(self, env):
        env.repo.put(KnowledgeItem(id="A", content="h1"))
        env.orch.sync_full()
        before = env.states.raw_state(env.orch.scope)

        env.repo.put(KnowledgeItem(id="A", content="h2"))
        env.repo.put(KnowledgeItem(id="B", content="b"))
        env.states.crashes = 1
        with pytest.raises(PersistenceError):
            env.orch.sync_full()
        assert env.states.raw_state(env.orch.scope) == before
        assert env.orch.phase == "idle"
        assert env.metrics.counter(ROLLBACKS, {"scope": env.orch.scope}) == 1

        result = env.orch.sync_full()
        assert result.updated == 1
        assert result.added == 1
        assert env.state.knowledge_hashes == {"A": _hash("h2"), "B": _hash("b")}
        assert len(env.memory.list_pointers()) == 2


# ---------------------------------------------------------------------------
# Delta application
# ---------------------------------------------------------------------------


class TestApply:
    def test_rerun_is_idempotent(self, env):
        env.repo.put(KnowledgeItem(id="A", content="a"))
        env.orch.sync_full()
        first = env.state
        result = env.orch.sync_full()
        second = env.state
        assert (result.added, result.updated, result.unchanged) == (0, 0, 1)
        assert second.knowledge_hashes == first.knowledge_hashes
        assert second.pointer_mapping == first.pointer_mapping
        assert len(env.memory.list_pointers()) == 1

    def test_force_reapplies(self, env):
        env.repo.put(KnowledgeItem(id="A", content="a"))
        env.orch.sync_full()
        assert env.orch.sync_full(force=True).updated == 1

    def test_stats_accumulate(self, env):
        env.repo.put(KnowledgeItem(id="A", content="a"))
        env.orch.sync_full()
        env.orch.sync_full()
        stats = env.state.stats
        assert stats.total_syncs == 2
        assert stats.total_items_synced == 1

    def test_many_items_bounded_pool(self, env):
        env.repo.commit(upserts=[KnowledgeItem(id=f"K{i:02d}", content=str(i)) for i in range(25)])
        result = env.orch.sync_full()
        assert result.added == 25
        assert len(env.state.pointer_mapping) == 25

    def test_incremental_counts_untouched_as_unchanged(self, env):
        env.repo.put(KnowledgeItem(id="A", content="a"))
        env.repo.put(KnowledgeItem(id="B", content="b"))
        env.orch.sync_full()
        env.repo.put(KnowledgeItem(id="B", content="b2"))
        result = env.orch.sync_incremental()
        assert (result.updated, result.unchanged) == (1, 1)

    def test_incremental_without_commit_falls_back(self, env):
        env.repo.put(KnowledgeItem(id="A", content="a"))
        result = env.orch.sync_incremental()
        assert result.mode == "full"
        assert result.added == 1

    def test_retired_item_updates_pointer(self, env):
        env.repo.put(KnowledgeItem(id="A", content="a"))
        env.orch.sync_full()
        env.repo.put(KnowledgeItem(id="A", content="a", status="superseded"))
        env.orch.sync_incremental()
        assert "[superseded]" in env.memory.get("ptr_A").content


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestFailures:
    def test_item_failure_does_not_abort(self, env):
        env.repo.put(KnowledgeItem(id="A", content="a"))
        env.repo.put(KnowledgeItem(id="B", content="b"))
        env.memory.broken.add("ptr_B")
        result = env.orch.sync_full()
        assert result.added == 1
        assert not result.success
        (f,) = result.failures
        assert (f.knowledge_id, f.code, f.retry_count) == ("B", "MEMORY_UNAVAILABLE", 1)
        assert "B" not in env.state.knowledge_hashes
        assert env.state.find_failure("B").failed_at == T0.isoformat()
        (rec,) = env.run_records()
        assert (rec["outcome"], rec["d"]["code"]) == ("partial", "PARTIAL_FAILURE")

    def test_retry_count_increments(self, env):
        env.repo.put(KnowledgeItem(id="B", content="b"))
        env.memory.broken.add("ptr_B")
        env.orch.sync_full()
        env.orch.sync_full()
        assert env.state.find_failure("B").retry_count == 2

    def test_incremental_retries_failed_items(self, env):
        env.repo.put(KnowledgeItem(id="B", content="b"))
        env.memory.broken.add("ptr_B")
        env.orch.sync_full()
        env.memory.broken.clear()
        result = env.orch.sync_incremental()
        assert result.added == 1
        assert env.state.failed_items == []

    def test_manifest_unavailable(self, env):
        env.repo.offline = True
        result = env.orch.sync_full()
        assert [f.knowledge_id for f in result.failures] == [MANIFEST_FAILURE_ID]
        assert result.failures[0].code == "KNOWLEDGE_UNAVAILABLE"
        assert env.state.last_sync_at is None
        env.repo.offline = False
        env.orch.sync_full()
        assert env.state.failed_items == []

    def test_corrupted_state_fails_closed(self, env):
        env.states._conn.execute(
            "INSERT INTO sync_state (scope, state_json, updated_at) VALUES (?,?,?)",
            (env.orch.scope, "{broken", "now"),
        )
        env.states._conn.commit()
        with pytest.raises(StateCorruptedError):
            env.orch.sync_full()
        assert env.states.raw_state(env.orch.scope) == "{broken"
        assert env.orch.phase == "idle"

    def test_failed_run_logged(self, env):
        env.repo.put(KnowledgeItem(id="A", content="a"))
        env.states.crashes = 1
        with pytest.raises(PersistenceError):
            env.orch.sync_full()
        (rec,) = env.run_records()
        assert rec["outcome"] == "failed"
        assert rec["d"]["code"] == "PERSISTENCE_FAILED"


# ---------------------------------------------------------------------------
# Single item
# ---------------------------------------------------------------------------


class TestSyncItem:
    def test_adds_without_moving_watermark(self, env):
        env.repo.put(KnowledgeItem(id="A", content="a"))
        result = env.orch.sync_item("A")
        assert result.mode == "item"
        assert result.added == 1
        assert env.state.last_sync_at is None
        assert env.state.last_knowledge_commit is None

    def test_deleted_item(self, env):
        env.repo.put(KnowledgeItem(id="A", content="a"))
        env.orch.sync_full()
        env.repo.remove("A")
        assert env.orch.sync_item("A").deleted == 1
        assert env.memory.get("ptr_A").pointer.is_orphaned

    def test_unchanged_item(self, env):
        env.repo.put(KnowledgeItem(id="A", content="a"))
        env.orch.sync_full()
        assert env.orch.sync_item("A").unchanged == 1

    def test_unknown_untracked_item_is_noop(self, env):
        result = env.orch.sync_item("nope")
        assert (result.added, result.deleted, result.unchanged) == (0, 0, 0)


# ---------------------------------------------------------------------------
# Concurrency control
# ---------------------------------------------------------------------------


class CancellingMemoryStore(FlakyMemoryStore):
    def __init__(self):
        super().__init__()
        self.orch = None

    def add(self, record):
        rid = super().add(record)
        self.orch.cancel()
        return rid


class TestConcurrencyControl:
    def test_lease_held_by_other_run(self, env):
        env.leases.acquire(lease_key(env.orch.scope, "sync"), "other-run")
        env.repo.put(KnowledgeItem(id="A", content="a"))
        with pytest.raises(LeaseHeldError):
            env.orch.sync_full()
        assert env.states.raw_state(env.orch.scope) is None

    def test_lease_released_after_run(self, env):
        env.orch.sync_full()
        assert env.leases.holder(lease_key(env.orch.scope, "sync")) is None

    def test_cancel_rolls_back(self, env):
        env.orch.sync_full()
        before = env.states.raw_state(env.orch.scope)
        memory = CancellingMemoryStore()
        orch = SyncOrchestrator(
            env.repo, memory, env.states, config=_config(), leases=env.leases,
            metrics=env.metrics, run_log=RunLogger(output=env.log_buf), clock=env.clock,
        )
        memory.orch = orch
        env.repo.put(KnowledgeItem(id="A", content="a"))
        with pytest.raises(SyncCancelledError):
            orch.sync_full()
        assert env.states.raw_state(env.orch.scope) == before
        assert env.run_records()[-1]["outcome"] == "aborted"
        memory.close()

    def test_detection_after_cancel(self, env):
        env.repo.put(KnowledgeItem(id="A", content="a"))
        env.orch.sync_full()
        env.memory.delete("ptr_A")
        env.orch.cancel()
        (c,) = env.orch.detect_conflicts()
        assert c.type == "orphaned_pointer"
        assert c.details["reason"] == "memory_deleted"

    def test_scopes_are_isolated(self, env):
        other = SyncOrchestrator(
            env.repo, env.memory, env.states, identifiers={"tenant": "b"},
            config=_config(), leases=env.leases, metrics=env.metrics, clock=env.clock,
        )
        env.repo.put(KnowledgeItem(id="A", content="a"))
        other.sync_full()
        assert other.scope == "tenant=b"
        assert other.get_state().knowledge_hashes
        assert env.state.knowledge_hashes == {}


# ---------------------------------------------------------------------------
# Conflicts, maintenance, triggers
# ---------------------------------------------------------------------------


class TestConflictPass:
    def test_resolve_then_resync_recreates_pointer(self, env):
        env.repo.put(KnowledgeItem(id="B", content="b"))
        env.orch.sync_full()
        env.memory.delete("ptr_B")
        report = env.orch.resolve_conflicts()
        assert len(report.applied) == 1
        assert env.state.pointer_mapping == {}
        assert env.state.stats.total_conflicts_resolved == 1
        assert env.orch.sync_full().added == 1
        assert env.memory.get("ptr_B") is not None

    def test_tombstone_cleanup(self, env):
        env.repo.put(KnowledgeItem(id="A", content="a"))
        env.orch.sync_full()
        env.repo.remove("A")
        env.orch.sync_full()
        env.orch.resolve_conflicts()
        assert env.memory.get("ptr_A") is None
        assert env.state.pointer_mapping == {}
        assert env.orch.detect_conflicts() == []


class TestMaintenance:
    def test_prune_failed_items(self, env):
        env.repo.put(KnowledgeItem(id="B", content="b"))
        env.memory.broken.add("ptr_B")
        env.orch.sync_full()
        env.clock.now = T0 + timedelta(days=10)
        assert env.orch.prune_failed_items() == 0
        env.clock.now = T0 + timedelta(days=31)
        assert env.orch.prune_failed_items() == 1
        assert env.state.failed_items == []

    def test_should_sync(self, env):
        assert env.orch.should_sync().reason == "staleness"
        env.orch.sync_full()
        assert not env.orch.should_sync().should_sync
        assert env.orch.should_sync(TriggerContext(manual=True)).reason == "manual"

    def test_metrics_and_run_log(self, env):
        env.repo.put(KnowledgeItem(id="A", content="a"))
        env.orch.sync_full()
        assert env.metrics.counter(SYNC_RUNS, {"op": "sync_full", "outcome": "ok"}) == 1
        (rec,) = env.run_records()
        assert rec["op"] == "sync_full"
        assert rec["d"]["added"] == 1
