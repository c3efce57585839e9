"""
Sync Orchestrator — checkpointed reconciliation of knowledge into memory

State machine shared by every entry point:

    idle -> checkpointing -> detecting -> applying -> persisting -> idle
    (any) -> failed -> rolled_back -> idle

Rules:
- One writer per scope: every mutating operation holds the scope lease.
- The persisted SyncState is replaced exactly once per run, as the last
  step.  Everything before works on a private copy.
- Per-item failures are recorded in failed_items and never abort a run.
  Only checkpoint and persistence failures (and cancellation) abort, in
  which case the checkpoint is restored.
- Workers compute item outcomes in parallel; the coordinator merges them
  into the working state sequentially.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Literal, Mapping, Optional, TypeVar

from memsync.audit import NullRunLogger, RunLogger
from memsync.config import SyncConfig
from memsync.conflict import (
    Conflict,
    ConflictDetector,
    ConflictResolver,
    ResolutionPolicy,
    ResolutionReport,
)
from memsync.delta import DeltaResult, compute_delta
from memsync.errors import (
    PARTIAL_FAILURE,
    CheckpointFailedError,
    RollbackFailedError,
    StateCorruptedError,
    SyncCancelledError,
    SyncError,
    error_code,
)
from memsync.knowledge import KnowledgeRepository, ManifestFetcher
from memsync.lease import LeaseManager, lease_key
from memsync.metrics import (
    CONFLICTS_DETECTED,
    CONFLICTS_RESOLVED,
    FAILED_ITEMS,
    ITEM_FAILURES,
    ROLLBACKS,
    SYNC_DURATION,
    SYNC_ITEMS,
    SYNC_RUNS,
    TRACKED_ITEMS,
    MetricsRegistry,
    metrics as default_metrics,
)
from memsync.pointer import PointerMemoryManager
from memsync.retry import RetryPolicy, call_with_retry
from memsync.state import StateStore
from memsync.store import MemoryBackend
from memsync.trigger import TriggerContext, TriggerDecision, evaluate_trigger
from memsync.types import (
    KnowledgeItem,
    Manifest,
    SyncFailure,
    SyncMode,
    SyncResult,
    SyncState,
    parse_iso,
    pointer_id_for,
    scope_key,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

SyncPhase = Literal[
    "idle", "checkpointing", "detecting", "applying",
    "persisting", "failed", "rolled_back",
]

# failed_items key used when the manifest itself could not be read
MANIFEST_FAILURE_ID = "__manifest__"

ItemChange = Literal["added", "updated", "deleted"]


@dataclass
class _ItemTask:
    """One unit of apply-phase work, planned by the coordinator."""

    knowledge_id: str
    change: ItemChange
    memory_ids: List[str] = field(default_factory=list)
    item: Optional[KnowledgeItem] = None


@dataclass
class _ItemOutcome:
    """Result of a task, merged by the coordinator."""

    task: _ItemTask
    ok: bool = True
    memory_id: Optional[str] = None
    content_hash: str = ""
    layer: str = ""
    error: str = ""
    code: str = ""
    cancelled: bool = False


class SyncOrchestrator:
    """Drives full, incremental and single-item syncs for one scope."""

    def __init__(
        self,
        knowledge: KnowledgeRepository,
        memory: MemoryBackend,
        state_store: StateStore,
        *,
        identifiers: Optional[Mapping[str, str]] = None,
        config: Optional[SyncConfig] = None,
        leases: Optional[LeaseManager] = None,
        metrics: Optional[MetricsRegistry] = None,
        run_log: Optional[RunLogger] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._config = config or SyncConfig()
        self._state_store = state_store
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.scope = scope_key(identifiers)
        self._cancel = threading.Event()
        self._retry = RetryPolicy.from_config(self._config.retry)
        self._fetcher = ManifestFetcher(knowledge, self._retry, self._cancel)
        self._pointers = PointerMemoryManager(
            memory, self._config.pointer, identifiers, self._clock,
        )
        self._policy = ResolutionPolicy.from_config(self._config.conflict)
        self._leases = leases or LeaseManager(
            ttl_seconds=self._config.state.lease_ttl_seconds,
        )
        self._metrics = metrics if metrics is not None else default_metrics
        self._run_log = run_log or NullRunLogger()
        self._phase: SyncPhase = "idle"
        self._phase_lock = threading.Lock()

    # -- Phase / cancellation ----------------------------------------------

    @property
    def phase(self) -> SyncPhase:
        with self._phase_lock:
            return self._phase

    def _set_phase(self, phase: SyncPhase) -> None:
        with self._phase_lock:
            self._phase = phase
        logger.debug(f"[{self.scope}] phase -> {phase}")

    def cancel(self) -> None:
        """Abort the run in progress at its next suspension point."""
        self._cancel.set()

    def _check_cancel(self) -> None:
        if self._cancel.is_set():
            raise SyncCancelledError("sync run cancelled")

    def _now_iso(self) -> str:
        return self._clock().isoformat()

    # -- Transaction skeleton ----------------------------------------------

    def _transaction(
        self, op: str, rid: str, started: float, body: Callable[[SyncState], T],
    ) -> T:
        """Lease, load, checkpoint, run ``body`` on a copy, persist.

        Any failure after the checkpoint restores it before re-raising.
        """
        self._cancel.clear()
        with self._leases.hold(lease_key(self.scope, "sync")):
            self._set_phase("checkpointing")
            try:
                state = self._state_store.load(self.scope)
                self._state_store.checkpoint(self.scope)
            except StateCorruptedError as exc:
                logger.error(f"[{self.scope}] {op}: persisted state unusable: {exc}")
                self._abort(op, rid, started, exc, restore=False)
                raise
            except CheckpointFailedError as exc:
                logger.error(f"[{self.scope}] {op}: checkpoint failed: {exc}")
                self._abort(op, rid, started, exc, restore=False)
                raise
            except (OSError, sqlite3.Error) as exc:
                logger.error(f"[{self.scope}] {op}: cannot read state: {exc}")
                err = CheckpointFailedError(f"cannot read state: {exc}")
                self._abort(op, rid, started, err, restore=False)
                raise err from exc

            working = state.copy()
            try:
                value = body(working)
                self._check_cancel()
                self._set_phase("persisting")
                self._state_store.save(self.scope, working)
            except Exception as exc:
                logger.error(f"[{self.scope}] {op} failed: {exc}")
                self._abort(op, rid, started, exc, restore=True)
                raise
            finally:
                self._set_phase("idle")
            self._publish_gauges(working)
            return value

    def _abort(
        self, op: str, rid: str, started: float, exc: Exception, restore: bool,
    ) -> None:
        """Failed -> RolledBack -> Idle, with metrics and a run record."""
        self._set_phase("failed")
        outcome = "aborted" if isinstance(exc, SyncCancelledError) else "failed"
        try:
            if restore:
                self._state_store.rollback(self.scope)
                self._metrics.inc(ROLLBACKS, {"scope": self.scope})
            self._set_phase("rolled_back")
        except RollbackFailedError as rb_exc:
            logger.error(f"[{self.scope}] rollback failed: {rb_exc}")
            self._run_log.log(
                op, rid, self.scope, "failed",
                {"code": rb_exc.code, "error": str(rb_exc), "cause": error_code(exc)},
                (time.perf_counter() - started) * 1000,
            )
            self._metrics.inc(SYNC_RUNS, {"op": op, "outcome": "failed"})
            self._set_phase("idle")
            raise rb_exc from exc
        self._metrics.inc(SYNC_RUNS, {"op": op, "outcome": outcome})
        self._run_log.log(
            op, rid, self.scope, outcome,
            {"code": error_code(exc), "error": str(exc)},
            (time.perf_counter() - started) * 1000,
        )
        self._set_phase("idle")

    def _publish_gauges(self, state: SyncState) -> None:
        labels = {"scope": self.scope}
        self._metrics.set_gauge(FAILED_ITEMS, len(state.failed_items), labels)
        self._metrics.set_gauge(TRACKED_ITEMS, len(state.knowledge_hashes), labels)

    # -- Sync entry points -------------------------------------------------

    def sync_full(self, force: bool = False) -> SyncResult:
        """Reconcile the whole manifest against the last seen hashes.

        Args:
            force: Re-apply every tracked item, ignoring cached hashes.
        """
        def body(working: SyncState, result: SyncResult) -> None:
            manifest = self._fetch_manifest(working, result)
            if manifest is None:
                return
            delta = compute_delta(manifest.hashes(), working.knowledge_hashes, force=force)
            self._apply(working, result, delta)
            working.last_sync_at = self._now_iso()
            working.last_knowledge_commit = manifest.commit_id

        return self._run_sync("full", body)

    def sync_incremental(self) -> SyncResult:
        """Reconcile only the items touched since the last synced commit.

        Falls back to a full sync when there is no previous commit or the
        repository no longer knows it.  Items listed in failed_items are
        retried as well.
        """
        def body(working: SyncState, result: SyncResult) -> None:
            self._set_phase("detecting")
            try:
                affected = self._fetcher.affected_since(working.last_knowledge_commit)
            except SyncCancelledError:
                raise
            except SyncError as exc:
                self._record_run_failure(working, result, exc)
                return
            manifest = self._fetch_manifest(working, result)
            if manifest is None:
                return
            if affected is None:
                logger.info(f"[{self.scope}] incremental sync falls back to full")
                result.mode = "full"
                delta = compute_delta(manifest.hashes(), working.knowledge_hashes)
            else:
                affected |= {
                    f.knowledge_id for f in working.failed_items
                    if f.knowledge_id != MANIFEST_FAILURE_ID
                }
                current = {k: h for k, h in manifest.hashes().items() if k in affected}
                previous = {
                    k: h for k, h in working.knowledge_hashes.items() if k in affected
                }
                delta = compute_delta(current, previous)
                result.unchanged += len(set(working.knowledge_hashes) - affected)
            self._apply(working, result, delta)
            working.last_sync_at = self._now_iso()
            working.last_knowledge_commit = manifest.commit_id

        return self._run_sync("incremental", body)

    def sync_item(self, knowledge_id: str) -> SyncResult:
        """Reconcile one item directly, without a manifest or delta.

        Does not move last_sync_at or last_knowledge_commit.
        """
        def body(working: SyncState, result: SyncResult) -> None:
            self._set_phase("detecting")
            try:
                item = self._fetcher.find_item(knowledge_id)
            except SyncCancelledError:
                raise
            except SyncError as exc:
                self._record_item_failure(
                    working, result, knowledge_id, str(exc), exc.code,
                )
                return
            delta = DeltaResult()
            tracked = knowledge_id in working.knowledge_hashes
            if item is None:
                if tracked:
                    delta.deleted.append(knowledge_id)
            elif not tracked:
                delta.added.append(knowledge_id)
            elif working.knowledge_hashes[knowledge_id] != item.content_hash:
                delta.updated.append(knowledge_id)
            else:
                delta.unchanged.append(knowledge_id)
            self._apply(working, result, delta, prefetched={knowledge_id: item})

        return self._run_sync("item", body)

    def _run_sync(
        self, mode: SyncMode, body: Callable[[SyncState, SyncResult], None],
    ) -> SyncResult:
        rid = RunLogger.new_rid()
        started = time.perf_counter()
        op = f"sync_{mode}"
        result = SyncResult(mode=mode, run_id=rid)
        logger.info(f"[{self.scope}] {op} started (rid={rid})")

        def wrapped(working: SyncState) -> SyncResult:
            body(working, result)
            result.duration_ms = round((time.perf_counter() - started) * 1000, 3)
            working.stats.total_items_synced += result.added + result.updated + result.deleted
            working.stats.record_run(result.duration_ms)
            return result

        self._transaction(op, rid, started, wrapped)

        outcome = "ok" if result.success else "partial"
        self._metrics.inc(SYNC_RUNS, {"op": op, "outcome": outcome})
        self._metrics.observe(SYNC_DURATION, result.duration_ms / 1000.0, {"op": op})
        for change in ("added", "updated", "deleted", "unchanged"):
            count = getattr(result, change)
            if count:
                self._metrics.inc(SYNC_ITEMS, {"change": change}, count)
        detail = result.to_dict()
        detail["failures"] = [f.knowledge_id for f in result.failures]
        if not result.success:
            detail["code"] = PARTIAL_FAILURE
        self._run_log.log(op, rid, self.scope, outcome, detail, result.duration_ms)
        logger.info(
            f"[{self.scope}] {op} finished: added={result.added} updated={result.updated} "
            f"deleted={result.deleted} unchanged={result.unchanged} "
            f"failures={len(result.failures)} ({result.duration_ms:.1f} ms)"
        )
        return result

    # -- Detecting ---------------------------------------------------------

    def _fetch_manifest(self, working: SyncState, result: SyncResult) -> Optional[Manifest]:
        self._set_phase("detecting")
        try:
            manifest = self._fetcher.fetch_manifest()
        except SyncCancelledError:
            raise
        except SyncError as exc:
            self._record_run_failure(working, result, exc)
            return None
        working.clear_failure(MANIFEST_FAILURE_ID)
        result.commit_id = manifest.commit_id
        return manifest

    def _record_run_failure(
        self, working: SyncState, result: SyncResult, exc: SyncError,
    ) -> None:
        logger.warning(f"[{self.scope}] knowledge repository unavailable: {exc}")
        self._record_item_failure(working, result, MANIFEST_FAILURE_ID, str(exc), exc.code)

    def _record_item_failure(
        self, working: SyncState, result: SyncResult,
        knowledge_id: str, error: str, code: str,
    ) -> None:
        failure = working.record_failure(knowledge_id, error, code)
        failure.failed_at = self._now_iso()
        result.failures.append(SyncFailure.from_dict(failure.to_dict()))
        self._metrics.inc(ITEM_FAILURES, {"code": code})

    # -- Applying ----------------------------------------------------------

    def _plan(
        self, working: SyncState, delta: DeltaResult,
        prefetched: Optional[Dict[str, Optional[KnowledgeItem]]] = None,
    ) -> List[_ItemTask]:
        prefetched = prefetched or {}
        tasks: List[_ItemTask] = []
        for kid in delta.added:
            tasks.append(_ItemTask(kid, "added", item=prefetched.get(kid)))
        for kid in delta.updated:
            tasks.append(_ItemTask(
                kid, "updated", working.memory_ids_for(kid), item=prefetched.get(kid),
            ))
        for kid in delta.deleted:
            tasks.append(_ItemTask(kid, "deleted", working.memory_ids_for(kid)))
        return tasks

    def _apply(
        self, working: SyncState, result: SyncResult, delta: DeltaResult,
        prefetched: Optional[Dict[str, Optional[KnowledgeItem]]] = None,
    ) -> None:
        self._set_phase("applying")
        result.unchanged += len(delta.unchanged)
        tasks = self._plan(working, delta, prefetched)
        if not tasks:
            return
        workers = min(self._config.apply.max_workers, len(tasks))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="memsync-apply") as pool:
            futures = [pool.submit(self._run_task, task) for task in tasks]
            outcomes = [f.result() for f in futures]
        self._check_cancel()
        for outcome in outcomes:
            self._merge(working, result, outcome)

    def _call(self, fn: Callable[[], T], label: str) -> T:
        return call_with_retry(fn, self._retry, cancel=self._cancel, label=label)

    def _run_task(self, task: _ItemTask) -> _ItemOutcome:
        """Worker: talk to the collaborators, never touch shared state."""
        kid = task.knowledge_id
        try:
            self._check_cancel()
            if task.change == "deleted":
                for mid in task.memory_ids:
                    self._call(lambda m=mid: self._pointers.mark_orphaned(m), f"orphan({mid})")
                return _ItemOutcome(task)
            item = task.item or self._fetcher.fetch_item(kid)
            if task.memory_ids:
                primary = pointer_id_for(kid)
                if primary not in task.memory_ids:
                    primary = task.memory_ids[0]
                mid = self._call(lambda: self._pointers.update(primary, item), f"update({primary})")
            else:
                mid = self._call(lambda: self._pointers.create(item), f"create({kid})")
            return _ItemOutcome(task, memory_id=mid, content_hash=item.content_hash, layer=item.layer)
        except SyncCancelledError:
            return _ItemOutcome(task, ok=False, cancelled=True, code="CANCELLED")
        except SyncError as exc:
            logger.warning(f"[{self.scope}] item {kid} failed: {exc}")
            return _ItemOutcome(task, ok=False, error=str(exc), code=exc.code)
        except Exception as exc:
            logger.warning(f"[{self.scope}] item {kid} failed: {exc}", exc_info=True)
            return _ItemOutcome(task, ok=False, error=str(exc), code="INTERNAL")

    def _merge(self, working: SyncState, result: SyncResult, outcome: _ItemOutcome) -> None:
        """Coordinator: fold one worker outcome into the working state."""
        task = outcome.task
        kid = task.knowledge_id
        if not outcome.ok:
            self._record_item_failure(working, result, kid, outcome.error, outcome.code)
            return
        working.clear_failure(kid)
        if task.change == "deleted":
            working.knowledge_hashes.pop(kid, None)
            result.deleted += 1
            logger.debug(f"[{self.scope}] {kid}: tombstoned {task.memory_ids}")
            return
        working.pointer_mapping[outcome.memory_id] = kid
        working.knowledge_hashes[kid] = outcome.content_hash
        working.knowledge_layers[kid] = outcome.layer
        if task.change == "added":
            result.added += 1
        else:
            result.updated += 1
        logger.debug(f"[{self.scope}] {kid}: {task.change} via {outcome.memory_id}")

    # -- Conflicts ---------------------------------------------------------

    def _detector(self) -> ConflictDetector:
        return ConflictDetector(
            self._fetcher, self._pointers, self._policy, self._retry, self._cancel,
        )

    def detect_conflicts(self) -> List[Conflict]:
        """Read-only conflict scan over a snapshot of the persisted state."""
        # A cancel left over from an earlier run or a stopped scheduler
        # applies to that run only.
        self._cancel.clear()
        snapshot = self._state_store.load(self.scope)
        conflicts = self._detector().detect(snapshot)
        for c in conflicts:
            self._metrics.inc(CONFLICTS_DETECTED, {"type": c.type})
        return conflicts

    def resolve_conflicts(
        self, conflicts: Optional[List[Conflict]] = None,
    ) -> ResolutionReport:
        """Detect (unless given) and resolve conflicts under the scope lease."""
        rid = RunLogger.new_rid()
        started = time.perf_counter()
        resolver = ConflictResolver(
            self._fetcher, self._pointers, self._policy, self._retry, self._cancel,
        )

        def body(working: SyncState) -> ResolutionReport:
            self._set_phase("detecting")
            found = conflicts if conflicts is not None else self._detector().detect(working)
            self._set_phase("applying")
            report = resolver.resolve(found, working)
            working.stats.total_conflicts_detected += len(found)
            working.stats.total_conflicts_resolved += len(report.applied)
            return report

        report = self._transaction("resolve_conflicts", rid, started, body)
        for o in report.outcomes:
            self._metrics.inc(
                CONFLICTS_RESOLVED,
                {"type": o.conflict.type, "action": o.action, "status": o.status},
            )
        outcome = "ok" if not (report.failed or report.manual) else "partial"
        self._run_log.log(
            "resolve_conflicts", rid, self.scope, outcome,
            {k: v for k, v in report.to_dict().items() if k != "outcomes"},
            (time.perf_counter() - started) * 1000,
        )
        logger.info(
            f"[{self.scope}] conflicts: applied={len(report.applied)} "
            f"noop={len(report.noop)} manual={len(report.manual)} "
            f"failed={len(report.failed)}"
        )
        return report

    # -- Maintenance -------------------------------------------------------

    def prune_failed_items(self, days: Optional[int] = None) -> int:
        """Drop failure entries older than ``days`` (default: configured)."""
        days = days if days is not None else self._config.state.failed_item_retention_days
        rid = RunLogger.new_rid()
        started = time.perf_counter()
        cutoff = self._clock() - timedelta(days=days)

        def body(working: SyncState) -> int:
            before = len(working.failed_items)
            working.failed_items = [
                f for f in working.failed_items
                if (parse_iso(f.failed_at) or cutoff) >= cutoff
            ]
            return before - len(working.failed_items)

        pruned = self._transaction("prune_failed_items", rid, started, body)
        if pruned:
            logger.info(f"[{self.scope}] pruned {pruned} failed item(s) older than {days} days")
        self._run_log.log(
            "prune_failed_items", rid, self.scope, "ok",
            {"pruned": pruned, "days": days}, (time.perf_counter() - started) * 1000,
        )
        return pruned

    # -- Queries -----------------------------------------------------------

    def get_state(self) -> SyncState:
        """Persisted state of this scope."""
        return self._state_store.load(self.scope)

    def should_sync(self, context: Optional[TriggerContext] = None) -> TriggerDecision:
        """Evaluate the trigger conditions against the persisted state."""
        context = context or TriggerContext()
        if context.now is None:
            context.now = self._clock()
        return evaluate_trigger(self._config.trigger, self.get_state(), context)
