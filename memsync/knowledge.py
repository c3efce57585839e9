"""
Knowledge Repository — collaborator protocol and manifest fetching

The knowledge repository is authoritative and versioned.  The sync bridge
consumes three read operations from it (manifest, item, commits since) and
never writes to it.  InMemoryKnowledgeRepository is a small, thread-safe,
commit-tracking implementation used by embedders and tests.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import hashlib
import logging
import threading
from typing import Dict, Iterable, List, Optional, Protocol, Set

from memsync.errors import ItemNotFoundError, UnknownCommitError
from memsync.retry import RetryPolicy, call_with_retry
from memsync.types import (
    CommitInfo,
    KnowledgeItem,
    Manifest,
    ManifestEntry,
    _now_iso,
)

logger = logging.getLogger(__name__)


class KnowledgeRepository(Protocol):
    """Read interface of the authoritative knowledge repository."""

    def get_manifest(self) -> Manifest: ...

    def get_item(self, knowledge_id: str) -> Optional[KnowledgeItem]: ...

    def get_commits_since(self, commit_id: str) -> List[CommitInfo]: ...


# ---------------------------------------------------------------------------
# In-memory repository
# ---------------------------------------------------------------------------

class InMemoryKnowledgeRepository:
    """Versioned in-memory knowledge repository.

    Every mutation creates a commit recording the ids it touched.
    """

    def __init__(self, items: Optional[Iterable[KnowledgeItem]] = None):
        self._lock = threading.Lock()
        self._items: Dict[str, KnowledgeItem] = {}
        self._commits: List[CommitInfo] = []
        if items:
            self.commit(upserts=list(items))

    @property
    def head_commit(self) -> Optional[str]:
        with self._lock:
            return self._commits[-1].commit_id if self._commits else None

    def commit(
        self,
        upserts: Optional[List[KnowledgeItem]] = None,
        removals: Optional[List[str]] = None,
    ) -> str:
        """Apply upserts and removals atomically as one commit."""
        upserts = upserts or []
        removals = removals or []
        with self._lock:
            for item in upserts:
                stored = KnowledgeItem.from_dict(item.to_dict())
                stored.content_hash = stored.compute_hash()
                self._items[item.id] = stored
            for kid in removals:
                self._items.pop(kid, None)
            affected = sorted({i.id for i in upserts} | set(removals))
            parent = self._commits[-1].commit_id if self._commits else ""
            seed = f"{parent}|{len(self._commits)}|{','.join(affected)}|{_now_iso()}"
            commit_id = hashlib.sha1(seed.encode("utf-8")).hexdigest()[:12]
            self._commits.append(CommitInfo(commit_id=commit_id, affected_item_ids=affected))
        logger.debug(f"knowledge commit {commit_id}: {len(affected)} item(s)")
        return commit_id

    def put(self, item: KnowledgeItem) -> str:
        return self.commit(upserts=[item])

    def remove(self, knowledge_id: str) -> str:
        return self.commit(removals=[knowledge_id])

    # -- KnowledgeRepository -----------------------------------------------

    def get_manifest(self) -> Manifest:
        with self._lock:
            return Manifest(
                commit_id=self._commits[-1].commit_id if self._commits else None,
                items={
                    kid: ManifestEntry(
                        content_hash=item.content_hash, layer=item.layer, type=item.type,
                    )
                    for kid, item in self._items.items()
                },
            )

    def get_item(self, knowledge_id: str) -> Optional[KnowledgeItem]:
        with self._lock:
            item = self._items.get(knowledge_id)
            return KnowledgeItem.from_dict(item.to_dict()) if item is not None else None

    def get_commits_since(self, commit_id: str) -> List[CommitInfo]:
        with self._lock:
            for idx, c in enumerate(self._commits):
                if c.commit_id == commit_id:
                    return [
                        CommitInfo(x.commit_id, list(x.affected_item_ids))
                        for x in self._commits[idx + 1:]
                    ]
        raise UnknownCommitError(f"unknown commit {commit_id!r}")


# ---------------------------------------------------------------------------
# Manifest fetcher
# ---------------------------------------------------------------------------

class ManifestFetcher:
    """Reads snapshots and items from the repository with retry/timeout."""

    def __init__(
        self,
        repository: KnowledgeRepository,
        policy: Optional[RetryPolicy] = None,
        cancel: Optional[threading.Event] = None,
    ):
        self._repo = repository
        self._policy = policy or RetryPolicy()
        self._cancel = cancel

    def fetch_manifest(self) -> Manifest:
        manifest = call_with_retry(
            self._repo.get_manifest, self._policy,
            cancel=self._cancel, label="get_manifest",
        )
        logger.debug(
            f"manifest fetched: commit={manifest.commit_id} items={len(manifest.items)}"
        )
        return manifest

    def fetch_item(self, knowledge_id: str) -> KnowledgeItem:
        """Fetch one item.

        Raises:
            ItemNotFoundError: the repository no longer has the item.
        """
        item = call_with_retry(
            lambda: self._repo.get_item(knowledge_id), self._policy,
            cancel=self._cancel, label=f"get_item({knowledge_id})",
        )
        if item is None:
            raise ItemNotFoundError("knowledge item not found", item_id=knowledge_id)
        return item

    def find_item(self, knowledge_id: str) -> Optional[KnowledgeItem]:
        """Fetch one item, None when absent."""
        return call_with_retry(
            lambda: self._repo.get_item(knowledge_id), self._policy,
            cancel=self._cancel, label=f"get_item({knowledge_id})",
        )

    def affected_since(self, commit_id: Optional[str]) -> Optional[Set[str]]:
        """Ids touched since ``commit_id``; None means a full sync is needed."""
        if not commit_id:
            return None
        try:
            commits = call_with_retry(
                lambda: self._repo.get_commits_since(commit_id), self._policy,
                cancel=self._cancel, label="get_commits_since",
            )
        except UnknownCommitError:
            logger.info(f"commit {commit_id} unknown to repository, falling back to full sync")
            return None
        affected: Set[str] = set()
        for c in commits:
            affected.update(c.affected_item_ids)
        return affected
