"""
Delta Detector — classify knowledge ids between two hash maps.

Pure function: no I/O, two dictionary scans.  Output lists are sorted so the
result never depends on dictionary iteration order.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Mapping


@dataclass
class DeltaResult:
    """Four disjoint, sorted id lists."""

    added: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.added or self.updated or self.deleted)

    def all_ids(self) -> List[str]:
        return sorted(self.added + self.updated + self.unchanged + self.deleted)

    def summary(self) -> Dict[str, int]:
        return {
            "added": len(self.added),
            "updated": len(self.updated),
            "unchanged": len(self.unchanged),
            "deleted": len(self.deleted),
        }


def compute_delta(
    current: Mapping[str, str],
    previous: Mapping[str, str],
    *,
    force: bool = False,
) -> DeltaResult:
    """Compare the current manifest hashes with the previously seen ones.

    Args:
        current: id -> content hash from the manifest being synced.
        previous: id -> content hash from SyncState.knowledge_hashes.
        force: Treat every id present on both sides as updated, ignoring
            cached hashes.

    Returns:
        DeltaResult whose four lists partition ``current | previous``.
    """
    result = DeltaResult()
    for kid, h in current.items():
        if kid not in previous:
            result.added.append(kid)
        elif force or previous[kid] != h:
            result.updated.append(kid)
        else:
            result.unchanged.append(kid)
    for kid in previous:
        if kid not in current:
            result.deleted.append(kid)
    result.added.sort()
    result.updated.sort()
    result.unchanged.sort()
    result.deleted.sort()
    return result
