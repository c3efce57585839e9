"""
Trigger Evaluator — decide whether a sync run should start

Pure function of (config, state, context).  Conditions are checked in order
and the first match wins:

    1. manual           explicit request
    2. staleness        now - last_sync_at > staleness threshold (or never synced)
    3. session_count    sessions since last sync >= session threshold
    4. scheduled        schedule interval elapsed since the last scheduled run
    5. commit_mismatch  known head commit != last synced commit

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Literal, Optional

from memsync.config import TriggerConfig
from memsync.types import SyncState, parse_iso

TriggerReason = Literal[
    "manual", "staleness", "session_count", "scheduled", "commit_mismatch",
]


@dataclass
class TriggerContext:
    """Runtime facts the caller knows at evaluation time."""

    manual: bool = False
    sessions_since_last_sync: int = 0
    last_scheduled_run_at: Optional[datetime] = None
    head_commit: Optional[str] = None
    now: Optional[datetime] = None


@dataclass
class TriggerDecision:
    should_sync: bool
    reason: Optional[TriggerReason] = None
    detail: str = ""


def _aware(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def evaluate_trigger(
    config: TriggerConfig,
    state: SyncState,
    context: TriggerContext,
) -> TriggerDecision:
    """Return the first matching trigger condition, or should_sync=False."""
    now = _aware(context.now) or datetime.now(timezone.utc)

    if context.manual:
        return TriggerDecision(True, "manual", "explicit request")

    last = parse_iso(state.last_sync_at)
    threshold = timedelta(minutes=config.staleness_threshold_minutes)
    if last is None:
        return TriggerDecision(True, "staleness", "never synced")
    if now - last > threshold:
        age = int((now - last).total_seconds() // 60)
        return TriggerDecision(True, "staleness", f"last sync {age} min ago")

    if (
        config.session_threshold > 0
        and context.sessions_since_last_sync >= config.session_threshold
    ):
        return TriggerDecision(
            True, "session_count",
            f"{context.sessions_since_last_sync} sessions since last sync",
        )

    if config.schedule_interval_minutes > 0:
        interval = timedelta(minutes=config.schedule_interval_minutes)
        ran = _aware(context.last_scheduled_run_at)
        if ran is None or now - ran >= interval:
            return TriggerDecision(True, "scheduled", "schedule interval elapsed")

    if context.head_commit is not None and context.head_commit != state.last_knowledge_commit:
        return TriggerDecision(
            True, "commit_mismatch",
            f"head {context.head_commit} != synced {state.last_knowledge_commit}",
        )

    return TriggerDecision(False)
