"""
Tests for memsync.trigger — ordered trigger conditions.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from datetime import datetime, timedelta, timezone

import pytest

from memsync.config import TriggerConfig
from memsync.trigger import TriggerContext, evaluate_trigger
from memsync.types import SyncState

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _state(minutes_ago=5, commit="c1"):
    return SyncState(
        last_sync_at=(NOW - timedelta(minutes=minutes_ago)).isoformat(),
        last_knowledge_commit=commit,
    )


@pytest.fixture
def cfg():
    return TriggerConfig(
        staleness_threshold_minutes=60, session_threshold=10, schedule_interval_minutes=0,
    )


class TestConditions:
    def test_fresh_state_no_sync(self, cfg):
        d = evaluate_trigger(cfg, _state(), TriggerContext(now=NOW))
        assert not d.should_sync
        assert d.reason is None

    def test_manual(self, cfg):
        d = evaluate_trigger(cfg, _state(), TriggerContext(manual=True, now=NOW))
        assert (d.should_sync, d.reason) == (True, "manual")

    def test_never_synced(self, cfg):
        d = evaluate_trigger(cfg, SyncState(), TriggerContext(now=NOW))
        assert d.reason == "staleness"
        assert d.detail == "never synced"

    def test_staleness_strictly_greater(self, cfg):
        at_threshold = evaluate_trigger(cfg, _state(60), TriggerContext(now=NOW))
        past = evaluate_trigger(cfg, _state(61), TriggerContext(now=NOW))
        assert not at_threshold.should_sync
        assert past.reason == "staleness"

    def test_session_count(self, cfg):
        below = evaluate_trigger(cfg, _state(), TriggerContext(sessions_since_last_sync=9, now=NOW))
        at = evaluate_trigger(cfg, _state(), TriggerContext(sessions_since_last_sync=10, now=NOW))
        assert not below.should_sync
        assert at.reason == "session_count"

    def test_session_threshold_zero_disables(self):
        cfg = TriggerConfig(session_threshold=0)
        d = evaluate_trigger(cfg, _state(), TriggerContext(sessions_since_last_sync=1000, now=NOW))
        assert not d.should_sync

    def test_scheduled(self):
        cfg = TriggerConfig(schedule_interval_minutes=15)
        never = evaluate_trigger(cfg, _state(), TriggerContext(now=NOW))
        recent = evaluate_trigger(cfg, _state(), TriggerContext(
            last_scheduled_run_at=NOW - timedelta(minutes=5), now=NOW,
        ))
        due = evaluate_trigger(cfg, _state(), TriggerContext(
            last_scheduled_run_at=NOW - timedelta(minutes=15), now=NOW,
        ))
        assert never.reason == "scheduled"
        assert not recent.should_sync
        assert due.reason == "scheduled"

    def test_commit_mismatch(self, cfg):
        same = evaluate_trigger(cfg, _state(), TriggerContext(head_commit="c1", now=NOW))
        moved = evaluate_trigger(cfg, _state(), TriggerContext(head_commit="c2", now=NOW))
        assert not same.should_sync
        assert moved.reason == "commit_mismatch"

    def test_naive_now_treated_as_utc(self, cfg):
        d = evaluate_trigger(cfg, _state(), TriggerContext(now=NOW.replace(tzinfo=None)))
        assert not d.should_sync


class TestOrdering:
    def test_manual_wins_over_everything(self, cfg):
        ctx = TriggerContext(manual=True, sessions_since_last_sync=50, head_commit="c9", now=NOW)
        assert evaluate_trigger(cfg, SyncState(), ctx).reason == "manual"

    def test_staleness_before_sessions(self, cfg):
        ctx = TriggerContext(sessions_since_last_sync=50, now=NOW)
        assert evaluate_trigger(cfg, _state(120), ctx).reason == "staleness"

    def test_sessions_before_schedule_and_commit(self):
        cfg = TriggerConfig(session_threshold=2, schedule_interval_minutes=1)
        ctx = TriggerContext(sessions_since_last_sync=2, head_commit="c9", now=NOW)
        assert evaluate_trigger(cfg, _state(), ctx).reason == "session_count"

    def test_schedule_before_commit(self):
        cfg = TriggerConfig(schedule_interval_minutes=1)
        ctx = TriggerContext(head_commit="c9", now=NOW)
        assert evaluate_trigger(cfg, _state(), ctx).reason == "scheduled"
