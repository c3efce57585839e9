"""
Background Sync — periodic trigger evaluation in a daemon thread

Every ``interval_seconds`` the worker asks the orchestrator whether a run
should start (manual request, staleness, session count, schedule, head
commit) and runs an incremental sync when it should.  stop() sets the stop
Event and cancels an in-flight run, which then rolls back to its checkpoint.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Callable, Optional

from memsync.errors import LeaseHeldError, SyncCancelledError, SyncError
from memsync.orchestrator import SyncOrchestrator
from memsync.trigger import TriggerContext
from memsync.types import SyncResult

logger = logging.getLogger(__name__)


class BackgroundSync:
    """Scheduled task driving one orchestrator."""

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        interval_seconds: float = 60.0,
        head_commit: Optional[Callable[[], Optional[str]]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._orch = orchestrator
        self._interval = interval_seconds
        self._head_commit = head_commit
        self._clock = clock
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._sessions = 0
        self._manual = False
        self._last_run_at: Optional[datetime] = None
        self.last_result: Optional[SyncResult] = None

    # -- Signals from the host ---------------------------------------------

    def record_session(self) -> None:
        """Count one agent session since the last sync."""
        with self._lock:
            self._sessions += 1

    def request_sync(self) -> None:
        """Ask for a run at the next tick."""
        with self._lock:
            self._manual = True

    @property
    def sessions_since_last_sync(self) -> int:
        with self._lock:
            return self._sessions

    # -- One evaluation ----------------------------------------------------

    def tick(self) -> Optional[SyncResult]:
        """Evaluate the trigger once; run an incremental sync if it fires."""
        if self._stop.is_set():
            return None
        try:
            head = self._head_commit() if self._head_commit else None
            with self._lock:
                context = TriggerContext(
                    manual=self._manual,
                    sessions_since_last_sync=self._sessions,
                    last_scheduled_run_at=self._last_run_at,
                    head_commit=head,
                    now=self._clock() if self._clock else None,
                )
            decision = self._orch.should_sync(context)
            if not decision.should_sync:
                return None
            logger.info(f"background sync triggered: {decision.reason} ({decision.detail})")
            result = self._orch.sync_incremental()
        except LeaseHeldError as exc:
            logger.info(f"background sync skipped: {exc}")
            return None
        except SyncCancelledError:
            logger.info("background sync cancelled")
            return None
        except SyncError as exc:
            logger.error(f"background sync failed: {exc}")
            return None
        except Exception as exc:
            # The loop outlives any single failed tick.
            logger.error(f"background sync tick failed: {exc}", exc_info=True)
            return None
        with self._lock:
            self._sessions = 0
            self._manual = False
            self._last_run_at = context.now
        self.last_result = result
        return result

    # -- Thread lifecycle --------------------------------------------------

    def _loop(self) -> None:
        while not self._stop.wait(self._interval):
            self.tick()

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop, name=f"memsync-bg-{self._orch.scope}", daemon=True,
        )
        self._thread.start()
        logger.info(f"background sync started (every {self._interval}s)")

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        """Stop the loop and cancel a run in progress."""
        self._stop.set()
        self._orch.cancel()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("background sync stopped")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
