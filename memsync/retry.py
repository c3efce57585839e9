"""
Collaborator Calls — per-call timeout and exponential backoff

The only two suspension points of a sync run live here: waiting on a
collaborator call and waiting out a backoff delay.  Both observe a
cancellation Event, so a cancelled run stops at the next suspension point
without touching SyncState.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from memsync.config import RetryConfig
from memsync.errors import CollaboratorTimeoutError, SyncCancelledError, is_retryable

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Granularity of cancellation checks while a call is in flight (seconds)
_POLL_INTERVAL = 0.05


@dataclass
class RetryPolicy:
    """Attempt limit, backoff curve and per-call timeout."""

    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 8.0
    timeout: Optional[float] = 30.0

    @classmethod
    def from_config(cls, cfg: RetryConfig) -> RetryPolicy:
        return cls(
            max_attempts=cfg.max_attempts,
            base_delay=cfg.base_delay_seconds,
            max_delay=cfg.max_delay_seconds,
            timeout=cfg.call_timeout_seconds,
        )

    def delay_for(self, attempt: int) -> float:
        """Backoff before attempt ``attempt + 1`` (attempt counts from 1)."""
        return min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))


def _check_cancel(cancel: Optional[threading.Event], label: str) -> None:
    if cancel is not None and cancel.is_set():
        raise SyncCancelledError(f"cancelled during {label or 'collaborator call'}")


def call_with_timeout(
    fn: Callable[[], T],
    timeout: Optional[float],
    *,
    cancel: Optional[threading.Event] = None,
    label: str = "",
) -> T:
    """Run ``fn`` and wait at most ``timeout`` seconds for its result.

    With no timeout and no cancel signal the call runs inline.  Otherwise it
    runs on a helper thread; a call that outlives its timeout is abandoned
    (its thread finishes in the background) and CollaboratorTimeoutError is
    raised.

    Raises:
        CollaboratorTimeoutError: when the timeout elapses.
        SyncCancelledError: when ``cancel`` is set while waiting.
    """
    _check_cancel(cancel, label)
    if timeout is None and cancel is None:
        return fn()
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="memsync-call")
    try:
        future = executor.submit(fn)
        waited = 0.0
        while True:
            step = _POLL_INTERVAL if timeout is None else min(_POLL_INTERVAL, timeout - waited)
            try:
                return future.result(timeout=max(step, 0.0))
            except FutureTimeout:
                waited += step
                _check_cancel(cancel, label)
                if timeout is not None and waited >= timeout:
                    raise CollaboratorTimeoutError(
                        f"{label or 'collaborator call'} exceeded {timeout}s"
                    )
    finally:
        executor.shutdown(wait=False)


def call_with_retry(
    fn: Callable[[], T],
    policy: Optional[RetryPolicy] = None,
    *,
    cancel: Optional[threading.Event] = None,
    label: str = "",
) -> T:
    """Call ``fn`` with timeout, retrying retryable sync errors.

    Non-retryable errors propagate immediately.  Between attempts the call
    waits ``policy.delay_for(attempt)`` seconds on the cancel Event, so a
    cancellation interrupts the backoff.

    Raises:
        The last error once ``policy.max_attempts`` is exhausted.
        SyncCancelledError: when cancelled during a call or a backoff.
    """
    policy = policy or RetryPolicy()
    attempts = max(1, policy.max_attempts)
    wait = cancel if cancel is not None else threading.Event()
    for attempt in range(1, attempts + 1):
        try:
            return call_with_timeout(fn, policy.timeout, cancel=cancel, label=label)
        except SyncCancelledError:
            raise
        except Exception as exc:
            if not is_retryable(exc) or attempt >= attempts:
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                f"{label or 'call'} failed (attempt {attempt}/{attempts}): {exc}; "
                f"retrying in {delay:.2f}s"
            )
            if wait.wait(delay):
                raise SyncCancelledError(
                    f"cancelled during backoff of {label or 'collaborator call'}"
                ) from exc
    raise AssertionError("unreachable")  # pragma: no cover
