"""Settle-then-refresh scheduling after mutating operations.

Docker's container listing can lag behind the command that changed it, so
mcpctl never re-reads state immediately after a lifecycle operation. It waits
a settle delay first and then, with the ``poll`` strategy, takes up to
``attempts`` snapshots until the expected end state is visible. The ``fixed``
strategy takes exactly one snapshot after the delay.
"""
from __future__ import annotations

import concurrent.futures
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum

from .reconcile import ServerView, find_view

Snapshot = Callable[[], Sequence[ServerView]]


class ExpectedState(str, Enum):
    """End state a refresh waits for."""

    PRESENT = "present"
    ABSENT = "absent"
    RUNNING = "running"
    STOPPED = "stopped"


@dataclass(frozen=True, slots=True)
class Expectation:
    """The container a refresh watches and the state it should reach."""

    instance_name: str
    state: ExpectedState

    def satisfied_by(self, views: Sequence[ServerView]) -> bool:
        """Return whether *views* show the expected state."""
        view = find_view(views, self.instance_name)
        deployed = view is not None and view.is_deployed
        if self.state is ExpectedState.PRESENT:
            return deployed
        if self.state is ExpectedState.ABSENT:
            return not deployed
        if self.state is ExpectedState.RUNNING:
            return view is not None and view.is_running
        return deployed and view is not None and not view.is_running


@dataclass(frozen=True, slots=True)
class RefreshResult:
    """Outcome of a refresh."""

    views: tuple[ServerView, ...]
    attempts: int
    satisfied: bool
    error: str | None = None


class RefreshScheduler:
    """Run refreshes on a single background worker."""

    def __init__(
        self,
        snapshot: Snapshot,
        *,
        strategy: str = "poll",
        settle_delay: float = 2.0,
        attempts: int = 5,
        interval: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        enabled: bool = True,
    ) -> None:
        """Store the snapshot callable and timing parameters."""
        if strategy not in {"poll", "fixed"}:
            raise ValueError(f"Unsupported refresh strategy '{strategy}'.")
        self.snapshot = snapshot
        self.strategy = strategy
        self.settle_delay = settle_delay
        self.attempts = 1 if strategy == "fixed" else max(1, attempts)
        self.interval = interval
        self._sleep = sleep
        self.enabled = enabled
        self._executor: concurrent.futures.ThreadPoolExecutor | None = None

    @classmethod
    def disabled(cls) -> RefreshScheduler:
        """Return a scheduler that never refreshes."""
        return cls(lambda: (), settle_delay=0.0, attempts=1, interval=0.0, enabled=False)

    def schedule(
        self,
        expectation: Expectation,
    ) -> concurrent.futures.Future[RefreshResult] | None:
        """Start a refresh in the background and return its future.

        Returns ``None`` when the scheduler is disabled.
        """
        if not self.enabled:
            return None
        if self._executor is None:
            self._executor = concurrent.futures.ThreadPoolExecutor(
                max_workers=1,
                thread_name_prefix="mcpctl-refresh",
            )
        return self._executor.submit(self.run, expectation)

    def run(self, expectation: Expectation) -> RefreshResult:
        """Wait for the settle delay, then poll until *expectation* holds."""
        if self.settle_delay > 0:
            self._sleep(self.settle_delay)

        views: tuple[ServerView, ...] = ()
        error: str | None = None
        for attempt in range(1, self.attempts + 1):
            if attempt > 1 and self.interval > 0:
                self._sleep(self.interval)
            try:
                views = tuple(self.snapshot())
            except Exception as exc:  # noqa: BLE001 - surfaced on the result
                error = str(exc)
                continue
            error = None
            if expectation.satisfied_by(views):
                return RefreshResult(views=views, attempts=attempt, satisfied=True)
        return RefreshResult(views=views, attempts=self.attempts, satisfied=False, error=error)

    def shutdown(self, *, wait: bool = True) -> None:
        """Stop the background worker."""
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None


__all__ = [
    "ExpectedState",
    "Expectation",
    "RefreshResult",
    "RefreshScheduler",
]
