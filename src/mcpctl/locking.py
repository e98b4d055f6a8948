"""Per-target lock files for mcpctl lifecycle operations.

Each lifecycle operation holds an exclusive ``fcntl.flock`` on
``<root>/<target>.lock`` for its whole duration. ``flock`` locks belong to the
open file description, so two operations on the same target conflict whether
they run in different threads or different processes. Operations on distinct
targets never block each other.
"""
from __future__ import annotations

import fcntl
import json
import os
import re
import time
from collections.abc import Iterator, Sequence
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

_POLL_INTERVAL = 0.05
_SAFE_NAME = re.compile(r"[^A-Za-z0-9_.-]+")


class LockError(RuntimeError):
    """Raised when a lock file cannot be created or acquired."""


class LockTimeoutError(LockError):
    """Raised when a lock cannot be acquired within the timeout."""


@dataclass(frozen=True, slots=True)
class LockHandle:
    """Information about an acquired lock."""

    target: str
    path: Path
    wait_ms: int


@dataclass(frozen=True, slots=True)
class LockBundle:
    """A set of locks acquired together in a stable order."""

    handles: tuple[LockHandle, ...]

    @property
    def wait_ms(self) -> int:
        """Return the total time spent waiting for every lock in the bundle."""
        return sum(handle.wait_ms for handle in self.handles)


class LockManager:
    """Acquire exclusive lock files under *root*."""

    def __init__(self, root: Path, default_timeout: float = 30.0) -> None:
        """Store the lock directory and default acquisition timeout."""
        self.root = Path(root).expanduser()
        self.default_timeout = float(default_timeout)

    def lock_path(self, target: str) -> Path:
        """Return the lock file path for *target*."""
        normalized = target.strip().lower()
        if not normalized:
            raise ValueError("Lock target must be a non-empty string.")
        safe = _SAFE_NAME.sub("-", normalized).strip(".-") or "target"
        return self.root / f"{safe}.lock"

    @contextmanager
    def target_lock(self, target: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the exclusive lock for *target* while the context is open."""
        path = self.lock_path(target)
        limit = self.default_timeout if timeout is None else float(timeout)

        start = time.monotonic()
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
        except OSError as exc:
            raise LockError(f"Cannot open lock file {path}: {exc}") from exc
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() - start >= limit:
                        raise LockTimeoutError(
                            f"Timed out after {limit:.1f}s waiting for lock on '{target}' "
                            f"({path})."
                        ) from None
                    time.sleep(_POLL_INTERVAL)
            wait_ms = int((time.monotonic() - start) * 1000)
            _write_metadata(fd, target, path)
            try:
                yield LockHandle(target=target, path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    @contextmanager
    def mutate_targets(
        self,
        targets: Sequence[str],
        *,
        timeout: float | None = None,
    ) -> Iterator[LockBundle]:
        """Acquire locks for several *targets* in sorted order."""
        ordered = sorted({target.strip().lower() for target in targets if target.strip()})
        with ExitStack() as stack:
            handles = tuple(
                stack.enter_context(self.target_lock(target, timeout=timeout))
                for target in ordered
            )
            yield LockBundle(handles=handles)


def _write_metadata(fd: int, target: str, path: Path) -> None:
    payload = {
        "pid": os.getpid(),
        "target": target,
        "path": str(path),
        "acquired_at": datetime.now(UTC).isoformat(),
    }
    data = json.dumps(payload).encode("utf-8")
    os.ftruncate(fd, 0)
    os.lseek(fd, 0, os.SEEK_SET)
    os.write(fd, data)


__all__ = ["LockBundle", "LockError", "LockHandle", "LockManager", "LockTimeoutError"]
