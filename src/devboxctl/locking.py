"""File based locks serialising mutating devboxctl commands.

Locks are advisory ``fcntl.flock`` locks on files inside the runtime
directory. The global lock sits at its root while instance and record locks
live in ``instances/`` and ``records/``, so no instance name can alias another
lock. Each lock file is (re)written with a small JSON document naming the
holder so operators can diagnose a stuck command; the file is left in place
after release.
"""
from __future__ import annotations

import fcntl
import json
import os
import time
from collections.abc import Iterable, Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import IO

GLOBAL_LOCK_NAME = "devboxctl"
INSTANCE_LOCK_DIR = "instances"
RECORD_LOCK_DIR = "records"
POLL_INTERVAL = 0.05


class LockTimeoutError(RuntimeError):
    """Raised when a lock cannot be acquired before the timeout expires."""


@dataclass(slots=True)
class LockHandle:
    """An acquired lock."""

    path: Path
    wait_ms: int


@dataclass(slots=True)
class LockBundle:
    """Several locks acquired together."""

    handles: list[LockHandle]

    @property
    def wait_ms(self) -> int:
        """Total time spent waiting for every lock in the bundle."""
        return sum(handle.wait_ms for handle in self.handles)


class LockManager:
    """Acquire global and per-instance locks under ``runtime_dir``."""

    def __init__(self, runtime_dir: Path, default_timeout: float = 30.0) -> None:
        self.runtime_dir = Path(runtime_dir)
        self.default_timeout = float(default_timeout)

    def lock_path(self, name: str) -> Path:
        """Return the lock file used for instance *name*."""
        return self.runtime_dir / INSTANCE_LOCK_DIR / f"{name}.lock"

    def record_lock_path(self, name: str) -> Path:
        """Return the lock file guarding the metadata record of *name*."""
        return self.runtime_dir / RECORD_LOCK_DIR / f"{name}.lock"

    def global_lock_path(self) -> Path:
        """Return the process wide lock file."""
        return self.runtime_dir / f"{GLOBAL_LOCK_NAME}.lock"

    @contextmanager
    def instance_lock(self, name: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the lock dedicated to instance *name*."""
        with self._acquire(self.lock_path(name), timeout) as handle:
            yield handle

    @contextmanager
    def record_lock(self, name: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the load-merge-save lock for the record of *name*."""
        with self._acquire(self.record_lock_path(name), timeout) as handle:
            yield handle

    @contextmanager
    def global_lock(self, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the process wide devboxctl lock."""
        with self._acquire(self.global_lock_path(), timeout) as handle:
            yield handle

    @contextmanager
    def mutate_instances(
        self,
        names: Iterable[str],
        *,
        include_global: bool = True,
        timeout: float | None = None,
    ) -> Iterator[LockBundle]:
        """Acquire the global lock (optionally) followed by sorted instance locks."""
        handles: list[LockHandle] = []
        with ExitStack() as stack:
            if include_global:
                handles.append(stack.enter_context(self.global_lock(timeout=timeout)))
            for name in sorted(set(names)):
                handles.append(stack.enter_context(self.instance_lock(name, timeout=timeout)))
            yield LockBundle(handles=handles)

    @contextmanager
    def _acquire(self, path: Path, timeout: float | None) -> Iterator[LockHandle]:
        limit = self.default_timeout if timeout is None else float(timeout)
        path.parent.mkdir(parents=True, exist_ok=True)
        handle = path.open("a+", encoding="utf-8")
        started = time.monotonic()
        try:
            while True:
                try:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() - started >= limit:
                        raise LockTimeoutError(
                            f"Timed out after {limit:.1f}s waiting for lock {path}."
                        ) from None
                    time.sleep(POLL_INTERVAL)
            wait_ms = int((time.monotonic() - started) * 1000)
            _write_metadata(handle, path)
            try:
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            handle.close()


def _write_metadata(handle: IO[str], path: Path) -> None:
    payload = {
        "pid": os.getpid(),
        "path": str(path),
        "acquired_at": datetime.now(UTC).isoformat(),
    }
    handle.seek(0)
    handle.truncate()
    handle.write(json.dumps(payload))
    handle.flush()


__all__ = ["LockBundle", "LockHandle", "LockManager", "LockTimeoutError"]
