"""Change ledger: last-seen mtime per synchronized path."""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager


class ChangeLedger:
    """Thread-safe mapping of key (relative path) -> mtime in nanoseconds.

    The remote watcher, the local poller and manual downloads all read and
    write it. Every method takes the same reentrant lock; ``locked()``
    exposes it so a caller can make "write file + record mtime" a single
    critical section.
    """

    def __init__(self) -> None:
        self._records: dict[str, int] = {}
        self._lock = threading.RLock()

    @contextmanager
    def locked(self) -> Iterator[None]:
        with self._lock:
            yield

    def get(self, path: str) -> int | None:
        with self._lock:
            return self._records.get(path)

    def set(self, path: str, mtime_ns: int) -> None:
        with self._lock:
            self._records[path] = mtime_ns

    def discard(self, path: str) -> None:
        """Forget a path whose backing file was removed."""
        with self._lock:
            self._records.pop(path, None)

    def observe(self, path: str, mtime_ns: int) -> bool:
        """Record a scanned mtime; return True if the path changed since last seen.

        A path seen for the first time is recorded but not reported as
        changed, since there is nothing to compare against.
        """
        with self._lock:
            previous = self._records.get(path)
            self._records[path] = mtime_ns
            return previous is not None and mtime_ns > previous

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(self._records)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __contains__(self, path: object) -> bool:
        with self._lock:
            return path in self._records
