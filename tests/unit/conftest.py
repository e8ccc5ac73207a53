"""Shared fakes for the sync tests."""

import threading
import time
from pathlib import Path

import pytest

from etcdmirror.core.ledger import ChangeLedger
from etcdmirror.core.mirror import FilesystemMirror
from etcdmirror.store.base import ChangeEvent, Entry, RangeResult, StoreError


class FakeWatchStream:
    """Yields scripted events, then ends (or blocks until closed, or stays open for `hold` seconds)."""

    def __init__(self, events=(), block=False, compact_revision=None, created=False, hold=0.0):
        self.events = list(events)
        self.block = block
        self.compact_revision = compact_revision
        self.created = created
        self.canceled = False
        self.hold = hold
        self._closed = threading.Event()

    def __iter__(self):
        for event in self.events:
            if self._closed.is_set():
                return
            yield event
        if self.block:
            self._closed.wait()
        elif self.hold:
            self._closed.wait(self.hold)

    def close(self):
        self._closed.set()

    @property
    def closed(self):
        return self._closed.is_set()


class FakeStore:
    """In-memory KeyValueStore with failure injection."""

    def __init__(self, data=None):
        self.data: dict[str, bytes] = dict(data or {})
        self.revision = 1
        self.puts: list[tuple[str, bytes]] = []
        self.put_errors: dict[str, StoreError] = {}
        self.get_error: StoreError | None = None
        self.streams: list = []  # scripted results for subscribe(): streams or exceptions
        self.subscriptions: list[tuple[str, int | None]] = []

    def get_prefix(self, prefix):
        if self.get_error is not None:
            raise self.get_error
        entries = [
            Entry(key=k, value=v, mod_revision=self.revision)
            for k, v in sorted(self.data.items())
            if k.startswith(prefix)
        ]
        return RangeResult(entries=entries, revision=self.revision)

    def put(self, key, value):
        if key in self.put_errors:
            raise self.put_errors[key]
        self.data[key] = value
        self.puts.append((key, value))
        self.revision += 1

    def subscribe(self, prefix, start_revision=None):
        self.subscriptions.append((prefix, start_revision))
        if self.streams:
            item = self.streams.pop(0)
            if isinstance(item, Exception):
                raise item
            return item
        return FakeWatchStream(block=True)


def wait_for(predicate, timeout=3.0, interval=0.01):
    """Poll predicate until it is true or the timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def put_event(key, value, revision=0):
    from etcdmirror.store.base import EventType

    return ChangeEvent(type=EventType.PUT, key=key, value=value, mod_revision=revision)


def delete_event(key, revision=0):
    from etcdmirror.store.base import EventType

    return ChangeEvent(type=EventType.DELETE, key=key, mod_revision=revision)


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def ledger() -> ChangeLedger:
    return ChangeLedger()


@pytest.fixture
def root(tmp_path: Path) -> Path:
    path = tmp_path / "sync"
    path.mkdir()
    return path


@pytest.fixture
def mirror(root: Path) -> FilesystemMirror:
    return FilesystemMirror(root)
