"""Tests for etcdmirror.sync.watcher — RemoteWatcher."""

import os
from pathlib import Path
from unittest.mock import MagicMock

from conftest import FakeStore, FakeWatchStream, delete_event, put_event, wait_for

from etcdmirror.core.ledger import ChangeLedger
from etcdmirror.core.mirror import FilesystemMirror
from etcdmirror.store.base import StoreUnavailable
from etcdmirror.sync.watcher import RemoteWatcher, WatcherState


def make_watcher(store, mirror, ledger, **kwargs) -> RemoteWatcher:
    kwargs.setdefault("initial_backoff", 0.01)
    kwargs.setdefault("max_backoff", 0.02)
    return RemoteWatcher(store, mirror, ledger, **kwargs)


class TestApplyPut:
    def test_writes_file_and_records_mtime(self, store, mirror: FilesystemMirror, ledger: ChangeLedger, root: Path):
        w = make_watcher(store, mirror, ledger)
        result = w.apply_event(put_event("a/b.txt", b"hello", revision=4))

        assert result.ok
        path = root / "a" / "b.txt"
        assert path.read_bytes() == b"hello"
        assert ledger.get("a/b.txt") == os.stat(path).st_mtime_ns
        assert w.applied == 1
        assert w.next_revision == 5

    def test_put_over_existing_file(self, store, mirror, ledger, root: Path):
        w = make_watcher(store, mirror, ledger)
        w.apply_event(put_event("c.txt", b"one"))
        w.apply_event(put_event("c.txt", b"two"))
        assert (root / "c.txt").read_bytes() == b"two"

    def test_path_conflict_is_reported_not_raised(self, store, mirror, ledger, root: Path):
        (root / "a").write_bytes(b"x")
        w = make_watcher(store, mirror, ledger)

        result = w.apply_event(put_event("a/b.txt", b"hello"))

        assert not result.ok
        assert result.action == "write"
        assert w.failed == 1
        assert "a/b.txt" not in ledger

    def test_key_outside_prefix_is_ignored(self, store, mirror, ledger, root: Path):
        w = make_watcher(store, mirror, ledger, prefix="app/")
        result = w.apply_event(put_event("other/x", b"1"))
        assert result.action == "skip"
        assert not (root / "other").exists()

    def test_invalid_key_is_reported(self, store, mirror, ledger):
        w = make_watcher(store, mirror, ledger)
        result = w.apply_event(put_event("../escape", b"1"))
        assert not result.ok


class TestApplyDelete:
    def test_removes_file_and_ledger_record(self, store, mirror, ledger, root: Path):
        w = make_watcher(store, mirror, ledger)
        w.apply_event(put_event("a/b.txt", b"hello"))

        result = w.apply_event(delete_event("a/b.txt"))

        assert result.ok
        assert not (root / "a" / "b.txt").exists()
        assert "a/b.txt" not in ledger

    def test_delete_of_missing_file_is_idempotent(self, store, mirror, ledger):
        w = make_watcher(store, mirror, ledger)
        assert w.apply_event(delete_event("never/existed.txt")).ok
        assert w.apply_event(delete_event("never/existed.txt")).ok
        assert w.failed == 0

    def test_delete_failure_is_dropped(self, store, mirror, ledger, root: Path):
        (root / "d").mkdir()
        w = make_watcher(store, mirror, ledger)
        result = w.apply_event(delete_event("d"))
        assert not result.ok
        assert result.action == "delete"
        assert (root / "d").is_dir()


class TestLifecycle:
    def test_consumes_events_in_background(self, mirror, ledger, root: Path):
        store = FakeStore()
        store.streams = [FakeWatchStream([put_event("c.txt", b"world", revision=3)], block=True)]
        w = make_watcher(store, mirror, ledger)

        w.start(start_revision=2)
        try:
            assert wait_for(lambda: (root / "c.txt").exists())
            assert wait_for(lambda: w.state is WatcherState.CONSUMING)
            assert store.subscriptions == [("", 2)]
        finally:
            w.stop()

        assert w.state is WatcherState.TERMINATED
        assert not w.is_running

    def test_stop_closes_stream(self, store, mirror, ledger):
        stream = FakeWatchStream(block=True)
        store.streams = [stream]
        w = make_watcher(store, mirror, ledger)
        w.start()
        assert wait_for(lambda: w.state is WatcherState.CONSUMING)

        w.stop()

        assert stream.closed
        assert len(store.subscriptions) == 1

    def test_reconnects_after_stream_ends(self, mirror, ledger, root: Path):
        store = FakeStore()
        store.streams = [
            FakeWatchStream([put_event("a.txt", b"1", revision=10)]),  # drops after one event
            FakeWatchStream([put_event("b.txt", b"2", revision=11)], block=True),
        ]
        on_fatal = MagicMock()
        w = make_watcher(store, mirror, ledger, on_fatal=on_fatal)

        w.start(start_revision=5)
        try:
            assert wait_for(lambda: (root / "b.txt").exists())
        finally:
            w.stop()

        assert store.subscriptions == [("", 5), ("", 11)]
        on_fatal.assert_not_called()
        assert w.state is WatcherState.TERMINATED

    def test_resumes_at_compact_revision(self, mirror, ledger):
        store = FakeStore()
        store.streams = [FakeWatchStream(compact_revision=40), FakeWatchStream(block=True)]
        w = make_watcher(store, mirror, ledger)

        w.start(start_revision=3)
        try:
            assert wait_for(lambda: len(store.subscriptions) == 2)
        finally:
            w.stop()

        assert store.subscriptions[1] == ("", 40)

    def test_gives_up_and_reports_fatal(self, mirror, ledger):
        store = FakeStore()
        store.streams = [StoreUnavailable("refused")] * 5
        reasons = []
        w = make_watcher(store, mirror, ledger, max_reconnects=2, on_fatal=reasons.append)

        w.start()
        assert wait_for(lambda: bool(reasons))
        assert wait_for(lambda: not w.is_running)

        assert w.state is WatcherState.FAULTED
        assert len(store.subscriptions) == 3
        assert "refused" in reasons[0]
        assert w.fatal_error == reasons[0]

        w.stop()
        assert w.state is WatcherState.FAULTED

    def test_confirmed_quiet_streams_do_not_count_as_failures(self, mirror, ledger):
        store = FakeStore()
        store.streams = [FakeWatchStream(created=True) for _ in range(4)] + [FakeWatchStream(block=True)]
        on_fatal = MagicMock()
        w = make_watcher(store, mirror, ledger, max_reconnects=1, on_fatal=on_fatal)

        w.start()
        try:
            assert wait_for(lambda: len(store.subscriptions) == 5)
            assert wait_for(lambda: w.state is WatcherState.CONSUMING)
        finally:
            w.stop()

        on_fatal.assert_not_called()

    def test_long_lived_quiet_streams_do_not_count_as_failures(self, mirror, ledger):
        store = FakeStore()
        store.streams = [FakeWatchStream(hold=0.05) for _ in range(3)] + [FakeWatchStream(block=True)]
        on_fatal = MagicMock()
        w = make_watcher(store, mirror, ledger, max_reconnects=2, on_fatal=on_fatal)

        w.start()
        try:
            assert wait_for(lambda: len(store.subscriptions) == 4)
            assert wait_for(lambda: w.state is WatcherState.CONSUMING)
        finally:
            w.stop()

        on_fatal.assert_not_called()

    def test_unconfirmed_short_streams_still_give_up(self, mirror, ledger):
        store = FakeStore()
        store.streams = [FakeWatchStream() for _ in range(3)]
        reasons = []
        w = make_watcher(store, mirror, ledger, initial_backoff=0.5, max_backoff=0.5,
                         max_reconnects=1, on_fatal=reasons.append)

        w.start()
        assert wait_for(lambda: bool(reasons))
        w.stop()

        assert "watch stream ended" in reasons[0]
        assert len(store.subscriptions) == 2

    def test_unlimited_reconnects(self, mirror, ledger):
        store = FakeStore()
        store.streams = [StoreUnavailable("refused")] * 6 + [FakeWatchStream(block=True)]
        on_fatal = MagicMock()
        w = make_watcher(store, mirror, ledger, max_reconnects=0, on_fatal=on_fatal)

        w.start()
        try:
            assert wait_for(lambda: w.state is WatcherState.CONSUMING)
        finally:
            w.stop()

        on_fatal.assert_not_called()
        assert len(store.subscriptions) == 7
