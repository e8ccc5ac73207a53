"""Remote watcher — applies etcd change events to the local mirror."""

from __future__ import annotations

import enum
import logging
import threading
import time
from collections.abc import Callable

from etcdmirror.core.keys import InvalidKey, in_prefix
from etcdmirror.core.ledger import ChangeLedger
from etcdmirror.core.mirror import FilesystemError, FilesystemMirror, NotFound
from etcdmirror.store.base import ChangeEvent, EventType, KeyValueStore, StoreError, WatchStream
from etcdmirror.sync.report import ItemResult

log = logging.getLogger(__name__)

_DEFAULT_MAX_RECONNECTS = 10
_DEFAULT_INITIAL_BACKOFF = 1.0
_DEFAULT_MAX_BACKOFF = 30.0


class WatcherState(str, enum.Enum):
    IDLE = "idle"
    SUBSCRIBING = "subscribing"
    CONSUMING = "consuming"
    TERMINATED = "terminated"
    FAULTED = "faulted"


class RemoteWatcher:
    """Consume a prefix watch and mirror every event to disk.

    Runs in a background thread. A stream that ends while the watcher is
    not being stopped is a fault: the watcher reconnects with exponential
    backoff, resuming after the last applied revision. Once
    ``max_reconnects`` consecutive attempts have failed it stays FAULTED
    and calls ``on_fatal(reason)`` so the process can exit instead of
    looking healthy while remote changes stop arriving. A subscription
    that etcd confirmed, or that stayed open for the initial backoff,
    resets the count when it ends.
    """

    def __init__(
        self,
        store: KeyValueStore,
        mirror: FilesystemMirror,
        ledger: ChangeLedger,
        prefix: str = "",
        max_reconnects: int = _DEFAULT_MAX_RECONNECTS,
        initial_backoff: float = _DEFAULT_INITIAL_BACKOFF,
        max_backoff: float = _DEFAULT_MAX_BACKOFF,
        on_fatal: Callable[[str], None] | None = None,
    ) -> None:
        self.store = store
        self.mirror = mirror
        self.ledger = ledger
        self.prefix = prefix
        self.max_reconnects = max_reconnects
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self._on_fatal = on_fatal

        self.applied = 0
        self.failed = 0
        self.last_error = ""
        self.fatal_error = ""
        self._next_revision: int | None = None
        self._state = WatcherState.IDLE
        self._state_lock = threading.Lock()
        self._stop = threading.Event()
        self._stream: WatchStream | None = None
        self._thread: threading.Thread | None = None

    @property
    def state(self) -> WatcherState:
        with self._state_lock:
            return self._state

    def _set_state(self, state: WatcherState) -> None:
        with self._state_lock:
            self._state = state
        log.debug("Remote watcher state: %s", state.value)

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def next_revision(self) -> int | None:
        """Revision the next subscription starts from (None = current)."""
        return self._next_revision

    # --- Event handling ---

    def apply_event(self, event: ChangeEvent) -> ItemResult:
        """Apply one change event to the mirror and the ledger."""
        log.info("etcd key changed: %s %s", event.type.value, event.key)

        if not in_prefix(event.key, self.prefix):
            log.debug("Ignoring key outside prefix %r: %s", self.prefix, event.key)
            return ItemResult(key=event.key, action="skip")

        if event.type is EventType.PUT:
            result = self._apply_put(event)
        else:
            result = self._apply_delete(event)

        if event.mod_revision:
            self._next_revision = max(self._next_revision or 0, event.mod_revision + 1)
        if result.ok:
            self.applied += 1
        else:
            self.failed += 1
            self.last_error = result.error
        return result

    def _apply_put(self, event: ChangeEvent) -> ItemResult:
        # Record the mtime of our own write so the poller sees no change
        try:
            with self.ledger.locked():
                mtime = self.mirror.write(event.key, event.value)
                self.ledger.set(event.key, mtime)
        except (InvalidKey, FilesystemError) as e:
            log.error("Cannot save file for key %s: %s", event.key, e)
            return ItemResult.failed(event.key, "write", e)
        return ItemResult(key=event.key, action="write")

    def _apply_delete(self, event: ChangeEvent) -> ItemResult:
        try:
            with self.ledger.locked():
                try:
                    self.mirror.remove(event.key)
                except NotFound:
                    log.debug("File for key %s already gone", event.key)
                self.ledger.discard(event.key)
        except (InvalidKey, FilesystemError) as e:
            log.error("Cannot delete file for key %s: %s", event.key, e)
            return ItemResult.failed(event.key, "delete", e)
        return ItemResult(key=event.key, action="delete")

    # --- Lifecycle ---

    def start(self, start_revision: int | None = None) -> None:
        """Start consuming in a background thread."""
        if self.is_running:
            return
        self._next_revision = start_revision
        self._stop.clear()
        self.fatal_error = ""
        self._thread = threading.Thread(target=self._run, name="remote-watcher", daemon=True)
        self._thread.start()
        log.info("Remote watcher started (prefix=%r)", self.prefix)

    def stop(self, timeout: float = 5.0) -> None:
        """Cancel the subscription and wait for the thread to finish."""
        self._stop.set()
        stream = self._stream
        if stream is not None:
            stream.close()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        if self.state is not WatcherState.FAULTED:
            self._set_state(WatcherState.TERMINATED)
        log.info("Remote watcher stopped")

    def _run(self) -> None:
        failures = 0
        backoff = self.initial_backoff

        while not self._stop.is_set():
            self._set_state(WatcherState.SUBSCRIBING)
            try:
                stream = self.store.subscribe(self.prefix, self._next_revision)
                self._stream = stream
                if self._stop.is_set():
                    stream.close()
                    break
                self._set_state(WatcherState.CONSUMING)
                opened = time.monotonic()
                for event in stream:
                    try:
                        self.apply_event(event)
                    except Exception:
                        log.warning("Error applying event for %s", event.key, exc_info=True)
                    failures = 0
                    backoff = self.initial_backoff
                if self._was_established(stream, time.monotonic() - opened):
                    failures = 0
                    backoff = self.initial_backoff
                self._resume_after_compaction(stream)
                reason = "watch stream ended"
            except StoreError as e:
                reason = f"watch subscription failed: {e}"
            except Exception as e:
                log.error("Unexpected watch failure", exc_info=True)
                reason = f"watch failed: {e}"
            finally:
                self._stream = None

            if self._stop.is_set():
                break

            failures += 1
            self._set_state(WatcherState.FAULTED)
            if self.max_reconnects and failures > self.max_reconnects:
                self.fatal_error = f"{reason} (gave up after {self.max_reconnects} reconnects)"
                log.critical("Remote watcher faulted: %s", self.fatal_error)
                if self._on_fatal is not None:
                    self._on_fatal(self.fatal_error)
                return

            log.error("%s; reconnecting in %.1fs (attempt %d)", reason, backoff, failures)
            if self._stop.wait(backoff):
                break
            backoff = min(backoff * 2, self.max_backoff)

        self._set_state(WatcherState.TERMINATED)

    def _was_established(self, stream: WatchStream, lifetime: float) -> bool:
        """A subscription etcd confirmed, or one that stayed up a while, was healthy."""
        if getattr(stream, "canceled", False):
            return False
        return bool(getattr(stream, "created", False)) or lifetime >= self.initial_backoff

    def _resume_after_compaction(self, stream: WatchStream) -> None:
        compact = getattr(stream, "compact_revision", None)
        if compact and compact > (self._next_revision or 0):
            log.warning(
                "Revision %s was compacted; resuming at %d, earlier changes are lost",
                self._next_revision, compact,
            )
            self._next_revision = compact
