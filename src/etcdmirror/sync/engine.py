"""SyncEngine — wires the store, ledger and mirror to the sync components.

Startup order:
  1. Bootstrap loader writes every key under the prefix and seeds the ledger.
  2. Remote watcher subscribes from the revision bootstrap observed.
  3. Local poller scans now and then on every interval.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from pathlib import Path

from etcdmirror import __version__
from etcdmirror.core.ledger import ChangeLedger
from etcdmirror.core.mirror import FilesystemMirror
from etcdmirror.store.base import KeyValueStore
from etcdmirror.sync.bootstrap import BootstrapLoader
from etcdmirror.sync.manual import ManualSync
from etcdmirror.sync.poller import LocalPoller
from etcdmirror.sync.report import BootstrapReport
from etcdmirror.sync.watcher import RemoteWatcher

log = logging.getLogger(__name__)


class SyncEngine:
    """Keep a local folder and an etcd prefix consistent in both directions."""

    def __init__(
        self,
        config: dict,
        store: KeyValueStore | None = None,
        on_fatal: Callable[[str], None] | None = None,
    ) -> None:
        folder = config.get("folder")
        if not folder:
            raise ValueError("No folder configured. Pass --folder or set 'folder' in config.yaml")

        self.config = config
        self.root = Path(folder)
        self.prefix = config.get("key") or ""
        self._on_fatal = on_fatal
        self.fatal_error = ""
        self.fatal = threading.Event()

        if store is None:
            from etcdmirror.store.etcd import EtcdStore

            store = EtcdStore(config.get("etcd", {}))
        self.store = store

        self.ledger = ChangeLedger()
        self.mirror = FilesystemMirror(self.root)

        watch_cfg = config.get("watch", {})
        poll_cfg = config.get("poll", {})

        self.bootstrap = BootstrapLoader(self.store, self.mirror, self.ledger, self.prefix)
        self.watcher = RemoteWatcher(
            self.store,
            self.mirror,
            self.ledger,
            prefix=self.prefix,
            max_reconnects=watch_cfg.get("max_reconnects", 10),
            initial_backoff=watch_cfg.get("initial_backoff", 1.0),
            max_backoff=watch_cfg.get("max_backoff", 30.0),
            on_fatal=self._handle_fatal,
        )
        self.poller = LocalPoller(
            self.store,
            self.mirror,
            self.ledger,
            prefix=self.prefix,
            interval_seconds=poll_cfg.get("interval_seconds", 15),
            ignore_patterns=poll_cfg.get("ignore_patterns"),
        )
        self.manual = ManualSync(self.store, self.mirror, self.ledger)
        self.bootstrap_report: BootstrapReport | None = None

    def _handle_fatal(self, reason: str) -> None:
        self.fatal_error = reason
        self.fatal.set()
        if self._on_fatal is not None:
            self._on_fatal(reason)

    def start(self) -> BootstrapReport:
        """Bootstrap, then start the watcher and the poller."""
        log.info("Sync engine starting (folder=%s, key=%r)", self.root, self.prefix)
        self.root.mkdir(parents=True, exist_ok=True)

        report = self.bootstrap.run()
        self.bootstrap_report = report

        start_revision = report.revision + 1 if report.revision else None
        self.watcher.start(start_revision)
        self.poller.start()
        return report

    def stop(self) -> None:
        """Stop the watcher and the poller."""
        self.watcher.stop()
        self.poller.stop()
        close = getattr(self.store, "close", None)
        if callable(close):
            close()
        log.info("Sync engine stopped")

    def status(self) -> dict:
        last = self.poller.last_report
        return {
            "version": __version__,
            "folder": str(self.root),
            "key": self.prefix,
            "watcher": {
                "state": self.watcher.state.value,
                "applied": self.watcher.applied,
                "failed": self.watcher.failed,
                "last_error": self.watcher.last_error,
                "next_revision": self.watcher.next_revision,
            },
            "poller": {
                "running": self.poller.is_running,
                "interval_seconds": self.poller.interval,
                "last_cycle": last.to_dict() if last else None,
            },
            "ledger_size": len(self.ledger),
            "fatal_error": self.fatal_error or None,
        }
