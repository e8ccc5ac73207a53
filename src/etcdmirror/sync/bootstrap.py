"""Bootstrap loader: materialize every key under the prefix at startup."""

from __future__ import annotations

import logging

from etcdmirror.core.keys import InvalidKey, in_prefix
from etcdmirror.core.ledger import ChangeLedger
from etcdmirror.core.mirror import FilesystemError, FilesystemMirror
from etcdmirror.store.base import KeyValueStore, StoreError
from etcdmirror.sync.report import BootstrapReport, ItemResult

log = logging.getLogger(__name__)


class BootstrapLoader:
    """One-shot download of the prefix into the local mirror, seeding the ledger."""

    def __init__(
        self,
        store: KeyValueStore,
        mirror: FilesystemMirror,
        ledger: ChangeLedger,
        prefix: str = "",
    ) -> None:
        self.store = store
        self.mirror = mirror
        self.ledger = ledger
        self.prefix = prefix

    def run(self) -> BootstrapReport:
        """Fetch and write every entry.

        A failed fetch is logged and leaves the mirror empty: startup goes
        on and the watcher still receives later changes.
        """
        report = BootstrapReport()
        try:
            result = self.store.get_prefix(self.prefix)
        except StoreError as e:
            log.error("Bootstrap fetch of %r failed, starting with an empty mirror: %s", self.prefix, e)
            report.error = str(e)
            return report

        report.revision = result.revision
        for entry in result.entries:
            if not in_prefix(entry.key, self.prefix):
                continue
            try:
                with self.ledger.locked():
                    mtime = self.mirror.write(entry.key, entry.value)
                    self.ledger.set(entry.key, mtime)
            except (InvalidKey, FilesystemError) as e:
                log.error("Cannot save key %s: %s", entry.key, e)
                report.failures.append(ItemResult.failed(entry.key, "write", e))
                continue
            log.info("Read key %s", entry.key)
            report.written.append(entry.key)

        log.info(
            "Bootstrap done: %d keys written, %d failed (revision %d)",
            len(report.written), len(report.failures), report.revision,
        )
        return report
