"""Local poller — periodically finds modified files and uploads them to etcd."""

from __future__ import annotations

import fnmatch
import logging
import os
import stat
import threading
import time
from datetime import datetime, timezone
from pathlib import Path

from etcdmirror.core.keys import InvalidKey, in_prefix
from etcdmirror.core.ledger import ChangeLedger
from etcdmirror.core.mirror import TEMP_PREFIX, FilesystemError, FilesystemMirror
from etcdmirror.store.base import KeyValueStore, StoreError
from etcdmirror.sync.report import CycleReport, ItemResult

log = logging.getLogger(__name__)

_DEFAULT_INTERVAL = 15.0

# The mirror's own temp files are always skipped
_DEFAULT_IGNORE = (f"{TEMP_PREFIX}*",)

_JOB_ID = "local-poll"


class LocalPoller:
    """Scan the synchronized root on a fixed interval and upload changed files.

    A file counts as changed when its mtime is strictly newer than the
    ledger's record. Every visited file is recorded. The first walk only
    takes a baseline of files nobody has recorded yet; after that, a file
    the ledger has never seen is a new local file and is uploaded. Files
    written by bootstrap or the watcher are already recorded, so they are
    never sent back.

    A failed upload is not retried until the file's mtime advances again.
    """

    def __init__(
        self,
        store: KeyValueStore,
        mirror: FilesystemMirror,
        ledger: ChangeLedger,
        prefix: str = "",
        interval_seconds: float = _DEFAULT_INTERVAL,
        ignore_patterns: list[str] | tuple[str, ...] | None = None,
    ) -> None:
        self.store = store
        self.mirror = mirror
        self.ledger = ledger
        self.prefix = prefix
        self.interval = interval_seconds
        patterns = set(ignore_patterns or _DEFAULT_IGNORE)
        patterns.add(f"{TEMP_PREFIX}*")
        self.ignore_patterns = patterns
        self.last_report: CycleReport | None = None
        self._scheduler = None
        self._cycle_lock = threading.Lock()
        self._baselined = False

    @property
    def root(self) -> Path:
        return self.mirror.root

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None

    def _should_ignore(self, name: str) -> bool:
        return any(fnmatch.fnmatch(name, pattern) for pattern in self.ignore_patterns)

    # --- One cycle ---

    def scan(self, report: CycleReport | None = None) -> list[str]:
        """Walk the root, update the ledger and return keys of modified files."""
        if report is None:
            report = CycleReport()

        def on_walk_error(err: OSError) -> None:
            log.error("Folder walk error at %s: %s", err.filename, err)
            report.failures.append(ItemResult.failed(str(err.filename or ""), "scan", err))

        first_walk = not self._baselined
        changed: list[str] = []
        for dirpath, dirnames, filenames in os.walk(self.root, onerror=on_walk_error):
            dirnames[:] = sorted(d for d in dirnames if not self._should_ignore(d))
            for name in sorted(filenames):
                if self._should_ignore(name):
                    continue
                path = Path(dirpath) / name
                key = self.mirror.relative(path)
                try:
                    with self.ledger.locked():
                        if not _is_regular_file(path):
                            continue
                        mtime = self.mirror.stat_mtime(path)
                        previous = self.ledger.get(key)
                        modified = self.ledger.observe(key, mtime)
                        if previous is None and not first_walk:
                            modified = True
                except FilesystemError as e:
                    log.warning("Cannot stat %s: %s", path, e)
                    report.failures.append(ItemResult.failed(key, "scan", e))
                    continue

                report.scanned += 1
                if modified:
                    log.info(
                        "Found modified local file %s (last %s, now %s)",
                        key, _fmt_ns(previous), _fmt_ns(mtime),
                    )
                    changed.append(key)

        self._baselined = True
        report.changed.extend(changed)
        return changed

    def upload(self, keys: list[str], report: CycleReport | None = None) -> list[ItemResult]:
        """Upload full content for each key; one failure never stops the rest."""
        if report is None:
            report = CycleReport()

        results: list[ItemResult] = []
        for key in keys:
            if not in_prefix(key, self.prefix):
                log.debug("Not uploading %s: outside prefix %r", key, self.prefix)
                report.skipped.append(key)
                continue
            try:
                content = self.mirror.read(self.mirror.resolve(key))
                self.store.put(key, content)
            except (InvalidKey, FilesystemError, StoreError) as e:
                log.error("Cannot upload %s: %s", key, e)
                result = ItemResult.failed(key, "upload", e)
                report.failures.append(result)
                results.append(result)
                continue
            log.info("Uploaded %s (%d bytes)", key, len(content))
            report.uploaded.append(key)
            results.append(ItemResult(key=key, action="upload"))
        return results

    def run_cycle(self) -> CycleReport:
        """Scan the root and upload every modified file."""
        with self._cycle_lock:
            start = time.monotonic()
            report = CycleReport()
            changed = self.scan(report)
            if changed:
                self.upload(changed, report)
            report.duration_seconds = time.monotonic() - start
            self.last_report = report

        if report.changed or report.failures:
            log.info("Poll cycle: %s", report.summary())
        else:
            log.debug("Poll cycle: %s", report.summary())
        return report

    def _run_cycle_job(self) -> None:
        try:
            self.run_cycle()
        except Exception:
            log.warning("Poll cycle failed", exc_info=True)

    # --- Scheduling ---

    def start(self) -> None:
        """Run a cycle now and then every ``interval`` seconds."""
        try:
            from apscheduler.schedulers.background import BackgroundScheduler
            from apscheduler.triggers.interval import IntervalTrigger
        except ImportError as e:
            raise RuntimeError(
                f"APScheduler not installed: {e}. Install with: pip install etcdmirror"
            ) from e

        if self._scheduler is not None:
            return

        scheduler = BackgroundScheduler()
        scheduler.add_job(
            self._run_cycle_job,
            trigger=IntervalTrigger(seconds=self.interval),
            id=_JOB_ID,
            name="local poll",
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now(timezone.utc),
        )
        scheduler.start()
        self._scheduler = scheduler
        log.info("Local poller started: %s every %ss", self.root, self.interval)

    def stop(self) -> None:
        """Stop the schedule, waiting for a running cycle to finish."""
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=True)
            self._scheduler = None
        log.info("Local poller stopped")


def _is_regular_file(path: Path) -> bool:
    try:
        return stat.S_ISREG(os.stat(path).st_mode)
    except OSError:
        return False


def _fmt_ns(mtime_ns: int | None) -> str:
    if mtime_ns is None:
        return "never"
    return datetime.fromtimestamp(mtime_ns / 1e9, tz=timezone.utc).isoformat()
