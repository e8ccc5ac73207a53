"""Manual overrides: single-shot upload/download driven by explicit key/path pairs."""

from __future__ import annotations

import logging
from pathlib import Path

from etcdmirror.core.keys import InvalidKey, key_to_path, path_to_key
from etcdmirror.core.ledger import ChangeLedger
from etcdmirror.core.mirror import FilesystemMirror, ReadError, write_file
from etcdmirror.store.base import KeyValueStore

log = logging.getLogger(__name__)


class ManualSync:
    """Operator-triggered transfers, used by the HTTP API and the CLI.

    Errors propagate to the caller, which reports them.
    """

    def __init__(
        self,
        store: KeyValueStore,
        mirror: FilesystemMirror | None = None,
        ledger: ChangeLedger | None = None,
    ) -> None:
        self.store = store
        self.mirror = mirror
        self.ledger = ledger

    def manual_upload(self, key: str, path: str | Path) -> None:
        """Read ``path`` and store it under ``key``.

        The ledger is left alone: the next poll may upload the same
        content again, which is harmless.
        """
        if not key:
            raise InvalidKey("empty key")
        try:
            content = Path(path).read_bytes()
        except OSError as e:
            log.error("Error loading file %s: %s", path, e)
            raise ReadError(f"cannot read {path}: {e}") from e

        self.store.put(key, content)
        log.info("Manual upload: %s -> %s (%d bytes)", path, key, len(content))

    def manual_download(self, key: str, path: str | Path) -> list[str]:
        """Fetch every key starting with ``key`` and write it under ``path``.

        Each entry lands at ``path / entry.key``. Files that end up inside
        the synchronized root are recorded in the ledger so the poller
        does not upload them back.
        """
        target = Path(path)
        result = self.store.get_prefix(key)

        written: list[str] = []
        for entry in result.entries:
            file_path = key_to_path(entry.key, target)
            ledger_key = self._ledger_key(file_path)
            if ledger_key is not None and self.ledger is not None:
                with self.ledger.locked():
                    mtime = write_file(file_path, entry.value)
                    self.ledger.set(ledger_key, mtime)
            else:
                write_file(file_path, entry.value)
            log.info("Manual download: %s -> %s", entry.key, file_path)
            written.append(entry.key)
        return written

    def _ledger_key(self, file_path: Path) -> str | None:
        if self.mirror is None:
            return None
        try:
            return path_to_key(file_path.resolve(), self.mirror.root.resolve())
        except InvalidKey:
            return None
