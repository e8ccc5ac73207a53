"""Filesystem mirror: apply store entries to disk and read files for upload."""

from __future__ import annotations

import contextlib
import logging
import os
import platform
import tempfile
from pathlib import Path

from etcdmirror.core.keys import key_to_path, path_to_key

log = logging.getLogger(__name__)

FILE_MODE = 0o644

TEMP_PREFIX = ".tmp_"

_IS_WINDOWS = platform.system() == "Windows"


class FilesystemError(Exception):
    """Base error for local filesystem operations."""


class PathConflict(FilesystemError):
    """A path component exists but is not a directory where one is needed."""


class ReadError(FilesystemError):
    """A file could not be read."""


class StatError(FilesystemError):
    """A file's metadata could not be read."""


class WriteError(FilesystemError):
    """A file could not be written or removed."""


class NotFound(FilesystemError):
    """The file to remove is already gone."""


class FilesystemMirror:
    """Materialize keys as files under ``root``.

    Relative paths passed to ``write`` and ``remove`` are store keys
    ("/"-separated); ``read`` and ``stat_mtime`` take absolute paths.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def resolve(self, relative_path: str) -> Path:
        return key_to_path(relative_path, self.root)

    def relative(self, absolute_path: Path) -> str:
        return path_to_key(absolute_path, self.root)

    def write(self, relative_path: str, content: bytes) -> int:
        """Write content and return the file's mtime (ns) as read back from disk."""
        path = self.resolve(relative_path)
        return write_file(path, content)

    def remove(self, relative_path: str) -> None:
        """Delete the file. Raises NotFound if it is already absent."""
        path = self.resolve(relative_path)
        try:
            path.unlink()
        except FileNotFoundError as e:
            raise NotFound(f"{path} does not exist") from e
        except OSError as e:
            raise WriteError(f"cannot delete {path}: {e}") from e
        log.debug("Removed %s", path)

    def read(self, absolute_path: Path) -> bytes:
        try:
            return Path(absolute_path).read_bytes()
        except OSError as e:
            raise ReadError(f"cannot read {absolute_path}: {e}") from e

    def stat_mtime(self, absolute_path: Path) -> int:
        try:
            return os.stat(absolute_path).st_mtime_ns
        except OSError as e:
            raise StatError(f"cannot stat {absolute_path}: {e}") from e


def ensure_parent_dirs(path: Path) -> None:
    """Create every ancestor directory of path.

    An existing directory is fine; an existing non-directory raises PathConflict.
    """
    parent = path.parent
    try:
        parent.mkdir(parents=True, exist_ok=True)
    except (FileExistsError, NotADirectoryError) as e:
        raise PathConflict(f"path exists but is not a directory: {e.filename or parent}") from e
    except OSError as e:
        raise WriteError(f"cannot create folder {parent}: {e}") from e


def write_file(path: Path, content: bytes) -> int:
    """Write bytes via temp file + rename and return the resulting mtime in ns."""
    ensure_parent_dirs(path)
    if path.is_dir():
        raise PathConflict(f"{path} is a directory")

    # Temp file in the same directory so the rename stays on one filesystem
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=TEMP_PREFIX)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(content)
        if not _IS_WINDOWS:
            os.chmod(tmp_path, FILE_MODE)
        os.replace(tmp_path, path)
    except OSError as e:
        with contextlib.suppress(OSError):
            os.unlink(tmp_path)
        raise WriteError(f"cannot write {path}: {e}") from e

    try:
        return os.stat(path).st_mtime_ns
    except OSError as e:
        raise StatError(f"cannot stat {path}: {e}") from e
