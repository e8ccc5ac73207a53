"""Mapping between store keys and paths under the synchronized root.

A key is the file's path relative to the root, always "/"-separated.
The configured root key doubles as the store prefix, so no prefix is
stripped: key "app/db.json" lives at <root>/app/db.json.
"""

from __future__ import annotations

from pathlib import Path, PurePosixPath


class InvalidKey(ValueError):
    """Raised when a key cannot be mapped to a path under the root (or back)."""


def key_to_path(key: str, root: Path) -> Path:
    """Return the local path for a key.

    Rejects keys that would escape the root: empty keys, absolute keys,
    and keys with empty, "." or ".." components.
    """
    if not key:
        raise InvalidKey("empty key")
    if key.startswith("/") or "\\" in key or "\0" in key:
        raise InvalidKey(f"key {key!r} is not a relative path")

    parts = key.split("/")
    for part in parts:
        if part in ("", ".", ".."):
            raise InvalidKey(f"key {key!r} has an invalid path component")

    return Path(root).joinpath(*parts)


def path_to_key(path: Path, root: Path) -> str:
    """Return the key for a path under root, "/"-separated."""
    try:
        rel = Path(path).relative_to(Path(root))
    except ValueError as e:
        raise InvalidKey(f"{path} is outside {root}") from e

    if not rel.parts:
        raise InvalidKey(f"{path} is the root itself")
    return PurePosixPath(*rel.parts).as_posix()


def in_prefix(key: str, prefix: str) -> bool:
    """Check whether a key falls under the configured root key."""
    return key.startswith(prefix)


def prefix_range_end(prefix: bytes) -> bytes:
    """Return the etcd range_end that selects every key starting with prefix.

    The empty prefix selects the whole key space, spelled b"\\0" in etcd.
    """
    end = bytearray(prefix)
    while end:
        if end[-1] < 0xFF:
            end[-1] += 1
            return bytes(end)
        end.pop()
    return b"\0"
