"""KeyValueStore Protocol, types and errors."""

from __future__ import annotations

import enum
import logging
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from typing import Protocol, TypeVar, runtime_checkable

log = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 3
DEFAULT_INITIAL_BACKOFF = 0.5  # seconds
DEFAULT_MAX_BACKOFF = 10.0  # seconds
DEFAULT_BACKOFF_MULTIPLIER = 2.0


class StoreError(Exception):
    """Base error for key-value store operations."""


class StoreUnavailable(StoreError):
    """The store could not be reached (connection refused, timeout)."""


class StoreRejected(StoreError):
    """The request reached the store but was refused."""


@dataclass
class Entry:
    """A key and its opaque value as stored remotely."""

    key: str
    value: bytes
    mod_revision: int = 0


@dataclass
class RangeResult:
    """Entries returned by a prefix read, plus the store revision it observed."""

    entries: list[Entry] = field(default_factory=list)
    revision: int = 0


class EventType(str, enum.Enum):
    PUT = "PUT"
    DELETE = "DELETE"


@dataclass
class ChangeEvent:
    """A change delivered by a watch subscription."""

    type: EventType
    key: str
    value: bytes = b""
    mod_revision: int = 0


@runtime_checkable
class WatchStream(Protocol):
    """An unbounded iterator of change events that can be closed from another thread.

    Iteration ends when the connection drops or ``close()`` is called.
    """

    def __iter__(self) -> Iterator[ChangeEvent]:
        ...

    def close(self) -> None:
        ...


@runtime_checkable
class KeyValueStore(Protocol):
    """Contract for the remote store the directory is mirrored to."""

    def get_prefix(self, prefix: str) -> RangeResult:
        """Return every entry whose key starts with prefix.

        Raises:
            StoreUnavailable: Connection or timeout error.
            StoreRejected: The store refused the request.
        """
        ...

    def put(self, key: str, value: bytes) -> None:
        """Store value under key.

        Raises:
            StoreUnavailable: Connection or timeout error.
            StoreRejected: The store refused the request (e.g. oversized value).
        """
        ...

    def subscribe(self, prefix: str, start_revision: int | None = None) -> WatchStream:
        """Open a watch on every key starting with prefix."""
        ...


def retry_with_backoff(
    func: Callable[[], T],
    max_retries: int = DEFAULT_MAX_RETRIES,
    initial_backoff: float = DEFAULT_INITIAL_BACKOFF,
    max_backoff: float = DEFAULT_MAX_BACKOFF,
    backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER,
    retryable: tuple[type[Exception], ...] = (StoreUnavailable,),
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call func, retrying retryable errors with exponential backoff.

    The last error is re-raised once max_retries retries are spent.
    """
    backoff = initial_backoff
    attempt = 0
    while True:
        try:
            return func()
        except retryable as e:
            if attempt >= max_retries:
                raise
            attempt += 1
            log.warning(
                "Attempt %d/%d failed: %s. Retrying in %.1fs",
                attempt, max_retries + 1, e, backoff,
            )
            sleep(backoff)
            backoff = min(backoff * backoff_multiplier, max_backoff)
