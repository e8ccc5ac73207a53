"""etcd v3 adapter over the JSON gRPC gateway (/v3/kv/range, /v3/kv/put, /v3/watch)."""

from __future__ import annotations

import base64
import json
import logging
import threading
from collections.abc import Iterator

import httpx

from etcdmirror.core.keys import prefix_range_end
from etcdmirror.store.base import (
    ChangeEvent,
    Entry,
    EventType,
    RangeResult,
    StoreRejected,
    StoreUnavailable,
    retry_with_backoff,
)

log = logging.getLogger(__name__)

# Gateway statuses that mean "try another member / try again later"
_UNAVAILABLE_STATUSES = {502, 503, 504}


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _unb64(data: str | None) -> bytes:
    if not data:
        return b""
    return base64.b64decode(data)


def _prefix_request(prefix: str) -> dict:
    raw = prefix.encode("utf-8")
    return {
        "key": _b64(raw or b"\0"),
        "range_end": _b64(prefix_range_end(raw)),
    }


def _error_message(response: httpx.Response) -> str:
    """Extract the gateway's error text from a failed response."""
    try:
        data = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(data, dict):
        return str(data.get("message") or data.get("error") or data)
    return str(data)


def _decode_key(raw: bytes) -> str | None:
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        log.warning("Skipping non-UTF-8 key %r", raw)
        return None


class EtcdStore:
    """Wrapper around the etcd v3 HTTP gateway.

    Endpoints are tried in order until one answers. Range and put are
    retried with exponential backoff while the cluster is unreachable;
    refused requests are never retried.
    """

    def __init__(
        self,
        config: dict | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        config = config or {}
        endpoints = config.get("endpoints") or ["http://127.0.0.1:2379"]
        self._endpoints = [e.rstrip("/") for e in endpoints]
        self._dial_timeout = float(config.get("dial_timeout", 5.0))
        self._request_timeout = float(config.get("request_timeout", 10.0))
        self._max_retries = int(config.get("max_retries", 3))
        self._initial_backoff = float(config.get("initial_backoff", 0.5))
        self._max_backoff = float(config.get("max_backoff", 10.0))
        self._transport = transport
        self._client = httpx.Client(
            timeout=httpx.Timeout(self._request_timeout, connect=self._dial_timeout),
            transport=transport,
        )

    @property
    def endpoints(self) -> list[str]:
        return list(self._endpoints)

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self) -> EtcdStore:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    # --- KeyValueStore ---

    def get_prefix(self, prefix: str) -> RangeResult:
        data = self._call("/v3/kv/range", _prefix_request(prefix))

        revision = int(data.get("header", {}).get("revision", 0))
        entries: list[Entry] = []
        for kv in data.get("kvs", []):
            key = _decode_key(_unb64(kv.get("key")))
            if key is None:
                continue
            entries.append(Entry(
                key=key,
                value=_unb64(kv.get("value")),
                mod_revision=int(kv.get("mod_revision", 0)),
            ))

        log.debug("Range %r returned %d keys at revision %d", prefix, len(entries), revision)
        return RangeResult(entries=entries, revision=revision)

    def put(self, key: str, value: bytes) -> None:
        self._call(
            "/v3/kv/put",
            {"key": _b64(key.encode("utf-8")), "value": _b64(value)},
        )
        log.debug("Put %s (%d bytes)", key, len(value))

    def subscribe(self, prefix: str, start_revision: int | None = None) -> EtcdWatchStream:
        return EtcdWatchStream(self, prefix, start_revision)

    # --- HTTP plumbing ---

    def _call(self, path: str, payload: dict) -> dict:
        return retry_with_backoff(
            lambda: self._post(path, payload),
            max_retries=self._max_retries,
            initial_backoff=self._initial_backoff,
            max_backoff=self._max_backoff,
        )

    def _post(self, path: str, payload: dict) -> dict:
        """POST to the first endpoint that answers."""
        last_error: Exception | None = None
        for endpoint in self._endpoints:
            try:
                resp = self._client.post(f"{endpoint}{path}", json=payload)
                resp.raise_for_status()
                return resp.json()
            except (httpx.TransportError, OSError) as e:
                log.debug("etcd endpoint %s failed: %s", endpoint, e)
                last_error = e
            except httpx.HTTPStatusError as e:
                if e.response.status_code in _UNAVAILABLE_STATUSES:
                    last_error = e
                    continue
                raise StoreRejected(
                    f"etcd rejected {path}: {_error_message(e.response)}"
                ) from e
            except ValueError as e:
                raise StoreRejected(f"etcd returned invalid JSON for {path}: {e}") from e

        raise StoreUnavailable(
            f"etcd not reachable at {', '.join(self._endpoints)}: {last_error}"
        ) from last_error


class EtcdWatchStream:
    """A single /v3/watch subscription, iterated line by line.

    The gateway sends one JSON object per line. Iteration ends when the
    connection drops, the server cancels the watch, or ``close()`` is
    called. ``last_revision`` tracks the newest event seen and
    ``compact_revision`` is set when the requested start was compacted.
    ``created`` turns true once etcd confirms the subscription and
    ``canceled`` once etcd cancels it.
    """

    def __init__(self, store: EtcdStore, prefix: str, start_revision: int | None = None) -> None:
        self._store = store
        self.prefix = prefix
        self.start_revision = start_revision
        self.last_revision: int | None = None
        self.compact_revision: int | None = None
        self.created = False
        self.canceled = False
        self._client: httpx.Client | None = None
        self._response: httpx.Response | None = None
        self._closed = threading.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def close(self) -> None:
        """Cancel the subscription; safe to call from another thread."""
        self._closed.set()
        response, client = self._response, self._client
        if response is not None:
            try:
                response.close()
            except Exception:
                log.debug("Error closing watch response", exc_info=True)
        if client is not None:
            try:
                client.close()
            except Exception:
                log.debug("Error closing watch client", exc_info=True)

    def _create_request(self) -> dict:
        create = _prefix_request(self.prefix)
        if self.start_revision:
            create["start_revision"] = self.start_revision
        return {"create_request": create}

    def _open(self) -> httpx.Response:
        # No read timeout: the watch stays open for the process lifetime
        client = httpx.Client(
            timeout=httpx.Timeout(None, connect=self._store._dial_timeout),
            transport=self._store._transport,
        )
        self._client = client

        last_error: Exception | None = None
        for endpoint in self._store.endpoints:
            if self.closed:
                break
            request = client.build_request(
                "POST", f"{endpoint}/v3/watch", json=self._create_request(),
            )
            try:
                response = client.send(request, stream=True)
            except (httpx.TransportError, OSError) as e:
                log.debug("etcd watch endpoint %s failed: %s", endpoint, e)
                last_error = e
                continue

            if response.status_code != 200:
                response.read()
                response.close()
                if response.status_code in _UNAVAILABLE_STATUSES:
                    last_error = StoreUnavailable(f"HTTP {response.status_code}")
                    continue
                client.close()
                raise StoreRejected(f"etcd rejected watch: {_error_message(response)}")

            self._response = response
            return response

        client.close()
        raise StoreUnavailable(
            f"etcd watch not reachable at {', '.join(self._store.endpoints)}: {last_error}"
        ) from last_error

    def __iter__(self) -> Iterator[ChangeEvent]:
        if self.closed:
            return
        response = self._open()
        log.info("Watching prefix %r (start revision %s)", self.prefix, self.start_revision)
        try:
            for line in response.iter_lines():
                if not line.strip():
                    continue
                events, stop = self._parse(line)
                yield from events
                if stop:
                    return
        except (httpx.TransportError, httpx.StreamError, OSError) as e:
            if not self.closed:
                log.warning("Watch connection lost: %s", e)
        finally:
            self.close()

    def _parse(self, line: str) -> tuple[list[ChangeEvent], bool]:
        """Decode one gateway message into events; the flag means the watch ended."""
        try:
            message = json.loads(line)
        except ValueError:
            log.warning("Ignoring malformed watch message: %.200s", line)
            return [], False

        if "error" in message:
            log.warning("Watch error from etcd: %s", message["error"])
            return [], True

        result = message.get("result", {})
        if result.get("created"):
            self.created = True
        compact = int(result.get("compact_revision", 0) or 0)
        if compact:
            self.compact_revision = compact
        if result.get("canceled"):
            self.canceled = True
            log.warning(
                "Watch canceled by etcd: %s",
                result.get("cancel_reason") or (f"compacted at {compact}" if compact else "no reason"),
            )
            return [], True

        events = []
        for ev in result.get("events", []):
            kv = ev.get("kv", {})
            key = _decode_key(_unb64(kv.get("key")))
            if key is None:
                continue
            mod_revision = int(kv.get("mod_revision", 0))
            # PUT is the proto default and is omitted from the JSON
            event_type = EventType.DELETE if ev.get("type") == "DELETE" else EventType.PUT
            events.append(ChangeEvent(
                type=event_type,
                key=key,
                value=_unb64(kv.get("value")) if event_type is EventType.PUT else b"",
                mod_revision=mod_revision,
            ))
            if mod_revision:
                self.last_revision = max(self.last_revision or 0, mod_revision)
        return events, False
