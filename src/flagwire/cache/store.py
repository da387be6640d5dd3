"""Disk-backed store for HTTP responses.

Uses :mod:`diskcache` to persist responses on the filesystem. Unlike a
plain TTL cache the store never expires entries itself: freshness is
decided by the caller from the entry's ``Date`` and ``Cache-Control``
headers, which is why every entry keeps its response headers.

Only GET requests are cacheable; lookups and writes for any other method
are ignored. Cache keys are SHA-256 hashes of
``METHOD|URL|sorted(lowercased headers)`` so header ordering and case never
split one request into two entries.

See Also:
    :class:`~flagwire.models.CacheConfig` -- holds the store handle and the
    policy flags that decide when it is read.
"""

from __future__ import annotations

import hashlib
import json
import threading
import time
from pathlib import Path
from typing import Any, Mapping, Optional, Protocol

import diskcache
from pydantic import BaseModel, Field

from flagwire.dates import parse_http_date


class CacheableRequest(Protocol):
    """Anything with the identity fields the store keys on."""

    method: str
    url: str
    headers: Mapping[str, str]


class CachedResponse(BaseModel):
    """A stored response: status, headers and raw body bytes."""

    status_code: int = 200
    headers: dict[str, str] = Field(default_factory=dict)
    content: bytes = b""
    stored_at: float = Field(default_factory=time.time)

    def header(self, name: str) -> Optional[str]:
        """Case-insensitive header lookup."""
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None

    def max_age(self) -> Optional[int]:
        """Return the ``max-age`` directive of ``Cache-Control``, if any."""
        cache_control = self.header("Cache-Control")
        if not cache_control:
            return None
        for directive in cache_control.split(","):
            name, _, value = directive.strip().partition("=")
            if name.lower() == "max-age":
                try:
                    return int(value.strip().strip('"'))
                except ValueError:
                    return None
        return None

    def age_seconds(self, now: float) -> float:
        """Seconds since the response was generated.

        Uses the ``Date`` header when it parses, falling back to the time the
        entry was written.
        """
        date = parse_http_date(self.header("Date"))
        origin = date.timestamp() if date is not None else self.stored_at
        return now - origin


class ResponseStore:
    """Disk-backed response cache keyed by request identity.

    Args:
        directory: Directory holding the :class:`diskcache.Cache` files.

    Example::

        store = ResponseStore("/tmp/flagwire-cache")
        store.store(request, CachedResponse(headers={"Date": "..."}, content=b"[]"))
        entry = store.lookup(request)
    """

    def __init__(self, directory: str | Path) -> None:
        self._directory = Path(directory)
        self._cache = diskcache.Cache(str(self._directory))

    @property
    def directory(self) -> Path:
        return self._directory

    def lookup(self, request: CacheableRequest) -> Optional[CachedResponse]:
        """Return the stored response for *request*, or ``None``."""
        if request.method.upper() != "GET":
            return None
        return self._cache.get(self._make_key(request))

    def store(self, request: CacheableRequest, response: CachedResponse) -> None:
        """Store *response* for *request*, replacing any previous entry.

        Non-GET requests are silently skipped.
        """
        if request.method.upper() != "GET":
            return
        self._cache.set(self._make_key(request), response)

    def add(self, request: CacheableRequest, response: CachedResponse) -> bool:
        """Store *response* only if no entry exists yet.

        Returns:
            ``True`` if the entry was written, ``False`` if one already
            existed or the request is not cacheable.
        """
        if request.method.upper() != "GET":
            return False
        return bool(self._cache.add(self._make_key(request), response))

    def evict(self, request: CacheableRequest) -> None:
        """Remove the entry for *request* if present."""
        self._cache.delete(self._make_key(request))

    def clear(self) -> None:
        """Remove all entries."""
        self._cache.clear()

    def stats(self) -> dict[str, Any]:
        """Return the number of entries, total size and directory."""
        return {
            "size": len(self._cache),
            "volume_bytes": self._cache.volume(),
            "directory": str(self._directory),
        }

    def close(self) -> None:
        """Close the underlying :class:`diskcache.Cache`."""
        self._cache.close()

    def _make_key(self, request: CacheableRequest) -> str:
        headers = sorted((k.lower(), v) for k, v in dict(request.headers).items())
        raw = "|".join([request.method.upper(), str(request.url), json.dumps(headers)])
        return hashlib.sha256(raw.encode()).hexdigest()


_shared_store: Optional[ResponseStore] = None
_shared_lock = threading.Lock()


def get_shared_store() -> ResponseStore:
    """Return the process-wide store, creating it under the XDG cache dir on first use."""
    global _shared_store
    with _shared_lock:
        if _shared_store is None:
            from flagwire.config import get_cache_dir

            _shared_store = ResponseStore(get_cache_dir() / "responses")
        return _shared_store


def reset_shared_store() -> None:
    """Close and forget the process-wide store.

    Primarily useful in test suites to ensure a clean state between tests.
    """
    global _shared_store
    with _shared_lock:
        if _shared_store is not None:
            _shared_store.close()
        _shared_store = None
