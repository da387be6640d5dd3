"""Disk-based response caching for flagwire.

This package provides :class:`ResponseStore`, the response cache consulted
by the :class:`~flagwire.orchestrator.Orchestrator` cache-policy algorithm
and written by transport sessions. Entries are stored with :mod:`diskcache`
and keyed by request identity (method, URL and request headers).

A single process-wide store is returned by :func:`get_shared_store` and is
the default ``store`` of every :class:`~flagwire.models.CacheConfig`.
"""

from flagwire.cache.store import (
    CachedResponse,
    ResponseStore,
    get_shared_store,
    reset_shared_store,
)

__all__ = ["CachedResponse", "ResponseStore", "get_shared_store", "reset_shared_store"]
