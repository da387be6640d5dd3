"""Transport sessions: httpx clients frozen around one set of network settings.

A :class:`Session` wraps an :class:`httpx.AsyncClient` built from a
:class:`~flagwire.models.SessionConfiguration`. The configuration is fixed
for the life of the session; to apply new settings the caller builds a new
session with :func:`create_session` and retires the old one with
:meth:`Session.finish_tasks_and_invalidate`, which lets tasks already
running on it finish before the client is closed.

Work is expressed as :class:`DataTask` objects. Each task carries an
identifier unique for the life of the process, holds a reference to the
session that created it, and reports progress to the session's
:class:`SessionDelegate` from the completion loop:

1. ``did_receive_response`` once the status and headers are known,
2. ``did_receive_data`` for every body chunk,
3. ``will_cache_response`` before a network response is written to the
   store (the delegate may rewrite it or veto it by returning ``None``),
4. ``did_complete`` exactly once, with ``None`` or the error.

The task's :class:`~flagwire.models.CachePolicy` decides whether the store
is read: see :meth:`Session._perform`.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import threading
import time
from datetime import datetime, timezone
from http.cookiejar import CookieJar, DefaultCookiePolicy
from typing import Any, Mapping, Optional, Protocol

import httpx

from flagwire.cache import CachedResponse
from flagwire.dates import format_http_date
from flagwire.exceptions import CacheMissError
from flagwire.loop import EventLoopThread
from flagwire.models import CacheConfig, CachePolicy, NetworkConfig, SessionConfiguration
from flagwire.router import ApiRequest

logger = logging.getLogger(__name__)

_task_ids = itertools.count(1)
_task_ids_lock = threading.Lock()


def _next_task_identifier() -> int:
    with _task_ids_lock:
        return next(_task_ids)


class SessionDelegate(Protocol):
    """Receives the events of every task run on a session."""

    def did_receive_response(
        self, task: DataTask, status_code: int, headers: Mapping[str, str]
    ) -> None: ...

    def did_receive_data(self, task: DataTask, data: bytes) -> None: ...

    def will_cache_response(
        self, task: DataTask, proposed: CachedResponse
    ) -> Optional[CachedResponse]: ...

    def did_complete(self, task: DataTask, error: Optional[BaseException]) -> None: ...


class DataTask:
    """One HTTP exchange on a specific session.

    Attributes:
        task_identifier: Process-unique identifier used to route events.
        session: The session the task was created on.
        request: The request being performed.
        status_code: Response status once known, else ``None``.
        from_cache: ``True`` when the body was served from the store.
    """

    def __init__(self, session: Session, task_identifier: int, request: ApiRequest) -> None:
        self.session = session
        self.task_identifier = task_identifier
        self.request = request
        self.status_code: Optional[int] = None
        self.from_cache = False

    def resume(self) -> None:
        """Start running the task on the session's loop."""
        self.session._start(self)

    def __repr__(self) -> str:
        return (
            f"DataTask(id={self.task_identifier}, {self.request.method} "
            f"{self.request.url}, policy={self.request.cache_policy.value})"
        )


def _build_client(
    configuration: SessionConfiguration,
    transport: Optional[httpx.AsyncBaseTransport],
) -> httpx.AsyncClient:
    limit = configuration.max_connections_per_host
    limits = httpx.Limits(
        max_connections=limit if limit > 0 else None,
        max_keepalive_connections=limit if limit > 0 else None,
    )
    kwargs: dict[str, Any] = {
        "headers": dict(configuration.additional_headers),
        "timeout": httpx.Timeout(configuration.request_timeout),
        "limits": limits,
        "follow_redirects": True,
    }
    if not configuration.should_set_cookies:
        # A jar whose policy accepts no domain neither stores nor sends cookies.
        kwargs["cookies"] = CookieJar(policy=DefaultCookiePolicy(allowed_domains=[]))
    if transport is not None:
        kwargs["transport"] = transport
    return httpx.AsyncClient(**kwargs)


class Session:
    """An httpx client plus the settings it was built with.

    Args:
        configuration: Frozen settings; exposed as :attr:`configuration`.
        delegate: Receiver of task events.
        loop: Completion loop the tasks run on.
        transport: Optional httpx transport (tests pass
            :class:`httpx.MockTransport`).
    """

    def __init__(
        self,
        configuration: SessionConfiguration,
        delegate: Optional[SessionDelegate],
        loop: EventLoopThread,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.configuration = configuration
        self._delegate = delegate
        self._loop = loop
        self._client = _build_client(configuration, transport)
        self._lock = threading.Lock()
        self._outstanding: set[int] = set()
        self._invalidated = False
        self._closed = False

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client

    @property
    def is_invalidated(self) -> bool:
        return self._invalidated

    @property
    def outstanding_tasks(self) -> int:
        with self._lock:
            return len(self._outstanding)

    # ------------------------------------------------------------------ #
    # Task lifecycle
    # ------------------------------------------------------------------ #

    def data_task(self, request: ApiRequest) -> DataTask:
        """Create a task for *request*; it does not run until resumed.

        Raises:
            RuntimeError: If the session has been invalidated.
        """
        with self._lock:
            if self._invalidated:
                raise RuntimeError("Session has been invalidated")
            task = DataTask(self, _next_task_identifier(), request)
            self._outstanding.add(task.task_identifier)
        return task

    def _start(self, task: DataTask) -> None:
        logger.debug("Resuming %r", task)
        self._loop.submit(self._run(task))

    def finish_tasks_and_invalidate(self) -> None:
        """Refuse new tasks and close the client once running ones finish."""
        with self._lock:
            self._invalidated = True
            idle = not self._outstanding
        if idle and self._loop.is_running:
            self._loop.submit(self._close())

    def invalidate_and_cancel(self) -> None:
        """Refuse new tasks and close the client immediately."""
        with self._lock:
            self._invalidated = True
        if self._loop.is_running:
            self._loop.submit(self._close())

    async def _close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        await self._client.aclose()

    async def _run(self, task: DataTask) -> None:
        error: Optional[BaseException] = None
        try:
            await asyncio.wait_for(
                self._perform(task), timeout=self.configuration.resource_timeout
            )
        except asyncio.TimeoutError:
            error = httpx.TimeoutException(
                f"Resource timeout of {self.configuration.resource_timeout}s exceeded"
            )
        except asyncio.CancelledError as exc:
            error = exc
        except Exception as exc:  # delivered to the delegate, never dropped
            error = exc
        finally:
            if error is not None:
                logger.debug("%r failed: %r", task, error)
            if self._delegate is not None:
                self._delegate.did_complete(task, error)
            await self._task_finished(task)
        if isinstance(error, asyncio.CancelledError):
            raise error

    async def _task_finished(self, task: DataTask) -> None:
        with self._lock:
            self._outstanding.discard(task.task_identifier)
            close = self._invalidated and not self._outstanding
        if close:
            await self._close()

    # ------------------------------------------------------------------ #
    # Cache policy and I/O
    # ------------------------------------------------------------------ #

    async def _perform(self, task: DataTask) -> None:
        """Run *task* according to its request's cache policy.

        * ``RELOAD_IGNORING_CACHE`` -- network only.
        * ``RETURN_CACHE_DATA_DONT_LOAD`` -- store only; a miss raises
          :class:`~flagwire.exceptions.CacheMissError`.
        * ``RETURN_CACHE_DATA_ELSE_LOAD`` -- store if present, else network.
        * ``USE_PROTOCOL_POLICY`` -- store while ``max-age`` holds;
          otherwise a conditional request when the entry has validators,
          serving the stored body on ``304 Not Modified``.
        """
        request = task.request
        policy = request.cache_policy
        store = self.configuration.store

        loop = asyncio.get_running_loop()
        cached: Optional[CachedResponse] = None
        if policy != CachePolicy.RELOAD_IGNORING_CACHE and store is not None:
            # diskcache is synchronous SQLite; keep it off the loop.
            cached = await loop.run_in_executor(None, store.lookup, request)

        if policy == CachePolicy.RETURN_CACHE_DATA_DONT_LOAD:
            if cached is None:
                raise CacheMissError(f"No cached response for {request.method} {request.url}")
            self._deliver_cached(task, cached)
            return

        if policy == CachePolicy.RETURN_CACHE_DATA_ELSE_LOAD and cached is not None:
            self._deliver_cached(task, cached)
            return

        extra_headers: dict[str, str] = {}
        if policy == CachePolicy.USE_PROTOCOL_POLICY and cached is not None:
            max_age = cached.max_age()
            if max_age is not None and cached.age_seconds(time.time()) < max_age:
                self._deliver_cached(task, cached)
                return
            etag = cached.header("ETag")
            last_modified = cached.header("Last-Modified")
            if etag:
                extra_headers["If-None-Match"] = etag
            if last_modified:
                extra_headers["If-Modified-Since"] = last_modified

        headers = {**request.headers, **extra_headers}
        async with self._client.stream(
            request.method, request.url, headers=headers, content=request.content
        ) as response:
            if response.status_code == 304 and cached is not None:
                await response.aread()
                await self._revalidated(task, cached, response)
                return

            task.status_code = response.status_code
            if self._delegate is not None:
                self._delegate.did_receive_response(task, response.status_code, response.headers)
            body = bytearray()
            async for chunk in response.aiter_bytes():
                body.extend(chunk)
                if self._delegate is not None:
                    self._delegate.did_receive_data(task, chunk)

        if store is not None and 200 <= response.status_code < 300:
            await self._offer_to_store(task, response, bytes(body))

    def _deliver_cached(self, task: DataTask, cached: CachedResponse) -> None:
        task.from_cache = True
        task.status_code = cached.status_code
        if self._delegate is not None:
            self._delegate.did_receive_response(task, cached.status_code, cached.headers)
            if cached.content:
                self._delegate.did_receive_data(task, cached.content)

    async def _revalidated(
        self, task: DataTask, cached: CachedResponse, response: httpx.Response
    ) -> None:
        headers = dict(cached.headers)
        for name in ("date", "cache-control", "etag", "expires", "last-modified"):
            if name in response.headers:
                headers = {k: v for k, v in headers.items() if k.lower() != name}
                headers[name] = response.headers[name]
        refreshed = cached.model_copy(update={"headers": headers, "stored_at": time.time()})
        await asyncio.get_running_loop().run_in_executor(
            None, self.configuration.store.store, task.request, refreshed
        )
        self._deliver_cached(task, refreshed)

    async def _offer_to_store(self, task: DataTask, response: httpx.Response, body: bytes) -> None:
        headers = dict(response.headers)
        if "date" not in headers:
            headers["date"] = format_http_date(datetime.now(timezone.utc))
        proposed = CachedResponse(status_code=response.status_code, headers=headers, content=body)
        if self._delegate is not None:
            proposed = self._delegate.will_cache_response(task, proposed)
        if proposed is not None:
            await asyncio.get_running_loop().run_in_executor(
                None, self.configuration.store.store, task.request, proposed
            )


def create_session(
    network: NetworkConfig,
    cache: CacheConfig,
    *,
    loop: EventLoopThread,
    delegate: Optional[SessionDelegate] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Session:
    """Build a new session from the current network and cache configuration.

    Reads a consistent snapshot of *network*; later changes to either
    config never reach the returned session.

    Args:
        network: Live network configuration.
        cache: Live cache configuration; supplies the store handle.
        loop: Completion loop the session's tasks run on.
        delegate: Receiver of task events.
        transport: Optional httpx transport override.

    Returns:
        A fresh :class:`Session`.
    """
    net = network.snapshot()
    configuration = SessionConfiguration(
        request_timeout=net.request_timeout,
        resource_timeout=net.resource_timeout,
        waits_for_connectivity=net.waits_for_connectivity,
        allows_cellular_access=net.allows_cellular_access,
        max_connections_per_host=net.max_connections_per_host,
        additional_headers=net.additional_headers,
        use_pipelining=net.use_pipelining,
        should_set_cookies=net.should_set_cookies,
        cache_enabled=cache.use_cache,
        cache_ttl=cache.cache_ttl,
        store=cache.store,
    )
    return Session(configuration, delegate=delegate, loop=loop, transport=transport)
