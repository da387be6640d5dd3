"""Request orchestration: cache policy, session lifecycle and task bookkeeping.

:class:`Orchestrator` turns a logical operation from :mod:`flagwire.router`
into an HTTP exchange. For every call it:

1. checks the environment key and builds the request,
2. picks a :class:`~flagwire.models.CachePolicy` from the *current*
   :class:`~flagwire.models.CacheConfig` and the stored response's ``Date``
   header (see :meth:`Orchestrator.resolve_cache_policy`),
3. builds a new transport session from the *current*
   :class:`~flagwire.models.NetworkConfig` and swaps it in, retiring the
   previous one once its running tasks finish,
4. registers the task in the pending registry and resumes it,
5. collects body chunks per task identifier and resolves the caller's
   future when the task completes.

Two locks guard the state. The scalar state (session, base URL, API key,
last-updated timestamp) sits behind a :class:`~flagwire.locks.ReadWriteLock`;
the pending registry and its buffers sit behind a plain
:class:`threading.Lock`.

Every completion callback runs on the orchestrator's completion loop
thread (:class:`~flagwire.loop.EventLoopThread`), including callbacks for
requests that fail before any I/O.
"""

from __future__ import annotations

import concurrent.futures
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Mapping, Optional, TypeVar

import httpx

from flagwire.cache import CachedResponse
from flagwire.dates import format_http_date, parse_http_date
from flagwire.exceptions import DecodeError, MissingCredentialError, wrap_error
from flagwire.locks import ReadWriteLock
from flagwire.loop import EventLoopThread
from flagwire.models import DEFAULT_BASE_URL, CacheConfig, CachePolicy, NetworkConfig
from flagwire.router import ApiRequest, Operation, build_request
from flagwire.transport import DataTask, Session, create_session

logger = logging.getLogger(__name__)

T = TypeVar("T")

Completion = Callable[[concurrent.futures.Future], None]

DOCUMENT_UPDATED_AT_HEADER = "x-flagsmith-document-updated-at"


@dataclass
class _PendingTask:
    """Registry entry for one in-flight task."""

    future: concurrent.futures.Future
    completion: Optional[Completion]
    buffer: bytearray = field(default_factory=bytearray)


class Orchestrator:
    """Dispatches API operations over a replaceable transport session.

    Args:
        network_config: Live network settings, read before every dispatch.
        cache_config: Live cache settings and store handle.
        base_url: API root URL.
        api_key: Environment key. Requests fail with
            :class:`~flagwire.exceptions.MissingCredentialError` until set.
        loop: Completion loop. When omitted the orchestrator starts and
            owns one, stopped by :meth:`close`.
        transport: Optional httpx transport used by every session built
            (tests pass :class:`httpx.MockTransport`).
        clock: Returns the current UTC time; used for cache age.

    Example::

        with Orchestrator(NetworkConfig(), CacheConfig(), api_key="key") as api:
            flags = api.request_decoded(GetFlags(), decode_flags).result()
    """

    def __init__(
        self,
        network_config: NetworkConfig,
        cache_config: CacheConfig,
        *,
        base_url: str = DEFAULT_BASE_URL,
        api_key: Optional[str] = None,
        loop: Optional[EventLoopThread] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.network_config = network_config
        self.cache_config = cache_config
        self._owns_loop = loop is None
        self._loop = loop or EventLoopThread()
        self._transport = transport
        self._clock = clock

        self._state_lock = ReadWriteLock()
        self._base_url = base_url
        self._api_key = api_key
        self._last_updated_at: Optional[float] = None
        self._session = create_session(
            network_config, cache_config, loop=self._loop, delegate=self, transport=transport
        )

        self._pending_lock = threading.Lock()
        self._pending: dict[int, _PendingTask] = {}

    # ------------------------------------------------------------------ #
    # Context manager
    # ------------------------------------------------------------------ #

    def __enter__(self) -> Orchestrator:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def close(self) -> None:
        """Close the current session and stop the loop if this instance owns it."""
        with self._state_lock.read():
            session = self._session
        session.invalidate_and_cancel()
        if self._owns_loop:
            self._loop.stop()

    # ------------------------------------------------------------------ #
    # Scalar state
    # ------------------------------------------------------------------ #

    @property
    def session(self) -> Session:
        """The session the next dispatch would replace."""
        with self._state_lock.read():
            return self._session

    @property
    def base_url(self) -> str:
        with self._state_lock.read():
            return self._base_url

    @base_url.setter
    def base_url(self, value: str) -> None:
        with self._state_lock.write():
            self._base_url = value

    @property
    def api_key(self) -> Optional[str]:
        with self._state_lock.read():
            return self._api_key

    @api_key.setter
    def api_key(self, value: Optional[str]) -> None:
        with self._state_lock.write():
            self._api_key = value

    @property
    def last_updated_at(self) -> Optional[float]:
        """Timestamp from the last ``X-Flagsmith-Document-Updated-At`` header seen."""
        with self._state_lock.read():
            return self._last_updated_at

    def set_base_url(self, url: str) -> None:
        self.base_url = url

    def set_api_key(self, key: Optional[str]) -> None:
        self.api_key = key

    @property
    def loop(self) -> EventLoopThread:
        return self._loop

    @property
    def pending_count(self) -> int:
        """Number of tasks registered and not yet completed."""
        with self._pending_lock:
            return len(self._pending)

    # ------------------------------------------------------------------ #
    # Public request methods
    # ------------------------------------------------------------------ #

    def request(
        self, operation: Operation, completion: Optional[Completion] = None
    ) -> concurrent.futures.Future:
        """Perform *operation* and resolve with the raw response bytes.

        Returns immediately. A missing API key or a construction failure
        leaves the returned future already failed; transport failures fail
        it later with :class:`~flagwire.exceptions.UnhandledError`.

        Args:
            operation: The API operation to perform.
            completion: Called once with the resolved future, on the
                completion loop thread.

        Returns:
            A future resolving to ``bytes``.
        """
        future: concurrent.futures.Future = concurrent.futures.Future()
        future.set_running_or_notify_cancel()

        with self._state_lock.read():
            api_key = self._api_key
            base_url = self._base_url
        if not api_key:
            self._fail_now(future, completion, MissingCredentialError())
            return future

        try:
            request = build_request(base_url, api_key, operation)
        except Exception as exc:
            self._fail_now(future, completion, exc)
            return future

        if not self._loop.is_running:
            self._fail_now(
                future, completion, wrap_error(RuntimeError("Completion loop is not running"))
            )
            return future

        request.cache_policy = self.resolve_cache_policy(request)
        self._dispatch(request, future, completion)
        return future

    def request_void(
        self, operation: Operation, completion: Optional[Completion] = None
    ) -> concurrent.futures.Future:
        """Perform *operation*, resolving with ``None`` on success.

        Failures are normalised through :func:`~flagwire.exceptions.wrap_error`.
        """
        outer: concurrent.futures.Future = concurrent.futures.Future()
        outer.set_running_or_notify_cancel()

        def _relay(inner: concurrent.futures.Future) -> None:
            error = inner.exception()
            if error is not None:
                outer.set_exception(wrap_error(error))
            else:
                outer.set_result(None)
            self._notify(outer, completion)

        self.request(operation).add_done_callback(_relay)
        return outer

    def request_decoded(
        self,
        operation: Operation,
        decoder: Callable[[bytes], T],
        completion: Optional[Completion] = None,
    ) -> concurrent.futures.Future:
        """Perform *operation* and decode the body with *decoder*.

        On success, and when caching is enabled, the raw bytes are also
        written to the store if no entry exists yet (see
        :meth:`backfill_cache`).

        Raises (via the future):
            DecodeError: If *decoder* raises; no partial value is returned.
        """
        outer: concurrent.futures.Future = concurrent.futures.Future()
        outer.set_running_or_notify_cancel()

        def _relay(inner: concurrent.futures.Future) -> None:
            error = inner.exception()
            if error is not None:
                outer.set_exception(error)
            else:
                data: bytes = inner.result()
                try:
                    value = decoder(data)
                except Exception as exc:
                    outer.set_exception(DecodeError(exc))
                else:
                    if self.cache_config.use_cache:
                        # Store I/O blocks; resolve once the write has run.
                        backfill = self._loop.run_blocking(self.backfill_cache, operation, data)
                        backfill.add_done_callback(lambda _: _resolve(value))
                        return
                    outer.set_result(value)
            self._notify(outer, completion)

        def _resolve(value: T) -> None:
            outer.set_result(value)
            self._notify(outer, completion)

        self.request(operation).add_done_callback(_relay)
        return outer

    # ------------------------------------------------------------------ #
    # Cache policy
    # ------------------------------------------------------------------ #

    def resolve_cache_policy(self, request: ApiRequest) -> CachePolicy:
        """Choose the cache directive for *request* from the current cache config.

        * caching off -- reload, ignoring the store;
        * ``skip_api`` with a fresh entry -- serve the entry, never load;
        * ``skip_api`` with a stale, undated or missing entry -- evict it
          and reload;
        * otherwise -- protocol policy (``max-age`` and revalidation).

        An entry is fresh when ``now - Date`` is below ``cache_ttl``. An
        unparseable ``Date`` header counts as no entry.
        """
        config = self.cache_config
        if not config.use_cache:
            return CachePolicy.RELOAD_IGNORING_CACHE

        skip_api = config.skip_api
        store = config.store
        is_fresh = False
        cached = store.lookup(request) if store is not None else None
        if cached is not None:
            date = parse_http_date(cached.header("Date"))
            if date is not None:
                age = (self._clock() - date).total_seconds()
                is_fresh = age < config.cache_ttl

        if is_fresh and skip_api:
            logger.debug("Serving %s from cache without loading", request.url)
            return CachePolicy.RETURN_CACHE_DATA_DONT_LOAD
        if skip_api:
            if store is not None:
                store.evict(request)
            logger.debug("Evicted stale cache entry for %s", request.url)
            return CachePolicy.RELOAD_IGNORING_CACHE
        return CachePolicy.USE_PROTOCOL_POLICY

    def backfill_cache(self, operation: Operation, data: bytes) -> bool:
        """Store *data* for *operation* if the store has no entry for it.

        The synthetic entry is a ``200`` with ``Cache-Control:
        max-age=<cache_ttl>`` and a ``Date`` of now. Failures are logged
        and ignored.

        Returns:
            ``True`` if an entry was written.
        """
        store = self.cache_config.store
        with self._state_lock.read():
            api_key = self._api_key
            base_url = self._base_url
        if store is None or not api_key:
            return False
        try:
            request = build_request(base_url, api_key, operation)
            response = CachedResponse(
                status_code=200,
                headers={
                    "Content-Type": "application/json",
                    "Cache-Control": f"max-age={int(self.cache_config.cache_ttl)}",
                    "Date": format_http_date(self._clock()),
                },
                content=data,
            )
            return store.add(request, response)
        except Exception as exc:
            logger.warning("Failed to backfill cache for %r: %s", operation, exc)
            return False

    # ------------------------------------------------------------------ #
    # Dispatch and delegate callbacks
    # ------------------------------------------------------------------ #

    def _dispatch(
        self,
        request: ApiRequest,
        future: concurrent.futures.Future,
        completion: Optional[Completion],
    ) -> None:
        new_session = create_session(
            self.network_config,
            self.cache_config,
            loop=self._loop,
            delegate=self,
            transport=self._transport,
        )
        # The task is created and registered before the session is published:
        # once published, a concurrent dispatch may retire it, and a retired
        # session refuses new tasks.
        task = new_session.data_task(request)
        with self._pending_lock:
            self._pending[task.task_identifier] = _PendingTask(future, completion)

        with self._state_lock.write():
            old_session = self._session
            self._session = new_session
        old_session.finish_tasks_and_invalidate()

        logger.debug("Dispatching %r", task)
        try:
            task.resume()
        except RuntimeError as exc:
            # Loop closed between the running check and the submit.
            with self._pending_lock:
                entry = self._pending.pop(task.task_identifier, None)
            if entry is not None:
                self._fail_now(future, completion, wrap_error(exc))

    def did_receive_response(
        self, task: DataTask, status_code: int, headers: Mapping[str, str]
    ) -> None:
        value = None
        for key, header_value in headers.items():
            if key.lower() == DOCUMENT_UPDATED_AT_HEADER:
                value = header_value
                break
        if value is None:
            return
        try:
            updated_at = float(value)
        except ValueError:
            return
        with self._state_lock.write():
            self._last_updated_at = updated_at

    def did_receive_data(self, task: DataTask, data: bytes) -> None:
        with self._pending_lock:
            entry = self._pending.get(task.task_identifier)
            if entry is not None:
                entry.buffer.extend(data)

    def will_cache_response(
        self, task: DataTask, proposed: CachedResponse
    ) -> Optional[CachedResponse]:
        config = self.cache_config
        if not config.use_cache:
            return None
        headers = {k: v for k, v in proposed.headers.items() if k.lower() != "cache-control"}
        headers["cache-control"] = f"max-age={int(config.cache_ttl)}"
        return proposed.model_copy(update={"headers": headers})

    def did_complete(self, task: DataTask, error: Optional[BaseException]) -> None:
        with self._pending_lock:
            entry = self._pending.pop(task.task_identifier, None)
        if entry is None:
            return
        if error is not None:
            entry.future.set_exception(wrap_error(error))
        else:
            entry.future.set_result(bytes(entry.buffer))
        self._notify(entry.future, entry.completion)

    # ------------------------------------------------------------------ #
    # Completion delivery
    # ------------------------------------------------------------------ #

    def _fail_now(
        self,
        future: concurrent.futures.Future,
        completion: Optional[Completion],
        error: BaseException,
    ) -> None:
        future.set_exception(error)
        self._notify(future, completion)

    def _notify(self, future: concurrent.futures.Future, completion: Optional[Completion]) -> None:
        if completion is None:
            return
        if self._loop.in_loop_thread():
            self._run_completion(completion, future)
        elif self._loop.is_running:
            self._loop.call_soon(self._run_completion, completion, future)
        else:
            logger.warning("Completion loop stopped; dropping callback for %r", future)

    @staticmethod
    def _run_completion(completion: Completion, future: concurrent.futures.Future) -> None:
        try:
            completion(future)
        except Exception:
            logger.exception("Completion callback raised")
