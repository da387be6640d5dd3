"""Real-time flag updates over server-sent events.

:class:`StreamManager` keeps one long-lived ``text/event-stream`` request
open and hands every event to a completion callback. It builds its
transport session with the same :func:`~flagwire.transport.create_session`
factory and the same :class:`~flagwire.models.NetworkConfig` instance as the
:class:`~flagwire.orchestrator.Orchestrator`, so polling and streaming share
timeouts, headers and connection limits. Caching is always off for the
stream. The session is rebuilt on every :meth:`StreamManager.start`, so a
restart picks up configuration changes.

The server sends events of the form::

    event: environment_updated
    data: {"updated_at": 1706795236.17}
"""

from __future__ import annotations

import concurrent.futures
import json
import logging
from typing import Callable, Optional

import httpx
from pydantic import BaseModel, ValidationError

from flagwire.exceptions import DecodeError, MissingCredentialError, UnhandledError
from flagwire.locks import ReadWriteLock
from flagwire.loop import EventLoopThread
from flagwire.models import CacheConfig, NetworkConfig
from flagwire.transport import Session, create_session

logger = logging.getLogger(__name__)

DEFAULT_STREAM_URL = "https://realtime.flagsmith.com/"

StreamCompletion = Callable[[concurrent.futures.Future], None]


class StreamEvent(BaseModel):
    """One decoded server-sent event."""

    event: str = "message"
    updated_at: Optional[float] = None


class StreamManager:
    """Owns the server-sent events connection.

    Args:
        network_config: The live network settings shared with polling.
        api_key: Environment key; :meth:`start` fails without one.
        base_url: Root of the real-time service.
        loop: Completion loop. When omitted one is started and owned.
        transport: Optional httpx transport override.
    """

    def __init__(
        self,
        network_config: NetworkConfig,
        *,
        api_key: Optional[str] = None,
        base_url: str = DEFAULT_STREAM_URL,
        loop: Optional[EventLoopThread] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.network_config = network_config
        self._owns_loop = loop is None
        self._loop = loop or EventLoopThread(name="flagwire-stream")
        self._transport = transport
        self._state_lock = ReadWriteLock()
        self._api_key = api_key
        self._base_url = base_url
        self._session: Optional[Session] = None
        self._stream_future: Optional[concurrent.futures.Future] = None

    @property
    def session(self) -> Optional[Session]:
        """The session of the current (or last) stream, if started."""
        with self._state_lock.read():
            return self._session

    @property
    def api_key(self) -> Optional[str]:
        with self._state_lock.read():
            return self._api_key

    @api_key.setter
    def api_key(self, value: Optional[str]) -> None:
        with self._state_lock.write():
            self._api_key = value

    @property
    def is_streaming(self) -> bool:
        with self._state_lock.read():
            return self._stream_future is not None and not self._stream_future.done()

    def stream_url(self, api_key: str) -> str:
        base = self._base_url if self._base_url.endswith("/") else self._base_url + "/"
        return f"{base}sse/environments/{api_key}/stream"

    def start(self, completion: StreamCompletion) -> None:
        """Open the stream, replacing any stream already running.

        *completion* is called on the completion loop once per event with a
        future holding a :class:`StreamEvent`, and once with a failed
        future if the connection errors or ends.
        """
        api_key = self.api_key
        if not api_key:
            self._deliver_error(completion, MissingCredentialError())
            return

        self.stop()
        session = create_session(
            self.network_config,
            CacheConfig(use_cache=False, store=None),
            loop=self._loop,
            transport=self._transport,
        )
        future = self._loop.submit(self._stream(session, self.stream_url(api_key), completion))
        with self._state_lock.write():
            self._session = session
            self._stream_future = future

    def stop(self) -> None:
        """Close the current stream, if any."""
        with self._state_lock.write():
            future = self._stream_future
            session = self._session
            self._stream_future = None
        if future is not None:
            future.cancel()
        if session is not None:
            session.invalidate_and_cancel()

    def close(self) -> None:
        self.stop()
        if self._owns_loop:
            self._loop.stop()

    async def _stream(self, session: Session, url: str, completion: StreamCompletion) -> None:
        event_name = "message"
        data_lines: list[str] = []
        try:
            # Servers may stay silent between events; only connect and write are bounded.
            timeout = httpx.Timeout(session.configuration.request_timeout, read=None)
            async with session.client.stream(
                "GET", url, headers={"Accept": "text/event-stream"}, timeout=timeout
            ) as response:
                response.raise_for_status()
                async for line in response.aiter_lines():
                    if not line:
                        if data_lines:
                            self._deliver_event(completion, event_name, "\n".join(data_lines))
                        event_name, data_lines = "message", []
                    elif line.startswith("event:"):
                        event_name = line[len("event:"):].strip()
                    elif line.startswith("data:"):
                        data_lines.append(line[len("data:"):].strip())
        except httpx.HTTPError as exc:
            logger.debug("Stream %s failed: %r", url, exc)
            self._deliver_error(completion, UnhandledError(exc))
            return
        self._deliver_error(completion, UnhandledError(httpx.StreamClosed()))

    def _deliver_event(self, completion: StreamCompletion, event_name: str, data: str) -> None:
        future: concurrent.futures.Future = concurrent.futures.Future()
        try:
            payload = json.loads(data) if data else {}
            event = StreamEvent.model_validate({"event": event_name, **payload})
        except (ValueError, TypeError, ValidationError) as exc:
            future.set_exception(DecodeError(exc))
        else:
            future.set_result(event)
        self._run_completion(completion, future)

    def _deliver_error(self, completion: StreamCompletion, error: BaseException) -> None:
        future: concurrent.futures.Future = concurrent.futures.Future()
        future.set_exception(error)
        if self._loop.in_loop_thread():
            self._run_completion(completion, future)
        else:
            self._loop.call_soon(self._run_completion, completion, future)

    @staticmethod
    def _run_completion(completion: StreamCompletion, future: concurrent.futures.Future) -> None:
        try:
            completion(future)
        except Exception:
            logger.exception("Stream completion callback raised")
