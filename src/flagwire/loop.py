"""The completion context: one asyncio event loop on a background thread.

Every transport session runs its HTTP exchanges as tasks on this loop, and
the orchestrator delivers every completion callback on it. Callers on any
other thread submit work with :meth:`EventLoopThread.submit` or
:meth:`EventLoopThread.call_soon` and never need their own synchronisation
to read a result handed to a callback.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import threading
from typing import Any, Callable, Coroutine

logger = logging.getLogger(__name__)


class EventLoopThread:
    """Owns an asyncio loop running forever on a daemon thread.

    The thread is started in the constructor and stopped by :meth:`stop`.

    Args:
        name: Thread name, visible in debuggers and log records.
    """

    def __init__(self, name: str = "flagwire-completion") -> None:
        self._loop = asyncio.new_event_loop()
        self._started = threading.Event()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)
        self._thread.start()
        self._started.wait()

    def _run(self) -> None:
        asyncio.set_event_loop(self._loop)
        self._loop.call_soon(self._started.set)
        try:
            self._loop.run_forever()
        finally:
            self._loop.run_until_complete(self._loop.shutdown_asyncgens())
            self._loop.close()

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        return self._loop

    @property
    def is_running(self) -> bool:
        return self._thread.is_alive() and not self._loop.is_closed()

    def in_loop_thread(self) -> bool:
        """Return ``True`` when called from the loop's own thread."""
        return threading.get_ident() == self._thread.ident

    def submit(self, coro: Coroutine[Any, Any, Any]) -> concurrent.futures.Future:
        """Schedule *coro* on the loop from any thread."""
        return asyncio.run_coroutine_threadsafe(coro, self._loop)

    def run_blocking(self, func: Callable[..., Any], *args: Any) -> concurrent.futures.Future:
        """Run blocking ``func(*args)`` in the loop's executor.

        The returned future resolves, and runs its done callbacks, on the
        loop thread.
        """

        async def _call() -> Any:
            return await self._loop.run_in_executor(None, func, *args)

        return self.submit(_call())

    def call_soon(self, callback: Callable[..., Any], *args: Any) -> None:
        """Run ``callback(*args)`` on the loop thread as soon as possible."""
        self._loop.call_soon_threadsafe(callback, *args)

    def stop(self, timeout: float = 5.0) -> None:
        """Cancel outstanding tasks, stop the loop and join the thread."""
        if not self.is_running:
            return

        async def _cancel_all() -> None:
            current = asyncio.current_task()
            tasks = [t for t in asyncio.all_tasks() if t is not current]
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        if self.in_loop_thread():
            self._loop.stop()
            return
        try:
            self.submit(_cancel_all()).result(timeout)
        except concurrent.futures.TimeoutError:
            logger.warning("Timed out cancelling tasks on %s", self._thread.name)
        self._loop.call_soon_threadsafe(self._loop.stop)
        self._thread.join(timeout)
