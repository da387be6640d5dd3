"""Shared test fixtures for flagwire.

Provides isolated XDG directories, a throwaway response store, a
completion loop, and helpers for building orchestrators on top of an
:class:`httpx.MockTransport`. These fixtures are automatically discovered
by pytest and available to all test modules without explicit imports.
"""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any, Callable

import httpx
import pytest

from flagwire.cache import ResponseStore, reset_shared_store
from flagwire.loop import EventLoopThread
from flagwire.models import CacheConfig, NetworkConfig
from flagwire.orchestrator import Orchestrator
from flagwire.output import reset_output

BASE_URL = "https://flags.example.com/api/v1/"

FLAGS_PAYLOAD = [
    {
        "feature": {"id": 1, "name": "beta_banner", "type": "STANDARD"},
        "feature_state_value": None,
        "enabled": True,
    },
    {
        "feature": {"id": 2, "name": "max_items", "type": "MULTIVARIATE"},
        "feature_state_value": 25,
        "enabled": False,
    },
]

IDENTITY_PAYLOAD = {
    "identifier": "user-1",
    "flags": FLAGS_PAYLOAD[:1],
    "traits": [{"trait_key": "plan", "trait_value": "pro"}],
}


# ---------------------------------------------------------------------------
# Auto-reset global state between tests
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def isolated_dirs(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point every XDG directory into tmp_path and clear FLAGWIRE_* variables.

    Also changes the working directory to tmp_path so no ``flagwire.json``
    from the developer's checkout leaks in.
    """
    monkeypatch.setenv("XDG_CACHE_HOME", str(tmp_path / "cache"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))
    for var in [
        "FLAGWIRE_API_KEY",
        "FLAGWIRE_BASE_URL",
        "FLAGWIRE_REQUEST_TIMEOUT",
        "FLAGWIRE_RESOURCE_TIMEOUT",
        "FLAGWIRE_USE_CACHE",
        "FLAGWIRE_CACHE_TTL",
        "FLAGWIRE_SKIP_API",
        "FLAGWIRE_CACHE_DIR",
    ]:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)
    yield tmp_path
    reset_shared_store()


@pytest.fixture(autouse=True)
def _reset_output_between_tests() -> None:
    """Reset the global OutputManager after every test.

    CliRunner swaps sys.stdout/sys.stderr; a manager or log handler created
    during one test would keep references to closed streams.
    """
    yield
    reset_output()
    logger = logging.getLogger("flagwire")
    logger.handlers.clear()
    logger.setLevel(logging.NOTSET)


# ---------------------------------------------------------------------------
# Store and loop
# ---------------------------------------------------------------------------


@pytest.fixture
def store(tmp_path: Path) -> ResponseStore:
    s = ResponseStore(tmp_path / "store")
    yield s
    s.close()


@pytest.fixture
def loop() -> EventLoopThread:
    thread = EventLoopThread(name="flagwire-test")
    yield thread
    thread.stop()


# ---------------------------------------------------------------------------
# Mock HTTP server
# ---------------------------------------------------------------------------


class Recorder:
    """Records requests seen by a MockTransport and answers from a handler.

    Thread-safe: requests arrive on the completion loop thread while tests
    assert from the main thread.
    """

    def __init__(self, handler: Callable[[httpx.Request], httpx.Response]) -> None:
        self._handler = handler
        self._lock = threading.Lock()
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        with self._lock:
            self.requests.append(request)
        return self._handler(request)

    @property
    def count(self) -> int:
        with self._lock:
            return len(self.requests)

    @property
    def last(self) -> httpx.Request:
        with self._lock:
            return self.requests[-1]

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


def json_response(data: Any, status_code: int = 200, headers: dict[str, str] | None = None):
    """Build a handler returning *data* as JSON for every request."""

    def _handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            status_code,
            headers={"content-type": "application/json", **(headers or {})},
            content=json.dumps(data).encode(),
        )

    return _handler


@pytest.fixture
def flags_server() -> Recorder:
    return Recorder(json_response(FLAGS_PAYLOAD))


@pytest.fixture
def make_orchestrator(loop: EventLoopThread, store: ResponseStore):
    """Factory building orchestrators on the shared test loop and store."""
    created: list[Orchestrator] = []

    def _make(
        transport: httpx.AsyncBaseTransport,
        *,
        api_key: str | None = "env-key",
        network: NetworkConfig | None = None,
        cache: CacheConfig | None = None,
        **kwargs: Any,
    ) -> Orchestrator:
        orchestrator = Orchestrator(
            network or NetworkConfig(),
            cache or CacheConfig(store=store),
            base_url=BASE_URL,
            api_key=api_key,
            loop=loop,
            transport=transport,
            **kwargs,
        )
        created.append(orchestrator)
        return orchestrator

    yield _make
    for orchestrator in created:
        orchestrator.close()
