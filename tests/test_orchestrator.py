"""Tests for the request orchestrator."""

from __future__ import annotations

import asyncio
import concurrent.futures
import json
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import pytest

from flagwire.cache import CachedResponse, ResponseStore
from flagwire.dates import format_http_date
from flagwire.decoders import decode_flags
from flagwire.exceptions import (
    DecodeError,
    MissingCredentialError,
    RequestConstructionError,
    UnhandledError,
)
from flagwire.models import CacheConfig, CachePolicy, NetworkConfig
from flagwire.router import GetFlags, GetIdentity, PostAnalytics, build_request

from conftest import BASE_URL, FLAGS_PAYLOAD, Recorder, json_response


class CompletionLog:
    """Collects completion callbacks together with the thread they ran on."""

    def __init__(self) -> None:
        self.calls: list[tuple[concurrent.futures.Future, str]] = []
        self._cond = threading.Condition()

    def __call__(self, future: concurrent.futures.Future) -> None:
        with self._cond:
            self.calls.append((future, threading.current_thread().name))
            self._cond.notify_all()

    def wait_for(self, count: int, timeout: float = 5.0) -> None:
        with self._cond:
            assert self._cond.wait_for(lambda: len(self.calls) >= count, timeout)


def _stored(store: ResponseStore, content: bytes, age: float) -> None:
    request = build_request(BASE_URL, "env-key", GetFlags())
    date = datetime.now(timezone.utc) - timedelta(seconds=age)
    store.store(
        request,
        CachedResponse(status_code=200, headers={"Date": format_http_date(date)}, content=content),
    )


# ------------------------------------------------------------------ #
# Preconditions
# ------------------------------------------------------------------ #


class TestPreconditions:
    def test_missing_api_key(self, make_orchestrator, flags_server: Recorder) -> None:
        api = make_orchestrator(flags_server.transport(), api_key=None)
        log = CompletionLog()
        future = api.request(GetFlags(), log)
        with pytest.raises(MissingCredentialError):
            future.result(timeout=5)
        log.wait_for(1)
        assert flags_server.count == 0
        assert api.pending_count == 0

    def test_empty_api_key_counts_as_missing(self, make_orchestrator, flags_server) -> None:
        api = make_orchestrator(flags_server.transport(), api_key="")
        with pytest.raises(MissingCredentialError):
            api.request(GetFlags()).result(timeout=5)

    def test_construction_error(self, make_orchestrator, flags_server: Recorder) -> None:
        api = make_orchestrator(flags_server.transport())
        api.base_url = "not a url"
        with pytest.raises(RequestConstructionError):
            api.request(GetFlags()).result(timeout=5)
        assert flags_server.count == 0

    def test_precondition_failure_completes_on_loop_thread(
        self, make_orchestrator, flags_server: Recorder
    ) -> None:
        api = make_orchestrator(flags_server.transport(), api_key=None)
        log = CompletionLog()
        api.request(GetFlags(), log)
        log.wait_for(1)
        assert log.calls[0][1] == "flagwire-test"

    def test_key_set_later_is_used(self, make_orchestrator, flags_server: Recorder) -> None:
        api = make_orchestrator(flags_server.transport(), api_key=None)
        api.set_api_key("late-key")
        api.request(GetFlags()).result(timeout=5)
        assert flags_server.last.headers["X-Environment-Key"] == "late-key"


# ------------------------------------------------------------------ #
# Results and errors
# ------------------------------------------------------------------ #


class TestResults:
    def test_raw_bytes(self, make_orchestrator, flags_server: Recorder) -> None:
        api = make_orchestrator(flags_server.transport())
        log = CompletionLog()
        data = api.request(GetFlags(), log).result(timeout=5)
        assert data == json.dumps(FLAGS_PAYLOAD).encode()
        log.wait_for(1)
        assert log.calls[0][1] == "flagwire-test"
        assert api.pending_count == 0

    def test_decoded(self, make_orchestrator, flags_server: Recorder) -> None:
        api = make_orchestrator(flags_server.transport())
        flags = api.request_decoded(GetFlags(), decode_flags).result(timeout=5)
        assert [f.feature.name for f in flags] == ["beta_banner", "max_items"]
        assert flags[1].feature_state_value == 25

    def test_decode_error(self, make_orchestrator) -> None:
        server = Recorder(json_response({"not": "a list"}))
        api = make_orchestrator(server.transport())
        log = CompletionLog()
        future = api.request_decoded(GetFlags(), decode_flags, log)
        with pytest.raises(DecodeError) as exc_info:
            future.result(timeout=5)
        assert exc_info.value.error is not None
        log.wait_for(1)
        assert len(log.calls) == 1

    def test_transport_error_is_wrapped(self, make_orchestrator) -> None:
        def _fail(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("offline", request=request)

        api = make_orchestrator(httpx.MockTransport(_fail))
        with pytest.raises(UnhandledError) as exc_info:
            api.request(GetFlags()).result(timeout=5)
        assert isinstance(exc_info.value.error, httpx.ConnectError)

    def test_decoded_transport_error_is_not_a_decode_error(self, make_orchestrator) -> None:
        def _fail(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        api = make_orchestrator(httpx.MockTransport(_fail))
        with pytest.raises(UnhandledError):
            api.request_decoded(GetFlags(), decode_flags).result(timeout=5)

    def test_void(self, make_orchestrator) -> None:
        server = Recorder(json_response({}))
        api = make_orchestrator(server.transport())
        assert api.request_void(PostAnalytics({"beta_banner": 2})).result(timeout=5) is None
        assert server.last.method == "POST"

    def test_void_missing_key(self, make_orchestrator, flags_server: Recorder) -> None:
        api = make_orchestrator(flags_server.transport(), api_key=None)
        with pytest.raises(MissingCredentialError):
            api.request_void(PostAnalytics({})).result(timeout=5)

    def test_completion_exception_is_contained(self, make_orchestrator, flags_server) -> None:
        api = make_orchestrator(flags_server.transport())

        def _boom(future: concurrent.futures.Future) -> None:
            raise RuntimeError("callback bug")

        api.request(GetFlags(), _boom).result(timeout=5)
        assert api.request(GetFlags()).result(timeout=5)


# ------------------------------------------------------------------ #
# Session lifecycle
# ------------------------------------------------------------------ #


class TestSessionLifecycle:
    def test_every_request_gets_a_new_session(self, make_orchestrator, flags_server) -> None:
        api = make_orchestrator(flags_server.transport())
        api.request(GetFlags()).result(timeout=5)
        first = api.session
        api.request(GetFlags()).result(timeout=5)
        assert api.session is not first
        assert first.is_invalidated

    def test_new_settings_apply_to_next_request(
        self, make_orchestrator, flags_server: Recorder
    ) -> None:
        network = NetworkConfig()
        api = make_orchestrator(flags_server.transport(), network=network)
        network.request_timeout = 1.0
        network.additional_headers = {"X-Client": "v2"}
        api.request(GetFlags()).result(timeout=5)
        assert api.session.configuration.request_timeout == 1.0
        assert flags_server.last.headers["X-Client"] == "v2"

    def test_in_flight_request_keeps_old_settings(self, make_orchestrator) -> None:
        release = threading.Event()
        seen: list[str] = []

        async def _handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.headers.get("X-Version", ""))
            if request.headers.get("X-Version") == "1":
                while not release.is_set():
                    await asyncio.sleep(0.01)
            return httpx.Response(200, content=b"[]")

        network = NetworkConfig(additional_headers={"X-Version": "1"})
        api = make_orchestrator(httpx.MockTransport(_handler), network=network)
        slow = api.request(GetFlags())
        old_session = api.session
        network.additional_headers = {"X-Version": "2"}
        network.request_timeout = 3.0
        api.request(GetFlags()).result(timeout=5)
        release.set()
        slow.result(timeout=5)

        assert old_session.configuration.additional_headers == {"X-Version": "1"}
        assert old_session.configuration.request_timeout == 60.0
        assert api.session.configuration.request_timeout == 3.0
        assert sorted(seen) == ["1", "2"]

    def test_resource_timeout_fails_the_request(self, make_orchestrator) -> None:
        async def _slow(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(2)
            return httpx.Response(200, content=b"[]")

        network = NetworkConfig(resource_timeout=0.05)
        api = make_orchestrator(httpx.MockTransport(_slow), network=network)
        log = CompletionLog()
        with pytest.raises(UnhandledError) as exc_info:
            api.request(GetFlags(), log).result(timeout=5)
        assert isinstance(exc_info.value.error, httpx.TimeoutException)
        log.wait_for(1)
        assert api.pending_count == 0

    def test_in_flight_request_keeps_its_resource_timeout(self, make_orchestrator) -> None:
        async def _handler(request: httpx.Request) -> httpx.Response:
            if request.headers.get("X-Version") == "1":
                await asyncio.sleep(1)
            return httpx.Response(200, content=b"[]")

        network = NetworkConfig(resource_timeout=0.2, additional_headers={"X-Version": "1"})
        api = make_orchestrator(httpx.MockTransport(_handler), network=network)
        slow = api.request(GetFlags())
        network.resource_timeout = 30.0
        network.additional_headers = {"X-Version": "2"}

        assert api.request(GetFlags()).result(timeout=5) == b"[]"
        with pytest.raises(UnhandledError) as exc_info:
            slow.result(timeout=5)
        assert isinstance(exc_info.value.error, httpx.TimeoutException)
        assert api.session.configuration.resource_timeout == 30.0

    def test_request_after_loop_stopped(self, flags_server: Recorder, store: ResponseStore) -> None:
        from flagwire.orchestrator import Orchestrator

        api = Orchestrator(
            NetworkConfig(),
            CacheConfig(store=store),
            base_url=BASE_URL,
            api_key="env-key",
            transport=flags_server.transport(),
        )
        api.close()
        with pytest.raises(UnhandledError):
            api.request(GetFlags()).result(timeout=5)
        assert flags_server.count == 0
        assert api.pending_count == 0

    def test_close_stops_owned_loop(self, flags_server: Recorder, store: ResponseStore) -> None:
        from flagwire.orchestrator import Orchestrator

        api = Orchestrator(
            NetworkConfig(),
            CacheConfig(store=store),
            base_url=BASE_URL,
            api_key="env-key",
            transport=flags_server.transport(),
        )
        api.request(GetFlags()).result(timeout=5)
        api.close()
        assert not api.loop.is_running


# ------------------------------------------------------------------ #
# Cache policy
# ------------------------------------------------------------------ #


class TestCachePolicy:
    def test_cache_off_reloads(self, make_orchestrator, flags_server, store) -> None:
        api = make_orchestrator(flags_server.transport())
        request = build_request(BASE_URL, "env-key", GetFlags())
        assert api.resolve_cache_policy(request) == CachePolicy.RELOAD_IGNORING_CACHE

    def test_cache_off_writes_nothing(self, make_orchestrator, flags_server, store) -> None:
        api = make_orchestrator(flags_server.transport())
        api.request(GetFlags()).result(timeout=5)
        assert store.stats()["size"] == 0

    def test_cache_on_without_skip_uses_protocol(self, make_orchestrator, flags_server, store) -> None:
        cache = CacheConfig(use_cache=True, cache_ttl=60, store=store)
        api = make_orchestrator(flags_server.transport(), cache=cache)
        request = build_request(BASE_URL, "env-key", GetFlags())
        assert api.resolve_cache_policy(request) == CachePolicy.USE_PROTOCOL_POLICY

    def test_skip_api_fresh_entry_serves_cache(
        self, make_orchestrator, flags_server: Recorder, store: ResponseStore
    ) -> None:
        _stored(store, b'[{"feature": {"id": 9, "name": "cached"}, "enabled": true}]', age=5)
        cache = CacheConfig(use_cache=True, cache_ttl=60, skip_api=True, store=store)
        api = make_orchestrator(flags_server.transport(), cache=cache)
        flags = api.request_decoded(GetFlags(), decode_flags).result(timeout=5)
        assert [f.feature.name for f in flags] == ["cached"]
        assert flags_server.count == 0

    def test_skip_api_stale_entry_is_evicted_and_reloaded(
        self, make_orchestrator, flags_server: Recorder, store: ResponseStore
    ) -> None:
        _stored(store, b"[]", age=3600)
        cache = CacheConfig(use_cache=True, cache_ttl=60, skip_api=True, store=store)
        api = make_orchestrator(flags_server.transport(), cache=cache)
        flags = api.request_decoded(GetFlags(), decode_flags).result(timeout=5)
        assert len(flags) == 2
        assert flags_server.count == 1
        entry = store.lookup(build_request(BASE_URL, "env-key", GetFlags()))
        assert entry is not None
        assert entry.max_age() == 60

    def test_skip_api_undated_entry_is_not_fresh(
        self, make_orchestrator, flags_server: Recorder, store: ResponseStore
    ) -> None:
        request = build_request(BASE_URL, "env-key", GetFlags())
        store.store(request, CachedResponse(headers={"Date": "yesterday"}, content=b"[]"))
        cache = CacheConfig(use_cache=True, cache_ttl=60, skip_api=True, store=store)
        api = make_orchestrator(flags_server.transport(), cache=cache)
        assert api.resolve_cache_policy(request) == CachePolicy.RELOAD_IGNORING_CACHE
        assert store.lookup(request) is None

    def test_skip_api_without_entry_reloads(self, make_orchestrator, flags_server, store) -> None:
        cache = CacheConfig(use_cache=True, cache_ttl=60, skip_api=True, store=store)
        api = make_orchestrator(flags_server.transport(), cache=cache)
        request = build_request(BASE_URL, "env-key", GetFlags())
        assert api.resolve_cache_policy(request) == CachePolicy.RELOAD_IGNORING_CACHE

    def test_policy_reads_current_config(self, make_orchestrator, flags_server, store) -> None:
        _stored(store, b"[]", age=5)
        cache = CacheConfig(store=store)
        api = make_orchestrator(flags_server.transport(), cache=cache)
        request = build_request(BASE_URL, "env-key", GetFlags())
        assert api.resolve_cache_policy(request) == CachePolicy.RELOAD_IGNORING_CACHE
        cache.use_cache = True
        cache.cache_ttl = 60
        cache.skip_api = True
        assert api.resolve_cache_policy(request) == CachePolicy.RETURN_CACHE_DATA_DONT_LOAD

    def test_injected_clock(self, make_orchestrator, flags_server, store) -> None:
        _stored(store, b"[]", age=0)
        cache = CacheConfig(use_cache=True, cache_ttl=60, skip_api=True, store=store)
        later = lambda: datetime.now(timezone.utc) + timedelta(hours=1)  # noqa: E731
        api = make_orchestrator(flags_server.transport(), cache=cache, clock=later)
        request = build_request(BASE_URL, "env-key", GetFlags())
        assert api.resolve_cache_policy(request) == CachePolicy.RELOAD_IGNORING_CACHE


class TestBackfill:
    def test_backfill_adds_only_when_absent(self, make_orchestrator, flags_server, store) -> None:
        cache = CacheConfig(use_cache=True, cache_ttl=120, store=store)
        api = make_orchestrator(flags_server.transport(), cache=cache)
        assert api.backfill_cache(GetFlags(), b"[]") is True
        assert api.backfill_cache(GetFlags(), b"[1]") is False
        entry = store.lookup(build_request(BASE_URL, "env-key", GetFlags()))
        assert entry.content == b"[]"
        assert entry.max_age() == 120
        assert entry.header("Date") is not None

    def test_backfill_skips_post(self, make_orchestrator, flags_server, store) -> None:
        cache = CacheConfig(use_cache=True, cache_ttl=120, store=store)
        api = make_orchestrator(flags_server.transport(), cache=cache)
        assert api.backfill_cache(PostAnalytics({"a": 1}), b"{}") is False

    def test_decoded_result_waits_for_backfill(self, make_orchestrator, store) -> None:
        # Non-2xx bodies skip the transport's store write, leaving the entry to backfill.
        server = Recorder(json_response(FLAGS_PAYLOAD, status_code=404))
        cache = CacheConfig(use_cache=True, cache_ttl=120, store=store)
        api = make_orchestrator(server.transport(), cache=cache)
        log = CompletionLog()
        flags = api.request_decoded(GetFlags(), decode_flags, log).result(timeout=5)
        assert len(flags) == 2
        entry = store.lookup(build_request(BASE_URL, "env-key", GetFlags()))
        assert entry is not None
        assert entry.max_age() == 120
        log.wait_for(1)
        assert log.calls[0][1] == "flagwire-test"


# ------------------------------------------------------------------ #
# Delegate bookkeeping
# ------------------------------------------------------------------ #


class TestDelegate:
    def test_last_updated_at(self, make_orchestrator) -> None:
        server = Recorder(
            json_response([], headers={"X-Flagsmith-Document-Updated-At": "1706795236.17"})
        )
        api = make_orchestrator(server.transport())
        assert api.last_updated_at is None
        api.request(GetFlags()).result(timeout=5)
        assert api.last_updated_at == pytest.approx(1706795236.17)

    def test_malformed_updated_at_is_ignored(self, make_orchestrator) -> None:
        server = Recorder(json_response([], headers={"X-Flagsmith-Document-Updated-At": "soon"}))
        api = make_orchestrator(server.transport())
        api.request(GetFlags()).result(timeout=5)
        assert api.last_updated_at is None

    def test_unknown_task_events_are_ignored(self, make_orchestrator, flags_server) -> None:
        api = make_orchestrator(flags_server.transport())
        stray: Any = type("Stray", (), {"task_identifier": -1})()
        api.did_receive_data(stray, b"junk")
        api.did_complete(stray, None)
        assert api.pending_count == 0

    def test_will_cache_response_vetoed_when_cache_off(self, make_orchestrator, flags_server) -> None:
        api = make_orchestrator(flags_server.transport())
        assert api.will_cache_response(None, CachedResponse()) is None  # type: ignore[arg-type]

    def test_will_cache_response_rewrites_max_age(self, make_orchestrator, flags_server, store) -> None:
        cache = CacheConfig(use_cache=True, cache_ttl=45, store=store)
        api = make_orchestrator(flags_server.transport(), cache=cache)
        proposed = CachedResponse(headers={"Cache-Control": "no-cache", "ETag": "x"})
        rewritten = api.will_cache_response(None, proposed)  # type: ignore[arg-type]
        assert rewritten.max_age() == 45
        assert rewritten.header("ETag") == "x"


# ------------------------------------------------------------------ #
# Concurrency
# ------------------------------------------------------------------ #


class TestConcurrency:
    def test_ten_threads_ten_callbacks(self, make_orchestrator) -> None:
        def _echo(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=request.url.params["identifier"].encode())

        api = make_orchestrator(httpx.MockTransport(_echo))
        log = CompletionLog()
        barrier = threading.Barrier(10)
        futures: dict[int, concurrent.futures.Future] = {}

        def _caller(n: int) -> None:
            barrier.wait()
            futures[n] = api.request(GetIdentity(str(n)), log)

        threads = [threading.Thread(target=_caller, args=(n,)) for n in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        log.wait_for(10)
        assert len(log.calls) == 10
        assert {name for _, name in log.calls} == {"flagwire-test"}
        assert all(future.exception() is None for future, _ in log.calls)
        assert {n: futures[n].result(timeout=5) for n in range(10)} == {
            n: str(n).encode() for n in range(10)
        }
        assert api.pending_count == 0

    def test_racing_dispatches_never_see_a_retired_session(self, make_orchestrator) -> None:
        api = make_orchestrator(httpx.MockTransport(json_response([])))
        failures: list[BaseException] = []

        for _ in range(20):
            barrier = threading.Barrier(16)
            futures: list[concurrent.futures.Future] = []
            futures_lock = threading.Lock()

            def _caller() -> None:
                barrier.wait()
                future = api.request(GetFlags())
                with futures_lock:
                    futures.append(future)

            threads = [threading.Thread(target=_caller) for _ in range(16)]
            for t in threads:
                t.start()
            for t in threads:
                t.join()
            for future in futures:
                error = future.exception(timeout=5)
                if error is not None:
                    failures.append(error)

        assert failures == []
        assert api.pending_count == 0

    def test_config_writes_race_with_dispatches(self, make_orchestrator) -> None:
        network = NetworkConfig()
        api = make_orchestrator(httpx.MockTransport(json_response([])), network=network)
        barrier = threading.Barrier(10)
        futures: list[concurrent.futures.Future] = []
        futures_lock = threading.Lock()

        def _caller(n: int) -> None:
            barrier.wait()
            network.additional_headers = {"X-Caller": str(n)}
            future = api.request(GetFlags())
            with futures_lock:
                futures.append(future)

        threads = [threading.Thread(target=_caller, args=(n,)) for n in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert all(f.result(timeout=5) == b"[]" for f in futures)

    def test_concurrent_requests_never_share_a_buffer(self, make_orchestrator) -> None:
        def _sized(request: httpx.Request) -> httpx.Response:
            time.sleep(0.001)
            return httpx.Response(200, content=b"x" * 1000)

        api = make_orchestrator(httpx.MockTransport(_sized))
        with concurrent.futures.ThreadPoolExecutor(max_workers=10) as pool:
            futures = list(pool.map(lambda _: api.request(GetFlags()), range(10)))
        assert all(f.result(timeout=5) == b"x" * 1000 for f in futures)
