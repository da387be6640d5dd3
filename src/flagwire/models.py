"""Canonical Pydantic models shared across all flagwire modules.

The models fall into three groups:

**Live configuration** -- mutable, shared between threads, read on every
dispatch: :class:`NetworkConfig` and :class:`CacheConfig`. Field writes are
serialised by a per-instance lock and :meth:`NetworkConfig.snapshot` gives a
consistent copy for building a transport session. Replace
``additional_headers`` with a new dict rather than mutating it in place.

**Session and settings models** -- immutable records derived from the live
configuration: :class:`SessionConfiguration` and :class:`ClientSettings`.

**Payload models** -- the shapes returned by the flags API and produced by
:mod:`flagwire.decoders`: :class:`Feature`, :class:`Flag`, :class:`Trait`
and :class:`Identity`.
"""

from __future__ import annotations

import enum
import threading
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

DEFAULT_BASE_URL = "https://edge.api.flagsmith.com/api/v1/"
"""Base URL used when none is configured."""


def _shared_store() -> Any:
    from flagwire.cache import get_shared_store

    return get_shared_store()


class _LiveConfig(BaseModel):
    """Base for configuration records mutated from arbitrary threads.

    Every field assignment is validated and performed under the instance
    lock, so concurrent writers never interleave inside a single field
    update. Reads of a single field need no lock.
    """

    model_config = ConfigDict(validate_assignment=True, arbitrary_types_allowed=True)

    _lock: Any = PrivateAttr(default_factory=threading.RLock)

    def __setattr__(self, name: str, value: Any) -> None:
        if name.startswith("_"):
            super().__setattr__(name, value)
            return
        with self._lock:
            super().__setattr__(name, value)


# --- Live configuration ---


class NetworkConfig(_LiveConfig):
    """Transport tuning parameters applied to every subsequently built session.

    No field is range-checked: zero and negative timeouts are stored
    verbatim and handed to the transport as-is.

    Example::

        config = NetworkConfig()
        config.request_timeout = 1.0
        config.additional_headers = {"X-Client-Version": "1.0.0"}
    """

    request_timeout: float = Field(
        default=60.0, description="Per-operation timeout in seconds"
    )
    resource_timeout: float = Field(
        default=604800.0,
        description="Deadline in seconds for the whole exchange, redirects included",
    )
    waits_for_connectivity: bool = Field(
        default=True, description="Wait for connectivity instead of failing fast"
    )
    allows_cellular_access: bool = Field(
        default=True, description="Allow metered (cellular) interfaces"
    )
    max_connections_per_host: int = Field(
        default=6, description="Connection pool size for the API host"
    )
    additional_headers: dict[str, str] = Field(
        default_factory=dict, description="Headers merged into every request"
    )
    use_pipelining: bool = Field(default=True, description="Allow request pipelining")
    should_set_cookies: bool = Field(
        default=True, description="Accept and send cookies set by the server"
    )

    def snapshot(self) -> NetworkConfig:
        """Return a detached copy taken under the instance lock."""
        with self._lock:
            return NetworkConfig(
                request_timeout=self.request_timeout,
                resource_timeout=self.resource_timeout,
                waits_for_connectivity=self.waits_for_connectivity,
                allows_cellular_access=self.allows_cellular_access,
                max_connections_per_host=self.max_connections_per_host,
                additional_headers=dict(self.additional_headers),
                use_pipelining=self.use_pipelining,
                should_set_cookies=self.should_set_cookies,
            )


class CacheConfig(_LiveConfig):
    """Cache policy consulted by the orchestrator on every request.

    ``store`` defaults to the process-wide store from
    :func:`flagwire.cache.get_shared_store`, so every orchestrator sees the
    same cached responses unless a caller injects its own.
    """

    use_cache: bool = Field(default=False, description="Read and write the response cache")
    cache_ttl: float = Field(
        default=0.0, description="Freshness window in seconds for cached responses"
    )
    skip_api: bool = Field(
        default=False,
        description="Serve fresh cached responses without contacting the network",
    )
    store: Any = Field(default_factory=_shared_store, exclude=True)


# --- Session and settings ---


class SessionConfiguration(BaseModel):
    """Immutable settings a transport session was built with.

    Produced by :func:`flagwire.transport.create_session` from a
    :class:`NetworkConfig` snapshot plus the cache store, and exposed as
    ``session.configuration`` so callers can inspect exactly what a
    dispatched request used.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    request_timeout: float
    resource_timeout: float
    waits_for_connectivity: bool
    allows_cellular_access: bool
    max_connections_per_host: int
    additional_headers: dict[str, str] = Field(default_factory=dict)
    use_pipelining: bool
    should_set_cookies: bool
    cache_enabled: bool = False
    cache_ttl: float = 0.0
    store: Any = Field(default=None, exclude=True)


class ClientSettings(BaseModel):
    """Resolved settings used to assemble a :class:`~flagwire.client.FlagClient`.

    Produced by :func:`flagwire.config.resolve_settings`. ``None`` values
    mean "keep the model default".
    """

    api_key: Optional[str] = None
    base_url: str = DEFAULT_BASE_URL
    request_timeout: Optional[float] = None
    resource_timeout: Optional[float] = None
    additional_headers: dict[str, str] = Field(default_factory=dict)
    use_cache: Optional[bool] = None
    cache_ttl: Optional[float] = None
    skip_api: Optional[bool] = None
    cache_dir: Optional[str] = Field(
        default=None, description="Directory for the disk cache (defaults to the XDG cache dir)"
    )

    def apply(self, network: NetworkConfig, cache: CacheConfig) -> None:
        """Copy every explicitly set value onto the live configs."""
        if self.request_timeout is not None:
            network.request_timeout = self.request_timeout
        if self.resource_timeout is not None:
            network.resource_timeout = self.resource_timeout
        if self.additional_headers:
            network.additional_headers = dict(self.additional_headers)
        if self.use_cache is not None:
            cache.use_cache = self.use_cache
        if self.cache_ttl is not None:
            cache.cache_ttl = self.cache_ttl
        if self.skip_api is not None:
            cache.skip_api = self.skip_api


# --- Payload models ---


class Feature(BaseModel):
    """A feature definition as returned inside a flag."""

    model_config = ConfigDict(extra="ignore")

    id: int
    name: str
    type: Optional[str] = None
    description: Optional[str] = None


class Flag(BaseModel):
    """The state of one feature for an environment or identity."""

    model_config = ConfigDict(extra="ignore")

    feature: Feature
    feature_state_value: Union[bool, int, float, str, None] = None
    enabled: bool = False


class Trait(BaseModel):
    """A key/value trait attached to an identity."""

    model_config = ConfigDict(extra="ignore")

    trait_key: str
    trait_value: Union[bool, int, float, str, None] = None
    identifier: Optional[str] = Field(
        default=None, description="Identity the trait belongs to (write requests only)"
    )


class Identity(BaseModel):
    """Flags and traits for a single identity."""

    model_config = ConfigDict(extra="ignore")

    flags: list[Flag] = Field(default_factory=list)
    traits: list[Trait] = Field(default_factory=list)
    identifier: Optional[str] = None


class CachePolicy(str, enum.Enum):
    """Cache directive attached to an :class:`~flagwire.router.ApiRequest`.

    Chosen per request by the orchestrator and honoured by the transport
    session when it runs the request.
    """

    USE_PROTOCOL_POLICY = "use_protocol_policy"
    """Reuse a stored response while its ``max-age`` holds, revalidate otherwise."""

    RELOAD_IGNORING_CACHE = "reload_ignoring_cache"
    """Always load from the network; never read the store."""

    RETURN_CACHE_DATA_ELSE_LOAD = "return_cache_data_else_load"
    """Serve any stored response regardless of age, loading only on a miss."""

    RETURN_CACHE_DATA_DONT_LOAD = "return_cache_data_dont_load"
    """Serve the stored response; fail with a cache miss rather than load."""
