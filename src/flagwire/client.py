"""High-level client for the flags API.

:class:`FlagClient` assembles the pieces an application needs: one live
:class:`~flagwire.models.NetworkConfig` / :class:`~flagwire.models.CacheConfig`
pair, a completion loop, an :class:`~flagwire.orchestrator.Orchestrator`
for polling and a :class:`~flagwire.streaming.StreamManager` for real-time
updates. Both collaborators share the network configuration, so a change
such as ``client.network_config.request_timeout = 5`` applies to the next
request and the next stream alike.

Every method returns a :class:`concurrent.futures.Future`; call
``.result()`` to block, or pass ``completion=`` to be called back on the
completion loop thread.

Example::

    with FlagClient(api_key="ser.abc123") as client:
        for flag in client.get_feature_flags().result():
            print(flag.feature.name, flag.enabled)
"""

from __future__ import annotations

import concurrent.futures
import logging
from pathlib import Path
from typing import Any, Optional

import httpx

from flagwire.cache import ResponseStore, get_shared_store
from flagwire.decoders import decode_flags, decode_identity
from flagwire.loop import EventLoopThread
from flagwire.models import DEFAULT_BASE_URL, CacheConfig, ClientSettings, NetworkConfig, Trait
from flagwire.orchestrator import Completion, Orchestrator
from flagwire.router import GetFlags, GetIdentity, PostAnalytics, PostTrait, PostTraits
from flagwire.streaming import DEFAULT_STREAM_URL, StreamCompletion, StreamManager

logger = logging.getLogger(__name__)


class FlagClient:
    """Facade over the orchestrator and the stream manager.

    Args:
        api_key: Environment key.
        base_url: API root URL.
        network_config: Live network settings; a default instance is
            created when omitted.
        cache_config: Live cache settings; a default instance (caching
            off, shared store) is created when omitted.
        stream_url: Root of the real-time service.
        transport: Optional httpx transport used for every session.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        base_url: str = DEFAULT_BASE_URL,
        network_config: Optional[NetworkConfig] = None,
        cache_config: Optional[CacheConfig] = None,
        stream_url: str = DEFAULT_STREAM_URL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.network_config = network_config or NetworkConfig()
        self.cache_config = cache_config or CacheConfig()
        self._loop = EventLoopThread()
        self.orchestrator = Orchestrator(
            self.network_config,
            self.cache_config,
            base_url=base_url,
            api_key=api_key,
            loop=self._loop,
            transport=transport,
        )
        self.streams = StreamManager(
            self.network_config,
            api_key=api_key,
            base_url=stream_url,
            loop=self._loop,
            transport=transport,
        )

    @classmethod
    def from_settings(
        cls,
        settings: ClientSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> FlagClient:
        """Build a client from resolved :class:`~flagwire.models.ClientSettings`.

        A ``cache_dir`` in the settings gets its own
        :class:`~flagwire.cache.ResponseStore`; otherwise the shared store
        is used.
        """
        store: Any = (
            ResponseStore(Path(settings.cache_dir)) if settings.cache_dir else get_shared_store()
        )
        network = NetworkConfig()
        cache = CacheConfig(store=store)
        settings.apply(network, cache)
        return cls(
            settings.api_key,
            base_url=settings.base_url,
            network_config=network,
            cache_config=cache,
            transport=transport,
        )

    def __enter__(self) -> FlagClient:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def close(self) -> None:
        """Stop streaming, close the current session and stop the loop."""
        self.streams.stop()
        self.orchestrator.close()
        self._loop.stop()

    # ------------------------------------------------------------------ #
    # Credentials
    # ------------------------------------------------------------------ #

    @property
    def api_key(self) -> Optional[str]:
        return self.orchestrator.api_key

    @api_key.setter
    def api_key(self, value: Optional[str]) -> None:
        self.orchestrator.api_key = value
        self.streams.api_key = value

    @property
    def base_url(self) -> str:
        return self.orchestrator.base_url

    @base_url.setter
    def base_url(self, value: str) -> None:
        self.orchestrator.base_url = value

    @property
    def last_updated_at(self) -> Optional[float]:
        return self.orchestrator.last_updated_at

    # ------------------------------------------------------------------ #
    # API calls
    # ------------------------------------------------------------------ #

    def get_feature_flags(
        self, identity: Optional[str] = None, completion: Optional[Completion] = None
    ) -> concurrent.futures.Future:
        """Fetch the environment's flags, or an identity's flags when *identity* is given.

        Returns:
            A future resolving to ``list[Flag]``.
        """
        if identity is None:
            return self.orchestrator.request_decoded(GetFlags(), decode_flags, completion)

        def _flags(data: bytes) -> Any:
            return decode_identity(data).flags

        return self.orchestrator.request_decoded(GetIdentity(identity), _flags, completion)

    def get_identity(
        self, identifier: str, completion: Optional[Completion] = None
    ) -> concurrent.futures.Future:
        """Fetch flags and traits for *identifier*, resolving to an :class:`Identity`."""
        return self.orchestrator.request_decoded(
            GetIdentity(identifier), decode_identity, completion
        )

    def set_trait(
        self, trait: Trait, identifier: str, completion: Optional[Completion] = None
    ) -> concurrent.futures.Future:
        """Set one trait on *identifier*, resolving to the stored :class:`Trait`."""
        return self.orchestrator.request_decoded(
            PostTrait(trait, identifier), _decode_trait, completion
        )

    def set_traits(
        self, traits: list[Trait], identifier: str, completion: Optional[Completion] = None
    ) -> concurrent.futures.Future:
        """Replace traits on *identifier*, resolving to the updated :class:`Identity`."""
        return self.orchestrator.request_decoded(
            PostTraits(identifier, tuple(traits)), decode_identity, completion
        )

    def post_analytics(
        self, events: dict[str, int], completion: Optional[Completion] = None
    ) -> concurrent.futures.Future:
        """Report flag evaluation counts. Resolves to ``None``."""
        return self.orchestrator.request_void(PostAnalytics(events), completion)

    # ------------------------------------------------------------------ #
    # Real-time updates
    # ------------------------------------------------------------------ #

    def start_realtime_updates(self, completion: StreamCompletion) -> None:
        self.streams.start(completion)

    def stop_realtime_updates(self) -> None:
        self.streams.stop()


def _decode_trait(data: bytes) -> Trait:
    return Trait.model_validate_json(data)
