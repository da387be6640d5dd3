"""flagwire -- request and cache orchestration for a remote feature-flag service.

The package dispatches feature-flag API calls over a transport session
rebuilt from the current network settings before every request, chooses a
cache policy per request from the current cache settings, and delivers
every result through a future on a single completion loop.

Typical use::

    from flagwire import FlagClient

    with FlagClient(api_key="ser.abc123") as client:
        client.cache_config.use_cache = True
        client.cache_config.cache_ttl = 300
        flags = client.get_feature_flags().result()

Modules:
    client: :class:`FlagClient` facade.
    orchestrator: Cache-policy resolution, session swaps, task registry.
    transport: httpx-backed sessions and data tasks.
    streaming: Real-time updates over server-sent events.
    models: Live configuration, settings and payload models.
    cache: diskcache-backed response store.
    dates: HTTP ``Date`` header parsing.
    config: Settings resolution and XDG directories.
    exceptions: Exception hierarchy with exit-code mapping.
    app: Typer CLI entry point.
"""

__version__ = "0.1.0"

from flagwire.client import FlagClient  # noqa: E402
from flagwire.exceptions import (  # noqa: E402
    CacheMissError,
    ConfigError,
    DecodeError,
    FlagwireError,
    MissingCredentialError,
    RequestConstructionError,
    UnhandledError,
)
from flagwire.models import CacheConfig, CachePolicy, NetworkConfig  # noqa: E402
from flagwire.orchestrator import Orchestrator  # noqa: E402

__all__ = [
    "CacheConfig",
    "CacheMissError",
    "CachePolicy",
    "ConfigError",
    "DecodeError",
    "FlagClient",
    "FlagwireError",
    "MissingCredentialError",
    "NetworkConfig",
    "Orchestrator",
    "RequestConstructionError",
    "UnhandledError",
    "__version__",
]
