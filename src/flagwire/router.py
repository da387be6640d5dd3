"""Request construction: logical API operations to concrete HTTP requests.

Each operation class describes one call against the flags API. The
:func:`build_request` function turns an operation, a base URL and an
environment key into an :class:`ApiRequest` ready for a transport session.

Operations::

    GetFlags()                        GET  flags/
    GetIdentity("user-1")             GET  identities/?identifier=user-1
    PostTrait(trait, "user-1")        POST traits/
    PostTraits("user-1", [traits])    POST identities/
    PostAnalytics({"feature": 3})     POST analytics/flags/
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Optional, Union

import httpx

from flagwire.exceptions import RequestConstructionError
from flagwire.models import CachePolicy, Trait

ENVIRONMENT_KEY_HEADER = "X-Environment-Key"


@dataclass
class ApiRequest:
    """A fully formed HTTP request plus the cache directive to run it with.

    ``headers`` holds the per-request headers only; session-wide headers from
    :class:`~flagwire.models.NetworkConfig` are merged in by the session's
    HTTP client and do not take part in cache identity.
    """

    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    content: Optional[bytes] = None
    cache_policy: CachePolicy = CachePolicy.USE_PROTOCOL_POLICY


@dataclass(frozen=True)
class GetFlags:
    """Fetch the environment's flags."""

    method = "GET"
    path = "flags/"

    def query(self) -> dict[str, str]:
        return {}

    def body(self) -> Any:
        return None


@dataclass(frozen=True)
class GetIdentity:
    """Fetch flags and traits for one identity."""

    identifier: str
    method = "GET"
    path = "identities/"

    def query(self) -> dict[str, str]:
        return {"identifier": self.identifier}

    def body(self) -> Any:
        return None


@dataclass(frozen=True)
class PostTrait:
    """Set a single trait on an identity."""

    trait: Trait
    identifier: str
    method = "POST"
    path = "traits/"

    def query(self) -> dict[str, str]:
        return {}

    def body(self) -> Any:
        return {
            "identity": {"identifier": self.identifier},
            "trait_key": self.trait.trait_key,
            "trait_value": self.trait.trait_value,
        }


@dataclass(frozen=True)
class PostTraits:
    """Replace several traits on an identity, returning its updated flags."""

    identifier: str
    traits: tuple[Trait, ...]
    method = "POST"
    path = "identities/"

    def query(self) -> dict[str, str]:
        return {}

    def body(self) -> Any:
        return {
            "identifier": self.identifier,
            "traits": [
                {"trait_key": t.trait_key, "trait_value": t.trait_value} for t in self.traits
            ],
        }


@dataclass(frozen=True)
class PostAnalytics:
    """Report flag evaluation counts."""

    events: dict[str, int]
    method = "POST"
    path = "analytics/flags/"

    def query(self) -> dict[str, str]:
        return {}

    def body(self) -> Any:
        return dict(self.events)


Operation = Union[GetFlags, GetIdentity, PostTrait, PostTraits, PostAnalytics]


def _resolve_base(base_url: str) -> httpx.URL:
    try:
        url = httpx.URL(base_url)
    except (httpx.InvalidURL, TypeError) as exc:
        raise RequestConstructionError(f"Invalid base URL {base_url!r}: {exc}") from exc
    if url.scheme not in ("http", "https") or not url.host:
        raise RequestConstructionError(f"Base URL must be absolute http(s): {base_url!r}")
    if not url.path.endswith("/"):
        url = url.copy_with(path=url.path + "/")
    return url


def build_request(base_url: str, api_key: str, operation: Operation) -> ApiRequest:
    """Build the HTTP request for *operation*.

    Args:
        base_url: API root, e.g. ``https://edge.api.flagsmith.com/api/v1/``.
            A missing trailing slash is added.
        api_key: Environment key sent in the ``X-Environment-Key`` header.
        operation: One of the operation classes in this module.

    Returns:
        An :class:`ApiRequest` with the default cache policy.

    Raises:
        RequestConstructionError: If the base URL is not an absolute
            http(s) URL, the operation is unknown, or the body cannot be
            serialised.
    """
    if not all(hasattr(operation, attr) for attr in ("method", "path", "query", "body")):
        raise RequestConstructionError(f"Unsupported operation: {operation!r}")

    base = _resolve_base(base_url)
    url = base.join(operation.path)
    query = operation.query()
    if query:
        url = url.copy_merge_params(query)

    headers = {ENVIRONMENT_KEY_HEADER: api_key, "Accept": "application/json"}
    content: Optional[bytes] = None
    payload = operation.body()
    if payload is not None:
        try:
            content = json.dumps(payload).encode("utf-8")
        except (TypeError, ValueError) as exc:
            raise RequestConstructionError(f"Cannot serialise request body: {exc}") from exc
        headers["Content-Type"] = "application/json"

    return ApiRequest(method=operation.method, url=str(url), headers=headers, content=content)
