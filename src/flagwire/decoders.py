"""Response decoders built on :class:`pydantic.TypeAdapter`.

A decoder is any callable taking the raw response bytes and returning a
typed value, raising on malformed input. The orchestrator wraps whatever it
raises in :class:`~flagwire.exceptions.DecodeError`.

Example::

    from flagwire.decoders import model_decoder
    from flagwire.models import Flag

    decode_flags = model_decoder(list[Flag])
    flags = decode_flags(b'[{"feature": {"id": 1, "name": "beta"}, "enabled": true}]')
"""

from __future__ import annotations

from typing import Any, Callable, TypeVar

from pydantic import TypeAdapter

from flagwire.models import Flag, Identity

T = TypeVar("T")

Decoder = Callable[[bytes], T]


def model_decoder(target: Any) -> Decoder[Any]:
    """Return a decoder validating JSON bytes into *target*.

    Args:
        target: Any type pydantic can validate (a model, ``list[Model]``,
            ``dict[str, int]``...).
    """
    adapter: TypeAdapter[Any] = TypeAdapter(target)

    def _decode(data: bytes) -> Any:
        return adapter.validate_json(data)

    return _decode


decode_flags: Decoder[list[Flag]] = model_decoder(list[Flag])
decode_identity: Decoder[Identity] = model_decoder(Identity)
