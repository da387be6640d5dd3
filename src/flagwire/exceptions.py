"""Exception hierarchy for flagwire.

All exceptions inherit from :class:`FlagwireError`, which carries an
``exit_code`` attribute mapped to a constant from :mod:`flagwire.exit_codes`.
The orchestrator never raises these across its asynchronous boundary; they
are set on the :class:`concurrent.futures.Future` returned by
:meth:`~flagwire.orchestrator.Orchestrator.request`. The CLI entry point in
:func:`flagwire.app.main` catches ``FlagwireError`` and exits with the
matching code.

Subclass hierarchy::

    FlagwireError (exit 1)
    +-- MissingCredentialError    (exit 3)
    +-- RequestConstructionError  (exit 2)
    +-- UnhandledError            (exit 6)
    +-- CacheMissError            (exit 6)
    +-- DecodeError               (exit 7)
    +-- ConfigError               (exit 1)
"""

from __future__ import annotations

from flagwire.exit_codes import (
    EXIT_DECODE_ERROR,
    EXIT_GENERIC_FAILURE,
    EXIT_INVALID_REQUEST,
    EXIT_MISSING_CREDENTIAL,
    EXIT_TRANSPORT_ERROR,
)


class FlagwireError(Exception):
    """Base exception for all flagwire errors.

    Args:
        message: Human-readable error description.
        exit_code: Optional override for the class-level exit code.
    """

    exit_code: int = EXIT_GENERIC_FAILURE

    def __init__(self, message: str, exit_code: int | None = None):
        super().__init__(message)
        if exit_code is not None:
            self.exit_code = exit_code


class MissingCredentialError(FlagwireError):
    """Raised when a request is made without an environment API key."""

    exit_code = EXIT_MISSING_CREDENTIAL

    def __init__(self, message: str = "API key not set") -> None:
        super().__init__(message)


class RequestConstructionError(FlagwireError):
    """Raised when an operation cannot be turned into an HTTP request."""

    exit_code = EXIT_INVALID_REQUEST


class UnhandledError(FlagwireError):
    """Wraps a native transport error (timeout, connectivity, TLS, DNS).

    The original exception is kept unchanged on :attr:`error` and is also
    chained as ``__cause__``.
    """

    exit_code = EXIT_TRANSPORT_ERROR

    def __init__(self, error: BaseException) -> None:
        super().__init__(f"Unhandled transport error: {error!r}")
        self.error = error
        self.__cause__ = error


class CacheMissError(FlagwireError):
    """Raised when a cache-only request finds no stored response."""

    exit_code = EXIT_TRANSPORT_ERROR


class DecodeError(FlagwireError):
    """Raised when response bytes do not decode into the expected type."""

    exit_code = EXIT_DECODE_ERROR

    def __init__(self, error: BaseException) -> None:
        super().__init__(f"Unable to decode response: {error}")
        self.error = error
        self.__cause__ = error


class ConfigError(FlagwireError):
    """Raised for configuration problems (unreadable project file, bad env values)."""

    exit_code = EXIT_GENERIC_FAILURE


def wrap_error(error: BaseException) -> FlagwireError:
    """Return *error* unchanged if it is a :class:`FlagwireError`, else wrap it.

    Args:
        error: Any exception surfaced by a request.

    Returns:
        A :class:`FlagwireError`; foreign exceptions become
        :class:`UnhandledError`.
    """
    if isinstance(error, FlagwireError):
        return error
    return UnhandledError(error)
