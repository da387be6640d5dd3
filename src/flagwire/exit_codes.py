"""Numeric process exit codes used by the ``flagwire`` command line.

Each constant maps to a specific error category and is referenced by the
corresponding :class:`~flagwire.exceptions.FlagwireError` subclass.
Shell wrappers can inspect the exit code to tell a missing API key apart
from an unreachable server without parsing stderr.

Example::

    $ flagwire flags
    $ echo $?
    3   # EXIT_MISSING_CREDENTIAL -- no API key configured
"""

EXIT_SUCCESS = 0
"""The command completed successfully."""

EXIT_GENERIC_FAILURE = 1
"""An unclassified error occurred."""

EXIT_INVALID_REQUEST = 2
"""The request could not be constructed (malformed base URL or operation)."""

EXIT_MISSING_CREDENTIAL = 3
"""No environment API key was configured."""

EXIT_TRANSPORT_ERROR = 6
"""A network-level error occurred (timeout, DNS failure, connection refused)."""

EXIT_DECODE_ERROR = 7
"""The response body did not match the expected payload shape."""
