"""HTTP ``Date`` header parsing.

HTTP/1.1 allows three date grammars (RFC 9110, section 5.6.7) and servers
still emit all of them::

    Mon, 02 Jan 2006 15:04:05 GMT      IMF-fixdate (preferred)
    Monday, 02-Jan-06 15:04:05 GMT     RFC 850 (obsolete)
    Mon Jan  2 15:04:05 2006           ANSI C asctime() (obsolete)

:func:`parse_http_date` checks the value against each grammar in that
order and hands the first match to :func:`email.utils.parsedate_to_datetime`,
which reads English day and month names regardless of the process locale.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from email.utils import format_datetime, parsedate_to_datetime
from typing import Optional

_DAY = r"(?:Mon|Tue|Wed|Thu|Fri|Sat|Sun)"
_LONG_DAY = r"(?:Monday|Tuesday|Wednesday|Thursday|Friday|Saturday|Sunday)"
_MONTH = r"(?:Jan|Feb|Mar|Apr|May|Jun|Jul|Aug|Sep|Oct|Nov|Dec)"
_TIME = r"\d{2}:\d{2}:\d{2}"

_GRAMMARS = (
    re.compile(rf"{_DAY}, \d{{2}} {_MONTH} \d{{4}} {_TIME} GMT", re.IGNORECASE),
    re.compile(rf"{_LONG_DAY}, \d{{2}}-{_MONTH}-\d{{2}} {_TIME} GMT", re.IGNORECASE),
    re.compile(rf"{_DAY} {_MONTH} [ \d]\d {_TIME} \d{{4}}", re.IGNORECASE),
)


def parse_http_date(value: Optional[str]) -> Optional[datetime]:
    """Parse an HTTP date header value.

    Args:
        value: Raw header value, e.g. ``"Mon, 02 Jan 2006 15:04:05 GMT"``.

    Returns:
        An aware UTC :class:`~datetime.datetime`, or ``None`` when the value
        is missing, matches none of the three grammars, or names an
        impossible date.
    """
    if not value:
        return None
    text = value.strip()
    for grammar in _GRAMMARS:
        if grammar.fullmatch(text) is None:
            continue
        try:
            parsed = parsedate_to_datetime(text)
        except (TypeError, ValueError):
            return None
        # asctime carries no zone; HTTP dates are always UTC.
        if parsed.tzinfo is None:
            return parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)
    return None


def format_http_date(moment: datetime) -> str:
    """Format *moment* as an IMF-fixdate string (``Mon, 02 Jan 2006 15:04:05 GMT``)."""
    return format_datetime(moment.astimezone(timezone.utc), usegmt=True)
