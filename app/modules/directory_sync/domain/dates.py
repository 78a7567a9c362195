"""
Lenient parsing of directory date attributes.

Graph returns ISO-8601 strings, but hire/leave dates are free-form HR data and
can be anything. A value that does not parse is dropped (and logged) so the
rest of the record still syncs.
"""

import re
from datetime import date, datetime, timezone

import structlog

logger = structlog.get_logger()

_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def today() -> date:
    return utc_now().date()


def safe_parse_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    raw = value.strip()
    # fromisoformat rejects a trailing Z before 3.11
    if raw.endswith(("Z", "z")):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        # shifting an offset near year 1 or 9999 to UTC leaves the datetime range
        return parsed.astimezone(timezone.utc)
    except (ValueError, OverflowError):
        logger.warning("directory_date_unparseable", value=value)
        return None


def safe_parse_date(value: str | None) -> date | None:
    """Calendar date of ``value``, or None unless it formats to ``YYYY-MM-DD``."""
    parsed = safe_parse_datetime(value)
    if parsed is None:
        return None
    formatted = parsed.date().isoformat()
    if not _ISO_DATE.match(formatted):
        logger.warning("directory_date_out_of_range", value=value)
        return None
    return parsed.date()


def start_date_or_today(value: str | None) -> date:
    return safe_parse_date(value) or today()
