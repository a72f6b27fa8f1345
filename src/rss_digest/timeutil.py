"""Timestamp helpers: UTC normalisation, storage format and lenient parsing."""

import re
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime

_DATE_FORMATS = (
    "%Y-%m-%d",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%Y/%m/%d",
    "%d %b %Y",
    "%B %d, %Y",
)

_ZULU = re.compile(r"[zZ]$")


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime | None) -> datetime | None:
    """Convert to aware UTC; naive values are assumed to already be UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_storage(dt: datetime | None) -> str | None:
    """Format a datetime for storage.

    Every value has the same width and offset, so comparing the strings
    compares the instants.
    """
    if dt is None:
        return None
    return ensure_utc(dt).isoformat(timespec="microseconds")


def from_storage(value: str | None) -> datetime | None:
    """Parse a value written by to_storage (or any ISO 8601 string)."""
    if not value:
        return None
    return ensure_utc(datetime.fromisoformat(_ZULU.sub("+00:00", value)))


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse a publisher-supplied date in any of the common feed formats.

    Accepts RFC 822 / RFC 1123 (RSS), RFC 3339 (Atom) and plain
    ``YYYY-MM-DD`` style dates. Returns None when nothing matches.
    """
    if not value:
        return None
    value = value.strip()
    if not value:
        return None

    try:
        return ensure_utc(parsedate_to_datetime(value))
    except (TypeError, ValueError, IndexError):
        pass

    try:
        return ensure_utc(datetime.fromisoformat(_ZULU.sub("+00:00", value)))
    except ValueError:
        pass

    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(value, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    return None


def start_of_today(now: datetime | None = None) -> datetime:
    now = now or datetime.now().astimezone()
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def start_of_yesterday(now: datetime | None = None) -> datetime:
    return start_of_today(now) - timedelta(days=1)


def end_of_yesterday(now: datetime | None = None) -> datetime:
    """Exclusive upper bound of yesterday, i.e. midnight today."""
    return start_of_today(now)


def start_of_week(now: datetime | None = None) -> datetime:
    """Midnight of the most recent Sunday."""
    today = start_of_today(now)
    # isoweekday: Monday=1 .. Sunday=7
    return today - timedelta(days=today.isoweekday() % 7)


def parse_period(period: str, now: datetime | None = None) -> datetime | None:
    """Resolve a period name or date to a UTC cut-off.

    Supported: ``today``, ``yesterday``, ``week`` (week starts on Sunday),
    ``month`` and ``YYYY-MM-DD``. Named periods are computed in local time.
    """
    if period == "today":
        cutoff = start_of_today(now)
    elif period == "yesterday":
        cutoff = start_of_yesterday(now)
    elif period == "week":
        cutoff = start_of_week(now)
    elif period == "month":
        cutoff = start_of_today(now).replace(day=1)
    else:
        try:
            cutoff = datetime.strptime(period, "%Y-%m-%d").replace(tzinfo=timezone.utc)
        except ValueError:
            return None
    return ensure_utc(cutoff)
