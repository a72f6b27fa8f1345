"""RSS/Atom feed parsing using feedparser."""

import calendar
import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from time import struct_time

import feedparser

from rss_digest.errors import ParseError
from rss_digest.timeutil import parse_timestamp

logger = logging.getLogger(__name__)


@dataclass
class ParsedEntry:
    """A single item normalised across RSS and Atom."""

    guid: str
    title: str | None = None
    link: str | None = None
    author: str | None = None
    published_at: datetime | None = None
    content: str | None = None


@dataclass
class ParsedFeed:
    """Result of parsing an RSS/Atom feed."""

    title: str | None
    entries: list[ParsedEntry] = field(default_factory=list)


def parse_feed(data: bytes | str) -> ParsedFeed:
    """Parse an RSS or Atom document.

    Args:
        data: The raw feed document.

    Returns:
        ParsedFeed with entries in document order.

    Raises:
        ParseError: If the document is not recognisable as RSS or Atom.
    """
    if isinstance(data, str):
        # feedparser treats a str that looks like a URL or path as a location
        data = data.encode("utf-8")
    if not data or not data.strip():
        raise ParseError("empty document")

    parsed = feedparser.parse(data)

    if not parsed.get("version"):
        if parsed.bozo and parsed.get("bozo_exception") is not None:
            raise ParseError(
                f"not a valid RSS or Atom feed: {parsed.bozo_exception}"
            )
        raise ParseError("not a valid RSS or Atom feed")

    if parsed.bozo:
        logger.debug("Feed has formatting issues: %s", parsed.get("bozo_exception"))

    return ParsedFeed(
        title=_text(parsed.feed.get("title")),
        entries=[_extract_entry(entry) for entry in parsed.entries],
    )


def _extract_entry(entry: dict) -> ParsedEntry:
    """Map a feedparser entry onto the canonical fields."""
    title = _text(entry.get("title"))
    link = _entry_link(entry)
    published_at = _parse_date(entry)

    guid = _text(entry.get("id")) or link
    if not guid:
        raw_date = entry.get("published") or entry.get("updated") or ""
        guid = fallback_guid(title, raw_date)

    return ParsedEntry(
        guid=guid,
        title=title,
        link=link,
        author=_text(entry.get("author")),
        published_at=published_at,
        content=_entry_content(entry),
    )


def fallback_guid(title: str | None, raw_date: str) -> str:
    """Stable identity for items that carry neither a guid nor a link."""
    digest = hashlib.sha256(f"{title or ''}|{raw_date}".encode("utf-8"))
    return digest.hexdigest()


def _entry_link(entry: dict) -> str | None:
    """First link whose rel is not "self"."""
    for link in entry.get("links") or []:
        if link.get("rel", "alternate") != "self" and link.get("href"):
            return link["href"].strip()
    return _text(entry.get("link"))


def _entry_content(entry: dict) -> str | None:
    """content:encoded / Atom content first, then description / summary."""
    for content in entry.get("content") or []:
        value = _text(content.get("value"))
        if value:
            return value
    return _text(entry.get("summary")) or _text(entry.get("description"))


def _parse_date(entry: dict) -> datetime | None:
    """Parse publication date from a feedparser entry."""
    for field_name in ("published_parsed", "updated_parsed"):
        time_struct = entry.get(field_name)
        if isinstance(time_struct, struct_time):
            try:
                # feedparser normalises to UTC
                return datetime.fromtimestamp(calendar.timegm(time_struct), tz=timezone.utc)
            except (ValueError, OverflowError):
                continue

    for field_name in ("published", "updated"):
        parsed = parse_timestamp(entry.get(field_name))
        if parsed is not None:
            return parsed
    return None


def _text(value) -> str | None:
    if value is None:
        return None
    value = str(value).strip()
    return value or None
