"""Data models for rss_digest."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime

from rss_digest.timeutil import utcnow


def new_id() -> str:
    """Random 128-bit identifier in canonical hex-dash form."""
    return str(uuid.uuid4())


@dataclass
class Feed:
    """Represents a subscribed RSS/Atom source."""

    url: str
    title: str | None = None
    folder: str = ""
    etag: str | None = None
    last_modified: str | None = None
    last_fetched_at: datetime | None = None
    last_error: str | None = None
    error_count: int = 0
    created_at: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=new_id)

    @property
    def display_name(self) -> str:
        """Title if set, otherwise the URL."""
        return self.title or self.url


@dataclass
class Entry:
    """Represents a single entry from a feed."""

    feed_id: str
    guid: str
    title: str | None = None
    link: str | None = None
    author: str | None = None
    content: str | None = None
    published_at: datetime | None = None
    read: bool = False
    read_at: datetime | None = None
    created_at: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=new_id)

    def mark_read(self, when: datetime | None = None) -> None:
        """Mark as read; read_at stays at the time the entry last became read."""
        if not self.read or self.read_at is None:
            self.read_at = when or utcnow()
        self.read = True

    def mark_unread(self) -> None:
        self.read = False
        self.read_at = None


def new_feed(url: str, title: str | None = None, folder: str = "") -> Feed:
    """Create a Feed with a fresh id and creation time."""
    return Feed(url=url, title=title or None, folder=folder or "")


def new_entry(feed_id: str, guid: str, title: str | None = None) -> Entry:
    """Create an unread Entry with a fresh id and creation time."""
    return Entry(feed_id=feed_id, guid=guid, title=title)
