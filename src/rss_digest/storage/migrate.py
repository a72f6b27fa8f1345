"""Copy feeds and entries from one store into another."""

import logging
import os
from dataclasses import dataclass

from rss_digest.storage.base import EntryFilter, Store

logger = logging.getLogger(__name__)


@dataclass
class MigrateSummary:
    feeds: int = 0
    entries: int = 0


def migrate_data(src: Store, dst: Store) -> MigrateSummary:
    """Copy every feed and its entries from src to dst, preserving all fields.

    The destination is expected to be empty; existing records surface as
    DuplicateURL or DuplicateEntry.
    """
    summary = MigrateSummary()
    with dst.transaction():
        for feed in src.list_feeds():
            dst.create_feed(feed)
            summary.feeds += 1

            entries = src.list_entries(EntryFilter(feed_id=feed.id))
            for entry in entries:
                dst.create_entry(entry)
            summary.entries += len(entries)
            logger.info("Migrated %s (%d entries)", feed.url, len(entries))
    return summary


def is_dir_non_empty(path: str) -> bool:
    """True if path is an existing directory with at least one child."""
    try:
        with os.scandir(path) as it:
            return any(True for _ in it)
    except FileNotFoundError:
        return False
