"""Storage backends for feeds and entries."""

from rss_digest.storage.base import EntryFilter, FeedStats, OverallStats, Store
from rss_digest.storage.markdown import MarkdownStore
from rss_digest.storage.migrate import MigrateSummary, is_dir_non_empty, migrate_data
from rss_digest.storage.sqlite import SQLiteStore

BACKENDS = ("sqlite", "markdown")


def open_store(backend: str, data_dir: str) -> Store:
    """Build an unconnected store for backend rooted at data_dir."""
    if backend == "sqlite":
        return SQLiteStore.in_dir(data_dir)
    if backend == "markdown":
        return MarkdownStore(data_dir)
    raise ValueError(f"unknown backend: {backend!r}")


__all__ = [
    "BACKENDS",
    "EntryFilter",
    "FeedStats",
    "MarkdownStore",
    "MigrateSummary",
    "OverallStats",
    "SQLiteStore",
    "Store",
    "is_dir_non_empty",
    "migrate_data",
    "open_store",
]
