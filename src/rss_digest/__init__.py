"""rss_digest: a command-line RSS/Atom feed reader with pluggable storage."""

__version__ = "1.0.0"
