"""Exception types shared across the ingestion pipeline and storage."""


class DigestError(Exception):
    """Base class for all errors raised by rss_digest."""


class ConfigError(DigestError):
    """Raised when the configuration file is unreadable or invalid."""


# --- Fetching ---


class FetchError(DigestError):
    """Base class for errors raised while fetching a URL."""


class InvalidURL(FetchError):
    """Raised when a URL is malformed or does not use http/https."""


class PrivateAddressBlocked(FetchError):
    """Raised when a URL resolves to a private network address."""


class NetworkError(FetchError):
    """Raised on DNS, connection, read or timeout failures."""


class UnexpectedStatus(FetchError):
    """Raised when the server answers with something other than 200 or 304."""

    def __init__(self, status_code: int):
        super().__init__(f"unexpected status code: {status_code}")
        self.status_code = status_code


class ResponseTooLarge(FetchError):
    """Raised when a response body exceeds the size limit."""


# --- Parsing and discovery ---


class ParseError(DigestError):
    """Raised when a document is not a valid RSS or Atom feed."""


class NoFeedFound(DigestError):
    """Raised when discovery exhausts every strategy."""


# --- Storage ---


class StoreError(DigestError):
    """Base class for errors raised by a Store."""


class DuplicateURL(StoreError):
    """Raised when a feed with the same URL already exists."""


class DuplicateEntry(StoreError):
    """Raised when an entry with the same (feed_id, guid) already exists."""


class NotFound(StoreError):
    """Raised when a lookup matches nothing."""


class AmbiguousPrefix(StoreError):
    """Raised when an id prefix matches more than one record."""

    def __init__(self, prefix: str, count: int):
        super().__init__(f"ambiguous prefix {prefix} matches {count} records")
        self.prefix = prefix
        self.count = count


class PrefixTooShort(StoreError):
    """Raised when an id prefix is shorter than the minimum length."""


class StorageError(StoreError):
    """Raised when the backend fails; always chained to the underlying cause."""
