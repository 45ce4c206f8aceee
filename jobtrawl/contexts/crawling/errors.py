"""
Error taxonomy for the crawling context.

Per-target failures (TransportError, IncompleteRecordError) are handled inside
the crawl and never end a run. FatalConfigurationError is the only error that
aborts a run, and even then a summary is produced.
"""

from typing import Optional


class CrawlError(Exception):
    """Base class for crawling errors."""


class TransportError(CrawlError):
    """
    A fetch that did not produce a usable 2xx response.

    Args:
        kind: Coarse transport category ("timeout", "network", "http", "unclassified")
        message: Human readable error text (used for keyword classification)
        status: HTTP status code if a response was received
    """

    def __init__(self, kind: str, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.status = status

    def __repr__(self):
        return f"TransportError(kind={self.kind!r}, status={self.status!r}, message={self.message!r})"


class MalformedStructuredDataError(CrawlError):
    """Embedded JSON (state payload or JSON-LD) could not be decoded."""


class IncompleteRecordError(CrawlError):
    """A job record is missing its title or URL."""


class FatalConfigurationError(CrawlError):
    """The run cannot start with the given configuration."""
