from __future__ import annotations


class CrawlerError(Exception):
    """Base class for crawler errors."""


class InvalidConfigurationError(CrawlerError):
    """Session-level misconfiguration detected before any network activity."""


class SearchError(CrawlerError):
    """The search provider could not produce results for a keyword."""


class NoURLsFoundError(SearchError):
    def __init__(self, keyword: str):
        super().__init__(f"No URLs found for: {keyword}")
        self.keyword = keyword


class PageParseError(CrawlerError):
    """A fetched document could not be turned into page text and links."""


class OracleError(CrawlerError):
    """An oracle call failed or returned a reply that violates its contract."""
