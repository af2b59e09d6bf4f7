from __future__ import annotations

from enum import StrEnum
from typing import Iterable, Protocol
from urllib.parse import parse_qs, quote_plus, urldefrag, urljoin, urlparse

import httpx
from bs4 import BeautifulSoup
from loguru import logger

from deepcrawl.errors import InvalidConfigurationError, NoURLsFoundError, SearchError
from deepcrawl.tools.page_fetcher import DEFAULT_HEADERS

QUERY_PLACEHOLDER = "{query}"

# Hosts of the engines themselves (all TLDs); their links are never results.
ENGINE_HOST_PATTERNS = (
    "duckduckgo.",
    ".google.",
    "google.com",
    ".bing.",
    "bing.com",
    "yahoo.com",
    ".yahoo.",
    "yandex.",
    "baidu.com",
)


class SearchEngine(StrEnum):
    DUCKDUCKGO = "duckduckgo"
    GOOGLE = "google"
    BING = "bing"

    @property
    def url_template(self) -> str:
        return SEARCH_URL_TEMPLATES[self]


SEARCH_URL_TEMPLATES = {
    SearchEngine.DUCKDUCKGO: "https://duckduckgo.com/html/?q={query}",
    SearchEngine.GOOGLE: "https://www.google.com/search?q={query}",
    SearchEngine.BING: "https://www.bing.com/search?q={query}",
}


class SearchProvider(Protocol):
    async def search(self, keyword: str) -> list[str]: ...


def validate_search_template(template: str) -> str:
    if QUERY_PLACEHOLDER not in template:
        raise InvalidConfigurationError(
            f"Search URL template must contain {QUERY_PLACEHOLDER}: {template!r}"
        )
    parsed = urlparse(template.replace(QUERY_PLACEHOLDER, "q"))
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise InvalidConfigurationError(f"Search URL template is not an http(s) URL: {template!r}")
    return template


def resolve_search_template(engine: SearchEngine | str) -> str:
    try:
        return SearchEngine(str(engine).lower().strip()).url_template
    except ValueError as exc:
        raise InvalidConfigurationError(f"Unsupported search engine: {engine}") from exc


def search_url(template: str, query: str) -> str:
    return validate_search_template(template).replace(QUERY_PLACEHOLDER, quote_plus(query))


def _unwrap_redirect(href: str) -> str:
    """Return the destination of an engine redirect link, or the link itself."""
    parsed = urlparse(href)
    params = parse_qs(parsed.query)
    host = (parsed.hostname or "").lower()
    if "uddg" in params and (not host or "duckduckgo." in host):
        return params["uddg"][0]
    if parsed.path == "/url" and (not host or "google." in host):
        for key in ("q", "url"):
            if key in params and params[key][0].startswith("http"):
                return params[key][0]
    return href


def _is_engine_host(host: str) -> bool:
    return any(pattern in host for pattern in ENGINE_HOST_PATTERNS)


def parse_search_links(
    html: str,
    base_url: str,
    *,
    blocked_domains: Iterable[str] = (),
) -> list[str]:
    """Extract outbound result URLs from a search engine results page.

    Keeps https links only, drops engine-internal and blocked hosts and
    deduplicates while preserving page order.
    """
    blocked = tuple(blocked_domains)
    soup = BeautifulSoup(html, "html.parser")
    urls: list[str] = []
    seen: set[str] = set()
    for anchor in soup.find_all("a", href=True):
        href = str(anchor["href"]).strip()
        if not href or href.startswith("#"):
            continue
        target, _ = urldefrag(urljoin(base_url, _unwrap_redirect(urljoin(base_url, href))))
        parsed = urlparse(target)
        host = (parsed.hostname or "").lower()
        if not host or parsed.scheme != "https":
            continue
        if any(domain in host for domain in blocked):
            continue
        if _is_engine_host(host):
            continue
        if target in seen:
            continue
        seen.add(target)
        urls.append(target)
    return urls


class WebSearch:
    """Keyword search against a public HTML results page."""

    def __init__(
        self,
        engine: SearchEngine | str = SearchEngine.DUCKDUCKGO,
        *,
        url_template: str | None = None,
        blocked_domains: Iterable[str] = (),
        timeout_seconds: float = 15.0,
    ):
        self.url_template = validate_search_template(url_template or resolve_search_template(engine))
        self.blocked_domains = tuple(blocked_domains)
        self.timeout_seconds = timeout_seconds

    async def search(self, keyword: str) -> list[str]:
        url = search_url(self.url_template, keyword)
        logger.info(f"Searching: {keyword}")
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_seconds,
                follow_redirects=True,
                headers=DEFAULT_HEADERS,
            ) as client:
                response = await client.get(url)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise SearchError(f"Search request failed for {keyword!r}: {exc}") from exc

        urls = parse_search_links(response.text, url, blocked_domains=self.blocked_domains)
        logger.info(f"Found {len(urls)} URLs for: {keyword}")
        if not urls:
            raise NoURLsFoundError(keyword)
        return urls
