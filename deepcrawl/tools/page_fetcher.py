from __future__ import annotations

import re
from urllib.parse import urldefrag, urljoin, urlparse

import httpx
from bs4 import BeautifulSoup

from deepcrawl.errors import PageParseError
from deepcrawl.models.crawl import FetchedPage, PageLink

DEFAULT_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_5) AppleWebKit/605.1.15 "
        "(KHTML, like Gecko) Version/17.5 Safari/605.1.15"
    ),
    "Accept": "text/html,application/xhtml+xml;q=0.9,text/plain;q=0.8,*/*;q=0.5",
    "Accept-Language": "en-US,en;q=0.9",
}

STRIPPED_TAGS = ("script", "style", "noscript", "template", "svg", "iframe")


def _normalize_text(text: str) -> str:
    text = text.replace("\xa0", " ")
    text = re.sub(r"\r\n?", "\n", text)
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r" ?\n ?", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def _absolute_link(base_url: str, href: str) -> str | None:
    href = href.strip()
    if not href or href.startswith(("#", "javascript:", "mailto:", "tel:")):
        return None
    absolute, _ = urldefrag(urljoin(base_url, href))
    parsed = urlparse(absolute)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return None
    return absolute


def parse_html_page(url: str, html: str) -> FetchedPage:
    """Reduce an HTML document to its title, readable text and outbound links."""
    soup = BeautifulSoup(html, "html.parser")
    title = _normalize_text(soup.title.get_text(" ")) if soup.title else ""

    links: list[PageLink] = []
    seen: set[str] = set()
    for anchor in soup.find_all("a", href=True):
        target = _absolute_link(url, str(anchor["href"]))
        if not target or target in seen:
            continue
        seen.add(target)
        links.append(PageLink(url=target, text=_normalize_text(anchor.get_text(" "))))

    for tag in soup.find_all(list(STRIPPED_TAGS)):
        tag.decompose()
    body = soup.body or soup
    text = _normalize_text(body.get_text("\n"))
    return FetchedPage(url=url, title=title, text=text, links=tuple(links))


class HttpPageFetcher:
    """Fetches pages over HTTP with httpx and parses them with BeautifulSoup."""

    def __init__(self, *, timeout_seconds: float = 15.0, headers: dict[str, str] | None = None):
        self.timeout_seconds = timeout_seconds
        self.headers = {**DEFAULT_HEADERS, **(headers or {})}

    async def fetch(self, url: str) -> FetchedPage:
        async with httpx.AsyncClient(
            timeout=self.timeout_seconds,
            follow_redirects=True,
            headers=self.headers,
        ) as client:
            response = await client.get(url)
            response.raise_for_status()

        final_url = str(getattr(response, "url", "") or url)
        content_type = (response.headers.get("content-type") or "").lower()
        body = response.text

        if "html" in content_type or (not content_type and "<html" in body[:2000].lower()):
            return parse_html_page(final_url, body)
        if content_type.startswith("text/"):
            return FetchedPage(url=final_url, title="", text=_normalize_text(body))
        raise PageParseError(f"Unsupported content type for {url}: {content_type or 'unknown'}")
