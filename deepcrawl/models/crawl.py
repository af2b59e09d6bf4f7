from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from typing import Any
from urllib.parse import urlparse

LineRange = tuple[int, int]


def url_host(url: str) -> str:
    try:
        return (urlparse(url).hostname or "").lower()
    except ValueError:
        return ""


@dataclass(frozen=True, slots=True)
class PageLink:
    url: str
    text: str = ""


@dataclass(frozen=True, slots=True)
class FetchedPage:
    """A fetched page reduced to title, plain text and outbound links."""

    url: str
    title: str
    text: str
    links: tuple[PageLink, ...] = ()


@dataclass(frozen=True, slots=True)
class ReviewedContent:
    """Outcome of reviewing one successfully fetched page."""

    url: str
    title: str | None
    extracted_info: str
    is_relevant: bool
    relevant_ranges: tuple[LineRange, ...] = ()
    excerpts: tuple[str, ...] = ()

    @property
    def host(self) -> str:
        return url_host(self.url)


@dataclass(frozen=True, slots=True)
class PageExcerpt:
    url: str
    title: str | None
    excerpts: tuple[str, ...]


@dataclass(frozen=True, slots=True, eq=False)
class CrawlCandidate:
    """URL waiting for admission, ranked by a relevance score.

    Candidates compare and hash by URL only; the score is clamped to [0, 1].
    """

    url: str
    score: float
    title: str | None = None
    reason: str | None = None
    source_url: str | None = None
    added_at: float = field(default_factory=time.time)

    def __post_init__(self) -> None:
        object.__setattr__(self, "score", min(1.0, max(0.0, float(self.score))))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CrawlCandidate):
            return NotImplemented
        return self.url == other.url

    def __hash__(self) -> int:
        return hash(self.url)


@dataclass(frozen=True, slots=True)
class AggregatedStatistics:
    total_pages_visited: int
    relevant_pages_found: int
    keywords_used: int
    duration_seconds: float


@dataclass(frozen=True, slots=True)
class AggregatedResult:
    objective: str
    questions: tuple[str, ...]
    success_criteria: tuple[str, ...]
    reviewed_contents: tuple[ReviewedContent, ...]
    response_markdown: str
    keywords_used: tuple[str, ...]
    statistics: AggregatedStatistics

    @property
    def relevant_urls(self) -> list[str]:
        return [c.url for c in self.reviewed_contents if c.is_relevant]

    def to_dict(self) -> dict[str, Any]:
        """JSON-serializable view; line ranges become start/end objects."""
        payload = asdict(self)
        for content in payload["reviewed_contents"]:
            content["relevant_ranges"] = [
                {"start": start, "end": end} for start, end in content["relevant_ranges"]
            ]
        payload["relevant_urls"] = self.relevant_urls
        return payload
