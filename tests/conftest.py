from __future__ import annotations

import asyncio
from collections import defaultdict

import pytest

from deepcrawl.config import CrawlerConfig
from deepcrawl.errors import NoURLsFoundError, OracleError
from deepcrawl.models.crawl import FetchedPage, PageLink
from deepcrawl.models.oracle import (
    ContentReview,
    FinalResponse,
    ObjectiveAnalysis,
    ResponseRequest,
    ReviewRequest,
    SufficiencyRequest,
    SufficiencyResult,
)
from deepcrawl.oracle.base import ResearchOracle


def make_page(url: str, *, text: str | None = None, links: list[tuple[str, str]] | None = None) -> FetchedPage:
    """A page whose title is its URL so scripted oracles can key reviews on it."""
    body = text if text is not None else f"Heading for {url}\nFirst fact about {url}\nSecond fact\nFooter"
    return FetchedPage(
        url=url,
        title=url,
        text=body,
        links=tuple(PageLink(url=href, text=label) for href, label in (links or [])),
    )


def relevant_review(info: str = "useful fact", **kwargs) -> ContentReview:
    return ContentReview(is_relevant=True, extracted_info=info, relevant_ranges=[{"start": 1, "end": 2}], **kwargs)


class FakeSearch:
    def __init__(self, results: dict[str, list[str] | Exception] | None = None):
        self.results = results or {}
        self.queries: list[str] = []

    async def search(self, keyword: str) -> list[str]:
        self.queries.append(keyword)
        await asyncio.sleep(0)
        outcome = self.results.get(keyword)
        if isinstance(outcome, Exception):
            raise outcome
        if not outcome:
            raise NoURLsFoundError(keyword)
        return list(outcome)


class FakeFetcher:
    """Serves generated pages; ``failures`` lists exceptions raised on successive calls per URL."""

    def __init__(
        self,
        pages: dict[str, FetchedPage] | None = None,
        failures: dict[str, list[BaseException]] | None = None,
        delay: float = 0.0,
    ):
        self.pages = pages or {}
        self.failures = {url: list(errors) for url, errors in (failures or {}).items()}
        self.delay = delay
        self.calls: list[str] = []
        self.active = 0
        self.max_active = 0

    async def fetch(self, url: str) -> FetchedPage:
        self.calls.append(url)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay)
            pending = self.failures.get(url)
            if pending:
                raise pending.pop(0)
            return self.pages.get(url) or make_page(url)
        finally:
            self.active -= 1


class ScriptedOracle(ResearchOracle):
    """Deterministic oracle; any scripted value may be an exception to raise instead."""

    def __init__(
        self,
        *,
        analysis: ObjectiveAnalysis | Exception | None = None,
        reviews: dict[str, ContentReview | Exception] | None = None,
        sufficiency: list[SufficiencyResult | Exception] | None = None,
        response: FinalResponse | Exception | None = None,
        summary: str | Exception = "background summary",
        disambiguated: str | Exception | None = None,
    ):
        self.analysis = analysis
        self.reviews = reviews or {}
        self.sufficiency = list(sufficiency or [])
        self.response = response or FinalResponse(response_markdown="# Answer\n\nSynthesized answer.")
        self.summary = summary
        self.disambiguated = disambiguated
        self.calls: dict[str, list] = defaultdict(list)

    @staticmethod
    def _resolve(value):
        if isinstance(value, Exception):
            raise value
        return value

    async def analyze_objective(self, objective, background=None, domain_context=None):
        self.calls["analyze_objective"].append((objective, background, domain_context))
        if self.analysis is None:
            return ObjectiveAnalysis(
                keywords=[objective],
                questions=[f"What is known about {objective}?"],
                success_criteria=["at least one reliable source"],
            )
        return self._resolve(self.analysis)

    async def disambiguate_query(self, query, domain_context):
        self.calls["disambiguate_query"].append((query, domain_context))
        if self.disambiguated is None:
            return query
        return self._resolve(self.disambiguated)

    async def summarize_page(self, objective, page):
        self.calls["summarize_page"].append(page.url)
        return self._resolve(self.summary)

    async def review_content(self, request: ReviewRequest) -> ContentReview:
        self.calls["review_content"].append(request)
        await asyncio.sleep(0)
        return self._resolve(self.reviews.get(request.title, ContentReview.irrelevant()))

    async def check_sufficiency(self, request: SufficiencyRequest) -> SufficiencyResult:
        self.calls["check_sufficiency"].append(request)
        if not self.sufficiency:
            return SufficiencyResult.insufficient("keep looking")
        value = self.sufficiency.pop(0) if len(self.sufficiency) > 1 else self.sufficiency[0]
        return self._resolve(value)

    async def build_response(self, request: ResponseRequest) -> FinalResponse:
        self.calls["build_response"].append(request)
        return self._resolve(self.response)


class OverlapTrackingOracle(ScriptedOracle):
    """Records the highest number of review calls in flight at once."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.active = 0
        self.peak = 0

    async def review_content(self, request):
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(0.01)
            return await super().review_content(request)
        finally:
            self.active -= 1


class ClosableOracle(ScriptedOracle):
    def __init__(self, fail_on_close: bool = False):
        super().__init__()
        self.closed = False
        self.fail_on_close = fail_on_close

    async def aclose(self) -> None:
        self.closed = True
        if self.fail_on_close:
            raise RuntimeError("already closed")


class FailingOracle(ScriptedOracle):
    """Every decision raises."""

    def __init__(self):
        error = OracleError("oracle unavailable")
        super().__init__(
            analysis=error,
            sufficiency=[error],
            response=error,
            summary=error,
            disambiguated=error,
        )

    async def review_content(self, request: ReviewRequest) -> ContentReview:
        self.calls["review_content"].append(request)
        raise OracleError("oracle unavailable")


async def no_sleep(_seconds: float) -> None:
    await asyncio.sleep(0)


@pytest.fixture
def config() -> CrawlerConfig:
    return CrawlerConfig(
        max_concurrent=4,
        max_urls=10,
        request_delay_seconds=0.0,
        fetch_retry_base_delay_seconds=0.0,
    )
