from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable
from urllib.parse import urljoin

from loguru import logger

from deepcrawl.config import CrawlerConfig
from deepcrawl.crawl.candidate_stack import CrawlCandidateStack
from deepcrawl.crawl.context import CrawlContext, slice_line_ranges
from deepcrawl.crawl.domain_filter import is_allowed
from deepcrawl.crawl.fetcher import FetchFailure, RetryingFetcher
from deepcrawl.models.crawl import CrawlCandidate, FetchedPage, PageLink, ReviewedContent, url_host
from deepcrawl.models.oracle import ContentReview, PriorityLink, ReviewRequest
from deepcrawl.oracle.base import OracleProvider, ResearchOracle
from deepcrawl.services import streaming
from deepcrawl.services.streaming import EventSink

KNOWN_FACT_PREVIEW_CHARS = 100
LINK_TEXT_PREVIEW_CHARS = 30


def number_lines(text: str, max_chars: int) -> str:
    """Prefix each line with its 0-based index and cut the result to ``max_chars``."""
    numbered = "\n".join(f"{index}: {line}" for index, line in enumerate(text.split("\n")))
    return numbered[:max_chars]


def summarize_links(links: tuple[PageLink, ...], limit: int) -> list[str]:
    summaries: list[str] = []
    for index, link in enumerate(links[:limit], start=1):
        text = link.text[:LINK_TEXT_PREVIEW_CHARS] if link.text else "-"
        summaries.append(f"[{index}] {text} -> {link.url}")
    return summaries


def select_deep_crawl_urls(
    priority_links: list[PriorityLink],
    links: tuple[PageLink, ...],
    source_url: str,
    context: CrawlContext,
    config: CrawlerConfig,
) -> list[str]:
    """Resolve the reviewer's 1-based link picks into crawlable URLs.

    Candidates are ranked on a CrawlCandidateStack; hosts that already
    produced relevant pages move to the front. At most
    ``deep_crawl_link_cap`` URLs are returned.
    """
    stack = CrawlCandidateStack()
    for priority in sorted(priority_links, key=lambda p: p.score, reverse=True):
        if priority.index < 1 or priority.index > len(links):
            continue
        link = links[priority.index - 1]
        resolved = urljoin(source_url, link.url)
        if resolved in stack:
            continue
        if not is_allowed(resolved, config.domain_filter):
            continue
        if context.is_visited(resolved):
            continue
        stack.push(
            CrawlCandidate(
                url=resolved,
                score=priority.score,
                title=link.text or None,
                reason=priority.reason or None,
                source_url=source_url,
            )
        )

    relevant_hosts = context.get_relevant_domains()
    ranked = [candidate.url for candidate in stack.pop_many(len(stack))]
    preferred = [url for url in ranked if url_host(url) in relevant_hosts]
    others = [url for url in ranked if url_host(url) not in relevant_hosts]
    return (preferred + others)[: config.deep_crawl_link_cap]


@dataclass(slots=True)
class UrlOutcome:
    status: str
    reviewed: ReviewedContent | None = None
    deep_urls: list[str] = field(default_factory=list)


class WorkerPool:
    """Runs ``max_concurrent`` workers over one crawl context until no URL can be dequeued."""

    def __init__(
        self,
        context: CrawlContext,
        fetcher: RetryingFetcher,
        oracle_provider: OracleProvider,
        config: CrawlerConfig,
        *,
        event_sink: EventSink | None = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ):
        self.context = context
        self.fetcher = fetcher
        self.oracle_provider = oracle_provider
        self.config = config
        self.event_sink = event_sink
        self._sleep = sleep

    async def run(self) -> None:
        started = time.monotonic()
        await asyncio.gather(
            *(self._worker(worker_id) for worker_id in range(self.config.max_concurrent))
        )
        stats = self.context.get_statistics()
        logger.info(
            f"Review round finished in {time.monotonic() - started:.1f}s: "
            f"processed={stats.processed} relevant={stats.relevant} queued={stats.queued}"
        )

    async def _worker(self, worker_id: int) -> None:
        oracle = self.oracle_provider.session_for_worker(worker_id)
        while True:
            url = self.context.dequeue_url()
            if url is None:
                break

            t0 = time.monotonic()
            logger.debug(f"[W{worker_id}] -> {url}")
            streaming.emit(self.event_sink, streaming.url_processing_started(url, worker_id))
            try:
                outcome = await self.process_url(url, oracle)
                if outcome.reviewed is not None:
                    self.context.add_result(outcome.reviewed)
                if outcome.deep_urls:
                    added = self.context.enqueue_urls(outcome.deep_urls)
                    logger.debug(f"[W{worker_id}] +{added} deep URLs from {url}")
            except Exception as exc:
                logger.exception(f"[W{worker_id}] Unexpected failure on {url}: {exc}")
                outcome = UrlOutcome(status="error")
            finally:
                self.context.complete_url(url)

            duration_ms = int((time.monotonic() - t0) * 1000)
            reviewed = outcome.reviewed
            streaming.emit(
                self.event_sink,
                streaming.url_processed(
                    url,
                    worker_id=worker_id,
                    status=outcome.status,
                    duration_ms=duration_ms,
                    title=reviewed.title if reviewed else None,
                    extracted_info=reviewed.extracted_info if reviewed else "",
                    is_relevant=bool(reviewed and reviewed.is_relevant),
                    deep_urls=len(outcome.deep_urls),
                ),
            )
            if reviewed is not None:
                marker = "+" if reviewed.is_relevant else "."
                logger.info(f"[W{worker_id}] {marker} {duration_ms}ms {url} {reviewed.extracted_info[:60]}")
            else:
                logger.info(f"[W{worker_id}] x {duration_ms}ms {url} ({outcome.status})")

            if self.config.request_delay_seconds > 0:
                await self._sleep(self.config.request_delay_seconds)

    async def process_url(self, url: str, oracle: ResearchOracle) -> UrlOutcome:
        result = await self.fetcher.fetch_result(url)
        if isinstance(result, FetchFailure):
            return UrlOutcome(status=result.kind.value)

        page = result.page
        self.context.store_page_content(url, page.text)
        review = await self._review(url, page, oracle)

        reviewed = ReviewedContent(
            url=url,
            title=page.title or None,
            extracted_info=review.extracted_info,
            is_relevant=review.is_relevant,
            relevant_ranges=tuple((r.start, r.end) for r in review.relevant_ranges),
            excerpts=tuple(
                slice_line_ranges(page.text, ((r.start, r.end) for r in review.relevant_ranges))
            ),
        )

        deep_urls: list[str] = []
        if review.should_deep_crawl and review.priority_links and not self.context.is_sufficient:
            deep_urls = select_deep_crawl_urls(
                review.priority_links, page.links, url, self.context, self.config
            )
        return UrlOutcome(status="success", reviewed=reviewed, deep_urls=deep_urls)

    async def _review(self, url: str, page: FetchedPage, oracle: ResearchOracle) -> ContentReview:
        request = ReviewRequest(
            objective=self.context.objective,
            title=page.title,
            numbered_content=number_lines(page.text, self.config.content_max_chars),
            link_summaries=summarize_links(page.links, self.config.review_max_links),
            known_facts=[fact[:KNOWN_FACT_PREVIEW_CHARS] for fact in self.context.get_known_facts()],
            relevant_domains=sorted(self.context.get_relevant_domains()),
            domain_context=self.config.domain_context,
        )
        try:
            return await oracle.review_content(request)
        except Exception as exc:
            logger.warning(f"Content review failed for {url}, treating as irrelevant: {exc}")
            return ContentReview.irrelevant()
