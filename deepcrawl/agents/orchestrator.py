from __future__ import annotations

import asyncio
import contextlib
import time
from collections import deque
from typing import AsyncGenerator, Awaitable, Callable, Iterable

from loguru import logger

from deepcrawl.agents.worker_pool import WorkerPool
from deepcrawl.config import CrawlerConfig
from deepcrawl.crawl.context import CrawlContext
from deepcrawl.crawl.domain_filter import filter_allowed
from deepcrawl.crawl.fetcher import FetchFailure, PageFetcher, RetryingFetcher
from deepcrawl.errors import InvalidConfigurationError, OracleError
from deepcrawl.models.crawl import AggregatedResult, AggregatedStatistics, PageExcerpt, url_host
from deepcrawl.models.events import ProgressEvent, ResearchPhase
from deepcrawl.models.oracle import (
    FALLBACK_SUCCESS_CRITERION,
    ObjectiveAnalysis,
    ResponseRequest,
    SufficiencyRequest,
    SufficiencyResult,
)
from deepcrawl.oracle.base import (
    OracleFactory,
    ResearchOracle,
    accept_disambiguation,
    build_oracle_provider,
)
from deepcrawl.services import streaming
from deepcrawl.services.logger import log_event, log_research_step
from deepcrawl.services.streaming import EventSink
from deepcrawl.tools.page_fetcher import HttpPageFetcher
from deepcrawl.tools.web_search import SearchProvider, WebSearch, validate_search_template

NO_RELEVANT_INFO = "no relevant info collected"


def _normalize_keyword(keyword: str) -> str:
    return keyword.strip().lower()


def _dedupe(items: Iterable[str], limit: int | None = None) -> list[str]:
    """Order-preserving, case-insensitive dedup of non-blank strings."""
    result: list[str] = []
    seen: set[str] = set()
    for item in items:
        cleaned = (item or "").strip()
        key = cleaned.lower()
        if not cleaned or key in seen:
            continue
        seen.add(key)
        result.append(cleaned)
        if limit is not None and len(result) >= limit:
            break
    return result


def sources_section(urls: list[str]) -> str:
    return "## Sources\n\n" + "\n".join(f"- {url}" for url in urls)


def fallback_response(objective: str, excerpts: list[PageExcerpt]) -> str:
    """Answer assembled from the collected excerpts alone."""
    parts = [f"# {objective}"]
    for excerpt in excerpts:
        body = "\n\n".join(text.strip() for text in excerpt.excerpts if text.strip())
        if body:
            parts.append(f"## {excerpt.title or excerpt.url}\n\n{body}")
    return "\n\n".join(parts)


class ResearchOrchestrator:
    """Runs one research session per call.

    Flow:
      0. Initial search on the objective; summarize the top pages as background
      1. Objective analysis: keywords, questions, success criteria
      2. Per keyword: search, filter, enqueue
      3. Worker pool reviews the queued URLs, following deep-crawl links
      4. Sufficiency check; stop, give up, or queue more keywords
      5. Build the answer and append the cited sources

    Every oracle call has a neutral fallback, so a session always ends with a
    result unless it is misconfigured or cancelled by the caller.
    """

    def __init__(
        self,
        oracle: ResearchOracle | None = None,
        *,
        config: CrawlerConfig | None = None,
        search: SearchProvider | None = None,
        fetcher: PageFetcher | None = None,
        oracle_factory: OracleFactory | None = None,
        event_sink: EventSink | None = None,
        model: str | None = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ):
        self.config = config or CrawlerConfig.from_settings()
        if self.config.max_concurrent < 1:
            raise InvalidConfigurationError(
                f"max_concurrent must be at least 1, got {self.config.max_concurrent}"
            )
        if self.config.max_urls < 1:
            raise InvalidConfigurationError(f"max_urls must be at least 1, got {self.config.max_urls}")

        if search is None:
            search = WebSearch(
                self.config.search_engine,
                url_template=self.config.search_url_template,
                blocked_domains=self.config.domain_filter.blocked_domains,
                timeout_seconds=self.config.fetch_timeout_seconds,
            )
        elif self.config.search_url_template:
            validate_search_template(self.config.search_url_template)
        self.search_provider = search

        if oracle is None:
            from deepcrawl.oracle.llm import LLMOracle

            oracle_kwargs = {
                "model": model,
                "max_keywords": self.config.max_keywords,
                "max_questions": self.config.max_questions,
            }
            oracle = LLMOracle(**oracle_kwargs)
            if oracle_factory is None:
                oracle_factory = LLMOracle.factory(**oracle_kwargs)
        self.oracle = oracle
        self.oracle_provider = build_oracle_provider(
            oracle,
            oracle_factory,
            self.config.llm_supports_concurrency,
        )

        self.fetcher = RetryingFetcher(
            fetcher or HttpPageFetcher(timeout_seconds=self.config.fetch_timeout_seconds),
            timeout_seconds=self.config.fetch_timeout_seconds,
            max_retries=self.config.fetch_max_retries,
            base_delay_seconds=self.config.fetch_retry_base_delay_seconds,
            sleep=sleep,
        )
        self.event_sink = event_sink
        self._sleep = sleep

    async def run(self, objective: str, max_urls: int | None = None) -> AggregatedResult:
        return await self._run_session(objective, max_urls, self.event_sink)

    async def research(
        self, objective: str, max_urls: int | None = None
    ) -> AsyncGenerator[ProgressEvent, None]:
        """Stream progress events; the last one is ``research_complete`` or ``error``."""
        queue: asyncio.Queue[ProgressEvent | None] = asyncio.Queue()

        def sink(event: ProgressEvent) -> None:
            queue.put_nowait(event)
            streaming.emit(self.event_sink, event)

        task = asyncio.create_task(self._run_session(objective, max_urls, sink))
        task.add_done_callback(lambda _: queue.put_nowait(None))
        try:
            while True:
                event = await queue.get()
                if event is None:
                    break
                yield event
            if not task.cancelled() and task.exception() is not None:
                exc = task.exception()
                logger.opt(exception=exc).error(f"Research failed with error: {exc}")
                yield streaming.error(f"Research failed: {exc}")
        finally:
            if not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

    def _phase(self, sink: EventSink | None, objective: str, phase: ResearchPhase, **data) -> None:
        log_research_step(objective, phase.value, "started", data or None)
        streaming.emit(sink, streaming.phase_changed(phase))

    async def _run_session(
        self,
        objective: str,
        max_urls: int | None,
        sink: EventSink | None,
    ) -> AggregatedResult:
        budget = self.config.max_urls if max_urls is None else max_urls
        if budget < 1:
            raise InvalidConfigurationError(f"max_urls must be at least 1, got {budget}")
        try:
            return await self._crawl(objective, budget, sink)
        finally:
            await self.oracle_provider.aclose()

    async def _crawl(self, objective: str, budget: int, sink: EventSink | None) -> AggregatedResult:

        started = time.monotonic()
        logger.info(f"Research started: {objective!r} (max_urls={budget})")
        streaming.emit(sink, streaming.started(objective, budget))

        self._phase(sink, objective, ResearchPhase.INITIAL_SEARCH)
        background, initial_urls = await self._initial_search(objective, budget)

        self._phase(sink, objective, ResearchPhase.ANALYZING)
        analysis = await self._analyze_objective(objective, background)
        streaming.emit(sink, streaming.keywords_generated(analysis.keywords, analysis.questions))

        context = CrawlContext(
            objective,
            analysis.success_criteria,
            max_urls=budget,
            known_facts_limit=self.config.known_facts_limit,
            relevant_domain_threshold=self.config.relevant_domain_threshold,
        )
        context.register_processed(initial_urls)

        keywords_used = await self._keyword_loop(context, analysis.keywords, sink)

        self._phase(sink, objective, ResearchPhase.BUILDING_RESPONSE)
        response = await self._build_response(context, analysis.questions, sink)

        stats = context.get_statistics()
        result = AggregatedResult(
            objective=objective,
            questions=tuple(analysis.questions),
            success_criteria=tuple(context.success_criteria),
            reviewed_contents=tuple(context.reviewed_contents),
            response_markdown=response,
            keywords_used=tuple(keywords_used),
            statistics=AggregatedStatistics(
                total_pages_visited=stats.processed,
                relevant_pages_found=stats.relevant,
                keywords_used=len(keywords_used),
                duration_seconds=time.monotonic() - started,
            ),
        )
        log_research_step(
            objective,
            ResearchPhase.COMPLETED.value,
            "completed",
            {"processed": stats.processed, "relevant": stats.relevant, "keywords": len(keywords_used)},
        )
        streaming.emit(sink, streaming.phase_changed(ResearchPhase.COMPLETED))
        streaming.emit(sink, streaming.research_complete(result))
        return result

    async def _initial_search(self, objective: str, budget: int) -> tuple[str | None, list[str]]:
        """Fetch and summarize the top results for the raw objective.

        Returns the joined summaries (or None) and the URLs that were taken,
        whether or not their fetch succeeded.
        """
        query = objective
        if self.config.domain_context:
            try:
                rewritten = await self.oracle.disambiguate_query(objective, self.config.domain_context)
                query = accept_disambiguation(objective, rewritten)
            except Exception as exc:
                logger.warning(f"Query disambiguation failed, using objective as is: {exc}")
            if query != objective:
                logger.info(f"Disambiguated query: {query!r}")

        try:
            urls = await self.search_provider.search(query)
        except Exception as exc:
            logger.warning(f"Initial search failed: {exc}")
            return None, []

        limit = min(self.config.initial_search_max_pages, budget)
        top_urls = filter_allowed(urls, self.config.domain_filter)[:limit]
        summaries: list[str] = []
        for url in top_urls:
            result = await self.fetcher.attempt_fetch(
                url, timeout_seconds=self.config.initial_fetch_timeout_seconds
            )
            if isinstance(result, FetchFailure):
                logger.warning(f"Initial fetch failed for {url}: {result.kind.value} {result.error}")
                continue
            try:
                summary = await self.oracle.summarize_page(query, result.page)
            except Exception as exc:
                logger.warning(f"Summarizing {url} failed: {exc}")
                continue
            if summary:
                summaries.append(f"[{url_host(url) or url}] {summary}")

        background = "\n\n".join(summaries) if summaries else None
        if background:
            logger.info(f"Background info: {background[:200]}")
        return background, top_urls

    async def _analyze_objective(self, objective: str, background: str | None) -> ObjectiveAnalysis:
        try:
            analysis = await self.oracle.analyze_objective(
                objective, background, self.config.domain_context
            )
        except Exception as exc:
            logger.warning(f"Objective analysis failed, falling back to the objective: {exc}")
            return ObjectiveAnalysis.fallback(objective)

        keywords = _dedupe(analysis.keywords, self.config.max_keywords)
        if not keywords:
            logger.warning("Objective analysis returned no keywords, falling back to the objective")
            return ObjectiveAnalysis.fallback(objective)
        return ObjectiveAnalysis(
            keywords=keywords,
            questions=_dedupe(analysis.questions, self.config.max_questions) or [objective],
            success_criteria=_dedupe(analysis.success_criteria) or [FALLBACK_SUCCESS_CRITERION],
        )

    async def _keyword_loop(
        self,
        context: CrawlContext,
        keywords: list[str],
        sink: EventSink | None,
    ) -> list[str]:
        objective = context.objective
        pending: deque[str] = deque(keywords)
        used: list[str] = []
        used_keys: set[str] = set()
        previous_relevant = 0
        round_number = 0

        while pending:
            if context.total_processed >= context.max_urls:
                logger.info(f"URL budget of {context.max_urls} reached, stopping search")
                break

            keyword = pending.popleft()
            key = _normalize_keyword(keyword)
            if not key or key in used_keys:
                continue
            used_keys.add(key)
            used.append(keyword)
            round_number += 1

            self._phase(sink, objective, ResearchPhase.SEARCHING, keyword=keyword, round=round_number)
            streaming.emit(sink, streaming.search_started(keyword, round_number))
            try:
                urls = await self.search_provider.search(keyword)
            except Exception as exc:
                logger.warning(f"Search failed for {keyword!r}, moving on: {exc}")
                streaming.emit(sink, streaming.error(f"Search failed for {keyword}", keyword=keyword))
                continue

            allowed = filter_allowed(urls, self.config.domain_filter)
            queued = context.enqueue_urls(allowed)
            logger.info(f"{keyword!r}: {len(urls)} results, {len(allowed)} allowed, {queued} queued")
            streaming.emit(sink, streaming.urls_found(keyword, allowed, queued=queued))

            self._phase(sink, objective, ResearchPhase.REVIEWING, queued=context.queue_count)
            await WorkerPool(
                context,
                self.fetcher,
                self.oracle_provider,
                self.config,
                event_sink=sink,
                sleep=self._sleep,
            ).run()

            self._phase(sink, objective, ResearchPhase.CHECKING_SUFFICIENCY, round=round_number)
            relevant_count = context.relevant_count
            new_relevant = relevant_count - previous_relevant
            previous_relevant = relevant_count

            verdict = await self._check_sufficiency(context, round_number, new_relevant)
            context.update_success_criteria(verdict.success_criteria)
            streaming.emit(
                sink,
                streaming.sufficiency_checked(
                    is_sufficient=verdict.is_sufficient,
                    should_give_up=verdict.should_give_up,
                    reason=verdict.reason_markdown,
                    statistics=context.get_statistics().as_dict(),
                ),
            )
            logger.info(
                f"Round {round_number}: sufficient={verdict.is_sufficient} "
                f"give_up={verdict.should_give_up} reason={verdict.reason_markdown[:200]}"
            )

            if verdict.is_sufficient:
                context.mark_sufficient()
                break
            if verdict.should_give_up:
                break

            pending_keys = {_normalize_keyword(k) for k in pending}
            fresh = [
                k
                for k in _dedupe(verdict.additional_keywords)
                if _normalize_keyword(k) not in used_keys and _normalize_keyword(k) not in pending_keys
            ]
            if fresh:
                pending.extend(fresh)
                log_event("additional_keywords", f"Queued {len(fresh)} keywords", round=round_number, keywords=fresh)
                streaming.emit(sink, streaming.additional_keywords(fresh))

        return used

    async def _check_sufficiency(
        self,
        context: CrawlContext,
        round_number: int,
        new_relevant: int,
    ) -> SufficiencyResult:
        reviewed = context.reviewed_contents
        if not reviewed:
            return SufficiencyResult.insufficient("No pages have been reviewed yet.")

        relevant = [c for c in reviewed if c.is_relevant]
        summaries = [
            f"[{c.host or c.url}] {c.extracted_info}"
            for c in relevant[-self.config.sufficiency_summary_limit :]
        ]
        request = SufficiencyRequest(
            objective=context.objective,
            success_criteria=context.success_criteria,
            collected_summaries=summaries,
            round_number=round_number,
            new_relevant_this_round=new_relevant,
            relevant_count=len(relevant),
            domain_context=self.config.domain_context,
        )
        try:
            return await self.oracle.check_sufficiency(request)
        except Exception as exc:
            logger.warning(f"Sufficiency check failed, continuing: {exc}")
            return SufficiencyResult.insufficient(f"Sufficiency check failed: {exc}")

    async def _build_response(
        self,
        context: CrawlContext,
        questions: list[str],
        sink: EventSink | None,
    ) -> str:
        excerpts = context.get_relevant_context()
        streaming.emit(sink, streaming.building_response(len(excerpts)))
        if not excerpts:
            return f"# {context.objective}\n\n{NO_RELEVANT_INFO}"

        request = ResponseRequest(
            objective=context.objective,
            questions=questions,
            success_criteria=context.success_criteria,
            excerpts_by_source={e.url: list(e.excerpts) for e in excerpts},
            titles={e.url: e.title for e in excerpts if e.title},
        )
        try:
            body = (await self.oracle.build_response(request)).response_markdown.strip()
            if not body:
                raise OracleError("build_response returned an empty answer")
        except Exception as exc:
            logger.warning(f"Response building failed, using collected excerpts: {exc}")
            body = fallback_response(context.objective, excerpts)

        return f"{body}\n\n{sources_section([e.url for e in excerpts])}"
