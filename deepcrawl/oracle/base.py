from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Callable

from loguru import logger

from deepcrawl.models.crawl import FetchedPage
from deepcrawl.models.oracle import (
    ContentReview,
    FinalResponse,
    ObjectiveAnalysis,
    ResponseRequest,
    ReviewRequest,
    SufficiencyRequest,
    SufficiencyResult,
)

MAX_DISAMBIGUATED_QUERY_CHARS = 200


class ResearchOracle(ABC):
    """Decision points of a research session.

    Implementations may be model-backed or rule-based. Any method may raise;
    callers substitute a neutral fallback.
    """

    @abstractmethod
    async def analyze_objective(
        self,
        objective: str,
        background: str | None = None,
        domain_context: str | None = None,
    ) -> ObjectiveAnalysis:
        """Plan keywords, questions and success criteria for an objective."""

    @abstractmethod
    async def disambiguate_query(self, query: str, domain_context: str) -> str:
        """Rewrite a query for a domain; the unchanged query means no rewrite."""

    @abstractmethod
    async def summarize_page(self, objective: str, page: FetchedPage) -> str:
        """Condense an initial-search page into background for planning."""

    @abstractmethod
    async def review_content(self, request: ReviewRequest) -> ContentReview:
        ...

    @abstractmethod
    async def check_sufficiency(self, request: SufficiencyRequest) -> SufficiencyResult:
        ...

    @abstractmethod
    async def build_response(self, request: ResponseRequest) -> FinalResponse:
        ...

    async def aclose(self) -> None:
        """Release resources held by this session."""


OracleFactory = Callable[[], ResearchOracle]


def accept_disambiguation(original: str, candidate: str | None) -> str:
    """Keep a rewritten query only when it is non-empty and reasonably short."""
    cleaned = (candidate or "").replace('"', "").replace("'", "").strip()
    if not cleaned or len(cleaned) > MAX_DISAMBIGUATED_QUERY_CHARS:
        return original
    return cleaned


class SerializedOracle(ResearchOracle):
    """Funnels every call to one session through a lock, one call at a time."""

    def __init__(self, oracle: ResearchOracle):
        self.oracle = oracle
        self._lock = asyncio.Lock()

    async def analyze_objective(
        self,
        objective: str,
        background: str | None = None,
        domain_context: str | None = None,
    ) -> ObjectiveAnalysis:
        async with self._lock:
            return await self.oracle.analyze_objective(objective, background, domain_context)

    async def disambiguate_query(self, query: str, domain_context: str) -> str:
        async with self._lock:
            return await self.oracle.disambiguate_query(query, domain_context)

    async def summarize_page(self, objective: str, page: FetchedPage) -> str:
        async with self._lock:
            return await self.oracle.summarize_page(objective, page)

    async def review_content(self, request: ReviewRequest) -> ContentReview:
        async with self._lock:
            return await self.oracle.review_content(request)

    async def check_sufficiency(self, request: SufficiencyRequest) -> SufficiencyResult:
        async with self._lock:
            return await self.oracle.check_sufficiency(request)

    async def build_response(self, request: ResponseRequest) -> FinalResponse:
        async with self._lock:
            return await self.oracle.build_response(request)


class OracleProvider(ABC):
    """Hands each worker the oracle session it must use."""

    @abstractmethod
    def session_for_worker(self, worker_id: int) -> ResearchOracle:
        ...

    async def aclose(self) -> None:
        """Close the sessions this provider created; caller-owned oracles stay open."""


class SharedOracleProvider(OracleProvider):
    """All workers share one session; for backends that accept concurrent calls."""

    def __init__(self, oracle: ResearchOracle):
        self.oracle = oracle

    def session_for_worker(self, worker_id: int) -> ResearchOracle:
        return self.oracle


class SerializedOracleProvider(SharedOracleProvider):
    """All workers share one session whose calls never overlap."""

    def __init__(self, oracle: ResearchOracle):
        super().__init__(SerializedOracle(oracle))


class PerWorkerOracleProvider(OracleProvider):
    """Each worker gets its own session built by the factory, created once per worker."""

    def __init__(self, factory: OracleFactory):
        self.factory = factory
        self._sessions: dict[int, ResearchOracle] = {}

    def session_for_worker(self, worker_id: int) -> ResearchOracle:
        session = self._sessions.get(worker_id)
        if session is None:
            session = self.factory()
            self._sessions[worker_id] = session
        return session

    async def aclose(self) -> None:
        sessions = list(self._sessions.values())
        self._sessions.clear()
        for session in sessions:
            try:
                await session.aclose()
            except Exception as exc:
                logger.warning(f"Closing oracle session failed: {exc}")


def build_oracle_provider(
    oracle: ResearchOracle,
    factory: OracleFactory | None = None,
    supports_concurrency: bool = False,
) -> OracleProvider:
    if supports_concurrency:
        return SharedOracleProvider(oracle)
    if factory is None:
        logger.warning("No oracle factory given; oracle calls from workers will run one at a time")
        return SerializedOracleProvider(oracle)
    return PerWorkerOracleProvider(factory)
