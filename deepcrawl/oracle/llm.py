"""Oracle backed by an OpenRouter chat model and the JSON prompt catalog."""
from __future__ import annotations

import json
import time
from typing import Any, TypeVar

from loguru import logger
from pydantic import BaseModel, ValidationError

from deepcrawl import llm_client
from deepcrawl.config import settings
from deepcrawl.errors import OracleError
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
from deepcrawl.oracle.base import OracleFactory, ResearchOracle, accept_disambiguation
from deepcrawl.services.logger import log_llm_call
from deepcrawl.services.prompt_store import render_oracle_system, render_oracle_user

ModelT = TypeVar("ModelT", bound=BaseModel)

EMPTY_SECTION = "(none)"
SUMMARY_INPUT_CHARS = 4000


class DisambiguatedQuery(BaseModel):
    query: str = ""


class PageSummary(BaseModel):
    summary: str = ""


def _bullets(items: list[str]) -> str:
    lines = [f"- {item}" for item in items if item and item.strip()]
    return "\n".join(lines) if lines else EMPTY_SECTION


def _or_none(value: str | None) -> str:
    return value.strip() if value and value.strip() else EMPTY_SECTION


def _extract_json_object(raw_text: str) -> dict[str, Any]:
    text = raw_text.strip()
    if text.startswith("```"):
        parts = text.split("```")
        if len(parts) >= 2:
            text = parts[1]
        if text.startswith("json"):
            text = text[4:]
        text = text.strip()
    start = text.find("{")
    end = text.rfind("}")
    if start < 0 or end <= start:
        raise json.JSONDecodeError("object not found", text, 0)
    parsed = json.loads(text[start : end + 1])
    if not isinstance(parsed, dict):
        raise json.JSONDecodeError("not an object", text, 0)
    return parsed


def _format_excerpts(request: ResponseRequest) -> str:
    blocks: list[str] = []
    for url, excerpts in request.excerpts_by_source.items():
        title = request.titles.get(url) or url
        body = "\n\n".join(excerpt.strip() for excerpt in excerpts if excerpt.strip())
        blocks.append(f"## {title}\nSource: {url}\n\n{body or EMPTY_SECTION}")
    return "\n\n".join(blocks) if blocks else EMPTY_SECTION


class LLMOracle(ResearchOracle):
    """Implements every oracle decision with one chat completion returning JSON."""

    def __init__(
        self,
        *,
        llm: llm_client.OpenRouterClientAdapter | None = None,
        model: str | None = None,
        max_tokens: int | None = None,
        max_keywords: int = 5,
        max_questions: int = 5,
        owns_client: bool = False,
    ):
        self._llm = llm or llm_client.client()
        # Only a client built for this session is closed with it; the shared one stays open.
        self._owns_client = owns_client and llm is not None
        self.model = model or llm_client.get_model()
        self.max_tokens = max_tokens or settings.llm_max_tokens
        self.max_keywords = max_keywords
        self.max_questions = max_questions

    @classmethod
    def factory(cls, **kwargs: Any) -> OracleFactory:
        """Build independent sessions, each owning its own HTTP client."""

        def build() -> LLMOracle:
            return cls(llm=llm_client.get_client(), owns_client=True, **kwargs)

        return build

    async def aclose(self) -> None:
        if self._owns_client:
            self._owns_client = False
            await self._llm.aclose()

    async def _complete(self, caller: str, system: str, user: str) -> str:
        t0 = time.monotonic()
        try:
            response = await self._llm.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                system=system,
                messages=[{"role": "user", "content": user}],
            )
        except Exception as exc:
            log_llm_call(
                model=self.model,
                caller=caller,
                duration_ms=int((time.monotonic() - t0) * 1000),
                status="error",
                error=str(exc),
            )
            raise OracleError(f"{caller} call failed: {exc}") from exc

        log_llm_call(
            model=self.model,
            caller=caller,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
            duration_ms=int((time.monotonic() - t0) * 1000),
        )
        text = response.text
        if not text:
            raise OracleError(f"{caller} returned an empty reply")
        return text

    async def _complete_json(self, caller: str, schema: type[ModelT], system: str, user: str) -> ModelT:
        text = await self._complete(caller, system, user)
        try:
            return schema.model_validate(_extract_json_object(text))
        except (json.JSONDecodeError, ValidationError) as exc:
            logger.debug(f"{caller} reply was not valid {schema.__name__}: {text[:300]}")
            raise OracleError(f"{caller} returned malformed JSON: {exc}") from exc

    async def analyze_objective(
        self,
        objective: str,
        background: str | None = None,
        domain_context: str | None = None,
    ) -> ObjectiveAnalysis:
        system = render_oracle_system(
            "analyze_objective",
            max_keywords=self.max_keywords,
            max_questions=self.max_questions,
        )
        user = render_oracle_user(
            "analyze_objective",
            objective=objective,
            background=_or_none(background),
            domain_context=_or_none(domain_context),
        )
        return await self._complete_json("analyze_objective", ObjectiveAnalysis, system, user)

    async def disambiguate_query(self, query: str, domain_context: str) -> str:
        system = render_oracle_system("disambiguate_query")
        user = render_oracle_user(
            "disambiguate_query",
            query=query,
            domain_context=_or_none(domain_context),
        )
        try:
            result = await self._complete_json("disambiguate_query", DisambiguatedQuery, system, user)
        except OracleError as exc:
            logger.warning(f"Query disambiguation failed, keeping original query: {exc}")
            return query
        return accept_disambiguation(query, result.query)

    async def summarize_page(self, objective: str, page: FetchedPage) -> str:
        system = render_oracle_system("summarize_page")
        user = render_oracle_user(
            "summarize_page",
            objective=objective,
            title=_or_none(page.title),
            content=page.text[:SUMMARY_INPUT_CHARS],
        )
        result = await self._complete_json("summarize_page", PageSummary, system, user)
        return result.summary.strip()

    async def review_content(self, request: ReviewRequest) -> ContentReview:
        system = render_oracle_system("review_content")
        user = render_oracle_user(
            "review_content",
            objective=request.objective,
            title=_or_none(request.title),
            content=request.numbered_content or EMPTY_SECTION,
            links="\n".join(request.link_summaries) or EMPTY_SECTION,
            known_facts=_bullets(request.known_facts),
            relevant_domains=_bullets(request.relevant_domains),
            domain_context=_or_none(request.domain_context),
        )
        return await self._complete_json("review_content", ContentReview, system, user)

    async def check_sufficiency(self, request: SufficiencyRequest) -> SufficiencyResult:
        system = render_oracle_system("check_sufficiency")
        user = render_oracle_user(
            "check_sufficiency",
            objective=request.objective,
            success_criteria=_bullets(request.success_criteria),
            summaries=_bullets(request.collected_summaries),
            round_number=request.round_number,
            new_relevant=request.new_relevant_this_round,
            relevant_count=request.relevant_count,
            domain_context=_or_none(request.domain_context),
        )
        return await self._complete_json("check_sufficiency", SufficiencyResult, system, user)

    async def build_response(self, request: ResponseRequest) -> FinalResponse:
        system = render_oracle_system("build_response")
        user = render_oracle_user(
            "build_response",
            objective=request.objective,
            questions=_bullets(request.questions),
            success_criteria=_bullets(request.success_criteria),
            excerpts=_format_excerpts(request),
        )
        return await self._complete_json("build_response", FinalResponse, system, user)
