"""Tests for the research orchestrator."""
from __future__ import annotations

import asyncio

import httpx
import pytest

from conftest import (
    ClosableOracle,
    FailingOracle,
    FakeFetcher,
    FakeSearch,
    OverlapTrackingOracle,
    ScriptedOracle,
    no_sleep,
    relevant_review,
)
from deepcrawl.agents.orchestrator import ResearchOrchestrator, fallback_response, sources_section
from deepcrawl.errors import InvalidConfigurationError, OracleError, SearchError
from deepcrawl.models.crawl import PageExcerpt
from deepcrawl.models.events import EventType
from deepcrawl.models.oracle import FALLBACK_SUCCESS_CRITERION, ObjectiveAnalysis, SufficiencyResult

OBJECTIVE = "Tokyo population"
TOKYO_URLS = [f"https://tokyo{i}.example.org/population" for i in range(8)]


def make_orchestrator(oracle, search, config, fetcher=None, **kwargs) -> ResearchOrchestrator:
    return ResearchOrchestrator(
        oracle,
        config=config,
        search=search,
        fetcher=fetcher or FakeFetcher(),
        sleep=no_sleep,
        **kwargs,
    )


def analysis(*keywords: str) -> ObjectiveAnalysis:
    return ObjectiveAnalysis(
        keywords=list(keywords),
        questions=["How many people live there?"],
        success_criteria=["an official figure"],
    )


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_tokyo_population_scenario(self, config):
        relevant = TOKYO_URLS[2:5]
        oracle = ScriptedOracle(
            analysis=analysis("tokyo population 2024"),
            reviews={url: relevant_review(f"fact from {url}") for url in relevant},
            sufficiency=[
                SufficiencyResult(is_sufficient=True, reason_markdown="enough", success_criteria=["refined"])
            ],
        )
        search = FakeSearch({OBJECTIVE: TOKYO_URLS, "tokyo population 2024": TOKYO_URLS})
        fetcher = FakeFetcher()
        orchestrator = make_orchestrator(oracle, search, config, fetcher)

        result = await orchestrator.run(OBJECTIVE, max_urls=5)

        stats = result.statistics
        assert stats.total_pages_visited <= 5
        assert stats.relevant_pages_found == 3
        assert stats.keywords_used == 1
        assert sorted(result.relevant_urls) == sorted(relevant)

        sources = result.response_markdown.split("## Sources\n\n", 1)[1].splitlines()
        assert sources == [f"- {url}" for url in result.relevant_urls]
        assert result.response_markdown.startswith("# Answer")
        assert result.success_criteria == ("refined",)
        assert result.keywords_used == ("tokyo population 2024",)

        # Initial-search pages are summarized once and never re-fetched by workers.
        assert oracle.calls["summarize_page"] == TOKYO_URLS[:2]
        assert fetcher.calls.count(TOKYO_URLS[0]) == 1
        assert oracle.calls["analyze_objective"][0][1] == (
            "[tokyo0.example.org] background summary\n\n[tokyo1.example.org] background summary"
        )

        request = oracle.calls["check_sufficiency"][0]
        assert request.round_number == 1
        assert request.new_relevant_this_round == 3
        assert request.relevant_count == 3
        assert len(request.collected_summaries) == 3

    @pytest.mark.asyncio
    async def test_analysis_failure_degrades_to_objective(self, config):
        oracle = ScriptedOracle(analysis=OracleError("model down"))
        search = FakeSearch({OBJECTIVE: TOKYO_URLS[:3]})

        result = await make_orchestrator(oracle, search, config).run(OBJECTIVE)

        assert result.keywords_used == (OBJECTIVE,)
        assert result.success_criteria == (FALLBACK_SUCCESS_CRITERION,)
        assert result.questions == (OBJECTIVE,)
        assert search.queries == [OBJECTIVE, OBJECTIVE]

    @pytest.mark.asyncio
    async def test_every_oracle_failing_still_completes(self, config):
        search = FakeSearch({OBJECTIVE: TOKYO_URLS[:4]})

        result = await make_orchestrator(FailingOracle(), search, config).run(OBJECTIVE)

        assert result.statistics.relevant_pages_found == 0
        assert result.statistics.total_pages_visited == 4
        assert result.response_markdown == f"# {OBJECTIVE}\n\nno relevant info collected"

    @pytest.mark.asyncio
    async def test_empty_keywords_fall_back(self, config):
        oracle = ScriptedOracle(analysis=ObjectiveAnalysis(keywords=["  "], questions=[], success_criteria=[]))
        search = FakeSearch({OBJECTIVE: TOKYO_URLS[:1]})

        result = await make_orchestrator(oracle, search, config).run(OBJECTIVE)

        assert result.keywords_used == (OBJECTIVE,)
        assert result.success_criteria == (FALLBACK_SUCCESS_CRITERION,)


class TestKeywordLoop:
    @pytest.mark.asyncio
    async def test_additional_keywords_loop_back_without_repeats(self, config):
        oracle = ScriptedOracle(
            analysis=analysis("alpha", "Alpha ", "beta"),
            reviews={url: relevant_review() for url in TOKYO_URLS},
            sufficiency=[
                SufficiencyResult(additional_keywords=["ALPHA", "gamma", "beta"]),
                SufficiencyResult(),
                SufficiencyResult(is_sufficient=True),
            ],
        )
        search = FakeSearch({"alpha": TOKYO_URLS[:2], "beta": TOKYO_URLS[2:4], "gamma": TOKYO_URLS[4:6]})

        result = await make_orchestrator(oracle, search, config).run(OBJECTIVE)

        assert result.keywords_used == ("alpha", "beta", "gamma")
        assert search.queries == [OBJECTIVE, "alpha", "beta", "gamma"]
        assert [r.round_number for r in oracle.calls["check_sufficiency"]] == [1, 2, 3]
        assert [r.new_relevant_this_round for r in oracle.calls["check_sufficiency"]] == [2, 2, 2]

    @pytest.mark.asyncio
    async def test_give_up_stops_the_loop(self, config):
        oracle = ScriptedOracle(
            analysis=analysis("first", "second"),
            reviews={url: relevant_review() for url in TOKYO_URLS},
            sufficiency=[SufficiencyResult.give_up("nothing more to find")],
        )
        search = FakeSearch({"first": TOKYO_URLS[:2], "second": TOKYO_URLS[2:4]})

        result = await make_orchestrator(oracle, search, config).run(OBJECTIVE)

        assert result.keywords_used == ("first",)
        assert "second" not in search.queries
        assert result.statistics.relevant_pages_found == 2

    @pytest.mark.asyncio
    async def test_search_failure_skips_keyword(self, config):
        oracle = ScriptedOracle(
            analysis=analysis("broken", "works"),
            reviews={url: relevant_review() for url in TOKYO_URLS},
        )
        search = FakeSearch({"broken": SearchError("engine down"), "works": TOKYO_URLS[:2]})

        result = await make_orchestrator(oracle, search, config).run(OBJECTIVE)

        assert result.keywords_used == ("broken", "works")
        assert len(oracle.calls["check_sufficiency"]) == 1
        assert result.statistics.relevant_pages_found == 2

    @pytest.mark.asyncio
    async def test_budget_stops_before_next_keyword(self, config):
        oracle = ScriptedOracle(analysis=analysis("k1", "k2"))
        search = FakeSearch({"k1": TOKYO_URLS[:3], "k2": TOKYO_URLS[3:6]})

        result = await make_orchestrator(oracle, search, config).run(OBJECTIVE, max_urls=2)

        assert search.queries == [OBJECTIVE, "k1"]
        assert result.statistics.total_pages_visited == 2

    @pytest.mark.asyncio
    async def test_sufficiency_skipped_when_nothing_reviewed(self, config):
        request = httpx.Request("GET", TOKYO_URLS[0])
        not_found = httpx.HTTPStatusError("404", request=request, response=httpx.Response(404, request=request))
        oracle = ScriptedOracle(analysis=analysis("k1"))
        search = FakeSearch({"k1": TOKYO_URLS[:2]})
        fetcher = FakeFetcher(failures={url: [not_found] for url in TOKYO_URLS[:2]})

        result = await make_orchestrator(oracle, search, config, fetcher).run(OBJECTIVE)

        assert oracle.calls["check_sufficiency"] == []
        assert result.statistics.total_pages_visited == 2
        assert result.reviewed_contents == ()

    @pytest.mark.asyncio
    async def test_failed_sufficiency_keeps_criteria(self, config):
        oracle = ScriptedOracle(
            analysis=analysis("k1"),
            reviews={TOKYO_URLS[0]: relevant_review()},
            sufficiency=[OracleError("timeout")],
        )
        search = FakeSearch({"k1": TOKYO_URLS[:1]})

        result = await make_orchestrator(oracle, search, config).run(OBJECTIVE)

        assert result.success_criteria == ("an official figure",)


class TestResponseBuilding:
    @pytest.mark.asyncio
    async def test_oracle_failure_falls_back_to_excerpts(self, config):
        url = TOKYO_URLS[0]
        oracle = ScriptedOracle(
            analysis=analysis("k1"),
            reviews={url: relevant_review("summary")},
            sufficiency=[SufficiencyResult(is_sufficient=True)],
            response=OracleError("no answer"),
        )
        search = FakeSearch({"k1": [url]})

        result = await make_orchestrator(oracle, search, config).run(OBJECTIVE)

        assert result.response_markdown.startswith(f"# {OBJECTIVE}\n\n## {url}\n\nFirst fact about {url}")
        assert result.response_markdown.endswith(f"## Sources\n\n- {url}")

    @pytest.mark.asyncio
    async def test_response_request_uses_sliced_excerpts(self, config):
        url = TOKYO_URLS[0]
        oracle = ScriptedOracle(
            analysis=analysis("k1"),
            reviews={url: relevant_review("summary")},
            sufficiency=[SufficiencyResult(is_sufficient=True)],
        )
        search = FakeSearch({"k1": [url]})

        await make_orchestrator(oracle, search, config).run(OBJECTIVE)

        request = oracle.calls["build_response"][0]
        assert request.excerpts_by_source == {url: [f"First fact about {url}"]}
        assert request.questions == ["How many people live there?"]

    def test_sources_and_fallback_helpers(self):
        excerpts = [
            PageExcerpt(url="https://a.com", title="A", excerpts=("one", "two")),
            PageExcerpt(url="https://b.com", title=None, excerpts=()),
        ]
        assert sources_section(["https://a.com", "https://b.com"]) == (
            "## Sources\n\n- https://a.com\n- https://b.com"
        )
        assert fallback_response("Q", excerpts) == "# Q\n\n## A\n\none\n\ntwo"


class TestInitialSearch:
    @pytest.mark.asyncio
    async def test_domain_context_disambiguates_initial_query(self, config):
        oracle = ScriptedOracle(analysis=analysis("k1"), disambiguated='"Tokyo metropolis population"')
        search = FakeSearch({"Tokyo metropolis population": TOKYO_URLS[:2], "k1": TOKYO_URLS[2:3]})

        await make_orchestrator(
            oracle, search, config.with_overrides(domain_context="demography")
        ).run(OBJECTIVE)

        assert oracle.calls["disambiguate_query"] == [(OBJECTIVE, "demography")]
        assert search.queries[0] == "Tokyo metropolis population"

    @pytest.mark.asyncio
    async def test_overlong_disambiguation_is_discarded(self, config):
        oracle = ScriptedOracle(analysis=analysis("k1"), disambiguated="x" * 201)
        search = FakeSearch({OBJECTIVE: TOKYO_URLS[:1], "k1": TOKYO_URLS[1:2]})

        await make_orchestrator(oracle, search, config.with_overrides(domain_context="d")).run(OBJECTIVE)

        assert search.queries[0] == OBJECTIVE

    @pytest.mark.asyncio
    async def test_no_disambiguation_without_domain_context(self, config):
        oracle = ScriptedOracle(analysis=analysis("k1"))
        search = FakeSearch({"k1": TOKYO_URLS[:1]})

        result = await make_orchestrator(oracle, search, config).run(OBJECTIVE)

        assert oracle.calls["disambiguate_query"] == []
        assert oracle.calls["analyze_objective"][0][1] is None
        assert result.statistics.total_pages_visited == 1

    @pytest.mark.asyncio
    async def test_initial_fetch_failures_are_not_fatal(self, config):
        error = httpx.ConnectError("refused")
        oracle = ScriptedOracle(analysis=analysis("k1"))
        search = FakeSearch({OBJECTIVE: TOKYO_URLS[:2], "k1": TOKYO_URLS[:3]})
        fetcher = FakeFetcher(failures={TOKYO_URLS[0]: [error], TOKYO_URLS[1]: [error]})

        result = await make_orchestrator(oracle, search, config, fetcher).run(OBJECTIVE)

        assert oracle.calls["summarize_page"] == []
        assert oracle.calls["analyze_objective"][0][1] is None
        assert result.statistics.total_pages_visited == 3
        assert fetcher.calls.count(TOKYO_URLS[0]) == 1


class TestOracleSessions:
    @pytest.mark.asyncio
    async def test_single_oracle_without_concurrency_support_is_never_called_concurrently(self, config):
        oracle = OverlapTrackingOracle()
        search = FakeSearch({OBJECTIVE: TOKYO_URLS})
        orchestrator = make_orchestrator(
            oracle, search, config.with_overrides(max_concurrent=4, llm_supports_concurrency=False)
        )

        result = await orchestrator.run(OBJECTIVE)

        assert result.statistics.total_pages_visited == 8
        assert len(oracle.calls["review_content"]) == 6
        assert oracle.peak == 1

    @pytest.mark.asyncio
    async def test_per_worker_sessions_are_closed_after_each_run(self, config):
        created: list[ClosableOracle] = []

        def factory() -> ClosableOracle:
            created.append(ClosableOracle())
            return created[-1]

        search = FakeSearch({OBJECTIVE: TOKYO_URLS})
        orchestrator = make_orchestrator(
            ScriptedOracle(), search, config.with_overrides(max_concurrent=2), oracle_factory=factory
        )

        await orchestrator.run(OBJECTIVE)

        assert len(created) == 2
        assert all(session.closed for session in created)

    @pytest.mark.asyncio
    async def test_sessions_are_closed_when_the_run_is_cancelled(self, config):
        created: list[ClosableOracle] = []

        def factory() -> ClosableOracle:
            created.append(ClosableOracle())
            return created[-1]

        class CancellingSearch(FakeSearch):
            async def search(self, keyword: str) -> list[str]:
                if keyword == "k2":
                    raise asyncio.CancelledError
                return await super().search(keyword)

        orchestrator = make_orchestrator(
            ScriptedOracle(analysis=analysis("k1", "k2")),
            CancellingSearch({"k1": TOKYO_URLS[:3]}),
            config.with_overrides(max_concurrent=2),
            oracle_factory=factory,
        )

        with pytest.raises(asyncio.CancelledError):
            await orchestrator.run(OBJECTIVE)

        assert len(created) == 2
        assert all(session.closed for session in created)


class TestConfiguration:
    def test_zero_workers_fail_fast(self, config):
        with pytest.raises(InvalidConfigurationError):
            make_orchestrator(ScriptedOracle(), FakeSearch(), config.with_overrides(max_concurrent=0))

    def test_search_template_without_placeholder_fails_fast(self, config):
        with pytest.raises(InvalidConfigurationError):
            make_orchestrator(
                ScriptedOracle(),
                FakeSearch(),
                config.with_overrides(search_url_template="https://search.example/?q="),
            )

    @pytest.mark.asyncio
    async def test_zero_budget_is_rejected(self, config):
        search = FakeSearch()
        with pytest.raises(InvalidConfigurationError):
            await make_orchestrator(ScriptedOracle(), search, config).run(OBJECTIVE, max_urls=0)
        assert search.queries == []


class TestStreaming:
    @pytest.mark.asyncio
    async def test_research_streams_events_and_completes(self, config):
        oracle = ScriptedOracle(
            analysis=analysis("k1"),
            reviews={TOKYO_URLS[0]: relevant_review()},
            sufficiency=[SufficiencyResult(is_sufficient=True)],
        )
        search = FakeSearch({"k1": TOKYO_URLS[:2]})

        events = [e async for e in make_orchestrator(oracle, search, config).research(OBJECTIVE)]

        kinds = [e.event for e in events]
        assert kinds[0] == EventType.STARTED
        assert kinds[-1] == EventType.RESEARCH_COMPLETE
        assert EventType.KEYWORDS_GENERATED in kinds
        assert kinds.count(EventType.URL_PROCESSED) == 2
        assert events[-1].data["sources"] == [TOKYO_URLS[0]]
        assert events[-1].data["result"].statistics.relevant_pages_found == 1

    @pytest.mark.asyncio
    async def test_research_reports_session_errors(self, config):
        events = [
            e async for e in make_orchestrator(ScriptedOracle(), FakeSearch(), config).research(OBJECTIVE, max_urls=0)
        ]

        assert events[-1].event == EventType.ERROR
        assert "max_urls" in events[-1].data["message"]

    @pytest.mark.asyncio
    async def test_failing_sink_does_not_break_the_session(self, config):
        def broken_sink(event):
            raise RuntimeError("consumer gone")

        oracle = ScriptedOracle(analysis=analysis("k1"), reviews={TOKYO_URLS[0]: relevant_review()})
        search = FakeSearch({"k1": TOKYO_URLS[:1]})

        result = await make_orchestrator(oracle, search, config, event_sink=broken_sink).run(OBJECTIVE)

        assert result.statistics.relevant_pages_found == 1
