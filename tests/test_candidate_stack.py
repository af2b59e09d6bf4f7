"""Tests for the candidate stack."""
from __future__ import annotations

import threading

from deepcrawl.crawl.candidate_stack import CrawlCandidateStack
from deepcrawl.models.crawl import CrawlCandidate


class TestCrawlCandidate:
    def test_score_is_clamped(self):
        assert CrawlCandidate(url="https://a.com", score=1.7).score == 1.0
        assert CrawlCandidate(url="https://a.com", score=-0.3).score == 0.0

    def test_equality_and_hash_use_url_only(self):
        first = CrawlCandidate(url="https://a.com", score=0.1, title="one")
        second = CrawlCandidate(url="https://a.com", score=0.9, title="two")
        assert first == second
        assert len({first, second}) == 1


class TestCrawlCandidateStack:
    def test_pop_yields_non_increasing_scores(self):
        stack = CrawlCandidateStack()
        stack.push_many(
            CrawlCandidate(url=f"https://site{i}.com", score=score)
            for i, score in enumerate([0.2, 0.9, 0.5, 0.7, 0.1])
        )

        scores = []
        while (candidate := stack.pop()) is not None:
            scores.append(candidate.score)

        assert scores == sorted(scores, reverse=True)
        assert stack.is_empty

    def test_duplicate_push_keeps_first_score(self):
        stack = CrawlCandidateStack()
        stack.push(CrawlCandidate(url="https://a.com", score=0.2))
        stack.push(CrawlCandidate(url="https://a.com", score=0.95))

        assert stack.count == 1
        assert stack.pop().score == 0.2

    def test_ties_keep_insertion_order(self):
        stack = CrawlCandidateStack()
        stack.push(CrawlCandidate(url="https://first.com", score=0.5))
        stack.push(CrawlCandidate(url="https://second.com", score=0.5))
        stack.push(CrawlCandidate(url="https://third.com", score=0.5))

        assert [c.url for c in stack.pop_many(3)] == [
            "https://first.com",
            "https://second.com",
            "https://third.com",
        ]

    def test_pop_many_and_peek(self):
        stack = CrawlCandidateStack()
        stack.push_many(CrawlCandidate(url=f"https://{i}.com", score=i / 10) for i in range(5))

        peeked = stack.peek(2)
        assert [c.score for c in peeked] == [0.4, 0.3]
        assert len(stack) == 5

        popped = stack.pop_many(2)
        assert popped == peeked
        assert len(stack) == 3
        assert stack.pop_many(10) and stack.pop_many(1) == []

    def test_contains_and_clear(self):
        stack = CrawlCandidateStack()
        stack.push(CrawlCandidate(url="https://a.com", score=0.5))
        assert stack.contains("https://a.com")
        assert "https://a.com" in stack

        stack.pop()
        assert "https://a.com" not in stack

        stack.push(CrawlCandidate(url="https://b.com", score=0.5))
        stack.clear()
        assert stack.is_empty
        assert stack.pop() is None

    def test_concurrent_pushes_deduplicate(self):
        stack = CrawlCandidateStack()

        def pusher(offset: int) -> None:
            for i in range(200):
                stack.push(CrawlCandidate(url=f"https://{i % 50}.com", score=(i + offset) % 10 / 10))

        threads = [threading.Thread(target=pusher, args=(n,)) for n in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert stack.count == 50
        scores = [c.score for c in stack.pop_many(50)]
        assert scores == sorted(scores, reverse=True)
