from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass
from typing import Iterable

from deepcrawl.models.crawl import PageExcerpt, ReviewedContent


@dataclass(frozen=True, slots=True)
class CrawlStatistics:
    processed: int
    relevant: int
    queued: int
    in_progress: int

    def as_dict(self) -> dict[str, int]:
        return {
            "processed": self.processed,
            "relevant": self.relevant,
            "queued": self.queued,
            "in_progress": self.in_progress,
        }


def slice_line_ranges(text: str, ranges: Iterable[tuple[int, int]]) -> list[str]:
    """Cut ``text`` into excerpts along 0-based, half-open line ranges.

    Ranges are clipped to the document; empty or inverted ranges are dropped.
    """
    lines = text.split("\n")
    excerpts: list[str] = []
    for start, end in ranges:
        safe_start = max(0, int(start))
        safe_end = min(len(lines), int(end))
        if safe_start >= safe_end:
            continue
        excerpts.append("\n".join(lines[safe_start:safe_end]))
    return excerpts


class CrawlContext:
    """Shared, lock-guarded state of one research session.

    Workers take URLs with ``dequeue_url`` and must hand every one of them
    back through ``complete_url``, including on failure paths. The queue,
    the in-progress set and the processed counter change together under one
    lock, so ``total_processed + in_progress <= max_urls`` holds at every
    instant no matter how many workers run.
    """

    def __init__(
        self,
        objective: str,
        success_criteria: Iterable[str],
        *,
        max_urls: int,
        known_facts_limit: int = 5,
        relevant_domain_threshold: int = 2,
    ):
        self.objective = objective
        self.max_urls = max_urls
        self.known_facts_limit = known_facts_limit
        self.relevant_domain_threshold = relevant_domain_threshold
        self._lock = threading.Lock()

        self._url_queue: deque[str] = deque()
        self._visited: set[str] = set()
        self._in_progress: set[str] = set()
        self._total_processed = 0

        self._reviewed_contents: list[ReviewedContent] = []
        self._extracted_facts: list[str] = []
        self._relevant_domains: dict[str, int] = {}
        self._page_contents: dict[str, str] = {}

        self._success_criteria: list[str] = list(success_criteria)
        self._is_sufficient = False

    # --- URL queue ---

    def enqueue_urls(self, urls: Iterable[str]) -> int:
        """Queue unseen URLs in order; returns how many were added."""
        added = 0
        with self._lock:
            for url in urls:
                if url in self._visited:
                    continue
                self._visited.add(url)
                self._url_queue.append(url)
                added += 1
        return added

    def dequeue_url(self) -> str | None:
        with self._lock:
            if self._is_sufficient:
                return None
            if self._total_processed + len(self._in_progress) >= self.max_urls:
                return None
            if not self._url_queue:
                return None
            url = self._url_queue.popleft()
            self._in_progress.add(url)
            return url

    def complete_url(self, url: str) -> None:
        with self._lock:
            self._in_progress.discard(url)
            self._total_processed += 1

    def register_processed(self, urls: Iterable[str]) -> int:
        """Record URLs handled outside the worker pool as visited and processed."""
        registered = 0
        with self._lock:
            for url in urls:
                if url in self._visited:
                    continue
                self._visited.add(url)
                self._total_processed += 1
                registered += 1
        return registered

    def is_visited(self, url: str) -> bool:
        with self._lock:
            return url in self._visited

    # --- results ---

    def add_result(self, content: ReviewedContent) -> None:
        with self._lock:
            self._reviewed_contents.append(content)
            if content.is_relevant:
                self._extracted_facts.append(content.extracted_info)
                host = content.host
                if host:
                    self._relevant_domains[host] = self._relevant_domains.get(host, 0) + 1

    def store_page_content(self, url: str, text: str) -> None:
        with self._lock:
            self._page_contents[url] = text

    def get_page_content(self, url: str) -> str | None:
        with self._lock:
            return self._page_contents.get(url)

    def get_known_facts(self, limit: int | None = None) -> list[str]:
        effective = self.known_facts_limit if limit is None else limit
        if effective <= 0:
            return []
        with self._lock:
            return list(self._extracted_facts[-effective:])

    def get_relevant_domains(self) -> set[str]:
        with self._lock:
            return {
                host
                for host, count in self._relevant_domains.items()
                if count >= self.relevant_domain_threshold
            }

    def get_relevant_context(self) -> list[PageExcerpt]:
        """Excerpts of every relevant page, in ``reviewed_contents`` order.

        Uses the cached page text cut to the reviewer's line ranges and
        falls back to the extracted summary when either is missing.
        """
        with self._lock:
            relevant = [c for c in self._reviewed_contents if c.is_relevant]
            pages = {c.url: self._page_contents.get(c.url) for c in relevant}

        excerpts: list[PageExcerpt] = []
        for content in relevant:
            text = pages.get(content.url)
            slices: list[str] = []
            if text and content.relevant_ranges:
                slices = slice_line_ranges(text, content.relevant_ranges)
            if not slices and content.extracted_info:
                slices = [content.extracted_info]
            excerpts.append(
                PageExcerpt(url=content.url, title=content.title, excerpts=tuple(slices))
            )
        return excerpts

    @property
    def reviewed_contents(self) -> list[ReviewedContent]:
        with self._lock:
            return list(self._reviewed_contents)

    @property
    def relevant_count(self) -> int:
        with self._lock:
            return sum(1 for c in self._reviewed_contents if c.is_relevant)

    # --- control ---

    def mark_sufficient(self) -> None:
        with self._lock:
            self._is_sufficient = True
            self._url_queue.clear()

    @property
    def is_sufficient(self) -> bool:
        with self._lock:
            return self._is_sufficient

    def update_success_criteria(self, criteria: Iterable[str]) -> bool:
        """Replace the criteria wholesale; an empty list keeps the current ones."""
        new_criteria = [c for c in criteria if c and c.strip()]
        if not new_criteria:
            return False
        with self._lock:
            self._success_criteria = new_criteria
        return True

    @property
    def success_criteria(self) -> list[str]:
        with self._lock:
            return list(self._success_criteria)

    # --- statistics ---

    @property
    def total_processed(self) -> int:
        with self._lock:
            return self._total_processed

    @property
    def queue_count(self) -> int:
        with self._lock:
            return len(self._url_queue)

    @property
    def visited_count(self) -> int:
        with self._lock:
            return len(self._visited)

    @property
    def in_progress_count(self) -> int:
        with self._lock:
            return len(self._in_progress)

    @property
    def has_more_urls(self) -> bool:
        with self._lock:
            return bool(self._url_queue) or bool(self._in_progress)

    def is_exhausted(self) -> bool:
        """True once the URL budget is spent by completed work."""
        with self._lock:
            return self._total_processed >= self.max_urls

    def get_statistics(self) -> CrawlStatistics:
        with self._lock:
            return CrawlStatistics(
                processed=self._total_processed,
                relevant=sum(1 for c in self._reviewed_contents if c.is_relevant),
                queued=len(self._url_queue),
                in_progress=len(self._in_progress),
            )
