from __future__ import annotations

import threading
from typing import Iterable

from deepcrawl.models.crawl import CrawlCandidate


class CrawlCandidateStack:
    """Deduplicated holding area for discovered URLs, highest score first.

    A URL already held is ignored on push, so the first candidate pushed for
    a URL keeps its score. Ties keep insertion order.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._candidates: list[CrawlCandidate] = []
        self._urls: set[str] = set()

    def push(self, candidate: CrawlCandidate) -> None:
        self.push_many([candidate])

    def push_many(self, candidates: Iterable[CrawlCandidate]) -> None:
        with self._lock:
            added = False
            for candidate in candidates:
                if candidate.url in self._urls:
                    continue
                self._urls.add(candidate.url)
                self._candidates.append(candidate)
                added = True
            if added:
                self._candidates.sort(key=lambda c: c.score, reverse=True)

    def pop(self) -> CrawlCandidate | None:
        with self._lock:
            if not self._candidates:
                return None
            candidate = self._candidates.pop(0)
            self._urls.discard(candidate.url)
            return candidate

    def pop_many(self, count: int) -> list[CrawlCandidate]:
        with self._lock:
            n = min(max(count, 0), len(self._candidates))
            if n == 0:
                return []
            taken = self._candidates[:n]
            del self._candidates[:n]
            for candidate in taken:
                self._urls.discard(candidate.url)
            return taken

    def peek(self, count: int = 1) -> list[CrawlCandidate]:
        with self._lock:
            return list(self._candidates[: max(count, 0)])

    def contains(self, url: str) -> bool:
        with self._lock:
            return url in self._urls

    def __contains__(self, url: object) -> bool:
        return isinstance(url, str) and self.contains(url)

    @property
    def count(self) -> int:
        with self._lock:
            return len(self._candidates)

    def __len__(self) -> int:
        return self.count

    @property
    def is_empty(self) -> bool:
        return self.count == 0

    def clear(self) -> None:
        with self._lock:
            self._candidates.clear()
            self._urls.clear()
