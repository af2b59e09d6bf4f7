from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import StrEnum
from typing import Awaitable, Callable, Protocol

import httpx
from loguru import logger

from deepcrawl.errors import PageParseError
from deepcrawl.models.crawl import FetchedPage


class FetchErrorKind(StrEnum):
    TIMEOUT = "timeout"
    NETWORK = "network"
    HTTP_5XX = "http_5xx"
    HTTP_4XX = "http_4xx"
    CANCELLED = "cancelled"
    PARSE = "parse"
    UNKNOWN = "unknown"

    @property
    def retryable(self) -> bool:
        return self in (FetchErrorKind.TIMEOUT, FetchErrorKind.NETWORK, FetchErrorKind.HTTP_5XX)


@dataclass(frozen=True, slots=True)
class FetchSuccess:
    page: FetchedPage

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True, slots=True)
class FetchFailure:
    kind: FetchErrorKind
    error: str

    @property
    def ok(self) -> bool:
        return False


FetchResult = FetchSuccess | FetchFailure


class PageFetcher(Protocol):
    async def fetch(self, url: str) -> FetchedPage: ...


def classify_fetch_error(exc: BaseException) -> FetchErrorKind:
    """Map an exception raised while fetching to its retry class."""
    if isinstance(exc, asyncio.CancelledError):
        return FetchErrorKind.CANCELLED
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError, httpx.TimeoutException)):
        return FetchErrorKind.TIMEOUT
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status >= 500:
            return FetchErrorKind.HTTP_5XX
        if status >= 400:
            return FetchErrorKind.HTTP_4XX
        return FetchErrorKind.UNKNOWN
    if isinstance(exc, (httpx.TransportError, ConnectionError)):
        return FetchErrorKind.NETWORK
    if isinstance(exc, PageParseError):
        return FetchErrorKind.PARSE
    if "timeout" in str(exc).lower() or "timed out" in str(exc).lower():
        return FetchErrorKind.TIMEOUT
    return FetchErrorKind.UNKNOWN


def _describe(exc: BaseException) -> str:
    message = str(exc).strip()
    return f"{type(exc).__name__}: {message}" if message else type(exc).__name__


class RetryingFetcher:
    """Wraps a page fetcher with a per-attempt deadline and backoff retries.

    Only timeouts, network failures and 5xx responses are retried. The
    n-th retry waits ``base_delay_seconds * 2 ** (n - 1)`` seconds.
    """

    def __init__(
        self,
        fetcher: PageFetcher,
        *,
        timeout_seconds: float = 15.0,
        max_retries: int = 2,
        base_delay_seconds: float = 1.0,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ):
        self.fetcher = fetcher
        self.timeout_seconds = timeout_seconds
        self.max_retries = max(max_retries, 0)
        self.base_delay_seconds = base_delay_seconds
        self._sleep = sleep

    async def attempt_fetch(self, url: str, *, timeout_seconds: float | None = None) -> FetchResult:
        deadline = self.timeout_seconds if timeout_seconds is None else timeout_seconds
        try:
            page = await asyncio.wait_for(self.fetcher.fetch(url), timeout=deadline)
        except asyncio.CancelledError:
            task = asyncio.current_task()
            if task is not None and task.cancelling():
                raise
            return FetchFailure(kind=FetchErrorKind.CANCELLED, error="fetch cancelled")
        except (TimeoutError, asyncio.TimeoutError):
            return FetchFailure(
                kind=FetchErrorKind.TIMEOUT,
                error=f"no response within {deadline:g}s",
            )
        except Exception as exc:
            return FetchFailure(kind=classify_fetch_error(exc), error=_describe(exc))
        return FetchSuccess(page=page)

    async def fetch_result(self, url: str) -> FetchResult:
        """Fetch with retries and return the last attempt's outcome."""
        result = await self.attempt_fetch(url)
        retries = 0
        while (
            isinstance(result, FetchFailure)
            and result.kind.retryable
            and retries < self.max_retries
        ):
            retries += 1
            delay = self.base_delay_seconds * (2 ** (retries - 1))
            logger.debug(
                f"Retrying {url} in {delay:g}s after {result.kind.value} "
                f"(retry {retries}/{self.max_retries})"
            )
            await self._sleep(delay)
            result = await self.attempt_fetch(url)

        if isinstance(result, FetchFailure):
            logger.warning(
                f"Fetch failed for {url}: kind={result.kind.value} retries={retries} error={result.error}"
            )
        return result

    async def fetch_with_retry(self, url: str) -> FetchedPage | None:
        result = await self.fetch_result(url)
        if isinstance(result, FetchSuccess):
            return result.page
        return None
