from __future__ import annotations

from typing import Any, Callable

from loguru import logger

from deepcrawl.models.crawl import AggregatedResult
from deepcrawl.models.events import EventType, ProgressEvent, ResearchPhase

EventSink = Callable[[ProgressEvent], None]


def started(objective: str, max_urls: int) -> ProgressEvent:
    return ProgressEvent(
        event=EventType.STARTED,
        data={"objective": objective, "max_urls": max_urls},
    )


def phase_changed(phase: ResearchPhase) -> ProgressEvent:
    return ProgressEvent(event=EventType.PHASE_CHANGED, data={"phase": phase.value})


def keywords_generated(keywords: list[str], questions: list[str]) -> ProgressEvent:
    return ProgressEvent(
        event=EventType.KEYWORDS_GENERATED,
        data={"keywords": keywords, "questions": questions},
    )


def search_started(keyword: str, round_number: int) -> ProgressEvent:
    return ProgressEvent(
        event=EventType.SEARCH_STARTED,
        data={"keyword": keyword, "round": round_number},
    )


def urls_found(keyword: str, urls: list[str], *, queued: int) -> ProgressEvent:
    return ProgressEvent(
        event=EventType.URLS_FOUND,
        data={"keyword": keyword, "urls": urls, "queued": queued},
    )


def url_processing_started(url: str, worker_id: int) -> ProgressEvent:
    return ProgressEvent(
        event=EventType.URL_PROCESSING_STARTED,
        data={"url": url, "worker": worker_id},
    )


def url_processed(
    url: str,
    *,
    worker_id: int,
    status: str,
    duration_ms: int,
    title: str | None = None,
    extracted_info: str = "",
    is_relevant: bool = False,
    deep_urls: int = 0,
) -> ProgressEvent:
    return ProgressEvent(
        event=EventType.URL_PROCESSED,
        data={
            "url": url,
            "worker": worker_id,
            "status": status,
            "duration_ms": duration_ms,
            "title": title,
            "extracted_info": extracted_info,
            "is_relevant": is_relevant,
            "deep_urls": deep_urls,
        },
    )


def sufficiency_checked(
    *,
    is_sufficient: bool,
    should_give_up: bool,
    reason: str,
    statistics: dict[str, int],
) -> ProgressEvent:
    return ProgressEvent(
        event=EventType.SUFFICIENCY_CHECKED,
        data={
            "is_sufficient": is_sufficient,
            "should_give_up": should_give_up,
            "reason": reason,
            "statistics": statistics,
        },
    )


def additional_keywords(keywords: list[str]) -> ProgressEvent:
    return ProgressEvent(event=EventType.ADDITIONAL_KEYWORDS, data={"keywords": keywords})


def building_response(sources_count: int) -> ProgressEvent:
    return ProgressEvent(
        event=EventType.BUILDING_RESPONSE,
        data={"sources_count": sources_count},
    )


def research_complete(result: AggregatedResult) -> ProgressEvent:
    stats = result.statistics
    return ProgressEvent(
        event=EventType.RESEARCH_COMPLETE,
        data={
            "result": result,
            "report": result.response_markdown,
            "sources": result.relevant_urls,
            "pages_visited": stats.total_pages_visited,
            "relevant_pages": stats.relevant_pages_found,
            "keywords_used": stats.keywords_used,
            "runtime_ms": int(stats.duration_seconds * 1000),
        },
    )


def error(message: str, **kwargs: Any) -> ProgressEvent:
    return ProgressEvent(event=EventType.ERROR, data={"message": message, **kwargs})


def emit(sink: EventSink | None, event: ProgressEvent) -> None:
    """Push an event to the sink; a failing sink never affects the crawl."""
    if sink is None:
        return
    try:
        sink(event)
    except Exception as exc:
        logger.warning(f"Progress sink failed on {event.event.value}: {exc}")
