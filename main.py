"""deepcrawl - autonomous research crawler

Simple CLI for running one research session.
"""

import argparse
import asyncio
import json
import sys

from deepcrawl.agents.orchestrator import ResearchOrchestrator
from deepcrawl.config import CrawlerConfig
from deepcrawl.models.events import ProgressEvent
from deepcrawl.services.logger import setup_logging

OUTPUT_FORMATS = ("text", "json")


def print_progress(event: ProgressEvent) -> None:
    event_type = event.event.value
    data = event.data

    if event_type == "keywords_generated":
        keywords = data.get("keywords", [])
        print(f"\n[*] Keywords ({len(keywords)}):")
        for i, keyword in enumerate(keywords, 1):
            print(f"  {i}. {keyword}")

    elif event_type == "search_started":
        print(f"\n[~] Round {data.get('round')}: searching {data.get('keyword')!r}")

    elif event_type == "urls_found":
        print(f"  [+] {data.get('queued')} URLs queued")

    elif event_type == "url_processed":
        marker = "+" if data.get("is_relevant") else ("." if data.get("status") == "success" else "x")
        print(f"  [{marker}] {data.get('url')}")

    elif event_type == "sufficiency_checked":
        stats = data.get("statistics", {})
        print(
            f"  [=] sufficient={data.get('is_sufficient')} "
            f"processed={stats.get('processed')} relevant={stats.get('relevant')}"
        )

    elif event_type == "building_response":
        print(f"\n[+] Building response from {data.get('sources_count')} sources...")

    elif event_type == "research_complete":
        print("\n\n[*] Research Complete!")
        print(f"   Runtime: {data.get('runtime_ms')}ms")
        print(f"   Pages visited: {data.get('pages_visited')}")
        print(f"   Sources: {len(data.get('sources', []))}")
        print(f"\n{'='*50}")
        print("REPORT:")
        print(f"{'='*50}")
        print(data.get("report", ""))

    elif event_type == "error":
        print(f"\n[!] Error: {data.get('message', 'Unknown error')}")


async def run_research(
    query: str,
    *,
    max_urls: int | None = None,
    max_concurrent: int | None = None,
    model: str | None = None,
    domain_context: str | None = None,
    output_format: str = "text",
) -> None:
    """Run research on the given query and print progress and the answer.

    With ``output_format="json"`` only the final result is printed, as one
    JSON document on stdout; errors go to stderr.
    """
    as_json = output_format == "json"
    if not as_json:
        print(f"Research query: {query}")
        print("-" * 50)

    overrides = {}
    if max_concurrent is not None:
        overrides["max_concurrent"] = max_concurrent
    if domain_context:
        overrides["domain_context"] = domain_context
    orchestrator = ResearchOrchestrator(config=CrawlerConfig.from_settings(**overrides), model=model)

    async for event in orchestrator.research(query, max_urls=max_urls):
        if not as_json:
            print_progress(event)
        elif event.event.value == "research_complete":
            print(json.dumps(event.data["result"].to_dict(), indent=2, ensure_ascii=False))
        elif event.event.value == "error":
            print(f"Error: {event.data.get('message', 'Unknown error')}", file=sys.stderr)


def main():
    parser = argparse.ArgumentParser(description="deepcrawl research crawler")
    parser.add_argument("--query", "-q", required=True, help="Research objective")
    parser.add_argument("--max-urls", type=int, help="URL budget (default: from config)")
    parser.add_argument("--concurrency", "-c", type=int, help="Worker count (default: from config)")
    parser.add_argument("--model", "-m", help="Model to use (default: from config)")
    parser.add_argument("--domain-context", "-d", help="Domain hint used to disambiguate the query")
    parser.add_argument("--format", "-f", choices=OUTPUT_FORMATS, default="text", help="Output format")
    parser.add_argument("--log-level", help="Console log level (default: from config)")

    args = parser.parse_args()
    setup_logging(level=args.log_level)

    asyncio.run(
        run_research(
            args.query,
            max_urls=args.max_urls,
            max_concurrent=args.concurrency,
            model=args.model,
            domain_context=args.domain_context,
            output_format=args.format,
        )
    )


if __name__ == "__main__":
    main()
