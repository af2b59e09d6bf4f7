from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any

from pydantic_settings import BaseSettings


def _split_csv(value: str) -> tuple[str, ...]:
    return tuple(item.strip().lower() for item in value.split(",") if item.strip())


class Settings(BaseSettings):
    # OpenRouter / OpenAI-compatible gateway used by the LLM oracle
    openrouter_api_key: str = ""
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    openrouter_model: str = "openai/gpt-4o-mini"
    llm_max_tokens: int = 2048
    llm_supports_concurrency: bool = False  # False: one oracle session per worker

    # Crawl budget and worker pool
    max_concurrent: int = 4
    max_urls: int = 50
    known_facts_limit: int = 5
    content_max_chars: int = 1500
    review_max_links: int = 5
    request_delay_ms: int = 500

    # Fetching
    fetch_timeout_seconds: float = 15.0
    initial_fetch_timeout_seconds: float = 10.0
    fetch_max_retries: int = 2
    fetch_retry_base_delay_seconds: float = 1.0
    initial_search_max_pages: int = 2

    # Search and domain filtering
    search_engine: str = "duckduckgo"  # duckduckgo | google | bing
    search_url_template: str = ""  # overrides search_engine; must contain {query}
    allowed_domains: str = ""  # comma-separated; empty allows every domain
    blocked_domains: str = ""  # comma-separated
    domain_context: str = ""

    # Orchestration
    relevant_domain_threshold: int = 2
    deep_crawl_link_cap: int = 2
    max_keywords: int = 5
    max_questions: int = 5
    sufficiency_summary_limit: int = 10

    # App
    app_log_level: str = "INFO"
    noisy_log_level: str = "WARNING"
    log_dir: str = ""  # empty disables the file handler

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @property
    def allowed_domain_list(self) -> tuple[str, ...] | None:
        domains = _split_csv(self.allowed_domains)
        return domains or None

    @property
    def blocked_domain_list(self) -> tuple[str, ...]:
        return _split_csv(self.blocked_domains)


settings = Settings()


@dataclass(frozen=True, slots=True)
class DomainFilterConfig:
    """Inputs of the domain filter predicate chain."""

    blocked_domains: tuple[str, ...] = ()
    allowed_domains: tuple[str, ...] | None = None


@dataclass(frozen=True, slots=True)
class CrawlerConfig:
    """Per-session view of the settings.

    Built from the global settings by default; tests and callers override
    individual fields with ``CrawlerConfig.from_settings(max_urls=5)`` or
    ``config.with_overrides(...)``.
    """

    max_concurrent: int = 4
    max_urls: int = 50
    known_facts_limit: int = 5
    content_max_chars: int = 1500
    review_max_links: int = 5
    request_delay_seconds: float = 0.5
    fetch_timeout_seconds: float = 15.0
    initial_fetch_timeout_seconds: float = 10.0
    fetch_max_retries: int = 2
    fetch_retry_base_delay_seconds: float = 1.0
    initial_search_max_pages: int = 2
    search_engine: str = "duckduckgo"
    search_url_template: str | None = None
    domain_filter: DomainFilterConfig = field(default_factory=DomainFilterConfig)
    domain_context: str | None = None
    llm_supports_concurrency: bool = False
    relevant_domain_threshold: int = 2
    deep_crawl_link_cap: int = 2
    max_keywords: int = 5
    max_questions: int = 5
    sufficiency_summary_limit: int = 10

    @classmethod
    def from_settings(cls, source: Settings | None = None, **overrides: Any) -> "CrawlerConfig":
        s = source or settings
        config = cls(
            max_concurrent=int(s.max_concurrent),
            max_urls=int(s.max_urls),
            known_facts_limit=max(int(s.known_facts_limit), 0),
            content_max_chars=max(int(s.content_max_chars), 200),
            review_max_links=max(int(s.review_max_links), 0),
            request_delay_seconds=max(int(s.request_delay_ms), 0) / 1000.0,
            fetch_timeout_seconds=max(float(s.fetch_timeout_seconds), 0.1),
            initial_fetch_timeout_seconds=max(float(s.initial_fetch_timeout_seconds), 0.1),
            fetch_max_retries=max(int(s.fetch_max_retries), 0),
            fetch_retry_base_delay_seconds=max(float(s.fetch_retry_base_delay_seconds), 0.0),
            initial_search_max_pages=max(int(s.initial_search_max_pages), 0),
            search_engine=str(s.search_engine).lower().strip(),
            search_url_template=s.search_url_template.strip() or None,
            domain_filter=DomainFilterConfig(
                blocked_domains=s.blocked_domain_list,
                allowed_domains=s.allowed_domain_list,
            ),
            domain_context=s.domain_context.strip() or None,
            llm_supports_concurrency=bool(s.llm_supports_concurrency),
            relevant_domain_threshold=max(int(s.relevant_domain_threshold), 1),
            deep_crawl_link_cap=max(int(s.deep_crawl_link_cap), 0),
            max_keywords=max(int(s.max_keywords), 1),
            max_questions=max(int(s.max_questions), 0),
            sufficiency_summary_limit=max(int(s.sufficiency_summary_limit), 1),
        )
        return config.with_overrides(**overrides) if overrides else config

    def with_overrides(self, **overrides: Any) -> "CrawlerConfig":
        return replace(self, **overrides)
