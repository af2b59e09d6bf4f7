"""Request/response contracts between the crawl engine and its oracle."""

from __future__ import annotations

from pydantic import BaseModel, Field, field_validator

FALLBACK_SUCCESS_CRITERION = "find relevant information"


class ObjectiveAnalysis(BaseModel):
    keywords: list[str] = Field(default_factory=list)
    questions: list[str] = Field(default_factory=list)
    success_criteria: list[str] = Field(default_factory=list)

    @classmethod
    def fallback(cls, objective: str) -> "ObjectiveAnalysis":
        return cls(
            keywords=[objective],
            questions=[objective],
            success_criteria=[FALLBACK_SUCCESS_CRITERION],
        )


class PriorityLink(BaseModel):
    index: int
    score: float = 0.0
    reason: str = ""

    @field_validator("score")
    @classmethod
    def _clamp_score(cls, value: float) -> float:
        return min(1.0, max(0.0, float(value)))


class RelevantRange(BaseModel):
    start: int
    end: int


class ContentReview(BaseModel):
    is_relevant: bool = False
    extracted_info: str = ""
    should_deep_crawl: bool = False
    priority_links: list[PriorityLink] = Field(default_factory=list)
    relevant_ranges: list[RelevantRange] = Field(default_factory=list)

    @classmethod
    def irrelevant(cls) -> "ContentReview":
        return cls()


class SufficiencyResult(BaseModel):
    is_sufficient: bool = False
    should_give_up: bool = False
    additional_keywords: list[str] = Field(default_factory=list)
    reason_markdown: str = ""
    success_criteria: list[str] = Field(default_factory=list)

    @classmethod
    def insufficient(cls, reason: str) -> "SufficiencyResult":
        return cls(reason_markdown=reason)

    @classmethod
    def give_up(cls, reason: str) -> "SufficiencyResult":
        return cls(should_give_up=True, reason_markdown=reason)


class FinalResponse(BaseModel):
    response_markdown: str


class ReviewRequest(BaseModel):
    """Everything a content reviewer sees about one page."""

    objective: str
    title: str
    numbered_content: str
    link_summaries: list[str] = Field(default_factory=list)
    known_facts: list[str] = Field(default_factory=list)
    relevant_domains: list[str] = Field(default_factory=list)
    domain_context: str | None = None


class SufficiencyRequest(BaseModel):
    objective: str
    success_criteria: list[str]
    collected_summaries: list[str]
    round_number: int
    new_relevant_this_round: int
    relevant_count: int
    domain_context: str | None = None


class ResponseRequest(BaseModel):
    objective: str
    questions: list[str]
    success_criteria: list[str]
    excerpts_by_source: dict[str, list[str]]
    titles: dict[str, str] = Field(default_factory=dict)
