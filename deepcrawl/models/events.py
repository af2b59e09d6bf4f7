from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum, StrEnum
from typing import Any


class ResearchPhase(StrEnum):
    INITIAL_SEARCH = "initial_search"
    ANALYZING = "analyzing"
    SEARCHING = "searching"
    REVIEWING = "reviewing"
    CHECKING_SUFFICIENCY = "checking_sufficiency"
    BUILDING_RESPONSE = "building_response"
    COMPLETED = "completed"


class EventType(str, Enum):
    STARTED = "started"
    PHASE_CHANGED = "phase_changed"
    KEYWORDS_GENERATED = "keywords_generated"
    SEARCH_STARTED = "search_started"
    URLS_FOUND = "urls_found"
    URL_PROCESSING_STARTED = "url_processing_started"
    URL_PROCESSED = "url_processed"
    SUFFICIENCY_CHECKED = "sufficiency_checked"
    ADDITIONAL_KEYWORDS = "additional_keywords"
    BUILDING_RESPONSE = "building_response"
    RESEARCH_COMPLETE = "research_complete"
    ERROR = "error"


@dataclass
class ProgressEvent:
    event: EventType
    data: dict[str, Any] = field(default_factory=dict)

    def format(self) -> str:
        return f"event: {self.event.value}\ndata: {json.dumps(self.data, default=str)}\n\n"
