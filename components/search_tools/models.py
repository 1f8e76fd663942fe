"""Parameter models for the search tools.

Each model's JSON schema is the schema advertised to the language model.
"""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .patterns import InfoType


class ToolName(str, Enum):
    SEMANTIC_SEARCH = "semantic_search"
    TEXT_SEARCH = "text_search"
    SEARCH_RECENT_NOTES = "search_recent_notes"
    SEARCH_BY_DATE = "search_by_date"
    FIND_SPECIFIC_INFO = "find_specific_info"
    SEARCH_BY_TAGS = "search_by_tags"
    SEARCH_BY_LINKS = "search_by_links"
    GET_NOTE_DETAILS = "get_note_details"
    EXPLORE_CONNECTIONS = "explore_connections"


class DateType(str, Enum):
    CREATED = "created"
    MODIFIED = "modified"


class LinkDirection(str, Enum):
    INCOMING = "incoming"
    OUTGOING = "outgoing"
    BOTH = "both"


class SortOrder(str, Enum):
    NEWEST = "newest"
    OLDEST = "oldest"


class ToolParams(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class SemanticSearchParams(ToolParams):
    query: str = Field(..., min_length=1, description="What to search for")
    top_k: int = Field(
        default=5, ge=1, le=50, alias="topK", description="Maximum results"
    )
    threshold: float = Field(
        default=0.3, ge=0.0, le=1.0, description="Minimum similarity score"
    )


class TextSearchParams(ToolParams):
    query: str = Field(..., min_length=1, description="Exact text to find")
    case_sensitive: bool = Field(default=False)
    max_results: int = Field(default=10, ge=1, le=100)


class RecentNotesParams(ToolParams):
    count: int = Field(default=10, ge=1, le=100, description="Number of notes")
    content_filter: Optional[str] = Field(
        default=None, description="Only notes whose content, title or tags contain this"
    )
    date_type: DateType = Field(default=DateType.MODIFIED)
    days_back: Optional[int] = Field(
        default=None, ge=0, description="Only notes from the last N days"
    )


class DateSearchParams(ToolParams):
    date_type: DateType = Field(default=DateType.MODIFIED)
    start_date: Optional[str] = Field(
        default=None,
        description="ISO date or relative expression: today, yesterday, 3 days ago",
    )
    end_date: Optional[str] = Field(default=None, description="Same forms as start_date")
    sort_order: SortOrder = Field(default=SortOrder.NEWEST)
    max_results: int = Field(default=20, ge=1, le=200)


class SpecificInfoParams(ToolParams):
    info_type: Optional[InfoType] = Field(
        default=None, description="Kind of information to extract"
    )
    pattern: Optional[str] = Field(
        default=None, description="Custom regular expression, instead of info_type"
    )
    context_words: int = Field(default=10, ge=0, le=100)

    @model_validator(mode="after")
    def _require_pattern(self) -> "SpecificInfoParams":
        if self.info_type is None and not self.pattern:
            raise ValueError("Either info_type or pattern is required")
        return self


class TagSearchParams(ToolParams):
    tags: List[str] = Field(..., min_length=1, description="Tags, with or without #")
    require_all: bool = Field(default=False, description="Match all tags, not any")

    @field_validator("tags", mode="before")
    @classmethod
    def _split_tags(cls, value):
        if isinstance(value, str):
            return [t for t in value.replace(",", " ").split() if t]
        return value


class LinkSearchParams(ToolParams):
    note_path: str = Field(..., min_length=1, description="Path or title of the note")
    direction: LinkDirection = Field(default=LinkDirection.BOTH)

    @field_validator("direction", mode="before")
    @classmethod
    def _short_direction(cls, value):
        aliases = {"in": "incoming", "out": "outgoing"}
        if isinstance(value, str):
            return aliases.get(value.lower(), value.lower())
        return value


class NoteDetailsParams(ToolParams):
    note_path: str = Field(..., min_length=1, description="Path or title of the note")


class ExploreConnectionsParams(ToolParams):
    note_path: str = Field(..., min_length=1, description="Starting note")
    max_depth: int = Field(default=2, ge=1, le=4)
    connection_types: Optional[List[str]] = Field(
        default=None, description="Subset of link, tag, semantic"
    )
