"""Request and response models shared by the service and its web apps."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class DocumentSummary(BaseModel):
    """One indexed note as listed by the service."""

    path: str = Field(..., description="Vault-relative path of the note")
    title: str
    tags: List[str] = Field(default_factory=list)
    modified: datetime
    size: int
    has_embedding: bool = False


class DocumentContent(BaseModel):
    """The full content of one note plus its graph neighbourhood."""

    path: str
    title: str
    content: str = Field(..., description="Raw note text as stored in the vault")
    tags: List[str] = Field(default_factory=list)
    outlinks: List[str] = Field(default_factory=list)
    inlinks: List[str] = Field(default_factory=list)
    created: datetime
    modified: datetime


class AskRequest(BaseModel):
    question: str = Field(..., min_length=1, description="The question to answer")


class ToolCallSummary(BaseModel):
    tool_name: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    result: Optional[Dict[str, Any]] = None
    refined_from: Optional[str] = None


class AskResponse(BaseModel):
    answer: str
    tool_calls: List[ToolCallSummary] = Field(default_factory=list)
    iterations: int = 0
    aborted: bool = False
    reason: Optional[str] = None


class ReindexRequest(BaseModel):
    full: bool = Field(
        default=False, description="Rebuild from scratch instead of reconciling"
    )


class ReindexResponse(BaseModel):
    success: bool
    message: str
    mode: Optional[str] = None
    added: int = 0
    updated: int = 0
    removed: int = 0
    embedded: int = 0
    embedding_failures: int = 0
    duration_seconds: float = 0.0
