"""Response envelopes for the HTTP API."""

from typing import Any, Dict, List

from components.vault_service.models import DocumentSummary
from pydantic import BaseModel, Field


class DocumentListResponse(BaseModel):
    documents: List[DocumentSummary]
    total_count: int


class ToolListResponse(BaseModel):
    tools: List[Dict[str, Any]] = Field(
        ..., description="Tool schemas: name, description and JSON parameters"
    )


class ToolRunResponse(BaseModel):
    tool_name: str
    result: Dict[str, Any]
