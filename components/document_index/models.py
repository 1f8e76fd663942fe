"""Data models for the document index."""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class Document(BaseModel):
    """One indexed note."""

    model_config = ConfigDict(frozen=True)

    path: str = Field(..., description="Vault-relative path; the note's identity")
    title: str
    raw_text: str
    content: str = Field(..., description="Plain text with markup stripped")
    references: List[str] = Field(
        default_factory=list, description="Outbound link targets as authored"
    )
    outlinks: List[str] = Field(
        default_factory=list,
        description="Outbound references, resolved to note paths where possible",
    )
    inlinks: List[str] = Field(
        default_factory=list, description="Notes whose outlinks contain this path"
    )
    tags: List[str] = Field(default_factory=list)
    created: datetime
    modified: datetime
    size: int
    fingerprint: str


class EmbeddingRecord(BaseModel):
    """The vector of one note plus what search needs to display it."""

    model_config = ConfigDict(frozen=True)

    path: str
    vector: List[float]
    content: str
    title: str
    tags: List[str] = Field(default_factory=list)
    links: List[str] = Field(default_factory=list)
    created: datetime
    modified: datetime


class ConnectionKind(str, Enum):
    LINK = "link"
    TAG = "tag"
    SEMANTIC = "semantic"


class Connection(BaseModel):
    """A derived, directed edge between two notes."""

    model_config = ConfigDict(frozen=True)

    source: str
    target: str
    kind: ConnectionKind
    strength: float = Field(..., ge=0.0, le=1.0)


class SearchHit(BaseModel):
    """One result of a vector or substring search."""

    document: Document
    similarity: Optional[float] = Field(
        default=None, description="Cosine similarity; None for substring matches"
    )
    match_count: int = 0
    contexts: List[str] = Field(default_factory=list)


class SearchOutcome(BaseModel):
    strategy: str = Field(..., description="'semantic' or 'substring'")
    hits: List[SearchHit] = Field(default_factory=list)
    fallback_hits: List[SearchHit] = Field(
        default_factory=list,
        description="Substring matches among notes that have no embedding",
    )


class IndexReport(BaseModel):
    """Summary of one build or reconcile pass."""

    mode: str
    added: List[str] = Field(default_factory=list)
    updated: List[str] = Field(default_factory=list)
    removed: List[str] = Field(default_factory=list)
    unchanged: int = 0
    embedded: int = 0
    embedding_failures: int = 0
    skipped: List[str] = Field(
        default_factory=list, description="Too short or unreadable notes"
    )
    cancelled: bool = False
    duration_seconds: float = 0.0

    @property
    def changed(self) -> bool:
        return bool(self.added or self.updated or self.removed)


class IndexSnapshot(BaseModel):
    """Serialized form of the whole index."""

    version: int = 1
    saved_at: datetime
    root_hash: Optional[str] = None
    documents: List[Document] = Field(default_factory=list)
    embeddings: List[EmbeddingRecord] = Field(default_factory=list)
    connections: List[Connection] = Field(default_factory=list)


class IndexStats(BaseModel):
    documents: int
    embeddings: int
    connections: int
    connections_by_kind: Dict[str, int] = Field(default_factory=dict)
    is_indexing: bool = False
    last_updated: Optional[datetime] = None
    embeddings_available: bool = False
