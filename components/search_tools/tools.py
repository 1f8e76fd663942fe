"""
The search tool set.

A fixed catalog of read-only tools over the document index. Each tool has a
name, a description, a parameter model and a handler; ``execute`` is the single
dispatch point and every handler returns a dict with ``found`` (the length of
``results``) and ``results``.
"""

import logging
import re
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type

from components.document_index import (
    ConnectionKind,
    Document,
    DocumentIndex,
    ReferenceResolver,
    StoreView,
)
from components.document_processing import normalize_tag
from pydantic import ValidationError
from vault_agent.config import SearchConfig

from .date_parsing import DateParseError, parse_date_expression
from .models import (
    DateSearchParams,
    DateType,
    ExploreConnectionsParams,
    LinkDirection,
    LinkSearchParams,
    NoteDetailsParams,
    RecentNotesParams,
    SemanticSearchParams,
    SortOrder,
    SpecificInfoParams,
    TagSearchParams,
    TextSearchParams,
    ToolName,
    ToolParams,
)
from .patterns import INFO_PATTERNS, find_matches

logger = logging.getLogger(__name__)


class UnknownToolError(LookupError):
    """Raised when a tool name is not in the catalog."""


class ToolParameterError(ValueError):
    """Raised when tool parameters fail validation."""


@dataclass(frozen=True)
class ToolSpec:
    name: ToolName
    description: str
    params_model: Type[ToolParams]

    def schema(self) -> Dict[str, Any]:
        return {
            "name": self.name.value,
            "description": self.description,
            "parameters": self.params_model.model_json_schema(),
        }


TOOL_SPECS: Dict[ToolName, ToolSpec] = {
    spec.name: spec
    for spec in (
        ToolSpec(
            ToolName.SEMANTIC_SEARCH,
            "Search notes by meaning. Best for conceptual questions and topics "
            "phrased differently from the notes.",
            SemanticSearchParams,
        ),
        ToolSpec(
            ToolName.TEXT_SEARCH,
            "Find notes containing an exact word or phrase. Best for names, "
            "identifiers and specific terms.",
            TextSearchParams,
        ),
        ToolSpec(
            ToolName.SEARCH_RECENT_NOTES,
            "List the most recently created or modified notes, optionally "
            "filtered by content, title or tag.",
            RecentNotesParams,
        ),
        ToolSpec(
            ToolName.SEARCH_BY_DATE,
            "Find notes created or modified within a date range. Accepts ISO "
            "dates and expressions like 'today', 'yesterday', '2 weeks ago'.",
            DateSearchParams,
        ),
        ToolSpec(
            ToolName.FIND_SPECIFIC_INFO,
            "Extract specific information (vin, phone, email, address, url, "
            "number, date) or a custom regex pattern from all notes, with context.",
            SpecificInfoParams,
        ),
        ToolSpec(
            ToolName.SEARCH_BY_TAGS,
            "Find notes carrying any (or all) of the given tags.",
            TagSearchParams,
        ),
        ToolSpec(
            ToolName.SEARCH_BY_LINKS,
            "List notes linking to, or linked from, a given note.",
            LinkSearchParams,
        ),
        ToolSpec(
            ToolName.GET_NOTE_DETAILS,
            "Get the full content, tags, links and connection summary of one note.",
            NoteDetailsParams,
        ),
        ToolSpec(
            ToolName.EXPLORE_CONNECTIONS,
            "Walk the link, tag and semantic connections around a note to find "
            "related notes.",
            ExploreConnectionsParams,
        ),
    )
}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def not_found(note_path: str) -> Dict[str, Any]:
    return {
        "found": 0,
        "results": [],
        "not_found": True,
        "error": f"Note not found: {note_path}",
    }


class SearchToolSet:
    """Executes the search tools against a document index."""

    def __init__(
        self,
        index: DocumentIndex,
        config: Optional[SearchConfig] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.index = index
        self.config = config or SearchConfig()
        self.clock = clock
        self._handlers: Dict[ToolName, Callable[[Any], Awaitable[Dict[str, Any]]]] = {
            ToolName.SEMANTIC_SEARCH: self._semantic_search,
            ToolName.TEXT_SEARCH: self._text_search,
            ToolName.SEARCH_RECENT_NOTES: self._recent_notes,
            ToolName.SEARCH_BY_DATE: self._search_by_date,
            ToolName.FIND_SPECIFIC_INFO: self._find_specific_info,
            ToolName.SEARCH_BY_TAGS: self._search_by_tags,
            ToolName.SEARCH_BY_LINKS: self._search_by_links,
            ToolName.GET_NOTE_DETAILS: self._note_details,
            ToolName.EXPLORE_CONNECTIONS: self._explore_connections,
        }

    @property
    def names(self) -> List[str]:
        return [name.value for name in TOOL_SPECS]

    def specs(self) -> List[ToolSpec]:
        return list(TOOL_SPECS.values())

    def schemas(self) -> List[Dict[str, Any]]:
        """Tool schemas as ``{name, description, parameters}`` dicts."""
        return [spec.schema() for spec in TOOL_SPECS.values()]

    def lookup(self, name: str) -> ToolSpec:
        try:
            return TOOL_SPECS[ToolName(name)]
        except ValueError as e:
            raise UnknownToolError(
                f"Unknown tool: {name}. Available tools: {', '.join(self.names)}"
            ) from e

    async def execute(
        self, name: str, params: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Validates parameters and runs one tool.

        Args:
            name: Tool name from the catalog.
            params: Raw parameters as produced by the model.

        Returns:
            The tool's result dict.

        Raises:
            UnknownToolError: If the name is not in the catalog.
            ToolParameterError: If the parameters do not validate.
        """
        spec = self.lookup(name)
        try:
            parsed = spec.params_model.model_validate(params or {})
        except ValidationError as e:
            raise ToolParameterError(f"Invalid parameters for {name}: {e}") from e
        logger.debug(f"Executing tool {name} with {parsed.model_dump()}")
        return await self._handlers[spec.name](parsed)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _summary(self, document: Document, **extra: Any) -> Dict[str, Any]:
        content = document.content
        preview = content[: self.config.preview_chars]
        if len(content) > self.config.preview_chars:
            preview += "..."
        summary = {
            "title": document.title,
            "path": document.path,
            "content_preview": preview,
            "tags": list(document.tags),
            "modified": document.modified.isoformat(),
        }
        summary.update(extra)
        return summary

    def _find_document(self, view: StoreView, note_path: str) -> Optional[Document]:
        document = view.documents.get(note_path)
        if document is not None:
            return document
        resolved = ReferenceResolver(view.documents.keys()).resolve(note_path)
        return view.documents.get(resolved) if resolved else None

    @staticmethod
    def _timestamp(document: Document, date_type: DateType) -> datetime:
        return document.created if date_type == DateType.CREATED else document.modified

    # ------------------------------------------------------------------
    # Tools
    # ------------------------------------------------------------------

    async def _semantic_search(self, params: SemanticSearchParams) -> Dict[str, Any]:
        outcome = await self.index.vector_search(
            params.query, params.top_k, params.threshold
        )
        results = []
        for hit in outcome.hits:
            extra: Dict[str, Any] = {}
            if hit.similarity is not None:
                extra["similarity"] = round(hit.similarity, 4)
            if hit.contexts:
                extra["contexts"] = hit.contexts
            results.append(self._summary(hit.document, **extra))
        result: Dict[str, Any] = {
            "query": params.query,
            "strategy": outcome.strategy,
            "found": len(results),
            "results": results,
        }
        if outcome.fallback_hits:
            # Unembedded notes, matched literally
            result["unembedded_matches"] = [
                self._summary(
                    hit.document, match_type="substring", contexts=hit.contexts
                )
                for hit in outcome.fallback_hits
            ]
        return result

    async def _text_search(self, params: TextSearchParams) -> Dict[str, Any]:
        view = self.index.view()
        hits = self.index.substring_search(
            params.query,
            max_results=max(len(view.documents), 1),
            case_sensitive=params.case_sensitive,
            view=view,
        )
        results = [
            self._summary(h.document, match_count=h.match_count, contexts=h.contexts)
            for h in hits[: params.max_results]
        ]
        return {
            "query": params.query,
            "found": len(results),
            "total": len(hits),
            "results": results,
        }

    async def _recent_notes(self, params: RecentNotesParams) -> Dict[str, Any]:
        view = self.index.view()
        documents = list(view.documents.values())

        if params.days_back is not None:
            cutoff = self.clock() - timedelta(days=params.days_back)
            documents = [
                d for d in documents if self._timestamp(d, params.date_type) >= cutoff
            ]
        if params.content_filter:
            needle = params.content_filter.lower()
            documents = [
                d
                for d in documents
                if needle in d.content.lower()
                or needle in d.title.lower()
                or any(needle in tag.lower() for tag in d.tags)
            ]

        documents.sort(
            key=lambda d: (self._timestamp(d, params.date_type), d.path), reverse=True
        )
        results = [
            self._summary(
                d, date=self._timestamp(d, params.date_type).isoformat()
            )
            for d in documents[: params.count]
        ]
        return {
            "date_type": params.date_type.value,
            "content_filter": params.content_filter,
            "found": len(results),
            "total": len(documents),
            "results": results,
        }

    async def _search_by_date(self, params: DateSearchParams) -> Dict[str, Any]:
        now = self.clock()
        try:
            start = (
                parse_date_expression(params.start_date, now)
                if params.start_date
                else None
            )
            end = (
                parse_date_expression(params.end_date, now, end_of_day=True)
                if params.end_date
                else None
            )
        except DateParseError as e:
            return {"found": 0, "results": [], "error": str(e)}

        view = self.index.view()
        documents = [
            d
            for d in view.documents.values()
            if (start is None or self._timestamp(d, params.date_type) >= start)
            and (end is None or self._timestamp(d, params.date_type) <= end)
        ]
        documents.sort(
            key=lambda d: (self._timestamp(d, params.date_type), d.path),
            reverse=params.sort_order == SortOrder.NEWEST,
        )
        results = [
            self._summary(d, date=self._timestamp(d, params.date_type).isoformat())
            for d in documents[: params.max_results]
        ]
        return {
            "date_type": params.date_type.value,
            "start": start.isoformat() if start else None,
            "end": end.isoformat() if end else None,
            "found": len(results),
            "total": len(documents),
            "results": results,
        }

    async def _find_specific_info(self, params: SpecificInfoParams) -> Dict[str, Any]:
        if params.pattern:
            try:
                pattern = re.compile(params.pattern, re.IGNORECASE)
            except re.error as e:
                raise ToolParameterError(f"Invalid pattern {params.pattern!r}: {e}") from e
            label = "custom"
        else:
            pattern = INFO_PATTERNS[params.info_type]
            label = params.info_type.value

        view = self.index.view()
        documents = sorted(
            view.documents.values(), key=lambda d: (d.modified, d.path), reverse=True
        )
        per_query = self.config.max_pattern_matches_per_query
        per_document = self.config.max_pattern_matches_per_document

        results = []
        total_matches = 0
        truncated = False
        for document in documents:
            remaining = per_query - total_matches
            if remaining <= 0:
                truncated = True
                break
            limit = min(per_document, remaining)
            matches = find_matches(
                document.content, pattern, params.context_words, limit + 1
            )
            if len(matches) > limit:
                truncated = True
                matches = matches[:limit]
            if not matches:
                continue
            total_matches += len(matches)
            results.append(
                {
                    "title": document.title,
                    "path": document.path,
                    "matches": [
                        {"value": m.value, "context": m.context} for m in matches
                    ],
                }
            )

        return {
            "info_type": label,
            "pattern": pattern.pattern,
            "found": len(results),
            "total_matches": total_matches,
            "truncated": truncated,
            "results": results,
        }

    async def _search_by_tags(self, params: TagSearchParams) -> Dict[str, Any]:
        wanted = {normalize_tag(t).lower() for t in params.tags if normalize_tag(t)}
        view = self.index.view()
        matched = []
        for document in view.documents.values():
            tags = {t.lower() for t in document.tags}
            hit = wanted <= tags if params.require_all else bool(wanted & tags)
            if wanted and hit:
                matched.append(document)
        matched.sort(key=lambda d: (d.modified, d.path), reverse=True)
        results = [self._summary(d) for d in matched]
        return {
            "tags": sorted(wanted),
            "require_all": params.require_all,
            "found": len(results),
            "results": results,
        }

    async def _search_by_links(self, params: LinkSearchParams) -> Dict[str, Any]:
        view = self.index.view()
        document = self._find_document(view, params.note_path)
        if document is None:
            return not_found(params.note_path)

        results = []
        if params.direction in (LinkDirection.OUTGOING, LinkDirection.BOTH):
            for edge in view.outgoing(document.path, ConnectionKind.LINK):
                target = view.documents.get(edge.target)
                if target is not None:
                    results.append(self._summary(target, direction="outgoing"))
        if params.direction in (LinkDirection.INCOMING, LinkDirection.BOTH):
            for edge in view.incoming(document.path, ConnectionKind.LINK):
                source = view.documents.get(edge.source)
                if source is not None:
                    results.append(self._summary(source, direction="incoming"))

        unresolved = [link for link in document.outlinks if link not in view.documents]
        return {
            "note": document.path,
            "direction": params.direction.value,
            "found": len(results),
            "unresolved_links": unresolved,
            "results": results,
        }

    async def _note_details(self, params: NoteDetailsParams) -> Dict[str, Any]:
        view = self.index.view()
        document = self._find_document(view, params.note_path)
        if document is None:
            return not_found(params.note_path)

        by_kind = {kind.value: 0 for kind in ConnectionKind}
        for edge in view.outgoing(document.path):
            by_kind[edge.kind.value] += 1
        details = {
            "title": document.title,
            "path": document.path,
            "content": document.content,
            "tags": list(document.tags),
            "outgoing_links": list(document.outlinks),
            "incoming_links": list(document.inlinks),
            "created": document.created.isoformat(),
            "modified": document.modified.isoformat(),
            "size": document.size,
            "connections": {"total": sum(by_kind.values()), "by_kind": by_kind},
        }
        return {"found": 1, "results": [details]}

    async def _explore_connections(
        self, params: ExploreConnectionsParams
    ) -> Dict[str, Any]:
        view = self.index.view()
        start = self._find_document(view, params.note_path)
        if start is None:
            return not_found(params.note_path)

        kinds = None
        if params.connection_types:
            kinds = {k.lower() for k in params.connection_types}

        visited = {start.path}
        queue = deque([(start.path, 0)])
        results = []
        while queue:
            path, depth = queue.popleft()
            if depth >= params.max_depth:
                continue
            for edge in view.outgoing(path):
                if kinds is not None and edge.kind.value not in kinds:
                    continue
                if edge.target in visited or edge.target not in view.documents:
                    continue
                visited.add(edge.target)
                queue.append((edge.target, depth + 1))
                results.append(
                    self._summary(
                        view.documents[edge.target],
                        depth=depth + 1,
                        via=path,
                        connection=edge.kind.value,
                        strength=round(edge.strength, 4),
                    )
                )
        return {
            "note": start.path,
            "max_depth": params.max_depth,
            "found": len(results),
            "results": results,
        }
