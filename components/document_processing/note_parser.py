"""Markdown note parsing.

Turns raw note text into plain text plus the structured metadata the index
needs: frontmatter, tags and outbound references. Tags and references come
from the parsed structure (YAML frontmatter, link nodes, wikilinks and tag
tokens in prose), never from code spans or code blocks.
"""

import logging
import re
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Any, Dict, List
from urllib.parse import unquote

import mistune
import yaml

logger = logging.getLogger(__name__)

FRONTMATTER_PATTERN = re.compile(r"\A---[ \t]*\r?\n(.*?)\r?\n---[ \t]*(?:\r?\n|\Z)", re.S)
WIKILINK_PATTERN = re.compile(r"!?\[\[([^\[\]\n]+?)\]\]")
TAG_PATTERN = re.compile(r"(?<![\w#&/])#([\w\-/]*[A-Za-z_\-/][\w\-/]*)")
SCHEME_PATTERN = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.\-]*:")


@dataclass
class ParsedNote:
    """Result of parsing one note."""

    content: str
    tags: List[str] = field(default_factory=list)
    references: List[str] = field(default_factory=list)
    frontmatter: Dict[str, Any] = field(default_factory=dict)


def normalize_tag(tag: str) -> str:
    return tag.strip().lstrip("#").strip()


def normalize_reference(target: str) -> str:
    """
    Normalizes a link target to a comparable reference.

    Drops aliases (``|``), heading anchors (``#``), leading slashes and URL
    escaping. Returns an empty string for external URLs and anchor-only links.
    """
    target = target.strip()
    if not target or SCHEME_PATTERN.match(target):
        return ""
    target = target.split("|", 1)[0]
    target = target.split("#", 1)[0]
    target = unquote(target).strip().lstrip("/")
    if target.startswith("./"):
        target = target[2:]
    return target


def _dedupe(values: List[str]) -> List[str]:
    seen = set()
    result = []
    for value in values:
        key = value.lower()
        if value and key not in seen:
            seen.add(key)
            result.append(value)
    return result


class NoteParser:
    """Parses Markdown notes into plain text, tags and references."""

    def __init__(self) -> None:
        self.markdown_parser = mistune.create_markdown(renderer="ast")

    def parse(self, raw_text: str) -> ParsedNote:
        """
        Parses a note.

        Args:
            raw_text: The note as authored, including any frontmatter.

        Returns:
            A ParsedNote with plain-text content, deduplicated tags (without
            ``#``) and deduplicated normalized references.
        """
        frontmatter, body = self._split_frontmatter(raw_text)

        prose: List[str] = []
        links: List[str] = []
        ast = self.markdown_parser(body)
        if isinstance(ast, str):
            content = ast
            prose.append(ast)
        else:
            content = self._render_blocks(ast, prose, links)
        content = re.sub(r"\n{3,}", "\n\n", content).strip()

        tags = self._frontmatter_tags(frontmatter)
        references: List[str] = []
        for text in prose:
            tags.extend(TAG_PATTERN.findall(text))
            for match in WIKILINK_PATTERN.finditer(text):
                references.append(match.group(1))
        references.extend(links)

        normalized_refs = []
        for ref in references:
            target = normalize_reference(ref)
            suffix = PurePosixPath(target).suffix.lower()
            # Attachments (images, PDFs) are not notes.
            if target and suffix in ("", ".md"):
                normalized_refs.append(target)

        return ParsedNote(
            content=content,
            tags=_dedupe([normalize_tag(t) for t in tags]),
            references=_dedupe(normalized_refs),
            frontmatter=frontmatter,
        )

    def _split_frontmatter(self, raw_text: str):
        match = FRONTMATTER_PATTERN.match(raw_text)
        if not match:
            return {}, raw_text
        body = raw_text[match.end():]
        try:
            data = yaml.safe_load(match.group(1)) or {}
        except yaml.YAMLError as e:
            logger.warning(f"Ignoring unparseable frontmatter: {e}")
            return {}, body
        if not isinstance(data, dict):
            logger.debug("Frontmatter is not a mapping; ignoring it")
            return {}, body
        return data, body

    def _frontmatter_tags(self, frontmatter: Dict[str, Any]) -> List[str]:
        value = frontmatter.get("tags", frontmatter.get("tag"))
        if value is None:
            return []
        if isinstance(value, str):
            return [t for t in re.split(r"[,\s]+", value) if t]
        if isinstance(value, list):
            return [str(t) for t in value if t is not None]
        return [str(value)]

    def _render_blocks(
        self, nodes: List[Dict[str, Any]], prose: List[str], links: List[str]
    ) -> str:
        parts = []
        for node in nodes:
            node_type = node.get("type", "")
            if node_type in ("blank_line", "thematic_break", "block_html"):
                continue
            if node_type == "block_code":
                parts.append(node.get("raw", node.get("text", "")).rstrip("\n"))
            elif node_type in ("paragraph", "heading", "block_text"):
                parts.append(self._render_inline(node.get("children", []), prose, links))
            elif node.get("children"):
                parts.append(self._render_blocks(node["children"], prose, links))
            elif "raw" in node:
                parts.append(self._render_inline([node], prose, links))
        return "\n".join(part for part in parts if part)

    def _render_inline(
        self, nodes: List[Dict[str, Any]], prose: List[str], links: List[str]
    ) -> str:
        parts: List[str] = []
        run: List[str] = []

        def flush() -> None:
            if run:
                text = "".join(run)
                prose.append(text)
                parts.append(WIKILINK_PATTERN.sub(self._wikilink_display, text))
                run.clear()

        for node in nodes:
            node_type = node.get("type", "")
            if node_type == "text":
                run.append(str(node.get("raw", node.get("text", ""))))
                continue
            flush()
            if node_type == "codespan":
                parts.append(str(node.get("raw", node.get("text", ""))))
            elif node_type == "link":
                url = node.get("attrs", {}).get("url", node.get("link", ""))
                if url:
                    links.append(str(url))
                parts.append(self._render_inline(node.get("children", []), prose, links))
            elif node_type == "image":
                parts.append(self._render_inline(node.get("children", []), prose, links))
            elif node_type in ("softbreak", "linebreak"):
                parts.append("\n")
            elif node_type == "inline_html":
                continue
            elif node.get("children"):
                parts.append(self._render_inline(node["children"], prose, links))
            elif "raw" in node:
                parts.append(str(node["raw"]))
        flush()
        return "".join(parts)

    @staticmethod
    def _wikilink_display(match: "re.Match[str]") -> str:
        target, _, alias = match.group(1).partition("|")
        return alias.strip() or target.split("#", 1)[0].strip()
