"""
In-memory doubles for the external ports: the file store, the embedding model
and the completion client. Used by the test suites and handy for experiments
that should not touch disk, a model download or a language model.
"""

import asyncio
import hashlib
import json
import math
import re
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Union

from components.agent_orchestrator import Completion, ToolInvocation
from components.document_processing import FileInfo

EPOCH = datetime(2024, 1, 1, tzinfo=timezone.utc)
WORD = re.compile(r"[a-z0-9]+")


class InMemoryFileStore:
    """A file store over a dict, with a manual clock for modification times."""

    def __init__(self, files: Optional[Dict[str, str]] = None, start: datetime = EPOCH):
        self.now = start
        self.files: Dict[str, bytes] = {}
        self.info: Dict[str, FileInfo] = {}
        self.unreadable: set = set()
        self.reads: List[str] = []
        for path, text in (files or {}).items():
            self.write(path, text)

    def tick(self, seconds: float = 1.0) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now

    def write(self, path: str, text: str, modified: Optional[datetime] = None) -> None:
        data = text.encode("utf-8")
        modified = modified or self.tick()
        created = self.info[path].created if path in self.info else modified
        self.files[path] = data
        self.info[path] = FileInfo(
            path=path, size=len(data), created=created, modified=modified
        )

    def touch(self, path: str) -> None:
        """Bumps the modification time without changing the content."""
        self.info[path] = self.info[path].model_copy(update={"modified": self.tick()})

    def delete(self, path: str) -> None:
        self.files.pop(path, None)
        self.info.pop(path, None)

    def rename(self, old_path: str, new_path: str) -> None:
        data = self.files.pop(old_path)
        info = self.info.pop(old_path)
        self.files[new_path] = data
        self.info[new_path] = info.model_copy(update={"path": new_path})

    def list_documents(self) -> List[FileInfo]:
        return [self.info[path] for path in sorted(self.info)]

    def read_document(self, path: str) -> bytes:
        self.reads.append(path)
        if path in self.unreadable:
            raise PermissionError(f"Cannot read {path}")
        if path not in self.files:
            raise FileNotFoundError(path)
        return self.files[path]


class HashingEmbeddingModel:
    """
    Deterministic bag-of-words embeddings.

    Each lowercase word is hashed into one of ``dimensions`` buckets and the
    counts are L2-normalised, so texts sharing words have positive cosine
    similarity and texts sharing none score zero (barring bucket collisions).
    """

    def __init__(self, dimensions: int = 256, fail_on: Iterable[str] = ()):
        self.dimensions = dimensions
        self.fail_on = list(fail_on)
        self.encoded: List[str] = []
        self.batches = 0

    def vector(self, text: str) -> List[float]:
        counts = [0.0] * self.dimensions
        for word in WORD.findall(text.lower()):
            digest = hashlib.blake2b(word.encode(), digest_size=4).digest()
            counts[int.from_bytes(digest, "big") % self.dimensions] += 1.0
        norm = math.sqrt(sum(c * c for c in counts))
        return [c / norm for c in counts] if norm else counts

    def encode(self, texts: List[str]) -> List[List[float]]:
        self.batches += 1
        for text in texts:
            if any(marker in text for marker in self.fail_on):
                raise RuntimeError("embedding backend rejected the input")
        self.encoded.extend(texts)
        return [self.vector(t) for t in texts]


HANG = object()
ScriptItem = Union[str, Completion, Exception, object]


class ScriptedCompletionClient:
    """
    A completion client that replays a script.

    Each ``complete`` call takes the next item: a string becomes the reply
    text, a Completion is returned as is, an exception is raised and ``HANG``
    blocks until cancelled. When the script runs out, ``default`` is replied.
    ``stream`` replays ``stream_script`` (or the next scripted reply) in
    word-sized chunks.
    """

    def __init__(
        self,
        script: Optional[List[ScriptItem]] = None,
        default: str = "FINAL_ANSWER: done",
        stream_script: Optional[List[Any]] = None,
    ):
        self.script = list(script or [])
        self.default = default
        self.stream_script = stream_script
        self.calls: List[Dict[str, Any]] = []

    async def _next(self) -> Completion:
        item = self.script.pop(0) if self.script else self.default
        if item is HANG:
            await asyncio.Event().wait()
        if isinstance(item, Exception):
            raise item
        if isinstance(item, Completion):
            return item
        return Completion(text=str(item))

    async def complete(
        self,
        system_prompt: str,
        messages: List[Dict[str, str]],
        tool_schemas: Optional[List[Dict[str, Any]]] = None,
        **options: Any,
    ) -> Completion:
        self.calls.append(
            {
                "system_prompt": system_prompt,
                "messages": messages,
                "tool_schemas": tool_schemas,
            }
        )
        return await self._next()

    async def stream(
        self, system_prompt: str, messages: List[Dict[str, str]], **options: Any
    ) -> AsyncIterator[str]:
        self.calls.append(
            {"system_prompt": system_prompt, "messages": messages, "stream": True}
        )
        if self.stream_script is not None:
            chunks = self.stream_script
        else:
            text = (await self._next()).text
            chunks = re.findall(r"\S+\s*", text)
        for chunk in chunks:
            if chunk is HANG:
                await asyncio.Event().wait()
            if isinstance(chunk, Exception):
                raise chunk
            yield chunk


def tool_call(name: str, **parameters: Any) -> str:
    """A text-protocol tool call line."""
    return f"TOOL_CALL: {name}({json.dumps(parameters)})"


def native_call(name: str, arguments: Any, call_id: str = "call_1") -> Completion:
    """A completion carrying one provider-native tool call."""
    return Completion(
        text="",
        tool_calls=[
            ToolInvocation(
                name=name,
                parameters=arguments if isinstance(arguments, dict) else {},
                call_id=call_id,
                arguments_error=None
                if isinstance(arguments, dict)
                else "Invalid JSON arguments",
            )
        ],
    )
