# Copyright 2025 Vijaykumar Singh <singhvjd@gmail.com>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Context sources feeding the completion prompt.

Each source turns a completion request into scored candidate snippets.
Sources are queried concurrently by the assembler, so they must not
share mutable state with each other.
"""

import inspect
import logging
import re
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Optional, Protocol, Sequence, Union

from victor_inline.protocol import CompletionRequest, ContextSnippet, EditEvent, SourceKind

logger = logging.getLogger(__name__)

IDENTIFIER_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]{1,40}")
STOP_WORDS = frozenset({"self", "true", "false", "none", "null", "return", "def", "class"})


def extract_query_tokens(text: str) -> set[str]:
    """Lower-cased identifiers found in text, minus common keywords."""
    return {tok.lower() for tok in IDENTIFIER_RE.findall(text)} - STOP_WORDS


def overlap_score(snippet: str, query_tokens: set[str]) -> float:
    """Score a snippet by how many query identifiers it mentions."""
    if not query_tokens:
        return 0.0
    low = snippet.lower()
    overlap = sum(1 for token in query_tokens if token in low)
    return overlap / len(query_tokens)


def split_chunks(text: str, cap_each: int = 600, max_chunks: int = 80) -> list[str]:
    """Split text into blank-line separated chunks."""
    chunks = [chunk.strip("\n") for chunk in re.split(r"\n\s*\n", text) if chunk.strip()]
    out: list[str] = []
    for chunk in chunks:
        out.append(chunk[:cap_each])
        if len(out) >= max_chunks:
            break
    return out


def request_query_text(request: CompletionRequest, lines: int = 6) -> str:
    """Text around the cursor used to query other sources."""
    before = "\n".join(request.prefix_text.split("\n")[-lines:])
    after = request.suffix_text.split("\n", 1)[0]
    return before + after


async def _maybe_await(value: Union[Any, Awaitable[Any]]) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class ContextSource(ABC):
    """Abstract base class for context sources."""

    def __init__(self, priority: Optional[int] = None, timeout_ms: Optional[float] = None):
        """Initialize the source.

        Args:
            priority: Tie-break priority (lower wins); config default if None
            timeout_ms: Query timeout override; config default if None
        """
        self._priority = priority
        self._timeout_ms = timeout_ms
        self._enabled = True

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique identifier for this source."""
        ...

    @property
    @abstractmethod
    def kind(self) -> SourceKind:
        """Kind of snippets this source produces."""
        ...

    @property
    def priority(self) -> Optional[int]:
        return self._priority

    @property
    def timeout_ms(self) -> Optional[float]:
        return self._timeout_ms

    @property
    def enabled(self) -> bool:
        return self._enabled

    @enabled.setter
    def enabled(self, value: bool) -> None:
        self._enabled = value

    @abstractmethod
    async def fetch(self, request: CompletionRequest) -> list[ContextSnippet]:
        """Produce candidate snippets for a request."""
        ...

    def _snippet(
        self, content: str, score: float, recency: float = 0.0, origin: Optional[str] = None
    ) -> ContextSnippet:
        return ContextSnippet(
            source_kind=self.kind,
            content=content,
            relevance_score=score,
            recency=recency,
            origin=origin,
        )

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.name!r})"


@dataclass
class _RecordedEdit:
    document_uri: str
    content: str
    timestamp: float


class RecentEditsSource(ContextSource):
    """Neighborhoods of the user's most recent edits."""

    def __init__(
        self,
        max_entries: int = 16,
        context_lines: int = 3,
        recency_bonus: float = 0.25,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self._edits: deque[_RecordedEdit] = deque(maxlen=max_entries)
        self._context_lines = context_lines
        self._recency_bonus = recency_bonus

    @property
    def name(self) -> str:
        return "recent_edits"

    @property
    def kind(self) -> SourceKind:
        return SourceKind.RECENT_EDIT

    def record(self, event: EditEvent) -> None:
        """Record the neighborhood of an edit."""
        content = self._neighborhood(event.prefix_text, event.suffix_text)
        if not content.strip():
            return
        # Typing on the same spot replaces the previous neighborhood
        if self._edits and self._edits[-1].document_uri == event.document_uri:
            last = self._edits[-1]
            if _shares_line(last.content, content):
                self._edits.pop()
        self._edits.append(_RecordedEdit(event.document_uri, content, event.timestamp))

    def clear(self) -> None:
        self._edits.clear()

    async def fetch(self, request: CompletionRequest) -> list[ContextSnippet]:
        current = self._neighborhood(request.prefix_text, request.suffix_text)
        tokens = extract_query_tokens(request_query_text(request))
        edits = list(self._edits)
        snippets: list[ContextSnippet] = []
        seen: set[str] = set()

        for rank, edit in enumerate(reversed(edits)):
            if edit.content in seen:
                continue
            seen.add(edit.content)
            if edit.document_uri == request.document_uri and _shares_line(edit.content, current):
                continue
            bonus = max(0.0, self._recency_bonus * (1.0 - rank / max(1, len(edits))))
            score = overlap_score(edit.content, tokens) + bonus
            snippets.append(
                self._snippet(edit.content, score, recency=edit.timestamp, origin=edit.document_uri)
            )
        return snippets

    def _neighborhood(self, prefix: str, suffix: str) -> str:
        before = prefix.split("\n")[-(self._context_lines + 1) :]
        after = suffix.split("\n")[: self._context_lines + 1]
        # The last prefix line and the first suffix line form the cursor line
        return "\n".join(before) + "\n".join(after)


def _shares_line(a: str, b: str) -> bool:
    lines_a = {line.strip() for line in a.split("\n") if line.strip()}
    lines_b = {line.strip() for line in b.split("\n") if line.strip()}
    return bool(lines_a & lines_b)


class OpenFilesSource(ContextSource):
    """Chunks of the other documents open in the editor."""

    def __init__(
        self,
        documents: Callable[[], Union[Mapping[str, str], Awaitable[Mapping[str, str]]]],
        max_snippets: int = 8,
        chunk_chars: int = 600,
        **kwargs,
    ):
        """Initialize the source.

        Args:
            documents: Returns a mapping of document URI to text
            max_snippets: Maximum snippets returned per request
            chunk_chars: Maximum characters per chunk
        """
        super().__init__(**kwargs)
        self._documents = documents
        self._max_snippets = max_snippets
        self._chunk_chars = chunk_chars

    @property
    def name(self) -> str:
        return "open_files"

    @property
    def kind(self) -> SourceKind:
        return SourceKind.OPEN_FILE

    async def fetch(self, request: CompletionRequest) -> list[ContextSnippet]:
        documents = await _maybe_await(self._documents())
        tokens = extract_query_tokens(request_query_text(request))
        if not tokens:
            return []

        ranked: list[ContextSnippet] = []
        for uri in sorted(documents):
            if uri == request.document_uri:
                continue
            for chunk in split_chunks(documents[uri], cap_each=self._chunk_chars):
                score = overlap_score(chunk, tokens)
                if score <= 0:
                    continue
                ranked.append(self._snippet(chunk, score, origin=uri))

        ranked.sort(key=lambda s: -s.relevance_score)
        return ranked[: self._max_snippets]


class DiffSource(ContextSource):
    """Hunks of the working tree diff."""

    HUNK_RE = re.compile(r"^@@ .* @@", re.MULTILINE)

    def __init__(
        self,
        diff: Callable[[], Union[str, Awaitable[str]]],
        max_snippets: int = 6,
        same_file_bonus: float = 0.5,
        **kwargs,
    ):
        """Initialize the source.

        Args:
            diff: Returns unified diff text of uncommitted changes
            max_snippets: Maximum hunks returned per request
            same_file_bonus: Score bonus for hunks in the requested document
        """
        super().__init__(**kwargs)
        self._diff = diff
        self._max_snippets = max_snippets
        self._same_file_bonus = same_file_bonus

    @property
    def name(self) -> str:
        return "diff"

    @property
    def kind(self) -> SourceKind:
        return SourceKind.DIFF

    async def fetch(self, request: CompletionRequest) -> list[ContextSnippet]:
        diff_text = await _maybe_await(self._diff())
        if not diff_text:
            return []

        tokens = extract_query_tokens(request_query_text(request))
        snippets: list[ContextSnippet] = []
        for path, hunk in parse_unified_diff(diff_text):
            score = overlap_score(hunk, tokens)
            if path and request.document_uri.endswith(path):
                score += self._same_file_bonus
            if score <= 0:
                continue
            snippets.append(self._snippet(hunk, score, origin=path or None))

        snippets.sort(key=lambda s: -s.relevance_score)
        return snippets[: self._max_snippets]


def parse_unified_diff(diff_text: str) -> list[tuple[str, str]]:
    """Split unified diff text into (path, hunk) pairs."""
    hunks: list[tuple[str, str]] = []
    path = ""
    current: list[str] = []

    def _flush() -> None:
        if current:
            hunks.append((path, "\n".join(current)))
            current.clear()

    for line in diff_text.splitlines():
        if line.startswith("diff --git"):
            _flush()
            path = ""
        elif line.startswith("+++ "):
            _flush()
            target = line[4:].strip()
            path = "" if target == "/dev/null" else target.removeprefix("b/")
        elif line.startswith("--- "):
            _flush()
        elif line.startswith("@@"):
            _flush()
            current.append(line)
        elif current:
            current.append(line)
    _flush()
    return hunks


class RetrievalResult(Protocol):
    """A ranked hit from the codebase index."""

    content: str
    score: float


RetrievalHit = Union[RetrievalResult, Mapping[str, Any]]


class Retriever(Protocol):
    """Codebase index query interface."""

    def query(
        self, text: str, k: int
    ) -> Union[Sequence[RetrievalHit], Awaitable[Sequence[RetrievalHit]]]:
        """Return ranked results with content and score."""
        ...


def _hit_fields(hit: RetrievalHit) -> tuple[str, float, Optional[str]]:
    if isinstance(hit, Mapping):
        return (
            hit.get("content", ""),
            float(hit.get("score", 0.0)),
            hit.get("path") or hit.get("origin"),
        )
    return hit.content, float(hit.score), getattr(hit, "path", None)


class RetrievalSource(ContextSource):
    """Snippets from the codebase index."""

    def __init__(self, retriever: Retriever, k: int = 5, query_lines: int = 6, **kwargs):
        super().__init__(**kwargs)
        self._retriever = retriever
        self._k = k
        self._query_lines = query_lines

    @property
    def name(self) -> str:
        return "retrieval"

    @property
    def kind(self) -> SourceKind:
        return SourceKind.RETRIEVAL

    async def fetch(self, request: CompletionRequest) -> list[ContextSnippet]:
        query = request_query_text(request, lines=self._query_lines)
        if not query.strip():
            return []

        results: Sequence[RetrievalHit] = await _maybe_await(
            self._retriever.query(query, self._k)
        )
        snippets: list[ContextSnippet] = []
        for hit in list(results or [])[: self._k]:
            content, score, origin = _hit_fields(hit)
            if not content:
                continue
            snippets.append(self._snippet(content, score, origin=origin))
        return snippets


class ClipboardSource(ContextSource):
    """The current clipboard content."""

    def __init__(
        self,
        clipboard: Callable[[], Union[Optional[str], Awaitable[Optional[str]]]],
        score: float = 0.3,
        max_chars: int = 2000,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self._clipboard = clipboard
        self._score = score
        self._max_chars = max_chars

    @property
    def name(self) -> str:
        return "clipboard"

    @property
    def kind(self) -> SourceKind:
        return SourceKind.CLIPBOARD

    async def fetch(self, request: CompletionRequest) -> list[ContextSnippet]:
        text = await _maybe_await(self._clipboard())
        if not text or not text.strip():
            return []
        return [self._snippet(text[: self._max_chars], self._score, recency=time.time())]
