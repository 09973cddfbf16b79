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

"""Context assembly under a token budget.

All sources are queried concurrently with independent timeouts. A
source that times out or fails contributes nothing. Candidates are then
selected greedily by (score desc, source priority asc, recency desc)
until the budget is exhausted.
"""

import asyncio
import logging
from dataclasses import replace
from typing import Callable, Optional, Sequence

from victor_inline.config import InlineCompletionConfig
from victor_inline.context.sources import ContextSource
from victor_inline.errors import ContextSourceError, ContextSourceTimeout
from victor_inline.protocol import CompletionRequest, ContextSnippet
from victor_inline.providers.base import estimate_tokens

logger = logging.getLogger(__name__)

SourceFailureHook = Callable[[ContextSource, ContextSourceError], None]


class ContextAssembler:
    """Gathers and ranks context snippets for a completion request."""

    def __init__(
        self,
        sources: Optional[Sequence[ContextSource]] = None,
        config: Optional[InlineCompletionConfig] = None,
        token_counter: Callable[[str], int] = estimate_tokens,
        on_source_failure: Optional[SourceFailureHook] = None,
    ):
        """Initialize the assembler.

        Args:
            sources: Context sources, in tie-break order
            config: Pipeline configuration (defaults if not provided)
            token_counter: Counts tokens the way the model does
            on_source_failure: Called for each source timeout or error
        """
        self._sources: list[ContextSource] = list(sources or [])
        self._config = config or InlineCompletionConfig()
        self._count_tokens = token_counter
        self._on_source_failure = on_source_failure

    @property
    def sources(self) -> list[ContextSource]:
        return list(self._sources)

    @property
    def token_budget(self) -> int:
        return self._config.token_budget

    def add_source(self, source: ContextSource) -> None:
        if any(s.name == source.name for s in self._sources):
            logger.warning(f"Overwriting existing context source: {source.name}")
            self.remove_source(source.name)
        self._sources.append(source)

    def remove_source(self, name: str) -> bool:
        for i, source in enumerate(self._sources):
            if source.name == name:
                del self._sources[i]
                return True
        return False

    def get_source(self, name: str) -> Optional[ContextSource]:
        for source in self._sources:
            if source.name == name:
                return source
        return None

    async def assemble(self, request: CompletionRequest) -> list[ContextSnippet]:
        """Assemble ordered context for a request.

        Suspends until every source has answered or timed out.
        Cancelling this call cancels all outstanding source queries.

        Args:
            request: The completion request

        Returns:
            Selected snippets, best first, within the token budget
        """
        sources = [s for s in self._sources if s.enabled]
        if not sources or self._config.token_budget <= 0:
            return []

        # Results are gathered in source order, not arrival order
        results = await asyncio.gather(*(self._query(source, request) for source in sources))

        candidates: list[tuple[int, ContextSnippet]] = []
        for source, snippets in zip(sources, results):
            priority = (
                source.priority
                if source.priority is not None
                else self._config.source_priority(source.kind)
            )
            for snippet in snippets:
                candidates.append((priority, snippet))

        selected = self.select(candidates)
        logger.debug(
            f"Assembled {len(selected)}/{len(candidates)} snippets "
            f"({sum(s.token_count for s in selected)}/{self._config.token_budget} tokens) "
            f"for {request.document_uri}"
        )
        return selected

    def select(self, candidates: Sequence[tuple[int, ContextSnippet]]) -> list[ContextSnippet]:
        """Greedy budgeted selection.

        Args:
            candidates: (source priority, snippet) pairs

        Returns:
            Accepted snippets in selection order
        """
        budget = self._config.token_budget
        seen: set[str] = set()
        prepared: list[tuple[int, ContextSnippet]] = []
        for priority, snippet in candidates:
            if not snippet.content or snippet.content in seen:
                continue
            seen.add(snippet.content)
            token_count = snippet.token_count or self._count_tokens(snippet.content)
            prepared.append((priority, replace(snippet, token_count=token_count)))

        prepared.sort(key=lambda item: (-item[1].relevance_score, item[0], -item[1].recency))

        selected: list[ContextSnippet] = []
        used = 0
        for _, snippet in prepared:
            if used + snippet.token_count <= budget:
                selected.append(snippet)
                used += snippet.token_count
                continue
            if not selected:
                truncated = self._truncate(snippet, budget)
                if truncated is not None:
                    selected.append(truncated)
            break
        return selected

    async def _query(self, source: ContextSource, request: CompletionRequest) -> list[ContextSnippet]:
        timeout_ms = (
            source.timeout_ms
            if source.timeout_ms is not None
            else self._config.source_timeout(source.name)
        )
        try:
            snippets = await asyncio.wait_for(source.fetch(request), timeout=timeout_ms / 1000.0)
        except asyncio.TimeoutError:
            self._report(source, ContextSourceTimeout(source.name, timeout_ms))
            return []
        except Exception as e:
            self._report(source, ContextSourceError(source.name, str(e)))
            return []
        return [replace(s) for s in snippets or []]

    def _report(self, source: ContextSource, error: ContextSourceError) -> None:
        logger.warning(str(error))
        if self._on_source_failure is not None:
            try:
                self._on_source_failure(source, error)
            except Exception as e:
                logger.warning(f"Source failure hook failed: {e}")

    def _truncate(self, snippet: ContextSnippet, budget: int) -> Optional[ContextSnippet]:
        """Cut a snippet down to the largest prefix that fits the budget."""
        if budget <= 0:
            return None
        content = snippet.content
        low, high = 0, len(content)
        while low < high:
            mid = (low + high + 1) // 2
            if self._count_tokens(content[:mid]) <= budget:
                low = mid
            else:
                high = mid - 1
        if low == 0:
            return None
        text = content[:low]
        return replace(snippet, content=text, token_count=self._count_tokens(text))
