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

"""Inline completion manager.

Provides the high-level pipeline API for editor integrations following
the Facade pattern: edit events go in, suggestions come out.
"""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Sequence, Set

from victor_inline.cache import CompletionCache
from victor_inline.config import InlineCompletionConfig
from victor_inline.context.assembler import ContextAssembler
from victor_inline.context.sources import ContextSource, RecentEditsSource
from victor_inline.coordinator import StreamCoordinator
from victor_inline.errors import (
    ContextSourceError,
    ContextSourceTimeout,
    PostprocessRejected,
    StreamFailure,
)
from victor_inline.fingerprint import (
    compute_fingerprint,
    cursor_span,
    provisional_fingerprint,
    text_change,
)
from victor_inline.gate import Gate
from victor_inline.postprocess import Postprocessor
from victor_inline.prompt import PromptBuilder
from victor_inline.protocol import (
    CompletionRequest,
    DocumentState,
    EditEvent,
    EditorState,
    Suggestion,
)
from victor_inline.providers.base import ModelProvider
from victor_inline.providers.registry import ModelProviderRegistry, create_default_registry
from victor_inline.stream import StreamSession
from victor_inline.syntax import SyntaxClassifier, detect_language
from victor_inline.telemetry import CompletionMetrics, Telemetry, TelemetryKind

logger = logging.getLogger(__name__)

SuggestionListener = Callable[[Suggestion], None]


class InlineCompletionManager:
    """High-level manager for inline completions.

    Orchestrates the pipeline stages for every edit:
    - Gate (prefilter rules and debounce)
    - Cache lookup by provisional and final fingerprint
    - Context assembly under the token budget
    - Single-flight model streaming with supersession
    - Postprocessing and delivery
    """

    def __init__(
        self,
        provider: ModelProvider,
        config: Optional[InlineCompletionConfig] = None,
        *,
        sources: Optional[Sequence[ContextSource]] = None,
        cache: Optional[CompletionCache] = None,
        telemetry: Optional[Telemetry] = None,
        classifier: Optional[SyntaxClassifier] = None,
        prompt_builder: Optional[PromptBuilder] = None,
    ):
        """Initialize the manager.

        Args:
            provider: Model provider producing completions
            config: Pipeline configuration (defaults if not provided)
            sources: Context sources (recent edits only if not provided)
            cache: Completion cache, possibly shared with other managers
            telemetry: Telemetry hub
            classifier: Syntax classifier (tree-sitter based if enabled in config)
            prompt_builder: FIM prompt builder
        """
        self._config = config or InlineCompletionConfig()
        self._provider = provider
        self._telemetry = telemetry or Telemetry()
        self._cache = cache or CompletionCache.from_config(self._config)

        if classifier is None and self._config.syntax_classification:
            classifier = SyntaxClassifier()
        self._gate = Gate(self._config, classifier)

        sources = list(sources) if sources is not None else [RecentEditsSource()]
        self._recent_edits = next((s for s in sources if isinstance(s, RecentEditsSource)), None)
        self._assembler = ContextAssembler(
            sources,
            self._config,
            token_counter=provider.count_tokens,
            on_source_failure=self._on_source_failure,
        )

        if prompt_builder is None:
            prompt_builder = PromptBuilder(self._config.fim_template, self._config.max_context_lines)
            if self._config.fim_template == "default":
                prompt_builder.set_model(self._config.model)
        self._prompt_builder = prompt_builder

        self._coordinator = StreamCoordinator(provider, self._cache, self._config, self._telemetry)
        self._postprocessor = Postprocessor(self._config)

        self._documents: Dict[str, DocumentState] = {}
        self._listeners: List[SuggestionListener] = []
        self._tasks: Set[asyncio.Task] = set()
        self._started = False
        self._closed = False

    @classmethod
    def from_config(
        cls,
        config: Optional[InlineCompletionConfig] = None,
        registry: Optional[ModelProviderRegistry] = None,
        *,
        sources: Optional[Sequence[ContextSource]] = None,
        **provider_kwargs: Any,
    ) -> "InlineCompletionManager":
        """Create a manager whose provider comes from a registry.

        Args:
            config: Pipeline configuration; ``config.provider`` names the provider
            registry: Provider registry (built-in providers if not provided)
            sources: Context sources
            **provider_kwargs: Passed to the provider constructor

        Returns:
            Configured manager
        """
        config = config or InlineCompletionConfig()
        registry = registry or create_default_registry()
        provider = registry.create(config.provider, **provider_kwargs)
        return cls(provider, config, sources=sources)

    @property
    def config(self) -> InlineCompletionConfig:
        return self._config

    @property
    def metrics(self) -> CompletionMetrics:
        """Get completion metrics."""
        return self._telemetry.metrics

    @property
    def telemetry(self) -> Telemetry:
        return self._telemetry

    @property
    def cache(self) -> CompletionCache:
        return self._cache

    @property
    def coordinator(self) -> StreamCoordinator:
        return self._coordinator

    @property
    def gate(self) -> Gate:
        return self._gate

    @property
    def assembler(self) -> ContextAssembler:
        return self._assembler

    @property
    def is_running(self) -> bool:
        return self._started and not self._closed

    def start(self) -> None:
        if self._closed:
            raise RuntimeError("InlineCompletionManager is closed")
        self._started = True
        logger.debug(f"Inline completion manager started with provider {self._provider.name}")

    async def close(self) -> None:
        """Cancel every session and wait for outstanding attempts."""
        if self._closed:
            return
        self._closed = True
        self._coordinator.cancel_all("shutdown")
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        logger.debug("Inline completion manager closed")

    async def __aenter__(self) -> "InlineCompletionManager":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def on_suggestion(self, listener: SuggestionListener) -> Callable[[], None]:
        """Register a listener for delivered suggestions.

        Returns:
            Function removing the listener
        """
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def update_document(self, uri: str, text: str, version: Optional[int] = None) -> DocumentState:
        """Record the latest content of a document.

        Cached completions whose cursor span the change rewrote are
        invalidated; only the edited region is compared.
        """
        previous = self._documents.get(uri)
        if version is None:
            version = previous.version + 1 if previous is not None else 0
        state = DocumentState(uri=uri, text=text, version=version)
        self._documents[uri] = state
        if previous is None:
            self._cache.invalidate_divergent(uri, text)
        else:
            change = text_change(previous.text, text)
            if change is not None:
                self._cache.invalidate_divergent(uri, text, change)
        return state

    def get_document(self, uri: str) -> Optional[DocumentState]:
        return self._documents.get(uri)

    def close_document(self, uri: str) -> None:
        """Forget a document and cancel every attempt targeting it."""
        self._documents.pop(uri, None)
        self._gate.debouncer.forget(uri)
        for key in self._coordinator.cancel_document(uri, "document closed"):
            self._gate.debouncer.forget(key)

    def cancel(self, session_key: str) -> bool:
        """Cancel the active attempt of a logical editor session."""
        return self._coordinator.cancel(session_key, "cancelled by caller")

    async def handle_edit(
        self, event: EditEvent, state: Optional[EditorState] = None
    ) -> Optional[Suggestion]:
        """Run the pipeline for an edit.

        Every qualifying edit supersedes the previous attempt of its
        logical session. Internal failures are logged, never raised.

        Args:
            event: The edit
            state: Editor hints (syntax region, language)

        Returns:
            Suggestion, or None if the edit was gated, superseded,
            cancelled, failed or produced nothing usable
        """
        if self._closed or not self._config.enabled:
            return None
        state = state or EditorState()
        self._telemetry.record_request()

        self.update_document(event.document_uri, event.document_text)
        if self._recent_edits is not None:
            self._recent_edits.record(event)

        rejected_by = self._gate.prefilter(event, state)
        if rejected_by is not None:
            logger.debug(f"Gate rejected edit in {event.document_uri}: {rejected_by}")
            self._telemetry.emit(
                TelemetryKind.GATE_REJECTED, document_uri=event.document_uri, rule=rejected_by
            )
            return None

        generation = self._gate.register_edit(event)
        language = state.language or detect_language(event.document_uri, event.prefix_text[:256])
        request = CompletionRequest.from_event(event, language)
        session = self._coordinator.begin_session(event.session_key, request)

        task = asyncio.create_task(self._attempt(session, event, generation))
        session.cancellation_token.link_task(task)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        task.add_done_callback(lambda _: self._coordinator.finish(session))

        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            self._coordinator.cancel_session(session, "caller cancelled")
            task.cancel()
            raise

        if task.cancelled():
            return None
        error = task.exception()
        if error is not None:
            logger.error(f"Completion attempt for {event.document_uri} failed: {error}")
            return None
        return task.result()

    async def _attempt(
        self, session: StreamSession, event: EditEvent, generation: int
    ) -> Optional[Suggestion]:
        started = time.perf_counter()
        if not await self._gate.wait_debounce(event, generation):
            self._coordinator.cancel_session(session, "debounced")
            return None

        request = session.request
        provisional = provisional_fingerprint(request)
        fingerprint = provisional
        snippets: list = []
        entry = self._cache.lookup(provisional)
        if entry is None:
            snippets = await self._assembler.assemble(request)
            fingerprint = compute_fingerprint(request, snippets)
            entry = self._cache.lookup(fingerprint) if fingerprint != provisional else None

        if entry is not None:
            self._telemetry.emit(
                TelemetryKind.CACHE_HIT,
                session.session_id,
                request.document_uri,
                fingerprint=entry.fingerprint.short,
            )
            session.complete(entry.completion_text, from_cache=True)
        else:
            self._telemetry.emit(
                TelemetryKind.CACHE_MISS,
                session.session_id,
                request.document_uri,
                fingerprint=fingerprint.short,
            )
            prompt = self._prompt_builder.build(request, snippets)
            try:
                raw = await self._coordinator.stream(session, prompt, fingerprint)
            except StreamFailure as e:
                logger.warning(f"Completion stream for {request.document_uri} failed: {e}")
                return None

            text = self._postprocessor.prepare(raw, request)
            if text.strip():
                self._cache.store(
                    fingerprint,
                    text,
                    cursor_offset=request.cursor_offset,
                    span_text=cursor_span(
                        request.prefix_text + request.suffix_text,
                        request.cursor_offset,
                        self._cache.window_chars,
                    ),
                    alias=provisional,
                )

        try:
            suggestion = self._postprocessor.finalize(
                session, self._documents.get(request.document_uri)
            )
        except PostprocessRejected as e:
            self._telemetry.emit(
                TelemetryKind.POSTPROCESS_REJECTED,
                session.session_id,
                request.document_uri,
                reason=str(e),
            )
            return None

        if not self._coordinator.is_current(session):
            return None

        latency_ms = (time.perf_counter() - started) * 1000
        self._telemetry.emit(
            TelemetryKind.DELIVERED,
            session.session_id,
            request.document_uri,
            latency_ms=latency_ms,
            from_cache=suggestion.from_cache,
        )
        self._notify(suggestion)
        return suggestion

    def _notify(self, suggestion: Suggestion) -> None:
        for listener in list(self._listeners):
            try:
                listener(suggestion)
            except Exception as e:
                logger.warning(f"Suggestion listener failed: {e}")

    def _on_source_failure(self, source: ContextSource, error: ContextSourceError) -> None:
        kind = (
            TelemetryKind.SOURCE_TIMEOUT
            if isinstance(error, ContextSourceTimeout)
            else TelemetryKind.SOURCE_ERROR
        )
        self._telemetry.emit(kind, source=source.name, error=str(error))
