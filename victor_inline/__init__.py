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

"""Inline code completion pipeline for editor integrations.

Turns editor keystrokes into cached, streamed, cancellable ghost-text
suggestions produced by a generative model:
- Gate: prefilter rules and per-session debounce
- Context: concurrent multi-source assembly under a token budget
- Cache: fingerprint-keyed LRU with single-flight in-flight markers
- Streaming: one model call per fingerprint, superseded attempts cancelled
- Postprocessing: idempotent cleanup, de-duplication and bracket balancing

Example usage:
    from victor_inline import (
        EditEvent,
        FunctionModelProvider,
        InlineCompletionConfig,
        InlineCompletionManager,
        OpenFilesSource,
        RecentEditsSource,
    )

    async def generate(prompt, options):
        async for delta in my_client.stream(prompt, max_tokens=options.max_tokens):
            yield delta

    config = InlineCompletionConfig(debounce_ms=75, token_budget=1024)
    async with InlineCompletionManager(
        FunctionModelProvider(generate),
        config,
        sources=[RecentEditsSource(), OpenFilesSource(lambda: open_documents)],
    ) as manager:
        suggestion = await manager.handle_edit(
            EditEvent(
                document_uri="file:///src/app.py",
                cursor_offset=12,
                prefix_text="def add(a, b",
                suffix_text="",
                inserted_text="b",
            )
        )
        if suggestion is not None:
            print(suggestion.text)
"""

from victor_inline.cache import CacheEntry, CacheStats, CompletionCache, InFlightMarker
from victor_inline.cancellation import CancellationToken
from victor_inline.config import InlineCompletionConfig, load_config
from victor_inline.context import (
    ClipboardSource,
    ContextAssembler,
    ContextSource,
    DiffSource,
    OpenFilesSource,
    RecentEditsSource,
    RetrievalSource,
    Retriever,
)
from victor_inline.coordinator import StreamCoordinator
from victor_inline.errors import (
    ContextSourceError,
    ContextSourceTimeout,
    InlineCompletionError,
    PostprocessRejected,
    StreamFailure,
)
from victor_inline.fingerprint import Fingerprint, compute_fingerprint, provisional_fingerprint
from victor_inline.gate import (
    Debouncer,
    Gate,
    MinimumLineLengthRule,
    PrefilterRule,
    PureDeletionRule,
    SyntaxRegionRule,
)
from victor_inline.manager import InlineCompletionManager
from victor_inline.postprocess import Postprocessor
from victor_inline.prompt import FIM_TEMPLATES, PromptBuilder
from victor_inline.protocol import (
    CompletionRequest,
    ContextSnippet,
    DocumentState,
    EditEvent,
    EditorState,
    OffsetRange,
    SourceKind,
    Suggestion,
    SyntaxRegion,
    TriggerReason,
)
from victor_inline.providers import (
    ChatModelProvider,
    FunctionModelProvider,
    ModelOptions,
    ModelProvider,
    ModelProviderRegistry,
    create_default_registry,
    estimate_tokens,
)
from victor_inline.stream import SessionState, StopReason, StreamSession, consume_stream
from victor_inline.syntax import SyntaxClassifier, detect_language
from victor_inline.telemetry import (
    CompletionMetrics,
    LoggingTelemetrySink,
    Telemetry,
    TelemetryEvent,
    TelemetryKind,
    TelemetrySink,
)

__version__ = "0.1.0"

__all__ = [
    # Protocol
    "CompletionRequest",
    "ContextSnippet",
    "DocumentState",
    "EditEvent",
    "EditorState",
    "OffsetRange",
    "SourceKind",
    "Suggestion",
    "SyntaxRegion",
    "TriggerReason",
    # Configuration
    "InlineCompletionConfig",
    "load_config",
    # Gate
    "Debouncer",
    "Gate",
    "MinimumLineLengthRule",
    "PrefilterRule",
    "PureDeletionRule",
    "SyntaxRegionRule",
    "SyntaxClassifier",
    "detect_language",
    # Context
    "ClipboardSource",
    "ContextAssembler",
    "ContextSource",
    "DiffSource",
    "OpenFilesSource",
    "RecentEditsSource",
    "RetrievalSource",
    "Retriever",
    # Cache
    "CacheEntry",
    "CacheStats",
    "CompletionCache",
    "Fingerprint",
    "InFlightMarker",
    "compute_fingerprint",
    "provisional_fingerprint",
    # Providers
    "ChatModelProvider",
    "FunctionModelProvider",
    "ModelOptions",
    "ModelProvider",
    "ModelProviderRegistry",
    "create_default_registry",
    "estimate_tokens",
    # Streaming
    "CancellationToken",
    "SessionState",
    "StopReason",
    "StreamCoordinator",
    "StreamSession",
    "consume_stream",
    # Prompt and postprocessing
    "FIM_TEMPLATES",
    "PromptBuilder",
    "Postprocessor",
    # Telemetry
    "CompletionMetrics",
    "LoggingTelemetrySink",
    "Telemetry",
    "TelemetryEvent",
    "TelemetryKind",
    "TelemetrySink",
    # Manager
    "InlineCompletionManager",
    # Errors
    "ContextSourceError",
    "ContextSourceTimeout",
    "InlineCompletionError",
    "PostprocessRejected",
    "StreamFailure",
]
