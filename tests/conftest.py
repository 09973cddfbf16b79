# Copyright 2026 Vijaykumar Singh <singhvjd@gmail.com>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.

"""Shared fakes and fixtures for the inline completion tests."""

import asyncio
from typing import List, Optional, Sequence

import pytest

from victor_inline.cancellation import CancellationToken
from victor_inline.config import InlineCompletionConfig
from victor_inline.context.sources import ContextSource
from victor_inline.protocol import (
    CompletionRequest,
    ContextSnippet,
    EditEvent,
    SourceKind,
    TriggerReason,
)
from victor_inline.providers.base import ModelOptions, estimate_tokens

DOC_URI = "file:///src/app.py"


class FakeProvider:
    """Scripted model provider that records every call.

    Set ``gate`` to an asyncio.Event to hold the stream before its first
    delta, and ``error`` to fail after the first delta.
    """

    def __init__(self, deltas: Sequence[str] = ("a + b",), name: str = "fake"):
        self.deltas = list(deltas)
        self.gate: Optional[asyncio.Event] = None
        self.error: Optional[Exception] = None
        self.calls = 0
        self.prompts: List[str] = []
        self.options: List[ModelOptions] = []
        self.closed = 0
        self._name = name

    @property
    def name(self) -> str:
        return self._name

    async def stream_completion(
        self, prompt: str, options: ModelOptions, cancellation_token: CancellationToken
    ):
        self.calls += 1
        self.prompts.append(prompt)
        self.options.append(options)
        try:
            if self.gate is not None:
                await self.gate.wait()
            for delta in self.deltas:
                if cancellation_token.cancelled:
                    return
                yield delta
                if self.error is not None:
                    raise self.error
        finally:
            self.closed += 1

    def count_tokens(self, text: str) -> int:
        return estimate_tokens(text)


class StaticSource(ContextSource):
    """Context source returning fixed snippets, optionally slowly or failing."""

    def __init__(
        self,
        name: str,
        kind: SourceKind,
        contents: Sequence[tuple] = (),
        delay: float = 0.0,
        error: Optional[Exception] = None,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self._name = name
        self._kind = kind
        self._contents = list(contents)
        self._delay = delay
        self._error = error
        self.calls = 0
        self.cancelled = False

    @property
    def name(self) -> str:
        return self._name

    @property
    def kind(self) -> SourceKind:
        return self._kind

    async def fetch(self, request: CompletionRequest) -> List[ContextSnippet]:
        self.calls += 1
        if self._delay:
            try:
                await asyncio.sleep(self._delay)
            except asyncio.CancelledError:
                self.cancelled = True
                raise
        if self._error is not None:
            raise self._error
        return [self._snippet(content, score) for content, score in self._contents]


def make_event(
    prefix: str,
    suffix: str = "",
    uri: str = DOC_URI,
    trigger: TriggerReason = TriggerReason.AUTOMATIC,
    **kwargs,
) -> EditEvent:
    """Edit event with the cursor between prefix and suffix."""
    kwargs.setdefault("inserted_text", prefix[-1:])
    return EditEvent(
        document_uri=uri,
        cursor_offset=len(prefix),
        prefix_text=prefix,
        suffix_text=suffix,
        trigger_reason=trigger,
        **kwargs,
    )


def make_request(prefix: str, suffix: str = "", uri: str = DOC_URI, **kwargs) -> CompletionRequest:
    return CompletionRequest(
        document_uri=uri,
        cursor_offset=len(prefix),
        prefix_text=prefix,
        suffix_text=suffix,
        **kwargs,
    )


@pytest.fixture
def config() -> InlineCompletionConfig:
    """Configuration without debounce or tree-sitter classification."""
    return InlineCompletionConfig(debounce_ms=0, syntax_classification=False)


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()
