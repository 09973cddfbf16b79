# Copyright 2026 Vijaykumar Singh <singhvjd@gmail.com>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.

"""End-to-end tests for the inline completion manager."""

import asyncio

import pytest

from conftest import DOC_URI, FakeProvider, StaticSource, make_event
from victor_inline.config import InlineCompletionConfig
from victor_inline.manager import InlineCompletionManager
from victor_inline.protocol import EditorState, SourceKind, SyntaxRegion, TriggerReason
from victor_inline.providers.registry import ModelProviderRegistry
from victor_inline.telemetry import Telemetry, TelemetryKind

PREFIX = "def add(a, b):\n    return a"
SUFFIX = "\n"


class RecordingSink:
    def __init__(self):
        self.events = []

    def emit(self, event):
        self.events.append(event)

    def kinds(self):
        return [event.kind for event in self.events]


def _manager(provider, config, **kwargs):
    kwargs.setdefault("telemetry", Telemetry(sinks=[]))
    return InlineCompletionManager(provider, config, **kwargs)


@pytest.fixture
def provider():
    return FakeProvider([" + b"])


class TestDelivery:
    """Edits producing suggestions."""

    @pytest.mark.asyncio
    async def test_delivers_suggestion(self, provider, config):
        manager = _manager(provider, config)
        suggestion = await manager.handle_edit(make_event(PREFIX, SUFFIX))

        assert suggestion is not None
        assert suggestion.text == " + b"
        assert suggestion.document_uri == DOC_URI
        assert suggestion.replace_range.start == len(PREFIX)
        assert suggestion.from_cache is False
        assert provider.calls == 1
        assert provider.prompts[0].startswith("<PRE>")
        assert manager.metrics.delivered == 1

    @pytest.mark.asyncio
    async def test_repeated_edit_served_from_cache(self, provider, config):
        manager = _manager(provider, config)
        first = await manager.handle_edit(make_event(PREFIX, SUFFIX))
        second = await manager.handle_edit(make_event(PREFIX, SUFFIX))

        assert first.text == second.text == " + b"
        assert second.from_cache is True
        assert provider.calls == 1
        assert manager.metrics.cache_hits == 1
        assert manager.metrics.model_calls == 1
        assert manager.metrics.total_requests == 2

    @pytest.mark.asyncio
    async def test_context_reaches_prompt(self, provider, config):
        source = StaticSource("helpers", SourceKind.RETRIEVAL, [("def helper(): ...", 0.9)])
        manager = _manager(provider, config, sources=[source])
        await manager.handle_edit(make_event(PREFIX, SUFFIX))
        assert "# def helper(): ..." in provider.prompts[0]

    @pytest.mark.asyncio
    async def test_listeners_notified(self, provider, config):
        manager = _manager(provider, config)
        received = []
        remove = manager.on_suggestion(received.append)

        suggestion = await manager.handle_edit(make_event(PREFIX, SUFFIX))
        assert received == [suggestion]

        remove()
        await manager.handle_edit(make_event(PREFIX, SUFFIX))
        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_delivery(self, provider, config):
        manager = _manager(provider, config)

        def broken(suggestion):
            raise RuntimeError("listener bug")

        manager.on_suggestion(broken)
        assert await manager.handle_edit(make_event(PREFIX, SUFFIX)) is not None

    @pytest.mark.asyncio
    async def test_telemetry_sequence(self, provider, config):
        sink = RecordingSink()
        manager = _manager(provider, config, telemetry=Telemetry(sinks=[sink]))
        await manager.handle_edit(make_event(PREFIX, SUFFIX))
        assert sink.kinds() == [
            TelemetryKind.CACHE_MISS,
            TelemetryKind.MODEL_CALL,
            TelemetryKind.DELIVERED,
        ]
        assert sink.events[-1].detail["latency_ms"] >= 0

    @pytest.mark.asyncio
    async def test_from_config_uses_registry(self):
        registry = ModelProviderRegistry()
        registry.register("fake", FakeProvider)
        config = InlineCompletionConfig(debounce_ms=0, syntax_classification=False, provider="fake")

        manager = InlineCompletionManager.from_config(config, registry, deltas=[" + b"])
        suggestion = await manager.handle_edit(make_event(PREFIX, SUFFIX))
        assert suggestion.text == " + b"

    @pytest.mark.asyncio
    async def test_return_statement_completed_then_cached(self, config):
        provider = FakeProvider(["a + b"])
        manager = _manager(provider, config)
        prefix = "def add(a, b):\n    return "

        first = await manager.handle_edit(make_event(prefix, ""))
        second = await manager.handle_edit(make_event(prefix, ""))

        assert first.text == second.text == "a + b"
        assert first.from_cache is False
        assert second.from_cache is True
        assert provider.calls == 1

    @pytest.mark.asyncio
    async def test_sessions_sharing_a_fingerprint_share_one_call(self, config):
        provider = FakeProvider(["a + b"])
        provider.gate = asyncio.Event()
        manager = _manager(provider, config)
        prefix = "def add(a, b):\n    return "

        first = asyncio.create_task(
            manager.handle_edit(make_event(prefix, "", session_id="editor-1"))
        )
        second = asyncio.create_task(
            manager.handle_edit(make_event(prefix, "", session_id="editor-2"))
        )
        await asyncio.sleep(0.01)
        provider.gate.set()

        results = await asyncio.gather(first, second)
        assert [suggestion.text for suggestion in results] == ["a + b", "a + b"]
        assert results[0].session_id != results[1].session_id
        assert provider.calls == 1
        assert manager.metrics.attached == 1


class TestGating:
    """Edits that never reach the model."""

    @pytest.mark.asyncio
    async def test_short_line_rejected(self, provider, config):
        manager = _manager(provider, config)
        assert await manager.handle_edit(make_event("x")) is None
        assert manager.metrics.gate_rejections == 1
        assert provider.calls == 0

    @pytest.mark.asyncio
    async def test_comment_region_rejected(self, provider, config):
        manager = _manager(provider, config)
        state = EditorState(syntax_region=SyntaxRegion.COMMENT)
        assert await manager.handle_edit(make_event(PREFIX, SUFFIX), state) is None
        assert provider.calls == 0

    @pytest.mark.asyncio
    async def test_disabled(self, provider):
        manager = _manager(provider, InlineCompletionConfig(enabled=False, syntax_classification=False))
        assert await manager.handle_edit(make_event(PREFIX, SUFFIX)) is None
        assert manager.metrics.total_requests == 0

    @pytest.mark.asyncio
    async def test_burst_of_edits_makes_one_attempt(self, provider):
        source = StaticSource("helpers", SourceKind.RETRIEVAL, [("def helper(): ...", 0.9)])
        config = InlineCompletionConfig(debounce_ms=75, syntax_classification=False)
        manager = _manager(provider, config, sources=[source])

        first = asyncio.create_task(manager.handle_edit(make_event(PREFIX[:-1] + "a ", SUFFIX)))
        await asyncio.sleep(0.03)
        second = await manager.handle_edit(make_event(PREFIX, SUFFIX))

        assert await first is None
        assert second is not None
        assert source.calls == 1
        assert provider.calls == 1
        assert manager.metrics.cancelled == 1

    @pytest.mark.asyncio
    async def test_manual_trigger_skips_debounce(self, provider):
        config = InlineCompletionConfig(debounce_ms=10_000, syntax_classification=False)
        manager = _manager(provider, config)
        event = make_event(PREFIX, SUFFIX, trigger=TriggerReason.MANUAL)
        suggestion = await asyncio.wait_for(manager.handle_edit(event), timeout=1)
        assert suggestion is not None


class TestFailureAbsorption:
    """Internal failures never escape handle_edit."""

    @pytest.mark.asyncio
    async def test_provider_failure(self, provider, config):
        provider.error = RuntimeError("connection reset")
        manager = _manager(provider, config)
        assert await manager.handle_edit(make_event(PREFIX, SUFFIX)) is None
        assert manager.metrics.failed == 1
        assert len(manager.cache) == 0

    @pytest.mark.asyncio
    async def test_source_timeout_still_delivers(self, provider, config):
        slow = StaticSource("slow", SourceKind.RETRIEVAL, [("late", 0.9)], delay=1.0, timeout_ms=20)
        manager = _manager(provider, config, sources=[slow])
        suggestion = await manager.handle_edit(make_event(PREFIX, SUFFIX))
        assert suggestion is not None
        assert manager.metrics.source_failures == 1
        assert slow.cancelled is True

    @pytest.mark.asyncio
    async def test_empty_completion_rejected(self, config):
        provider = FakeProvider(["<|endoftext|>"])
        manager = _manager(provider, config)
        assert await manager.handle_edit(make_event(PREFIX, SUFFIX)) is None
        assert manager.metrics.postprocess_rejected == 1
        assert len(manager.cache) == 0

    @pytest.mark.asyncio
    async def test_document_changed_during_stream(self, provider, config):
        provider.gate = asyncio.Event()
        manager = _manager(provider, config)
        task = asyncio.create_task(manager.handle_edit(make_event(PREFIX, SUFFIX)))
        await asyncio.sleep(0.01)

        manager.update_document(DOC_URI, "class Rewritten:\n    pass\n")
        provider.gate.set()

        assert await task is None
        assert manager.metrics.postprocess_rejected == 1
        assert len(manager.cache) == 1


class TestLifecycle:
    """Start, cancel and shutdown."""

    @pytest.mark.asyncio
    async def test_cancel_session(self, provider, config):
        provider.gate = asyncio.Event()
        manager = _manager(provider, config)
        task = asyncio.create_task(manager.handle_edit(make_event(PREFIX, SUFFIX)))
        await asyncio.sleep(0.01)

        assert manager.cancel(DOC_URI) is True
        assert await task is None
        await asyncio.sleep(0.01)
        assert provider.closed == 1
        assert manager.cache.in_flight_count == 0

    @pytest.mark.asyncio
    async def test_close_cancels_outstanding_attempts(self, provider, config):
        provider.gate = asyncio.Event()
        async with _manager(provider, config) as manager:
            assert manager.is_running
            task = asyncio.create_task(manager.handle_edit(make_event(PREFIX, SUFFIX)))
            await asyncio.sleep(0.01)

        assert await task is None
        assert not manager.is_running
        assert await manager.handle_edit(make_event(PREFIX, SUFFIX)) is None
        with pytest.raises(RuntimeError):
            manager.start()

    @pytest.mark.asyncio
    async def test_close_document_forgets_state(self, provider, config):
        manager = _manager(provider, config)
        await manager.handle_edit(make_event(PREFIX, SUFFIX))
        assert manager.get_document(DOC_URI).text == PREFIX + SUFFIX
        manager.close_document(DOC_URI)
        assert manager.get_document(DOC_URI) is None

    @pytest.mark.asyncio
    async def test_close_document_cancels_every_session_on_it(self, provider, config):
        provider.gate = asyncio.Event()
        manager = _manager(provider, config)
        first = asyncio.create_task(
            manager.handle_edit(make_event(PREFIX, SUFFIX, session_id="editor-1"))
        )
        second = asyncio.create_task(
            manager.handle_edit(make_event(PREFIX, SUFFIX, session_id="editor-2"))
        )
        other = asyncio.create_task(
            manager.handle_edit(
                make_event(PREFIX, SUFFIX, uri="file:///src/other.py", session_id="editor-3")
            )
        )
        await asyncio.sleep(0.01)

        manager.close_document(DOC_URI)
        assert await first is None
        assert await second is None
        provider.gate.set()

        assert (await other).text == " + b"
        assert manager.metrics.cancelled == 2
        assert len(manager.coordinator) == 0

    @pytest.mark.asyncio
    async def test_finished_attempts_leave_no_bookkeeping(self, provider, config):
        manager = _manager(provider, config)
        for session_id in ("editor-1", "editor-2", None):
            await manager.handle_edit(make_event(PREFIX, SUFFIX, session_id=session_id))
        await manager.handle_edit(make_event("x"))

        assert len(manager.coordinator) == 0
        assert len(manager.gate.debouncer) == 0


class TestCacheInvalidation:
    """Document updates dropping cached completions they rewrote."""

    @pytest.mark.asyncio
    async def test_external_update_invalidates(self, provider, config):
        manager = _manager(provider, config)
        await manager.handle_edit(make_event(PREFIX, SUFFIX))
        assert len(manager.cache) == 1

        manager.update_document(DOC_URI, "class Rewritten:\n    pass\n")
        assert len(manager.cache) == 0

    @pytest.mark.asyncio
    async def test_edit_elsewhere_keeps_entry(self, provider, config):
        manager = _manager(provider, config)
        body = "\n".join(f"    step_{i} = {i}" for i in range(60))
        prefix = f"def run():\n{body}\n    return step_0 + step_1"
        await manager.handle_edit(make_event(prefix, SUFFIX))

        manager.update_document(DOC_URI, "import os\n" + prefix + SUFFIX)
        assert len(manager.cache) == 1
        again = await manager.handle_edit(make_event(prefix, SUFFIX))
        assert again.from_cache is True
        assert provider.calls == 1
