# Copyright 2026 Vijaykumar Singh <singhvjd@gmail.com>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.

"""Tests for the completion cache and in-flight markers."""

import pytest

from victor_inline.cache import CompletionCache
from victor_inline.config import InlineCompletionConfig
from victor_inline.fingerprint import Fingerprint, cursor_span, spans_diverge, text_change

URI = "file:///src/app.py"


def fp(digest: str, uri: str = URI) -> Fingerprint:
    return Fingerprint(document_uri=uri, digest=digest)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class TestStoreAndLookup:
    """Round-trip, first-write-wins and statistics."""

    def test_round_trip(self):
        cache = CompletionCache()
        cache.store(fp("a"), "completion")
        entry = cache.lookup(fp("a"))
        assert entry is not None
        assert entry.completion_text == "completion"
        assert entry.hit_count == 1
        assert cache.stats.hits == 1

    def test_miss(self):
        cache = CompletionCache()
        assert cache.lookup(fp("missing")) is None
        assert cache.stats.misses == 1
        assert cache.stats.hit_rate == 0.0

    def test_first_write_wins(self):
        cache = CompletionCache()
        cache.store(fp("a"), "first")
        cache.store(fp("a"), "second")
        assert cache.lookup(fp("a")).completion_text == "first"
        assert cache.stats.stores == 1

    def test_completion_text_is_immutable(self):
        cache = CompletionCache()
        entry = cache.store(fp("a"), "text")
        with pytest.raises(AttributeError):
            entry.completion_text = "other"
        entry.hit_count = 5
        assert entry.hit_count == 5

    def test_same_digest_other_document_is_distinct(self):
        cache = CompletionCache()
        cache.store(fp("a", "file:///one.py"), "one")
        assert cache.lookup(fp("a", "file:///two.py")) is None

    def test_from_config(self):
        cache = CompletionCache.from_config(InlineCompletionConfig(max_cache_entries=3))
        assert cache.max_entries == 3

    def test_invalid_capacity(self):
        with pytest.raises(ValueError):
            CompletionCache(max_entries=0)


class TestEviction:
    """Least-recently-accessed eviction and expiry."""

    def test_least_recently_accessed_evicted(self):
        cache = CompletionCache(max_entries=2)
        cache.store(fp("a"), "A")
        cache.store(fp("b"), "B")
        cache.lookup(fp("a"))
        cache.store(fp("c"), "C")
        assert fp("b") not in cache
        assert fp("a") in cache
        assert fp("c") in cache
        assert len(cache) == 2
        assert cache.stats.evictions == 1

    def test_ttl_expiry(self):
        clock = FakeClock()
        cache = CompletionCache(ttl_seconds=10, clock=clock)
        cache.store(fp("a"), "A")
        clock.now += 5
        assert cache.lookup(fp("a")) is not None
        clock.now += 6
        assert cache.lookup(fp("a")) is None
        assert cache.stats.expirations == 1
        assert len(cache) == 0


class TestAliases:
    """Provisional keys resolving to final entries."""

    def test_alias_resolves(self):
        cache = CompletionCache()
        cache.store(fp("final"), "text", alias=fp("provisional"))
        assert cache.lookup(fp("provisional")).fingerprint == fp("final")
        assert fp("provisional") in cache

    def test_eviction_drops_alias(self):
        cache = CompletionCache(max_entries=1)
        cache.store(fp("final"), "text", alias=fp("provisional"))
        cache.store(fp("other"), "other")
        assert cache.lookup(fp("provisional")) is None

    def test_invalidate_through_alias(self):
        cache = CompletionCache()
        cache.store(fp("final"), "text", alias=fp("provisional"))
        assert cache.invalidate(fp("provisional")) is True
        assert fp("final") not in cache
        assert cache.invalidate(fp("final")) is False


class TestDivergenceInvalidation:
    """Dropping entries whose surroundings changed."""

    def _store(self, cache, digest, document, offset, uri=URI):
        cache.store(
            fp(digest, uri),
            "suggestion",
            cursor_offset=offset,
            span_text=cursor_span(document, offset, cache.window_chars),
        )

    def test_small_edit_keeps_entry(self):
        cache = CompletionCache(window_chars=64)
        document = "def compute_total(items):\n    total = sum(items)\n    return "
        self._store(cache, "a", document, len(document))
        assert cache.invalidate_divergent(URI, document + "t") == 0
        assert fp("a") in cache

    def test_rewrite_drops_entry(self):
        cache = CompletionCache(window_chars=64)
        document = "def compute_total(items):\n    total = sum(items)\n    return "
        self._store(cache, "a", document, len(document))
        assert cache.invalidate_divergent(URI, "class Unrelated:\n    pass\n" * 3) == 1
        assert fp("a") not in cache

    def test_offset_past_end_drops_entry(self):
        cache = CompletionCache()
        self._store(cache, "a", "x = 1\n" * 10, 50)
        assert cache.invalidate_divergent(URI, "x") == 1

    def test_other_documents_untouched(self):
        cache = CompletionCache()
        self._store(cache, "a", "x = compute()", 13, uri="file:///other.py")
        assert cache.invalidate_divergent(URI, "") == 0
        assert fp("a", "file:///other.py") in cache


class TestChangeAwareInvalidation:
    """Only entries around the edited region are compared."""

    DOCUMENT = "".join(f"line_{i:03d} = value_{i:03d}\n" for i in range(200))

    def _store(self, cache, digest, document, offset, span_text=None):
        if span_text is None:
            span_text = cursor_span(document, offset, cache.window_chars)
        cache.store(fp(digest), "suggestion", cursor_offset=offset, span_text=span_text)

    def test_entry_before_change_not_compared(self):
        cache = CompletionCache(window_chars=16)
        self._store(cache, "a", self.DOCUMENT, 10, span_text="unrelated text")
        new = self.DOCUMENT + "tail = 1\n"
        change = text_change(self.DOCUMENT, new)
        assert cache.invalidate_divergent(URI, new, change) == 0
        assert fp("a") in cache
        assert cache.invalidate_divergent(URI, new) == 1

    def test_entry_after_insertion_is_shifted(self):
        cache = CompletionCache(window_chars=16)
        self._store(cache, "a", self.DOCUMENT, 200)
        new = "# header\n" + self.DOCUMENT
        assert cache.invalidate_divergent(URI, new, text_change(self.DOCUMENT, new)) == 0
        entry = cache.lookup(fp("a"))
        assert entry.cursor_offset == 209
        assert cursor_span(new, entry.cursor_offset, 16) == entry.span_text

    def test_overlapping_rewrite_drops_entry(self):
        cache = CompletionCache(window_chars=32)
        self._store(cache, "a", self.DOCUMENT, 2100)
        new = self.DOCUMENT[:2080] + "class Unrelated:\n    pass\n" * 3 + self.DOCUMENT[2140:]
        assert cache.invalidate_divergent(URI, new, text_change(self.DOCUMENT, new)) == 1
        assert fp("a") not in cache

    def test_only_overlapping_entries_compared(self, monkeypatch):
        compared = []

        def counting(a, b, threshold):
            compared.append(a)
            return spans_diverge(a, b, threshold)

        monkeypatch.setattr("victor_inline.cache.spans_diverge", counting)
        cache = CompletionCache(max_entries=64, window_chars=32)
        for i in range(50):
            self._store(cache, f"e{i}", self.DOCUMENT, 84 * i)

        # Rename value_100 on line 100, next to the entry at offset 2100
        new = self.DOCUMENT[:2111] + "other" + self.DOCUMENT[2116:]
        assert cache.invalidate_divergent(URI, new, text_change(self.DOCUMENT, new)) == 0
        assert len(compared) == 1
        assert len(cache) == 50


class TestInFlight:
    """Atomic claiming of in-flight markers."""

    @pytest.mark.asyncio
    async def test_claim_and_attach(self):
        cache = CompletionCache()
        marker, owned = cache.claim_in_flight(fp("a"))
        again, owned_again = cache.claim_in_flight(fp("a"))
        assert owned is True
        assert owned_again is False
        assert again is marker
        assert cache.in_flight_count == 1

    @pytest.mark.asyncio
    async def test_release_only_current_marker(self):
        cache = CompletionCache()
        marker, _ = cache.claim_in_flight(fp("a"))
        marker.future.set_result("done")
        newer, owned = cache.claim_in_flight(fp("a"))
        assert owned is True
        assert cache.release_in_flight(fp("a"), marker) is False
        assert cache.get_in_flight(fp("a")) is newer
        assert cache.release_in_flight(fp("a"), newer) is True
        assert cache.in_flight_count == 0

    @pytest.mark.asyncio
    async def test_aborted_marker_not_attached(self):
        cache = CompletionCache()
        marker, _ = cache.claim_in_flight(fp("a"))
        marker.token.cancel("no subscribers")
        replacement, owned = cache.claim_in_flight(fp("a"))
        assert owned is True
        assert replacement is not marker

    @pytest.mark.asyncio
    async def test_subscribers_receive_deltas_and_replay(self):
        cache = CompletionCache()
        marker, _ = cache.claim_in_flight(fp("a"))
        early, late = [], []
        marker.subscribe("early", early.append)
        marker.publish("foo")
        marker.subscribe("late", late.append)
        marker.publish("bar")
        assert early == ["foo", "bar"]
        assert late == ["foo", "bar"]
        assert marker.unsubscribe("early") == 1
        assert marker.unsubscribe("late") == 0

    @pytest.mark.asyncio
    async def test_clear_keeps_in_flight(self):
        cache = CompletionCache()
        cache.store(fp("a"), "A")
        cache.claim_in_flight(fp("b"))
        cache.clear()
        assert len(cache) == 0
        assert cache.in_flight_count == 1
