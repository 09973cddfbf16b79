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

"""Process-wide completion cache with in-flight markers.

The cache is shared by every editor session. It holds:
- Completed entries, evicted least-recently-accessed first
- Aliases from provisional keys to the final key of an entry
- In-flight markers for fingerprints currently being streamed

All bookkeeping happens under one lock that is never held across an
await, so the cache is safe from both coroutines and threads.
"""

import asyncio
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Set, Tuple

from victor_inline.cancellation import CancellationToken
from victor_inline.config import InlineCompletionConfig
from victor_inline.fingerprint import Fingerprint, TextChange, cursor_span, spans_diverge

logger = logging.getLogger(__name__)

DeltaListener = Callable[[str], None]


@dataclass
class CacheEntry:
    """A cached completion.

    The completion text is immutable once written; only the access
    bookkeeping and the tracked cursor offset change.
    """

    fingerprint: Fingerprint
    completion_text: str
    created_at: float
    last_accessed_at: float
    hit_count: int = 0
    document_uri: str = ""
    cursor_offset: int = 0
    span_text: str = ""  # Document text around the cursor that produced the entry

    def __setattr__(self, name, value):
        if name == "completion_text" and "completion_text" in self.__dict__:
            raise AttributeError("CacheEntry.completion_text is immutable")
        super().__setattr__(name, value)


@dataclass
class CacheStats:
    """Counters for cache activity."""

    hits: int = 0
    misses: int = 0
    stores: int = 0
    evictions: int = 0
    invalidations: int = 0
    expirations: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


class InFlightMarker:
    """Marks a fingerprint whose completion is currently being produced.

    The owner publishes deltas and the final result; every subscribed
    session receives the deltas, including the text produced before it
    subscribed.
    """

    def __init__(self, fingerprint: Fingerprint):
        self.fingerprint = fingerprint
        self.future: asyncio.Future = asyncio.get_running_loop().create_future()
        self.token = CancellationToken()
        self.task: Optional[asyncio.Task] = None
        self.text = ""
        self._listeners: Dict[str, DeltaListener] = {}

    @property
    def done(self) -> bool:
        return self.future.done()

    @property
    def subscriber_count(self) -> int:
        return len(self._listeners)

    def subscribe(self, subscriber_id: str, listener: DeltaListener) -> None:
        self._listeners[subscriber_id] = listener
        if self.text:
            listener(self.text)

    def unsubscribe(self, subscriber_id: str) -> int:
        """Remove a subscriber and return how many remain."""
        self._listeners.pop(subscriber_id, None)
        return len(self._listeners)

    def publish(self, delta: str) -> None:
        if not delta:
            return
        self.text += delta
        for listener in list(self._listeners.values()):
            listener(delta)

    def __repr__(self) -> str:
        return (
            f"InFlightMarker({self.fingerprint}, subscribers={self.subscriber_count}, "
            f"done={self.done})"
        )


class CompletionCache:
    """Bounded LRU cache of completions keyed by fingerprint."""

    def __init__(
        self,
        max_entries: int = 256,
        ttl_seconds: float = 0.0,
        similarity_threshold: float = 0.6,
        window_chars: int = 128,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the cache.

        Args:
            max_entries: Capacity; least-recently-accessed entries are evicted beyond it
            ttl_seconds: Entry lifetime (0 disables expiry)
            similarity_threshold: Span similarity below which entries are invalidated
            window_chars: Characters on each side of the cursor kept for invalidation
            clock: Time source
        """
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self._max_entries = max_entries
        self._ttl = ttl_seconds
        self._similarity_threshold = similarity_threshold
        self._window_chars = window_chars
        self._clock = clock

        self._entries: "OrderedDict[Fingerprint, CacheEntry]" = OrderedDict()
        self._aliases: Dict[Fingerprint, Fingerprint] = {}
        self._aliases_of: Dict[Fingerprint, Set[Fingerprint]] = {}
        self._in_flight: Dict[Fingerprint, InFlightMarker] = {}
        self._lock = threading.Lock()
        self._stats = CacheStats()

    @classmethod
    def from_config(cls, config: InlineCompletionConfig) -> "CompletionCache":
        return cls(
            max_entries=config.max_cache_entries,
            ttl_seconds=config.cache_ttl_seconds,
            similarity_threshold=config.invalidation_similarity,
            window_chars=config.invalidation_window_chars,
        )

    @property
    def stats(self) -> CacheStats:
        return self._stats

    @property
    def max_entries(self) -> int:
        return self._max_entries

    @property
    def window_chars(self) -> int:
        return self._window_chars

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, fingerprint: Fingerprint) -> bool:
        with self._lock:
            return fingerprint in self._entries or fingerprint in self._aliases

    def lookup(self, fingerprint: Fingerprint) -> Optional[CacheEntry]:
        """Look up a completion.

        Resolves provisional aliases and refreshes the entry's access
        bookkeeping on a hit.

        Returns:
            The entry, or None on a miss
        """
        with self._lock:
            key = fingerprint if fingerprint in self._entries else self._aliases.get(fingerprint)
            entry = self._entries.get(key) if key is not None else None
            if entry is None:
                self._stats.misses += 1
                return None

            now = self._clock()
            if self._ttl > 0 and now - entry.created_at > self._ttl:
                self._remove_locked(key)
                self._stats.expirations += 1
                self._stats.misses += 1
                return None

            self._entries.move_to_end(key)
            entry.last_accessed_at = now
            entry.hit_count += 1
            self._stats.hits += 1
            return entry

    def store(
        self,
        fingerprint: Fingerprint,
        completion_text: str,
        *,
        cursor_offset: int = 0,
        span_text: str = "",
        alias: Optional[Fingerprint] = None,
    ) -> CacheEntry:
        """Store a completion.

        The first write for a fingerprint wins; storing again only
        refreshes its recency.

        Args:
            fingerprint: Final fingerprint of the attempt
            completion_text: Completion to cache
            cursor_offset: Cursor offset of the request
            span_text: Document text around the cursor when the request was made
            alias: Provisional fingerprint resolving to the same entry

        Returns:
            The cached entry
        """
        with self._lock:
            now = self._clock()
            entry = self._entries.get(fingerprint)
            if entry is None:
                entry = CacheEntry(
                    fingerprint=fingerprint,
                    completion_text=completion_text,
                    created_at=now,
                    last_accessed_at=now,
                    document_uri=fingerprint.document_uri,
                    cursor_offset=cursor_offset,
                    span_text=span_text,
                )
                self._entries[fingerprint] = entry
                self._stats.stores += 1
            else:
                entry.last_accessed_at = now
                self._entries.move_to_end(fingerprint)

            if alias is not None and alias != fingerprint:
                self._set_alias_locked(alias, fingerprint)

            while len(self._entries) > self._max_entries:
                evicted, _ = self._entries.popitem(last=False)
                self._drop_aliases_locked(evicted)
                self._stats.evictions += 1
                logger.debug(f"Evicted cache entry {evicted}")
            return entry

    def invalidate(self, fingerprint: Fingerprint) -> bool:
        """Remove an entry (or the entry an alias resolves to)."""
        with self._lock:
            key = fingerprint if fingerprint in self._entries else self._aliases.get(fingerprint)
            if key is None or key not in self._entries:
                return False
            self._remove_locked(key)
            self._stats.invalidations += 1
            return True

    def invalidate_divergent(
        self,
        document_uri: str,
        document_text: str,
        change: Optional[TextChange] = None,
    ) -> int:
        """Drop entries whose cursor span no longer resembles the document.

        With a known change, entries whose span lies entirely before it
        are untouched and entries entirely after it only have their
        cursor offset shifted; just the spans overlapping the change are
        compared.

        Args:
            document_uri: Document that changed
            document_text: Its current content
            change: Region edited since the previous call for this document

        Returns:
            Number of entries invalidated
        """
        window = self._window_chars
        with self._lock:
            candidates = [e for e in self._entries.values() if e.document_uri == document_uri]

        stale: list[CacheEntry] = []
        shifted: list[CacheEntry] = []
        for entry in candidates:
            offset = entry.cursor_offset
            if change is not None:
                if offset + window <= change.start:
                    continue
                if offset - window >= change.old_end:
                    shifted.append(entry)
                    continue
            if offset > len(document_text):
                stale.append(entry)
                continue
            current = cursor_span(document_text, offset, window)
            if spans_diverge(current, entry.span_text, self._similarity_threshold):
                stale.append(entry)

        removed = 0
        with self._lock:
            for entry in shifted:
                entry.cursor_offset += change.delta
            for entry in stale:
                if self._entries.get(entry.fingerprint) is entry:
                    self._remove_locked(entry.fingerprint)
                    removed += 1
            self._stats.invalidations += removed
        if removed:
            logger.debug(f"Invalidated {removed} divergent cache entries for {document_uri}")
        return removed

    def claim_in_flight(self, fingerprint: Fingerprint) -> Tuple[InFlightMarker, bool]:
        """Atomically get or create the in-flight marker for a fingerprint.

        Returns:
            (marker, owned) where owned is True if the caller created the
            marker and must produce the result
        """
        with self._lock:
            marker = self._in_flight.get(fingerprint)
            # A marker whose producer was aborted is being torn down
            if marker is not None and not marker.done and not marker.token.cancelled:
                return marker, False
            marker = InFlightMarker(fingerprint)
            self._in_flight[fingerprint] = marker
            return marker, True

    def get_in_flight(self, fingerprint: Fingerprint) -> Optional[InFlightMarker]:
        with self._lock:
            return self._in_flight.get(fingerprint)

    def release_in_flight(self, fingerprint: Fingerprint, marker: InFlightMarker) -> bool:
        """Remove a marker if it is still the current one for its fingerprint."""
        with self._lock:
            if self._in_flight.get(fingerprint) is marker:
                del self._in_flight[fingerprint]
                return True
            return False

    @property
    def in_flight_count(self) -> int:
        with self._lock:
            return len(self._in_flight)

    def clear(self) -> None:
        """Remove all completed entries. In-flight markers are kept."""
        with self._lock:
            self._entries.clear()
            self._aliases.clear()
            self._aliases_of.clear()

    def _set_alias_locked(self, alias: Fingerprint, target: Fingerprint) -> None:
        previous = self._aliases.get(alias)
        if previous is not None:
            self._aliases_of.get(previous, set()).discard(alias)
        self._aliases[alias] = target
        self._aliases_of.setdefault(target, set()).add(alias)

    def _drop_aliases_locked(self, target: Fingerprint) -> None:
        for alias in self._aliases_of.pop(target, set()):
            if self._aliases.get(alias) == target:
                del self._aliases[alias]

    def _remove_locked(self, fingerprint: Fingerprint) -> None:
        self._entries.pop(fingerprint, None)
        self._drop_aliases_locked(fingerprint)
