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

"""Pipeline telemetry events and metrics."""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

logger = logging.getLogger(__name__)


class TelemetryKind(str, Enum):
    """Outcomes and notable events of a completion attempt."""

    GATE_REJECTED = "gate_rejected"
    CACHE_HIT = "cache_hit"
    CACHE_MISS = "cache_miss"
    SOURCE_TIMEOUT = "source_timeout"
    SOURCE_ERROR = "source_error"
    MODEL_CALL = "model_call"
    ATTACHED = "duplicate_fingerprint_attached"
    CANCELLED = "cancelled"
    FAILED = "stream_failed"
    POSTPROCESS_REJECTED = "postprocess_rejected"
    DELIVERED = "delivered"


@dataclass
class TelemetryEvent:
    """A single telemetry record."""

    kind: TelemetryKind
    session_id: Optional[str] = None
    document_uri: Optional[str] = None
    detail: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


class TelemetrySink(Protocol):
    """Receives telemetry events."""

    def emit(self, event: TelemetryEvent) -> None: ...


class LoggingTelemetrySink:
    """Writes telemetry events to the log at debug level."""

    def __init__(self, log: Optional[logging.Logger] = None):
        self._log = log or logger

    def emit(self, event: TelemetryEvent) -> None:
        session = event.session_id[:8] if event.session_id else "-"
        self._log.debug(f"[{event.kind.value}] session={session} {event.detail or ''}".rstrip())


@dataclass
class CompletionMetrics:
    """Counters for completion pipeline activity."""

    total_requests: int = 0
    gate_rejections: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    model_calls: int = 0
    attached: int = 0
    cancelled: int = 0
    failed: int = 0
    source_failures: int = 0
    postprocess_rejected: int = 0
    delivered: int = 0
    total_latency_ms: float = 0.0

    @property
    def cache_hit_rate(self) -> float:
        lookups = self.cache_hits + self.cache_misses
        return self.cache_hits / lookups if lookups else 0.0

    @property
    def average_latency_ms(self) -> float:
        return self.total_latency_ms / self.delivered if self.delivered else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_requests": self.total_requests,
            "gate_rejections": self.gate_rejections,
            "cache_hits": self.cache_hits,
            "cache_misses": self.cache_misses,
            "cache_hit_rate": self.cache_hit_rate,
            "model_calls": self.model_calls,
            "attached": self.attached,
            "cancelled": self.cancelled,
            "failed": self.failed,
            "source_failures": self.source_failures,
            "postprocess_rejected": self.postprocess_rejected,
            "delivered": self.delivered,
            "average_latency_ms": self.average_latency_ms,
        }


_COUNTERS = {
    TelemetryKind.GATE_REJECTED: "gate_rejections",
    TelemetryKind.CACHE_HIT: "cache_hits",
    TelemetryKind.CACHE_MISS: "cache_misses",
    TelemetryKind.SOURCE_TIMEOUT: "source_failures",
    TelemetryKind.SOURCE_ERROR: "source_failures",
    TelemetryKind.MODEL_CALL: "model_calls",
    TelemetryKind.ATTACHED: "attached",
    TelemetryKind.CANCELLED: "cancelled",
    TelemetryKind.FAILED: "failed",
    TelemetryKind.POSTPROCESS_REJECTED: "postprocess_rejected",
    TelemetryKind.DELIVERED: "delivered",
}


class Telemetry:
    """Fans events out to sinks and keeps the metrics current."""

    def __init__(self, sinks: Optional[List[TelemetrySink]] = None):
        self._sinks: List[TelemetrySink] = list(sinks) if sinks is not None else [LoggingTelemetrySink()]
        self._metrics = CompletionMetrics()

    @property
    def metrics(self) -> CompletionMetrics:
        return self._metrics

    def reset_metrics(self) -> None:
        self._metrics = CompletionMetrics()

    def add_sink(self, sink: TelemetrySink) -> None:
        self._sinks.append(sink)

    def remove_sink(self, sink: TelemetrySink) -> None:
        if sink in self._sinks:
            self._sinks.remove(sink)

    def record_request(self) -> None:
        self._metrics.total_requests += 1

    def emit(
        self,
        kind: TelemetryKind,
        session_id: Optional[str] = None,
        document_uri: Optional[str] = None,
        **detail: Any,
    ) -> TelemetryEvent:
        """Record an event and forward it to every sink."""
        event = TelemetryEvent(
            kind=kind, session_id=session_id, document_uri=document_uri, detail=detail
        )
        counter = _COUNTERS.get(kind)
        if counter is not None:
            setattr(self._metrics, counter, getattr(self._metrics, counter) + 1)
        if kind == TelemetryKind.DELIVERED and "latency_ms" in detail:
            self._metrics.total_latency_ms += detail["latency_ms"]

        for sink in list(self._sinks):
            try:
                sink.emit(event)
            except Exception as e:
                logger.warning(f"Telemetry sink {type(sink).__name__} failed: {e}")
        return event
