# Copyright 2026 Vijaykumar Singh <singhvjd@gmail.com>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.

"""Tests for telemetry events and metrics."""

from victor_inline.telemetry import CompletionMetrics, Telemetry, TelemetryKind


class CollectingSink:
    def __init__(self):
        self.events = []

    def emit(self, event):
        self.events.append(event)


class BrokenSink:
    def emit(self, event):
        raise RuntimeError("sink down")


class TestTelemetry:
    """Event fan-out and counters."""

    def test_emit_updates_counters(self):
        telemetry = Telemetry(sinks=[])
        telemetry.emit(TelemetryKind.CACHE_HIT)
        telemetry.emit(TelemetryKind.CACHE_MISS)
        telemetry.emit(TelemetryKind.SOURCE_TIMEOUT, source="retrieval")
        telemetry.emit(TelemetryKind.SOURCE_ERROR, source="diff")
        metrics = telemetry.metrics
        assert metrics.cache_hits == 1
        assert metrics.cache_misses == 1
        assert metrics.cache_hit_rate == 0.5
        assert metrics.source_failures == 2

    def test_delivered_latency(self):
        telemetry = Telemetry(sinks=[])
        telemetry.emit(TelemetryKind.DELIVERED, latency_ms=10.0)
        telemetry.emit(TelemetryKind.DELIVERED, latency_ms=30.0)
        assert telemetry.metrics.average_latency_ms == 20.0

    def test_sinks_receive_events(self):
        sink = CollectingSink()
        telemetry = Telemetry(sinks=[sink])
        event = telemetry.emit(TelemetryKind.GATE_REJECTED, "abc", "file:///a.py", rule="min_line_length")
        assert sink.events == [event]
        assert event.detail == {"rule": "min_line_length"}
        assert event.kind.value == "gate_rejected"

    def test_broken_sink_does_not_stop_others(self):
        sink = CollectingSink()
        telemetry = Telemetry(sinks=[BrokenSink(), sink])
        telemetry.emit(TelemetryKind.MODEL_CALL)
        assert len(sink.events) == 1
        assert telemetry.metrics.model_calls == 1

    def test_remove_sink_and_reset(self):
        sink = CollectingSink()
        telemetry = Telemetry(sinks=[])
        telemetry.add_sink(sink)
        telemetry.remove_sink(sink)
        telemetry.emit(TelemetryKind.CANCELLED)
        assert sink.events == []
        telemetry.reset_metrics()
        assert telemetry.metrics == CompletionMetrics()

    def test_attached_kind_name(self):
        assert TelemetryKind.ATTACHED.value == "duplicate_fingerprint_attached"

    def test_metrics_dict(self):
        telemetry = Telemetry(sinks=[])
        telemetry.record_request()
        data = telemetry.metrics.to_dict()
        assert data["total_requests"] == 1
        assert data["average_latency_ms"] == 0.0
