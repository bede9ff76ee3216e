"""
Tests for DecisionTrace sealing, the lineage sinks and LineageRecorder
buffering / flush behaviour.
"""
from __future__ import annotations

import asyncio
import time

import pytest

from governed_router.audit import (
    DecisionTrace, InMemoryLineageSink, JsonlLineageSink, LineageRecorder, LineageSink,
    SqliteLineageSink, TraceSealedError, new_audit_id,
)
from governed_router.hooks import EventType, HookRegistry
from governed_router.invocation import AttemptRecord
from governed_router.metrics import InMemoryMetrics
from governed_router.models import TraceStatus


def _make_trace(audit_id: str | None = None, **kwargs) -> DecisionTrace:
    trace = DecisionTrace(audit_id=audit_id or new_audit_id(), app_id="bot", tenant_id="acme")
    for k, v in kwargs.items():
        setattr(trace, k, v)
    return trace


class FlakySink(LineageSink):
    """Fails the first ``failures`` writes, then stores records."""

    def __init__(self, failures: int = 1, hang: bool = False) -> None:
        self.failures = failures
        self.hang = hang
        self.records: list[dict] = []

    async def write(self, record: dict) -> None:
        if self.failures > 0:
            self.failures -= 1
            if self.hang:
                await asyncio.sleep(10)
            raise ConnectionError("sink unavailable")
        self.records.append(record)


# ─────────────────────────────────────────────────────────────────────────────
# DecisionTrace
# ─────────────────────────────────────────────────────────────────────────────

class TestDecisionTrace:

    def test_audit_ids_are_unique(self):
        assert new_audit_id() != new_audit_id()

    def test_to_dict_serialises_attempts_and_status(self):
        trace = _make_trace(
            "a1",
            status=TraceStatus.SUCCEEDED,
            attempts=[AttemptRecord("gpt-4o", "openai", 1, "success", latency_ms=12.34567)],
            planned_chain=["gpt-4o", "claude-sonnet"],
        )
        d = trace.to_dict()
        assert d["status"] == "succeeded"
        assert d["attempts"][0]["model"] == "gpt-4o"
        assert d["attempts"][0]["latency_ms"] == 12.346
        assert d["planned_chain"] == ["gpt-4o", "claude-sonnet"]
        assert "_sealed" not in d

    def test_mark_stage_and_removed(self):
        trace = _make_trace()
        trace.mark_stage("policy", time.monotonic())
        trace.mark_removed("compliance", ["gpt-4o"])
        trace.mark_removed("health", [])
        assert "policy" in trace.stage_timings_ms
        assert trace.removed == {"compliance": ["gpt-4o"]}

    def test_seal_freezes_trace(self):
        trace = _make_trace("a2")
        record = trace.seal()
        assert record["audit_id"] == "a2"
        assert "sealed_at" in record
        assert trace.sealed
        with pytest.raises(TraceSealedError):
            trace.final_model = "gpt-4o"
        with pytest.raises(TraceSealedError):
            trace.mark_removed("budget", ["x"])

    def test_seal_only_once(self):
        trace = _make_trace()
        trace.seal()
        with pytest.raises(TraceSealedError):
            trace.seal()


# ─────────────────────────────────────────────────────────────────────────────
# Sinks
# ─────────────────────────────────────────────────────────────────────────────

class TestSinks:

    @pytest.mark.asyncio
    async def test_jsonl_appends(self, tmp_path):
        sink = JsonlLineageSink(tmp_path / "lineage" / "traces.jsonl")
        assert sink.read_all() == []
        await sink.write(_make_trace("a1").seal())
        await sink.write(_make_trace("a2").seal())
        assert [r["audit_id"] for r in sink.read_all()] == ["a1", "a2"]

    @pytest.mark.asyncio
    async def test_jsonl_replay_after_slow_write_is_skipped(self, tmp_path):
        class SlowJsonlSink(JsonlLineageSink):
            def _append(self, audit_id, line):
                time.sleep(0.2)
                super()._append(audit_id, line)

        sink = SlowJsonlSink(tmp_path / "traces.jsonl")
        recorder = LineageRecorder(sink, timeout_s=0.02)
        assert await recorder.persist(_make_trace("a1")) is False
        await recorder.flush_buffer()
        await asyncio.sleep(0.3)
        assert [r["audit_id"] for r in sink.read_all()] == ["a1"]

    @pytest.mark.asyncio
    async def test_jsonl_remembers_ids_across_instances(self, tmp_path):
        path = tmp_path / "traces.jsonl"
        record = _make_trace("a1").seal()
        await JsonlLineageSink(path).write(record)
        reopened = JsonlLineageSink(path)
        await reopened.write(record)
        assert [r["audit_id"] for r in reopened.read_all()] == ["a1"]

    @pytest.mark.asyncio
    async def test_sqlite_round_trip_and_query(self, tmp_path):
        sink = SqliteLineageSink(tmp_path / "lineage.db")
        await sink.write(_make_trace("a1", status=TraceStatus.SUCCEEDED,
                                     final_model="gpt-4o", cost_usd=0.01).seal())
        await sink.write(_make_trace("a2", status=TraceStatus.POLICY_DENIED,
                                     reason="budget_exceeded").seal())
        assert await sink.count() == 2
        stored = await sink.get("a1")
        assert stored["final_model"] == "gpt-4o"
        denied = await sink.query(app_id="bot", status="policy_denied")
        assert [r["audit_id"] for r in denied] == ["a2"]
        assert [r["audit_id"] for r in await sink.query()] == ["a2", "a1"]
        assert await sink.get("missing") is None

    @pytest.mark.asyncio
    async def test_sqlite_ignores_replayed_audit_id(self, tmp_path):
        sink = SqliteLineageSink(tmp_path / "lineage.db")
        record = _make_trace("dup").seal()
        await sink.write(record)
        await sink.write(record)
        assert await sink.count() == 1


# ─────────────────────────────────────────────────────────────────────────────
# LineageRecorder
# ─────────────────────────────────────────────────────────────────────────────

class TestLineageRecorder:

    @pytest.mark.asyncio
    async def test_submit_writes_in_background(self):
        sink = InMemoryLineageSink()
        recorder = LineageRecorder(sink)
        trace = _make_trace("a1")
        task = recorder.submit(trace)
        assert trace.sealed
        await recorder.drain()
        assert task.result() is True
        assert sink.get("a1") is not None
        assert len(sink) == 1

    @pytest.mark.asyncio
    async def test_sink_failure_buffers_record(self):
        hooks = HookRegistry()
        events = []
        hooks.add(EventType.LINEAGE_BUFFERED, lambda **kw: events.append(kw))
        metrics = InMemoryMetrics()
        recorder = LineageRecorder(FlakySink(failures=1), hooks=hooks, metrics=metrics)
        assert await recorder.persist(_make_trace("a1")) is False
        assert [r["audit_id"] for r in recorder.buffered] == ["a1"]
        assert events == [{"audit_id": "a1", "error": "ConnectionError"}]
        assert metrics.counter("router_lineage_buffered_total", reason="ConnectionError") == 1

    @pytest.mark.asyncio
    async def test_sink_timeout_buffers_record(self):
        recorder = LineageRecorder(FlakySink(failures=1, hang=True), timeout_s=0.01)
        assert await recorder.persist(_make_trace("a1")) is False
        assert len(recorder.buffered) == 1

    @pytest.mark.asyncio
    async def test_flush_resends_buffer(self):
        sink = FlakySink(failures=2)
        recorder = LineageRecorder(sink)
        await recorder.persist(_make_trace("a1"))
        await recorder.persist(_make_trace("a2"))
        assert len(recorder.buffered) == 2
        assert await recorder.flush_buffer() == 2
        assert recorder.buffered == []
        assert [r["audit_id"] for r in sink.records] == ["a1", "a2"]

    @pytest.mark.asyncio
    async def test_flush_keeps_records_that_fail_again(self):
        sink = FlakySink(failures=3)
        recorder = LineageRecorder(sink)
        await recorder.persist(_make_trace("a1"))
        await recorder.persist(_make_trace("a2"))
        assert await recorder.flush_buffer() == 1
        assert [r["audit_id"] for r in recorder.buffered] == ["a1"]

    @pytest.mark.asyncio
    async def test_buffer_is_bounded(self):
        recorder = LineageRecorder(FlakySink(failures=10), max_buffer=2)
        for i in range(3):
            await recorder.persist(_make_trace(f"a{i}"))
        assert [r["audit_id"] for r in recorder.buffered] == ["a1", "a2"]
