"""
Tests for HealthTracker circuit transitions and the HealthGate stage.
A fake monotonic clock drives every time-dependent transition.
"""
from __future__ import annotations

from governed_router.config import CircuitConfig
from governed_router.health import HealthGate, HealthTracker
from governed_router.hooks import EventType, HookRegistry
from governed_router.metrics import InMemoryMetrics
from governed_router.models import (
    Candidate, CandidateSet, CircuitState, DirectiveKind, ModelDescriptor,
)

KEY = ("openai", "gpt-4o")


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _make_tracker(**overrides):
    cfg = CircuitConfig(
        window_seconds=60.0, failure_threshold=2, cooldown_seconds=30.0,
        latency_p95_threshold_ms=100.0, latency_sustain_seconds=10.0, min_latency_samples=5,
    )
    for k, v in overrides.items():
        setattr(cfg, k, v)
    clock = FakeClock()
    hooks = HookRegistry()
    metrics = InMemoryMetrics()
    return HealthTracker(cfg, clock=clock, hooks=hooks, metrics=metrics), clock, hooks, metrics


def _trip(tracker: HealthTracker, key=KEY) -> None:
    for _ in range(3):
        tracker.record_failure(key)


class TestCircuitTransitions:

    def test_new_key_is_closed_and_admissible(self):
        tracker, *_ = _make_tracker()
        assert tracker.state(KEY) == CircuitState.CLOSED
        assert tracker.is_admissible(KEY)

    def test_opens_when_failures_exceed_threshold(self):
        tracker, *_ = _make_tracker()
        tracker.record_failure(KEY)
        tracker.record_failure(KEY)
        assert tracker.state(KEY) == CircuitState.CLOSED
        tracker.record_failure(KEY)
        assert tracker.state(KEY) == CircuitState.OPEN
        assert not tracker.is_admissible(KEY)

    def test_failures_outside_window_do_not_count(self):
        tracker, clock, *_ = _make_tracker()
        tracker.record_failure(KEY)
        tracker.record_failure(KEY)
        clock.advance(61)
        tracker.record_failure(KEY)
        assert tracker.state(KEY) == CircuitState.CLOSED

    def test_open_becomes_half_open_after_cooldown(self):
        tracker, clock, *_ = _make_tracker()
        _trip(tracker)
        clock.advance(29)
        assert tracker.state(KEY) == CircuitState.OPEN
        clock.advance(1)
        assert tracker.state(KEY) == CircuitState.HALF_OPEN
        assert not tracker.is_admissible(KEY)
        assert tracker.is_admissible(KEY, holds_probe=True)

    def test_single_probe_admitted(self):
        tracker, clock, *_ = _make_tracker()
        _trip(tracker)
        clock.advance(30)
        assert tracker.try_acquire_probe(KEY) is True
        assert tracker.try_acquire_probe(KEY) is False
        tracker.release_probe(KEY)
        assert tracker.try_acquire_probe(KEY) is True

    def test_probe_not_available_while_closed(self):
        tracker, *_ = _make_tracker()
        assert tracker.try_acquire_probe(KEY) is False

    def test_probe_success_closes_and_clears_window(self):
        tracker, clock, *_ = _make_tracker()
        _trip(tracker)
        clock.advance(30)
        tracker.try_acquire_probe(KEY)
        tracker.record_success(KEY, latency_ms=50, probe=True)
        snap = tracker.snapshot(KEY)
        assert snap.state == CircuitState.CLOSED
        assert snap.failures == 0
        assert snap.successes == 1
        assert snap.probe_in_flight is False

    def test_probe_failure_reopens(self):
        tracker, clock, *_ = _make_tracker()
        _trip(tracker)
        clock.advance(30)
        tracker.try_acquire_probe(KEY)
        tracker.record_failure(KEY, probe=True)
        assert tracker.state(KEY) == CircuitState.OPEN
        clock.advance(29)
        assert tracker.state(KEY) == CircuitState.OPEN

    def test_straggler_result_does_not_settle_half_open(self):
        tracker, clock, *_ = _make_tracker()
        _trip(tracker)
        clock.advance(30)
        tracker.record_success(KEY, latency_ms=40)
        assert tracker.state(KEY) == CircuitState.HALF_OPEN
        tracker.record_failure(KEY)
        assert tracker.state(KEY) == CircuitState.HALF_OPEN
        assert tracker.try_acquire_probe(KEY) is True
        tracker.record_success(KEY, probe=True)
        assert tracker.state(KEY) == CircuitState.CLOSED

    def test_sustained_latency_opens(self):
        tracker, clock, *_ = _make_tracker()
        for _ in range(5):
            tracker.record_success(KEY, latency_ms=500)
        assert tracker.state(KEY) == CircuitState.CLOSED
        clock.advance(10)
        tracker.record_success(KEY, latency_ms=500)
        assert tracker.state(KEY) == CircuitState.OPEN

    def test_latency_recovery_resets_breach(self):
        tracker, clock, *_ = _make_tracker(min_latency_samples=1)
        tracker.record_success(KEY, latency_ms=500)
        clock.advance(61)
        tracker.record_success(KEY, latency_ms=20)
        clock.advance(1)
        tracker.record_success(KEY, latency_ms=500)
        assert tracker.state(KEY) == CircuitState.CLOSED

    def test_reset_forgets_state(self):
        tracker, *_ = _make_tracker()
        _trip(tracker)
        tracker.reset(KEY)
        assert tracker.state(KEY) == CircuitState.CLOSED

    def test_keys_are_independent(self):
        tracker, *_ = _make_tracker()
        _trip(tracker)
        assert tracker.state(("anthropic", "claude-sonnet")) == CircuitState.CLOSED


class TestHealthScore:

    def test_unknown_key_scores_one(self):
        tracker, *_ = _make_tracker()
        assert tracker.score(KEY) == 1.0

    def test_score_is_success_ratio(self):
        tracker, *_ = _make_tracker()
        tracker.record_success(KEY)
        tracker.record_failure(KEY)
        assert tracker.score(KEY) == 0.5

    def test_slow_model_scores_lower(self):
        tracker, *_ = _make_tracker(latency_sustain_seconds=1_000.0)
        for _ in range(5):
            tracker.record_success(KEY, latency_ms=200)
        assert tracker.score(KEY) == 0.5


class TestTransitionsObservable:

    def test_hooks_and_metrics_on_open_and_recovery(self):
        tracker, clock, hooks, metrics = _make_tracker()
        events = []
        hooks.add(EventType.CIRCUIT_STATE_CHANGED, lambda **kw: events.append((kw["old"], kw["new"])))
        _trip(tracker)
        clock.advance(30)
        tracker.state(KEY)
        tracker.try_acquire_probe(KEY)
        tracker.record_success(KEY, probe=True)
        assert events == [
            ("closed", "open"), ("open", "half_open"), ("half_open", "closed"),
        ]
        assert metrics.counter("router_circuit_transitions_total", model="gpt-4o", reason="open") == 1
        assert metrics.counter("router_circuit_transitions_total", provider="openai") == 3


# ─────────────────────────────────────────────────────────────────────────────
# HealthGate
# ─────────────────────────────────────────────────────────────────────────────

def _candidates() -> CandidateSet:
    descs = [
        ModelDescriptor("openai", "gpt-4o"),
        ModelDescriptor("anthropic", "claude-sonnet"),
    ]
    return CandidateSet(tuple(Candidate(d, 1.0, "r") for d in descs), DirectiveKind.ORDERED, "r")


class TestHealthGate:

    def test_open_circuit_removed(self):
        tracker, *_ = _make_tracker()
        _trip(tracker)
        res = HealthGate(tracker).apply(_candidates())
        assert res.candidates.names == ["claude-sonnet"]
        assert res.removed == ("gpt-4o",)

    def test_half_open_kept_as_probe_without_taking_it(self):
        tracker, clock, *_ = _make_tracker()
        _trip(tracker)
        clock.advance(30)
        gate = HealthGate(tracker)
        res = gate.apply(_candidates())
        assert res.candidates.names == ["gpt-4o", "claude-sonnet"]
        assert res.candidates.get("gpt-4o").probe is True
        assert res.candidates.get("claude-sonnet").probe is False
        assert tracker.snapshot(KEY).probe_in_flight is False

    def test_half_open_bypassed_while_probe_in_flight(self):
        tracker, clock, *_ = _make_tracker()
        _trip(tracker)
        clock.advance(30)
        assert tracker.try_acquire_probe(KEY)
        res = HealthGate(tracker).apply(_candidates())
        assert res.candidates.names == ["claude-sonnet"]
        assert res.removed == ("gpt-4o",)
        tracker.release_probe(KEY)
        assert HealthGate(tracker).apply(_candidates()).candidates.names == [
            "gpt-4o", "claude-sonnet",
        ]
