"""
Provider Health Tracker — per-(provider, model) circuit breakers.

Circuit states:
  CLOSED    — routing proceeds normally
  OPEN      — rejects new traffic until cooldown_seconds have elapsed
  HALF_OPEN — admits exactly one trial request (the "probe")

Transitions:
  closed    → open       failures in the trailing window exceed failure_threshold,
                         or p95 latency stays above latency_p95_threshold_ms for
                         latency_sustain_seconds
  open      → half_open  cooldown elapsed (evaluated lazily on read)
  half_open → closed     trial succeeded (window cleared)
  half_open → open       trial failed

Each HealthRecord has its own lock; the tracker-level lock only guards
creation of new records. The half-open probe is admitted by a
compare-and-swap on probe_in_flight under the record lock. Only the probe
holder's result (probe=True) moves a half-open circuit; results of calls
dispatched before the circuit opened are kept as samples and nothing more.

Also derives a health score in [0, 1] (success ratio × latency factor) that
the selector uses as a tie-break only.
"""
from __future__ import annotations

import logging
import math
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Optional

from .config import CircuitConfig
from .hooks import EventType, HookRegistry
from .metrics import MetricsSink, NullMetrics
from .models import Candidate, CandidateSet, CircuitState

logger = logging.getLogger("governed_router.health")

HealthKey = tuple[str, str]


@dataclass
class _Sample:
    at: float
    ok: bool
    latency_ms: Optional[float]


@dataclass
class HealthRecord:
    """Mutable per-key state. Only touched while holding ``lock``."""
    key: HealthKey
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    samples: deque = field(default_factory=deque)
    state: CircuitState = CircuitState.CLOSED
    opened_at: Optional[float] = None
    latency_breach_since: Optional[float] = None
    probe_in_flight: bool = False
    open_reason: str = ""


@dataclass(frozen=True)
class HealthSnapshot:
    key: HealthKey
    state: CircuitState
    successes: int
    failures: int
    p95_latency_ms: Optional[float]
    score: float
    probe_in_flight: bool


class HealthTracker:

    def __init__(
        self,
        config: Optional[CircuitConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        hooks: Optional[HookRegistry] = None,
        metrics: Optional[MetricsSink] = None,
    ) -> None:
        self.config = config or CircuitConfig()
        self._clock = clock
        self._hooks = hooks
        self._metrics = metrics or NullMetrics()
        self._records: dict[HealthKey, HealthRecord] = {}
        self._records_guard = threading.Lock()

    # ── Internal ──────────────────────────────────────────────────────────────

    def _record(self, key: HealthKey) -> HealthRecord:
        rec = self._records.get(key)
        if rec is None:
            with self._records_guard:
                rec = self._records.get(key)
                if rec is None:
                    rec = HealthRecord(key=key)
                    self._records[key] = rec
        return rec

    def _prune(self, rec: HealthRecord, now: float) -> None:
        horizon = now - self.config.window_seconds
        while rec.samples and rec.samples[0].at < horizon:
            rec.samples.popleft()

    def _p95(self, rec: HealthRecord) -> Optional[float]:
        lat = sorted(s.latency_ms for s in rec.samples if s.latency_ms is not None)
        if len(lat) < self.config.min_latency_samples:
            return None
        idx = max(0, math.ceil(0.95 * len(lat)) - 1)
        return lat[idx]

    def _refresh(self, rec: HealthRecord, now: float) -> Optional[tuple]:
        """Apply the lazy open → half_open transition. Caller holds rec.lock."""
        if (
            rec.state == CircuitState.OPEN
            and rec.opened_at is not None
            and now - rec.opened_at >= self.config.cooldown_seconds
        ):
            rec.state = CircuitState.HALF_OPEN
            rec.probe_in_flight = False
            return (CircuitState.OPEN, CircuitState.HALF_OPEN, "cooldown elapsed")
        return None

    def _open(self, rec: HealthRecord, now: float, reason: str) -> tuple:
        old = rec.state
        rec.state = CircuitState.OPEN
        rec.opened_at = now
        rec.probe_in_flight = False
        rec.latency_breach_since = None
        rec.open_reason = reason
        return (old, CircuitState.OPEN, reason)

    def _announce(self, key: HealthKey, transition: Optional[tuple]) -> None:
        if transition is None:
            return
        old, new, reason = transition
        provider, model = key
        if new == CircuitState.OPEN:
            logger.warning("Circuit OPEN for %s/%s (%s)", provider, model, reason)
        else:
            logger.info("Circuit %s → %s for %s/%s (%s)",
                        old.value, new.value, provider, model, reason)
        self._metrics.increment(
            "router_circuit_transitions_total",
            {"provider": provider, "model": model, "reason": new.value},
        )
        if self._hooks is not None:
            self._hooks.fire(
                EventType.CIRCUIT_STATE_CHANGED,
                provider=provider, model=model, old=old.value, new=new.value, reason=reason,
            )

    # ── Read API ──────────────────────────────────────────────────────────────

    def state(self, key: HealthKey) -> CircuitState:
        rec = self._record(key)
        with rec.lock:
            transition = self._refresh(rec, self._clock())
            state = rec.state
        self._announce(key, transition)
        return state

    def score(self, key: HealthKey) -> float:
        return self.snapshot(key).score

    def snapshot(self, key: HealthKey) -> HealthSnapshot:
        rec = self._record(key)
        now = self._clock()
        with rec.lock:
            transition = self._refresh(rec, now)
            self._prune(rec, now)
            ok = sum(1 for s in rec.samples if s.ok)
            bad = len(rec.samples) - ok
            p95 = self._p95(rec)
            snap = HealthSnapshot(
                key=key,
                state=rec.state,
                successes=ok,
                failures=bad,
                p95_latency_ms=p95,
                score=self._score(ok, bad, p95),
                probe_in_flight=rec.probe_in_flight,
            )
        self._announce(key, transition)
        return snap

    def _score(self, ok: int, bad: int, p95: Optional[float]) -> float:
        total = ok + bad
        success_rate = ok / total if total else 1.0
        limit = self.config.latency_p95_threshold_ms
        latency_factor = 1.0 if p95 is None or p95 <= limit else limit / p95
        return max(0.0, min(1.0, success_rate * latency_factor))

    def is_admissible(self, key: HealthKey, holds_probe: bool = False) -> bool:
        """May a request invoke this model right now? Half-open admits only the probe holder."""
        state = self.state(key)
        if state == CircuitState.CLOSED:
            return True
        if state == CircuitState.HALF_OPEN:
            return holds_probe
        return False

    # ── Probe admission ───────────────────────────────────────────────────────

    def try_acquire_probe(self, key: HealthKey) -> bool:
        """CAS: succeed only if the circuit is half-open and no probe is in flight."""
        rec = self._record(key)
        with rec.lock:
            transition = self._refresh(rec, self._clock())
            acquired = rec.state == CircuitState.HALF_OPEN and not rec.probe_in_flight
            if acquired:
                rec.probe_in_flight = True
        self._announce(key, transition)
        return acquired

    def release_probe(self, key: HealthKey) -> None:
        """Give back an unused probe so another request can take it."""
        rec = self._record(key)
        with rec.lock:
            rec.probe_in_flight = False

    # ── Write API ─────────────────────────────────────────────────────────────

    def record_success(self, key: HealthKey, latency_ms: Optional[float] = None,
                       probe: bool = False) -> None:
        rec = self._record(key)
        now = self._clock()
        transition = None
        with rec.lock:
            transition = self._refresh(rec, now)
            if rec.state == CircuitState.HALF_OPEN and not probe:
                rec.samples.append(_Sample(now, True, latency_ms))
                self._prune(rec, now)
            elif rec.state == CircuitState.HALF_OPEN:
                rec.samples.clear()
                rec.samples.append(_Sample(now, True, latency_ms))
                rec.state = CircuitState.CLOSED
                rec.opened_at = None
                rec.probe_in_flight = False
                rec.latency_breach_since = None
                transition = (CircuitState.HALF_OPEN, CircuitState.CLOSED, "trial succeeded")
            else:
                rec.samples.append(_Sample(now, True, latency_ms))
                self._prune(rec, now)
                if rec.state == CircuitState.CLOSED:
                    transition = self._check_latency(rec, now) or transition
        self._announce(key, transition)

    def record_failure(self, key: HealthKey, latency_ms: Optional[float] = None,
                       probe: bool = False) -> None:
        rec = self._record(key)
        now = self._clock()
        transition = None
        with rec.lock:
            transition = self._refresh(rec, now)
            rec.samples.append(_Sample(now, False, latency_ms))
            self._prune(rec, now)
            if rec.state == CircuitState.HALF_OPEN and probe:
                transition = self._open(rec, now, "trial failed")
            elif rec.state == CircuitState.CLOSED:
                failures = sum(1 for s in rec.samples if not s.ok)
                if failures > self.config.failure_threshold:
                    transition = self._open(
                        rec, now,
                        f"{failures} failures in {self.config.window_seconds:.0f}s window",
                    )
                else:
                    transition = self._check_latency(rec, now) or transition
        self._announce(key, transition)

    def _check_latency(self, rec: HealthRecord, now: float) -> Optional[tuple]:
        p95 = self._p95(rec)
        if p95 is None or p95 <= self.config.latency_p95_threshold_ms:
            rec.latency_breach_since = None
            return None
        if rec.latency_breach_since is None:
            rec.latency_breach_since = now
            return None
        if now - rec.latency_breach_since >= self.config.latency_sustain_seconds:
            return self._open(rec, now, f"p95 latency {p95:.0f}ms sustained")
        return None

    def reset(self, key: Optional[HealthKey] = None) -> None:
        """Forget health state (all keys when key is None)."""
        with self._records_guard:
            if key is None:
                self._records.clear()
            else:
                self._records.pop(key, None)


# ─────────────────────────────────────────────────────────────────────────────
# HealthGate
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class GateResult:
    candidates: CandidateSet
    removed: tuple[str, ...]


class HealthGate:
    """
    Removes open circuits. A half-open candidate stays, flagged as a probe,
    while nobody holds its probe; the orchestrator takes the probe only when
    that candidate's turn comes.
    """

    def __init__(self, tracker: HealthTracker) -> None:
        self._tracker = tracker

    def apply(self, candidates: CandidateSet) -> GateResult:
        kept: list[Candidate] = []
        removed: list[str] = []

        for cand in candidates:
            snap = self._tracker.snapshot(cand.descriptor.health_key)
            if snap.state == CircuitState.CLOSED:
                kept.append(cand)
            elif snap.state == CircuitState.HALF_OPEN and not snap.probe_in_flight:
                kept.append(Candidate(cand.descriptor, cand.weight, cand.rule_id, cand.role, probe=True))
            else:
                removed.append(cand.name)

        if removed:
            logger.debug("Health gate removed %s", removed)
        return GateResult(candidates.with_candidates(kept), tuple(removed))
