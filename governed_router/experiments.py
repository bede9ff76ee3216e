"""
Experiment Overlay — deterministic A/B assignment with guardrail rollback.
==========================================================================
An experiment targets one app (optionally one tenant) and sends
``traffic_percent`` of its requests to a variant:

  substitute  — primaries narrowed to the variant model, if it survived
                every earlier stage; otherwise the request stays on control
  reweight    — new weights over the surviving primaries; primaries the
                variant does not list keep weight 0 (chain remainder only)

Assignment is sticky per request key: bucket = SHA-256(experiment_id:key)
mod 10000, enrolled when bucket < traffic_percent × 100.

Each arm keeps a rolling window of (latency, cost, success). Once both arms
hold min_samples, the variant is rolled back (traffic → 0) when

    variant p95 latency > control p95 × (1 + latency_regression_ratio)
    variant success rate < control success rate − quality_regression

After cooldown_seconds the experiment re-activates with an empty variant
window. Requests already dispatched keep the arm they were given.

A request whose candidates the budget gate already reordered cheapest-first
(``keep_order=True``) is not enrolled in either arm, so the downgrade order
is never overridden and control stats are not skewed by it.
"""
from __future__ import annotations

import logging
import math
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from .hooks import EventType, HookRegistry
from .metrics import MetricsSink, NullMetrics
from .models import Candidate, CandidateRole, CandidateSet, DirectiveKind, RequestContext, stable_hash

logger = logging.getLogger("governed_router.experiments")

BUCKETS = 10_000


class VariantMode(str, Enum):
    SUBSTITUTE = "substitute"
    REWEIGHT = "reweight"


class ExperimentStatus(str, Enum):
    ACTIVE = "active"
    ROLLED_BACK = "rolled_back"


class Arm(str, Enum):
    CONTROL = "control"
    VARIANT = "variant"


@dataclass(frozen=True)
class Guardrails:
    min_samples: int = 50
    latency_regression_ratio: float = 0.25
    quality_regression: float = 0.05
    cooldown_seconds: float = 600.0
    window_size: int = 500


@dataclass(frozen=True)
class VariantDefinition:
    mode: VariantMode
    model: Optional[str] = None                        # substitute
    weights: tuple[tuple[str, float], ...] = ()        # reweight

    def weight_of(self, name: str) -> float:
        for m, w in self.weights:
            if m == name:
                return w
        return 0.0


@dataclass(frozen=True)
class ExperimentDefinition:
    experiment_id: str
    app_id: str
    variant: VariantDefinition
    traffic_percent: float = 0.0
    tenant_id: Optional[str] = None
    guardrails: Guardrails = field(default_factory=Guardrails)

    def applies_to(self, ctx: RequestContext) -> bool:
        if self.app_id != ctx.app_id:
            return False
        return self.tenant_id is None or self.tenant_id == ctx.tenant_id


@dataclass(frozen=True)
class Assignment:
    experiment_id: str
    arm: Arm


@dataclass(frozen=True)
class OverlayResult:
    candidates: CandidateSet
    assignment: Optional[Assignment] = None


@dataclass(frozen=True)
class _Outcome:
    latency_ms: float
    cost_usd: float
    success: bool


@dataclass
class _ArmStats:
    samples: deque

    @classmethod
    def sized(cls, size: int) -> "_ArmStats":
        return cls(deque(maxlen=size))

    def __len__(self) -> int:
        return len(self.samples)

    def success_rate(self) -> float:
        if not self.samples:
            return 1.0
        return sum(1 for s in self.samples if s.success) / len(self.samples)

    def p95_latency(self) -> float:
        lat = sorted(s.latency_ms for s in self.samples)
        if not lat:
            return 0.0
        return lat[max(0, math.ceil(0.95 * len(lat)) - 1)]

    def mean_cost(self) -> float:
        if not self.samples:
            return 0.0
        return sum(s.cost_usd for s in self.samples) / len(self.samples)


@dataclass
class _ExperimentState:
    definition: ExperimentDefinition
    control: _ArmStats
    variant: _ArmStats
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    status: ExperimentStatus = ExperimentStatus.ACTIVE
    rolled_back_at: Optional[float] = None
    rollback_reason: str = ""


@dataclass(frozen=True)
class ExperimentReport:
    experiment_id: str
    status: ExperimentStatus
    control_samples: int
    variant_samples: int
    control_p95_ms: float
    variant_p95_ms: float
    control_success_rate: float
    variant_success_rate: float
    control_mean_cost_usd: float
    variant_mean_cost_usd: float
    rollback_reason: str


def bucket_of(experiment_id: str, request_key: str) -> int:
    return stable_hash(experiment_id, request_key) % BUCKETS


class ExperimentOverlay:
    """
    Holds experiment definitions and their per-arm outcome windows.

    At most one experiment applies per request: the first registered one
    whose scope matches.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        hooks: Optional[HookRegistry] = None,
        metrics: Optional[MetricsSink] = None,
    ) -> None:
        self._clock = clock
        self._hooks = hooks
        self._metrics = metrics or NullMetrics()
        self._states: dict[str, _ExperimentState] = {}
        self._guard = threading.Lock()

    # ── Registration ─────────────────────────────────────────────────────────

    def register(self, definition: ExperimentDefinition) -> None:
        if not 0.0 <= definition.traffic_percent <= 100.0:
            raise ValueError(
                f"traffic_percent must be within [0, 100], got {definition.traffic_percent}"
            )
        if definition.variant.mode == VariantMode.SUBSTITUTE and not definition.variant.model:
            raise ValueError(f"experiment {definition.experiment_id!r}: substitute needs a model")
        if definition.variant.mode == VariantMode.REWEIGHT and not definition.variant.weights:
            raise ValueError(f"experiment {definition.experiment_id!r}: reweight needs weights")
        size = definition.guardrails.window_size
        state = _ExperimentState(definition, _ArmStats.sized(size), _ArmStats.sized(size))
        with self._guard:
            states = dict(self._states)
            states[definition.experiment_id] = state
            self._states = states
        logger.info("Experiment %s registered for app %s at %.1f%%",
                    definition.experiment_id, definition.app_id, definition.traffic_percent)

    def remove(self, experiment_id: str) -> None:
        with self._guard:
            states = dict(self._states)
            states.pop(experiment_id, None)
            self._states = states

    def status(self, experiment_id: str) -> ExperimentStatus:
        state = self._states[experiment_id]
        with state.lock:
            self._maybe_reactivate(state)
            return state.status

    def report(self, experiment_id: str) -> ExperimentReport:
        state = self._states[experiment_id]
        with state.lock:
            self._maybe_reactivate(state)
            return ExperimentReport(
                experiment_id=experiment_id,
                status=state.status,
                control_samples=len(state.control),
                variant_samples=len(state.variant),
                control_p95_ms=state.control.p95_latency(),
                variant_p95_ms=state.variant.p95_latency(),
                control_success_rate=state.control.success_rate(),
                variant_success_rate=state.variant.success_rate(),
                control_mean_cost_usd=state.control.mean_cost(),
                variant_mean_cost_usd=state.variant.mean_cost(),
                rollback_reason=state.rollback_reason,
            )

    # ── Pipeline stage ───────────────────────────────────────────────────────

    def apply(self, candidates: CandidateSet, ctx: RequestContext,
              keep_order: bool = False) -> OverlayResult:
        state = self._find(ctx)
        if state is None:
            return OverlayResult(candidates)
        if keep_order:
            logger.debug("Experiment %s skipped: candidate order is pinned",
                         state.definition.experiment_id)
            return OverlayResult(candidates)

        defn = state.definition
        with state.lock:
            self._maybe_reactivate(state)
            active = state.status == ExperimentStatus.ACTIVE

        control = OverlayResult(candidates, Assignment(defn.experiment_id, Arm.CONTROL))
        if not active:
            return control
        if bucket_of(defn.experiment_id, ctx.stable_key()) >= defn.traffic_percent * 100:
            return control

        overlaid = self._overlay(candidates, defn.variant)
        if overlaid is None:
            logger.debug("Experiment %s variant not eligible; request stays on control",
                         defn.experiment_id)
            return control
        return OverlayResult(overlaid, Assignment(defn.experiment_id, Arm.VARIANT))

    def _find(self, ctx: RequestContext) -> Optional[_ExperimentState]:
        for state in self._states.values():
            if state.definition.applies_to(ctx):
                return state
        return None

    @staticmethod
    def _overlay(candidates: CandidateSet, variant: VariantDefinition) -> Optional[CandidateSet]:
        if variant.mode == VariantMode.SUBSTITUTE:
            chosen = candidates.get(variant.model)
            if chosen is None:
                return None
            head = Candidate(chosen.descriptor, 1.0, chosen.rule_id,
                             CandidateRole.PRIMARY, chosen.probe)
            rest = [c for c in candidates.fallbacks if c.name != variant.model]
            return candidates.with_candidates([head, *rest], kind=DirectiveKind.SINGLE)

        reweighted = [
            Candidate(c.descriptor, variant.weight_of(c.name), c.rule_id, c.role, c.probe)
            for c in candidates.primaries
        ]
        if not any(c.weight > 0 for c in reweighted):
            return None
        return candidates.with_candidates(
            [*reweighted, *candidates.fallbacks], kind=DirectiveKind.WEIGHTED,
        )

    # ── Outcomes & guardrails ────────────────────────────────────────────────

    def record_outcome(self, assignment: Assignment, latency_ms: float,
                       cost_usd: float, success: bool) -> None:
        state = self._states.get(assignment.experiment_id)
        if state is None:
            return
        reason = None
        with state.lock:
            self._maybe_reactivate(state)
            if state.status != ExperimentStatus.ACTIVE:
                return
            arm = state.variant if assignment.arm == Arm.VARIANT else state.control
            arm.samples.append(_Outcome(latency_ms, cost_usd, success))
            reason = self._regression(state)
            if reason is not None:
                state.status = ExperimentStatus.ROLLED_BACK
                state.rolled_back_at = self._clock()
                state.rollback_reason = reason

        if reason is not None:
            logger.warning("Experiment %s rolled back: %s", assignment.experiment_id, reason)
            self._metrics.increment(
                "router_experiment_rollbacks_total",
                {"app": state.definition.app_id, "reason": reason.split(" ", 1)[0]},
            )
            if self._hooks is not None:
                self._hooks.fire(EventType.EXPERIMENT_ROLLED_BACK,
                                 experiment_id=assignment.experiment_id, reason=reason)

    @staticmethod
    def _regression(state: _ExperimentState) -> Optional[str]:
        g = state.definition.guardrails
        if len(state.control) < g.min_samples or len(state.variant) < g.min_samples:
            return None
        c_p95, v_p95 = state.control.p95_latency(), state.variant.p95_latency()
        if v_p95 > c_p95 * (1.0 + g.latency_regression_ratio):
            return f"latency p95 {v_p95:.0f}ms vs control {c_p95:.0f}ms"
        c_ok, v_ok = state.control.success_rate(), state.variant.success_rate()
        if v_ok < c_ok - g.quality_regression:
            return f"quality success rate {v_ok:.3f} vs control {c_ok:.3f}"
        return None

    def _maybe_reactivate(self, state: _ExperimentState) -> None:
        """Lazy rolled_back → active after cooldown. Caller holds state.lock."""
        if state.status != ExperimentStatus.ROLLED_BACK or state.rolled_back_at is None:
            return
        if self._clock() - state.rolled_back_at < state.definition.guardrails.cooldown_seconds:
            return
        state.status = ExperimentStatus.ACTIVE
        state.rolled_back_at = None
        state.variant = _ArmStats.sized(state.definition.guardrails.window_size)
        logger.info("Experiment %s re-activated after cooldown", state.definition.experiment_id)
