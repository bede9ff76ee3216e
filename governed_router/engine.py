"""
RoutingEngine — runs one request through the governed pipeline.
===============================================================
    policy → subscriptions → compliance → health → budget → experiment
    → selector → invocation → firewall → cost & lineage

Stages up to the selector are pure functions over a CandidateSet. An empty
set after any of them ends the request with PolicyDenyError; the stage that
emptied it decides the reason code.

Every request gets one audit id, generated here and reused for the trace,
the selection seed, errors and lineage. Every path out of route(), including
denials, exhausted chains and caller cancellation, seals and submits exactly
one DecisionTrace.

Usage:
    registry = ModelRegistry(load_registry_file("models.yml"))
    policies = PolicyStore(registry)
    policies.publish(load_policy_file("support-bot.yml"))
    engine = RoutingEngine(registry, policies, SubscriptionStore(subs),
                           build_adapter_from_env())
    resp = await engine.route(RouteRequest(app_id="support-bot", tenant_id="acme",
                                           raw_input="Summarise this ticket ..."))
"""
from __future__ import annotations

import asyncio
import logging
import random
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterator, Optional

from .api_clients import ProviderAdapter
from .audit import DecisionTrace, InMemoryLineageSink, LineageRecorder, new_audit_id
from .compliance import ComplianceFilter
from .config import EngineConfig
from .cost import BudgetAction, BudgetGate, BudgetLedger, compute_cost
from .errors import (
    DenyReason, ExhaustedFallbackError, InvalidRequestError, PolicyDenyError, RoutingError,
)
from .experiments import ExperimentOverlay
from .firewall import FirewallOutcome, OutputFirewall
from .health import HealthGate, HealthKey, HealthTracker
from .hooks import EventType, HookRegistry
from .invocation import AttemptRecord, InvocationOrchestrator
from .metrics import InMemoryMetrics, MetricsSink
from .models import (
    ModelDescriptor, RequestContext, RequestOptions, Sensitivity, TokenUsage, TraceStatus,
    estimate_tokens,
)
from .policy_engine import PolicyEvaluator
from .registry import ModelRegistry, PolicyStore, SubscriptionStore
from .selector import CandidateSelector, seed_from_audit_id
from .subscriptions import SubscriptionResolver
from .tracing import configure_tracing, traced_request, traced_stage

logger = logging.getLogger("governed_router.engine")


@dataclass(frozen=True)
class RouteRequest:
    app_id: str
    raw_input: str
    tenant_id: str
    team_id: Optional[str] = None
    user_role: str = "user"
    sensitivity: Sensitivity | str = Sensitivity.LOW
    language: str = "en"
    tags: frozenset[str] = frozenset()
    options: RequestOptions = field(default_factory=RequestOptions)
    request_key: Optional[str] = None
    token_estimate: Optional[int] = None
    system: str = ""


@dataclass(frozen=True)
class RouteResponse:
    output: str
    recommended_model: str
    final_model: str
    fell_back: bool
    rule_id: Optional[str]
    usage: TokenUsage
    cost_usd: float
    firewall: FirewallOutcome
    audit_id: str
    minimal_completion: bool = False
    experiment_arm: Optional[str] = None


@dataclass
class _RequestState:
    """Per-request bookkeeping that must survive an exception out of _run."""
    attempts: list[AttemptRecord] = field(default_factory=list)
    probes: set[HealthKey] = field(default_factory=set)


class RoutingEngine:

    def __init__(
        self,
        registry: ModelRegistry,
        policies: PolicyStore,
        subscriptions: SubscriptionStore,
        adapter: ProviderAdapter,
        config: Optional[EngineConfig] = None,
        lineage: Optional[LineageRecorder] = None,
        ledger: Optional[BudgetLedger] = None,
        experiments: Optional[ExperimentOverlay] = None,
        tracker: Optional[HealthTracker] = None,
        metrics: Optional[MetricsSink] = None,
        hooks: Optional[HookRegistry] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.registry = registry
        self.policies = policies
        self.subscriptions = subscriptions
        self.metrics = metrics if metrics is not None else InMemoryMetrics()
        self.hooks = hooks or HookRegistry()
        self.health = tracker or HealthTracker(self.config.circuit, hooks=self.hooks,
                                               metrics=self.metrics)
        self.ledger = ledger or BudgetLedger()
        self.experiments = experiments or ExperimentOverlay(hooks=self.hooks, metrics=self.metrics)
        self.lineage = lineage or LineageRecorder(
            InMemoryLineageSink(), timeout_s=self.config.lineage_timeout_s,
            hooks=self.hooks, metrics=self.metrics,
        )

        self._evaluator = PolicyEvaluator()
        self._subscriptions = SubscriptionResolver()
        self._compliance = ComplianceFilter()
        self._health_gate = HealthGate(self.health)
        self._budget_gate = BudgetGate(self.ledger)
        self._selector = CandidateSelector()
        self._orchestrator = InvocationOrchestrator(
            adapter, self.health, retry=self.config.retry,
            call_timeout_s=self.config.call_timeout_s, sleep=sleep, rng=rng,
            hooks=self.hooks, metrics=self.metrics,
        )
        self._firewall = OutputFirewall(adapter, self.config.firewall,
                                        hooks=self.hooks, metrics=self.metrics)
        if self.config.tracing.enabled:
            configure_tracing(self.config.tracing)

    # ── Public API ────────────────────────────────────────────────────────────

    async def route(self, request: RouteRequest) -> RouteResponse:
        audit_id = new_audit_id()
        trace = DecisionTrace(audit_id=audit_id, app_id=request.app_id,
                              tenant_id=request.tenant_id, team_id=request.team_id)
        state = _RequestState()

        with traced_request(audit_id, request.app_id) as span:
            try:
                try:
                    ctx = build_context(request)
                except (KeyError, ValueError) as exc:
                    raise InvalidRequestError(str(exc), audit_id=audit_id) from exc
                response = await self._run(request, ctx, trace, state)
                trace.status = TraceStatus.SUCCEEDED
                span.set_attribute("router.final_model", response.final_model)
                return response
            except PolicyDenyError as exc:
                trace.status = TraceStatus.POLICY_DENIED
                trace.reason = exc.reason
                raise
            except RoutingError as exc:
                trace.status = TraceStatus.FAILED
                trace.reason = exc.reason
                raise
            except asyncio.CancelledError:
                trace.status = TraceStatus.CLIENT_CANCELLED
                trace.reason = "client_cancelled"
                raise
            except Exception as exc:
                trace.status = TraceStatus.FAILED
                trace.reason = "internal_error"
                logger.exception("[%s] unexpected routing failure: %s", audit_id, exc)
                raise
            finally:
                for key in state.probes:
                    self.health.release_probe(key)
                trace.attempts = list(state.attempts)
                span.set_attribute("router.status", trace.status.value)
                self._finish(trace)

    async def flush_lineage(self) -> int:
        return await self.lineage.flush_buffer()

    async def close(self) -> None:
        await self.lineage.drain()

    # ── Pipeline ──────────────────────────────────────────────────────────────

    async def _run(self, request: RouteRequest, ctx: RequestContext,
                   trace: DecisionTrace, state: "_RequestState") -> RouteResponse:
        audit_id = trace.audit_id
        policy = self.policies.active(ctx.app_id)
        registry = self.registry.snapshot()
        subscriptions = self.subscriptions.snapshot()
        if policy is None:
            self._deny(ctx, "policy", DenyReason.NO_ACTIVE_POLICY,
                       f"no active policy for app {ctx.app_id}", audit_id)
        trace.policy_version = policy.version

        with self._stage(trace, "policy"):
            cs = self._evaluator.evaluate(ctx, policy, registry)
        trace.rule_id = cs.rule_id
        if not cs:
            self._deny(ctx, "policy", DenyReason.NO_ELIGIBLE_MODEL, "no rule matched", audit_id)

        with self._stage(trace, "subscriptions"):
            sub = self._subscriptions.resolve(cs, ctx, subscriptions,
                                              policy.subscription_precedence)
        trace.subscription_scope = sub.scope.value if sub.scope else None
        trace.mark_removed("subscriptions", [n for n in cs.names if n not in sub.allowed])
        cs = sub.candidates
        if not cs:
            self._deny(ctx, "subscriptions", DenyReason.NO_ELIGIBLE_MODEL,
                       "no subscribed model", audit_id)

        with self._stage(trace, "compliance"):
            comp = self._compliance.apply(cs, ctx, policy.compliance)
        trace.mark_removed("compliance", comp.removed)
        eligible = cs = comp.candidates
        if not cs:
            self._deny(ctx, "compliance", DenyReason.COMPLIANCE_BLOCK,
                       "; ".join(comp.reasons), audit_id)

        with self._stage(trace, "health"):
            gate = self._health_gate.apply(cs)
        trace.mark_removed("health", gate.removed)
        cs = gate.candidates
        if not cs:
            self._deny(ctx, "health", DenyReason.NO_ELIGIBLE_MODEL,
                       "every candidate circuit is open", audit_id)

        with self._stage(trace, "budget"):
            budget = self._budget_gate.apply(cs, ctx, policy.budget)
        trace.budget_action = budget.action.value
        trace.mark_removed("budget", budget.removed)
        cs = budget.candidates
        if not cs:
            self._deny(ctx, "budget", DenyReason.BUDGET_EXCEEDED,
                       f"remaining {budget.remaining_usd}", audit_id)

        with self._stage(trace, "experiment"):
            overlay = self.experiments.apply(
                cs, ctx, keep_order=budget.action != BudgetAction.NONE)
        assignment = overlay.assignment
        if assignment is not None:
            trace.experiment_id = assignment.experiment_id
            trace.experiment_arm = assignment.arm.value
        cs = overlay.candidates

        with self._stage(trace, "selector"):
            selection = self._selector.select(
                cs, seed_from_audit_id(audit_id),
                score_fn=lambda c: self.health.score(c.descriptor.health_key),
            )
        trace.recommended_model = selection.recommended.name
        trace.planned_chain = selection.names

        t0 = time.monotonic()
        try:
            with self._stage(trace, "invocation"):
                result = await self._orchestrator.run(
                    selection, ctx, request.raw_input, audit_id,
                    eligible=eligible,
                    minimal_completion=self.config.minimal_completion,
                    attempt_log=state.attempts,
                    system=request.system,
                    probe_log=state.probes,
                )
        except ExhaustedFallbackError:
            if assignment is not None:
                self.experiments.record_outcome(
                    assignment, (time.monotonic() - t0) * 1000, 0.0, success=False)
            raise
        invocation_ms = (time.monotonic() - t0) * 1000

        final = result.final.descriptor
        trace.final_model = final.name
        trace.fell_back = result.fell_back
        trace.minimal_completion = result.minimal_completion

        with self._stage(trace, "firewall"):
            outcome = await self._firewall.screen(
                result.response.text, ctx, policy.firewall,
                self._model_resolver(registry, ctx, policy), audit_id,
            )
        trace.firewall = outcome.to_dict()

        usage = result.response.usage
        cost = compute_cost(final, usage) + outcome.cost_usd
        trace.input_tokens = usage.input_tokens + outcome.usage.input_tokens
        trace.output_tokens = usage.output_tokens + outcome.usage.output_tokens
        trace.cost_usd = cost
        self.ledger.charge(ctx.tenant_id, ctx.app_id, cost)
        self.metrics.observe("router_request_cost_usd", cost,
                             {"app": ctx.app_id, "model": final.name, "provider": final.provider})
        if assignment is not None:
            self.experiments.record_outcome(assignment, invocation_ms, cost, success=True)

        return RouteResponse(
            output=outcome.output,
            recommended_model=selection.recommended.name,
            final_model=final.name,
            fell_back=result.fell_back,
            rule_id=cs.rule_id,
            usage=usage,
            cost_usd=cost,
            firewall=outcome,
            audit_id=audit_id,
            minimal_completion=result.minimal_completion,
            experiment_arm=trace.experiment_arm,
        )

    # ── Helpers ───────────────────────────────────────────────────────────────

    @contextmanager
    def _stage(self, trace: DecisionTrace, name: str) -> Iterator[None]:
        started = time.monotonic()
        with traced_stage(name):
            try:
                yield
            finally:
                trace.mark_stage(name, started)

    def _deny(self, ctx: RequestContext, stage: str, reason: DenyReason,
              detail: str, audit_id: str) -> None:
        logger.info("[%s] denied at %s: %s (%s)", audit_id, stage, reason.value, detail)
        self.metrics.increment("router_stage_denied_total",
                               {"app": ctx.app_id, "reason": stage})
        raise PolicyDenyError(reason, detail, audit_id=audit_id)

    def _model_resolver(self, registry, ctx, policy) -> Callable[[str], Optional[ModelDescriptor]]:
        """Firewall helper models must be registered, enabled and compliance-eligible."""
        def resolve(name: str) -> Optional[ModelDescriptor]:
            desc = registry.get(name)
            if desc is None or not desc.enabled:
                return None
            if not self._compliance.is_eligible(desc, ctx, policy.compliance):
                return None
            return desc
        return resolve

    def _finish(self, trace: DecisionTrace) -> None:
        status, reason = trace.status.value, trace.reason
        self.lineage.submit(trace)
        self.metrics.increment("router_requests_total",
                               {"app": trace.app_id, "reason": reason or status})
        self.hooks.fire(EventType.REQUEST_COMPLETED, audit_id=trace.audit_id,
                        status=status, reason=reason)


def build_context(request: RouteRequest) -> RequestContext:
    return RequestContext(
        tenant_id=request.tenant_id,
        app_id=request.app_id,
        team_id=request.team_id,
        user_role=request.user_role,
        sensitivity=Sensitivity.parse(request.sensitivity),
        token_estimate=(
            request.token_estimate if request.token_estimate is not None
            else estimate_tokens(request.raw_input)
        ),
        language=request.language,
        tags=frozenset(request.tags),
        options=request.options,
        request_key=request.request_key,
    )
