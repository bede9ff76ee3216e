"""
Invocation Orchestrator — retries, fallback chain and minimal completion.
=========================================================================
Per request state machine:

    pending → invoking → succeeded
                       → retrying     (retryable error, attempts left) → invoking
                       → falling_back (candidate exhausted / terminal error) → invoking
                       → failed       (chain exhausted)

Retryable error classes (timeout, rate_limit, server_error) retry the same
candidate with jittered exponential backoff; a provider retry_after hint is
a lower bound on the delay. A retry_after beyond backoff_max_s abandons the
candidate instead of waiting. Terminal classes move on immediately.

A candidate whose circuit is open when its turn comes is skipped and not
recorded as attempted. A half-open candidate's probe is taken (CAS) only
when its turn comes; if another request already holds it, the candidate is
skipped. Probes taken and not yet settled by a result are listed in
``probe_log`` so the caller can give them back.

Attempts are strictly sequential, and every attempt is reported to the
HealthTracker.
"""
from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional

from .api_clients import ProviderAdapter, ProviderResponse
from .config import RetryConfig
from .errors import (
    ErrorClass, ExhaustedFallbackError, ProviderError, ProviderTransientError,
    classify_exception,
)
from .health import HealthKey, HealthTracker
from .hooks import EventType, HookRegistry
from .metrics import MetricsSink, NullMetrics
from .models import Candidate, CandidateSet, CircuitState, RequestContext
from .selector import Selection
from .tracing import traced_llm_call

logger = logging.getLogger("governed_router.invocation")


class InvocationState(str, Enum):
    PENDING = "pending"
    INVOKING = "invoking"
    RETRYING = "retrying"
    FALLING_BACK = "falling_back"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class AttemptRecord:
    model: str
    provider: str
    attempt: int                        # 1-based, per candidate
    outcome: str                        # "success" | "failure"
    error_class: Optional[str] = None
    latency_ms: float = 0.0
    minimal_completion: bool = False

    def to_dict(self) -> dict:
        return {
            "model": self.model,
            "provider": self.provider,
            "attempt": self.attempt,
            "outcome": self.outcome,
            "error_class": self.error_class,
            "latency_ms": round(self.latency_ms, 3),
            "minimal_completion": self.minimal_completion,
        }


@dataclass
class InvocationResult:
    response: ProviderResponse
    final: Candidate
    attempts: list[AttemptRecord]
    fell_back: bool
    minimal_completion: bool = False
    invoked: set[HealthKey] = field(default_factory=set)
    transitions: list[InvocationState] = field(default_factory=list)

    @property
    def final_model(self) -> str:
        return self.final.name


class InvocationOrchestrator:
    """
    Drives one request's Selection against a ProviderAdapter.

    ``sleep`` and ``rng`` are injectable so tests run without real delays.
    """

    def __init__(
        self,
        adapter: ProviderAdapter,
        tracker: HealthTracker,
        retry: Optional[RetryConfig] = None,
        call_timeout_s: float = 30.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
        hooks: Optional[HookRegistry] = None,
        metrics: Optional[MetricsSink] = None,
    ) -> None:
        self._adapter = adapter
        self._tracker = tracker
        self._retry = retry or RetryConfig()
        self._call_timeout_s = call_timeout_s
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._hooks = hooks
        self._metrics = metrics or NullMetrics()

    def backoff_delay(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """Delay before retry number ``attempt`` (1 → after the first failure)."""
        cfg = self._retry
        delay = min(cfg.backoff_max_s, cfg.backoff_base_s * (2 ** (attempt - 1)))
        delay *= self._rng.uniform(1.0 - cfg.jitter, 1.0)
        if retry_after is not None:
            delay = max(delay, retry_after)
        return delay

    async def run(
        self,
        selection: Selection,
        ctx: RequestContext,
        normalized_input: str,
        audit_id: str,
        eligible: Optional[CandidateSet] = None,
        minimal_completion: bool = False,
        attempt_log: Optional[list[AttemptRecord]] = None,
        system: str = "",
        probe_log: Optional[set[HealthKey]] = None,
    ) -> InvocationResult:
        """
        Try the chain in order. Returns on the first success.

        ``eligible`` is the compliance-filtered set; minimal completion only
        ever picks from it. ``attempt_log`` and ``probe_log`` are updated as
        the run goes so a caller still sees them after a failure or
        cancellation.
        """
        attempts = attempt_log if attempt_log is not None else []
        probes = probe_log if probe_log is not None else set()
        transitions = [InvocationState.PENDING]
        invoked: set[HealthKey] = set()
        last_error: Optional[BaseException] = None
        previous: Optional[Candidate] = None

        for position, cand in enumerate(selection.chain):
            key = cand.descriptor.health_key
            if self._admit(key, probes) is None:
                logger.debug("[%s] skipping %s: circuit %s", audit_id, cand.name,
                             self._tracker.state(key).value)
                continue

            if previous is not None:
                transitions.append(InvocationState.FALLING_BACK)
                self._announce_fallback(ctx, audit_id, previous, cand, last_error)
            previous = cand

            for attempt in range(1, self._retry.max_attempts + 1):
                probe = self._admit(key, probes)
                if probe is None:
                    break
                transitions.append(InvocationState.INVOKING)
                invoked.add(key)
                response, error = await self._attempt(cand, ctx, normalized_input,
                                                      attempt, attempts, system,
                                                      probe=probe, probe_log=probes)
                if error is None:
                    transitions.append(InvocationState.SUCCEEDED)
                    return InvocationResult(
                        response=response,
                        final=cand,
                        attempts=attempts,
                        fell_back=position > 0,
                        invoked=invoked,
                        transitions=transitions,
                    )
                last_error = error
                if not error.retryable or attempt == self._retry.max_attempts:
                    break
                if error.retry_after is not None and error.retry_after > self._retry.backoff_max_s:
                    logger.info("[%s] %s asked to retry after %.1fs; moving on",
                                audit_id, cand.name, error.retry_after)
                    break
                transitions.append(InvocationState.RETRYING)
                await self._sleep(self.backoff_delay(attempt, error.retry_after))

        if minimal_completion and eligible is not None:
            result = await self._minimal_completion(
                ctx, normalized_input, audit_id, eligible,
                probes, attempts, invoked, transitions, system,
            )
            if result is not None:
                return result

        transitions.append(InvocationState.FAILED)
        attempted = list(dict.fromkeys(a.model for a in attempts))
        logger.warning("[%s] fallback chain exhausted after %s", audit_id, attempted)
        raise ExhaustedFallbackError(attempted, last_error, audit_id=audit_id)

    async def _attempt(
        self,
        cand: Candidate,
        ctx: RequestContext,
        normalized_input: str,
        attempt: int,
        attempts: list[AttemptRecord],
        system: str,
        minimal: bool = False,
        probe: bool = False,
        probe_log: Optional[set[HealthKey]] = None,
    ) -> tuple[Optional[ProviderResponse], Optional[ProviderError]]:
        desc = cand.descriptor
        labels = {"app": ctx.app_id, "model": desc.name, "provider": desc.provider}
        t0 = time.monotonic()
        error: Optional[ProviderError] = None
        response: Optional[ProviderResponse] = None

        with traced_llm_call(desc.name, "minimal_completion" if minimal else "route") as span:
            try:
                response = await asyncio.wait_for(
                    self._adapter.invoke(desc, normalized_input, ctx.options, system),
                    timeout=self._call_timeout_s,
                )
            except asyncio.TimeoutError:
                error = ProviderTransientError(
                    f"{desc.name} timed out after {self._call_timeout_s}s", ErrorClass.TIMEOUT,
                )
            except Exception as exc:
                error = classify_exception(exc)
            latency_ms = (time.monotonic() - t0) * 1000
            span.set_attribute("llm.attempt", attempt)
            span.set_attribute("llm.outcome", "success" if error is None else error.error_class.value)

        if probe and probe_log is not None:
            probe_log.discard(desc.health_key)
        if error is None:
            self._tracker.record_success(desc.health_key, latency_ms, probe=probe)
            attempts.append(AttemptRecord(desc.name, desc.provider, attempt, "success",
                                          latency_ms=latency_ms, minimal_completion=minimal))
            self._metrics.increment("router_attempts_total", {**labels, "reason": "success"})
            self._metrics.observe("router_invocation_latency_ms", latency_ms, labels)
            return response, None

        self._tracker.record_failure(desc.health_key, latency_ms, probe=probe)
        attempts.append(AttemptRecord(desc.name, desc.provider, attempt, "failure",
                                      error.error_class.value, latency_ms, minimal))
        self._metrics.increment("router_attempts_total",
                                {**labels, "reason": error.error_class.value})
        logger.warning("%s attempt %d failed (%s): %s",
                       desc.name, attempt, error.error_class.value, error)
        return None, error

    async def _minimal_completion(
        self,
        ctx: RequestContext,
        normalized_input: str,
        audit_id: str,
        eligible: CandidateSet,
        probes: set[HealthKey],
        attempts: list[AttemptRecord],
        invoked: set[HealthKey],
        transitions: list[InvocationState],
        system: str,
    ) -> Optional[InvocationResult]:
        """One extra attempt on the cheapest compliance-eligible, non-open model."""
        cand, probe = None, None
        for c in sorted(eligible, key=lambda e: e.descriptor.blended_price):
            probe = self._admit(c.descriptor.health_key, probes)
            if probe is not None:
                cand = c
                break
        if cand is None:
            logger.warning("[%s] minimal completion: no admissible model", audit_id)
            return None
        logger.info("[%s] minimal completion via %s", audit_id, cand.name)
        transitions.append(InvocationState.FALLING_BACK)
        transitions.append(InvocationState.INVOKING)
        invoked.add(cand.descriptor.health_key)
        response, error = await self._attempt(cand, ctx, normalized_input, 1,
                                              attempts, system, minimal=True,
                                              probe=probe, probe_log=probes)
        if error is not None:
            return None
        transitions.append(InvocationState.SUCCEEDED)
        return InvocationResult(
            response=response,
            final=cand,
            attempts=attempts,
            fell_back=True,
            minimal_completion=True,
            invoked=invoked,
            transitions=transitions,
        )

    def _admit(self, key: HealthKey, probes: set[HealthKey]) -> Optional[bool]:
        """None: not admissible now. Otherwise whether this call is the half-open probe."""
        state = self._tracker.state(key)
        if state == CircuitState.CLOSED:
            return False
        if state != CircuitState.HALF_OPEN:
            return None
        if key in probes:
            return True
        if self._tracker.try_acquire_probe(key):
            probes.add(key)
            return True
        return None

    def _announce_fallback(self, ctx: RequestContext, audit_id: str, src: Candidate,
                           dst: Candidate, error: Optional[BaseException]) -> None:
        error_class = (
            error.error_class.value if isinstance(error, ProviderError) else "circuit_open"
        )
        logger.info("[%s] falling back %s → %s (%s)", audit_id, src.name, dst.name, error_class)
        self._metrics.increment(
            "router_fallbacks_total",
            {"app": ctx.app_id, "model": src.name, "provider": src.descriptor.provider,
             "reason": error_class},
        )
        if self._hooks is not None:
            self._hooks.fire(EventType.FALLBACK_ADVANCED, audit_id=audit_id,
                             from_model=src.name, to_model=dst.name, error_class=error_class)
