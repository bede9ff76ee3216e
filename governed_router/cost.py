"""
Cost Layer — per-request cost, monthly budget ledger, budget gate.
==================================================================
compute_cost
    USD cost of one provider call from its token usage and the model's
    per-1M-token prices.

BudgetLedger
    Cumulative spend per (tenant, app) for the current calendar month (UTC).
    Shared across all in-flight requests; each key has its own lock so
    charges for different apps never contend.

BudgetGate
    Pipeline stage. Compares remaining budget with the policy's limits:
      remaining < low-water mark  → DOWNGRADED: reorder by price, cheapest first
      remaining <= 0              → RESTRICTED: drop models priced above the
                                    minimal-cost threshold
    An empty result is a policy deny with reason "budget_exceeded".

Usage:
    ledger = BudgetLedger()
    gate = BudgetGate(ledger)
    result = gate.apply(candidates, ctx, policy.budget)
    ...
    ledger.charge(ctx.tenant_id, ctx.app_id, cost)
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from .models import CandidateSet, DirectiveKind, ModelDescriptor, RequestContext, TokenUsage
from .policy import BudgetLimits

logger = logging.getLogger("governed_router.cost")

BudgetKey = tuple[str, str]


def compute_cost(descriptor: ModelDescriptor, usage: TokenUsage) -> float:
    return descriptor.estimate_cost(usage.input_tokens, usage.output_tokens)


class BudgetAction(str, Enum):
    NONE = "none"
    DOWNGRADED = "downgraded"
    RESTRICTED = "restricted"


# ─────────────────────────────────────────────────────────────────────────────
# BudgetLedger
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class _Account:
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    period: str = ""
    spent: float = 0.0


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class BudgetLedger:
    """
    Monthly spend per (tenant, app). A new month starts from zero.

    Note: in-memory only. Seed it from the billing store at start-up with
    charge() if spend must survive restarts.
    """

    def __init__(self, clock: Callable[[], datetime] = _utc_now) -> None:
        self._clock = clock
        self._accounts: dict[BudgetKey, _Account] = {}
        self._accounts_guard = threading.Lock()

    def _period(self) -> str:
        return self._clock().strftime("%Y-%m")

    def _account(self, key: BudgetKey) -> _Account:
        acct = self._accounts.get(key)
        if acct is None:
            with self._accounts_guard:
                acct = self._accounts.setdefault(key, _Account())
        return acct

    def spent(self, tenant_id: str, app_id: str) -> float:
        acct = self._account((tenant_id, app_id))
        period = self._period()
        with acct.lock:
            if acct.period != period:
                return 0.0
            return acct.spent

    def charge(self, tenant_id: str, app_id: str, amount: float) -> float:
        """Add amount to this month's spend; returns the new total."""
        acct = self._account((tenant_id, app_id))
        period = self._period()
        with acct.lock:
            if acct.period != period:
                acct.period = period
                acct.spent = 0.0
            if amount > 0:
                acct.spent += amount
            return acct.spent

    def remaining(self, tenant_id: str, app_id: str, limits: BudgetLimits) -> Optional[float]:
        """None when no monthly limit is configured."""
        if limits.monthly_limit_usd is None:
            return None
        return limits.monthly_limit_usd - self.spent(tenant_id, app_id)


# ─────────────────────────────────────────────────────────────────────────────
# BudgetGate
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class BudgetResult:
    candidates: CandidateSet
    action: BudgetAction
    remaining_usd: Optional[float]
    removed: tuple[str, ...] = ()


class BudgetGate:

    def __init__(self, ledger: BudgetLedger) -> None:
        self._ledger = ledger

    def apply(
        self,
        candidates: CandidateSet,
        ctx: RequestContext,
        limits: BudgetLimits,
    ) -> BudgetResult:
        remaining = self._ledger.remaining(ctx.tenant_id, ctx.app_id, limits)
        if remaining is None:
            return BudgetResult(candidates, BudgetAction.NONE, None)

        if remaining <= 0:
            kept = candidates.filtered(
                lambda c: c.descriptor.blended_price <= limits.minimal_cost_threshold
            )
            removed = tuple(c.name for c in candidates if c.name not in set(kept.names))
            logger.warning(
                "Budget exhausted for %s/%s (remaining=%.4f): %d candidate(s) left at minimal cost",
                ctx.tenant_id, ctx.app_id, remaining, len(kept),
            )
            return BudgetResult(
                self._cheapest_first(kept), BudgetAction.RESTRICTED, remaining, removed,
            )

        if remaining < limits.effective_low_water:
            logger.info(
                "Budget low for %s/%s (remaining=%.4f < %.4f): downgrading",
                ctx.tenant_id, ctx.app_id, remaining, limits.effective_low_water,
            )
            return BudgetResult(self._cheapest_first(candidates), BudgetAction.DOWNGRADED, remaining)

        return BudgetResult(candidates, BudgetAction.NONE, remaining)

    @staticmethod
    def _cheapest_first(candidates: CandidateSet) -> CandidateSet:
        """Stable sort by blended price; the selector then takes the head."""
        ordered = sorted(candidates.candidates, key=lambda c: c.descriptor.blended_price)
        return candidates.with_candidates(ordered, kind=DirectiveKind.ORDERED)
