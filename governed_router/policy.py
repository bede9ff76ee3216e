"""
Policy data model — rules, directives, budgets, compliance and firewall config.
===============================================================================
All types here are frozen dataclasses with no side effects. A Policy is an
immutable, versioned artifact: the PolicyStore publishes a new version to
change behaviour, it never edits one in place.

Directives are a tagged variant (SingleChoice | WeightedChoice | OrderedChoice)
rather than an untyped expression, so validation in policy_dsl.PolicyValidator
and selection in selector.CandidateSelector can be exhaustive over the kinds.

Design: policy.py imports from models.py only. policy_engine.py, policy_dsl.py
and engine.py import from both.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union

from .models import (
    DirectiveKind, FirewallAction, RequestContext, Sensitivity, SubscriptionScope,
)


# ─────────────────────────────────────────────────────────────────────────────
# Conditions
# ─────────────────────────────────────────────────────────────────────────────

class ConditionOp(str, Enum):
    EQ = "eq"
    LT = "lt"
    GE = "ge"
    IN = "in"


# Fields a Condition may address on RequestContext. Anything else never matches.
CONTEXT_FIELDS: frozenset[str] = frozenset({
    "tenant_id", "app_id", "team_id", "user_role", "sensitivity",
    "token_estimate", "language", "tags",
})

_MISSING = object()


@dataclass(frozen=True)
class Condition:
    """
    One field comparison. Rules AND their conditions together.

    Fail-closed: an unknown field, a missing (None) value or a type mismatch
    evaluates to False rather than raising.

    ``tags`` is set-valued: eq means "contains value", in means "intersects".
    """
    field: str
    op: ConditionOp
    value: Any

    def matches(self, ctx: RequestContext) -> bool:
        if self.field not in CONTEXT_FIELDS:
            return False
        actual = getattr(ctx, self.field, _MISSING)
        if actual is _MISSING or actual is None:
            return False
        try:
            if self.field == "tags":
                return self._match_tags(actual)
            if self.op == ConditionOp.EQ:
                return actual == self.value
            if self.op == ConditionOp.LT:
                return _numeric(actual) < _numeric(self.value)
            if self.op == ConditionOp.GE:
                return _numeric(actual) >= _numeric(self.value)
            if self.op == ConditionOp.IN:
                return actual in self.value
        except (TypeError, ValueError):
            return False
        return False

    def _match_tags(self, tags: frozenset[str]) -> bool:
        if self.op == ConditionOp.EQ:
            return self.value in tags
        if self.op == ConditionOp.IN:
            return not tags.isdisjoint(self.value)
        return False


def _numeric(value: Any) -> float:
    if isinstance(value, bool):
        raise TypeError("booleans are not ordered values")
    if isinstance(value, (int, float)):
        return float(value)
    raise TypeError(f"not numeric: {value!r}")


# ─────────────────────────────────────────────────────────────────────────────
# Directives (tagged variant)
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class SingleChoice:
    model: str
    kind: DirectiveKind = field(default=DirectiveKind.SINGLE, init=False)

    def models(self) -> list[str]:
        return [self.model]


@dataclass(frozen=True)
class WeightedChoice:
    entries: tuple[tuple[str, float], ...]
    kind: DirectiveKind = field(default=DirectiveKind.WEIGHTED, init=False)

    def models(self) -> list[str]:
        return [m for m, _ in self.entries]

    def weight_of(self, model: str) -> float:
        for m, w in self.entries:
            if m == model:
                return w
        return 0.0


@dataclass(frozen=True)
class OrderedChoice:
    priority: tuple[str, ...]
    kind: DirectiveKind = field(default=DirectiveKind.ORDERED, init=False)

    def models(self) -> list[str]:
        return list(self.priority)


Directive = Union[SingleChoice, WeightedChoice, OrderedChoice]


@dataclass(frozen=True)
class Rule:
    rule_id: str
    directive: Directive
    conditions: tuple[Condition, ...] = ()   # empty → catch-all

    def matches(self, ctx: RequestContext) -> bool:
        return all(c.matches(ctx) for c in self.conditions)


# ─────────────────────────────────────────────────────────────────────────────
# Policy sections
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class BudgetLimits:
    """
    Monthly spend limit per (tenant, app).

    low_water_usd defaults to 10% of the monthly limit. Once the limit is
    exhausted, only models whose blended price per 1M tokens is at or below
    minimal_cost_threshold stay eligible.
    """
    monthly_limit_usd: Optional[float] = None      # None → budget gate disabled
    low_water_usd: Optional[float] = None
    minimal_cost_threshold: float = 0.0

    @property
    def effective_low_water(self) -> float:
        if self.low_water_usd is not None:
            return self.low_water_usd
        return (self.monthly_limit_usd or 0.0) * 0.10


@dataclass(frozen=True)
class ComplianceConfig:
    """External models are removed above this sensitivity or on any blocked tag."""
    sensitivity_threshold: Sensitivity = Sensitivity.MEDIUM
    blocked_tags: frozenset[str] = frozenset()


DEFAULT_DETECTORS: tuple[str, ...] = (
    "credit_card", "ssn", "email", "phone", "ip_address", "secret",
)


@dataclass(frozen=True)
class FirewallConfig:
    default_action: FirewallAction = FirewallAction.FLAG
    detectors: tuple[str, ...] = DEFAULT_DETECTORS
    custom_patterns: tuple[tuple[str, str], ...] = ()   # (name, regex)
    sanitizing_model: Optional[str] = None
    contextual_model: Optional[str] = None


DEFAULT_PRECEDENCE: tuple[SubscriptionScope, ...] = (
    SubscriptionScope.APP, SubscriptionScope.TEAM, SubscriptionScope.TENANT,
)


# ─────────────────────────────────────────────────────────────────────────────
# Policy
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Policy:
    """
    Versioned routing policy for one app.

    Example:
        Policy(
            app_id="support-bot",
            version="2026-10-01",
            rules=(
                Rule("high_sensitivity", SingleChoice("llama-internal"),
                     (Condition("sensitivity", ConditionOp.GE, Sensitivity.HIGH),)),
                Rule("default", WeightedChoice((("gpt-4o", 0.7), ("claude-sonnet", 0.3)))),
            ),
            fallbacks={"gpt-4o": ("claude-sonnet",)},
        )
    """
    app_id: str
    version: str
    rules: tuple[Rule, ...] = ()
    fallbacks: dict[str, tuple[str, ...]] = field(default_factory=dict)
    budget: BudgetLimits = field(default_factory=BudgetLimits)
    compliance: ComplianceConfig = field(default_factory=ComplianceConfig)
    firewall: FirewallConfig = field(default_factory=FirewallConfig)
    subscription_precedence: tuple[SubscriptionScope, ...] = DEFAULT_PRECEDENCE

    def __hash__(self) -> int:
        return hash((self.app_id, self.version))

    def referenced_models(self) -> set[str]:
        names: set[str] = set()
        for rule in self.rules:
            names.update(rule.directive.models())
        for src, targets in self.fallbacks.items():
            names.add(src)
            names.update(targets)
        if self.firewall.sanitizing_model:
            names.add(self.firewall.sanitizing_model)
        if self.firewall.contextual_model:
            names.add(self.firewall.contextual_model)
        return names


# ─────────────────────────────────────────────────────────────────────────────
# Subscription
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Subscription:
    scope: SubscriptionScope
    target_id: str
    models: frozenset[str]
    enabled: bool = True

    def applies_to(self, ctx: RequestContext) -> bool:
        if self.scope == SubscriptionScope.TENANT:
            return self.target_id == ctx.tenant_id
        if self.scope == SubscriptionScope.APP:
            return self.target_id == ctx.app_id
        return ctx.team_id is not None and self.target_id == ctx.team_id
