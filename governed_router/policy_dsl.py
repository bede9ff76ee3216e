"""
Policy DSL — YAML/JSON policy file loader and static validator.
================================================================
Externalises routing policies, the model registry and subscriptions into
YAML or JSON files so they can be reviewed and versioned like any other
configuration.

Policy file format:
    app_id: support-bot
    version: "2026-10-01"
    subscription_precedence: [app, team, tenant]
    compliance:
      sensitivity_threshold: medium
      blocked_tags: [phi]
    budget:
      monthly_limit_usd: 500
      low_water_usd: 50
      minimal_cost_threshold: 1.0
    firewall:
      default_action: redraft
      detectors: [credit_card, email, ssn]
      custom_patterns: {ticket_id: "TCK-\\d{6}"}
      sanitizing_model: llama-internal
    rules:
      - id: high_sensitivity
        when:
          - {field: sensitivity, op: ge, value: high}
        single: llama-internal
      - id: default
        weighted: {gpt-4o: 0.7, claude-sonnet: 0.3}
    fallbacks:
      gpt-4o: [claude-sonnet]

Usage:
    from governed_router.policy_dsl import load_policy_file, PolicyValidator

    policy = load_policy_file("policies/support-bot.yml")
    problems = PolicyValidator.validate(policy, registry.snapshot())
"""
from __future__ import annotations

import json
import logging
import math
import re
from pathlib import Path
from typing import Any, Mapping

import yaml

from .models import (
    ComplianceTag, FirewallAction, ModelDescriptor, Sensitivity, SubscriptionScope,
)
from .policy import (
    BudgetLimits, ComplianceConfig, Condition, ConditionOp, CONTEXT_FIELDS,
    DEFAULT_DETECTORS, DEFAULT_PRECEDENCE, FirewallConfig, OrderedChoice, Policy,
    Rule, SingleChoice, Subscription, WeightedChoice,
)

logger = logging.getLogger("governed_router.policy_dsl")

WEIGHT_TOLERANCE: float = 1e-6


# ─────────────────────────────────────────────────────────────────────────────
# PolicyValidator
# ─────────────────────────────────────────────────────────────────────────────

class PolicyValidator:
    """
    Static validation run before a policy becomes active.

    Checks performed:
      1. rule ids are non-empty and unique
      2. every referenced model exists in the registry and is enabled
      3. weighted directives: weights positive, sum to 1 within tolerance
      4. ordered directives are non-empty and contain no duplicates
      5. fallback graph has no cycles
      6. `in` conditions carry a collection; lt/ge carry a number
      7. conditions address known RequestContext fields
      8. firewall detectors are known and custom patterns compile
    """

    @staticmethod
    def validate(policy: Policy, registry: Mapping[str, ModelDescriptor]) -> list[str]:
        problems: list[str] = []
        seen_ids: set[str] = set()

        for idx, rule in enumerate(policy.rules):
            label = rule.rule_id or f"#{idx}"
            if not rule.rule_id:
                problems.append(f"rule {label} has no id")
            elif rule.rule_id in seen_ids:
                problems.append(f"duplicate rule id {rule.rule_id!r}")
            seen_ids.add(rule.rule_id)

            d = rule.directive
            if isinstance(d, WeightedChoice):
                if not d.entries:
                    problems.append(f"[{label}] weighted directive has no entries")
                else:
                    if any(w <= 0 for _, w in d.entries):
                        problems.append(f"[{label}] weights must be positive")
                    total = math.fsum(w for _, w in d.entries)
                    if abs(total - 1.0) > WEIGHT_TOLERANCE:
                        problems.append(f"[{label}] weights sum to {total:.6f}, expected 1")
                    if len(set(d.models())) != len(d.entries):
                        problems.append(f"[{label}] weighted directive repeats a model")
            elif isinstance(d, OrderedChoice):
                if not d.priority:
                    problems.append(f"[{label}] ordered directive is empty")
                elif len(set(d.priority)) != len(d.priority):
                    problems.append(f"[{label}] ordered directive repeats a model")

            for cond in rule.conditions:
                if cond.field not in CONTEXT_FIELDS:
                    problems.append(f"[{label}] unknown condition field {cond.field!r}")
                if cond.op == ConditionOp.IN and not isinstance(
                    cond.value, (frozenset, set, tuple, list)
                ):
                    problems.append(f"[{label}] 'in' on {cond.field!r} needs a list value")
                if cond.op in (ConditionOp.LT, ConditionOp.GE) and (
                    isinstance(cond.value, bool) or not isinstance(cond.value, (int, float))
                ):
                    problems.append(f"[{label}] '{cond.op.value}' on {cond.field!r} needs a number")

        for name in sorted(policy.referenced_models()):
            desc = registry.get(name)
            if desc is None:
                problems.append(f"model {name!r} is not in the registry")
            elif not desc.enabled:
                problems.append(f"model {name!r} is disabled")

        for name in policy.firewall.detectors:
            if name not in DEFAULT_DETECTORS:
                problems.append(f"unknown firewall detector {name!r}")
        for name, pattern in policy.firewall.custom_patterns:
            try:
                re.compile(pattern)
            except re.error as exc:
                problems.append(f"custom pattern {name!r} does not compile: {exc}")

        cycle = find_fallback_cycle(policy.fallbacks)
        if cycle:
            problems.append("cyclic fallback reference: " + " -> ".join(cycle))

        return problems


def find_fallback_cycle(fallbacks: Mapping[str, tuple[str, ...]]) -> list[str]:
    """Return one cycle in the fallback graph as a path (first == last), or []."""
    WHITE, GREY, BLACK = 0, 1, 2
    colour: dict[str, int] = {}
    stack: list[str] = []

    def visit(node: str) -> list[str]:
        colour[node] = GREY
        stack.append(node)
        for nxt in fallbacks.get(node, ()):
            state = colour.get(nxt, WHITE)
            if state == GREY:
                return stack[stack.index(nxt):] + [nxt]
            if state == WHITE:
                found = visit(nxt)
                if found:
                    return found
        stack.pop()
        colour[node] = BLACK
        return []

    for start in sorted(fallbacks):
        if colour.get(start, WHITE) == WHITE:
            found = visit(start)
            if found:
                return found
    return []


# ─────────────────────────────────────────────────────────────────────────────
# Internal parsing helpers
# ─────────────────────────────────────────────────────────────────────────────

def _coerce_value(field_name: str, op: ConditionOp, raw: Any) -> Any:
    """Normalise YAML scalars: sensitivity names → Sensitivity, lists → frozenset."""
    if op == ConditionOp.IN:
        items = raw if isinstance(raw, (list, tuple, set, frozenset)) else [raw]
        if field_name == "sensitivity":
            return frozenset(Sensitivity.parse(v) for v in items)
        return frozenset(items)
    if field_name == "sensitivity":
        return Sensitivity.parse(raw)
    return raw


def _parse_condition(d: Mapping[str, Any]) -> Condition:
    field_name = str(d.get("field", ""))
    op = ConditionOp(str(d.get("op", "eq")).lower())
    return Condition(field_name, op, _coerce_value(field_name, op, d.get("value")))


def _parse_rule(d: Mapping[str, Any], idx: int) -> Rule:
    rule_id = str(d.get("id") or d.get("rule_id") or "")
    if "single" in d:
        directive = SingleChoice(str(d["single"]))
    elif "weighted" in d:
        raw = d["weighted"]
        if isinstance(raw, Mapping):
            entries = tuple((str(m), float(w)) for m, w in raw.items())
        else:
            entries = tuple((str(e["model"]), float(e["weight"])) for e in raw)
        directive = WeightedChoice(entries)
    elif "ordered" in d:
        directive = OrderedChoice(tuple(str(m) for m in d["ordered"]))
    else:
        raise ValueError(
            f"rule {rule_id or idx!r} needs one of 'single', 'weighted' or 'ordered'"
        )
    conditions = tuple(_parse_condition(c) for c in (d.get("when") or []))
    return Rule(rule_id=rule_id, directive=directive, conditions=conditions)


def _parse_budget(d: Mapping[str, Any]) -> BudgetLimits:
    return BudgetLimits(
        monthly_limit_usd=d.get("monthly_limit_usd"),
        low_water_usd=d.get("low_water_usd"),
        minimal_cost_threshold=float(d.get("minimal_cost_threshold", 0.0)),
    )


def _parse_compliance(d: Mapping[str, Any]) -> ComplianceConfig:
    return ComplianceConfig(
        sensitivity_threshold=Sensitivity.parse(d.get("sensitivity_threshold", "medium")),
        blocked_tags=frozenset(d.get("blocked_tags") or ()),
    )


def _parse_firewall(d: Mapping[str, Any]) -> FirewallConfig:
    custom = d.get("custom_patterns") or {}
    if isinstance(custom, Mapping):
        custom_pairs = tuple((str(k), str(v)) for k, v in custom.items())
    else:
        custom_pairs = tuple((str(e["name"]), str(e["pattern"])) for e in custom)
    return FirewallConfig(
        default_action=FirewallAction(str(d.get("default_action", "flag")).lower()),
        detectors=tuple(d.get("detectors") or DEFAULT_DETECTORS),
        custom_patterns=custom_pairs,
        sanitizing_model=d.get("sanitizing_model"),
        contextual_model=d.get("contextual_model"),
    )


# ─────────────────────────────────────────────────────────────────────────────
# Public API
# ─────────────────────────────────────────────────────────────────────────────

def load_policy_dict(d: Mapping[str, Any]) -> Policy:
    """Convert a policy dict (as loaded from YAML/JSON) into a Policy."""
    if "app_id" not in d or "version" not in d:
        raise ValueError("policy needs 'app_id' and 'version'")

    precedence_raw = d.get("subscription_precedence")
    precedence = (
        tuple(SubscriptionScope(str(s).lower()) for s in precedence_raw)
        if precedence_raw else DEFAULT_PRECEDENCE
    )
    fallbacks = {
        str(src): tuple(str(t) for t in (targets or []))
        for src, targets in (d.get("fallbacks") or {}).items()
    }
    return Policy(
        app_id=str(d["app_id"]),
        version=str(d["version"]),
        rules=tuple(_parse_rule(r, i) for i, r in enumerate(d.get("rules") or [])),
        fallbacks=fallbacks,
        budget=_parse_budget(d.get("budget") or {}),
        compliance=_parse_compliance(d.get("compliance") or {}),
        firewall=_parse_firewall(d.get("firewall") or {}),
        subscription_precedence=precedence,
    )


def load_registry_dict(d: Mapping[str, Any]) -> list[ModelDescriptor]:
    """
    Parse a registry document:
        models:
          - {provider: openai, name: gpt-4o, cost_per_1m_input: 2.5,
             cost_per_1m_output: 10.0, compliance: external}
    """
    descriptors: list[ModelDescriptor] = []
    for m in d.get("models") or []:
        descriptors.append(ModelDescriptor(
            provider=str(m["provider"]),
            name=str(m["name"]),
            version=str(m.get("version", "latest")),
            cost_per_1m_input=float(m.get("cost_per_1m_input", 0.0)),
            cost_per_1m_output=float(m.get("cost_per_1m_output", 0.0)),
            capabilities=frozenset(m.get("capabilities") or ()),
            compliance=ComplianceTag(str(m.get("compliance", "external")).lower()),
            enabled=bool(m.get("enabled", True)),
        ))
    return descriptors


def load_subscriptions_dict(d: Mapping[str, Any]) -> list[Subscription]:
    """
    Parse a subscription document:
        subscriptions:
          - {scope: app, target: support-bot, models: [gpt-4o, llama-internal]}
    """
    subs: list[Subscription] = []
    for s in d.get("subscriptions") or []:
        subs.append(Subscription(
            scope=SubscriptionScope(str(s["scope"]).lower()),
            target_id=str(s.get("target") or s.get("target_id")),
            models=frozenset(str(m) for m in s.get("models") or ()),
            enabled=bool(s.get("enabled", True)),
        ))
    return subs


def read_document(path: str | Path) -> dict:
    """
    Read a YAML or JSON document.

    Raises
    ------
    ValueError        if the extension is not recognised or the top level is not a mapping
    FileNotFoundError if the path does not exist
    """
    p = Path(path)
    suffix = p.suffix.lower()
    with open(p, encoding="utf-8") as fh:
        if suffix == ".json":
            data = json.load(fh)
        elif suffix in (".yaml", ".yml"):
            data = yaml.safe_load(fh)
        else:
            raise ValueError(
                f"Unsupported file extension '{suffix}'. Supported: .json, .yaml, .yml"
            )
    if not isinstance(data, dict):
        raise ValueError(f"'{p.name}' must contain a YAML/JSON object at the top level.")
    return data


def load_policy_file(path: str | Path) -> Policy:
    policy = load_policy_dict(read_document(path))
    logger.debug("Loaded policy %s@%s from %s", policy.app_id, policy.version, path)
    return policy


def load_registry_file(path: str | Path) -> list[ModelDescriptor]:
    return load_registry_dict(read_document(path))


def load_subscriptions_file(path: str | Path) -> list[Subscription]:
    return load_subscriptions_dict(read_document(path))
