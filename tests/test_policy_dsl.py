"""
Tests for the policy DSL and the versioned stores.
Covers: load_policy_dict / load_policy_file (YAML + JSON), registry and
subscription documents, PolicyValidator problems, PolicyStore publish rules.
"""
from __future__ import annotations

import json

import pytest

from governed_router.errors import InvalidPolicyError
from governed_router.models import (
    ComplianceTag, DirectiveKind, FirewallAction, ModelDescriptor, Sensitivity,
    SubscriptionScope,
)
from governed_router.policy import (
    Condition, ConditionOp, FirewallConfig, OrderedChoice, Policy, Rule, SingleChoice,
    WeightedChoice,
)
from governed_router.policy_dsl import (
    PolicyValidator,
    find_fallback_cycle,
    load_policy_dict,
    load_policy_file,
    load_registry_dict,
    load_registry_file,
    load_subscriptions_dict,
)
from governed_router.registry import ModelRegistry, PolicyStore, SubscriptionStore


def _make_registry() -> ModelRegistry:
    return ModelRegistry([
        ModelDescriptor("openai", "gpt-4o", cost_per_1m_input=2.5, cost_per_1m_output=10.0),
        ModelDescriptor("anthropic", "claude-sonnet", cost_per_1m_input=3.0, cost_per_1m_output=15.0),
        ModelDescriptor("local", "llama-internal", compliance=ComplianceTag.INTERNAL),
        ModelDescriptor("openai", "gpt-legacy", enabled=False),
    ])


_POLICY_DOC = {
    "app_id": "support-bot",
    "version": "v1",
    "subscription_precedence": ["team", "app", "tenant"],
    "compliance": {"sensitivity_threshold": "medium", "blocked_tags": ["phi"]},
    "budget": {"monthly_limit_usd": 500, "low_water_usd": 50, "minimal_cost_threshold": 1.0},
    "firewall": {
        "default_action": "redraft",
        "detectors": ["credit_card", "email"],
        "custom_patterns": {"ticket_id": r"TCK-\d{6}"},
        "sanitizing_model": "llama-internal",
    },
    "rules": [
        {
            "id": "high_sensitivity",
            "when": [{"field": "sensitivity", "op": "ge", "value": "high"}],
            "single": "llama-internal",
        },
        {"id": "default", "weighted": {"gpt-4o": 0.7, "claude-sonnet": 0.3}},
    ],
    "fallbacks": {"gpt-4o": ["claude-sonnet"], "claude-sonnet": ["llama-internal"]},
}


# ─────────────────────────────────────────────────────────────────────────────
# load_policy_dict
# ─────────────────────────────────────────────────────────────────────────────

def test_load_policy_dict_parses_rules_and_sections():
    p = load_policy_dict(_POLICY_DOC)
    assert p.app_id == "support-bot"
    assert p.version == "v1"
    assert [r.rule_id for r in p.rules] == ["high_sensitivity", "default"]
    assert isinstance(p.rules[0].directive, SingleChoice)
    assert p.rules[0].conditions[0].value == Sensitivity.HIGH
    assert isinstance(p.rules[1].directive, WeightedChoice)
    assert p.rules[1].directive.weight_of("gpt-4o") == pytest.approx(0.7)
    assert p.fallbacks["gpt-4o"] == ("claude-sonnet",)
    assert p.budget.monthly_limit_usd == 500
    assert p.compliance.blocked_tags == frozenset({"phi"})
    assert p.firewall.default_action == FirewallAction.REDRAFT
    assert p.firewall.custom_patterns == (("ticket_id", r"TCK-\d{6}"),)
    assert p.subscription_precedence[0] == SubscriptionScope.TEAM


def test_load_policy_dict_ordered_and_in_condition():
    p = load_policy_dict({
        "app_id": "a", "version": "1",
        "rules": [{
            "id": "r",
            "when": [{"field": "language", "op": "in", "value": ["de", "fr"]}],
            "ordered": ["gpt-4o", "claude-sonnet"],
        }],
    })
    rule = p.rules[0]
    assert rule.directive.kind == DirectiveKind.ORDERED
    assert rule.conditions[0].value == frozenset({"de", "fr"})


def test_load_policy_dict_requires_app_and_version():
    with pytest.raises(ValueError):
        load_policy_dict({"rules": []})


def test_rule_without_directive_rejected():
    with pytest.raises(ValueError, match="single"):
        load_policy_dict({"app_id": "a", "version": "1", "rules": [{"id": "r"}]})


def test_load_policy_file_yaml(tmp_path):
    f = tmp_path / "policy.yml"
    f.write_text(
        "app_id: bot\n"
        "version: '2'\n"
        "rules:\n"
        "  - id: all\n"
        "    single: gpt-4o\n"
    )
    p = load_policy_file(f)
    assert p.app_id == "bot"
    assert p.rules[0].directive == SingleChoice("gpt-4o")


def test_load_policy_file_json(tmp_path):
    f = tmp_path / "policy.json"
    f.write_text(json.dumps(_POLICY_DOC))
    assert load_policy_file(f).version == "v1"


def test_load_policy_file_unknown_extension(tmp_path):
    f = tmp_path / "policy.toml"
    f.write_text("x = 1")
    with pytest.raises(ValueError, match="Unsupported"):
        load_policy_file(f)


def test_registry_and_subscription_documents(tmp_path):
    f = tmp_path / "models.yml"
    f.write_text(
        "models:\n"
        "  - {provider: openai, name: gpt-4o, cost_per_1m_input: 2.5, cost_per_1m_output: 10}\n"
        "  - {provider: local, name: llama-internal, compliance: internal}\n"
    )
    models = load_registry_file(f)
    assert [m.name for m in models] == ["gpt-4o", "llama-internal"]
    assert models[1].compliance == ComplianceTag.INTERNAL
    assert models[0].blended_price == pytest.approx(6.25)

    subs = load_subscriptions_dict({"subscriptions": [
        {"scope": "app", "target": "bot", "models": ["gpt-4o"]},
        {"scope": "tenant", "target": "acme", "models": ["llama-internal"], "enabled": False},
    ]})
    assert subs[0].scope == SubscriptionScope.APP
    assert subs[0].models == frozenset({"gpt-4o"})
    assert subs[1].enabled is False
    assert load_registry_dict({}) == []


# ─────────────────────────────────────────────────────────────────────────────
# PolicyValidator
# ─────────────────────────────────────────────────────────────────────────────

def test_valid_policy_has_no_problems():
    p = load_policy_dict(_POLICY_DOC)
    assert PolicyValidator.validate(p, _make_registry().snapshot()) == []


def test_weights_must_sum_to_one():
    p = Policy("a", "1", rules=(
        Rule("w", WeightedChoice((("gpt-4o", 0.6), ("claude-sonnet", 0.3)))),
    ))
    problems = PolicyValidator.validate(p, _make_registry().snapshot())
    assert any("sum to 0.9" in msg for msg in problems)


def test_weights_within_tolerance_accepted():
    p = Policy("a", "1", rules=(
        Rule("w", WeightedChoice((("gpt-4o", 0.1 + 0.2), ("claude-sonnet", 0.7)))),
    ))
    assert PolicyValidator.validate(p, _make_registry().snapshot()) == []


def test_non_positive_weight_rejected():
    p = Policy("a", "1", rules=(
        Rule("w", WeightedChoice((("gpt-4o", 1.0), ("claude-sonnet", 0.0)))),
    ))
    problems = PolicyValidator.validate(p, _make_registry().snapshot())
    assert any("positive" in msg for msg in problems)


def test_unknown_and_disabled_models_rejected():
    p = Policy("a", "1", rules=(
        Rule("r", OrderedChoice(("gpt-5-imaginary", "gpt-legacy"))),
    ))
    problems = PolicyValidator.validate(p, _make_registry().snapshot())
    assert "model 'gpt-5-imaginary' is not in the registry" in problems
    assert "model 'gpt-legacy' is disabled" in problems


def test_duplicate_rule_ids_and_bad_conditions_all_reported():
    p = Policy("a", "1", rules=(
        Rule("r", SingleChoice("gpt-4o"), (Condition("region", ConditionOp.EQ, "eu"),)),
        Rule("r", SingleChoice("gpt-4o"), (Condition("language", ConditionOp.IN, "en"),)),
        Rule("", SingleChoice("gpt-4o"), (Condition("token_estimate", ConditionOp.LT, "big"),)),
    ))
    problems = PolicyValidator.validate(p, _make_registry().snapshot())
    assert any("duplicate rule id" in msg for msg in problems)
    assert any("unknown condition field 'region'" in msg for msg in problems)
    assert any("needs a list value" in msg for msg in problems)
    assert any("needs a number" in msg for msg in problems)
    assert any("has no id" in msg for msg in problems)


def test_fallback_cycle_detected():
    fallbacks = {"gpt-4o": ("claude-sonnet",), "claude-sonnet": ("gpt-4o",)}
    cycle = find_fallback_cycle(fallbacks)
    assert cycle[0] == cycle[-1]
    assert set(cycle) == {"gpt-4o", "claude-sonnet"}

    p = Policy("a", "1", rules=(Rule("r", SingleChoice("gpt-4o")),), fallbacks=fallbacks)
    problems = PolicyValidator.validate(p, _make_registry().snapshot())
    assert any("cyclic fallback" in msg for msg in problems)


def test_acyclic_diamond_is_not_a_cycle():
    fallbacks = {"a": ("b", "c"), "b": ("d",), "c": ("d",)}
    assert find_fallback_cycle(fallbacks) == []


def test_firewall_detectors_and_patterns_validated():
    p = Policy("a", "1", rules=(Rule("r", SingleChoice("gpt-4o")),),
               firewall=FirewallConfig(detectors=("email", "passport"),
                                       custom_patterns=(("broken", "([a-z"),)))
    problems = PolicyValidator.validate(p, _make_registry().snapshot())
    assert "unknown firewall detector 'passport'" in problems
    assert any("custom pattern 'broken'" in msg for msg in problems)


# ─────────────────────────────────────────────────────────────────────────────
# Stores
# ─────────────────────────────────────────────────────────────────────────────

class TestPolicyStore:

    def test_publish_activates_latest_version(self):
        store = PolicyStore(_make_registry())
        v1 = Policy("bot", "v1", rules=(Rule("r", SingleChoice("gpt-4o")),))
        v2 = Policy("bot", "v2", rules=(Rule("r", SingleChoice("claude-sonnet")),))
        store.publish(v1)
        held = store.active("bot")
        store.publish(v2)
        assert store.active("bot") is v2
        assert held is v1
        assert store.get("bot", "v1") is v1
        assert store.versions("bot") == ["v1", "v2"]

    def test_invalid_policy_never_becomes_active(self):
        store = PolicyStore(_make_registry())
        bad = Policy("bot", "v1", rules=(
            Rule("w", WeightedChoice((("gpt-4o", 0.5), ("claude-sonnet", 0.4)))),
        ))
        with pytest.raises(InvalidPolicyError) as info:
            store.publish(bad)
        assert info.value.app_id == "bot"
        assert info.value.problems
        assert store.active("bot") is None

    def test_republishing_a_version_is_rejected(self):
        store = PolicyStore(_make_registry())
        p = Policy("bot", "v1", rules=(Rule("r", SingleChoice("gpt-4o")),))
        store.publish(p)
        with pytest.raises(InvalidPolicyError, match="already published"):
            store.publish(Policy("bot", "v1", rules=(Rule("r", SingleChoice("claude-sonnet")),)))
        assert store.active("bot") is p


def test_registry_publish_is_copy_on_write():
    registry = _make_registry()
    before = registry.snapshot()
    registry.publish(ModelDescriptor("openai", "gpt-4o", enabled=False))
    assert before["gpt-4o"].enabled is True
    assert registry.get("gpt-4o").enabled is False
    with pytest.raises(TypeError):
        before["x"] = None


def test_subscription_store_snapshot_isolated():
    store = SubscriptionStore()
    snap = store.snapshot()
    subs = load_subscriptions_dict({"subscriptions": [
        {"scope": "app", "target": "bot", "models": ["gpt-4o"]},
    ]})
    store.add(subs[0])
    assert snap == ()
    assert len(store.snapshot()) == 1
