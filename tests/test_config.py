"""
Tests for EngineConfig: defaults, from_dict, from_env and file loading.
"""
from __future__ import annotations

import json

from governed_router.config import EngineConfig, load_engine_config


def test_defaults():
    cfg = EngineConfig()
    assert cfg.retry.max_attempts == 3
    assert cfg.circuit.failure_threshold == 5
    assert cfg.firewall.conclusive_confidence == 0.9
    assert cfg.minimal_completion is False
    assert cfg.tracing.enabled is False


def test_from_dict_nested_sections_and_unknown_keys():
    cfg = EngineConfig.from_dict({
        "retry": {"max_attempts": 2, "backoff_base_s": 0.0, "bogus": 1},
        "circuit": {"cooldown_seconds": 5},
        "firewall": {"contextual_timeout_s": 0.5},
        "call_timeout_s": 12,
        "minimal_completion": True,
        "unknown_section": {"x": 1},
    })
    assert cfg.retry.max_attempts == 2
    assert cfg.retry.backoff_base_s == 0.0
    assert cfg.retry.backoff_max_s == 5.0
    assert cfg.circuit.cooldown_seconds == 5
    assert cfg.firewall.contextual_timeout_s == 0.5
    assert cfg.call_timeout_s == 12.0
    assert cfg.minimal_completion is True


def test_from_env_mapping():
    cfg = EngineConfig.from_env(env={
        "GOVROUTER_MAX_ATTEMPTS": "4",
        "GOVROUTER_CALL_TIMEOUT_S": "7.5",
        "GOVROUTER_MINIMAL_COMPLETION": "yes",
        "GOVROUTER_CIRCUIT_COOLDOWN_S": "12",
        "GOVROUTER_TRACING": "0",
        "GOVROUTER_BACKOFF_MAX_S": "",
        "UNRELATED": "1",
    })
    assert cfg.retry.max_attempts == 4
    assert cfg.call_timeout_s == 7.5
    assert cfg.minimal_completion is True
    assert cfg.circuit.cooldown_seconds == 12.0
    assert cfg.tracing.enabled is False
    assert cfg.retry.backoff_max_s == 5.0


def test_dotenv_overrides_empty_system_variable(tmp_path, monkeypatch):
    env_file = tmp_path / ".env"
    env_file.write_text("GOVROUTER_LINEAGE_TIMEOUT_S=0.25\n")
    monkeypatch.setenv("GOVROUTER_LINEAGE_TIMEOUT_S", "")
    cfg = EngineConfig.from_env(dotenv_path=env_file)
    assert cfg.lineage_timeout_s == 0.25


def test_load_engine_config_yaml(tmp_path):
    f = tmp_path / "router.yml"
    f.write_text(
        "retry:\n"
        "  max_attempts: 1\n"
        "circuit:\n"
        "  failure_threshold: 9\n"
        "lineage_timeout_s: 0.5\n"
    )
    cfg = load_engine_config(f)
    assert cfg.retry.max_attempts == 1
    assert cfg.circuit.failure_threshold == 9
    assert cfg.lineage_timeout_s == 0.5


def test_to_dict_round_trips_through_json(tmp_path):
    cfg = EngineConfig.from_dict({"retry": {"max_attempts": 6}})
    f = tmp_path / "router.json"
    f.write_text(json.dumps(cfg.to_dict()))
    assert load_engine_config(f).retry.max_attempts == 6
