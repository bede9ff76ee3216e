"""
Engine configuration.
=====================
Dataclass tree consumed by RoutingEngine and its components. Three ways in:

    EngineConfig()                                  # defaults
    EngineConfig.from_dict(yaml.safe_load(...))     # nested dict
    load_engine_config("router.yml")                # YAML or JSON file
    EngineConfig.from_env()                         # GOVROUTER_* env vars (+ .env)

Environment variables (all optional):
    GOVROUTER_MAX_ATTEMPTS            retries per candidate, including the first call
    GOVROUTER_BACKOFF_BASE_S          first backoff delay
    GOVROUTER_BACKOFF_MAX_S           backoff ceiling
    GOVROUTER_CALL_TIMEOUT_S          per provider call
    GOVROUTER_SANITIZER_TIMEOUT_S     firewall redraft call
    GOVROUTER_CONTEXTUAL_TIMEOUT_S    model-judged detector
    GOVROUTER_LINEAGE_TIMEOUT_S       lineage sink write
    GOVROUTER_MINIMAL_COMPLETION      "1"/"true" to enable the degrade mode
    GOVROUTER_CIRCUIT_FAILURE_THRESHOLD, GOVROUTER_CIRCUIT_WINDOW_S,
    GOVROUTER_CIRCUIT_COOLDOWN_S, GOVROUTER_CIRCUIT_P95_MS,
    GOVROUTER_CIRCUIT_SUSTAIN_S
    GOVROUTER_TRACING                 "1"/"true" to enable OTEL
    GOVROUTER_OTLP_ENDPOINT
"""
from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Mapping, Optional

from dotenv import load_dotenv

from .policy_dsl import read_document
from .tracing import TracingConfig

_ENV_PREFIX = "GOVROUTER_"


@dataclass
class RetryConfig:
    max_attempts: int = 3              # per candidate, first call included
    backoff_base_s: float = 0.2
    backoff_max_s: float = 5.0
    jitter: float = 0.5                # delay × uniform(1 - jitter, 1)


@dataclass
class CircuitConfig:
    window_seconds: float = 60.0
    failure_threshold: int = 5         # open when failures in window exceed this
    latency_p95_threshold_ms: float = 15_000.0
    latency_sustain_seconds: float = 30.0
    min_latency_samples: int = 5
    cooldown_seconds: float = 30.0


@dataclass
class FirewallTuning:
    conclusive_confidence: float = 0.9   # below this, deterministic results are inconclusive
    sanitizer_timeout_s: float = 10.0
    contextual_timeout_s: float = 2.0


@dataclass
class EngineConfig:
    retry: RetryConfig = field(default_factory=RetryConfig)
    circuit: CircuitConfig = field(default_factory=CircuitConfig)
    firewall: FirewallTuning = field(default_factory=FirewallTuning)
    tracing: TracingConfig = field(default_factory=TracingConfig)
    call_timeout_s: float = 30.0
    lineage_timeout_s: float = 2.0
    minimal_completion: bool = False

    # ── Constructors ─────────────────────────────────────────────────────────

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "EngineConfig":
        """Build from a nested dict. Unknown keys are ignored."""
        return cls(
            retry=_build(RetryConfig, d.get("retry")),
            circuit=_build(CircuitConfig, d.get("circuit")),
            firewall=_build(FirewallTuning, d.get("firewall")),
            tracing=_build(TracingConfig, d.get("tracing")),
            call_timeout_s=float(d.get("call_timeout_s", 30.0)),
            lineage_timeout_s=float(d.get("lineage_timeout_s", 2.0)),
            minimal_completion=bool(d.get("minimal_completion", False)),
        )

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None,
                 dotenv_path: Optional[str | Path] = None) -> "EngineConfig":
        """
        Build from GOVROUTER_* environment variables.

        When env is None, a .env file is loaded first (override=True: .env
        values win over empty system env vars) and os.environ is read.
        """
        if env is None:
            load_dotenv(dotenv_path=dotenv_path, override=True)
            env = os.environ

        def get(name: str, cast, default):
            raw = env.get(_ENV_PREFIX + name)
            if raw is None or raw == "":
                return default
            return cast(raw)

        cfg = cls()
        cfg.retry.max_attempts = get("MAX_ATTEMPTS", int, cfg.retry.max_attempts)
        cfg.retry.backoff_base_s = get("BACKOFF_BASE_S", float, cfg.retry.backoff_base_s)
        cfg.retry.backoff_max_s = get("BACKOFF_MAX_S", float, cfg.retry.backoff_max_s)
        cfg.call_timeout_s = get("CALL_TIMEOUT_S", float, cfg.call_timeout_s)
        cfg.lineage_timeout_s = get("LINEAGE_TIMEOUT_S", float, cfg.lineage_timeout_s)
        cfg.firewall.sanitizer_timeout_s = get(
            "SANITIZER_TIMEOUT_S", float, cfg.firewall.sanitizer_timeout_s)
        cfg.firewall.contextual_timeout_s = get(
            "CONTEXTUAL_TIMEOUT_S", float, cfg.firewall.contextual_timeout_s)
        cfg.minimal_completion = get("MINIMAL_COMPLETION", _truthy, cfg.minimal_completion)
        cfg.circuit.failure_threshold = get(
            "CIRCUIT_FAILURE_THRESHOLD", int, cfg.circuit.failure_threshold)
        cfg.circuit.window_seconds = get("CIRCUIT_WINDOW_S", float, cfg.circuit.window_seconds)
        cfg.circuit.cooldown_seconds = get("CIRCUIT_COOLDOWN_S", float, cfg.circuit.cooldown_seconds)
        cfg.circuit.latency_p95_threshold_ms = get(
            "CIRCUIT_P95_MS", float, cfg.circuit.latency_p95_threshold_ms)
        cfg.circuit.latency_sustain_seconds = get(
            "CIRCUIT_SUSTAIN_S", float, cfg.circuit.latency_sustain_seconds)
        cfg.tracing.enabled = get("TRACING", _truthy, cfg.tracing.enabled)
        cfg.tracing.otlp_endpoint = get("OTLP_ENDPOINT", str, cfg.tracing.otlp_endpoint)
        return cfg

    def to_dict(self) -> dict:
        return asdict(self)


def load_engine_config(path: str | Path) -> EngineConfig:
    """Load EngineConfig from a YAML or JSON file."""
    return EngineConfig.from_dict(read_document(path))


def _build(cls, raw: Optional[Mapping[str, Any]]):
    if not raw:
        return cls()
    known = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in raw.items() if k in known})


def _truthy(raw: str) -> bool:
    return str(raw).strip().lower() in ("1", "true", "yes", "on")
