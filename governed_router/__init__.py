"""
Governed Router
===============
Policy-governed routing of LLM requests across providers. A request is
matched against its app's versioned policy, narrowed by subscriptions,
compliance, provider health and budget, optionally overlaid by an
experiment, dispatched with retries and fallbacks, screened by an output
firewall, and recorded as one DecisionTrace.

Basic usage:
    from governed_router import (
        ModelRegistry, PolicyStore, SubscriptionStore, RoutingEngine, RouteRequest,
        build_adapter_from_env, load_policy_file, load_registry_file,
        load_subscriptions_file,
    )

    registry = ModelRegistry(load_registry_file("config/models.yml"))
    policies = PolicyStore(registry)
    policies.publish(load_policy_file("config/policies/support-bot.yml"))
    subs = SubscriptionStore(load_subscriptions_file("config/subscriptions.yml"))

    engine = RoutingEngine(registry, policies, subs, build_adapter_from_env())
    resp = asyncio.run(engine.route(RouteRequest(
        app_id="support-bot", tenant_id="acme", raw_input="...",
    )))
"""

from .models import (
    Candidate, CandidateRole, CandidateSet, CircuitState, ComplianceTag, DirectiveKind,
    FirewallAction, FirewallState, ModelDescriptor, RequestContext, RequestOptions,
    Sensitivity, SubscriptionScope, TokenUsage, TraceStatus,
)
from .errors import (
    DenyReason, ErrorClass, ExhaustedFallbackError, InvalidPolicyError, InvalidRequestError,
    PolicyDenyError, ProviderError, ProviderTerminalError, ProviderTransientError, RoutingError,
)
from .policy import (
    BudgetLimits, ComplianceConfig, Condition, ConditionOp, FirewallConfig,
    OrderedChoice, Policy, Rule, SingleChoice, Subscription, WeightedChoice,
)
from .policy_dsl import (
    PolicyValidator, load_policy_file, load_registry_file, load_subscriptions_file,
)
from .registry import ModelRegistry, PolicyStore, SubscriptionStore
from .config import EngineConfig, load_engine_config
from .api_clients import (
    AnthropicAdapter, OpenAIAdapter, ProviderAdapter, ProviderDispatcher, ProviderResponse,
    build_adapter_from_env,
)
from .audit import (
    DecisionTrace, InMemoryLineageSink, JsonlLineageSink, LineageRecorder, LineageSink,
    SqliteLineageSink,
)
from .cost import BudgetLedger
from .experiments import ExperimentDefinition, ExperimentOverlay, Guardrails, VariantDefinition, VariantMode
from .health import HealthTracker
from .hooks import EventType, HookRegistry
from .metrics import InMemoryMetrics, MetricsSink, PrometheusExporter
from .engine import RouteRequest, RouteResponse, RoutingEngine

__all__ = [
    # ── Engine ───────────────────────────────────────────────────────────────
    "RoutingEngine", "RouteRequest", "RouteResponse", "EngineConfig", "load_engine_config",
    # ── Data model ───────────────────────────────────────────────────────────
    "Candidate", "CandidateRole", "CandidateSet", "CircuitState", "ComplianceTag",
    "DirectiveKind", "FirewallAction", "FirewallState", "ModelDescriptor",
    "RequestContext", "RequestOptions", "Sensitivity", "SubscriptionScope",
    "TokenUsage", "TraceStatus",
    # ── Policy ───────────────────────────────────────────────────────────────
    "BudgetLimits", "ComplianceConfig", "Condition", "ConditionOp", "FirewallConfig",
    "OrderedChoice", "Policy", "Rule", "SingleChoice", "Subscription", "WeightedChoice",
    "PolicyValidator", "load_policy_file", "load_registry_file", "load_subscriptions_file",
    "ModelRegistry", "PolicyStore", "SubscriptionStore",
    # ── Errors ───────────────────────────────────────────────────────────────
    "DenyReason", "ErrorClass", "ExhaustedFallbackError", "InvalidPolicyError", "InvalidRequestError",
    "PolicyDenyError", "ProviderError", "ProviderTerminalError", "ProviderTransientError",
    "RoutingError",
    # ── Providers ────────────────────────────────────────────────────────────
    "AnthropicAdapter", "OpenAIAdapter", "ProviderAdapter", "ProviderDispatcher",
    "ProviderResponse", "build_adapter_from_env",
    # ── State & observability ────────────────────────────────────────────────
    "BudgetLedger", "HealthTracker", "ExperimentDefinition", "ExperimentOverlay",
    "Guardrails", "VariantDefinition", "VariantMode",
    "DecisionTrace", "LineageRecorder", "LineageSink", "InMemoryLineageSink",
    "JsonlLineageSink", "SqliteLineageSink",
    "EventType", "HookRegistry", "InMemoryMetrics", "MetricsSink", "PrometheusExporter",
]
