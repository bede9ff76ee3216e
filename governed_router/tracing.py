"""
OpenTelemetry spans for the routing pipeline.
=============================================
One root span per request (``route_request``) with a child per pipeline
stage, per provider call and per firewall pass. Attribute namespaces:
``router.*``, ``policy.*``, ``llm.*`` and ``firewall.*``.

Tracing is off by default: get_tracer() then hands out the opentelemetry-api
default tracer and every span is non-recording. RoutingEngine calls
configure_tracing() when its EngineConfig enables tracing:

    configure_tracing(TracingConfig(enabled=True, otlp_endpoint="http://collector:4317"))
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor, ConsoleSpanExporter, SimpleSpanProcessor, SpanProcessor,
)
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased

logger = logging.getLogger("governed_router.tracing")

_tracer: Optional[trace.Tracer] = None


@dataclass
class TracingConfig:
    enabled: bool = False
    service_name: str = "governed-router"
    otlp_endpoint: Optional[str] = None
    sample_rate: float = 1.0


def _span_processor(cfg: TracingConfig) -> SpanProcessor:
    if not cfg.otlp_endpoint:
        return SimpleSpanProcessor(ConsoleSpanExporter())
    # installed with the "otlp" extra
    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    return BatchSpanProcessor(OTLPSpanExporter(endpoint=cfg.otlp_endpoint, insecure=True))


def configure_tracing(cfg: TracingConfig) -> None:
    """Install (or, when disabled, bypass) the SDK TracerProvider."""
    global _tracer
    if not cfg.enabled:
        _tracer = trace.get_tracer("governed_router")
        return

    provider = TracerProvider(
        resource=Resource.create({"service.name": cfg.service_name}),
        sampler=TraceIdRatioBased(cfg.sample_rate),
    )
    provider.add_span_processor(_span_processor(cfg))
    trace.set_tracer_provider(provider)
    _tracer = provider.get_tracer(cfg.service_name)
    logger.info("Tracing enabled for %s (exporter=%s, sample_rate=%.2f)",
                cfg.service_name, cfg.otlp_endpoint or "console", cfg.sample_rate)


def get_tracer() -> trace.Tracer:
    global _tracer
    if _tracer is None:
        _tracer = trace.get_tracer("governed_router")
    return _tracer


@contextmanager
def _span(name: str, **attributes) -> Iterator[trace.Span]:
    with get_tracer().start_as_current_span(name) as span:
        for key, value in attributes.items():
            span.set_attribute(key, value)
        yield span


def traced_request(audit_id: str, app_id: str):
    """Root span; every stage, call and firewall span nests under it."""
    return _span("route_request", **{"router.audit_id": audit_id, "router.app_id": app_id})


def traced_stage(stage: str):
    return _span(f"stage:{stage}", **{"router.stage": stage})


def traced_policy_check(app_id: str, rule_count: int):
    return _span("policy_check", **{"policy.app_id": app_id, "policy.rule_count": rule_count})


def traced_llm_call(model: str, call_type: str):
    """call_type: route, minimal_completion, firewall_sanitize or firewall_judge."""
    return _span(f"llm_call:{call_type}", **{"llm.model": model, "llm.call_type": call_type})


def traced_firewall(action: str, detector_count: int):
    return _span("firewall", **{"firewall.action": action, "firewall.detectors": detector_count})
