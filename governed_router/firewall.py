"""
Sensitive-Output Firewall — screens the final model output before it leaves.
============================================================================
Deterministic detectors run in the policy's order:

    credit_card  13-19 digit runs that pass the Luhn check
    ssn          US social security numbers (invalid area/group/serial excluded)
    email
    phone        US / international formats
    ip_address   IPv4
    secret       provider API keys, cloud access keys, bearer tokens, PEM keys
    custom       policy-supplied (name, regex) pairs

Outcome by effective action (request override, else policy default):

    no violations  → CLEAN
    flag           → FLAGGED, output unchanged, masked violations attached
    redraft        → sanitizing model rewrites the output → REDRAFTED
                     sanitizer missing / failing / timing out → FLAGGED, degraded

The optional contextual judge (a model) runs only when no deterministic
violation reaches conclusive_confidence. Its failure or timeout leaves the
deterministic result in place and marks the outcome degraded.

Raw matched spans never leave this module: Violation only carries a masked
sample (at most the last 4 characters visible, never more than half).
"""
from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Optional, Pattern

from .api_clients import ProviderAdapter
from .config import FirewallTuning
from .cost import compute_cost
from .errors import ProviderError
from .hooks import EventType, HookRegistry
from .metrics import MetricsSink, NullMetrics
from .models import (
    FirewallAction, FirewallState, ModelDescriptor, RequestContext, RequestOptions, TokenUsage,
)
from .policy import FirewallConfig
from .tracing import traced_firewall, traced_llm_call

logger = logging.getLogger("governed_router.firewall")

MASK_CHAR = "*"
MAX_VISIBLE = 4

SANITIZE_INSTRUCTION = (
    "You are a data-protection filter. Rewrite the user's text so that it keeps "
    "its meaning and formatting but contains no personal data, payment card "
    "numbers, government identifiers, contact details, network addresses or "
    "credentials. Replace each removed item with a short bracketed placeholder "
    "such as [REDACTED]. Return only the rewritten text."
)

JUDGE_INSTRUCTION = (
    "You review text for sensitive information that pattern matching can miss "
    "(personal data described in prose, confidential identifiers, credentials). "
    'Answer with JSON only: {"violations": [{"type": "<category>", '
    '"excerpt": "<exact text>", "confidence": <0..1>}]}. '
    'Answer {"violations": []} when the text is clean.'
)


def mask_sample(span: str) -> str:
    """Mask a sensitive span, keeping at most 4 trailing chars and never more than half."""
    visible = min(MAX_VISIBLE, len(span) // 2)
    if visible <= 0:
        return MASK_CHAR * len(span)
    return MASK_CHAR * (len(span) - visible) + span[-visible:]


def luhn_valid(digits: str) -> bool:
    if not digits.isdigit() or not 13 <= len(digits) <= 19:
        return False
    total = 0
    for i, ch in enumerate(reversed(digits)):
        n = int(ch)
        if i % 2 == 1:
            n *= 2
            if n > 9:
                n -= 9
        total += n
    return total % 10 == 0


@dataclass(frozen=True)
class Violation:
    detector: str
    masked_sample: str
    start: int
    end: int
    confidence: float
    source: str = "deterministic"      # or "contextual"

    def to_dict(self) -> dict:
        return {
            "detector": self.detector,
            "masked_sample": self.masked_sample,
            "start": self.start,
            "end": self.end,
            "confidence": self.confidence,
            "source": self.source,
        }


# ─────────────────────────────────────────────────────────────────────────────
# Deterministic detectors
# ─────────────────────────────────────────────────────────────────────────────

class PatternDetector:
    """Regex detector with an optional post-match validator on the matched text."""

    def __init__(self, name: str, patterns: list[Pattern], confidence: float,
                 validator: Optional[Callable[[str], bool]] = None) -> None:
        self.name = name
        self.patterns = patterns
        self.confidence = confidence
        self.validator = validator

    def scan(self, text: str) -> list[Violation]:
        found: list[Violation] = []
        seen: set[tuple[int, int]] = set()
        for pattern in self.patterns:
            for m in pattern.finditer(text):
                span = (m.start(), m.end())
                if span in seen:
                    continue
                raw = m.group(0)
                if self.validator is not None and not self.validator(raw):
                    continue
                seen.add(span)
                found.append(Violation(self.name, mask_sample(raw), m.start(), m.end(),
                                       self.confidence))
        return found


def _card_digits_valid(raw: str) -> bool:
    return luhn_valid(re.sub(r"[ -]", "", raw))


BUILTIN_DETECTORS: dict[str, PatternDetector] = {
    "credit_card": PatternDetector(
        "credit_card",
        [re.compile(r"(?<!\d)(?:\d[ -]?){12,18}\d(?!\d)")],
        0.95,
        validator=_card_digits_valid,
    ),
    "ssn": PatternDetector(
        "ssn",
        [re.compile(r"\b(?!000|666|9\d\d)\d{3}-(?!00)\d{2}-(?!0000)\d{4}\b")],
        0.9,
    ),
    "email": PatternDetector(
        "email",
        [re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")],
        0.95,
    ),
    "phone": PatternDetector(
        "phone",
        [
            re.compile(r"(?<![\d-])(?:\+?1[-.\s]?)?\(?\d{3}\)?[-.\s]\d{3}[-.\s]\d{4}(?![\d-])"),
            re.compile(r"(?<!\w)\+\d{1,3}[-.\s]?\d{4,14}\b"),
        ],
        0.7,
    ),
    "ip_address": PatternDetector(
        "ip_address",
        [re.compile(r"\b(?:(?:25[0-5]|2[0-4]\d|[01]?\d\d?)\.){3}(?:25[0-5]|2[0-4]\d|[01]?\d\d?)\b")],
        0.8,
    ),
    "secret": PatternDetector(
        "secret",
        [
            re.compile(r"\bsk-(?:ant-|proj-)?[A-Za-z0-9_-]{20,}"),
            re.compile(r"\bAKIA[0-9A-Z]{16}\b"),
            re.compile(r"\bgh[pousr]_[A-Za-z0-9]{20,}"),
            re.compile(r"\bxox[abpr]-[A-Za-z0-9-]{10,}"),
            re.compile(r"Bearer\s+[A-Za-z0-9._~+/-]{20,}=*"),
            re.compile(r"-----BEGIN (?:RSA |EC |OPENSSH )?PRIVATE KEY-----"),
        ],
        0.95,
    ),
}

CUSTOM_CONFIDENCE = 0.9


def build_detectors(config: FirewallConfig) -> list[PatternDetector]:
    detectors = [BUILTIN_DETECTORS[name] for name in config.detectors if name in BUILTIN_DETECTORS]
    for name, pattern in config.custom_patterns:
        detectors.append(PatternDetector(name, [re.compile(pattern)], CUSTOM_CONFIDENCE))
    return detectors


# ─────────────────────────────────────────────────────────────────────────────
# Model-backed helpers
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ModelCall:
    text: str
    usage: TokenUsage
    cost_usd: float
    latency_ms: float


class ModelJudgeDetector:
    """Contextual detector: asks a model to list sensitive excerpts as JSON."""

    name = "contextual"

    def __init__(self, adapter: ProviderAdapter, descriptor: ModelDescriptor,
                 options: Optional[RequestOptions] = None) -> None:
        self._adapter = adapter
        self.descriptor = descriptor
        self._options = options or RequestOptions(max_tokens=512, temperature=0.0)

    async def detect(self, text: str) -> tuple[list[Violation], ModelCall]:
        with traced_llm_call(self.descriptor.name, "firewall_judge"):
            resp = await self._adapter.invoke(self.descriptor, text, self._options,
                                              system=JUDGE_INSTRUCTION)
        call = ModelCall(resp.text, resp.usage, compute_cost(self.descriptor, resp.usage),
                         resp.latency_ms)
        return self.parse(resp.text, text), call

    @staticmethod
    def parse(answer: str, text: str) -> list[Violation]:
        start, end = answer.find("{"), answer.rfind("}")
        if start < 0 or end < start:
            raise ValueError("judge answer is not JSON")
        data = json.loads(answer[start:end + 1])
        out: list[Violation] = []
        for item in data.get("violations") or []:
            excerpt = str(item.get("excerpt", ""))
            if not excerpt:
                continue
            pos = text.find(excerpt)
            out.append(Violation(
                detector=f"contextual:{item.get('type', 'unspecified')}",
                masked_sample=mask_sample(excerpt),
                start=pos,
                end=pos + len(excerpt) if pos >= 0 else -1,
                confidence=float(item.get("confidence", 0.5)),
                source="contextual",
            ))
        return out


class SanitizingRewriter:
    """Rewrites flagged output through a model under the fixed safety instruction."""

    def __init__(self, adapter: ProviderAdapter, descriptor: ModelDescriptor,
                 options: Optional[RequestOptions] = None) -> None:
        self._adapter = adapter
        self.descriptor = descriptor
        self._options = options

    async def rewrite(self, text: str, max_tokens: int) -> ModelCall:
        options = self._options or RequestOptions(max_tokens=max_tokens, temperature=0.0)
        with traced_llm_call(self.descriptor.name, "firewall_sanitize"):
            resp = await self._adapter.invoke(self.descriptor, text, options,
                                              system=SANITIZE_INSTRUCTION)
        if not resp.text.strip():
            raise ValueError("sanitizer returned empty output")
        return ModelCall(resp.text, resp.usage, compute_cost(self.descriptor, resp.usage),
                         resp.latency_ms)


# ─────────────────────────────────────────────────────────────────────────────
# OutputFirewall
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class FirewallOutcome:
    state: FirewallState
    output: str
    violations: tuple[Violation, ...] = ()
    action: Optional[FirewallAction] = None
    sanitizing_model: Optional[str] = None
    contextual_model: Optional[str] = None
    degraded: bool = False
    degraded_reason: Optional[str] = None
    usage: TokenUsage = field(default_factory=TokenUsage)
    cost_usd: float = 0.0
    latency_ms: float = 0.0

    @property
    def redrafted(self) -> bool:
        return self.state == FirewallState.REDRAFTED

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "action": self.action.value if self.action else None,
            "violations": [v.to_dict() for v in self.violations],
            "sanitizing_model": self.sanitizing_model,
            "contextual_model": self.contextual_model,
            "degraded": self.degraded,
            "degraded_reason": self.degraded_reason,
            "input_tokens": self.usage.input_tokens,
            "output_tokens": self.usage.output_tokens,
            "cost_usd": self.cost_usd,
            "latency_ms": round(self.latency_ms, 3),
        }


ModelResolver = Callable[[str], Optional[ModelDescriptor]]


class OutputFirewall:
    """
    Stateless apart from its collaborators; one instance serves all requests.

    ``resolve_model`` maps a policy's sanitizing/contextual model name to a
    descriptor the request may use (None → unavailable for this request).
    """

    def __init__(
        self,
        adapter: ProviderAdapter,
        tuning: Optional[FirewallTuning] = None,
        hooks: Optional[HookRegistry] = None,
        metrics: Optional[MetricsSink] = None,
    ) -> None:
        self._adapter = adapter
        self.tuning = tuning or FirewallTuning()
        self._hooks = hooks
        self._metrics = metrics or NullMetrics()

    def scan(self, text: str, config: FirewallConfig) -> list[Violation]:
        violations: list[Violation] = []
        for detector in build_detectors(config):
            violations.extend(detector.scan(text))
        return violations

    async def screen(
        self,
        text: str,
        ctx: RequestContext,
        config: FirewallConfig,
        resolve_model: ModelResolver,
        audit_id: str = "",
    ) -> FirewallOutcome:
        action = ctx.options.firewall_action or config.default_action
        with traced_firewall(action.value, len(config.detectors) + len(config.custom_patterns)) as span:
            outcome = await self._screen(text, ctx, config, resolve_model, action)
            span.set_attribute("firewall.state", outcome.state.value)
            span.set_attribute("firewall.violations", len(outcome.violations))
            span.set_attribute("firewall.degraded", outcome.degraded)

        self._metrics.increment("router_firewall_total",
                                {"app": ctx.app_id, "reason": outcome.state.value})
        if outcome.degraded:
            self._metrics.increment("router_firewall_total",
                                    {"app": ctx.app_id, "reason": "degraded"})
        if outcome.violations:
            logger.warning(
                "[%s] firewall %s: %s", audit_id, outcome.state.value,
                ", ".join(f"{v.detector}={v.masked_sample}" for v in outcome.violations),
            )
        if self._hooks is not None and outcome.state != FirewallState.CLEAN:
            self._hooks.fire(EventType.FIREWALL_ACTION, audit_id=audit_id,
                             state=outcome.state.value, violations=len(outcome.violations),
                             degraded=outcome.degraded)
        return outcome

    async def _screen(self, text, ctx, config, resolve_model, action) -> FirewallOutcome:
        violations = self.scan(text, config)
        usage = TokenUsage()
        cost = 0.0
        latency = 0.0
        degraded_reason: Optional[str] = None
        judge_name: Optional[str] = None

        conclusive = any(v.confidence >= self.tuning.conclusive_confidence for v in violations)
        if not conclusive and config.contextual_model:
            judge_desc = resolve_model(config.contextual_model)
            if judge_desc is None:
                degraded_reason = f"contextual model {config.contextual_model} unavailable"
            else:
                judge_name = judge_desc.name
                try:
                    found, call = await asyncio.wait_for(
                        ModelJudgeDetector(self._adapter, judge_desc).detect(text),
                        timeout=self.tuning.contextual_timeout_s,
                    )
                except asyncio.TimeoutError:
                    degraded_reason = "contextual judge timed out"
                except Exception as exc:
                    degraded_reason = f"contextual judge failed: {_describe(exc)}"
                else:
                    violations.extend(found)
                    usage, cost, latency = usage + call.usage, cost + call.cost_usd, latency + call.latency_ms
            if degraded_reason:
                logger.warning("Firewall degraded to deterministic results: %s", degraded_reason)

        if not violations:
            return FirewallOutcome(
                FirewallState.CLEAN, text, (), None, None, judge_name,
                degraded_reason is not None, degraded_reason, usage, cost, latency,
            )

        if action == FirewallAction.REDRAFT:
            sanitizer = resolve_model(config.sanitizing_model) if config.sanitizing_model else None
            if sanitizer is None:
                reason = "no sanitizing model available"
            else:
                try:
                    call = await asyncio.wait_for(
                        SanitizingRewriter(self._adapter, sanitizer).rewrite(
                            text, max(ctx.options.max_tokens, len(text) // 2)),
                        timeout=self.tuning.sanitizer_timeout_s,
                    )
                except asyncio.TimeoutError:
                    reason = f"sanitizer {sanitizer.name} timed out"
                except Exception as exc:
                    reason = f"sanitizer {sanitizer.name} failed: {_describe(exc)}"
                else:
                    return FirewallOutcome(
                        FirewallState.REDRAFTED, call.text, tuple(violations), action,
                        sanitizer.name, judge_name,
                        degraded_reason is not None, degraded_reason,
                        usage + call.usage, cost + call.cost_usd, latency + call.latency_ms,
                    )
            logger.warning("Redraft unavailable, output flagged instead: %s", reason)
            degraded_reason = reason if degraded_reason is None else f"{degraded_reason}; {reason}"

        return FirewallOutcome(
            FirewallState.FLAGGED, text, tuple(violations), action, None, judge_name,
            degraded_reason is not None, degraded_reason, usage, cost, latency,
        )


def _describe(exc: BaseException) -> str:
    if isinstance(exc, ProviderError):
        return exc.error_class.value
    return type(exc).__name__
