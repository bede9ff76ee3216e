"""
Governed Router — Core Models & Types
=====================================
Request context, model descriptors, candidate sets and the small enums
shared by every pipeline stage.

All request-scoped types are frozen dataclasses. Stages never mutate a
CandidateSet in place: they return a new one via with_candidates(), which
is what keeps the pipeline a sequence of pure functions over one shape.
"""
from __future__ import annotations

import hashlib
from dataclasses import dataclass, field, replace
from enum import Enum, IntEnum
from typing import Optional


# ─────────────────────────────────────────────────────────────────────────────
# Enums
# ─────────────────────────────────────────────────────────────────────────────

class Sensitivity(IntEnum):
    """Declared data-sensitivity level of a request. Ordered."""
    LOW = 0
    MEDIUM = 1
    HIGH = 2
    RESTRICTED = 3

    @classmethod
    def parse(cls, value: "str | int | Sensitivity") -> "Sensitivity":
        if isinstance(value, Sensitivity):
            return value
        if isinstance(value, int):
            return cls(value)
        return cls[str(value).strip().upper()]


class ComplianceTag(str, Enum):
    INTERNAL = "internal"
    EXTERNAL = "external"


class DirectiveKind(str, Enum):
    SINGLE = "single"
    WEIGHTED = "weighted"
    ORDERED = "ordered"


class CandidateRole(str, Enum):
    PRIMARY = "primary"     # came from the matching rule's directive
    FALLBACK = "fallback"   # came from the policy fallback graph


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class SubscriptionScope(str, Enum):
    TENANT = "tenant"
    APP = "app"
    TEAM = "team"


class FirewallAction(str, Enum):
    FLAG = "flag"
    REDRAFT = "redraft"


class FirewallState(str, Enum):
    CLEAN = "clean"
    FLAGGED = "flagged"
    REDRAFTED = "redrafted"


class TraceStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    POLICY_DENIED = "policy_denied"
    FAILED = "failed"
    CLIENT_CANCELLED = "client_cancelled"


# ─────────────────────────────────────────────────────────────────────────────
# Registry types
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ModelDescriptor:
    """
    Identifies one deployable model and carries its pricing and compliance
    metadata. Owned by the registry; the engine only reads snapshots.

    ``name`` is the registry key and the identifier used by policies,
    subscriptions and traces.
    """
    provider: str
    name: str
    version: str = "latest"
    cost_per_1m_input: float = 0.0
    cost_per_1m_output: float = 0.0
    capabilities: frozenset[str] = frozenset()
    compliance: ComplianceTag = ComplianceTag.EXTERNAL
    enabled: bool = True

    @property
    def health_key(self) -> tuple[str, str]:
        return (self.provider, self.name)

    @property
    def blended_price(self) -> float:
        """Mean of input and output price per 1M tokens. Used for cost ordering."""
        return (self.cost_per_1m_input + self.cost_per_1m_output) / 2.0

    @property
    def is_external(self) -> bool:
        return self.compliance == ComplianceTag.EXTERNAL

    def estimate_cost(self, input_tokens: int, output_tokens: int) -> float:
        """Compute USD cost for the given token usage."""
        return (
            input_tokens * self.cost_per_1m_input
            + output_tokens * self.cost_per_1m_output
        ) / 1_000_000


# ─────────────────────────────────────────────────────────────────────────────
# Request types
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class RequestOptions:
    max_tokens: int = 1024
    temperature: float = 0.3
    firewall_action: Optional[FirewallAction] = None   # overrides policy default


@dataclass(frozen=True)
class RequestContext:
    """
    Immutable per-request snapshot. Built once at ingress by the engine and
    read by every stage; predicates address its fields by name.
    """
    tenant_id: str
    app_id: str
    team_id: Optional[str] = None
    user_role: str = "user"
    sensitivity: Sensitivity = Sensitivity.LOW
    token_estimate: int = 0
    language: str = "en"
    tags: frozenset[str] = frozenset()
    options: RequestOptions = field(default_factory=RequestOptions)
    request_key: Optional[str] = None

    def stable_key(self) -> str:
        """Key used for deterministic experiment bucketing."""
        if self.request_key:
            return self.request_key
        return f"{self.tenant_id}:{self.app_id}:{self.team_id or ''}:{self.user_role}"


@dataclass(frozen=True)
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            self.input_tokens + other.input_tokens,
            self.output_tokens + other.output_tokens,
        )


def estimate_tokens(text: str) -> int:
    """Rough token estimate (≈4 characters per token) used when the caller gives none."""
    return max(1, len(text) // 4) if text else 0


# ─────────────────────────────────────────────────────────────────────────────
# Candidates
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Candidate:
    descriptor: ModelDescriptor
    weight: float
    rule_id: str
    role: CandidateRole = CandidateRole.PRIMARY
    probe: bool = False   # circuit was half-open at the gate; probe is taken at invocation

    @property
    def name(self) -> str:
        return self.descriptor.name


@dataclass(frozen=True)
class CandidateSet:
    """
    Ordered candidates plus the directive kind and the rule that produced them.

    Order is significant: for ordered/single directives it is the try order,
    and it is the tie-break order for weighted draws.
    """
    candidates: tuple[Candidate, ...] = ()
    kind: DirectiveKind = DirectiveKind.ORDERED
    rule_id: Optional[str] = None

    def __len__(self) -> int:
        return len(self.candidates)

    def __iter__(self):
        return iter(self.candidates)

    def __bool__(self) -> bool:
        return bool(self.candidates)

    @property
    def names(self) -> list[str]:
        return [c.name for c in self.candidates]

    @property
    def primaries(self) -> list[Candidate]:
        return [c for c in self.candidates if c.role == CandidateRole.PRIMARY]

    @property
    def fallbacks(self) -> list[Candidate]:
        return [c for c in self.candidates if c.role == CandidateRole.FALLBACK]

    def get(self, name: str) -> Optional[Candidate]:
        for c in self.candidates:
            if c.name == name:
                return c
        return None

    def with_candidates(
        self,
        candidates: "list[Candidate] | tuple[Candidate, ...]",
        kind: Optional[DirectiveKind] = None,
    ) -> "CandidateSet":
        return replace(
            self,
            candidates=tuple(candidates),
            kind=kind if kind is not None else self.kind,
        )

    def filtered(self, keep) -> "CandidateSet":
        """Return a new set keeping candidates for which keep(candidate) is True."""
        return self.with_candidates([c for c in self.candidates if keep(c)])


def stable_hash(*parts: str) -> int:
    """64-bit integer from a SHA-256 over the joined parts. Deterministic across runs."""
    digest = hashlib.sha256(":".join(parts).encode("utf-8")).hexdigest()
    return int(digest[:16], 16)
