"""
ComplianceFilter — data-handling constraints on candidate models.

Runs unconditionally, before health, budget and experiments. Anything it
removes can never be re-admitted downstream: later stages only narrow, and
the engine keeps this stage's output as the universe for minimal-completion.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from .models import CandidateSet, RequestContext
from .policy import ComplianceConfig

logger = logging.getLogger("governed_router.compliance")


@dataclass(frozen=True)
class ComplianceResult:
    candidates: CandidateSet
    removed: tuple[str, ...]
    reasons: tuple[str, ...]


class ComplianceFilter:

    def external_blocked(self, ctx: RequestContext, config: ComplianceConfig) -> list[str]:
        """Reasons why externally-hosted models are barred for this request (empty → allowed)."""
        reasons: list[str] = []
        if ctx.sensitivity > config.sensitivity_threshold:
            reasons.append(
                f"sensitivity {ctx.sensitivity.name.lower()} above "
                f"threshold {config.sensitivity_threshold.name.lower()}"
            )
        blocked = ctx.tags & config.blocked_tags
        if blocked:
            reasons.append(f"blocked tags {sorted(blocked)}")
        return reasons

    def is_eligible(self, descriptor, ctx: RequestContext, config: ComplianceConfig) -> bool:
        return not (descriptor.is_external and self.external_blocked(ctx, config))

    def apply(
        self,
        candidates: CandidateSet,
        ctx: RequestContext,
        config: ComplianceConfig,
    ) -> ComplianceResult:
        reasons = self.external_blocked(ctx, config)
        if not reasons:
            return ComplianceResult(candidates, (), ())

        kept = candidates.filtered(lambda c: not c.descriptor.is_external)
        removed = tuple(c.name for c in candidates if c.descriptor.is_external)
        if removed:
            logger.info("Compliance removed external models %s: %s", list(removed), "; ".join(reasons))
        return ComplianceResult(kept, removed, tuple(reasons))
