"""
PolicyEvaluator — first-match rule evaluation producing a CandidateSet.
=======================================================================
Purely functional: evaluate() reads the request context, the policy and a
registry snapshot and returns a new CandidateSet. No state is mutated here.

Fail-closed: if no rule matches, the result is an empty CandidateSet and the
engine reports "no_eligible_model". There is no implicit default route; a
policy that wants one declares a catch-all rule with no conditions.

Output layout:
    [directive models (role=primary)] + [transitive policy fallbacks (role=fallback)]
Fallback models go through every later stage like any other candidate, which
is how the fallback chain is kept inside the compliance-eligible set.
"""
from __future__ import annotations

import logging
from collections import deque
from typing import Mapping, Optional

from .models import Candidate, CandidateRole, CandidateSet, ModelDescriptor, RequestContext
from .policy import Policy, Rule, WeightedChoice
from .tracing import traced_policy_check

logger = logging.getLogger("governed_router.policy_engine")


class PolicyEvaluator:
    """Stateless. The same instance is reused across all requests."""

    def match(self, ctx: RequestContext, policy: Policy) -> Optional[Rule]:
        for rule in policy.rules:
            if rule.matches(ctx):
                return rule
        return None

    def evaluate(
        self,
        ctx: RequestContext,
        policy: Policy,
        registry: Mapping[str, ModelDescriptor],
    ) -> CandidateSet:
        with traced_policy_check(policy.app_id, len(policy.rules)) as span:
            rule = self.match(ctx, policy)
            if rule is None:
                logger.debug("No rule in %s@%s matched request for tenant=%s",
                             policy.app_id, policy.version, ctx.tenant_id)
                span.set_attribute("policy.rule_id", "")
                return CandidateSet()

            directive = rule.directive
            candidates: list[Candidate] = []
            seen: set[str] = set()

            for name in directive.models():
                desc = registry.get(name)
                if desc is None or not desc.enabled:
                    logger.debug("Rule %s: model %s unavailable in registry snapshot",
                                 rule.rule_id, name)
                    continue
                weight = directive.weight_of(name) if isinstance(directive, WeightedChoice) else 1.0
                candidates.append(Candidate(desc, weight, rule.rule_id, CandidateRole.PRIMARY))
                seen.add(name)

            for name in fallback_closure(directive.models(), policy.fallbacks):
                if name in seen:
                    continue
                desc = registry.get(name)
                if desc is None or not desc.enabled:
                    continue
                candidates.append(Candidate(desc, 0.0, rule.rule_id, CandidateRole.FALLBACK))
                seen.add(name)

            span.set_attribute("policy.rule_id", rule.rule_id)
            span.set_attribute("policy.candidates", len(candidates))
            return CandidateSet(tuple(candidates), directive.kind, rule.rule_id)


def fallback_closure(start: list[str], fallbacks: Mapping[str, tuple[str, ...]]) -> list[str]:
    """
    Breadth-first walk of the fallback graph from the directive's models.

    Order: each starting model's fallbacks in declared order, then theirs.
    """
    order: list[str] = []
    visited = set(start)
    queue = deque(start)
    while queue:
        node = queue.popleft()
        for nxt in fallbacks.get(node, ()):
            if nxt not in visited:
                visited.add(nxt)
                order.append(nxt)
                queue.append(nxt)
    return order
