"""
SubscriptionResolver — scope-precedence allow-list intersection.

Default posture is deny-all: a request with no applicable enabled
subscription in any scope gets an empty CandidateSet.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from .models import CandidateSet, RequestContext, SubscriptionScope
from .policy import DEFAULT_PRECEDENCE, Subscription

logger = logging.getLogger("governed_router.subscriptions")


@dataclass(frozen=True)
class SubscriptionResolution:
    candidates: CandidateSet
    scope: Optional[SubscriptionScope]      # winning scope, None when nothing applied
    allowed: frozenset[str]


class SubscriptionResolver:

    def resolve(
        self,
        candidates: CandidateSet,
        ctx: RequestContext,
        subscriptions: Iterable[Subscription],
        precedence: tuple[SubscriptionScope, ...] = DEFAULT_PRECEDENCE,
    ) -> SubscriptionResolution:
        """
        Walk scopes in precedence order. The first scope with at least one
        enabled, applicable subscription wins; the union of that scope's
        allow-lists applies exclusively, lower scopes are ignored.
        """
        applicable = [s for s in subscriptions if s.enabled and s.applies_to(ctx)]

        for scope in precedence:
            in_scope = [s for s in applicable if s.scope == scope]
            if not in_scope:
                continue
            allowed = frozenset().union(*(s.models for s in in_scope))
            narrowed = candidates.filtered(lambda c: c.name in allowed)
            logger.debug("Subscription scope %s won: %d/%d candidates allowed",
                         scope.value, len(narrowed), len(candidates))
            return SubscriptionResolution(narrowed, scope, allowed)

        logger.debug("No subscription for tenant=%s app=%s team=%s — deny-all",
                     ctx.tenant_id, ctx.app_id, ctx.team_id)
        return SubscriptionResolution(candidates.with_candidates(()), None, frozenset())
