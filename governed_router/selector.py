"""
Candidate Selector — picks the recommended model and orders the fallback chain.

Deterministic for a given (CandidateSet, seed): the seed is derived from the
request's audit id, so replaying a trace reproduces the selection.

  weighted        primaries sorted by (-weight, -health score, position),
                  weights renormalised, one draw from random.Random(seed);
                  chain = remaining primaries in that order, then fallbacks
  ordered/single  head of the set is recommended, the rest in order
"""
from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Callable, Optional

from .models import Candidate, CandidateSet, DirectiveKind, stable_hash

ScoreFn = Callable[[Candidate], float]


@dataclass(frozen=True)
class Selection:
    recommended: Candidate
    fallback_chain: tuple[Candidate, ...]

    @property
    def chain(self) -> tuple[Candidate, ...]:
        """Full try order: recommended first."""
        return (self.recommended, *self.fallback_chain)

    @property
    def names(self) -> list[str]:
        return [c.name for c in self.chain]


def seed_from_audit_id(audit_id: str) -> int:
    return stable_hash("selection", audit_id)


class CandidateSelector:

    def select(
        self,
        candidates: CandidateSet,
        seed: int,
        score_fn: Optional[ScoreFn] = None,
    ) -> Selection:
        if not candidates:
            raise ValueError("CandidateSelector.select() called with an empty candidate set")

        primaries = candidates.primaries
        if candidates.kind != DirectiveKind.WEIGHTED or not primaries:
            chain = candidates.candidates
            return Selection(chain[0], tuple(chain[1:]))

        score = score_fn or (lambda _c: 1.0)
        ranked = [
            c for _, c in sorted(
                enumerate(primaries),
                key=lambda ic: (-ic[1].weight, -score(ic[1]), ic[0]),
            )
        ]
        chosen = self._draw(ranked, seed)
        remainder = [c for c in ranked if c is not chosen]
        return Selection(chosen, tuple(remainder + candidates.fallbacks))

    @staticmethod
    def _draw(ranked: list[Candidate], seed: int) -> Candidate:
        total = sum(max(c.weight, 0.0) for c in ranked)
        if total <= 0:
            return ranked[0]
        point = random.Random(seed).random()
        cumulative = 0.0
        last_positive = ranked[0]
        for cand in ranked:
            if cand.weight <= 0:
                continue
            last_positive = cand
            cumulative += cand.weight / total
            if point < cumulative:
                return cand
        return last_positive
