"""
promo_engine/promotions/resolver.py
-----------------------------------
Priority & combinability resolution.

Ordering of eligible candidates:
1. code-triggered before auto-apply,
2. priority, highest first,
3. dry-run discount estimate, largest first,
4. catalog position (stable).

A candidate whose estimate is zero discounts nothing on this cart and
is marked INELIGIBLE before the walk, so it can never block another.

Walking that order, a candidate is accepted when nothing is accepted
yet, or when it can combine and no exclusive promotion was accepted.
Everything else is REJECTED with EXCLUSIVE_CONFLICT. The accepted set is
then reordered so cart-scoped promotions come last, because their base
is the subtotal left after item discounts.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Iterable, List

from promo_engine.promotions.calculator import estimate
from promo_engine.promotions.matcher import Candidate
from promo_engine.promotions.rules import (
    Cart, CandidateStatus, ErrorCode, PromoError, TriggerKind,
)


@dataclass
class Resolution:
    ordered:   List[Candidate] = field(default_factory=list)   # eligible, in walk order
    accepted:  List[Candidate] = field(default_factory=list)   # application order
    rejected:  List[Candidate] = field(default_factory=list)
    estimates: Dict[int, Decimal] = field(default_factory=dict)

    @property
    def accepted_ids(self) -> List[int]:
        return [c.rule.id for c in self.accepted]


def sort_key(candidate: Candidate, estimated: Decimal):
    return (
        candidate.trigger is not TriggerKind.CODE,
        -candidate.rule.priority,
        -estimated,
        candidate.position,
    )


def resolve(candidates: Iterable[Candidate], cart: Cart) -> Resolution:
    """Select a conflict-free accepted set from the ELIGIBLE candidates."""
    eligible = [c for c in candidates if c.eligible]
    estimates = {c.rule.id: estimate(c, cart) for c in eligible}

    accepted: List[Candidate] = []
    rejected: List[Candidate] = [
        c.with_status(CandidateStatus.INELIGIBLE, PromoError(
            ErrorCode.MIN_ITEMS_NOT_MET, 'Nothing in this cart is discounted by this promotion.'))
        for c in eligible if estimates[c.rule.id] <= 0
    ]
    ordered = sorted(
        (c for c in eligible if estimates[c.rule.id] > 0),
        key=lambda c: sort_key(c, estimates[c.rule.id]),
    )
    exclusive_taken = False

    for candidate in ordered:
        if not accepted or (candidate.rule.can_combine_with_others and not exclusive_taken):
            accepted.append(candidate.with_status(CandidateStatus.ACCEPTED))
            if not candidate.rule.can_combine_with_others:
                exclusive_taken = True
            continue

        if exclusive_taken:
            message = f'Cannot be combined with "{accepted[0].rule.name}".'
        else:
            message = 'This promotion cannot be combined with other promotions.'
        rejected.append(candidate.with_status(
            CandidateStatus.REJECTED, PromoError(ErrorCode.EXCLUSIVE_CONFLICT, message),
        ))

    # Stable: item-scoped keep walk order, cart-scoped move to the end.
    accepted.sort(key=lambda c: c.rule.is_cart_scoped)

    return Resolution(ordered=ordered, accepted=accepted, rejected=rejected, estimates=estimates)
