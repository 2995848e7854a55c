"""
promo_engine/promotions/calculator.py
-------------------------------------
Discount arithmetic.

`DiscountType` is a closed enum and `_HANDLERS` maps every member to one
handler; the module refuses to import if a member is missing, so a new
discount shape cannot be added without its arithmetic.

All amounts are Decimal, rounded half-up to cents once per promotion,
then capped by max_discount_amount and by the matched base.

Sequencing (apply_discounts):
1. Item-scoped promotions compute on original line prices. A cart line
   claimed by an earlier accepted promotion is off limits to later ones.
2. Cart-scoped promotions compute on what is left of the subtotal after
   every earlier discount, so no currency unit is discounted twice.
"""
from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, List, Sequence, Tuple

from promo_engine.promotions.matcher import Candidate, MatchedLine, TargetMatch, match_targets
from promo_engine.promotions.rules import (
    Cart, CandidateStatus, DiscountType, ErrorCode, PromoError, PromotionRule, money,
)


ZERO = Decimal('0')
HUNDRED = Decimal('100')


@dataclass(frozen=True)
class AppliedDiscount:
    """One accepted promotion with its final amount."""
    candidate: Candidate
    amount:    Decimal
    base:      Decimal
    match:     TargetMatch


# ── Helpers ───────────────────────────────────────────────────────

def lines_total(lines: Iterable[MatchedLine]) -> Decimal:
    return money(sum((line.total for line in lines), ZERO))


def _cheapest_units_total(lines: Iterable[MatchedLine], units: int) -> Decimal:
    """Price of the `units` cheapest units across `lines`."""
    total = ZERO
    for line in sorted(lines, key=lambda l: (l.unit_price, l.line_index)):
        if units <= 0:
            break
        take = min(line.quantity, units)
        total += line.unit_price * take
        units -= take
    return total


def _lines_for(match: TargetMatch, target_index: int) -> List[MatchedLine]:
    return [line for line in match.lines if line.target_index == target_index]


# ── Individual handlers ───────────────────────────────────────────

def _percentage(rule: PromotionRule, match: TargetMatch, base: Decimal) -> Decimal:
    """`discount_value`% of the base."""
    return base * rule.discount_value / HUNDRED


def _fixed_amount(rule: PromotionRule, match: TargetMatch, base: Decimal) -> Decimal:
    """Flat `discount_value` off, once per promotion (capped at base later)."""
    return rule.discount_value


def _fixed_price(rule: PromotionRule, match: TargetMatch, base: Decimal) -> Decimal:
    """
    Sell the matched units at a set price.

    Per-item mode: targets with a `discounted_price` sell each claimed
    unit at that price.
    Bundle mode: `sets` bundles at `fixed_price` each, where a bundle is
    `required_quantity` units of every required target (cheapest first).
    Cart-scoped: the whole remaining cart at `fixed_price`.
    """
    if not rule.is_item_scoped:
        return max(base - rule.fixed_price, ZERO)

    if any(item.discounted_price is not None for item in rule.items):
        discount = ZERO
        for line in match.lines:
            price = rule.items[line.target_index].discounted_price
            if price is not None:
                discount += max(line.unit_price - price, ZERO) * line.quantity
        return discount

    required = [i for i, item in enumerate(rule.items) if item.is_required]
    if required:
        bundle_base = sum(
            (_cheapest_units_total(_lines_for(match, i), match.sets * rule.items[i].required_quantity)
             for i in required),
            ZERO,
        )
    else:
        bundle_base = base
    return max(bundle_base - rule.fixed_price * match.sets, ZERO)


def _free_item(rule: PromotionRule, match: TargetMatch, base: Decimal) -> Decimal:
    """
    Buy X get Y: per target, every (required + free) units make one
    cycle, and the cheapest `cycles × free_quantity` units are free.
    """
    discount = ZERO
    for index, item in enumerate(rule.items):
        if item.free_quantity <= 0:
            continue
        lines = _lines_for(match, index)
        units = sum(line.quantity for line in lines)
        cycle = item.required_quantity + item.free_quantity
        free_units = (units // cycle) * item.free_quantity
        discount += _cheapest_units_total(lines, free_units)
    return discount


_HANDLERS = {
    DiscountType.PERCENTAGE:   _percentage,
    DiscountType.FIXED_AMOUNT: _fixed_amount,
    DiscountType.FIXED_PRICE:  _fixed_price,
    DiscountType.FREE_ITEM:    _free_item,
}

_missing = set(DiscountType) - set(_HANDLERS)
if _missing:
    raise ImportError(f'No discount handler for: {sorted(m.value for m in _missing)}')


# ── Public API ────────────────────────────────────────────────────

def compute_discount(rule: PromotionRule, match: TargetMatch, base: Decimal) -> Decimal:
    """Rounded, capped discount for `rule` against `base`."""
    if base <= ZERO:
        return money(ZERO)
    amount = money(_HANDLERS[rule.discount_type](rule, match, base))
    if rule.max_discount_amount is not None:
        amount = min(amount, rule.max_discount_amount)
    amount = min(amount, base)
    return money(max(amount, ZERO))


def estimate(candidate: Candidate, cart: Cart) -> Decimal:
    """Standalone dry-run discount, as if nothing else were applied."""
    rule = candidate.rule
    if rule.is_item_scoped:
        return compute_discount(rule, candidate.match, lines_total(candidate.match.lines))
    return compute_discount(rule, TargetMatch(sets=1), cart.subtotal)


def apply_discounts(accepted: Sequence[Candidate], cart: Cart) -> Tuple[List[AppliedDiscount], List[Candidate]]:
    """
    Compute final amounts for an accepted set.

    Returns:
        (applied, conflicts). Conflicts are item-scoped candidates whose
        requirement can no longer be met on unclaimed lines, and any
        candidate left with nothing to discount after earlier ones; they
        come back REJECTED with EXCLUSIVE_CONFLICT and claim no lines.
    """
    # Item-scoped first, cart-scoped last; stable within each group.
    ordered = sorted(accepted, key=lambda c: c.rule.is_cart_scoped)

    remaining = cart.subtotal
    claimed: frozenset = frozenset()
    applied: List[AppliedDiscount] = []
    conflicts: List[Candidate] = []

    for candidate in ordered:
        rule = candidate.rule
        if rule.is_item_scoped:
            match = match_targets(rule, cart, exclude=claimed) if claimed else candidate.match
            if match.error:
                conflicts.append(candidate.with_status(
                    CandidateStatus.REJECTED,
                    PromoError(ErrorCode.EXCLUSIVE_CONFLICT,
                               'Qualifying items are already discounted by another promotion.'),
                ))
                continue
            base = lines_total(match.lines)
        else:
            match = TargetMatch(sets=1)
            base = remaining

        amount = min(compute_discount(rule, match, base), remaining)
        if amount <= ZERO:
            conflicts.append(candidate.with_status(
                CandidateStatus.REJECTED,
                PromoError(ErrorCode.EXCLUSIVE_CONFLICT, 'Nothing is left to discount after other promotions.'),
            ))
            continue
        if rule.is_item_scoped:
            claimed = claimed | match.line_indexes
        remaining -= amount
        applied.append(AppliedDiscount(candidate=candidate, amount=amount, base=base, match=match))

    return applied, conflicts
