"""
promo_engine/promotions/matcher.py
----------------------------------
Eligibility matching: one Candidate per catalog promotion.

Each promotion is checked independently against the cart and context.
Ineligibility is never an exception: the candidate simply carries a
`PromoError` reason, first failing check wins, in this order:

  date window → day of week → time of day → segment/type →
  global usage → per-customer usage → min cart value →
  min/max items → item targets

Item targets are resolved against cart lines lowest unit price first,
ties broken by cart order, and each line is claimed by at most one target.
That customer-favoring policy is what BOGO and combo arithmetic rely on.

A time window that wraps past midnight belongs to the day it opened on:
a Friday 22:00-02:00 offer is valid at 01:30 on Saturday, not Friday.
"""
from __future__ import annotations
from dataclasses import dataclass, field, replace
from datetime import datetime, time, timedelta
from decimal import Decimal
from typing import Dict, FrozenSet, List, Mapping, Optional, Tuple

from promo_engine.promotions.rules import (
    Cart, CandidateStatus, DiscountType, ErrorCode, EvaluationContext,
    PromoError, PromotionItemRule, PromotionRule, TriggerKind,
)


@dataclass(frozen=True)
class MatchedLine:
    """Units of one cart line claimed by one promotion target."""
    line_index:   int
    target_index: int
    menu_item_id: str
    unit_price:   Decimal
    quantity:     int

    @property
    def total(self) -> Decimal:
        return self.unit_price * self.quantity


@dataclass(frozen=True)
class TargetMatch:
    """Result of resolving a promotion's targets against the cart."""
    lines: Tuple[MatchedLine, ...] = ()
    sets:  int = 0
    error: Optional[PromoError] = None

    @property
    def line_indexes(self) -> FrozenSet[int]:
        return frozenset(line.line_index for line in self.lines)


@dataclass(frozen=True)
class Candidate:
    """One promotion's state within a single evaluation."""
    rule:     PromotionRule
    trigger:  TriggerKind
    position: int
    status:   CandidateStatus = CandidateStatus.CANDIDATE
    reason:   Optional[PromoError] = None
    match:    TargetMatch = field(default_factory=TargetMatch)

    @property
    def eligible(self) -> bool:
        return self.status is CandidateStatus.ELIGIBLE

    def with_status(self, status: CandidateStatus, reason: Optional[PromoError] = None) -> 'Candidate':
        return replace(self, status=status, reason=reason)


# ── Individual checks ─────────────────────────────────────────────

def in_time_window(start: Optional[time], end: Optional[time], moment: time) -> bool:
    """
    Start inclusive, end exclusive. A window whose end is before its
    start wraps past midnight (22:00-02:00). Equal bounds mean all day.
    """
    if start is None or end is None or start == end:
        return True
    if start < end:
        return start <= moment < end
    return moment >= start or moment < end


def service_weekday(rule: PromotionRule, moment: datetime) -> int:
    """ISO weekday the window containing `moment` opened on."""
    start, end = rule.time_range_start, rule.time_range_end
    if start is not None and end is not None and start > end and moment.time() < end:
        return (moment - timedelta(days=1)).isoweekday()
    return moment.isoweekday()


def _check_schedule(rule: PromotionRule, context: EvaluationContext) -> Optional[PromoError]:
    today = context.timestamp.date()
    if rule.start_date and today < rule.start_date:
        return PromoError(ErrorCode.EXPIRED, f'Promotion starts on {rule.start_date.isoformat()}.')
    if rule.end_date and today > rule.end_date:
        return PromoError(ErrorCode.EXPIRED, f'Promotion ended on {rule.end_date.isoformat()}.')

    if rule.days_of_week and service_weekday(rule, context.timestamp) not in rule.days_of_week:
        return PromoError(ErrorCode.OUTSIDE_DAY_WINDOW, 'Promotion is not available today.')

    if not in_time_window(rule.time_range_start, rule.time_range_end, context.timestamp.time()):
        return PromoError(
            ErrorCode.OUTSIDE_TIME_WINDOW,
            f'Promotion runs {rule.time_range_start:%H:%M}-{rule.time_range_end:%H:%M}.',
        )
    return None


def _check_customer(rule: PromotionRule, context: EvaluationContext,
                    customer_usage: Mapping[int, int]) -> Optional[PromoError]:
    if rule.customer_segments and context.customer_segment not in rule.customer_segments:
        return PromoError(ErrorCode.SEGMENT_MISMATCH, 'Promotion is not available for this customer segment.')
    if rule.customer_types and context.customer_type not in rule.customer_types:
        return PromoError(ErrorCode.SEGMENT_MISMATCH, 'Promotion is not available for this customer type.')

    if rule.usage_limit is not None and rule.usage_count >= rule.usage_limit:
        return PromoError(ErrorCode.USAGE_LIMIT_REACHED, 'Promotion usage limit has been reached.')

    # Anonymous carts cannot be counted per customer, so the cap only
    # applies once the customer is known.
    if rule.per_customer_limit is not None and context.customer_id is not None:
        if customer_usage.get(rule.id, 0) >= rule.per_customer_limit:
            return PromoError(
                ErrorCode.PER_CUSTOMER_LIMIT_REACHED,
                f'Promotion can be used {rule.per_customer_limit} time(s) per customer.',
            )
    return None


def _check_cart(rule: PromotionRule, cart: Cart) -> Optional[PromoError]:
    subtotal = cart.subtotal
    if rule.min_cart_value is not None and subtotal < rule.min_cart_value:
        return PromoError(ErrorCode.MIN_CART_NOT_MET, f'Minimum order of {rule.min_cart_value} not met.')

    count = cart.item_count
    if rule.min_items is not None and count < rule.min_items:
        return PromoError(ErrorCode.MIN_ITEMS_NOT_MET, f'Add at least {rule.min_items} item(s).')
    if rule.max_items is not None and count > rule.max_items:
        return PromoError(ErrorCode.MIN_ITEMS_NOT_MET, f'Promotion allows at most {rule.max_items} item(s).')
    return None


# ── Target resolution ─────────────────────────────────────────────

def _units_needed(rule: PromotionRule, target: PromotionItemRule) -> int:
    """A FREE_ITEM target needs a whole buy-and-get cycle in the cart."""
    if rule.discount_type is DiscountType.FREE_ITEM and target.free_quantity > 0:
        return target.required_quantity + target.free_quantity
    return max(target.required_quantity, 1)


def match_targets(rule: PromotionRule, cart: Cart,
                  exclude: FrozenSet[int] = frozenset()) -> TargetMatch:
    """
    Resolve every PromotionItem of `rule` against the cart lines.

    Args:
        exclude: cart line indexes already claimed by another accepted
                 promotion (single claim per line).

    Returns a TargetMatch whose `sets` counts how many times the required
    targets are satisfied, or an error when a required target is short.
    """
    if not rule.items:
        return TargetMatch(sets=1)

    claimed = set(exclude)
    lines: List[MatchedLine] = []
    sets: Optional[int] = None

    for target_index, target in enumerate(rule.items):
        candidates = sorted(
            (
                (index, item) for index, item in enumerate(cart.items)
                if index not in claimed and item.quantity > 0 and target.matches(item)
            ),
            key=lambda pair: (pair[1].unit_price, pair[0]),
        )

        remaining = target.max_quantity
        taken = 0
        for index, item in candidates:
            qty = item.quantity if remaining is None else min(item.quantity, remaining - taken)
            if qty <= 0:
                break
            claimed.add(index)
            taken += qty
            lines.append(MatchedLine(
                line_index=index,
                target_index=target_index,
                menu_item_id=item.menu_item_id,
                unit_price=item.unit_price,
                quantity=qty,
            ))

        if not target.is_required:
            continue

        needed = _units_needed(rule, target)
        if taken < needed:
            return TargetMatch(error=PromoError(
                ErrorCode.MIN_ITEMS_NOT_MET,
                f'Needs {needed} x {target.label} in the cart.',
            ))
        sets = taken // needed if sets is None else min(sets, taken // needed)

    if not lines:
        return TargetMatch(error=PromoError(ErrorCode.MIN_ITEMS_NOT_MET, 'No qualifying items in the cart.'))

    return TargetMatch(lines=tuple(lines), sets=sets if sets is not None else 1)


# ── Public API ────────────────────────────────────────────────────

def trigger_for(rule: PromotionRule, context: EvaluationContext) -> Optional[TriggerKind]:
    """
    How `rule` enters this evaluation, or None if it does not.
    A submitted code always wins over auto-apply.
    """
    if rule.code and context.has_code(rule.code):
        return TriggerKind.CODE
    if rule.auto_apply and not rule.requires_code:
        return TriggerKind.AUTO
    return None


def evaluate_rule(rule: PromotionRule, cart: Cart, context: EvaluationContext,
                  customer_usage: Mapping[int, int], trigger: TriggerKind,
                  position: int = 0) -> Candidate:
    """Run every eligibility check for one promotion."""
    candidate = Candidate(rule=rule, trigger=trigger, position=position)

    reason = (
        _check_schedule(rule, context)
        or _check_customer(rule, context, customer_usage)
        or _check_cart(rule, cart)
    )
    if reason:
        return candidate.with_status(CandidateStatus.INELIGIBLE, reason)

    match = match_targets(rule, cart)
    if match.error:
        return candidate.with_status(CandidateStatus.INELIGIBLE, match.error)

    return replace(candidate, status=CandidateStatus.ELIGIBLE, match=match)


def match_promotions(rules, cart: Cart, context: EvaluationContext,
                     customer_usage: Optional[Mapping[int, int]] = None) -> List[Candidate]:
    """
    Tag every promotion in `rules` (a CatalogSnapshot or any ordered
    iterable) ELIGIBLE or INELIGIBLE. Promotions that need a code nobody
    submitted are not candidates at all and are left out.
    """
    usage: Dict[int, int] = dict(customer_usage or {})
    candidates = []
    for position, rule in enumerate(rules):
        trigger = trigger_for(rule, context)
        if trigger is None:
            continue
        candidates.append(evaluate_rule(rule, cart, context, usage, trigger, position))
    return candidates
