"""
test_resolver.py — Priority ordering and combinability.
Run: pytest test_resolver.py -v
"""
from datetime import datetime
from decimal import Decimal

from promo_engine.promotions.matcher import match_promotions
from promo_engine.promotions.resolver import resolve
from promo_engine.promotions.rules import (
    Cart, CartItem, CandidateStatus, DiscountType, ErrorCode, EvaluationContext,
    PromotionItemRule, PromotionRule, PromotionType,
)

NOW = datetime(2026, 3, 6, 12, 0)
CART = Cart((CartItem(menu_item_id='burger', quantity=4, unit_price=Decimal('10.00')),))


def make_rule(id, **kwargs):
    defaults = dict(
        name=f'Promo {id}', promo_type=PromotionType.CART_DISCOUNT,
        discount_type=DiscountType.PERCENTAGE, discount_value=Decimal('10'),
    )
    defaults.update(kwargs)
    return PromotionRule(id=id, **defaults)


def resolve_rules(rules, codes=()):
    context = EvaluationContext(timestamp=NOW, codes=codes)
    return resolve(match_promotions(rules, CART, context), CART)


# ── Ordering ──────────────────────────────────────────────────────

def test_higher_priority_first():
    a = make_rule(1, name='A', priority=5)
    b = make_rule(2, name='B', priority=10)
    resolution = resolve_rules([a, b])
    assert [c.rule.name for c in resolution.ordered] == ['B', 'A']
    assert resolution.accepted_ids == [2, 1]


def test_larger_estimate_breaks_priority_tie():
    small = make_rule(1, discount_value=Decimal('5'))
    large = make_rule(2, discount_value=Decimal('15'))
    resolution = resolve_rules([small, large])
    assert [c.rule.id for c in resolution.ordered] == [2, 1]
    assert resolution.estimates == {1: Decimal('2.00'), 2: Decimal('6.00')}


def test_catalog_position_breaks_remaining_ties():
    resolution = resolve_rules([make_rule(7), make_rule(3)])
    assert [c.rule.id for c in resolution.ordered] == [7, 3]


def test_code_triggered_before_auto():
    auto = make_rule(1, priority=10, can_combine_with_others=False)
    coupon = make_rule(2, promo_type=PromotionType.COUPON, requires_code=True,
                       promo_code='VIP5', auto_apply=False, can_combine_with_others=False)
    resolution = resolve_rules([auto, coupon], codes=('vip5',))
    assert resolution.accepted_ids == [2]
    assert resolution.rejected[0].rule.id == 1


# ── Combinability ─────────────────────────────────────────────────

def test_exclusive_winner_stands_alone():
    exclusive = make_rule(1, priority=10, can_combine_with_others=False)
    other = make_rule(2, priority=5)
    third = make_rule(3, priority=1)
    resolution = resolve_rules([exclusive, other, third])

    assert resolution.accepted_ids == [1]
    assert [c.rule.id for c in resolution.rejected] == [2, 3]
    for candidate in resolution.rejected:
        assert candidate.status is CandidateStatus.REJECTED
        assert candidate.reason.code is ErrorCode.EXCLUSIVE_CONFLICT


def test_exclusive_loses_to_earlier_combinable():
    first = make_rule(1, priority=10)
    exclusive = make_rule(2, priority=5, can_combine_with_others=False)
    resolution = resolve_rules([first, exclusive])
    assert resolution.accepted_ids == [1]
    assert resolution.rejected[0].reason.code is ErrorCode.EXCLUSIVE_CONFLICT


def test_all_combinable_are_accepted():
    resolution = resolve_rules([make_rule(1), make_rule(2), make_rule(3)])
    assert len(resolution.accepted) == 3
    assert all(c.status is CandidateStatus.ACCEPTED for c in resolution.accepted)
    assert resolution.rejected == []


def test_ineligible_candidates_are_ignored():
    resolution = resolve_rules([make_rule(1, min_cart_value=Decimal('500')), make_rule(2)])
    assert [c.rule.id for c in resolution.ordered] == [2]
    assert 1 not in resolution.estimates


def test_zero_value_exclusive_does_not_block_others():
    # A set price above the menu price discounts nothing.
    burger_for_20 = make_rule(
        1, name='Burger for 20', priority=10, can_combine_with_others=False,
        promo_type=PromotionType.FIXED_PRICE, discount_type=DiscountType.FIXED_PRICE,
        items=(PromotionItemRule(menu_item_id='burger', discounted_price=Decimal('20.00')),),
    )
    ten_percent = make_rule(2, priority=1)
    resolution = resolve_rules([burger_for_20, ten_percent])

    assert resolution.accepted_ids == [2]
    assert [c.rule.id for c in resolution.ordered] == [2]
    skipped = resolution.rejected[0]
    assert skipped.rule.id == 1
    assert skipped.status is CandidateStatus.INELIGIBLE
    assert resolution.estimates[1] == Decimal('0.00')
