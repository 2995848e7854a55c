"""
test_catalog.py — Promotion definition validation and snapshot loading.
Run: pytest test_catalog.py -v
"""
from datetime import date, time
from decimal import Decimal

import pytest

from promo_engine import create_app, db
from promo_engine.promotions.catalog import (
    CatalogIntegrityError, CatalogSnapshot, PromotionCatalog, validate_rule,
)
from promo_engine.promotions.models import Promotion, PromotionItem
from promo_engine.promotions.rules import (
    DiscountType, PromotionItemRule, PromotionRule, PromotionType,
)


# ── Fixtures ──────────────────────────────────────────────────────

@pytest.fixture(scope='function')
def app():
    app = create_app('testing')
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


def make_rule(id=1, **kwargs):
    defaults = dict(
        name=f'Promo {id}', promo_type=PromotionType.CART_DISCOUNT,
        discount_type=DiscountType.PERCENTAGE, discount_value=Decimal('10'),
    )
    defaults.update(kwargs)
    return PromotionRule(id=id, **defaults)


# ── 1. validate_rule ──────────────────────────────────────────────

def test_valid_rule_has_no_errors():
    assert validate_rule(make_rule()) == []


def test_percentage_over_100_rejected():
    errors = validate_rule(make_rule(discount_value=Decimal('150')))
    assert any('Percentage' in e for e in errors)


def test_item_discount_without_targets_rejected():
    errors = validate_rule(make_rule(promo_type=PromotionType.ITEM_DISCOUNT))
    assert any('item target' in e for e in errors)


def test_target_needs_exactly_one_of_item_or_category():
    rule = make_rule(
        promo_type=PromotionType.ITEM_DISCOUNT,
        items=(PromotionItemRule(menu_item_id='burger', category_id='mains'),),
    )
    assert any('exactly one' in e for e in validate_rule(rule))


def test_half_open_time_range_rejected():
    errors = validate_rule(make_rule(time_range_start=time(17)))
    assert 'Time range needs both a start and an end.' in errors


def test_code_required_but_missing():
    errors = validate_rule(make_rule(promo_type=PromotionType.COUPON, requires_code=True))
    assert 'Promotion requires a code but has none.' in errors


def test_free_item_needs_free_quantity():
    rule = make_rule(
        promo_type=PromotionType.BOGO, discount_type=DiscountType.FREE_ITEM,
        items=(PromotionItemRule(menu_item_id='burger', required_quantity=2),),
    )
    assert any('free quantity' in e for e in validate_rule(rule))


# ── 2. CatalogSnapshot ────────────────────────────────────────────

def test_snapshot_skips_bad_and_inactive_rules():
    snapshot = CatalogSnapshot.build([
        make_rule(1),
        make_rule(2, discount_value=Decimal('-5')),
        make_rule(3, is_active=False),
        make_rule(4),
    ])
    assert [r.id for r in snapshot] == [1, 4]
    assert [exc.promotion_id for exc in snapshot.rejected] == [2]
    assert snapshot.position(4) == 1


def test_strict_snapshot_raises():
    with pytest.raises(CatalogIntegrityError) as info:
        CatalogSnapshot.build([make_rule(9, discount_value=Decimal('0'))], strict=True)
    assert info.value.promotion_id == 9


def test_duplicate_code_keeps_first():
    snapshot = CatalogSnapshot.build([
        make_rule(1, promo_type=PromotionType.COUPON, promo_code='save10'),
        make_rule(2, promo_type=PromotionType.COUPON, promo_code='SAVE10'),
    ])
    assert snapshot.by_code(' Save10 ').id == 1
    assert snapshot.get(2) is None
    assert len(snapshot.rejected) == 1


# ── 3. Loading from the database ──────────────────────────────────

def test_catalog_loads_active_rows_in_id_order(app):
    happy = Promotion(
        name='Happy hour', promo_type=PromotionType.TIME_BASED,
        discount_type=DiscountType.PERCENTAGE, discount_value=Decimal('25'),
        time_range_start=time(17), time_range_end=time(19),
        end_date=date(2026, 12, 31), priority=3,
    )
    happy.days_of_week_set = {5, 1}
    happy.segments_list = ['vip']
    happy.items = [PromotionItem(category_id='drinks', max_quantity=2)]
    retired = Promotion(
        name='Old deal', promo_type=PromotionType.CART_DISCOUNT,
        discount_type=DiscountType.FIXED_AMOUNT, discount_value=Decimal('5'), is_active=False,
    )
    db.session.add_all([happy, retired])
    db.session.commit()

    snapshot = PromotionCatalog(db.session).snapshot()
    assert len(snapshot) == 1
    rule = snapshot.rules[0]
    assert rule.name == 'Happy hour'
    assert rule.discount_value == Decimal('25')
    assert rule.days_of_week == frozenset({1, 5})
    assert rule.customer_segments == frozenset({'vip'})
    assert rule.items[0].category_id == 'drinks'
    assert rule.items[0].max_quantity == 2
    assert rule.is_item_scoped


def test_catalog_reports_malformed_rows(app):
    db.session.add(Promotion(
        name='Broken BOGO', promo_type=PromotionType.BOGO,
        discount_type=DiscountType.FREE_ITEM,
    ))
    db.session.commit()

    snapshot = PromotionCatalog(db.session).snapshot()
    assert len(snapshot) == 0
    assert len(snapshot.rejected) == 1
