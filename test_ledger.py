"""
test_ledger.py — Usage counting, grace-window rollback and analytics.
Run: pytest test_ledger.py -v
"""
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from promo_engine import create_app, db
from promo_engine.promotions.catalog import rule_from_model
from promo_engine.promotions.ledger import UsageLedger, UsageLimitReached
from promo_engine.promotions.models import Promotion, PromotionRedemption
from promo_engine.promotions.rules import DiscountType, ErrorCode, PromotionType
from promo_engine.utils.clock import FixedClock

NOW = datetime(2026, 3, 6, 12, 0)


# ── Fixtures ──────────────────────────────────────────────────────

@pytest.fixture(scope='function')
def app():
    app = create_app('testing')
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def clock():
    return FixedClock(NOW)


@pytest.fixture
def ledger(app, clock):
    return UsageLedger(db.session, clock=clock, grace_period=timedelta(minutes=30))


def make_promo(**kwargs):
    defaults = dict(
        name='Test Promo', promo_type=PromotionType.CART_DISCOUNT,
        discount_type=DiscountType.PERCENTAGE, discount_value=Decimal('10'),
    )
    defaults.update(kwargs)
    p = Promotion(**defaults)
    db.session.add(p)
    db.session.commit()
    return rule_from_model(p)


def usage_count(promo_id):
    db.session.expire_all()
    return db.session.get(Promotion, promo_id).usage_count


# ── 1. Counting ───────────────────────────────────────────────────

def test_try_increment_stops_at_limit(ledger):
    rule = make_promo(usage_limit=2)
    assert ledger.try_increment(rule.id) is None
    assert ledger.try_increment(rule.id) is None
    error = ledger.try_increment(rule.id)
    db.session.commit()

    assert error.code is ErrorCode.USAGE_LIMIT_REACHED
    assert usage_count(rule.id) == 2


def test_record_writes_redemptions(ledger):
    rule = make_promo(name='Lunch 10%', per_customer_limit=2)
    ledger.record('r-1', [(rule, Decimal('4.50'))], customer_id='c-1', order_ref='ORD-7')

    row = PromotionRedemption.query.filter_by(receipt_id='r-1').one()
    assert row.promo_name == 'Lunch 10%'
    assert row.counted_for_customer is True
    assert row.committed_at == NOW
    assert ledger.customer_usage('c-1') == {rule.id: 1}
    assert ledger.customer_usage(None) == {}


def test_per_customer_limit_blocks_second_use(ledger):
    rule = make_promo(per_customer_limit=1)
    ledger.record('r-1', [(rule, Decimal('1.00'))], customer_id='c-1')

    with pytest.raises(UsageLimitReached) as info:
        ledger.record('r-2', [(rule, Decimal('1.00'))], customer_id='c-1')
    assert info.value.error.code is ErrorCode.PER_CUSTOMER_LIMIT_REACHED
    assert usage_count(rule.id) == 1

    # Another customer is unaffected.
    ledger.record('r-3', [(rule, Decimal('1.00'))], customer_id='c-2')
    assert usage_count(rule.id) == 2


def test_record_is_all_or_nothing(ledger):
    open_ended = make_promo(name='Open')
    exhausted = make_promo(name='Gone', usage_limit=1, usage_count=1)

    with pytest.raises(UsageLimitReached) as info:
        ledger.record('r-1', [(open_ended, Decimal('2.00')), (exhausted, Decimal('1.00'))])
    assert info.value.promotion_id == exhausted.id
    assert usage_count(open_ended.id) == 0
    assert PromotionRedemption.query.count() == 0


# ── 2. Rollback ───────────────────────────────────────────────────

def test_rollback_inside_grace_window(ledger, clock):
    rule = make_promo(usage_limit=1, per_customer_limit=1)
    ledger.record('r-1', [(rule, Decimal('3.00'))], customer_id='c-1')

    clock.advance(minutes=29)
    result = ledger.rollback('r-1')

    assert result.rolled_back
    assert result.promotion_ids == (rule.id,)
    assert usage_count(rule.id) == 0
    assert ledger.customer_usage('c-1') == {rule.id: 0}

    # The released slot can be used again.
    ledger.record('r-2', [(rule, Decimal('3.00'))], customer_id='c-1')
    assert usage_count(rule.id) == 1


def test_rollback_twice(ledger):
    rule = make_promo()
    ledger.record('r-1', [(rule, Decimal('3.00'))])
    assert ledger.rollback('r-1').rolled_back

    again = ledger.rollback('r-1')
    assert not again.rolled_back
    assert again.error.code is ErrorCode.ALREADY_APPLIED
    assert usage_count(rule.id) == 0


def test_rollback_after_grace_window(ledger, clock):
    rule = make_promo()
    ledger.record('r-1', [(rule, Decimal('3.00'))])

    clock.advance(minutes=31)
    result = ledger.rollback('r-1')

    assert not result.rolled_back
    assert result.error.code is ErrorCode.EXPIRED
    assert usage_count(rule.id) == 1


def test_rollback_unknown_receipt(ledger):
    result = ledger.rollback('does-not-exist')
    assert result.error.code is ErrorCode.NOT_FOUND
    assert result.to_dict()['rolled_back'] is False


# ── 3. Analytics ──────────────────────────────────────────────────

def test_usage_summary(ledger, clock):
    rule = make_promo(name='Weekend')
    ledger.record('r-1', [(rule, Decimal('5.00'))], customer_id='c-1')
    ledger.record('r-2', [(rule, Decimal('3.00'))], customer_id='c-2')
    ledger.record('r-3', [(rule, Decimal('2.00'))], customer_id='c-1')

    [summary] = ledger.usage_summary()
    assert summary.promo_name == 'Weekend'
    assert summary.redemptions == 3
    assert summary.total_discount == Decimal('10.00')
    assert summary.unique_customers == 2

    ledger.rollback('r-3')
    [summary] = ledger.usage_summary()
    assert summary.redemptions == 2
    assert summary.total_discount == Decimal('8.00')


def test_usage_summary_filters(ledger):
    first = make_promo(name='First')
    second = make_promo(name='Second')
    ledger.record('r-1', [(first, Decimal('1.00')), (second, Decimal('2.00'))])

    assert [s.promo_name for s in ledger.usage_summary(promotion_id=second.id)] == ['Second']
    assert ledger.usage_summary(start=NOW.date() + timedelta(days=1)) == []
    assert len(ledger.usage_summary(start=NOW.date(), end=NOW.date())) == 2
