"""
test_routes.py — JSON endpoints of the promotions blueprint.
Run: pytest test_routes.py -v
"""
from datetime import datetime, time, timedelta
from decimal import Decimal

import pytest

from config import ProductionConfig
from promo_engine import create_app, db
from promo_engine.promotions.models import Promotion, PromotionItem
from promo_engine.promotions.rules import DiscountType, PromotionType
from promo_engine.utils.clock import FixedClock

NOW = datetime(2026, 3, 6, 12, 0)


# ── Fixtures ──────────────────────────────────────────────────────

@pytest.fixture(scope='function')
def client():
    app = create_app('testing')
    app.extensions['promo_clock'] = FixedClock(NOW)
    with app.app_context():
        db.create_all()
        yield app.test_client()
        db.session.remove()
        db.drop_all()


def make_promo(**kwargs):
    items = kwargs.pop('items', [])
    defaults = dict(
        name='Test Promo', promo_type=PromotionType.CART_DISCOUNT,
        discount_type=DiscountType.PERCENTAGE, discount_value=Decimal('10'),
    )
    defaults.update(kwargs)
    p = Promotion(**defaults)
    p.items = [PromotionItem(**item) for item in items]
    db.session.add(p)
    db.session.commit()
    return p


def order(**kwargs):
    body = {
        'items': [
            {'menu_item_id': 'burger', 'category_id': 'mains', 'quantity': 3, 'unit_price': '8.00'},
            {'menu_item_id': 'cola', 'category_id': 'drinks', 'quantity': 2, 'unit_price': '3.00'},
        ],
        'customer': {'id': 'c-42'},
    }
    body.update(kwargs)
    return body


# ── 1. Read-only endpoints ────────────────────────────────────────

def test_preview_endpoint(client):
    make_promo(
        name='Burger BOGO', promo_type=PromotionType.BOGO, discount_type=DiscountType.FREE_ITEM,
        items=[dict(menu_item_id='burger', required_quantity=2, free_quantity=1)],
    )
    res = client.post('/promotions/preview', json=order())
    assert res.status_code == 200
    data = res.get_json()
    assert data['original_subtotal'] == '30.00'
    assert data['total_discount'] == '8.00'
    assert data['estimated_final_amount'] == '22.00'
    assert data['promotions'][0]['status'] == 'ACCEPTED'
    assert data['promotions'][0]['matched_items'] == ['burger']


def test_preview_uses_request_timestamp(client):
    make_promo(name='Lunch only', time_range_start=time(11),
               time_range_end=time(14))

    at_noon = client.post('/promotions/preview', json=order()).get_json()
    assert at_noon['total_discount'] == '3.00'

    evening = client.post('/promotions/preview', json=order(timestamp='2026-03-06T20:00:00')).get_json()
    assert evening['total_discount'] == '0.00'
    assert evening['promotions'][0]['reason']['code'] == 'OUTSIDE_TIME_WINDOW'


def test_applicable_endpoint(client):
    make_promo(name='Ten percent')
    res = client.post('/promotions/applicable', json=order())
    data = res.get_json()
    assert res.status_code == 200
    assert data['promotions'][0]['name'] == 'Ten percent'
    assert data['promotions'][0]['discount_amount'] == '3.00'


def test_validate_endpoint(client):
    make_promo(name='SAVE5', promo_type=PromotionType.COUPON, discount_type=DiscountType.FIXED_AMOUNT,
               discount_value=Decimal('5'), requires_code=True, promo_code='SAVE5', auto_apply=False,
               end_date=NOW.date() - timedelta(days=1))

    expired = client.post('/promotions/validate', json=order(code='save5')).get_json()
    assert expired['valid'] is False
    assert expired['error']['code'] == 'EXPIRED'

    unknown = client.post('/promotions/validate', json=order(code='NOPE')).get_json()
    assert unknown['error']['code'] == 'NOT_FOUND'


# ── 2. Bad requests ───────────────────────────────────────────────

def test_non_json_body_rejected(client):
    res = client.post('/promotions/preview', data='not json', content_type='text/plain')
    assert res.status_code == 400
    assert res.get_json()['error']['code'] == 'BAD_REQUEST'


def test_negative_price_rejected(client):
    body = order(items=[{'menu_item_id': 'burger', 'quantity': 1, 'unit_price': '-1'}])
    res = client.post('/promotions/preview', json=body)
    assert res.status_code == 400


def test_non_finite_price_rejected(client):
    for price in ('NaN', 'Infinity', '-Infinity', 'sNaN'):
        body = order(items=[{'menu_item_id': 'burger', 'quantity': 1, 'unit_price': price}])
        res = client.post('/promotions/preview', json=body)
        assert res.status_code == 400, price
        assert res.get_json()['error']['code'] == 'BAD_REQUEST'


def test_validate_requires_code(client):
    assert client.post('/promotions/validate', json=order()).status_code == 400


def test_unknown_route_is_json_404(client):
    res = client.get('/promotions/nothing-here')
    assert res.status_code == 404
    assert res.get_json()['error']['code'] == 'NOT_FOUND'


# ── 3. Commit / rollback / analytics ──────────────────────────────

def test_commit_rollback_and_analytics(client):
    promo = make_promo(name='Ten percent', usage_limit=1)
    promo_id = promo.id

    res = client.post('/promotions/commit', json=order(promotion_ids=[promo_id], order_ref='ORD-1'))
    assert res.status_code == 200
    receipt = res.get_json()
    assert receipt['success'] is True
    assert receipt['total_discount'] == '3.00'

    stats = client.get('/promotions/analytics').get_json()['promotions']
    assert stats == [{
        'promotion_id': promo_id, 'promo_name': 'Ten percent',
        'redemptions': 1, 'total_discount': '3.00', 'unique_customers': 1,
    }]

    # Limit used up: a second checkout is refused.
    res = client.post('/promotions/commit', json=order(promotion_ids=[promo_id]))
    assert res.status_code == 409
    assert res.get_json()['failures'][0]['reason']['code'] == 'USAGE_LIMIT_REACHED'

    res = client.post(f'/promotions/receipts/{receipt["receipt_id"]}/rollback')
    assert res.status_code == 200
    assert res.get_json()['promotion_ids'] == [promo_id]

    res = client.post(f'/promotions/receipts/{receipt["receipt_id"]}/rollback')
    assert res.status_code == 409
    assert res.get_json()['error']['code'] == 'ALREADY_APPLIED'


def test_rollback_unknown_receipt(client):
    res = client.post('/promotions/receipts/nope/rollback')
    assert res.status_code == 404


def test_commit_needs_promotion_ids(client):
    assert client.post('/promotions/commit', json=order()).status_code == 400


def test_analytics_rejects_bad_dates(client):
    assert client.get('/promotions/analytics?start=yesterday').status_code == 400


# ── 4. Configuration ──────────────────────────────────────────────

def test_config_values():
    opts = ProductionConfig.SQLALCHEMY_ENGINE_OPTIONS
    assert opts['pool_size'] == 20
    assert opts['max_overflow'] == 10
    assert ProductionConfig.PROMO_COMMIT_RETRIES >= 1
    assert ProductionConfig.PROMO_ROLLBACK_GRACE_MINUTES > 0

    testing = create_app('testing')
    assert testing.config['TESTING'] is True
    assert testing.config['SQLALCHEMY_DATABASE_URI'] == 'sqlite:///:memory:'
