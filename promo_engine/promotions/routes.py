"""
promo_engine/promotions/routes.py
---------------------------------
JSON endpoints used by the ordering surface. Parsing and serialisation
only; every decision is made by PromotionEngine.

Request body shared by preview / applicable / validate / commit:
{
    "items": [
        {"menu_item_id": "burger", "category_id": "mains",
         "quantity": 2, "unit_price": "8.00"},
        ...
    ],
    "customer": {"id": "c-42", "segment": "vip", "type": "dine_in"},
    "codes":    ["SAVE10"],
    "timestamp": "2026-03-06T18:30:00"      ← optional, defaults to the app clock
}
"""
from datetime import date, datetime
from decimal import Decimal, InvalidOperation

from flask import current_app, jsonify, request

from promo_engine import db
from promo_engine.promotions import promotions
from promo_engine.promotions.engine import PromotionEngine
from promo_engine.promotions.rules import Cart, CartItem, ErrorCode, EvaluationContext
from promo_engine.utils.clock import get_clock


# ── Helpers ───────────────────────────────────────────────────────

class InvalidPayload(ValueError):
    """Malformed request body."""


def _engine() -> PromotionEngine:
    return PromotionEngine.from_app(current_app, db.session)


def _payload() -> dict:
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise InvalidPayload('Request body must be a JSON object.')
    return payload


def _parse_cart(payload: dict) -> Cart:
    raw_items = payload.get('items', [])
    if not isinstance(raw_items, list):
        raise InvalidPayload('"items" must be a list.')

    items = []
    for index, raw in enumerate(raw_items):
        if not isinstance(raw, dict) or not raw.get('menu_item_id'):
            raise InvalidPayload(f'Item #{index + 1} needs a menu_item_id.')
        try:
            quantity = int(raw.get('quantity', 1))
            unit_price = Decimal(str(raw.get('unit_price')))
            if not unit_price.is_finite():
                raise ValueError('NaN or Infinity')
        except (ValueError, TypeError, InvalidOperation):
            raise InvalidPayload(f'Item #{index + 1} has an invalid quantity or unit_price.')
        if quantity < 0 or unit_price < 0:
            raise InvalidPayload(f'Item #{index + 1} cannot have a negative quantity or price.')
        items.append(CartItem(
            menu_item_id=str(raw['menu_item_id']),
            category_id=str(raw['category_id']) if raw.get('category_id') is not None else None,
            quantity=quantity,
            unit_price=unit_price,
        ))
    return Cart(tuple(items))


def _parse_context(payload: dict) -> EvaluationContext:
    customer = payload.get('customer') or {}
    if not isinstance(customer, dict):
        raise InvalidPayload('"customer" must be an object.')
    codes = payload.get('codes') or []
    if not isinstance(codes, list):
        raise InvalidPayload('"codes" must be a list.')

    raw_ts = payload.get('timestamp')
    try:
        timestamp = datetime.fromisoformat(raw_ts) if raw_ts else get_clock(current_app).now()
    except (TypeError, ValueError):
        raise InvalidPayload('"timestamp" must be an ISO-8601 datetime.')

    customer_id = customer.get('id')
    return EvaluationContext(
        timestamp=timestamp,
        customer_id=str(customer_id) if customer_id is not None else None,
        customer_segment=customer.get('segment'),
        customer_type=customer.get('type'),
        codes=tuple(str(c) for c in codes),
    )


def _parse_date(raw):
    return date.fromisoformat(raw) if raw else None


@promotions.errorhandler(InvalidPayload)
def bad_request(exc):
    current_app.logger.info(f"Rejected promotion request: {exc}")
    return jsonify(error={'code': 'BAD_REQUEST', 'message': str(exc)}), 400


# ── Read-only ─────────────────────────────────────────────────────

@promotions.route('/preview', methods=['POST'])
def preview():
    payload = _payload()
    result = _engine().preview(_parse_cart(payload), _parse_context(payload))
    return jsonify(result.to_dict())


@promotions.route('/applicable', methods=['POST'])
def applicable():
    payload = _payload()
    offers = _engine().list_applicable(_parse_cart(payload), _parse_context(payload))
    return jsonify(promotions=[offer.to_dict() for offer in offers])


@promotions.route('/validate', methods=['POST'])
def validate():
    payload = _payload()
    code = payload.get('code')
    if not code or not isinstance(code, str):
        raise InvalidPayload('"code" is required.')
    result = _engine().validate_code(code, _parse_cart(payload), _parse_context(payload))
    return jsonify(result.to_dict())


@promotions.route('/analytics')
def analytics():
    try:
        start = _parse_date(request.args.get('start'))
        end = _parse_date(request.args.get('end'))
        promotion_id = request.args.get('promotion_id', type=int)
    except ValueError:
        raise InvalidPayload('start/end must be ISO dates (YYYY-MM-DD).')
    rows = _engine().analytics(start=start, end=end, promotion_id=promotion_id)
    return jsonify(promotions=[row.to_dict() for row in rows])


# ── Mutating ──────────────────────────────────────────────────────

@promotions.route('/commit', methods=['POST'])
def commit():
    payload = _payload()
    raw_ids = payload.get('promotion_ids')
    if not isinstance(raw_ids, list):
        raise InvalidPayload('"promotion_ids" must be a list.')
    try:
        promotion_ids = [int(pid) for pid in raw_ids]
    except (TypeError, ValueError):
        raise InvalidPayload('"promotion_ids" must contain integers.')

    receipt = _engine().commit(
        _parse_cart(payload), _parse_context(payload), promotion_ids,
        order_ref=payload.get('order_ref'),
    )
    return jsonify(receipt.to_dict()), (200 if receipt.success else 409)


@promotions.route('/receipts/<receipt_id>/rollback', methods=['POST'])
def rollback(receipt_id):
    result = _engine().rollback(receipt_id)
    status = 200 if result.rolled_back else (404 if result.error.code is ErrorCode.NOT_FOUND else 409)
    return jsonify(result.to_dict()), status
