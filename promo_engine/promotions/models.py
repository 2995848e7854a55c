"""
promo_engine/promotions/models.py
---------------------------------
Promotion catalog rows plus the usage tables owned by the ledger.

Promotions and their items are authored by the management surface and
only read here. `Promotion.usage_count`, `PromotionCustomerUsage` and
`PromotionRedemption` are written exclusively by UsageLedger.

List-valued columns (days_of_week, customer_segments, customer_types)
are JSON-encoded strings:
  days_of_week      → [1, 2, 3, 4, 5]       (ISO: 1 = Monday, 7 = Sunday)
  customer_segments → ["vip", "staff"]
"""
import json
from datetime import datetime
from promo_engine import db
from promo_engine.promotions.rules import PromotionType, DiscountType


def _json_list(raw) -> list:
    try:
        value = json.loads(raw or '[]')
    except (ValueError, TypeError):
        return []
    return value if isinstance(value, list) else []


class Promotion(db.Model):
    """A configurable discount rule."""
    __tablename__ = 'promotions'

    id                  = db.Column(db.Integer, primary_key=True)
    name                = db.Column(db.String(200), nullable=False)
    description         = db.Column(db.String(500), nullable=True)
    promo_type          = db.Column(db.Enum(PromotionType), nullable=False)
    discount_type       = db.Column(db.Enum(DiscountType),  nullable=False)
    discount_value      = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    fixed_price         = db.Column(db.Numeric(12, 2), nullable=True)
    max_discount_amount = db.Column(db.Numeric(12, 2), nullable=True)   # None = uncapped
    min_cart_value      = db.Column(db.Numeric(12, 2), nullable=True)
    min_items           = db.Column(db.Integer, nullable=True)
    max_items           = db.Column(db.Integer, nullable=True)
    usage_limit         = db.Column(db.Integer, nullable=True)          # None = unlimited
    usage_count         = db.Column(db.Integer, nullable=False, default=0)
    per_customer_limit  = db.Column(db.Integer, nullable=True)
    start_date          = db.Column(db.Date, nullable=True)             # None = always eligible
    end_date            = db.Column(db.Date, nullable=True)             # None = never expires
    time_range_start    = db.Column(db.Time, nullable=True)
    time_range_end      = db.Column(db.Time, nullable=True)
    days_of_week        = db.Column(db.Text, nullable=False, default='[]')   # JSON, empty = every day
    requires_code       = db.Column(db.Boolean, nullable=False, default=False)
    promo_code          = db.Column(db.String(50), nullable=True, unique=True, index=True)
    auto_apply          = db.Column(db.Boolean, nullable=False, default=True)
    customer_segments   = db.Column(db.Text, nullable=False, default='[]')   # JSON, empty = everyone
    customer_types      = db.Column(db.Text, nullable=False, default='[]')
    priority            = db.Column(db.Integer, nullable=False, default=0)   # higher wins
    can_combine_with_others = db.Column(db.Boolean, nullable=False, default=True)
    is_active           = db.Column(db.Boolean, nullable=False, default=True)
    created_at          = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        db.CheckConstraint(
            'usage_limit IS NULL OR usage_count <= usage_limit',
            name='check_usage_within_limit',
        ),
    )

    # Relationships
    items       = db.relationship('PromotionItem', backref='promotion', lazy='selectin',
                                  order_by='PromotionItem.id', cascade='all, delete-orphan')
    redemptions = db.relationship('PromotionRedemption', backref='promotion', lazy='dynamic')

    # ── Helpers ───────────────────────────────────────────────────

    @property
    def days_of_week_set(self) -> set:
        return {int(d) for d in _json_list(self.days_of_week)}

    @days_of_week_set.setter
    def days_of_week_set(self, value):
        self.days_of_week = json.dumps(sorted(int(d) for d in value))

    @property
    def segments_list(self) -> list:
        return [str(s) for s in _json_list(self.customer_segments)]

    @segments_list.setter
    def segments_list(self, value):
        self.customer_segments = json.dumps(list(value))

    @property
    def customer_types_list(self) -> list:
        return [str(t) for t in _json_list(self.customer_types)]

    @customer_types_list.setter
    def customer_types_list(self, value):
        self.customer_types = json.dumps(list(value))

    def __repr__(self):
        return f'<Promotion {self.name!r} {self.promo_type.value}>'


class PromotionItem(db.Model):
    """One target (menu item or category) of an item-scoped promotion."""
    __tablename__ = 'promotion_items'

    id                = db.Column(db.Integer, primary_key=True)
    promotion_id      = db.Column(db.Integer, db.ForeignKey('promotions.id'), nullable=False, index=True)
    menu_item_id      = db.Column(db.String(64), nullable=True)
    category_id       = db.Column(db.String(64), nullable=True)
    required_quantity = db.Column(db.Integer, nullable=False, default=1)
    free_quantity     = db.Column(db.Integer, nullable=False, default=0)
    discounted_price  = db.Column(db.Numeric(12, 2), nullable=True)
    is_required       = db.Column(db.Boolean, nullable=False, default=True)
    max_quantity      = db.Column(db.Integer, nullable=True)

    def __repr__(self):
        target = self.menu_item_id or f'cat:{self.category_id}'
        return f'<PromotionItem promo={self.promotion_id} {target} x{self.required_quantity}>'


class PromotionCustomerUsage(db.Model):
    """Per-customer redemption counter, only kept for promotions with a per-customer limit."""
    __tablename__ = 'promotion_customer_usage'

    id           = db.Column(db.Integer, primary_key=True)
    promotion_id = db.Column(db.Integer, db.ForeignKey('promotions.id'), nullable=False)
    customer_id  = db.Column(db.String(64), nullable=False)
    used_count   = db.Column(db.Integer, nullable=False, default=0)

    __table_args__ = (
        db.UniqueConstraint('promotion_id', 'customer_id', name='uq_promotion_customer'),
        db.CheckConstraint('used_count >= 0', name='check_customer_usage_non_negative'),
    )

    def __repr__(self):
        return f'<PromotionCustomerUsage promo={self.promotion_id} customer={self.customer_id!r} used={self.used_count}>'


class PromotionRedemption(db.Model):
    """
    One committed use of a promotion on an order.
    Stores a snapshot of the promo name so history survives renames,
    and feeds both grace-window rollback and usage analytics.
    """
    __tablename__ = 'promotion_redemptions'

    id              = db.Column(db.Integer, primary_key=True)
    receipt_id      = db.Column(db.String(32), nullable=False, index=True)
    order_ref       = db.Column(db.String(64), nullable=True, index=True)
    promotion_id    = db.Column(db.Integer, db.ForeignKey('promotions.id'), nullable=False, index=True)
    customer_id     = db.Column(db.String(64), nullable=True)
    promo_name      = db.Column(db.String(200), nullable=False)   # snapshot
    discount_amount = db.Column(db.Numeric(12, 2), nullable=False)
    counted_for_customer = db.Column(db.Boolean, nullable=False, default=False)
    committed_at    = db.Column(db.DateTime, nullable=False)
    rolled_back_at  = db.Column(db.DateTime, nullable=True)

    def __repr__(self):
        return f'<PromotionRedemption receipt={self.receipt_id} promo={self.promo_name!r} disc={self.discount_amount}>'
