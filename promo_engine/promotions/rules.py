"""
promo_engine/promotions/rules.py
--------------------------------
Plain value types shared by every engine stage.

Nothing here touches the database: the catalog converts ORM rows into
frozen PromotionRule snapshots, and the matcher, resolver and calculator
work only on these. That is what keeps evaluation a pure function of
(cart, context, catalog snapshot).

Money is always Decimal; callers may pass strings or ints and the cart
helpers normalise them.
"""
from __future__ import annotations
import enum
from dataclasses import dataclass, field
from datetime import date, datetime, time
from decimal import Decimal, ROUND_HALF_UP
from typing import FrozenSet, Optional, Tuple


Q = Decimal('0.01')   # quantize target


def money(value) -> Decimal:
    """Round a money amount to cents, half-up."""
    return Decimal(str(value)).quantize(Q, rounding=ROUND_HALF_UP)


class PromotionType(enum.Enum):
    CART_DISCOUNT = "CART_DISCOUNT"
    ITEM_DISCOUNT = "ITEM_DISCOUNT"
    BOGO          = "BOGO"
    COMBO_DEAL    = "COMBO_DEAL"
    FIXED_PRICE   = "FIXED_PRICE"
    TIME_BASED    = "TIME_BASED"
    COUPON        = "COUPON"


class DiscountType(enum.Enum):
    PERCENTAGE   = "PERCENTAGE"
    FIXED_AMOUNT = "FIXED_AMOUNT"
    FIXED_PRICE  = "FIXED_PRICE"
    FREE_ITEM    = "FREE_ITEM"


class TriggerKind(enum.Enum):
    AUTO = "AUTO"   # eligible without a code
    CODE = "CODE"   # customer submitted the promotion's code


class CandidateStatus(enum.Enum):
    CANDIDATE     = "CANDIDATE"
    ELIGIBLE      = "ELIGIBLE"
    INELIGIBLE    = "INELIGIBLE"
    ACCEPTED      = "ACCEPTED"
    REJECTED      = "REJECTED"
    COMMITTED     = "COMMITTED"
    COMMIT_FAILED = "COMMIT_FAILED"


class ErrorCode(enum.Enum):
    """The closed set of error codes surfaced to collaborators."""
    NOT_FOUND                  = "NOT_FOUND"
    EXPIRED                    = "EXPIRED"
    MIN_CART_NOT_MET           = "MIN_CART_NOT_MET"
    MIN_ITEMS_NOT_MET          = "MIN_ITEMS_NOT_MET"
    USAGE_LIMIT_REACHED        = "USAGE_LIMIT_REACHED"
    PER_CUSTOMER_LIMIT_REACHED = "PER_CUSTOMER_LIMIT_REACHED"
    EXCLUSIVE_CONFLICT         = "EXCLUSIVE_CONFLICT"
    ALREADY_APPLIED            = "ALREADY_APPLIED"
    OUTSIDE_TIME_WINDOW        = "OUTSIDE_TIME_WINDOW"
    OUTSIDE_DAY_WINDOW         = "OUTSIDE_DAY_WINDOW"
    SEGMENT_MISMATCH           = "SEGMENT_MISMATCH"
    CONCURRENT_MODIFICATION    = "CONCURRENT_MODIFICATION"


# Promotion types whose base is a set of cart lines, never the whole cart.
ITEM_TARGETED_TYPES = frozenset({
    PromotionType.ITEM_DISCOUNT,
    PromotionType.BOGO,
    PromotionType.COMBO_DEAL,
    PromotionType.FIXED_PRICE,
})


@dataclass(frozen=True)
class PromoError:
    """Stable `{code, message}` error shape."""
    code:    ErrorCode
    message: str

    def to_dict(self) -> dict:
        return {'code': self.code.value, 'message': self.message}


def normalize_code(code: Optional[str]) -> str:
    return (code or '').strip().upper()


# ── Cart ──────────────────────────────────────────────────────────

@dataclass(frozen=True)
class CartItem:
    """One order line under evaluation."""
    menu_item_id: str
    quantity:     int
    unit_price:   Decimal
    category_id:  Optional[str] = None
    total_price:  Optional[Decimal] = None

    def __post_init__(self):
        object.__setattr__(self, 'unit_price', Decimal(str(self.unit_price)))
        if self.total_price is not None:
            object.__setattr__(self, 'total_price', Decimal(str(self.total_price)))
        if not self.unit_price.is_finite() or (self.total_price is not None and not self.total_price.is_finite()):
            raise ValueError(f'{self.menu_item_id}: prices must be finite numbers')
        if self.total_price is None:
            object.__setattr__(self, 'total_price', self.unit_price * self.quantity)


@dataclass(frozen=True)
class Cart:
    items: Tuple[CartItem, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, 'items', tuple(self.items))

    @property
    def subtotal(self) -> Decimal:
        return money(sum((item.total_price for item in self.items), Decimal('0')))

    @property
    def item_count(self) -> int:
        return sum(item.quantity for item in self.items)

    def __bool__(self) -> bool:
        return bool(self.items)


@dataclass(frozen=True)
class EvaluationContext:
    """Who is ordering, when, and which codes they typed in."""
    timestamp:        datetime
    customer_id:      Optional[str] = None
    customer_segment: Optional[str] = None
    customer_type:    Optional[str] = None
    codes:            Tuple[str, ...] = ()

    def __post_init__(self):
        # Deduplicate while keeping submission order.
        seen = []
        for code in self.codes:
            norm = normalize_code(code)
            if norm and norm not in seen:
                seen.append(norm)
        object.__setattr__(self, 'codes', tuple(seen))

    def has_code(self, code: Optional[str]) -> bool:
        return bool(code) and normalize_code(code) in self.codes


# ── Promotion snapshot ────────────────────────────────────────────

@dataclass(frozen=True)
class PromotionItemRule:
    """A single target of an item-scoped promotion."""
    menu_item_id:      Optional[str] = None
    category_id:       Optional[str] = None
    required_quantity: int = 1
    free_quantity:     int = 0
    discounted_price:  Optional[Decimal] = None
    is_required:       bool = True
    max_quantity:      Optional[int] = None

    def matches(self, item: CartItem) -> bool:
        if self.menu_item_id is not None:
            return item.menu_item_id == self.menu_item_id
        return self.category_id is not None and item.category_id == self.category_id

    @property
    def label(self) -> str:
        if self.menu_item_id is not None:
            return f'item {self.menu_item_id}'
        return f'category {self.category_id}'


@dataclass(frozen=True)
class PromotionRule:
    """Read-only snapshot of one promotion definition."""
    id:                      int
    name:                    str
    promo_type:              PromotionType
    discount_type:           DiscountType
    discount_value:          Decimal = Decimal('0')
    fixed_price:             Optional[Decimal] = None
    max_discount_amount:     Optional[Decimal] = None
    min_cart_value:          Optional[Decimal] = None
    min_items:               Optional[int] = None
    max_items:               Optional[int] = None
    usage_limit:             Optional[int] = None
    usage_count:             int = 0
    per_customer_limit:      Optional[int] = None
    start_date:              Optional[date] = None
    end_date:                Optional[date] = None
    time_range_start:        Optional[time] = None
    time_range_end:          Optional[time] = None
    days_of_week:            FrozenSet[int] = frozenset()
    requires_code:           bool = False
    promo_code:              Optional[str] = None
    auto_apply:              bool = True
    customer_segments:       FrozenSet[str] = frozenset()
    customer_types:          FrozenSet[str] = frozenset()
    priority:                int = 0
    can_combine_with_others: bool = True
    is_active:               bool = True
    items:                   Tuple[PromotionItemRule, ...] = field(default_factory=tuple)
    description:             str = ''

    def __post_init__(self):
        object.__setattr__(self, 'items', tuple(self.items))
        object.__setattr__(self, 'days_of_week', frozenset(self.days_of_week))
        object.__setattr__(self, 'customer_segments', frozenset(self.customer_segments))
        object.__setattr__(self, 'customer_types', frozenset(self.customer_types))
        object.__setattr__(self, 'discount_value', Decimal(str(self.discount_value)))
        for name in ('fixed_price', 'max_discount_amount', 'min_cart_value'):
            value = getattr(self, name)
            if value is not None:
                object.__setattr__(self, name, Decimal(str(value)))

    @property
    def code(self) -> str:
        return normalize_code(self.promo_code)

    @property
    def is_item_scoped(self) -> bool:
        """
        True when the discount base is specific cart lines.
        COUPON and TIME_BASED promotions become item-scoped only when
        they carry targets; otherwise they discount the whole cart.
        A CART_DISCOUNT is never item-scoped: its targets only have to be
        present in the cart.
        """
        if self.promo_type is PromotionType.CART_DISCOUNT:
            return False
        return self.promo_type in ITEM_TARGETED_TYPES or bool(self.items)

    @property
    def is_cart_scoped(self) -> bool:
        return not self.is_item_scoped

    def __repr__(self):
        return f'<PromotionRule {self.id} {self.name!r} {self.promo_type.value}/{self.discount_type.value}>'
