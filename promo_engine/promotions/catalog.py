"""
promo_engine/promotions/catalog.py
----------------------------------
Read-only access to active promotion definitions.

A CatalogSnapshot is built once per evaluation. Every rule is validated
on the way in; malformed definitions (an ITEM_DISCOUNT with no targets, a
150% discount, a time range with only a start...) never reach the
matcher. In strict mode the first bad rule raises CatalogIntegrityError;
otherwise it is logged, recorded in `snapshot.rejected` and skipped.
"""
from __future__ import annotations
import logging
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from promo_engine.promotions.rules import (
    DiscountType, PromotionItemRule, PromotionRule, PromotionType, normalize_code,
)

logger = logging.getLogger(__name__)

# Types that make no sense without at least one item target.
_NEEDS_TARGETS = {
    PromotionType.ITEM_DISCOUNT,
    PromotionType.BOGO,
    PromotionType.COMBO_DEAL,
    PromotionType.FIXED_PRICE,
}


class CatalogIntegrityError(ValueError):
    """A promotion definition that cannot be evaluated."""

    def __init__(self, promotion_id, errors: List[str]):
        self.promotion_id = promotion_id
        self.errors = list(errors)
        super().__init__(f'Promotion {promotion_id}: ' + '; '.join(self.errors))


def validate_rule(rule: PromotionRule) -> List[str]:
    """
    Check one promotion definition.

    Returns:
        list of error messages, empty if the rule is valid.
    """
    errors = []

    # ── amounts ───────────────────────────────────────────────────
    if rule.discount_value < 0:
        errors.append('Discount value cannot be negative.')
    if rule.discount_type is DiscountType.PERCENTAGE and not (Decimal('0') < rule.discount_value <= Decimal('100')):
        errors.append('Percentage discount must be greater than 0 and at most 100.')
    if rule.discount_type is DiscountType.FIXED_AMOUNT and rule.discount_value <= 0:
        errors.append('Fixed amount discount must be greater than zero.')
    for name in ('fixed_price', 'max_discount_amount', 'min_cart_value'):
        value = getattr(rule, name)
        if value is not None and value < 0:
            errors.append(f'{name} cannot be negative.')

    # ── shape vs targets ──────────────────────────────────────────
    if rule.promo_type in _NEEDS_TARGETS and not rule.items:
        errors.append(f'{rule.promo_type.value} promotion needs at least one item target.')
    if rule.discount_type is DiscountType.FREE_ITEM:
        if not rule.is_item_scoped:
            errors.append('FREE_ITEM discount needs item targets.')
        elif not any(item.free_quantity > 0 for item in rule.items):
            errors.append('FREE_ITEM discount needs a target with a free quantity.')
    if rule.discount_type is DiscountType.FIXED_PRICE and rule.fixed_price is None:
        if not any(item.discounted_price is not None for item in rule.items):
            errors.append('FIXED_PRICE discount needs a fixed price or per-item discounted prices.')

    for index, item in enumerate(rule.items, start=1):
        has_item = item.menu_item_id is not None
        has_cat  = item.category_id is not None
        if has_item == has_cat:
            errors.append(f'Target #{index} must name exactly one of menu_item_id or category_id.')
        if item.is_required and item.required_quantity < 1:
            errors.append(f'Target #{index} required quantity must be at least 1.')
        if item.free_quantity < 0 or item.required_quantity < 0:
            errors.append(f'Target #{index} quantities cannot be negative.')
        if item.max_quantity is not None and item.max_quantity < 1:
            errors.append(f'Target #{index} max quantity must be at least 1.')
        if item.discounted_price is not None and item.discounted_price < 0:
            errors.append(f'Target #{index} discounted price cannot be negative.')

    # ── code ──────────────────────────────────────────────────────
    if rule.requires_code and not rule.code:
        errors.append('Promotion requires a code but has none.')

    # ── windows ───────────────────────────────────────────────────
    if rule.start_date and rule.end_date and rule.start_date > rule.end_date:
        errors.append('Start date is after end date.')
    if (rule.time_range_start is None) != (rule.time_range_end is None):
        errors.append('Time range needs both a start and an end.')
    if any(day not in range(1, 8) for day in rule.days_of_week):
        errors.append('Days of week must be ISO numbers 1-7.')

    # ── counts ────────────────────────────────────────────────────
    if rule.min_items is not None and rule.max_items is not None and rule.min_items > rule.max_items:
        errors.append('Minimum items exceeds maximum items.')
    if rule.usage_limit is not None and rule.usage_limit < 0:
        errors.append('Usage limit cannot be negative.')
    if rule.per_customer_limit is not None and rule.per_customer_limit < 0:
        errors.append('Per-customer limit cannot be negative.')

    return errors


class CatalogSnapshot:
    """Immutable, ordered view of the valid active promotions."""

    def __init__(self, rules: Tuple[PromotionRule, ...], rejected: Tuple[CatalogIntegrityError, ...] = ()):
        self.rules = tuple(rules)
        self.rejected = tuple(rejected)
        self._by_id: Dict[int, PromotionRule] = {r.id: r for r in self.rules}
        self._by_code: Dict[str, PromotionRule] = {r.code: r for r in self.rules if r.code}
        self._position: Dict[int, int] = {r.id: i for i, r in enumerate(self.rules)}

    @classmethod
    def build(cls, rules: Iterable[PromotionRule], strict: bool = False) -> 'CatalogSnapshot':
        """Validate `rules` in catalog order and keep the good ones."""
        accepted: List[PromotionRule] = []
        rejected: List[CatalogIntegrityError] = []
        seen_codes: Dict[str, int] = {}

        for rule in rules:
            if not rule.is_active:
                continue
            errors = validate_rule(rule)
            if rule.code and rule.code in seen_codes:
                errors.append(f'Code {rule.code!r} already used by promotion {seen_codes[rule.code]}.')
            if errors:
                exc = CatalogIntegrityError(rule.id, errors)
                if strict:
                    raise exc
                logger.warning("Promotion rejected at catalog load: %s", exc)
                rejected.append(exc)
                continue
            if rule.code:
                seen_codes[rule.code] = rule.id
            accepted.append(rule)

        return cls(tuple(accepted), tuple(rejected))

    def get(self, promotion_id: int) -> Optional[PromotionRule]:
        return self._by_id.get(promotion_id)

    def by_code(self, code: Optional[str]) -> Optional[PromotionRule]:
        return self._by_code.get(normalize_code(code))

    def position(self, promotion_id: int) -> int:
        return self._position[promotion_id]

    def __iter__(self):
        return iter(self.rules)

    def __len__(self):
        return len(self.rules)


# ── ORM → snapshot ────────────────────────────────────────────────

def _opt_decimal(value) -> Optional[Decimal]:
    return None if value is None else Decimal(str(value))


def rule_from_model(promo) -> PromotionRule:
    """Convert a Promotion row (with its items) into a frozen rule."""
    items = tuple(
        PromotionItemRule(
            menu_item_id      = item.menu_item_id,
            category_id       = item.category_id,
            required_quantity = item.required_quantity,
            free_quantity     = item.free_quantity,
            discounted_price  = _opt_decimal(item.discounted_price),
            is_required       = item.is_required,
            max_quantity      = item.max_quantity,
        )
        for item in promo.items
    )
    return PromotionRule(
        id                      = promo.id,
        name                    = promo.name,
        description             = promo.description or '',
        promo_type              = promo.promo_type,
        discount_type           = promo.discount_type,
        discount_value          = Decimal(str(promo.discount_value or 0)),
        fixed_price             = _opt_decimal(promo.fixed_price),
        max_discount_amount     = _opt_decimal(promo.max_discount_amount),
        min_cart_value          = _opt_decimal(promo.min_cart_value),
        min_items               = promo.min_items,
        max_items               = promo.max_items,
        usage_limit             = promo.usage_limit,
        usage_count             = promo.usage_count or 0,
        per_customer_limit      = promo.per_customer_limit,
        start_date              = promo.start_date,
        end_date                = promo.end_date,
        time_range_start        = promo.time_range_start,
        time_range_end          = promo.time_range_end,
        days_of_week            = promo.days_of_week_set,
        requires_code           = promo.requires_code,
        promo_code              = promo.promo_code,
        auto_apply              = promo.auto_apply,
        customer_segments       = promo.segments_list,
        customer_types          = promo.customer_types_list,
        priority                = promo.priority or 0,
        can_combine_with_others = promo.can_combine_with_others,
        is_active               = promo.is_active,
        items                   = items,
    )


class PromotionCatalog:
    """Loads snapshots of the active promotions from the database."""

    def __init__(self, session, strict: bool = False):
        self.session = session
        self.strict = strict

    def snapshot(self) -> CatalogSnapshot:
        from promo_engine.promotions.models import Promotion

        rows = (
            self.session.query(Promotion)
            .filter(Promotion.is_active.is_(True))
            .order_by(Promotion.id)
            .all()
        )
        return CatalogSnapshot.build((rule_from_model(row) for row in rows), strict=self.strict)
