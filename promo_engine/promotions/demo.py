"""
promo_engine/promotions/demo.py
-------------------------------
Demo restaurant catalog used by `flask seed-demo`.
"""
from datetime import date, time, timedelta

from promo_engine.promotions.models import Promotion, PromotionItem
from promo_engine.promotions.rules import DiscountType, PromotionType


def seed_demo_catalog(session) -> int:
    """Insert the demo promotions unless some already exist. Returns the count created."""
    if session.query(Promotion).count():
        return 0

    today = date.today()
    promos = [
        Promotion(
            name='10% off orders over 50', promo_type=PromotionType.CART_DISCOUNT,
            discount_type=DiscountType.PERCENTAGE, discount_value=10,
            min_cart_value=50, max_discount_amount=5, priority=1,
        ),
        Promotion(
            name='Burger: buy 2 get 1 free', promo_type=PromotionType.BOGO,
            discount_type=DiscountType.FREE_ITEM, priority=5,
            items=[PromotionItem(menu_item_id='burger', required_quantity=2, free_quantity=1)],
        ),
        Promotion(
            name='Happy hour drinks 25% off', promo_type=PromotionType.TIME_BASED,
            discount_type=DiscountType.PERCENTAGE, discount_value=25,
            time_range_start=time(17, 0), time_range_end=time(19, 0),
            days_of_week='[1, 2, 3, 4, 5]', priority=3,
            items=[PromotionItem(category_id='drinks', required_quantity=1)],
        ),
        Promotion(
            name='Lunch combo for 12', promo_type=PromotionType.COMBO_DEAL,
            discount_type=DiscountType.FIXED_PRICE, fixed_price=12,
            time_range_start=time(11, 30), time_range_end=time(14, 30), priority=4,
            items=[
                PromotionItem(category_id='mains', required_quantity=1),
                PromotionItem(category_id='sides', required_quantity=1),
                PromotionItem(category_id='drinks', required_quantity=1),
            ],
        ),
        Promotion(
            name='SAVE10 coupon', promo_type=PromotionType.COUPON,
            discount_type=DiscountType.FIXED_AMOUNT, discount_value=10,
            requires_code=True, promo_code='SAVE10', auto_apply=False,
            min_cart_value=40, usage_limit=100, per_customer_limit=1,
            can_combine_with_others=False, end_date=today + timedelta(days=30),
        ),
    ]
    session.add_all(promos)
    session.commit()
    return len(promos)
