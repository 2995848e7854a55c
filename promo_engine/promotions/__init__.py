"""
promo_engine/promotions/__init__.py
-----------------------------------
Promotion evaluation blueprint.
URL prefix: /promotions
"""
from flask import Blueprint

promotions = Blueprint('promotions', __name__)

from promo_engine.promotions import routes  # noqa: E402, F401
