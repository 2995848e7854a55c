"""
promo_engine/promotions/ledger.py
---------------------------------
The only writer of promotion usage counters.

Increment algorithm
───────────────────
A plain read-modify-write is NOT safe under concurrent order completions:

    Tx A: reads usage_count = 9 (limit 10)  →  writes 10   ┐
    Tx B: reads usage_count = 9 (limit 10)  →  writes 10   ┘  ← 11 real uses

So the limit check and the increment are one statement:

    UPDATE promotions SET usage_count = usage_count + 1
     WHERE id = :id AND (usage_limit IS NULL OR usage_count < usage_limit)

The database's row write lock serialises concurrent updates of the same
promotion; a rowcount of 0 means the limit was reached first by someone
else. Per-customer counters use the same conditional UPDATE, with an
INSERT on first use (a concurrent first use trips the unique constraint
and the caller retries).

record() runs every increment of one order plus its redemption rows in a
single transaction: either all promotions are counted or none are.

rollback() undoes a receipt only within the grace window after commit.
Past the window usage stays consumed, so cancelling orders cannot be used
to farm limited promotions.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import distinct, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError

from promo_engine.promotions.models import (
    Promotion, PromotionCustomerUsage, PromotionRedemption,
)
from promo_engine.promotions.rules import ErrorCode, PromoError, PromotionRule, money
from promo_engine.utils.clock import SystemClock

logger = logging.getLogger(__name__)


class UsageLimitReached(Exception):
    """A conditional increment lost: the promotion's limit is already used up."""

    def __init__(self, promotion_id: int, error: PromoError):
        self.promotion_id = promotion_id
        self.error = error
        super().__init__(f'Promotion {promotion_id}: {error.message}')


@dataclass(frozen=True)
class RollbackResult:
    receipt_id:    str
    rolled_back:   bool
    promotion_ids: Tuple[int, ...] = ()
    error:         Optional[PromoError] = None

    def to_dict(self) -> dict:
        return {
            'receipt_id':    self.receipt_id,
            'rolled_back':   self.rolled_back,
            'promotion_ids': list(self.promotion_ids),
            'error':         self.error.to_dict() if self.error else None,
        }


@dataclass(frozen=True)
class UsageSummary:
    promotion_id:     int
    promo_name:       str
    redemptions:      int
    total_discount:   Decimal
    unique_customers: int

    def to_dict(self) -> dict:
        return {
            'promotion_id':     self.promotion_id,
            'promo_name':       self.promo_name,
            'redemptions':      self.redemptions,
            'total_discount':   str(self.total_discount),
            'unique_customers': self.unique_customers,
        }


class UsageLedger:
    """Redemption counting for one database session."""

    def __init__(self, session, clock=None, grace_period: timedelta = timedelta(minutes=30)):
        self.session = session
        self.clock = clock or SystemClock()
        self.grace_period = grace_period

    # ── Reads ─────────────────────────────────────────────────────

    def customer_usage(self, customer_id: Optional[str]) -> Dict[int, int]:
        """{promotion_id: used_count} for one customer (empty when anonymous)."""
        if customer_id is None:
            return {}
        rows = self.session.execute(
            select(PromotionCustomerUsage.promotion_id, PromotionCustomerUsage.used_count)
            .where(PromotionCustomerUsage.customer_id == customer_id)
        ).all()
        return {promotion_id: used for promotion_id, used in rows}

    def usage_summary(self, start: Optional[date] = None, end: Optional[date] = None,
                      promotion_id: Optional[int] = None) -> List[UsageSummary]:
        """
        Redemptions per promotion between `start` and `end` (inclusive
        dates). Rolled-back redemptions are not counted.
        """
        query = (
            self.session.query(
                PromotionRedemption.promotion_id,
                func.max(PromotionRedemption.promo_name),
                func.count(PromotionRedemption.id),
                func.sum(PromotionRedemption.discount_amount),
                func.count(distinct(PromotionRedemption.customer_id)),
            )
            .filter(PromotionRedemption.rolled_back_at.is_(None))
        )
        if start is not None:
            query = query.filter(PromotionRedemption.committed_at >= datetime.combine(start, time.min))
        if end is not None:
            query = query.filter(PromotionRedemption.committed_at < datetime.combine(end + timedelta(days=1), time.min))
        if promotion_id is not None:
            query = query.filter(PromotionRedemption.promotion_id == promotion_id)

        rows = query.group_by(PromotionRedemption.promotion_id).order_by(PromotionRedemption.promotion_id).all()
        return [
            UsageSummary(
                promotion_id=pid,
                promo_name=name,
                redemptions=count,
                total_discount=money(total or 0),
                unique_customers=customers,
            )
            for pid, name, count, total, customers in rows
        ]

    # ── The one mutating entry point ──────────────────────────────

    def try_increment(self, promotion_id: int, customer_id: Optional[str] = None,
                      per_customer_limit: Optional[int] = None) -> Optional[PromoError]:
        """
        Count one use of `promotion_id` iff its limits allow it.

        MUST be called inside an open transaction; nothing is committed here.
        Returns None on success, otherwise the limit that blocked it.
        """
        result = self.session.execute(
            update(Promotion)
            .where(Promotion.id == promotion_id)
            .where(or_(Promotion.usage_limit.is_(None), Promotion.usage_count < Promotion.usage_limit))
            .values(usage_count=Promotion.usage_count + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return PromoError(ErrorCode.USAGE_LIMIT_REACHED, 'Promotion usage limit has been reached.')

        if per_customer_limit is None or customer_id is None:
            return None

        result = self.session.execute(
            update(PromotionCustomerUsage)
            .where(PromotionCustomerUsage.promotion_id == promotion_id)
            .where(PromotionCustomerUsage.customer_id == customer_id)
            .where(PromotionCustomerUsage.used_count < per_customer_limit)
            .values(used_count=PromotionCustomerUsage.used_count + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            return None

        exists = self.session.execute(
            select(PromotionCustomerUsage.id)
            .where(PromotionCustomerUsage.promotion_id == promotion_id)
            .where(PromotionCustomerUsage.customer_id == customer_id)
        ).first()
        if exists or per_customer_limit < 1:
            return PromoError(
                ErrorCode.PER_CUSTOMER_LIMIT_REACHED,
                f'Promotion can be used {per_customer_limit} time(s) per customer.',
            )

        # First use by this customer.
        self.session.add(PromotionCustomerUsage(
            promotion_id=promotion_id, customer_id=customer_id, used_count=1,
        ))
        self.session.flush()
        return None

    def record(self, receipt_id: str, entries: Iterable[Tuple[PromotionRule, Decimal]],
               customer_id: Optional[str] = None, order_ref: Optional[str] = None) -> List[PromotionRedemption]:
        """
        Count every (rule, discount) entry and write redemption rows, all
        in one transaction.

        Raises:
            UsageLimitReached — a limit was hit; nothing was counted.
            SQLAlchemyError   — lock timeout / unique race; nothing was counted.
        """
        now = self.clock.now()
        redemptions = []
        try:
            for rule, amount in entries:
                error = self.try_increment(rule.id, customer_id, rule.per_customer_limit)
                if error:
                    raise UsageLimitReached(rule.id, error)
                redemption = PromotionRedemption(
                    receipt_id=receipt_id,
                    order_ref=order_ref,
                    promotion_id=rule.id,
                    customer_id=customer_id,
                    promo_name=rule.name,
                    discount_amount=amount,
                    counted_for_customer=rule.per_customer_limit is not None and customer_id is not None,
                    committed_at=now,
                )
                self.session.add(redemption)
                redemptions.append(redemption)
            self.session.commit()
        except (UsageLimitReached, SQLAlchemyError):
            self.session.rollback()
            raise
        return redemptions

    # ── Compensation ──────────────────────────────────────────────

    def rollback(self, receipt_id: str) -> RollbackResult:
        """Release the usage taken by `receipt_id` if still inside the grace window."""
        rows = (
            self.session.query(PromotionRedemption)
            .filter(PromotionRedemption.receipt_id == receipt_id)
            .order_by(PromotionRedemption.id)
            .all()
        )
        if not rows:
            return RollbackResult(receipt_id, False, error=PromoError(ErrorCode.NOT_FOUND, 'Receipt not found.'))

        live = [row for row in rows if row.rolled_back_at is None]
        if not live:
            return RollbackResult(receipt_id, False,
                                  error=PromoError(ErrorCode.ALREADY_APPLIED, 'Receipt was already rolled back.'))

        now = self.clock.now()
        committed_at = min(row.committed_at for row in live)
        if now - committed_at > self.grace_period:
            logger.info("Rollback refused for receipt %s: grace window elapsed", receipt_id)
            return RollbackResult(receipt_id, False, error=PromoError(
                ErrorCode.EXPIRED, 'Grace window for releasing promotion usage has elapsed.',
            ))

        try:
            for row in live:
                self.session.execute(
                    update(Promotion)
                    .where(Promotion.id == row.promotion_id)
                    .where(Promotion.usage_count > 0)
                    .values(usage_count=Promotion.usage_count - 1)
                    .execution_options(synchronize_session=False)
                )
                if row.counted_for_customer:
                    self.session.execute(
                        update(PromotionCustomerUsage)
                        .where(PromotionCustomerUsage.promotion_id == row.promotion_id)
                        .where(PromotionCustomerUsage.customer_id == row.customer_id)
                        .where(PromotionCustomerUsage.used_count > 0)
                        .values(used_count=PromotionCustomerUsage.used_count - 1)
                        .execution_options(synchronize_session=False)
                    )
                row.rolled_back_at = now
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            raise

        logger.info("Rolled back receipt %s (%d promotion(s))", receipt_id, len(live))
        return RollbackResult(receipt_id, True, tuple(row.promotion_id for row in live))
