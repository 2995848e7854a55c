"""
promo_engine/promotions/engine.py
---------------------------------
Evaluation orchestrator: the only entry point collaborators use.

    preview         — pure. Matcher → Resolver → Calculator.
    validate_code   — one code in isolation, typed result.
    list_applicable — eligible offers with standalone estimates.
    commit          — re-evaluate against the current catalog, then count
                      usage through the ledger (all or nothing).
    rollback        — release a receipt's usage inside the grace window.
    analytics       — redemption totals per promotion.

preview / validate_code / list_applicable never write and never raise
for business outcomes: ineligibility, bad codes and conflicts come back
as `{code, message}` reasons, so a caller can still render partial results.

Per-promotion states within one call:

    CANDIDATE → ELIGIBLE | INELIGIBLE(reason)
    ELIGIBLE  → ACCEPTED | REJECTED(conflict)
    ACCEPTED  → COMMITTED | COMMIT_FAILED(reason)       (commit only)
"""
from __future__ import annotations
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError

from promo_engine.promotions.calculator import AppliedDiscount, apply_discounts, estimate
from promo_engine.promotions.catalog import CatalogSnapshot, PromotionCatalog
from promo_engine.promotions.ledger import RollbackResult, UsageLedger, UsageLimitReached, UsageSummary
from promo_engine.promotions.matcher import Candidate, evaluate_rule, match_promotions
from promo_engine.promotions.resolver import Resolution, resolve
from promo_engine.promotions.rules import (
    Cart, CandidateStatus, ErrorCode, EvaluationContext, PromoError, PromotionType,
    TriggerKind, money,
)
from promo_engine.utils.clock import get_clock

logger = logging.getLogger(__name__)


# ── Result types ──────────────────────────────────────────────────

@dataclass(frozen=True)
class ApplicablePromotion:
    promotion_id:    int
    name:            str
    promo_type:      Optional[PromotionType]
    trigger:         Optional[TriggerKind]
    status:          CandidateStatus
    discount_amount: Decimal = Decimal('0.00')
    applied:         bool = False
    reason:          Optional[PromoError] = None
    matched_items:   tuple = ()

    @classmethod
    def from_candidate(cls, candidate: Candidate, amount: Decimal = Decimal('0.00'),
                       status: Optional[CandidateStatus] = None,
                       reason: Optional[PromoError] = None, matched=None) -> 'ApplicablePromotion':
        status = status or candidate.status
        match = matched if matched is not None else candidate.match
        return cls(
            promotion_id=candidate.rule.id,
            name=candidate.rule.name,
            promo_type=candidate.rule.promo_type,
            trigger=candidate.trigger,
            status=status,
            discount_amount=money(amount),
            applied=status in (CandidateStatus.ACCEPTED, CandidateStatus.COMMITTED),
            reason=reason if reason is not None else candidate.reason,
            matched_items=tuple(line.menu_item_id for line in match.lines),
        )

    def to_dict(self) -> dict:
        return {
            'promotion_id':    self.promotion_id,
            'name':            self.name,
            'promo_type':      self.promo_type.value if self.promo_type else None,
            'trigger':         self.trigger.value if self.trigger else None,
            'status':          self.status.value,
            'discount_amount': str(self.discount_amount),
            'applied':         self.applied,
            'reason':          self.reason.to_dict() if self.reason else None,
            'matched_items':   list(self.matched_items),
        }


@dataclass(frozen=True)
class PromotionPreview:
    original_subtotal:      Decimal
    total_discount:         Decimal
    estimated_final_amount: Decimal
    promotions:             tuple = ()   # applied first (application order), then the rest
    invalid_codes:          tuple = ()   # ((code, PromoError), ...)

    @property
    def applied(self) -> List[ApplicablePromotion]:
        return [p for p in self.promotions if p.applied]

    def to_dict(self) -> dict:
        return {
            'original_subtotal':      str(self.original_subtotal),
            'total_discount':         str(self.total_discount),
            'estimated_final_amount': str(self.estimated_final_amount),
            'promotions':             [p.to_dict() for p in self.promotions],
            'invalid_codes':          [{'promo_code': code, 'error': err.to_dict()}
                                       for code, err in self.invalid_codes],
        }


@dataclass(frozen=True)
class PromotionValidation:
    valid:              bool
    estimated_discount: Decimal = Decimal('0.00')
    promotion_id:       Optional[int] = None
    promotion_name:     Optional[str] = None
    error:              Optional[PromoError] = None

    def to_dict(self) -> dict:
        return {
            'valid':              self.valid,
            'estimated_discount': str(self.estimated_discount),
            'promotion_id':       self.promotion_id,
            'promotion_name':     self.promotion_name,
            'error':              self.error.to_dict() if self.error else None,
        }


@dataclass(frozen=True)
class CommitReceipt:
    success:        bool
    receipt_id:     Optional[str]
    order_ref:      Optional[str] = None
    committed:      tuple = ()
    failures:       tuple = ()
    total_discount: Decimal = Decimal('0.00')
    attempts:       int = 0

    def to_dict(self) -> dict:
        return {
            'success':        self.success,
            'receipt_id':     self.receipt_id,
            'order_ref':      self.order_ref,
            'committed':      [p.to_dict() for p in self.committed],
            'failures':       [p.to_dict() for p in self.failures],
            'total_discount': str(self.total_discount),
        }


@dataclass
class Evaluation:
    """Everything one Matcher → Resolver → Calculator pass produced."""
    snapshot:   CatalogSnapshot
    cart:       Cart
    candidates: List[Candidate]
    resolution: Resolution
    applied:    List[AppliedDiscount]
    conflicts:  List[Candidate]
    statuses:   Dict[int, Candidate] = field(default_factory=dict)

    @property
    def total_discount(self) -> Decimal:
        return money(sum((a.amount for a in self.applied), Decimal('0')))

    @property
    def applied_ids(self) -> List[int]:
        return [a.candidate.rule.id for a in self.applied]


def evaluate(snapshot: CatalogSnapshot, cart: Cart, context: EvaluationContext,
             customer_usage: Optional[Dict[int, int]] = None) -> Evaluation:
    """Pure evaluation of one cart against one catalog snapshot."""
    candidates = match_promotions(snapshot, cart, context, customer_usage)
    resolution = resolve(candidates, cart)
    applied, conflicts = apply_discounts(resolution.accepted, cart)

    # Latest state per promotion id.
    statuses = {c.rule.id: c for c in candidates}
    for c in resolution.rejected + conflicts:
        statuses[c.rule.id] = c
    for a in applied:
        statuses[a.candidate.rule.id] = a.candidate

    return Evaluation(snapshot, cart, candidates, resolution, applied, conflicts, statuses)


def build_preview(evaluation: Evaluation, context: EvaluationContext) -> PromotionPreview:
    subtotal = evaluation.cart.subtotal
    total = evaluation.total_discount

    rows = [
        ApplicablePromotion.from_candidate(a.candidate, a.amount, matched=a.match)
        for a in evaluation.applied
    ]
    applied_ids = set(evaluation.applied_ids)
    for candidate in evaluation.candidates:
        if candidate.rule.id not in applied_ids:
            rows.append(ApplicablePromotion.from_candidate(evaluation.statuses[candidate.rule.id]))

    invalid = tuple(
        (code, PromoError(ErrorCode.NOT_FOUND, f'Promo code {code!r} is not valid.'))
        for code in context.codes
        if evaluation.snapshot.by_code(code) is None
    )

    return PromotionPreview(
        original_subtotal=subtotal,
        total_discount=total,
        estimated_final_amount=money(subtotal - total),
        promotions=tuple(rows),
        invalid_codes=invalid,
    )


# ── Orchestrator ──────────────────────────────────────────────────

class PromotionEngine:
    """Composes catalog, matcher, resolver, calculator and ledger."""

    def __init__(self, catalog: PromotionCatalog, ledger: UsageLedger,
                 retries: int = 3, backoff_seconds: float = 0.05, sleep=time.sleep):
        self.catalog = catalog
        self.ledger = ledger
        self.retries = max(1, retries)
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep

    @classmethod
    def from_app(cls, app, session) -> 'PromotionEngine':
        """Build an engine from Flask config and the app's clock."""
        clock = get_clock(app)
        grace = timedelta(minutes=app.config['PROMO_ROLLBACK_GRACE_MINUTES'])
        return cls(
            catalog=PromotionCatalog(session),
            ledger=UsageLedger(session, clock=clock, grace_period=grace),
            retries=app.config['PROMO_COMMIT_RETRIES'],
            backoff_seconds=app.config['PROMO_COMMIT_BACKOFF_SECONDS'],
        )

    def _evaluate_current(self, cart: Cart, context: EvaluationContext) -> Evaluation:
        snapshot = self.catalog.snapshot()
        usage = self.ledger.customer_usage(context.customer_id)
        return evaluate(snapshot, cart, context, usage)

    # ── Read-only operations ──────────────────────────────────────

    def preview(self, cart: Cart, context: EvaluationContext) -> PromotionPreview:
        return build_preview(self._evaluate_current(cart, context), context)

    def list_applicable(self, cart: Cart, context: EvaluationContext) -> List[ApplicablePromotion]:
        """Eligible offers in resolver order, each with its standalone estimate."""
        evaluation = self._evaluate_current(cart, context)
        resolution = evaluation.resolution
        return [
            ApplicablePromotion.from_candidate(
                evaluation.statuses[candidate.rule.id],
                resolution.estimates[candidate.rule.id],
                matched=candidate.match,
            )
            for candidate in resolution.ordered
        ]

    def validate_code(self, code: str, cart: Cart, context: EvaluationContext) -> PromotionValidation:
        """Check one code on its own; combinability is not considered here."""
        snapshot = self.catalog.snapshot()
        rule = snapshot.by_code(code)
        if rule is None:
            return PromotionValidation(
                valid=False, error=PromoError(ErrorCode.NOT_FOUND, f'Promo code {code!r} is not valid.'),
            )
        if context.has_code(code):
            return PromotionValidation(
                valid=False, promotion_id=rule.id, promotion_name=rule.name,
                error=PromoError(ErrorCode.ALREADY_APPLIED, 'This promo code is already applied.'),
            )

        usage = self.ledger.customer_usage(context.customer_id)
        candidate = evaluate_rule(rule, cart, context, usage, TriggerKind.CODE, snapshot.position(rule.id))
        if not candidate.eligible:
            return PromotionValidation(
                valid=False, promotion_id=rule.id, promotion_name=rule.name, error=candidate.reason,
            )

        return PromotionValidation(
            valid=True,
            estimated_discount=estimate(candidate, cart),
            promotion_id=rule.id,
            promotion_name=rule.name,
        )

    def analytics(self, start: Optional[date] = None, end: Optional[date] = None,
                  promotion_id: Optional[int] = None) -> List[UsageSummary]:
        return self.ledger.usage_summary(start=start, end=end, promotion_id=promotion_id)

    # ── Mutating operations ───────────────────────────────────────

    def _stale_failures(self, evaluation: Evaluation, requested: Sequence[int]) -> List[ApplicablePromotion]:
        """Requested promotions that are no longer accepted on the current catalog."""
        failures = []
        for promotion_id in requested:
            candidate = evaluation.statuses.get(promotion_id)
            if candidate is None:
                # Gone from the catalog, or a code promotion whose code was not submitted.
                rule = evaluation.snapshot.get(promotion_id)
                failures.append(ApplicablePromotion(
                    promotion_id=promotion_id,
                    name=rule.name if rule else '',
                    promo_type=rule.promo_type if rule else None,
                    trigger=None,
                    status=CandidateStatus.COMMIT_FAILED,
                    reason=PromoError(ErrorCode.NOT_FOUND, 'Promotion is no longer available.'),
                ))
            elif candidate.status is not CandidateStatus.ACCEPTED:
                failures.append(ApplicablePromotion.from_candidate(
                    candidate, status=CandidateStatus.COMMIT_FAILED,
                ))
        return failures

    def _failed(self, requested: Sequence[int], evaluation: Evaluation, error: PromoError,
                order_ref: Optional[str], attempts: int) -> CommitReceipt:
        failures = tuple(
            ApplicablePromotion.from_candidate(evaluation.statuses[pid], status=CandidateStatus.COMMIT_FAILED,
                                               reason=error)
            for pid in requested if pid in evaluation.statuses
        )
        return CommitReceipt(success=False, receipt_id=None, order_ref=order_ref,
                             failures=failures, attempts=attempts)

    def commit(self, cart: Cart, context: EvaluationContext, promotion_ids: Iterable[int],
               order_ref: Optional[str] = None) -> CommitReceipt:
        """
        Count usage for the promotions a customer saw in preview.

        The cart is re-evaluated against the current catalog first, so a
        promotion that expired or ran out between preview and checkout is
        caught here. Every requested promotion must still be accepted,
        otherwise nothing is counted.
        """
        requested = list(dict.fromkeys(int(pid) for pid in promotion_ids))
        receipt_id = uuid.uuid4().hex
        evaluation = None

        for attempt in range(1, self.retries + 1):
            evaluation = self._evaluate_current(cart, context)

            failures = self._stale_failures(evaluation, requested)
            if failures:
                logger.info("Commit refused for order %s: %s", order_ref,
                            ', '.join(f'{f.promotion_id}={f.reason.code.value}' for f in failures))
                return CommitReceipt(success=False, receipt_id=None, order_ref=order_ref,
                                     failures=tuple(failures), attempts=attempt)

            subset = [c for c in evaluation.resolution.accepted if c.rule.id in requested]
            applied, conflicts = apply_discounts(subset, cart)
            if conflicts:
                failures = tuple(
                    ApplicablePromotion.from_candidate(c, status=CandidateStatus.COMMIT_FAILED)
                    for c in conflicts
                )
                logger.info("Commit refused for order %s: nothing to discount for %s",
                            order_ref, [c.rule.id for c in conflicts])
                return CommitReceipt(success=False, receipt_id=None, order_ref=order_ref,
                                     failures=failures, attempts=attempt)
            if not applied:
                return CommitReceipt(success=True, receipt_id=None, order_ref=order_ref, attempts=attempt)

            try:
                self.ledger.record(
                    receipt_id,
                    [(a.candidate.rule, a.amount) for a in applied],
                    customer_id=context.customer_id,
                    order_ref=order_ref,
                )
            except UsageLimitReached as exc:
                logger.warning("Commit attempt %d/%d lost usage race: %s", attempt, self.retries, exc)
            except SQLAlchemyError as exc:
                logger.warning("Commit attempt %d/%d hit a database conflict: %s", attempt, self.retries, exc)
            else:
                total = money(sum((a.amount for a in applied), Decimal('0')))
                logger.info("Promotions committed: receipt %s order %s ids %s discount %s",
                            receipt_id, order_ref, [a.candidate.rule.id for a in applied], total)
                return CommitReceipt(
                    success=True,
                    receipt_id=receipt_id,
                    order_ref=order_ref,
                    committed=tuple(
                        ApplicablePromotion.from_candidate(a.candidate, a.amount,
                                                           status=CandidateStatus.COMMITTED, matched=a.match)
                        for a in applied
                    ),
                    total_discount=total,
                    attempts=attempt,
                )

            if attempt < self.retries:
                self._sleep(self.backoff_seconds * (2 ** (attempt - 1)))

        logger.error("Commit for order %s gave up after %d attempts", order_ref, self.retries)
        return self._failed(
            requested, evaluation,
            PromoError(ErrorCode.CONCURRENT_MODIFICATION, 'Promotion usage changed during checkout. Please retry.'),
            order_ref, self.retries,
        )

    def rollback(self, receipt_id: str) -> RollbackResult:
        return self.ledger.rollback(receipt_id)
