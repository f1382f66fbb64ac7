import logging
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from settlement.core.errors import EngineError, NotFoundError, ServiceResult, ValidationError
from settlement.core.timeutils import money, to_utc_naive, utcnow
from settlement.models.commission import CommissionRecord
from settlement.schemas.commission import (
    CartItemsByStore, CartTotals, OrderCompletion, SellerSubOrder, StoreCommission,
)
from settlement.services.calculator import calculate, default_terms
from settlement.services.rules import RuleStore

logger = logging.getLogger(__name__)


def dominant_category(explicit: Optional[str], amounts: Iterable[Tuple[Optional[str], Decimal]]) -> Optional[str]:
    """
    Category used for rule lookup on a seller's share of an order.

    An explicit hint wins; otherwise the category carrying the largest amount,
    ties going to the alphabetically first id.
    """
    if explicit and explicit.strip():
        return explicit.strip()
    totals: Dict[str, Decimal] = {}
    for category_id, amount in amounts:
        if not category_id:
            continue
        totals[category_id] = totals.get(category_id, Decimal("0")) + Decimal(amount)
    if not totals:
        return None
    return sorted(totals.items(), key=lambda kv: (-kv[1], kv[0]))[0][0]


def _normalized(order: OrderCompletion) -> OrderCompletion:
    """Trim ids so " S1" and "S1" are the same seller."""
    return order.model_copy(update={
        "order_id": (order.order_id or "").strip(),
        "sub_orders": [
            sub.model_copy(update={"seller_id": (sub.seller_id or "").strip()})
            for sub in order.sub_orders
        ],
    })


class CommissionRecordBuilder:
    """
    Turns a completed order into one CommissionRecord per seller.

    Safe to call repeatedly for the same order: sellers that already have a
    record are left untouched, so duplicate order-completion events are no-ops.
    """

    def __init__(self, db: Session):
        self.db = db
        self.rules = RuleStore(db)

    def build_for_order(self, order: OrderCompletion) -> ServiceResult:
        order = _normalized(order)
        try:
            self._validate(order)
            try:
                records, existing = self._build(order)
            except IntegrityError:
                # Another worker recorded some sellers first; their rows are now visible
                self.db.rollback()
                logger.warning(f"Concurrent commission build for order {order.order_id}, re-reading")
                records, existing = self._build(order)
        except EngineError as e:
            self.db.rollback()
            logger.info(f"Commission build for order {order.order_id} rejected ({e.code}): {e.message}")
            return ServiceResult.failure(e)

        warnings = [
            f"Commission record for order {order.order_id} and seller {seller_id} already exists."
            for seller_id in existing
        ]
        return ServiceResult.success(records, warnings=warnings)

    def _validate(self, order: OrderCompletion) -> None:
        errors = []
        if not order.order_id or not order.order_id.strip():
            errors.append("Order id is required.")
        if not order.sub_orders:
            errors.append("Order has no seller sub-orders.")
        seen = set()
        for sub in order.sub_orders:
            if not sub.seller_id or not sub.seller_id.strip():
                errors.append("Seller id is required on every sub-order.")
            elif sub.seller_id in seen:
                errors.append(f"Seller {sub.seller_id} appears more than once in order {order.order_id}.")
            seen.add(sub.seller_id)
            if sub.item_subtotal < 0 or sub.shipping_cost < 0:
                errors.append(f"Amounts for seller {sub.seller_id} cannot be negative.")
        if errors:
            raise ValidationError(errors[0], errors=errors, order_id=order.order_id)

    def _build(self, order: OrderCompletion) -> Tuple[List[CommissionRecord], List[str]]:
        completed_at = to_utc_naive(order.completed_at)
        records = []
        existing_sellers = []
        created = 0

        for sub in order.sub_orders:
            existing = self._find(order.order_id, sub.seller_id)
            if existing:
                records.append(existing)
                existing_sellers.append(sub.seller_id)
                continue
            records.append(self._record_for(order, sub, completed_at))
            created += 1

        self.db.commit()
        for record in records:
            self.db.refresh(record)

        logger.info(
            f"Built {created} commission record(s) for order {order.order_id} "
            f"({len(existing_sellers)} already present)"
        )
        return records, existing_sellers

    def _record_for(self, order: OrderCompletion, sub: SellerSubOrder, completed_at) -> CommissionRecord:
        gross = Decimal(sub.item_subtotal) + Decimal(sub.shipping_cost)
        category_id = dominant_category(
            sub.category_id, ((c.category_id, c.amount) for c in sub.category_amounts)
        )
        terms = self.rules.get_best_matching_rule(sub.seller_id, category_id, completed_at) or default_terms()
        breakdown = calculate(gross, terms)

        record = CommissionRecord(
            order_id=order.order_id,
            payment_transaction_id=order.payment_transaction_id,
            seller_id=sub.seller_id,
            category_id=category_id,
            gross_amount=breakdown.gross_amount,
            commission_rate=terms.commission_rate,
            commission_amount=breakdown.commission_amount,
            net_payout=breakdown.net_payout,
            refunded_amount=Decimal("0.00"),
            refunded_commission=Decimal("0.00"),
            commission_rule_id=terms.id,
            applied_rule_description=terms.description,
            order_completed_at=completed_at,
        )
        self.db.add(record)
        self.db.flush()
        logger.debug(
            f"Order {order.order_id} seller {sub.seller_id}: gross {breakdown.gross_amount}, "
            f"commission {breakdown.commission_amount} via rule {terms.id}"
        )
        return record

    def _find(self, order_id: str, seller_id: str) -> Optional[CommissionRecord]:
        return (
            self.db.query(CommissionRecord)
            .filter(CommissionRecord.order_id == order_id, CommissionRecord.seller_id == seller_id)
            .first()
        )

    def recalculate_partial_refund(self, order_id: str, seller_id: str, refund_amount: Decimal) -> ServiceResult:
        """
        Record a partial refund against an existing commission record.

        Commission is refunded in proportion to the refunded share of gross;
        once gross is fully refunded all commission is refunded.
        """
        order_id, seller_id = order_id.strip(), seller_id.strip()
        try:
            refund = money(refund_amount)
            if refund <= 0:
                raise ValidationError("Refund amount must be greater than zero.", order_id=order_id)
            record = self._find(order_id, seller_id)
            if not record:
                raise NotFoundError(
                    f"No commission record for order {order_id} and seller {seller_id}.",
                    order_id=order_id, seller_id=seller_id,
                )
            remaining = record.gross_amount - record.refunded_amount
            if refund > remaining:
                raise ValidationError(
                    f"Refund {refund} exceeds the remaining refundable amount {remaining}.",
                    order_id=order_id, seller_id=seller_id,
                )

            total_refunded = record.refunded_amount + refund
            if total_refunded == record.gross_amount:
                refunded_commission = record.commission_amount
            else:
                refunded_commission = money(record.commission_amount * total_refunded / record.gross_amount)

            record.refunded_amount = total_refunded
            record.refunded_commission = min(refunded_commission, record.commission_amount)
            record.last_refund_at = utcnow()
            self.db.commit()
            self.db.refresh(record)
        except EngineError as e:
            self.db.rollback()
            return ServiceResult.failure(e)

        logger.info(
            f"Partial refund {refund} on order {order_id} seller {seller_id}: "
            f"refunded commission now {record.refunded_commission}"
        )
        return ServiceResult.success(record)

    def get_records_for_order(self, order_id: str) -> List[CommissionRecord]:
        return (
            self.db.query(CommissionRecord)
            .filter(CommissionRecord.order_id == order_id)
            .order_by(CommissionRecord.seller_id)
            .all()
        )

    def get_records_for_seller(
        self,
        seller_id: str,
        from_date=None,
        to_date=None,
        skip: int = 0,
        limit: int = 100,
    ) -> ServiceResult:
        from_date = to_utc_naive(from_date)
        to_date = to_utc_naive(to_date)
        if from_date and to_date and from_date > to_date:
            return ServiceResult.failure(ValidationError("From date cannot be after to date."))

        query = self.db.query(CommissionRecord).filter(CommissionRecord.seller_id == seller_id)
        if from_date:
            query = query.filter(CommissionRecord.order_completed_at >= from_date)
        if to_date:
            query = query.filter(CommissionRecord.order_completed_at < to_date)
        records = query.order_by(CommissionRecord.order_completed_at.desc()).offset(skip).limit(limit).all()
        return ServiceResult.success(records)


class CommissionPreviewService:
    """Checkout-time projection of per-store commission. Nothing is persisted."""

    def __init__(self, db: Session):
        self.rules = RuleStore(db)

    def calculate_commissions(
        self,
        cart_totals: CartTotals,
        items_by_store: List[CartItemsByStore],
    ) -> ServiceResult:
        now = utcnow()
        result: Dict[str, StoreCommission] = {}
        try:
            for store in items_by_store:
                lines = [(item.category_id, item.unit_price * item.quantity) for item in store.items]
                if any(amount < 0 for _, amount in lines):
                    raise ValidationError(f"Cart for store {store.store_id} has a negative price.")
                items_total = sum((amount for _, amount in lines), Decimal("0"))
                shipping = Decimal(cart_totals.shipping_by_store.get(store.store_id, Decimal("0")))

                category_id = dominant_category(None, lines)
                terms = self.rules.get_best_matching_rule(store.store_id, category_id, now) or default_terms()
                breakdown = calculate(items_total + shipping, terms)

                result[store.store_id] = StoreCommission(
                    store_id=store.store_id,
                    gross_amount=breakdown.gross_amount,
                    commission_rate=terms.commission_rate,
                    commission_amount=breakdown.commission_amount,
                    net_payout=breakdown.net_payout,
                    commission_rule_id=terms.id,
                )
        except EngineError as e:
            return ServiceResult.failure(e)
        return ServiceResult.success(result)
