import csv
import io
import logging
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from settlement.core.config import settings
from settlement.core.errors import (
    BatchResult, ConflictError, EngineError, NotFoundError, ServiceResult, ValidationError,
)
from settlement.core.locks import settlement_locks
from settlement.core.timeutils import money, month_bounds, utcnow
from settlement.models.commission import CommissionRecord
from settlement.models.payout import Payout, PayoutStatus
from settlement.models.settlement import Settlement, SettlementLineItem, SettlementStatus

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")


def validate_period(year: int, month: int) -> None:
    errors = []
    if year < 2000 or year > 2100:
        errors.append("Year must be between 2000 and 2100.")
    if month < 1 or month > 12:
        errors.append("Month must be between 1 and 12.")
    if errors:
        raise ValidationError(errors[0], errors=errors, year=year, month=month)


class SettlementGenerator:
    """
    Monthly seller settlements.

    Periods are UTC calendar months. Generating a period that already has a
    Draft settlement rebuilds that settlement in place: line items are
    deleted and recreated from the current commission records, then totals
    are recomputed. Finalized and Invoiced settlements are frozen.
    Work on the same (seller, year, month) is serialized by a row lock on
    the live settlement; ``settlement_locks`` also serializes threads of one
    process before they reach the database.
    """

    def __init__(self, db: Session):
        self.db = db

    def generate(
        self,
        seller_id: str,
        year: int,
        month: int,
        note: Optional[str] = None,
        generated_by: Optional[str] = None,
    ) -> ServiceResult:
        try:
            if not seller_id or not seller_id.strip():
                raise ValidationError("Seller id is required.")
            seller_id = seller_id.strip()
            validate_period(year, month)
            with settlement_locks.hold((seller_id, year, month)):
                settlement = self._live_settlement(seller_id, year, month)
                if settlement is None:
                    settlement = Settlement(
                        seller_id=seller_id,
                        year=year,
                        month=month,
                        currency=settings.SETTLEMENT_CURRENCY,
                        status=SettlementStatus.DRAFT,
                        version=1,
                        generated_at=utcnow(),
                    )
                    self.db.add(settlement)
                    self._append_note(settlement, f"Generated by {generated_by or 'system'}", note)
                    action = "Generated"
                else:
                    self._ensure_draft(settlement, "regenerated")
                    self._mark_regenerated(settlement, generated_by, note)
                    action = "Regenerated"

                self._rebuild_and_commit(settlement)
        except EngineError as e:
            self.db.rollback()
            logger.info(f"Settlement for seller {seller_id} {year}-{month:02d} failed ({e.code}): {e.message}")
            return ServiceResult.failure(e)

        logger.info(
            f"{action} settlement {settlement.id} for seller {seller_id} {settlement.period} "
            f"v{settlement.version}: {settlement.order_count} orders, gross {settlement.total_gross}, "
            f"commission {settlement.total_commission}, net {settlement.total_net}"
        )
        return ServiceResult.success(settlement)

    def regenerate(self, settlement_id: int, reason: Optional[str] = None,
                   regenerated_by: Optional[str] = None) -> ServiceResult:
        try:
            settlement = self._get(settlement_id)
            key = (settlement.seller_id, settlement.year, settlement.month)
            with settlement_locks.hold(key):
                self.db.refresh(settlement, with_for_update=True)
                self._ensure_draft(settlement, "regenerated")
                self._mark_regenerated(settlement, regenerated_by, reason)
                self._rebuild_and_commit(settlement)
        except EngineError as e:
            self.db.rollback()
            logger.info(f"Regeneration of settlement {settlement_id} failed ({e.code}): {e.message}")
            return ServiceResult.failure(e)

        logger.info(f"Regenerated settlement {settlement_id} to v{settlement.version}: net {settlement.total_net}")
        return ServiceResult.success(settlement)

    def finalize(self, settlement_id: int, finalized_by: Optional[str] = None) -> ServiceResult:
        try:
            settlement = self._get(settlement_id)
            with settlement_locks.hold((settlement.seller_id, settlement.year, settlement.month)):
                self.db.refresh(settlement, with_for_update=True)
                self._ensure_draft(settlement, "finalized")
                now = utcnow()
                settlement.status = SettlementStatus.FINALIZED
                settlement.finalized_at = now
                settlement.finalized_by = finalized_by
                self._append_note(settlement, f"Finalized by {finalized_by or 'system'}")
                self.db.commit()
                self.db.refresh(settlement)
        except EngineError as e:
            self.db.rollback()
            return ServiceResult.failure(e)

        logger.info(f"Finalized settlement {settlement_id} for seller {settlement.seller_id} {settlement.period}")
        return ServiceResult.success(settlement)

    def cancel(self, settlement_id: int, reason: Optional[str] = None,
               cancelled_by: Optional[str] = None) -> ServiceResult:
        try:
            settlement = self._get(settlement_id)
            with settlement_locks.hold((settlement.seller_id, settlement.year, settlement.month)):
                self.db.refresh(settlement, with_for_update=True)
                if settlement.status not in (SettlementStatus.DRAFT, SettlementStatus.FINALIZED):
                    raise ValidationError(
                        f"Settlement {settlement_id} is {settlement.status.value} and cannot be cancelled.",
                        settlement_id=settlement_id,
                    )
                payout = (
                    self.db.query(Payout)
                    .filter(Payout.settlement_id == settlement_id)
                    .with_for_update()
                    .first()
                )
                if payout and payout.status != PayoutStatus.FAILED:
                    raise ConflictError(
                        f"Settlement {settlement_id} has payout {payout.id} ({payout.status.value}).",
                        settlement_id=settlement_id,
                    )
                if payout:
                    self._cancel_failed_payout(payout.id, settlement_id)
                settlement.status = SettlementStatus.CANCELLED
                settlement.cancelled_at = utcnow()
                self._append_note(settlement, f"Cancelled by {cancelled_by or 'system'}", reason)
                self.db.commit()
                self.db.refresh(settlement)
        except EngineError as e:
            self.db.rollback()
            return ServiceResult.failure(e)

        logger.info(f"Cancelled settlement {settlement_id} for seller {settlement.seller_id} {settlement.period}")
        return ServiceResult.success(settlement)

    def _cancel_failed_payout(self, payout_id: int, settlement_id: int) -> None:
        """Retire a Failed payout in the cancelling transaction so no retry can send it again."""
        rows = (
            self.db.query(Payout)
            .filter(Payout.id == payout_id, Payout.status == PayoutStatus.FAILED)
            .update({
                "status": PayoutStatus.CANCELLED,
                "error_code": "settlement_cancelled",
                "error_message": f"Settlement {settlement_id} was cancelled.",
                "updated_at": utcnow(),
            }, synchronize_session=False)
        )
        if rows != 1:
            raise ConflictError(
                f"Payout {payout_id} changed while cancelling settlement {settlement_id}.",
                settlement_id=settlement_id, payout_id=payout_id,
            )
        logger.info(f"Cancelled failed payout {payout_id} with settlement {settlement_id}")

    def get(self, settlement_id: int) -> ServiceResult:
        try:
            return ServiceResult.success(self._get(settlement_id))
        except NotFoundError as e:
            return ServiceResult.failure(e)

    def list_settlements(
        self,
        seller_id: Optional[str] = None,
        status: Optional[SettlementStatus] = None,
        year: Optional[int] = None,
        month: Optional[int] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> ServiceResult:
        if page < 1 or page_size < 1 or page_size > 200:
            return ServiceResult.failure(ValidationError("Page must be >= 1 and page size between 1 and 200."))

        query = self.db.query(Settlement)
        if seller_id:
            query = query.filter(Settlement.seller_id == seller_id)
        if status:
            query = query.filter(Settlement.status == status)
        if year:
            query = query.filter(Settlement.year == year)
        if month:
            query = query.filter(Settlement.month == month)

        total = query.count()
        items = (
            query.order_by(Settlement.year.desc(), Settlement.month.desc(), Settlement.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
            .all()
        )
        return ServiceResult.success((items, total))

    def export_csv(self, settlement_id: int) -> ServiceResult:
        """One row per line item followed by a totals row."""
        try:
            settlement = self._get(settlement_id)
        except NotFoundError as e:
            return ServiceResult.failure(e)

        output = io.StringIO()
        writer = csv.writer(output)
        writer.writerow([
            "Settlement", "Seller", "Period", "Status", "Order", "Type", "Completed At",
            "Gross", "Refunds", "Commission", "Net",
        ])
        for item in settlement.line_items:
            writer.writerow([
                settlement.id, settlement.seller_id, settlement.period, settlement.status.value,
                item.order_id, _item_type(item), item.order_completed_at.isoformat(),
                item.gross_amount, item.refund_amount, item.commission_amount, item.net_amount,
            ])
        writer.writerow([
            settlement.id, settlement.seller_id, settlement.period, settlement.status.value,
            "TOTAL", "", "",
            settlement.total_gross, settlement.total_refunds, settlement.total_commission, settlement.total_net,
        ])
        return ServiceResult.success(output.getvalue())

    def generate_for_period(self, year: int, month: int, generated_by: Optional[str] = None) -> BatchResult:
        """
        Generate every seller with orders, or late refunds, in the period.
        Failures are recorded per seller and the run continues.
        """
        batch = BatchResult()
        try:
            validate_period(year, month)
        except ValidationError as e:
            batch.record(f"{year}-{month:02d}", ServiceResult.failure(e))
            return batch

        start, end = month_bounds(year, month)
        seller_ids = [
            row[0] for row in
            self.db.query(CommissionRecord.seller_id)
            .filter(or_(
                (CommissionRecord.order_completed_at >= start) & (CommissionRecord.order_completed_at < end),
                (CommissionRecord.order_completed_at < start)
                & (CommissionRecord.last_refund_at >= start) & (CommissionRecord.last_refund_at < end),
            ))
            .distinct()
            .order_by(CommissionRecord.seller_id)
            .all()
        ]
        for seller_id in seller_ids:
            batch.record(seller_id, self.generate(seller_id, year, month, generated_by=generated_by))

        logger.info(
            f"Settlement run {year}-{month:02d}: {batch.succeeded_count} succeeded, "
            f"{batch.failed_count} failed of {len(seller_ids)} sellers"
        )
        return batch

    def _get(self, settlement_id: int) -> Settlement:
        settlement = self.db.query(Settlement).filter(Settlement.id == settlement_id).first()
        if not settlement:
            raise NotFoundError(f"Settlement {settlement_id} not found.", settlement_id=settlement_id)
        return settlement

    def _live_settlement(self, seller_id: str, year: int, month: int) -> Optional[Settlement]:
        return (
            self.db.query(Settlement)
            .filter(
                Settlement.seller_id == seller_id,
                Settlement.year == year,
                Settlement.month == month,
                Settlement.status != SettlementStatus.CANCELLED,
            )
            .with_for_update()
            .first()
        )

    @staticmethod
    def _ensure_draft(settlement: Settlement, action: str) -> None:
        if settlement.status != SettlementStatus.DRAFT:
            raise ConflictError(
                f"Settlement {settlement.id} for {settlement.period} is {settlement.status.value} "
                f"and cannot be {action}.",
                settlement_id=settlement.id,
                seller_id=settlement.seller_id,
            )

    def _mark_regenerated(self, settlement: Settlement, by: Optional[str], reason: Optional[str]) -> None:
        settlement.version = (settlement.version or 1) + 1
        settlement.regenerated_at = utcnow()
        self._append_note(settlement, f"Regenerated to v{settlement.version} by {by or 'system'}", reason)

    @staticmethod
    def _append_note(settlement: Settlement, action: str, detail: Optional[str] = None) -> None:
        line = f"[{utcnow():%Y-%m-%d %H:%M:%S}] {action}"
        if detail:
            line += f": {detail}"
        settlement.audit_notes = f"{settlement.audit_notes}\n{line}" if settlement.audit_notes else line

    def _period_records(self, seller_id: str, start: datetime, end: datetime) -> List[CommissionRecord]:
        return (
            self.db.query(CommissionRecord)
            .filter(
                CommissionRecord.seller_id == seller_id,
                CommissionRecord.order_completed_at >= start,
                CommissionRecord.order_completed_at < end,
            )
            .order_by(CommissionRecord.order_completed_at, CommissionRecord.id)
            .all()
        )

    def _late_refund_records(self, seller_id: str, start: datetime, end: datetime) -> List[CommissionRecord]:
        """Records from earlier periods whose latest refund falls in this period."""
        return (
            self.db.query(CommissionRecord)
            .filter(
                CommissionRecord.seller_id == seller_id,
                CommissionRecord.order_completed_at < start,
                CommissionRecord.last_refund_at >= start,
                CommissionRecord.last_refund_at < end,
            )
            .order_by(CommissionRecord.order_completed_at, CommissionRecord.id)
            .all()
        )

    def _captured_elsewhere(self, record_ids: List[int], settlement_id: int) -> Dict[int, Tuple[Decimal, Decimal]]:
        """Refund and refunded commission already carried by other live settlements, per record."""
        if not record_ids:
            return {}
        rows = (
            self.db.query(
                SettlementLineItem.commission_record_id,
                func.sum(SettlementLineItem.refund_amount),
                func.sum(SettlementLineItem.refunded_commission),
            )
            .join(Settlement, SettlementLineItem.settlement_id == Settlement.id)
            .filter(
                SettlementLineItem.commission_record_id.in_(record_ids),
                Settlement.id != settlement_id,
                Settlement.status != SettlementStatus.CANCELLED,
            )
            .group_by(SettlementLineItem.commission_record_id)
            .all()
        )
        return {record_id: (money(refund or 0), money(commission or 0)) for record_id, refund, commission in rows}

    @staticmethod
    def _line_item(record: CommissionRecord, captured: Tuple[Decimal, Decimal]) -> SettlementLineItem:
        refund = record.refunded_amount - captured[0]
        refunded_commission = record.refunded_commission - captured[1]
        commission = record.commission_amount - refunded_commission
        return SettlementLineItem(
            commission_record_id=record.id,
            order_id=record.order_id,
            order_completed_at=record.order_completed_at,
            gross_amount=record.gross_amount,
            refund_amount=refund,
            refunded_commission=refunded_commission,
            commission_amount=commission,
            net_amount=record.gross_amount - refund - commission,
            is_adjustment=False,
        )

    @staticmethod
    def _adjustment_item(record: CommissionRecord, captured: Tuple[Decimal, Decimal]) -> Optional[SettlementLineItem]:
        refund = record.refunded_amount - captured[0]
        refunded_commission = record.refunded_commission - captured[1]
        if refund <= 0 and refunded_commission <= 0:
            return None
        return SettlementLineItem(
            commission_record_id=record.id,
            order_id=record.order_id,
            order_completed_at=record.order_completed_at,
            gross_amount=ZERO,
            refund_amount=refund,
            refunded_commission=refunded_commission,
            commission_amount=-refunded_commission,
            net_amount=refunded_commission - refund,
            is_adjustment=True,
            original_year=record.order_completed_at.year,
            original_month=record.order_completed_at.month,
        )

    def _rebuild(self, settlement: Settlement) -> None:
        """
        Replace the line items from current commission records.

        A refund is carried by exactly one live settlement: whichever was built
        first takes it, and later builds only take what is still uncaptured.
        """
        # Drop the old line items before inserting the new set
        settlement.line_items = []
        self.db.flush()

        start, end = month_bounds(settlement.year, settlement.month)
        records = self._period_records(settlement.seller_id, start, end)
        late = self._late_refund_records(settlement.seller_id, start, end)
        captured = self._captured_elsewhere([r.id for r in records + late], settlement.id)
        nothing = (ZERO, ZERO)

        items = [self._line_item(record, captured.get(record.id, nothing)) for record in records]
        adjustments = [self._adjustment_item(record, captured.get(record.id, nothing)) for record in late]
        items.extend(item for item in adjustments if item is not None)
        settlement.line_items = items

        totals = summarize(items)
        settlement.total_gross, settlement.total_refunds, settlement.total_commission, settlement.total_net = totals
        settlement.order_count = len({record.order_id for record in records})
        if len(items) > len(records):
            logger.info(
                f"Settlement {settlement.seller_id} {settlement.period}: "
                f"{len(items) - len(records)} refund adjustment(s) for earlier periods"
            )

    def _rebuild_and_commit(self, settlement: Settlement) -> None:
        seller_id, period = settlement.seller_id, settlement.period
        try:
            self._rebuild(settlement)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise ConflictError(
                f"Another settlement for seller {seller_id} {period} already exists.",
                seller_id=seller_id,
            )
        self.db.refresh(settlement)


def summarize(items: List[SettlementLineItem]) -> Tuple[Decimal, Decimal, Decimal, Decimal]:
    gross = sum((i.gross_amount for i in items), ZERO)
    refunds = sum((i.refund_amount for i in items), ZERO)
    commission = sum((i.commission_amount for i in items), ZERO)
    net = sum((i.net_amount for i in items), ZERO)
    return gross, refunds, commission, net


def _item_type(item: SettlementLineItem) -> str:
    if item.is_adjustment:
        return f"adjustment {item.original_year}-{item.original_month:02d}"
    return "order"
