import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from settlement.core.config import settings
from settlement.core.errors import (
    BatchResult, ConflictError, EngineError, NotFoundError, RetryExhaustedError,
    ServiceResult, TransientExternalError, ValidationError,
)
from settlement.core.timeutils import money, to_utc_naive, utcnow
from settlement.models.payout import Payout, PayoutStatus
from settlement.models.settlement import Settlement, SettlementStatus
from settlement.services.payment_rail import PaymentRail, get_payment_rail

logger = logging.getLogger(__name__)


@dataclass
class PayoutBatchRun:
    batch_id: str
    processed_ids: List[int] = field(default_factory=list)
    skipped_ids: List[int] = field(default_factory=list)
    failed_ids: List[int] = field(default_factory=list)
    outcomes: BatchResult = field(default_factory=BatchResult)


class PayoutLifecycleManager:
    """
    Payout state machine.

        Scheduled -> Processing -> Completed
                                -> Failed -> Scheduled (retry, backoff)
        Failed with retry_count == max stays Failed for an operator.
        Failed -> Cancelled when its settlement is cancelled.

    Every transition is a single conditional UPDATE on (id, expected status);
    if another run moved the payout first the update touches no rows and the
    transition is skipped. Rail calls happen after the Processing claim is
    committed, never inside it.
    """

    def __init__(self, db: Session, rail: Optional[PaymentRail] = None):
        self.db = db
        self.rail = rail or get_payment_rail()

    @property
    def max_retry_count(self) -> int:
        return settings.MAX_PAYOUT_RETRY_COUNT

    # ── Scheduling ──────────────────────────────────────────────────

    def schedule_from_settlement(self, settlement_id: int, scheduled_date: Optional[datetime] = None) -> ServiceResult:
        """
        Schedule the seller's net for a Finalized or Invoiced settlement.

        Balances under MIN_PAYOUT_THRESHOLD are not paid; the result succeeds
        with no payout and a warning saying the balance rolls over.
        """
        try:
            settlement = self.db.query(Settlement).filter(Settlement.id == settlement_id).first()
            if not settlement:
                raise NotFoundError(f"Settlement {settlement_id} not found.", settlement_id=settlement_id)
            if settlement.status not in (SettlementStatus.FINALIZED, SettlementStatus.INVOICED):
                raise ValidationError(
                    f"Settlement {settlement_id} is {settlement.status.value}; only finalized or invoiced "
                    f"settlements can be paid out.",
                    settlement_id=settlement_id,
                )
            existing = self.db.query(Payout).filter(Payout.settlement_id == settlement_id).first()
            if existing:
                raise ConflictError(
                    f"Settlement {settlement_id} already has payout {existing.id}.",
                    settlement_id=settlement_id, payout_id=existing.id,
                )

            amount = money(settlement.total_net)
            if amount < settings.MIN_PAYOUT_THRESHOLD:
                logger.info(
                    f"Settlement {settlement_id} net {amount} below threshold "
                    f"{settings.MIN_PAYOUT_THRESHOLD}, rolling over for seller {settlement.seller_id}"
                )
                return ServiceResult.success(None, warnings=[
                    f"Net amount {amount} is below the minimum payout of "
                    f"{settings.MIN_PAYOUT_THRESHOLD} and rolls over to a later payout."
                ])

            payout = Payout(
                seller_id=settlement.seller_id,
                settlement_id=settlement.id,
                amount=amount,
                currency=settlement.currency,
                status=PayoutStatus.SCHEDULED,
                scheduled_date=to_utc_naive(scheduled_date) or utcnow(),
                retry_count=0,
                audit_note=f"Settlement {settlement.period} v{settlement.version}",
            )
            self.db.add(payout)
            try:
                self.db.commit()
            except IntegrityError:
                self.db.rollback()
                raise ConflictError(f"Settlement {settlement_id} already has a payout.", settlement_id=settlement_id)
            self.db.refresh(payout)
        except EngineError as e:
            self.db.rollback()
            logger.info(f"Payout scheduling for settlement {settlement_id} failed ({e.code}): {e.message}")
            return ServiceResult.failure(e)

        logger.info(
            f"Scheduled payout {payout.id} of {payout.amount} for seller {payout.seller_id} "
            f"(settlement {settlement_id}) on {payout.scheduled_date:%Y-%m-%d}"
        )
        return ServiceResult.success(payout)

    def schedule_direct(
        self,
        seller_id: str,
        amount: Decimal,
        scheduled_date: Optional[datetime] = None,
        note: Optional[str] = None,
    ) -> ServiceResult:
        if not seller_id or not seller_id.strip():
            return ServiceResult.failure(ValidationError("Seller id is required."))
        amount = money(amount)
        if amount <= 0:
            return ServiceResult.failure(ValidationError("Payout amount must be greater than zero.", seller_id=seller_id))

        payout = Payout(
            seller_id=seller_id,
            amount=amount,
            currency=settings.SETTLEMENT_CURRENCY,
            status=PayoutStatus.SCHEDULED,
            scheduled_date=to_utc_naive(scheduled_date) or utcnow(),
            retry_count=0,
            audit_note=note,
        )
        self.db.add(payout)
        self.db.commit()
        self.db.refresh(payout)
        logger.info(f"Scheduled direct payout {payout.id} of {amount} for seller {seller_id}")
        return ServiceResult.success(payout)

    # ── Processing ──────────────────────────────────────────────────

    def process_due_payouts(self, now: Optional[datetime] = None, limit: Optional[int] = None) -> PayoutBatchRun:
        now = to_utc_naive(now) or utcnow()
        limit = limit or settings.MAX_PAYOUTS_PER_BATCH
        run = PayoutBatchRun(batch_id=uuid.uuid4().hex)

        due_ids = [
            row[0] for row in
            self.db.query(Payout.id)
            .outerjoin(Settlement, Payout.settlement_id == Settlement.id)
            .filter(
                Payout.status == PayoutStatus.SCHEDULED,
                Payout.scheduled_date <= now,
                or_(Payout.settlement_id.is_(None), Settlement.status != SettlementStatus.CANCELLED),
            )
            .order_by(Payout.scheduled_date, Payout.id)
            .limit(limit)
            .all()
        ]

        for payout_id in due_ids:
            claimed = self._transition(
                payout_id, PayoutStatus.SCHEDULED, PayoutStatus.PROCESSING,
                batch_id=run.batch_id, processing_started_at=now,
                error_code=None, error_message=None,
            )
            if not claimed:
                logger.debug(f"Payout {payout_id} already claimed by another run")
                run.skipped_ids.append(payout_id)
                continue

            result = self._submit(payout_id)
            run.outcomes.record(str(payout_id), result)
            if result.succeeded:
                run.processed_ids.append(payout_id)
            else:
                run.failed_ids.append(payout_id)

        logger.info(
            f"Payout batch {run.batch_id}: {len(run.processed_ids)} processed, "
            f"{len(run.skipped_ids)} skipped, {len(run.failed_ids)} failed"
        )
        return run

    def _submit(self, payout_id: int) -> ServiceResult:
        payout = self.db.query(Payout).filter(Payout.id == payout_id).first()
        try:
            submission = self.rail.submit(payout)
        except TransientExternalError as e:
            logger.warning(f"Payout {payout_id} failed on the rail (attempt {payout.retry_count + 1}): {e.message}")
            self._transition(
                payout_id, PayoutStatus.PROCESSING, PayoutStatus.FAILED,
                error_code=e.code, error_message=e.message, failed_at=utcnow(),
            )
            return ServiceResult.failure(e)
        except Exception as e:
            # Unknown rail errors must not strand the claimed payout in Processing
            logger.exception(f"Payout {payout_id} raised on the rail: {e}")
            self.db.rollback()
            self._transition(
                payout_id, PayoutStatus.PROCESSING, PayoutStatus.FAILED,
                error_code="rail_error", error_message=str(e), failed_at=utcnow(),
            )
            return ServiceResult.failure(TransientExternalError(
                f"Payout {payout_id} failed on the rail: {e}", payout_id=payout_id,
            ))

        if not submission.accepted:
            logger.warning(f"Payout {payout_id} rejected by the rail: {submission.error_message}")
            self._transition(
                payout_id, PayoutStatus.PROCESSING, PayoutStatus.FAILED,
                error_code="rejected", error_message=submission.error_message, failed_at=utcnow(),
            )
            return ServiceResult.failure(TransientExternalError(
                f"Payout {payout_id} rejected: {submission.error_message}", payout_id=payout_id,
            ))

        if submission.settled:
            self._transition(
                payout_id, PayoutStatus.PROCESSING, PayoutStatus.COMPLETED,
                rail_reference=submission.rail_reference, completed_at=utcnow(),
            )
        else:
            self._transition(
                payout_id, PayoutStatus.PROCESSING, PayoutStatus.PROCESSING,
                rail_reference=submission.rail_reference,
            )
        return ServiceResult.success(payout_id)

    def confirm_payout(
        self,
        payout_id: int,
        succeeded: bool,
        rail_reference: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> ServiceResult:
        """Outcome reported by the payment rail for a Processing payout."""
        payout = self.db.query(Payout).filter(Payout.id == payout_id).first()
        if not payout:
            return ServiceResult.failure(NotFoundError(f"Payout {payout_id} not found.", payout_id=payout_id))

        values = {"rail_reference": rail_reference or payout.rail_reference}
        if succeeded:
            values["completed_at"] = utcnow()
            new_status = PayoutStatus.COMPLETED
        else:
            values.update(error_code="rail_failed", error_message=error_message, failed_at=utcnow())
            new_status = PayoutStatus.FAILED

        if not self._transition(payout_id, PayoutStatus.PROCESSING, new_status, **values):
            self.db.refresh(payout)
            return ServiceResult.failure(ConflictError(
                f"Payout {payout_id} is {payout.status.value}, not processing.", payout_id=payout_id,
            ))

        payout = self.get_payout(payout_id).value
        if succeeded:
            logger.info(f"Payout {payout_id} completed for seller {payout.seller_id} ({payout.rail_reference})")
        else:
            logger.warning(f"Payout {payout_id} failed for seller {payout.seller_id}: {error_message}")
        return ServiceResult.success(payout)

    # ── Retry ───────────────────────────────────────────────────────

    def get_payouts_for_retry(self, max_retry_count: Optional[int] = None) -> List[Payout]:
        """Failed payouts with retry_count strictly below the maximum."""
        if max_retry_count is None:
            max_retry_count = self.max_retry_count
        return (
            self.db.query(Payout)
            .filter(Payout.status == PayoutStatus.FAILED, Payout.retry_count < max_retry_count)
            .order_by(Payout.failed_at, Payout.id)
            .all()
        )

    def payouts_needing_intervention(self, max_retry_count: Optional[int] = None) -> List[Payout]:
        if max_retry_count is None:
            max_retry_count = self.max_retry_count
        return (
            self.db.query(Payout)
            .filter(Payout.status == PayoutStatus.FAILED, Payout.retry_count >= max_retry_count)
            .order_by(Payout.failed_at, Payout.id)
            .all()
        )

    def retry_payout(self, payout_id: int, now: Optional[datetime] = None) -> ServiceResult:
        now = to_utc_naive(now) or utcnow()
        try:
            payout = self.db.query(Payout).filter(Payout.id == payout_id).first()
            if not payout:
                raise NotFoundError(f"Payout {payout_id} not found.", payout_id=payout_id)
            if payout.status != PayoutStatus.FAILED:
                raise ValidationError(
                    f"Payout {payout_id} is {payout.status.value}; only failed payouts can be retried.",
                    payout_id=payout_id,
                )
            if payout.settlement is not None and payout.settlement.status == SettlementStatus.CANCELLED:
                raise ConflictError(
                    f"Payout {payout_id} belongs to cancelled settlement {payout.settlement_id}.",
                    payout_id=payout_id, settlement_id=payout.settlement_id,
                )
            attempts = payout.retry_count or 0
            if attempts >= self.max_retry_count:
                logger.error(
                    f"Payout {payout_id} for seller {payout.seller_id} exhausted {attempts} retries, "
                    f"manual intervention required (code={RetryExhaustedError.code})"
                )
                raise RetryExhaustedError(
                    f"Payout {payout_id} has reached the maximum of {self.max_retry_count} retries.",
                    payout_id=payout_id, seller_id=payout.seller_id,
                )

            delay = timedelta(minutes=settings.PAYOUT_RETRY_BACKOFF_MINUTES * (2 ** attempts))
            claimed = (
                self.db.query(Payout)
                .filter(
                    Payout.id == payout_id,
                    Payout.status == PayoutStatus.FAILED,
                    Payout.retry_count == attempts,
                )
                .update({
                    "status": PayoutStatus.SCHEDULED,
                    "retry_count": attempts + 1,
                    "scheduled_date": now + delay,
                    "batch_id": None,
                    "updated_at": now,
                }, synchronize_session=False)
            )
            self.db.commit()
            if claimed != 1:
                raise ConflictError(f"Payout {payout_id} changed while scheduling its retry.", payout_id=payout_id)
        except EngineError as e:
            self.db.rollback()
            return ServiceResult.failure(e)

        payout = self.get_payout(payout_id).value
        logger.info(
            f"Rescheduled payout {payout_id} (retry {payout.retry_count}/{self.max_retry_count}) "
            f"for {payout.scheduled_date:%Y-%m-%d %H:%M}"
        )
        return ServiceResult.success(payout)

    def retry_failed_payouts(self, now: Optional[datetime] = None) -> BatchResult:
        batch = BatchResult()
        for payout in self.get_payouts_for_retry():
            batch.record(str(payout.id), self.retry_payout(payout.id, now=now))

        stuck = self.payouts_needing_intervention()
        if stuck:
            logger.error(
                f"{len(stuck)} payout(s) exhausted retries and need manual intervention: "
                f"{', '.join(str(p.id) for p in stuck)}"
            )
        return batch

    # ── Reads ───────────────────────────────────────────────────────

    def get_payout(self, payout_id: int) -> ServiceResult:
        payout = self.db.query(Payout).filter(Payout.id == payout_id).first()
        if not payout:
            return ServiceResult.failure(NotFoundError(f"Payout {payout_id} not found.", payout_id=payout_id))
        return ServiceResult.success(payout)

    def list_payouts(
        self,
        seller_id: Optional[str] = None,
        status: Optional[PayoutStatus] = None,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> ServiceResult:
        from_date = to_utc_naive(from_date)
        to_date = to_utc_naive(to_date)
        if from_date and to_date and from_date > to_date:
            return ServiceResult.failure(ValidationError("From date cannot be after to date."))
        if page < 1 or page_size < 1 or page_size > 200:
            return ServiceResult.failure(ValidationError("Page must be >= 1 and page size between 1 and 200."))

        query = self.db.query(Payout)
        if seller_id:
            query = query.filter(Payout.seller_id == seller_id)
        if status:
            query = query.filter(Payout.status == status)
        if from_date:
            query = query.filter(Payout.scheduled_date >= from_date)
        if to_date:
            query = query.filter(Payout.scheduled_date <= to_date)

        total = query.count()
        items = (
            query.order_by(Payout.scheduled_date.desc(), Payout.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
            .all()
        )
        return ServiceResult.success((items, total))

    def _transition(self, payout_id: int, expected: PayoutStatus, new_status: PayoutStatus, **values) -> bool:
        values["status"] = new_status
        values["updated_at"] = utcnow()
        rows = (
            self.db.query(Payout)
            .filter(Payout.id == payout_id, Payout.status == expected)
            .update(values, synchronize_session=False)
        )
        self.db.commit()
        return rows == 1
