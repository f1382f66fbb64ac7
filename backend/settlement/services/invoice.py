import logging
from datetime import timedelta
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from settlement.core.config import settings
from settlement.core.errors import (
    ConflictError, EngineError, NotFoundError, ServiceResult, ValidationError,
)
from settlement.core.locks import invoice_year_locks, settlement_locks
from settlement.core.timeutils import money, utcnow
from settlement.models.invoice import (
    CommissionInvoice, InvoiceLine, InvoiceSequence, InvoiceStatus, InvoiceType,
)
from settlement.models.settlement import Settlement, SettlementStatus

logger = logging.getLogger(__name__)

MAX_ALLOCATION_ATTEMPTS = 20


class InvoiceAllocator:
    """
    Year-scoped invoice numbers ("2025-000123").

    The counter lives in one ``invoice_sequences`` row per year and is only
    advanced by a compare-and-swap UPDATE committed in its own short
    transaction, so a number is never handed out twice and never reused,
    even if the invoice that received it is later voided. Callers in this
    process are serialized per year; other processes lose the CAS and retry.

    Allocate before the calling session writes anything: on SQLite the
    dedicated session needs the write lock.
    """

    def __init__(self, db: Session):
        self._sessions = sessionmaker(bind=db.get_bind(), autocommit=False, autoflush=False)

    @staticmethod
    def format_number(year: int, number: int) -> str:
        return f"{year}-{number:0{settings.INVOICE_NUMBER_PADDING}d}"

    def next_invoice_number(self, year: int) -> str:
        return self.format_number(year, self.allocate(year))

    def allocate(self, year: int) -> int:
        if year < 2000 or year > 2100:
            raise ValidationError("Year must be between 2000 and 2100.", year=year)

        with invoice_year_locks.hold(year):
            session = self._sessions()
            try:
                for _ in range(MAX_ALLOCATION_ATTEMPTS):
                    current = (
                        session.query(InvoiceSequence.current_number)
                        .filter(InvoiceSequence.year == year)
                        .scalar()
                    )
                    if current is None:
                        session.add(InvoiceSequence(year=year, current_number=0))
                        try:
                            session.commit()
                        except IntegrityError:
                            # created concurrently elsewhere
                            session.rollback()
                        continue

                    rows = (
                        session.query(InvoiceSequence)
                        .filter(InvoiceSequence.year == year, InvoiceSequence.current_number == current)
                        .update(
                            {"current_number": current + 1, "updated_at": utcnow()},
                            synchronize_session=False,
                        )
                    )
                    session.commit()
                    if rows == 1:
                        return current + 1
                    logger.debug(f"Invoice sequence {year} moved past {current}, retrying")
            finally:
                session.close()

        raise ConflictError(f"Could not allocate an invoice number for {year}.", year=year)


class CommissionInvoiceService:
    """Commission invoices billed to sellers from finalized settlements."""

    def __init__(self, db: Session):
        self.db = db
        self.allocator = InvoiceAllocator(db)

    def issue_for_settlement(
        self,
        settlement_id: int,
        issued_by: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> ServiceResult:
        try:
            settlement = self.db.query(Settlement).filter(Settlement.id == settlement_id).first()
            if not settlement:
                raise NotFoundError(f"Settlement {settlement_id} not found.", settlement_id=settlement_id)

            with settlement_locks.hold((settlement.seller_id, settlement.year, settlement.month)):
                self.db.refresh(settlement)
                if settlement.status == SettlementStatus.INVOICED:
                    raise ConflictError(
                        f"Settlement {settlement_id} has already been invoiced.", settlement_id=settlement_id,
                    )
                if settlement.status != SettlementStatus.FINALIZED:
                    raise ValidationError(
                        f"Settlement {settlement_id} is {settlement.status.value}; finalize it before invoicing.",
                        settlement_id=settlement_id,
                    )

                # No writes on self.db before this point
                number = self.allocator.next_invoice_number(settlement.year)
                now = utcnow()
                invoice = CommissionInvoice(
                    invoice_number=number,
                    seller_id=settlement.seller_id,
                    year=settlement.year,
                    month=settlement.month,
                    invoice_type=InvoiceType.STANDARD,
                    status=InvoiceStatus.ISSUED,
                    settlement_id=settlement.id,
                    amount=money(settlement.total_commission),
                    currency=settlement.currency,
                    notes=notes,
                    issue_date=now,
                    due_date=now + timedelta(days=settings.INVOICE_PAYMENT_DUE_DAYS),
                    lines=[
                        InvoiceLine(
                            commission_record_id=item.commission_record_id,
                            description=(
                                f"Refunded commission on order {item.order_id} "
                                f"({item.original_year}-{item.original_month:02d})"
                                if item.is_adjustment else f"Commission on order {item.order_id}"
                            ),
                            amount=item.commission_amount,
                        )
                        for item in settlement.line_items
                    ],
                )
                self.db.add(invoice)
                settlement.status = SettlementStatus.INVOICED
                settlement.invoiced_at = now
                settlement.audit_notes = (
                    (settlement.audit_notes + "\n" if settlement.audit_notes else "")
                    + f"[{now:%Y-%m-%d %H:%M:%S}] Invoiced as {number} by {issued_by or 'system'}"
                )
                self.db.commit()
                self.db.refresh(invoice)
        except EngineError as e:
            self.db.rollback()
            logger.info(f"Invoice for settlement {settlement_id} not issued ({e.code}): {e.message}")
            return ServiceResult.failure(e)

        logger.info(
            f"Issued invoice {invoice.invoice_number} for seller {invoice.seller_id} "
            f"{invoice.year}-{invoice.month:02d}: {invoice.amount} {invoice.currency}"
        )
        return ServiceResult.success(invoice)

    def void_invoice(self, invoice_id: int, reason: Optional[str] = None) -> ServiceResult:
        """
        Void an issued invoice. Its number stays consumed. Voiding a standard
        invoice returns its settlement to Finalized so it can be invoiced again.
        """
        try:
            invoice = self._get(invoice_id)
            if invoice.status != InvoiceStatus.ISSUED:
                raise ValidationError(
                    f"Invoice {invoice.invoice_number} is {invoice.status.value} and cannot be voided.",
                    invoice_id=invoice_id,
                )
            if self._credited_total(invoice) > 0:
                raise ConflictError(
                    f"Invoice {invoice.invoice_number} has credit notes; credit the remainder instead.",
                    invoice_id=invoice_id,
                )
            now = utcnow()
            invoice.status = InvoiceStatus.VOIDED
            invoice.voided_at = now
            if reason:
                invoice.notes = (invoice.notes + "\n" if invoice.notes else "") + f"Voided: {reason}"
            if invoice.invoice_type == InvoiceType.STANDARD and invoice.settlement is not None:
                if invoice.settlement.status == SettlementStatus.INVOICED:
                    invoice.settlement.status = SettlementStatus.FINALIZED
                    invoice.settlement.invoiced_at = None
            self.db.commit()
            self.db.refresh(invoice)
        except EngineError as e:
            self.db.rollback()
            return ServiceResult.failure(e)

        logger.info(f"Voided invoice {invoice.invoice_number} for seller {invoice.seller_id}")
        return ServiceResult.success(invoice)

    def create_credit_note(self, invoice_id: int, credit_amount: Decimal, reason: str) -> ServiceResult:
        """
        Credit all or part of a standard invoice. The credit note gets its own
        number and a negative amount; once the credits cover the whole
        original it is marked Corrected.
        """
        try:
            errors = []
            credit = money(credit_amount) if credit_amount is not None else Decimal("0")
            if credit <= 0:
                errors.append("Credit amount must be greater than zero.")
            if not reason or not reason.strip():
                errors.append("Reason is required for a credit note.")
            if errors:
                raise ValidationError(errors[0], errors=errors, invoice_id=invoice_id)

            original = self._get(invoice_id)
            if original.invoice_type != InvoiceType.STANDARD:
                raise ValidationError("Credit notes can only be issued against standard invoices.")
            if original.status != InvoiceStatus.ISSUED:
                raise ValidationError(
                    f"Invoice {original.invoice_number} is {original.status.value} and cannot be credited.",
                    invoice_id=invoice_id,
                )
            remaining = original.amount - self._credited_total(original)
            if credit > remaining:
                raise ValidationError(
                    f"Credit amount {credit} exceeds the uncredited invoice amount {remaining}.",
                    invoice_id=invoice_id,
                )

            number = self.allocator.next_invoice_number(original.year)
            now = utcnow()
            note = CommissionInvoice(
                invoice_number=number,
                seller_id=original.seller_id,
                year=original.year,
                month=original.month,
                invoice_type=InvoiceType.CREDIT_NOTE,
                status=InvoiceStatus.ISSUED,
                settlement_id=original.settlement_id,
                original_invoice_id=original.id,
                amount=-credit,
                currency=original.currency,
                notes=reason.strip(),
                issue_date=now,
                lines=[InvoiceLine(
                    description=f"Credit against invoice {original.invoice_number}: {reason.strip()}",
                    amount=-credit,
                )],
            )
            self.db.add(note)
            if credit == remaining:
                original.status = InvoiceStatus.CORRECTED
            self.db.commit()
            self.db.refresh(note)
        except EngineError as e:
            self.db.rollback()
            return ServiceResult.failure(e)

        logger.info(f"Issued credit note {note.invoice_number} for {credit} against invoice {original.invoice_number}")
        return ServiceResult.success(note)

    def get_invoice(self, invoice_id: int) -> ServiceResult:
        try:
            return ServiceResult.success(self._get(invoice_id))
        except NotFoundError as e:
            return ServiceResult.failure(e)

    def list_invoices(
        self,
        seller_id: Optional[str] = None,
        year: Optional[int] = None,
        status: Optional[InvoiceStatus] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> List[CommissionInvoice]:
        query = self.db.query(CommissionInvoice)
        if seller_id:
            query = query.filter(CommissionInvoice.seller_id == seller_id)
        if year:
            query = query.filter(CommissionInvoice.year == year)
        if status:
            query = query.filter(CommissionInvoice.status == status)
        return query.order_by(CommissionInvoice.issue_date.desc(), CommissionInvoice.id.desc()).offset(skip).limit(limit).all()

    def _get(self, invoice_id: int) -> CommissionInvoice:
        invoice = self.db.query(CommissionInvoice).filter(CommissionInvoice.id == invoice_id).first()
        if not invoice:
            raise NotFoundError(f"Invoice {invoice_id} not found.", invoice_id=invoice_id)
        return invoice

    def _credited_total(self, invoice: CommissionInvoice) -> Decimal:
        total = (
            self.db.query(func.coalesce(func.sum(CommissionInvoice.amount), 0))
            .filter(
                CommissionInvoice.original_invoice_id == invoice.id,
                CommissionInvoice.invoice_type == InvoiceType.CREDIT_NOTE,
                CommissionInvoice.status != InvoiceStatus.VOIDED,
            )
            .scalar()
        )
        return -money(str(total))
