from typing import List, Optional
from fastapi import APIRouter, Depends, Header, Query, Response, status
from sqlalchemy.orm import Session
from settlement.api.responses import unwrap
from settlement.core.database import get_db
from settlement.models.invoice import InvoiceStatus
from settlement.schemas.invoice import CommissionInvoice, CreditNoteRequest
from settlement.services.invoice import CommissionInvoiceService
from settlement.services.invoice_pdf import generate_invoice_pdf

router = APIRouter(prefix="/api/invoices", tags=["invoices"])


@router.post("/from-settlement/{settlement_id}", response_model=CommissionInvoice,
             status_code=status.HTTP_201_CREATED)
def issue_invoice(
    settlement_id: int,
    notes: Optional[str] = None,
    x_user: Optional[str] = Header(None),
    db: Session = Depends(get_db),
):
    """Invoice a finalized settlement's commission and mark it Invoiced."""
    return unwrap(CommissionInvoiceService(db).issue_for_settlement(settlement_id, x_user, notes))


@router.get("", response_model=List[CommissionInvoice])
def list_invoices(
    seller_id: Optional[str] = None,
    year: Optional[int] = None,
    status: Optional[InvoiceStatus] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
):
    return CommissionInvoiceService(db).list_invoices(seller_id, year, status, skip, limit)


@router.get("/{invoice_id}", response_model=CommissionInvoice)
def get_invoice(invoice_id: int, db: Session = Depends(get_db)):
    return unwrap(CommissionInvoiceService(db).get_invoice(invoice_id))


@router.post("/{invoice_id}/void", response_model=CommissionInvoice)
def void_invoice(invoice_id: int, reason: Optional[str] = None, db: Session = Depends(get_db)):
    return unwrap(CommissionInvoiceService(db).void_invoice(invoice_id, reason))


@router.post("/{invoice_id}/credit-note", response_model=CommissionInvoice, status_code=status.HTTP_201_CREATED)
def create_credit_note(invoice_id: int, request: CreditNoteRequest, db: Session = Depends(get_db)):
    result = CommissionInvoiceService(db).create_credit_note(invoice_id, request.credit_amount, request.reason)
    return unwrap(result)


@router.get("/{invoice_id}/pdf")
def download_invoice_pdf(invoice_id: int, db: Session = Depends(get_db)):
    invoice = unwrap(CommissionInvoiceService(db).get_invoice(invoice_id))
    pdf_bytes = generate_invoice_pdf(invoice)
    return Response(
        content=pdf_bytes,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="invoice_{invoice.invoice_number}.pdf"'},
    )
