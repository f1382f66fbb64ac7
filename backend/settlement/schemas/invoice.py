from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import datetime
from decimal import Decimal
from settlement.models.invoice import InvoiceStatus, InvoiceType


class InvoiceLine(BaseModel):
    id: int
    commission_record_id: Optional[int]
    description: str
    amount: Decimal

    class Config:
        from_attributes = True


class CommissionInvoice(BaseModel):
    id: int
    invoice_number: str
    seller_id: str
    year: int
    month: int
    invoice_type: InvoiceType
    status: InvoiceStatus
    settlement_id: Optional[int]
    original_invoice_id: Optional[int]
    amount: Decimal
    currency: str
    notes: Optional[str]
    issue_date: datetime
    due_date: Optional[datetime]
    voided_at: Optional[datetime]
    lines: List[InvoiceLine] = []

    class Config:
        from_attributes = True


class CreditNoteRequest(BaseModel):
    credit_amount: Decimal = Field(..., gt=0)
    reason: str = Field(..., min_length=1)
