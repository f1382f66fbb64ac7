"""Commission invoices and the per-year number sequence behind them."""
from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, Enum, Text, ForeignKey, UniqueConstraint,
)
from sqlalchemy.orm import relationship
from settlement.core.database import Base
from settlement.core.timeutils import utcnow
import enum


class InvoiceType(str, enum.Enum):
    STANDARD = "standard"
    CREDIT_NOTE = "credit_note"


class InvoiceStatus(str, enum.Enum):
    ISSUED = "issued"
    CORRECTED = "corrected"  # fully credited
    VOIDED = "voided"        # number stays consumed


class InvoiceSequence(Base):
    """Last invoice number handed out for a year. Only ever moves forward."""
    __tablename__ = "invoice_sequences"

    year = Column(Integer, primary_key=True)
    current_number = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, nullable=True, onupdate=utcnow)


class CommissionInvoice(Base):
    __tablename__ = "commission_invoices"
    __table_args__ = (
        UniqueConstraint("year", "invoice_number", name="uq_commission_invoices_year_number"),
    )

    id = Column(Integer, primary_key=True, index=True)
    invoice_number = Column(String, nullable=False, index=True)  # "2025-000123"
    seller_id = Column(String, nullable=False, index=True)
    year = Column(Integer, nullable=False)
    month = Column(Integer, nullable=False)

    invoice_type = Column(
        Enum(InvoiceType, native_enum=False, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=InvoiceType.STANDARD,
    )
    status = Column(
        Enum(InvoiceStatus, native_enum=False, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=InvoiceStatus.ISSUED,
    )

    settlement_id = Column(Integer, ForeignKey("settlements.id"), nullable=True, index=True)
    original_invoice_id = Column(Integer, ForeignKey("commission_invoices.id"), nullable=True)

    amount = Column(Numeric(12, 2), nullable=False)  # commission billed (negative on credit notes)
    currency = Column(String(3), nullable=False, default="USD")
    notes = Column(Text, nullable=True)

    issue_date = Column(DateTime, nullable=False, default=utcnow)
    due_date = Column(DateTime, nullable=True)
    voided_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=True, onupdate=utcnow)

    settlement = relationship("Settlement")
    lines = relationship("InvoiceLine", back_populates="invoice", cascade="all, delete-orphan")


class InvoiceLine(Base):
    __tablename__ = "commission_invoice_lines"

    id = Column(Integer, primary_key=True, index=True)
    invoice_id = Column(Integer, ForeignKey("commission_invoices.id"), nullable=False, index=True)
    commission_record_id = Column(Integer, ForeignKey("commission_records.id"), nullable=True)
    description = Column(String, nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)

    invoice = relationship("CommissionInvoice", back_populates="lines")
