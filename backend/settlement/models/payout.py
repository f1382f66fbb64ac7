"""Payout model: money moving from the platform to a seller."""
from sqlalchemy import Column, Integer, String, Numeric, DateTime, Enum, Text, ForeignKey
from sqlalchemy.orm import relationship
from settlement.core.database import Base
from settlement.core.timeutils import utcnow
import enum


class PayoutStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    PROCESSING = "processing"
    COMPLETED = "completed"  # terminal
    FAILED = "failed"
    CANCELLED = "cancelled"  # terminal, its settlement was cancelled


class Payout(Base):
    __tablename__ = "payouts"

    id = Column(Integer, primary_key=True, index=True)
    seller_id = Column(String, nullable=False, index=True)

    # Source: a settlement, or a direct amount when settlement_id is null
    settlement_id = Column(Integer, ForeignKey("settlements.id"), nullable=True, unique=True)

    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="USD")

    status = Column(
        Enum(PayoutStatus, native_enum=False, values_callable=lambda e: [m.value for m in e]),
        default=PayoutStatus.SCHEDULED,
        nullable=False,
        index=True,
    )
    scheduled_date = Column(DateTime, nullable=False, index=True)
    retry_count = Column(Integer, nullable=False, default=0)
    batch_id = Column(String, nullable=True, index=True)

    # Payment rail bookkeeping
    rail_reference = Column(String, nullable=True)
    error_code = Column(String, nullable=True)
    error_message = Column(Text, nullable=True)
    audit_note = Column(Text, nullable=True)

    processing_started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=True, onupdate=utcnow)

    settlement = relationship("Settlement")
