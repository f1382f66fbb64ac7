from sqlalchemy import Column, Integer, String, Numeric, DateTime, Enum, Text, ForeignKey, Index, Boolean, text
from sqlalchemy.orm import relationship
from settlement.core.database import Base
from settlement.core.timeutils import utcnow
import enum


class SettlementStatus(str, enum.Enum):
    DRAFT = "draft"
    FINALIZED = "finalized"   # frozen, no more regeneration
    INVOICED = "invoiced"     # commission invoice issued
    CANCELLED = "cancelled"


class Settlement(Base):
    """Monthly roll-up of one seller's commission records."""
    __tablename__ = "settlements"
    __table_args__ = (
        # At most one live settlement per seller and month
        Index(
            "uq_settlements_seller_period_live",
            "seller_id", "year", "month",
            unique=True,
            postgresql_where=text("status != 'cancelled'"),
            sqlite_where=text("status != 'cancelled'"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    seller_id = Column(String, nullable=False, index=True)
    year = Column(Integer, nullable=False)
    month = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="USD")

    status = Column(
        Enum(SettlementStatus, native_enum=False, values_callable=lambda e: [m.value for m in e]),
        default=SettlementStatus.DRAFT,
        nullable=False,
    )

    # Totals (recomputed on every regeneration)
    total_gross = Column(Numeric(12, 2), nullable=False, default=0)
    total_refunds = Column(Numeric(12, 2), nullable=False, default=0)
    total_commission = Column(Numeric(12, 2), nullable=False, default=0)
    total_net = Column(Numeric(12, 2), nullable=False, default=0)
    order_count = Column(Integer, nullable=False, default=0)

    version = Column(Integer, nullable=False, default=1)
    audit_notes = Column(Text, nullable=True)

    # Lifecycle timestamps
    generated_at = Column(DateTime, nullable=False, default=utcnow)
    regenerated_at = Column(DateTime, nullable=True)
    finalized_at = Column(DateTime, nullable=True)
    finalized_by = Column(String, nullable=True)
    invoiced_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)

    line_items = relationship(
        "SettlementLineItem",
        back_populates="settlement",
        cascade="all, delete-orphan",
        order_by="[SettlementLineItem.is_adjustment, SettlementLineItem.order_completed_at]",
    )

    @property
    def period(self) -> str:
        return f"{self.year}-{self.month:02d}"


class SettlementLineItem(Base):
    """
    Snapshot of one commission record inside a settlement.

    Adjustment items carry refunds recorded in this period against orders
    from an earlier period; they have no gross and a negative commission.
    """
    __tablename__ = "settlement_line_items"

    id = Column(Integer, primary_key=True, index=True)
    settlement_id = Column(Integer, ForeignKey("settlements.id"), nullable=False, index=True)
    commission_record_id = Column(Integer, ForeignKey("commission_records.id"), nullable=False, index=True)

    order_id = Column(String, nullable=False)
    order_completed_at = Column(DateTime, nullable=False)

    gross_amount = Column(Numeric(12, 2), nullable=False)
    refund_amount = Column(Numeric(12, 2), nullable=False, default=0)
    refunded_commission = Column(Numeric(12, 2), nullable=False, default=0)
    commission_amount = Column(Numeric(12, 2), nullable=False)
    net_amount = Column(Numeric(12, 2), nullable=False)

    is_adjustment = Column(Boolean, nullable=False, default=False)
    original_year = Column(Integer, nullable=True)
    original_month = Column(Integer, nullable=True)

    settlement = relationship("Settlement", back_populates="line_items")
    commission_record = relationship("CommissionRecord", back_populates="line_items")
