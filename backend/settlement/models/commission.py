from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, Boolean, Text, UniqueConstraint,
)
from sqlalchemy.orm import relationship
from settlement.core.database import Base
from settlement.core.timeutils import utcnow
import enum


class RuleScope(str, enum.Enum):
    """Specificity tier of a commission rule."""
    SELLER_AND_CATEGORY = "seller_and_category"
    SELLER_ONLY = "seller_only"
    CATEGORY_ONLY = "category_only"
    GLOBAL = "global"

    @classmethod
    def of(cls, seller_id, category_id) -> "RuleScope":
        if seller_id is not None and category_id is not None:
            return cls.SELLER_AND_CATEGORY
        if seller_id is not None:
            return cls.SELLER_ONLY
        if category_id is not None:
            return cls.CATEGORY_ONLY
        return cls.GLOBAL


# Most specific first. Resolution walks this list and stops at the first tier
# that has an eligible rule.
SCOPE_PRECEDENCE = [
    RuleScope.SELLER_AND_CATEGORY,
    RuleScope.SELLER_ONLY,
    RuleScope.CATEGORY_ONLY,
    RuleScope.GLOBAL,
]


class CommissionRule(Base):
    """Admin-managed commission terms. Never deleted, only deactivated."""
    __tablename__ = "commission_rules"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(200), nullable=False)

    # Scope (null = applies to all)
    seller_id = Column(String, nullable=True, index=True)
    category_id = Column(String, nullable=True, index=True)

    # Terms
    commission_rate = Column(Numeric(7, 4), nullable=False)  # fraction, e.g. 0.1000
    fixed_fee = Column(Numeric(12, 2), nullable=False, default=0)
    min_commission = Column(Numeric(12, 2), nullable=True)
    max_commission = Column(Numeric(12, 2), nullable=True)

    priority = Column(Integer, nullable=False, default=0)  # higher wins within a tier
    effective_date = Column(DateTime, nullable=False, index=True)
    is_active = Column(Boolean, default=True, nullable=False)

    # Audit
    version = Column(Integer, nullable=False, default=1)
    created_by = Column(String, nullable=True)
    last_modified_by = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=True, onupdate=utcnow)

    @property
    def scope(self) -> RuleScope:
        return RuleScope.of(self.seller_id, self.category_id)

    @property
    def description(self) -> str:
        """Human-readable scope and terms, kept on records for audit."""
        if self.scope == RuleScope.SELLER_AND_CATEGORY:
            scope = f"Seller: {self.seller_id}, Category: {self.category_id}"
        elif self.scope == RuleScope.SELLER_ONLY:
            scope = f"Seller: {self.seller_id}"
        elif self.scope == RuleScope.CATEGORY_ONLY:
            scope = f"Category: {self.category_id}"
        else:
            scope = "Global default"

        text = f"{scope} - {self.commission_rate * 100:.2f}%"
        if self.fixed_fee:
            text += f" + {self.fixed_fee:.2f} fixed"
        bounds = []
        if self.min_commission is not None:
            bounds.append(f"min: {self.min_commission:.2f}")
        if self.max_commission is not None:
            bounds.append(f"max: {self.max_commission:.2f}")
        if bounds:
            text += f" ({', '.join(bounds)})"
        return text


class CommissionRecord(Base):
    """Commission owed by one seller for one order."""
    __tablename__ = "commission_records"
    __table_args__ = (
        UniqueConstraint("order_id", "seller_id", name="uq_commission_records_order_seller"),
    )

    id = Column(Integer, primary_key=True, index=True)

    order_id = Column(String, nullable=False, index=True)
    payment_transaction_id = Column(String, nullable=True, index=True)
    seller_id = Column(String, nullable=False, index=True)
    category_id = Column(String, nullable=True)  # dominant category used for rule lookup

    # Amounts
    gross_amount = Column(Numeric(12, 2), nullable=False)  # items + attributable shipping
    commission_rate = Column(Numeric(7, 4), nullable=False)
    commission_amount = Column(Numeric(12, 2), nullable=False)
    net_payout = Column(Numeric(12, 2), nullable=False)

    # Partial refunds (correction path)
    refunded_amount = Column(Numeric(12, 2), nullable=False, default=0)
    refunded_commission = Column(Numeric(12, 2), nullable=False, default=0)
    last_refund_at = Column(DateTime, nullable=True)

    # Rule that produced the amounts (null = system default terms)
    commission_rule_id = Column(Integer, nullable=True, index=True)
    applied_rule_description = Column(Text, nullable=True)

    order_completed_at = Column(DateTime, nullable=False, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=True, onupdate=utcnow)

    line_items = relationship("SettlementLineItem", back_populates="commission_record")

    @property
    def net_commission(self):
        return self.commission_amount - self.refunded_commission

    @property
    def net_after_refunds(self):
        """What the seller is owed once refunds and refunded commission are netted."""
        return self.gross_amount - self.refunded_amount - self.net_commission
