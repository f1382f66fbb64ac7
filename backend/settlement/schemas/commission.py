from pydantic import BaseModel, Field
from typing import Dict, List, Optional
from datetime import datetime
from decimal import Decimal
from settlement.models.commission import RuleScope


# ── Commission rules ────────────────────────────────────────────────

class CommissionRuleBase(BaseModel):
    name: str = Field(..., max_length=200)
    seller_id: Optional[str] = None      # null = all sellers
    category_id: Optional[str] = None    # null = all categories
    commission_rate: Decimal = Field(..., description="Fraction, e.g. 0.10 for 10%")
    fixed_fee: Decimal = Decimal("0")
    min_commission: Optional[Decimal] = None
    max_commission: Optional[Decimal] = None
    priority: int = 0
    effective_date: datetime
    is_active: bool = True


class CommissionRuleCreate(CommissionRuleBase):
    pass


class CommissionRuleUpdate(CommissionRuleBase):
    pass


class CommissionRuleInDB(CommissionRuleBase):
    id: int
    scope: RuleScope
    version: int
    description: str
    created_by: Optional[str]
    last_modified_by: Optional[str]
    created_at: datetime
    updated_at: Optional[datetime]

    class Config:
        from_attributes = True


class CommissionRule(CommissionRuleInDB):
    pass


class RuleMutationResponse(BaseModel):
    rule: CommissionRule
    conflicts: List[CommissionRule] = []


# ── Order completion (input to the record builder) ─────────────────

class CategoryAmount(BaseModel):
    category_id: str
    amount: Decimal


class SellerSubOrder(BaseModel):
    seller_id: str
    item_subtotal: Decimal
    shipping_cost: Decimal = Decimal("0")
    category_id: Optional[str] = None  # explicit dominant category hint
    category_amounts: List[CategoryAmount] = []


class OrderCompletion(BaseModel):
    order_id: str
    payment_transaction_id: Optional[str] = None
    completed_at: datetime
    sub_orders: List[SellerSubOrder]


# ── Commission records ──────────────────────────────────────────────

class CommissionRecordInDB(BaseModel):
    id: int
    order_id: str
    payment_transaction_id: Optional[str]
    seller_id: str
    category_id: Optional[str]
    gross_amount: Decimal
    commission_rate: Decimal
    commission_amount: Decimal
    net_payout: Decimal
    refunded_amount: Decimal
    refunded_commission: Decimal
    commission_rule_id: Optional[int]
    applied_rule_description: Optional[str]
    order_completed_at: datetime
    created_at: datetime

    class Config:
        from_attributes = True


class CommissionRecord(CommissionRecordInDB):
    pass


class PartialRefundRequest(BaseModel):
    order_id: str
    seller_id: str
    refund_amount: Decimal


# ── Checkout preview ────────────────────────────────────────────────

class CartItem(BaseModel):
    product_id: Optional[str] = None
    category_id: Optional[str] = None
    unit_price: Decimal
    quantity: int = Field(1, ge=1)


class CartItemsByStore(BaseModel):
    store_id: str
    store_name: Optional[str] = None
    items: List[CartItem]


class CartTotals(BaseModel):
    items_subtotal: Decimal
    shipping_by_store: Dict[str, Decimal] = {}


class CommissionPreviewRequest(BaseModel):
    cart_totals: CartTotals
    items_by_store: List[CartItemsByStore]


class StoreCommission(BaseModel):
    store_id: str
    gross_amount: Decimal
    commission_rate: Decimal
    commission_amount: Decimal
    net_payout: Decimal
    commission_rule_id: Optional[int] = None
