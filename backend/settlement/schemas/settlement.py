from pydantic import BaseModel, Field
from typing import Generic, List, Optional, TypeVar
from datetime import datetime
from decimal import Decimal
from settlement.models.settlement import SettlementStatus

T = TypeVar("T")


class Page(BaseModel, Generic[T]):
    items: List[T]
    total: int
    page: int
    page_size: int


class SettlementLineItem(BaseModel):
    id: int
    commission_record_id: int
    order_id: str
    order_completed_at: datetime
    gross_amount: Decimal
    refund_amount: Decimal
    refunded_commission: Decimal
    commission_amount: Decimal
    net_amount: Decimal
    is_adjustment: bool = False
    original_year: Optional[int] = None
    original_month: Optional[int] = None

    class Config:
        from_attributes = True


class SettlementSummary(BaseModel):
    id: int
    seller_id: str
    year: int
    month: int
    currency: str
    status: SettlementStatus
    total_gross: Decimal
    total_refunds: Decimal
    total_commission: Decimal
    total_net: Decimal
    order_count: int
    version: int
    generated_at: datetime
    regenerated_at: Optional[datetime]
    finalized_at: Optional[datetime]
    invoiced_at: Optional[datetime]

    class Config:
        from_attributes = True


class Settlement(SettlementSummary):
    audit_notes: Optional[str]
    line_items: List[SettlementLineItem] = []


class GenerateSettlementRequest(BaseModel):
    seller_id: str
    year: int = Field(..., ge=2000, le=2100)
    month: int = Field(..., ge=1, le=12)
    note: Optional[str] = None


class RegenerateSettlementRequest(BaseModel):
    reason: Optional[str] = None


class GeneratePeriodRequest(BaseModel):
    year: int = Field(..., ge=2000, le=2100)
    month: int = Field(..., ge=1, le=12)


class BatchItem(BaseModel):
    key: str
    succeeded: bool
    code: Optional[str] = None
    message: Optional[str] = None

    class Config:
        from_attributes = True


class BatchSummary(BaseModel):
    succeeded: int
    failed: int
    outcomes: List[BatchItem]
