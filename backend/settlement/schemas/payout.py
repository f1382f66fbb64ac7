from pydantic import BaseModel
from typing import List, Optional
from datetime import datetime
from decimal import Decimal
from settlement.models.payout import PayoutStatus


class Payout(BaseModel):
    id: int
    seller_id: str
    settlement_id: Optional[int]
    amount: Decimal
    currency: str
    status: PayoutStatus
    scheduled_date: datetime
    retry_count: int
    batch_id: Optional[str]
    rail_reference: Optional[str]
    error_code: Optional[str]
    error_message: Optional[str]
    processing_started_at: Optional[datetime]
    completed_at: Optional[datetime]
    failed_at: Optional[datetime]
    created_at: datetime

    class Config:
        from_attributes = True


class SchedulePayoutRequest(BaseModel):
    settlement_id: int
    scheduled_date: Optional[datetime] = None


class DirectPayoutRequest(BaseModel):
    seller_id: str
    amount: Decimal
    scheduled_date: Optional[datetime] = None
    note: Optional[str] = None


class RailConfirmation(BaseModel):
    succeeded: bool
    rail_reference: Optional[str] = None
    error_message: Optional[str] = None


class BatchRunResponse(BaseModel):
    batch_id: Optional[str] = None
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    payout_ids: List[int] = []
