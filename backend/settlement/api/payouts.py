from datetime import datetime
from typing import List, Optional
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session
from settlement.api.responses import unwrap
from settlement.api.settlements import batch_summary
from settlement.core.database import get_db
from settlement.models.payout import PayoutStatus
from settlement.schemas.payout import (
    BatchRunResponse,
    DirectPayoutRequest,
    Payout,
    RailConfirmation,
    SchedulePayoutRequest,
)
from settlement.schemas.settlement import BatchSummary, Page
from settlement.services.payout import PayoutLifecycleManager

router = APIRouter(prefix="/api/payouts", tags=["payouts"])


@router.post("/from-settlement", status_code=status.HTTP_201_CREATED)
def schedule_settlement_payout(request: SchedulePayoutRequest, db: Session = Depends(get_db)):
    """Schedule the net of a finalized settlement. Small balances roll over instead."""
    result = PayoutLifecycleManager(db).schedule_from_settlement(request.settlement_id, request.scheduled_date)
    payout = unwrap(result)
    return {
        "payout": Payout.model_validate(payout) if payout else None,
        "rolled_over": payout is None,
        "warnings": result.warnings,
    }


@router.post("/direct", response_model=Payout, status_code=status.HTTP_201_CREATED)
def schedule_direct_payout(request: DirectPayoutRequest, db: Session = Depends(get_db)):
    result = PayoutLifecycleManager(db).schedule_direct(
        request.seller_id, request.amount, request.scheduled_date, request.note,
    )
    return unwrap(result)


@router.post("/process", response_model=BatchRunResponse)
def process_due_payouts(limit: Optional[int] = Query(None, ge=1), db: Session = Depends(get_db)):
    run = PayoutLifecycleManager(db).process_due_payouts(limit=limit)
    return BatchRunResponse(
        batch_id=run.batch_id,
        processed=len(run.processed_ids),
        skipped=len(run.skipped_ids),
        failed=len(run.failed_ids),
        payout_ids=run.processed_ids + run.failed_ids,
    )


@router.post("/retry", response_model=BatchSummary)
def retry_failed_payouts(db: Session = Depends(get_db)):
    return batch_summary(PayoutLifecycleManager(db).retry_failed_payouts())


@router.get("/retry-eligible", response_model=List[Payout])
def get_retry_eligible(max_retry_count: Optional[int] = Query(None, ge=0), db: Session = Depends(get_db)):
    return PayoutLifecycleManager(db).get_payouts_for_retry(max_retry_count)


@router.get("/intervention", response_model=List[Payout])
def get_payouts_needing_intervention(db: Session = Depends(get_db)):
    """Failed payouts that used up their retries."""
    return PayoutLifecycleManager(db).payouts_needing_intervention()


@router.get("", response_model=Page[Payout])
def list_payouts(
    seller_id: Optional[str] = None,
    status: Optional[PayoutStatus] = None,
    from_date: Optional[datetime] = None,
    to_date: Optional[datetime] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=200),
    db: Session = Depends(get_db),
):
    items, total = unwrap(PayoutLifecycleManager(db).list_payouts(
        seller_id=seller_id, status=status, from_date=from_date, to_date=to_date,
        page=page, page_size=page_size,
    ))
    return Page[Payout](
        items=[Payout.model_validate(p) for p in items],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/{payout_id}", response_model=Payout)
def get_payout(payout_id: int, db: Session = Depends(get_db)):
    return unwrap(PayoutLifecycleManager(db).get_payout(payout_id))


@router.post("/{payout_id}/confirm", response_model=Payout)
def confirm_payout(payout_id: int, confirmation: RailConfirmation, db: Session = Depends(get_db)):
    """Completion or failure reported back by the payment rail."""
    result = PayoutLifecycleManager(db).confirm_payout(
        payout_id, confirmation.succeeded, confirmation.rail_reference, confirmation.error_message,
    )
    return unwrap(result)


@router.post("/{payout_id}/retry", response_model=Payout)
def retry_payout(payout_id: int, db: Session = Depends(get_db)):
    return unwrap(PayoutLifecycleManager(db).retry_payout(payout_id))
