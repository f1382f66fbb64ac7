from typing import Optional
from fastapi import APIRouter, Depends, Header, Query, Response
from sqlalchemy.orm import Session
from settlement.api.responses import unwrap
from settlement.core.database import get_db
from settlement.core.errors import BatchResult
from settlement.models.settlement import SettlementStatus
from settlement.schemas.settlement import (
    BatchItem,
    BatchSummary,
    GeneratePeriodRequest,
    GenerateSettlementRequest,
    Page,
    RegenerateSettlementRequest,
    Settlement,
    SettlementSummary,
)
from settlement.services.settlement import SettlementGenerator

router = APIRouter(prefix="/api/settlements", tags=["settlements"])


def batch_summary(batch: BatchResult) -> BatchSummary:
    return BatchSummary(
        succeeded=batch.succeeded_count,
        failed=batch.failed_count,
        outcomes=[BatchItem.model_validate(o) for o in batch.outcomes],
    )


@router.post("", response_model=Settlement)
def generate_settlement(
    request: GenerateSettlementRequest,
    x_user: Optional[str] = Header(None),
    db: Session = Depends(get_db),
):
    """Generate a seller's monthly settlement, or rebuild it if still a draft."""
    result = SettlementGenerator(db).generate(
        request.seller_id, request.year, request.month, note=request.note, generated_by=x_user,
    )
    return unwrap(result)


@router.post("/generate-period", response_model=BatchSummary)
def generate_period(
    request: GeneratePeriodRequest,
    x_user: Optional[str] = Header(None),
    db: Session = Depends(get_db),
):
    """Generate settlements for every seller with commission in the month."""
    batch = SettlementGenerator(db).generate_for_period(request.year, request.month, generated_by=x_user)
    return batch_summary(batch)


@router.get("", response_model=Page[SettlementSummary])
def list_settlements(
    seller_id: Optional[str] = None,
    status: Optional[SettlementStatus] = None,
    year: Optional[int] = None,
    month: Optional[int] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=200),
    db: Session = Depends(get_db),
):
    items, total = unwrap(SettlementGenerator(db).list_settlements(
        seller_id=seller_id, status=status, year=year, month=month, page=page, page_size=page_size,
    ))
    return Page[SettlementSummary](
        items=[SettlementSummary.model_validate(s) for s in items],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/{settlement_id}", response_model=Settlement)
def get_settlement(settlement_id: int, db: Session = Depends(get_db)):
    return unwrap(SettlementGenerator(db).get(settlement_id))


@router.post("/{settlement_id}/regenerate", response_model=Settlement)
def regenerate_settlement(
    settlement_id: int,
    request: RegenerateSettlementRequest,
    x_user: Optional[str] = Header(None),
    db: Session = Depends(get_db),
):
    return unwrap(SettlementGenerator(db).regenerate(settlement_id, request.reason, x_user))


@router.post("/{settlement_id}/finalize", response_model=Settlement)
def finalize_settlement(settlement_id: int, x_user: Optional[str] = Header(None), db: Session = Depends(get_db)):
    return unwrap(SettlementGenerator(db).finalize(settlement_id, x_user))


@router.post("/{settlement_id}/cancel", response_model=Settlement)
def cancel_settlement(
    settlement_id: int,
    reason: Optional[str] = None,
    x_user: Optional[str] = Header(None),
    db: Session = Depends(get_db),
):
    return unwrap(SettlementGenerator(db).cancel(settlement_id, reason, x_user))


@router.get("/{settlement_id}/export")
def export_settlement(settlement_id: int, db: Session = Depends(get_db)):
    content = unwrap(SettlementGenerator(db).export_csv(settlement_id))
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="settlement_{settlement_id}.csv"'},
    )
