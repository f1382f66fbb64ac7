from datetime import datetime
from typing import Dict, List, Optional
from fastapi import APIRouter, Depends, Header, Query, status
from sqlalchemy.orm import Session
from settlement.api.responses import unwrap
from settlement.core.database import get_db
from settlement.schemas.commission import (
    CommissionPreviewRequest,
    CommissionRecord,
    CommissionRule,
    CommissionRuleCreate,
    CommissionRuleUpdate,
    OrderCompletion,
    PartialRefundRequest,
    RuleMutationResponse,
    StoreCommission,
)
from settlement.services.calculator import default_terms
from settlement.services.commission import CommissionPreviewService, CommissionRecordBuilder
from settlement.services.rules import CommissionRuleService, RuleStore

router = APIRouter(prefix="/api/commissions", tags=["commissions"])


def _rule_out(rule) -> dict:
    return CommissionRule.model_validate(rule).model_dump(mode="json")


def _mutation_response(result) -> RuleMutationResponse:
    rule = unwrap(result, conflict_serializer=_rule_out)
    return RuleMutationResponse(
        rule=CommissionRule.model_validate(rule),
        conflicts=[CommissionRule.model_validate(c) for c in result.conflicts],
    )


# ── Rules ───────────────────────────────────────────────────────────

@router.get("/rules", response_model=List[CommissionRule])
def list_rules(
    seller_id: Optional[str] = None,
    category_id: Optional[str] = None,
    include_inactive: bool = False,
    db: Session = Depends(get_db),
):
    return CommissionRuleService(db).list_rules(seller_id, category_id, include_inactive)


@router.get("/rules/conflicts", response_model=List[CommissionRule])
def check_rule_conflicts(
    effective_date: datetime,
    seller_id: Optional[str] = None,
    category_id: Optional[str] = None,
    exclude_rule_id: Optional[int] = None,
    db: Session = Depends(get_db),
):
    """Rules a new or edited rule with this scope and date would overlap."""
    result = CommissionRuleService(db).check_conflicts(seller_id, category_id, effective_date, exclude_rule_id)
    return unwrap(result)


@router.get("/rules/resolve")
def resolve_rule(
    seller_id: Optional[str] = None,
    category_id: Optional[str] = None,
    as_of: Optional[datetime] = None,
    db: Session = Depends(get_db),
):
    """Which terms would apply to this seller and category right now (or as of a date)."""
    rule = RuleStore(db).get_best_matching_rule(seller_id, category_id, as_of)
    terms = rule or default_terms()
    return {
        "rule": CommissionRule.model_validate(rule) if rule else None,
        "is_default": rule is None,
        "commission_rate": terms.commission_rate,
        "fixed_fee": terms.fixed_fee,
        "min_commission": terms.min_commission,
        "max_commission": terms.max_commission,
        "description": terms.description,
    }


@router.get("/rules/{rule_id}", response_model=CommissionRule)
def get_rule(rule_id: int, db: Session = Depends(get_db)):
    return unwrap(CommissionRuleService(db).get_rule(rule_id))


@router.post("/rules", response_model=RuleMutationResponse, status_code=status.HTTP_201_CREATED)
def create_rule(
    rule_data: CommissionRuleCreate,
    acknowledge_conflicts: bool = False,
    x_user: Optional[str] = Header(None),
    db: Session = Depends(get_db),
):
    """Create a rule. Overlapping rules return 409 unless acknowledge_conflicts is set."""
    result = CommissionRuleService(db).create_rule(rule_data, x_user, acknowledge_conflicts)
    return _mutation_response(result)


@router.put("/rules/{rule_id}", response_model=RuleMutationResponse)
def update_rule(
    rule_id: int,
    rule_data: CommissionRuleUpdate,
    acknowledge_conflicts: bool = False,
    x_user: Optional[str] = Header(None),
    db: Session = Depends(get_db),
):
    result = CommissionRuleService(db).update_rule(rule_id, rule_data, x_user, acknowledge_conflicts)
    return _mutation_response(result)


@router.post("/rules/{rule_id}/deactivate", response_model=CommissionRule)
def deactivate_rule(rule_id: int, x_user: Optional[str] = Header(None), db: Session = Depends(get_db)):
    return unwrap(CommissionRuleService(db).deactivate_rule(rule_id, x_user))


# ── Records ─────────────────────────────────────────────────────────

@router.post("/records", response_model=List[CommissionRecord])
def build_records(order: OrderCompletion, db: Session = Depends(get_db)):
    """Record commission for a completed order. Safe to repeat."""
    return unwrap(CommissionRecordBuilder(db).build_for_order(order))


@router.get("/records/order/{order_id}", response_model=List[CommissionRecord])
def get_order_records(order_id: str, db: Session = Depends(get_db)):
    return CommissionRecordBuilder(db).get_records_for_order(order_id)


@router.get("/records/seller/{seller_id}", response_model=List[CommissionRecord])
def get_seller_records(
    seller_id: str,
    from_date: Optional[datetime] = None,
    to_date: Optional[datetime] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
):
    return unwrap(CommissionRecordBuilder(db).get_records_for_seller(seller_id, from_date, to_date, skip, limit))


@router.post("/records/partial-refund", response_model=CommissionRecord)
def partial_refund(refund: PartialRefundRequest, db: Session = Depends(get_db)):
    result = CommissionRecordBuilder(db).recalculate_partial_refund(
        refund.order_id, refund.seller_id, refund.refund_amount,
    )
    return unwrap(result)


# ── Checkout preview ────────────────────────────────────────────────

@router.post("/preview", response_model=Dict[str, StoreCommission])
def preview_commissions(request: CommissionPreviewRequest, db: Session = Depends(get_db)):
    """Projected per-store commission for a cart. Nothing is stored."""
    result = CommissionPreviewService(db).calculate_commissions(request.cart_totals, request.items_by_store)
    return unwrap(result)
