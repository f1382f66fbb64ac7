"""Commission rule resolution and administration."""
import logging
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from settlement.core.errors import (
    ConflictError, EngineError, NotFoundError, ServiceResult, ValidationError,
)
from settlement.core.timeutils import to_utc_naive, utcnow
from settlement.models.commission import CommissionRule, RuleScope, SCOPE_PRECEDENCE
from settlement.schemas.commission import CommissionRuleCreate, CommissionRuleUpdate
from settlement.services.calculator import default_terms

logger = logging.getLogger(__name__)


def _clean_id(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _same_category(a: Optional[str], b: Optional[str]) -> bool:
    if a is None or b is None:
        return a is None and b is None
    return a.lower() == b.lower()


def _matches_tier(rule, scope: RuleScope, seller_id: Optional[str], category_id: Optional[str]) -> bool:
    if rule.scope != scope:
        return False
    if scope == RuleScope.SELLER_AND_CATEGORY:
        return rule.seller_id == seller_id and _same_category(rule.category_id, category_id)
    if scope == RuleScope.SELLER_ONLY:
        return seller_id is not None and rule.seller_id == seller_id
    if scope == RuleScope.CATEGORY_ONLY:
        return category_id is not None and _same_category(rule.category_id, category_id)
    return True


def _rank(rule):
    # priority, then most recent effective date, then most recently created
    return (
        rule.priority or 0,
        rule.effective_date,
        rule.created_at or datetime.min,
        rule.id or 0,
    )


def select_best_rule(
    rules: Iterable[CommissionRule],
    seller_id: Optional[str],
    category_id: Optional[str],
    as_of: datetime,
) -> Optional[CommissionRule]:
    """
    Pick the winning rule from a candidate set.

    Tiers are walked in SCOPE_PRECEDENCE order and the first tier with an
    eligible rule wins outright, regardless of priorities in lower tiers.
    Eligible means active with effective_date <= as_of.
    """
    eligible = [r for r in rules if r.is_active and r.effective_date <= as_of]
    for scope in SCOPE_PRECEDENCE:
        tier = [r for r in eligible if _matches_tier(r, scope, seller_id, category_id)]
        if tier:
            return max(tier, key=_rank)
    return None


class RuleStore:
    """Read side of commission rules: best match and conflict lookup."""

    def __init__(self, db: Session):
        self.db = db

    def get_best_matching_rule(
        self,
        seller_id: Optional[str] = None,
        category_id: Optional[str] = None,
        as_of: Optional[datetime] = None,
    ) -> Optional[CommissionRule]:
        """Returns None when no tier matches; callers fall back to default_terms()."""
        seller_id = _clean_id(seller_id)
        category_id = _clean_id(category_id)
        as_of = to_utc_naive(as_of) or utcnow()

        query = self.db.query(CommissionRule).filter(
            CommissionRule.is_active == True,  # noqa: E712
            CommissionRule.effective_date <= as_of,
        )
        if seller_id is not None:
            query = query.filter(or_(CommissionRule.seller_id == seller_id, CommissionRule.seller_id.is_(None)))
        else:
            query = query.filter(CommissionRule.seller_id.is_(None))
        if category_id is not None:
            query = query.filter(or_(
                func.lower(CommissionRule.category_id) == category_id.lower(),
                CommissionRule.category_id.is_(None),
            ))
        else:
            query = query.filter(CommissionRule.category_id.is_(None))

        return select_best_rule(query.all(), seller_id, category_id, as_of)

    def get_conflicting_rules(
        self,
        seller_id: Optional[str],
        category_id: Optional[str],
        effective_date: datetime,
        exclude_rule_id: Optional[int] = None,
    ) -> List[CommissionRule]:
        """
        Active rules with exactly the same scope that become effective on the
        same UTC calendar day as ``effective_date``.
        """
        if effective_date is None:
            raise ValidationError("Effective date is required to check for conflicting rules.")
        seller_id = _clean_id(seller_id)
        category_id = _clean_id(category_id)
        effective_date = to_utc_naive(effective_date)
        day_start = datetime(effective_date.year, effective_date.month, effective_date.day)

        query = self.db.query(CommissionRule).filter(
            CommissionRule.is_active == True,  # noqa: E712
            CommissionRule.effective_date >= day_start,
            CommissionRule.effective_date < day_start + timedelta(days=1),
        )
        if seller_id is None:
            query = query.filter(CommissionRule.seller_id.is_(None))
        else:
            query = query.filter(CommissionRule.seller_id == seller_id)
        if category_id is None:
            query = query.filter(CommissionRule.category_id.is_(None))
        else:
            query = query.filter(func.lower(CommissionRule.category_id) == category_id.lower())
        if exclude_rule_id is not None:
            query = query.filter(CommissionRule.id != exclude_rule_id)

        return query.order_by(CommissionRule.priority.desc(), CommissionRule.id).all()


def validate_rule(data: CommissionRuleCreate) -> List[str]:
    errors = []
    if not data.name or not data.name.strip():
        errors.append("Rule name is required.")
    elif len(data.name) > 200:
        errors.append("Rule name cannot exceed 200 characters.")
    if data.commission_rate < 0 or data.commission_rate > 1:
        errors.append("Commission rate must be between 0 and 1.")
    if data.fixed_fee < 0:
        errors.append("Fixed fee cannot be negative.")
    if data.min_commission is not None and data.min_commission < 0:
        errors.append("Minimum commission cannot be negative.")
    if data.max_commission is not None and data.max_commission < 0:
        errors.append("Maximum commission cannot be negative.")
    if (
        data.min_commission is not None
        and data.max_commission is not None
        and data.min_commission > data.max_commission
    ):
        errors.append("Minimum commission cannot exceed maximum commission.")
    if data.effective_date is None:
        errors.append("Effective date is required.")
    return errors


class CommissionRuleService:
    """
    Admin operations on commission rules.

    Rules are never deleted. Create and update surface rules of the same
    scope effective on the same day: without acknowledgement the change is
    refused with a conflict result listing them, with acknowledgement it is
    saved and the list comes back as warnings.
    """

    def __init__(self, db: Session):
        self.db = db
        self.store = RuleStore(db)

    def list_rules(
        self,
        seller_id: Optional[str] = None,
        category_id: Optional[str] = None,
        include_inactive: bool = False,
    ) -> List[CommissionRule]:
        query = self.db.query(CommissionRule)
        if not include_inactive:
            query = query.filter(CommissionRule.is_active == True)  # noqa: E712
        if seller_id:
            query = query.filter(CommissionRule.seller_id == seller_id)
        if category_id:
            query = query.filter(func.lower(CommissionRule.category_id) == category_id.lower())
        return query.order_by(
            CommissionRule.seller_id,
            CommissionRule.category_id,
            CommissionRule.priority.desc(),
            CommissionRule.effective_date.desc(),
        ).all()

    def get_rule(self, rule_id: int) -> ServiceResult:
        rule = self.db.query(CommissionRule).filter(CommissionRule.id == rule_id).first()
        if not rule:
            return ServiceResult.failure(NotFoundError(f"Commission rule {rule_id} not found.", rule_id=rule_id))
        return ServiceResult.success(rule)

    def check_conflicts(
        self,
        seller_id: Optional[str],
        category_id: Optional[str],
        effective_date: datetime,
        exclude_rule_id: Optional[int] = None,
    ) -> ServiceResult:
        try:
            conflicts = self.store.get_conflicting_rules(seller_id, category_id, effective_date, exclude_rule_id)
        except EngineError as e:
            return ServiceResult.failure(e)
        return ServiceResult.success(conflicts, conflicts=conflicts)

    def create_rule(
        self,
        data: CommissionRuleCreate,
        created_by: Optional[str] = None,
        acknowledge_conflicts: bool = False,
    ) -> ServiceResult:
        try:
            conflicts = self._prepare(data, None, acknowledge_conflicts)
            rule = CommissionRule(
                name=data.name.strip(),
                seller_id=_clean_id(data.seller_id),
                category_id=_clean_id(data.category_id),
                commission_rate=data.commission_rate,
                fixed_fee=data.fixed_fee,
                min_commission=data.min_commission,
                max_commission=data.max_commission,
                priority=data.priority,
                effective_date=to_utc_naive(data.effective_date),
                is_active=data.is_active,
                version=1,
                created_by=created_by,
                last_modified_by=created_by,
            )
            self.db.add(rule)
            self.db.commit()
            self.db.refresh(rule)
        except EngineError as e:
            self.db.rollback()
            logger.info(f"Commission rule create rejected ({e.code}): {e.message}")
            return ServiceResult.failure(e)

        logger.info(
            f"Created commission rule {rule.id} ({rule.scope.value}) "
            f"seller={rule.seller_id} category={rule.category_id} by {created_by}"
        )
        return self._success(rule, conflicts)

    def update_rule(
        self,
        rule_id: int,
        data: CommissionRuleUpdate,
        modified_by: Optional[str] = None,
        acknowledge_conflicts: bool = False,
    ) -> ServiceResult:
        try:
            rule = self.db.query(CommissionRule).filter(CommissionRule.id == rule_id).first()
            if not rule:
                raise NotFoundError(f"Commission rule {rule_id} not found.", rule_id=rule_id)
            conflicts = self._prepare(data, rule_id, acknowledge_conflicts)

            rule.name = data.name.strip()
            rule.seller_id = _clean_id(data.seller_id)
            rule.category_id = _clean_id(data.category_id)
            rule.commission_rate = data.commission_rate
            rule.fixed_fee = data.fixed_fee
            rule.min_commission = data.min_commission
            rule.max_commission = data.max_commission
            rule.priority = data.priority
            rule.effective_date = to_utc_naive(data.effective_date)
            rule.is_active = data.is_active
            rule.version = (rule.version or 1) + 1
            rule.last_modified_by = modified_by
            self.db.commit()
            self.db.refresh(rule)
        except EngineError as e:
            self.db.rollback()
            logger.info(f"Commission rule {rule_id} update rejected ({e.code}): {e.message}")
            return ServiceResult.failure(e)

        logger.info(f"Updated commission rule {rule.id} to version {rule.version} by {modified_by}")
        return self._success(rule, conflicts)

    def deactivate_rule(self, rule_id: int, modified_by: Optional[str] = None) -> ServiceResult:
        rule = self.db.query(CommissionRule).filter(CommissionRule.id == rule_id).first()
        if not rule:
            return ServiceResult.failure(NotFoundError(f"Commission rule {rule_id} not found.", rule_id=rule_id))

        warnings = []
        if not rule.is_active:
            warnings.append(f"Commission rule {rule_id} was already inactive.")
        else:
            rule.is_active = False
            rule.version = (rule.version or 1) + 1
            rule.last_modified_by = modified_by
            self.db.commit()
            self.db.refresh(rule)
            logger.info(f"Deactivated commission rule {rule_id} by {modified_by}")

        if rule.scope == RuleScope.GLOBAL:
            warnings.append("Global rule deactivated; unmatched sellers use the configured default rate.")
        return ServiceResult.success(rule, warnings=warnings)

    def _prepare(self, data, exclude_rule_id: Optional[int], acknowledge_conflicts: bool) -> List[CommissionRule]:
        errors = validate_rule(data)
        if errors:
            raise ValidationError(errors[0], errors=errors)

        conflicts = []
        if data.is_active:
            conflicts = self.store.get_conflicting_rules(
                data.seller_id, data.category_id, data.effective_date, exclude_rule_id,
            )
        if conflicts and not acknowledge_conflicts:
            ids = ", ".join(str(r.id) for r in conflicts)
            raise ConflictError(
                f"Rule overlaps {len(conflicts)} active rule(s) with the same scope and effective date: {ids}.",
                conflicts=conflicts,
                seller_id=data.seller_id,
                category_id=data.category_id,
            )
        return conflicts

    @staticmethod
    def _success(rule: CommissionRule, conflicts: List[CommissionRule]) -> ServiceResult:
        warnings = [
            f"Overlaps rule {c.id} ({c.name}) effective {c.effective_date:%Y-%m-%d}, priority {c.priority}."
            for c in conflicts
        ]
        return ServiceResult.success(rule, warnings=warnings, conflicts=conflicts)


def ensure_default_rule(db: Session) -> Optional[CommissionRule]:
    """
    Seed the platform default (global scope, priority 0) from settings when
    no global rule exists. Returns the created rule, or None if one exists.
    """
    existing = (
        db.query(CommissionRule)
        .filter(CommissionRule.seller_id.is_(None), CommissionRule.category_id.is_(None))
        .first()
    )
    if existing:
        return None

    terms = default_terms()
    rule = CommissionRule(
        name="Platform default",
        commission_rate=terms.commission_rate,
        fixed_fee=terms.fixed_fee,
        priority=0,
        effective_date=datetime(2000, 1, 1),
        is_active=True,
        version=1,
        created_by="system",
        last_modified_by="system",
    )
    db.add(rule)
    db.commit()
    db.refresh(rule)
    logger.info(f"Seeded platform default commission rule {rule.id} at {rule.commission_rate}")
    return rule
