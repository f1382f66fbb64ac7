"""Tests for rule resolution, conflict detection and rule administration."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from settlement.core.errors import ErrorCode
from settlement.models.commission import CommissionRule, RuleScope
from settlement.schemas.commission import CommissionRuleCreate, CommissionRuleUpdate
from settlement.services.rules import (
    CommissionRuleService,
    RuleStore,
    ensure_default_rule,
    select_best_rule,
)

AS_OF = datetime(2025, 3, 15, 12, 0)


def _rule_data(**overrides) -> CommissionRuleCreate:
    data = {
        "name": "Seller S rate",
        "seller_id": "S",
        "category_id": None,
        "commission_rate": Decimal("0.08"),
        "fixed_fee": Decimal("1.00"),
        "priority": 5,
        "effective_date": datetime(2025, 1, 1),
    }
    data.update(overrides)
    return CommissionRuleCreate(**data)


@pytest.fixture
def four_tiers(make_rule):
    return {
        "r1": make_rule("seller+category", seller_id="S", category_id="C", rate="0.05"),
        "r2": make_rule("seller only", seller_id="S", rate="0.06", priority=1),
        "r3": make_rule("category only", category_id="C", rate="0.07", priority=9),
        "r4": make_rule("global", rate="0.10"),
    }


class TestBestMatchingRule:
    def test_most_specific_tier_wins(self, db, four_tiers) -> None:
        rule = RuleStore(db).get_best_matching_rule("S", "C", AS_OF)
        assert rule.id == four_tiers["r1"].id

    def test_seller_tier_beats_category_tier_regardless_of_priority(self, db, four_tiers) -> None:
        four_tiers["r1"].is_active = False
        db.commit()
        rule = RuleStore(db).get_best_matching_rule("S", "C", AS_OF)
        assert rule.id == four_tiers["r2"].id

    def test_category_tier_when_seller_has_no_rule(self, db, four_tiers) -> None:
        rule = RuleStore(db).get_best_matching_rule("OTHER", "C", AS_OF)
        assert rule.id == four_tiers["r3"].id

    def test_global_when_nothing_more_specific_matches(self, db, four_tiers) -> None:
        rule = RuleStore(db).get_best_matching_rule("OTHER", "D", AS_OF)
        assert rule.id == four_tiers["r4"].id

    def test_seller_category_rule_does_not_match_other_category(self, db, make_rule) -> None:
        make_rule("S+C", seller_id="S", category_id="C")
        glob = make_rule("global")
        assert RuleStore(db).get_best_matching_rule("S", "D", AS_OF).id == glob.id

    def test_category_match_ignores_case(self, db, make_rule) -> None:
        rule = make_rule("electronics", category_id="Electronics")
        assert RuleStore(db).get_best_matching_rule(None, "electronics", AS_OF).id == rule.id

    def test_no_rules_returns_none(self, db) -> None:
        assert RuleStore(db).get_best_matching_rule("S", "C", AS_OF) is None

    def test_future_and_inactive_rules_are_ignored(self, db, make_rule) -> None:
        make_rule("future", seller_id="S", effective_date=AS_OF + timedelta(days=1))
        make_rule("inactive", seller_id="S", is_active=False)
        glob = make_rule("global")
        assert RuleStore(db).get_best_matching_rule("S", None, AS_OF).id == glob.id

    def test_aware_as_of_is_converted_to_utc(self, db, make_rule) -> None:
        rule = make_rule("seller", seller_id="S", effective_date=datetime(2025, 3, 15, 10, 0))
        # 07:00 at UTC-5 is 12:00 UTC, after the effective time
        as_of = datetime(2025, 3, 15, 7, 0, tzinfo=timezone(timedelta(hours=-5)))
        assert RuleStore(db).get_best_matching_rule("S", None, as_of).id == rule.id

    def test_priority_wins_within_tier(self, db, make_rule) -> None:
        make_rule("low", seller_id="S", priority=1, effective_date=datetime(2025, 2, 1))
        high = make_rule("high", seller_id="S", priority=7, effective_date=datetime(2024, 1, 1))
        assert RuleStore(db).get_best_matching_rule("S", None, AS_OF).id == high.id

    def test_tie_broken_by_most_recent_effective_date(self, db, make_rule) -> None:
        make_rule("older", seller_id="S", effective_date=datetime(2024, 6, 1))
        newer = make_rule("newer", seller_id="S", effective_date=datetime(2025, 2, 1))
        assert RuleStore(db).get_best_matching_rule("S", None, AS_OF).id == newer.id

    def test_tie_broken_by_most_recently_created(self, db, make_rule) -> None:
        same_day = datetime(2025, 2, 1)
        later = make_rule("later", seller_id="S", effective_date=same_day, created_at=datetime(2025, 1, 20))
        make_rule("earlier", seller_id="S", effective_date=same_day, created_at=datetime(2025, 1, 10))
        assert RuleStore(db).get_best_matching_rule("S", None, AS_OF).id == later.id


class TestSelectBestRule:
    def test_pure_resolution_over_in_memory_rules(self) -> None:
        rules = [
            CommissionRule(id=1, name="global", commission_rate=Decimal("0.10"), priority=0,
                           effective_date=datetime(2024, 1, 1), is_active=True),
            CommissionRule(id=2, name="cat", category_id="C", commission_rate=Decimal("0.07"), priority=3,
                           effective_date=datetime(2024, 1, 1), is_active=True),
        ]
        assert select_best_rule(rules, "S", "C", AS_OF).id == 2
        assert select_best_rule(rules, "S", None, AS_OF).id == 1
        assert select_best_rule([], "S", "C", AS_OF) is None


class TestConflicts:
    def test_same_scope_same_day_conflicts(self, db, make_rule) -> None:
        existing = make_rule("existing", seller_id="S", effective_date=datetime(2025, 4, 1, 9, 0))
        conflicts = RuleStore(db).get_conflicting_rules("S", None, datetime(2025, 4, 1, 17, 30))
        assert [r.id for r in conflicts] == [existing.id]

    def test_different_scope_or_day_does_not_conflict(self, db, make_rule) -> None:
        make_rule("seller+cat", seller_id="S", category_id="C", effective_date=datetime(2025, 4, 1))
        make_rule("other day", seller_id="S", effective_date=datetime(2025, 4, 2))
        make_rule("inactive", seller_id="S", effective_date=datetime(2025, 4, 1), is_active=False)
        assert RuleStore(db).get_conflicting_rules("S", None, datetime(2025, 4, 1)) == []

    def test_excluded_rule_is_not_its_own_conflict(self, db, make_rule) -> None:
        rule = make_rule("self", seller_id="S", effective_date=datetime(2025, 4, 1))
        assert RuleStore(db).get_conflicting_rules("S", None, datetime(2025, 4, 1), rule.id) == []


class TestRuleAdministration:
    def test_create_rule(self, db) -> None:
        result = CommissionRuleService(db).create_rule(_rule_data(), created_by="admin")
        assert result.succeeded
        rule = result.value
        assert rule.id is not None
        assert rule.scope == RuleScope.SELLER_ONLY
        assert rule.version == 1
        assert rule.created_by == "admin"
        assert rule.description == "Seller: S - 8.00% + 1.00 fixed"

    def test_validation_errors_returned_not_raised(self, db) -> None:
        result = CommissionRuleService(db).create_rule(_rule_data(
            commission_rate=Decimal("1.5"),
            fixed_fee=Decimal("-1"),
            min_commission=Decimal("10"),
            max_commission=Decimal("5"),
        ))
        assert not result.succeeded
        assert result.code == ErrorCode.VALIDATION
        assert "Commission rate must be between 0 and 1." in result.errors
        assert "Fixed fee cannot be negative." in result.errors
        assert "Minimum commission cannot exceed maximum commission." in result.errors
        assert db.query(CommissionRule).count() == 0

    def test_conflict_blocks_until_acknowledged(self, db, make_rule) -> None:
        existing = make_rule("existing", seller_id="S", effective_date=datetime(2025, 1, 1, 8, 0))
        service = CommissionRuleService(db)

        blocked = service.create_rule(_rule_data())
        assert not blocked.succeeded
        assert blocked.code == ErrorCode.CONFLICT
        assert [r.id for r in blocked.conflicts] == [existing.id]
        assert db.query(CommissionRule).count() == 1

        saved = service.create_rule(_rule_data(), acknowledge_conflicts=True)
        assert saved.succeeded
        assert [r.id for r in saved.conflicts] == [existing.id]
        assert len(saved.warnings) == 1
        assert db.query(CommissionRule).count() == 2

    def test_update_bumps_version_and_ignores_self_conflict(self, db) -> None:
        service = CommissionRuleService(db)
        rule = service.create_rule(_rule_data()).value

        update = CommissionRuleUpdate(**_rule_data(commission_rate=Decimal("0.09")).model_dump())
        result = service.update_rule(rule.id, update, modified_by="ops")
        assert result.succeeded
        assert result.conflicts == []
        assert result.value.version == 2
        assert result.value.commission_rate == Decimal("0.09")
        assert result.value.last_modified_by == "ops"

    def test_update_missing_rule(self, db) -> None:
        update = CommissionRuleUpdate(**_rule_data().model_dump())
        result = CommissionRuleService(db).update_rule(999, update)
        assert result.code == ErrorCode.NOT_FOUND

    def test_deactivate_keeps_rule(self, db, make_rule) -> None:
        rule = make_rule("seller", seller_id="S")
        result = CommissionRuleService(db).deactivate_rule(rule.id, modified_by="ops")
        assert result.succeeded
        assert result.value.is_active is False
        assert db.query(CommissionRule).count() == 1
        assert RuleStore(db).get_best_matching_rule("S", None, AS_OF) is None

    def test_list_hides_inactive_by_default(self, db, make_rule) -> None:
        make_rule("active", seller_id="S")
        make_rule("inactive", seller_id="S", is_active=False)
        service = CommissionRuleService(db)
        assert len(service.list_rules(seller_id="S")) == 1
        assert len(service.list_rules(seller_id="S", include_inactive=True)) == 2


class TestDefaultRuleSeed:
    def test_seeds_once(self, db) -> None:
        first = ensure_default_rule(db)
        assert first is not None
        assert first.scope == RuleScope.GLOBAL
        assert first.priority == 0
        assert first.commission_rate == Decimal("0.1000")
        assert ensure_default_rule(db) is None
