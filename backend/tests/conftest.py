"""Shared fixtures: a fresh SQLite file database per test."""

import os

# Must be set before settlement.core.database builds its module-level engine
os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy.orm import sessionmaker

import settlement.models  # noqa: F401  register every table
from settlement.core.database import Base, build_engine
from settlement.models.commission import CommissionRecord, CommissionRule
from settlement.services.payment_rail import RailSubmission


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'settlement.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def make_rule(db):
    def _make(
        name="rule",
        seller_id=None,
        category_id=None,
        rate="0.10",
        fee="0",
        min_commission=None,
        max_commission=None,
        priority=0,
        effective_date=datetime(2024, 1, 1),
        is_active=True,
        created_at=None,
    ) -> CommissionRule:
        rule = CommissionRule(
            name=name,
            seller_id=seller_id,
            category_id=category_id,
            commission_rate=Decimal(rate),
            fixed_fee=Decimal(fee),
            min_commission=Decimal(min_commission) if min_commission is not None else None,
            max_commission=Decimal(max_commission) if max_commission is not None else None,
            priority=priority,
            effective_date=effective_date,
            is_active=is_active,
        )
        if created_at is not None:
            rule.created_at = created_at
        db.add(rule)
        db.commit()
        db.refresh(rule)
        return rule
    return _make


@pytest.fixture
def make_record(db):
    def _make(
        order_id,
        seller_id="S1",
        gross="100.00",
        commission="10.00",
        completed_at=datetime(2025, 3, 10, 12, 0),
        refunded="0.00",
        refunded_commission="0.00",
    ) -> CommissionRecord:
        gross, commission = Decimal(gross), Decimal(commission)
        record = CommissionRecord(
            order_id=order_id,
            seller_id=seller_id,
            gross_amount=gross,
            commission_rate=Decimal("0.10"),
            commission_amount=commission,
            net_payout=gross - commission,
            refunded_amount=Decimal(refunded),
            refunded_commission=Decimal(refunded_commission),
            order_completed_at=completed_at,
        )
        db.add(record)
        db.commit()
        db.refresh(record)
        return record
    return _make


class StubRail:
    """Payment rail double: returns queued outcomes, records submissions."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.submitted = []

    def submit(self, payout):
        self.submitted.append(payout.id)
        outcome = self.outcomes.pop(0) if self.outcomes else RailSubmission(accepted=True)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.fixture
def stub_rail():
    return StubRail
