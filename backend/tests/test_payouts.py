"""Tests for the payout lifecycle and the payment rail adapters."""

import logging
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
import requests

from settlement.core.config import settings
from settlement.core.errors import ErrorCode, TransientExternalError
from settlement.models.payout import Payout, PayoutStatus
from settlement.models.settlement import SettlementStatus
from settlement.services.payment_rail import NullPaymentRail, RailSubmission, WebhookPaymentRail
from settlement.services.payout import PayoutLifecycleManager
from settlement.services.settlement import SettlementGenerator

NOW = datetime(2025, 4, 5, 9, 0)


@pytest.fixture
def make_payout(db):
    def _make(seller_id="S1", amount="100.00", status=PayoutStatus.SCHEDULED, retry_count=0,
              scheduled_date=NOW - timedelta(hours=1)) -> Payout:
        payout = Payout(
            seller_id=seller_id,
            amount=Decimal(amount),
            status=status,
            retry_count=retry_count,
            scheduled_date=scheduled_date,
            failed_at=NOW if status == PayoutStatus.FAILED else None,
        )
        db.add(payout)
        db.commit()
        db.refresh(payout)
        return payout
    return _make


def _finalized_settlement(db, make_record, gross="100.00", commission="10.00"):
    make_record("O-1", seller_id="S1", gross=gross, commission=commission)
    generator = SettlementGenerator(db)
    settlement = generator.generate("S1", 2025, 3).value
    return generator.finalize(settlement.id).value


class TestScheduling:
    def test_schedule_from_finalized_settlement(self, db, make_record, stub_rail) -> None:
        settlement = _finalized_settlement(db, make_record)
        result = PayoutLifecycleManager(db, rail=stub_rail()).schedule_from_settlement(settlement.id, NOW)

        assert result.succeeded
        payout = result.value
        assert payout.amount == Decimal("90.00")
        assert payout.status == PayoutStatus.SCHEDULED
        assert payout.settlement_id == settlement.id
        assert payout.retry_count == 0

    def test_second_payout_for_same_settlement_conflicts(self, db, make_record, stub_rail) -> None:
        settlement = _finalized_settlement(db, make_record)
        manager = PayoutLifecycleManager(db, rail=stub_rail())
        manager.schedule_from_settlement(settlement.id, NOW)
        assert manager.schedule_from_settlement(settlement.id, NOW).code == ErrorCode.CONFLICT

    def test_draft_settlement_cannot_be_paid(self, db, make_record, stub_rail) -> None:
        make_record("O-1", seller_id="S1")
        draft = SettlementGenerator(db).generate("S1", 2025, 3).value
        result = PayoutLifecycleManager(db, rail=stub_rail()).schedule_from_settlement(draft.id)
        assert result.code == ErrorCode.VALIDATION

    def test_below_threshold_rolls_over(self, db, make_record, stub_rail) -> None:
        settlement = _finalized_settlement(db, make_record, gross="10.00", commission="1.00")
        result = PayoutLifecycleManager(db, rail=stub_rail()).schedule_from_settlement(settlement.id)

        assert result.succeeded
        assert result.value is None
        assert "rolls over" in result.warnings[0]
        assert db.query(Payout).count() == 0

    def test_direct_payout_validation(self, db, stub_rail) -> None:
        manager = PayoutLifecycleManager(db, rail=stub_rail())
        assert manager.schedule_direct("S1", Decimal("0")).code == ErrorCode.VALIDATION
        assert manager.schedule_direct("", Decimal("5")).code == ErrorCode.VALIDATION
        assert manager.schedule_direct("S1", Decimal("12.345")).value.amount == Decimal("12.35")


class TestProcessing:
    def test_settled_submission_completes(self, db, make_payout, stub_rail) -> None:
        payout = make_payout()
        rail = stub_rail(RailSubmission(accepted=True, rail_reference="tx-1", settled=True))

        run = PayoutLifecycleManager(db, rail=rail).process_due_payouts(now=NOW)

        assert run.processed_ids == [payout.id]
        assert rail.submitted == [payout.id]
        db.refresh(payout)
        assert payout.status == PayoutStatus.COMPLETED
        assert payout.rail_reference == "tx-1"
        assert payout.batch_id == run.batch_id
        assert payout.completed_at is not None

    def test_accepted_submission_stays_processing(self, db, make_payout, stub_rail) -> None:
        payout = make_payout()
        PayoutLifecycleManager(db, rail=stub_rail(RailSubmission(accepted=True, rail_reference="tx-2"))) \
            .process_due_payouts(now=NOW)
        db.refresh(payout)
        assert payout.status == PayoutStatus.PROCESSING
        assert payout.rail_reference == "tx-2"

    def test_transient_error_marks_failed(self, db, make_payout, stub_rail) -> None:
        payout = make_payout()
        rail = stub_rail(TransientExternalError("rail timeout"))

        run = PayoutLifecycleManager(db, rail=rail).process_due_payouts(now=NOW)

        assert run.failed_ids == [payout.id]
        assert run.outcomes.outcomes[0].code == ErrorCode.TRANSIENT_EXTERNAL
        db.refresh(payout)
        assert payout.status == PayoutStatus.FAILED
        assert payout.error_code == ErrorCode.TRANSIENT_EXTERNAL
        assert payout.retry_count == 0

    def test_rejected_submission_marks_failed(self, db, make_payout, stub_rail) -> None:
        payout = make_payout()
        rail = stub_rail(RailSubmission(accepted=False, error_message="closed account"))
        PayoutLifecycleManager(db, rail=rail).process_due_payouts(now=NOW)
        db.refresh(payout)
        assert payout.status == PayoutStatus.FAILED
        assert payout.error_code == "rejected"

    def test_unexpected_rail_error_fails_payout_and_run_continues(self, db, make_payout, stub_rail, caplog) -> None:
        first = make_payout()
        second = make_payout(seller_id="S2")
        rail = stub_rail(RuntimeError("socket closed"), RailSubmission(accepted=True, rail_reference="tx-3", settled=True))
        manager = PayoutLifecycleManager(db, rail=rail)

        with caplog.at_level(logging.ERROR, logger="settlement.services.payout"):
            run = manager.process_due_payouts(now=NOW)

        assert rail.submitted == [first.id, second.id]
        assert run.failed_ids == [first.id]
        assert run.processed_ids == [second.id]
        assert run.outcomes.outcomes[0].code == ErrorCode.TRANSIENT_EXTERNAL
        assert "socket closed" in caplog.text

        db.refresh(first)
        assert first.status == PayoutStatus.FAILED
        assert first.error_code == "rail_error"
        assert first.failed_at is not None
        assert [p.id for p in manager.get_payouts_for_retry()] == [first.id]

    def test_only_due_scheduled_payouts_are_picked(self, db, make_payout, stub_rail) -> None:
        due = make_payout()
        make_payout(scheduled_date=NOW + timedelta(days=1))
        make_payout(status=PayoutStatus.FAILED)
        rail = stub_rail()

        PayoutLifecycleManager(db, rail=rail).process_due_payouts(now=NOW)

        assert rail.submitted == [due.id]

    def test_claim_is_won_once(self, db, make_payout, stub_rail) -> None:
        payout = make_payout()
        manager = PayoutLifecycleManager(db, rail=stub_rail())
        assert manager._transition(payout.id, PayoutStatus.SCHEDULED, PayoutStatus.PROCESSING) is True
        assert manager._transition(payout.id, PayoutStatus.SCHEDULED, PayoutStatus.PROCESSING) is False

    def test_concurrent_run_skips_claimed_payout(self, db, session_factory, make_payout, stub_rail) -> None:
        payout = make_payout()
        other = session_factory()
        try:
            # Another worker claims between our read and our update
            PayoutLifecycleManager(other, rail=stub_rail())._transition(
                payout.id, PayoutStatus.SCHEDULED, PayoutStatus.PROCESSING,
            )
        finally:
            other.close()

        rail = stub_rail()
        run = PayoutLifecycleManager(db, rail=rail).process_due_payouts(now=NOW)
        assert run.processed_ids == []
        assert rail.submitted == []


class TestConfirmation:
    def test_confirm_success(self, db, make_payout, stub_rail) -> None:
        payout = make_payout(status=PayoutStatus.PROCESSING)
        result = PayoutLifecycleManager(db, rail=stub_rail()).confirm_payout(payout.id, True, "tx-9")
        assert result.value.status == PayoutStatus.COMPLETED
        assert result.value.rail_reference == "tx-9"

    def test_confirm_failure(self, db, make_payout, stub_rail) -> None:
        payout = make_payout(status=PayoutStatus.PROCESSING)
        result = PayoutLifecycleManager(db, rail=stub_rail()).confirm_payout(
            payout.id, False, error_message="insufficient funds",
        )
        assert result.value.status == PayoutStatus.FAILED
        assert result.value.error_message == "insufficient funds"

    def test_completed_is_terminal(self, db, make_payout, stub_rail) -> None:
        payout = make_payout(status=PayoutStatus.COMPLETED)
        result = PayoutLifecycleManager(db, rail=stub_rail()).confirm_payout(payout.id, False)
        assert result.code == ErrorCode.CONFLICT


class TestRetry:
    def test_retry_predicate_boundary(self, db, make_payout, stub_rail) -> None:
        max_retries = settings.MAX_PAYOUT_RETRY_COUNT
        below = make_payout(status=PayoutStatus.FAILED, retry_count=max_retries - 1)
        at_max = make_payout(status=PayoutStatus.FAILED, retry_count=max_retries)
        make_payout(status=PayoutStatus.SCHEDULED)
        manager = PayoutLifecycleManager(db, rail=stub_rail())

        assert [p.id for p in manager.get_payouts_for_retry()] == [below.id]
        assert [p.id for p in manager.payouts_needing_intervention()] == [at_max.id]

    def test_retry_reschedules_with_backoff(self, db, make_payout, stub_rail) -> None:
        payout = make_payout(status=PayoutStatus.FAILED, retry_count=1)
        result = PayoutLifecycleManager(db, rail=stub_rail()).retry_payout(payout.id, now=NOW)

        assert result.succeeded
        retried = result.value
        assert retried.status == PayoutStatus.SCHEDULED
        assert retried.retry_count == 2
        backoff = timedelta(minutes=settings.PAYOUT_RETRY_BACKOFF_MINUTES * 2)
        assert retried.scheduled_date == NOW + backoff

    def test_retry_exhausted(self, db, make_payout, stub_rail, caplog) -> None:
        payout = make_payout(status=PayoutStatus.FAILED, retry_count=settings.MAX_PAYOUT_RETRY_COUNT)

        with caplog.at_level(logging.ERROR):
            result = PayoutLifecycleManager(db, rail=stub_rail()).retry_payout(payout.id, now=NOW)

        assert result.code == ErrorCode.RETRY_EXHAUSTED
        assert "manual intervention" in caplog.text
        db.refresh(payout)
        assert payout.status == PayoutStatus.FAILED

    def test_only_failed_payouts_retry(self, db, make_payout, stub_rail) -> None:
        payout = make_payout(status=PayoutStatus.PROCESSING)
        result = PayoutLifecycleManager(db, rail=stub_rail()).retry_payout(payout.id)
        assert result.code == ErrorCode.VALIDATION

    def test_fail_retry_then_complete(self, db, make_payout, stub_rail) -> None:
        payout = make_payout()
        rail = stub_rail(
            TransientExternalError("timeout"),
            RailSubmission(accepted=True, rail_reference="tx-3", settled=True),
        )
        manager = PayoutLifecycleManager(db, rail=rail)

        manager.process_due_payouts(now=NOW)
        batch = manager.retry_failed_payouts(now=NOW)
        assert batch.succeeded_count == 1

        later = NOW + timedelta(minutes=settings.PAYOUT_RETRY_BACKOFF_MINUTES)
        manager.process_due_payouts(now=later)

        db.refresh(payout)
        assert payout.status == PayoutStatus.COMPLETED
        assert payout.retry_count == 1
        assert rail.submitted == [payout.id, payout.id]


class TestCancelledSettlements:
    def test_cancel_retires_failed_payout(self, db, make_record, stub_rail) -> None:
        settlement = _finalized_settlement(db, make_record)
        rail = stub_rail(TransientExternalError("rail timeout"))
        manager = PayoutLifecycleManager(db, rail=rail)
        old = manager.schedule_from_settlement(settlement.id, NOW).value
        old_id = old.id
        manager.process_due_payouts(now=NOW)
        db.refresh(old)
        assert old.status == PayoutStatus.FAILED

        generator = SettlementGenerator(db)
        assert generator.cancel(settlement.id, reason="wrong bank details").succeeded
        db.refresh(old)
        assert old.status == PayoutStatus.CANCELLED
        assert old.error_code == "settlement_cancelled"

        fresh = generator.generate("S1", 2025, 3).value
        fresh = generator.finalize(fresh.id).value
        new = manager.schedule_from_settlement(fresh.id, NOW).value

        assert manager.retry_payout(old_id, now=NOW).code == ErrorCode.VALIDATION
        assert manager.retry_failed_payouts(now=NOW).outcomes == []
        manager.process_due_payouts(now=NOW + timedelta(days=1))

        assert rail.submitted == [old_id, new.id]
        assert manager.payouts_needing_intervention() == []

    def test_payout_of_cancelled_settlement_is_never_sent(self, db, make_record, stub_rail) -> None:
        settlement = _finalized_settlement(db, make_record)
        rail = stub_rail()
        manager = PayoutLifecycleManager(db, rail=rail)
        payout = manager.schedule_from_settlement(settlement.id, NOW).value
        payout_id = payout.id

        # Cancelled outside the service, leaving the payout behind
        settlement.status = SettlementStatus.CANCELLED
        db.commit()

        run = manager.process_due_payouts(now=NOW)
        assert run.processed_ids == []
        assert rail.submitted == []

        payout = db.query(Payout).filter(Payout.id == payout_id).first()
        payout.status = PayoutStatus.FAILED
        db.commit()
        assert manager.retry_payout(payout_id, now=NOW).code == ErrorCode.CONFLICT


class TestReads:
    def test_list_filters(self, db, make_payout, stub_rail) -> None:
        make_payout(seller_id="S1")
        make_payout(seller_id="S2")
        make_payout(seller_id="S1", status=PayoutStatus.FAILED)
        manager = PayoutLifecycleManager(db, rail=stub_rail())

        items, total = manager.list_payouts(seller_id="S1").value
        assert total == 2
        items, total = manager.list_payouts(status=PayoutStatus.FAILED).value
        assert total == 1

    def test_list_rejects_inverted_dates(self, db, stub_rail) -> None:
        result = PayoutLifecycleManager(db, rail=stub_rail()).list_payouts(
            from_date=NOW, to_date=NOW - timedelta(days=1),
        )
        assert result.code == ErrorCode.VALIDATION


class _Response:
    def __init__(self, status_code, body=None, text=""):
        self.status_code = status_code
        self._body = body
        self.text = text

    def json(self):
        if self._body is None:
            raise ValueError("no json")
        return self._body


class TestWebhookRail:
    def _payout(self) -> Payout:
        return Payout(id=7, seller_id="S1", amount=Decimal("90.00"), currency="USD", retry_count=0)

    def test_completed_response_is_settled(self, monkeypatch) -> None:
        calls = []

        def fake_post(url, json, headers, timeout):
            calls.append((url, json, headers))
            return _Response(200, {"status": "completed", "reference": "tx-7"})

        monkeypatch.setattr(requests, "post", fake_post)
        submission = WebhookPaymentRail("https://rail.test/payouts", api_key="k").submit(self._payout())

        assert submission.accepted and submission.settled
        assert submission.rail_reference == "tx-7"
        url, payload, headers = calls[0]
        assert payload["amount"] == "90.00"
        assert headers["Authorization"] == "Bearer k"
        assert headers["X-Idempotency-Key"] == "payout-7-0"

    def test_server_error_is_transient(self, monkeypatch) -> None:
        monkeypatch.setattr(requests, "post", lambda *a, **kw: _Response(503, text="busy"))
        with pytest.raises(TransientExternalError):
            WebhookPaymentRail("https://rail.test/payouts").submit(self._payout())

    def test_connection_error_is_transient(self, monkeypatch) -> None:
        def boom(*args, **kwargs):
            raise requests.ConnectionError("refused")

        monkeypatch.setattr(requests, "post", boom)
        with pytest.raises(TransientExternalError):
            WebhookPaymentRail("https://rail.test/payouts").submit(self._payout())

    def test_client_error_is_rejection(self, monkeypatch) -> None:
        monkeypatch.setattr(requests, "post", lambda *a, **kw: _Response(422, text="bad account"))
        submission = WebhookPaymentRail("https://rail.test/payouts").submit(self._payout())
        assert not submission.accepted
        assert submission.error_message == "bad account"

    def test_null_rail_leaves_payout_for_confirmation(self) -> None:
        submission = NullPaymentRail().submit(self._payout())
        assert submission.accepted and not submission.settled
        assert submission.rail_reference == "manual-7"
