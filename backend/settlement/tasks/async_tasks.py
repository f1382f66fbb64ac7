from typing import Optional
from settlement.celery_app import celery_app
from settlement.core.database import SessionLocal
from settlement.core.timeutils import previous_month
from settlement.services.payout import PayoutLifecycleManager
from settlement.services.settlement import SettlementGenerator


@celery_app.task(name="generate_monthly_settlements")
def generate_monthly_settlements(year: Optional[int] = None, month: Optional[int] = None):
    """
    Generate settlements for every seller with commission in a month
    (the previous UTC month by default)
    """
    if year is None or month is None:
        year, month = previous_month()
    db = SessionLocal()
    try:
        batch = SettlementGenerator(db).generate_for_period(year, month, generated_by="scheduler")
        return {
            "period": f"{year}-{month:02d}",
            "succeeded": batch.succeeded_count,
            "failed": batch.failed_count,
            "failures": [
                {"seller_id": o.key, "code": o.code, "message": o.message}
                for o in batch.outcomes if not o.succeeded
            ],
        }
    finally:
        db.close()


@celery_app.task(name="process_due_payouts")
def process_due_payouts():
    db = SessionLocal()
    try:
        run = PayoutLifecycleManager(db).process_due_payouts()
        return {
            "batch_id": run.batch_id,
            "processed": run.processed_ids,
            "skipped": run.skipped_ids,
            "failed": run.failed_ids,
        }
    finally:
        db.close()


@celery_app.task(name="retry_failed_payouts")
def retry_failed_payouts():
    """Reschedule retry-eligible failed payouts with backoff"""
    db = SessionLocal()
    try:
        batch = PayoutLifecycleManager(db).retry_failed_payouts()
        return {"rescheduled": batch.succeeded_count, "failed": batch.failed_count}
    finally:
        db.close()
