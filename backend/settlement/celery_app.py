from celery import Celery
from celery.schedules import crontab
from settlement.core.config import settings

celery_app = Celery(
    "settlement",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=["settlement.tasks.async_tasks"],
)

celery_app.conf.update(
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    beat_schedule={
        # Previous month's settlements, early on the 1st
        "generate-monthly-settlements": {
            "task": "generate_monthly_settlements",
            "schedule": crontab(minute=0, hour=2, day_of_month=1),
        },
        "process-due-payouts": {
            "task": "process_due_payouts",
            "schedule": crontab(minute="*/15"),
        },
        "retry-failed-payouts": {
            "task": "retry_failed_payouts",
            "schedule": crontab(minute=5),
        },
    },
)
