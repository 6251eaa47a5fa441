from celery import Celery
from foldly.config import settings

celery_app = Celery(
    "foldly",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["foldly.workers.tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
)

celery_app.conf.beat_schedule = {
    "reconcile-storage-usage": {
        "task": "reconcile_storage_usage",
        "schedule": float(settings.RECONCILE_INTERVAL_SECONDS),
    },
    "expire-pending-editor-promotions": {
        "task": "expire_pending_editor_promotions",
        "schedule": float(settings.OTP_SWEEP_INTERVAL_SECONDS),
    },
}
