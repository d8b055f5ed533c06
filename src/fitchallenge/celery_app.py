from celery import Celery

from .config import settings

# Points evaluation and join backfills run here, outside the request cycle
celery_app = Celery(
    "fitchallenge",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["fitchallenge.tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_default_queue="points",
    # A redelivered award task is settled by the points ledger
    task_acks_late=True,
    result_expires=3600,
)
