"""
tasks/celery_app.py
Celery application instance shared by all task modules.

Workers are started with:
    celery -A tasks.celery_app worker -Q maintenance --loglevel=info

Activity retention is operator-triggered only; there is no beat schedule:
    celery -A tasks.celery_app call tasks.maintenance_tasks.purge_old_activities --args='[90]'
"""

from celery import Celery

from config.settings import settings

celery_app = Celery(
    "pg_activity",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=[
        "tasks.maintenance_tasks",
    ],
)

# ── Configuration ─────────────────────────────────────────────────────────────

celery_app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Acknowledge AFTER execution so a purge interrupted by a dying worker is redelivered
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    # Result expiry: keep task results for 1 hour
    result_expires=3600,

    task_routes={
        "tasks.maintenance_tasks.*": {"queue": "maintenance"},
    },

    # Purges are long-running bulk deletes: one at a time per worker
    worker_prefetch_multiplier=1,
)
