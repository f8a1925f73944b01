"""
tasks/maintenance_tasks.py
Operator-triggered maintenance of the activity audit trail.

Retention is never automatic: purge_old_activities runs only when an
operator calls it (or POST /activities/cleanup is used).
"""

import logging
from typing import Optional

from sqlalchemy import create_engine, delete
from sqlalchemy.orm import Session, sessionmaker

from config.settings import settings
from services.activity.service import retention_cutoff
from shared.models.models import Activity
from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


# ── Helpers ────────────────────────────────────────────────────────────────────

def _sync_url(url: str) -> str:
    """postgresql+asyncpg:// → postgresql+psycopg2://, sqlite+aiosqlite:// → sqlite://"""
    return url.replace("+asyncpg", "+psycopg2").replace("+aiosqlite", "")


def _get_sync_session() -> Session:
    """Create a synchronous SQLAlchemy session (Celery runs sync by default)."""
    engine = create_engine(_sync_url(settings.DATABASE_URL), pool_pre_ping=True)
    return sessionmaker(bind=engine)()


# ── Retention ──────────────────────────────────────────────────────────────────

@celery_app.task(bind=True, max_retries=3, default_retry_delay=60)
def purge_old_activities(self, days_to_keep: Optional[int] = None) -> dict:
    """
    Delete activities older than `days_to_keep` days
    (default ACTIVITY_RETENTION_DAYS). Bulk statement; returns
    {"deleted_count", "cutoff_date"} with the cutoff as ISO-8601.
    """
    if days_to_keep is None:
        days_to_keep = settings.ACTIVITY_RETENTION_DAYS
    cutoff = retention_cutoff(days_to_keep)

    db = _get_sync_session()
    try:
        result = db.execute(
            delete(Activity)
            .where(Activity.timestamp < cutoff)
            .execution_options(synchronize_session=False)
        )
        db.commit()
    except Exception as exc:
        db.rollback()
        logger.exception(f"purge_old_activities failed: {exc}")
        raise self.retry(exc=exc)
    finally:
        db.close()

    logger.info(f"purge_old_activities: deleted {result.rowcount} activities older than {cutoff.isoformat()}")
    return {"deleted_count": result.rowcount, "cutoff_date": cutoff.isoformat()}
